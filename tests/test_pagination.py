"""ページネーションループのテスト

- limit件で打ち切り
- 次ページが無ければ終了
- レート制限接近時の待機
- カーソルチェーン
"""

import asyncio

import pytest

from src.marketplaces.models import RateLimitStatus
from src.marketplaces.pagination import CursorChain, backoff_delay, paginate


def _pages(pages):
    """pages[i] を順に返すfetch_page（カーソル=次ページ番号）"""
    calls = []

    async def fetch_page(cursor, page_size):
        index = cursor or 0
        calls.append((index, page_size))
        items = pages[index][:page_size]
        has_more = index + 1 < len(pages)
        return items, (index + 1 if has_more else None), has_more

    fetch_page.calls = calls
    return fetch_page


class SleepRecorder:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


class TestBackoffDelay:
    """待機秒の計算"""

    def test_no_status(self):
        assert backoff_delay(None, now=0.0) == 0.2

    def test_plenty_remaining(self):
        status = RateLimitStatus(remaining=50, reset=100.0, limit=100)
        assert backoff_delay(status, now=0.0) == 0.2

    def test_spreads_over_reset_window(self):
        """残り5回で10秒後リセット → 2秒間隔"""
        status = RateLimitStatus(remaining=5, reset=10.0, limit=100)
        assert backoff_delay(status, now=0.0) == pytest.approx(2.0)

    def test_minimum_delay(self):
        status = RateLimitStatus(remaining=5, reset=1.0, limit=100)
        assert backoff_delay(status, now=0.0) == 0.5

    def test_zero_remaining(self):
        """残り0ならリセットまで待つ"""
        status = RateLimitStatus(remaining=0, reset=3.0, limit=100)
        assert backoff_delay(status, now=0.0) == pytest.approx(3.0)


class TestPaginate:
    """paginateループ"""

    def test_stops_at_limit(self):
        """上限件数で止まる"""
        fetch = _pages([[1, 2, 3], [4, 5, 6], [7, 8, 9]])
        sleep = SleepRecorder()
        result = asyncio.run(paginate(fetch, lambda: None, limit=5, max_page_size=3,
                                      sleep=sleep, clock=lambda: 0.0))
        assert result == [1, 2, 3, 4, 5]
        # 2ページ目は残り2件分だけ要求
        assert fetch.calls == [(0, 3), (1, 2)]
        assert sleep.delays == [0.2]

    def test_stops_without_next_page(self):
        """次ページが無ければ止まる"""
        fetch = _pages([[1, 2], [3]])
        result = asyncio.run(paginate(fetch, lambda: None, limit=100, max_page_size=2,
                                      sleep=SleepRecorder(), clock=lambda: 0.0))
        assert result == [1, 2, 3]

    def test_empty_page_stops(self):
        """空ページで止まる"""
        async def fetch_page(cursor, page_size):
            return [], "next", True

        result = asyncio.run(paginate(fetch_page, lambda: None, limit=10, max_page_size=5,
                                      sleep=SleepRecorder(), clock=lambda: 0.0))
        assert result == []

    def test_waits_when_rate_limited(self):
        """レート制限中はページ間で待つ"""
        fetch = _pages([[1], [2], [3]])
        sleep = SleepRecorder()
        status = RateLimitStatus(remaining=2, reset=8.0, limit=40)
        asyncio.run(paginate(fetch, lambda: status, limit=10, max_page_size=1,
                             sleep=sleep, clock=lambda: 0.0))
        assert sleep.delays == [pytest.approx(4.0), pytest.approx(4.0)]

    def test_never_exceeds_limit(self):
        """ベンダーが多めに返しても切り詰める"""
        async def fetch_page(cursor, page_size):
            return list(range(10)), None, False

        result = asyncio.run(paginate(fetch_page, lambda: None, limit=4, max_page_size=10,
                                      sleep=SleepRecorder(), clock=lambda: 0.0))
        assert result == [0, 1, 2, 3]


class TestCursorChain:
    """ページ番号 → カーソル対応"""

    def test_first_page(self):
        """1ページ目はカーソルなし"""
        chain = CursorChain()
        assert asyncio.run(chain.resolve(0, None)) == (True, None)

    def test_walks_forward(self):
        """カーソルを辿って目的のページへ"""
        chain = CursorChain()
        cursors = {None: "c1", "c1": "c2", "c2": None}
        visited = []

        async def next_cursor_of(cursor):
            visited.append(cursor)
            return cursors[cursor]

        assert asyncio.run(chain.resolve(2, next_cursor_of)) == (True, "c2")
        assert visited == [None, "c1"]
        # 既知のページは再取得しない
        assert asyncio.run(chain.resolve(1, next_cursor_of)) == (True, "c1")
        assert visited == [None, "c1"]

    def test_page_past_end(self):
        """末尾を超えたページ"""
        chain = CursorChain()

        async def next_cursor_of(cursor):
            return None

        assert asyncio.run(chain.resolve(3, next_cursor_of)) == (False, None)
        assert chain.known(1) is False

    def test_remember_and_reset(self):
        """カーソルの記憶とリセット"""
        chain = CursorChain()
        chain.remember(0, "abc")
        assert chain.cursor(1) == "abc"
        chain.reset()
        assert chain.known(1) is False
