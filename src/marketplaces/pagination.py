"""レート制限を考慮したページネーションループ

各アダプターの fetch_orders / fetch_products から使う。
カーソル（ベンダー固有の不透明値）を辿りながら、ページ毎に
get_rate_limit_status() を確認して自主的に間隔を空ける。

  残り回数 < threshold → max(min_delay, (reset - now) / remaining) 待機
  それ以外             → burst_delay（200ms）待機
"""

import asyncio
import logging
import time
from typing import (
    Any, Awaitable, Callable, Dict, Generic, List, Optional, Tuple, TypeVar,
)

from src.marketplaces.models import RateLimitStatus

logger = logging.getLogger(__name__)

T = TypeVar("T")

# fetch_page(cursor, page_size) -> (items, next_cursor, has_more)
PageFetcher = Callable[[Any, int], Awaitable[Tuple[List[T], Any, bool]]]


def backoff_delay(status: Optional[RateLimitStatus], now: float,
                  threshold: int = 10, min_delay: float = 0.5,
                  burst_delay: float = 0.2) -> float:
    """次ページ取得前の待機秒を計算（純粋関数）"""
    if status is None or status.remaining >= threshold:
        return burst_delay
    remaining = max(status.remaining, 1)
    return max(min_delay, (status.reset - now) / remaining)


async def paginate(
    fetch_page: PageFetcher,
    rate_limit_status: Callable[[], Optional[RateLimitStatus]],
    limit: int,
    max_page_size: int,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    clock: Callable[[], float] = time.time,
    threshold: int = 10,
    min_delay: float = 0.5,
    burst_delay: float = 0.2,
    start_cursor: Any = None,
) -> List[T]:
    """limit件に達するか、次ページが無くなるまで取得

    Args:
        fetch_page: 1ページ取得コルーチン
        rate_limit_status: 直近のレート制限状態を返す関数
        limit: 取得上限件数（結果はちょうどこの件数に切り詰める）
        max_page_size: ベンダーの1ページ最大件数
        sleep / clock: テスト用に差し替え可能
    """
    accumulated: List[T] = []
    cursor = start_cursor
    has_more = True

    while has_more and len(accumulated) < limit:
        page_size = min(max_page_size, limit - len(accumulated))
        items, cursor, has_more = await fetch_page(cursor, page_size)
        accumulated.extend(items)

        if not items:
            break
        if not has_more or len(accumulated) >= limit:
            break

        delay = backoff_delay(
            rate_limit_status(), clock(), threshold, min_delay, burst_delay
        )
        if delay > burst_delay:
            logger.info(f"レート制限接近のため{delay:.2f}秒待機")
        await sleep(delay)

    return accumulated[:limit]


class CursorChain(Generic[T]):
    """0始まりのページ番号とベンダーカーソルの対応表

    ページ0のカーソルはNone。未知のページを要求された場合は、
    既知の最大ページ（無ければ先頭）から順にカーソルを辿り直す。
    """

    def __init__(self):
        self._cursors: Dict[int, Any] = {0: None}
        self._last_page: Optional[int] = None

    def remember(self, page: int, next_cursor: Any) -> None:
        """page の次ページのカーソルを記録（Noneなら終端）"""
        if next_cursor:
            self._cursors[page + 1] = next_cursor
        else:
            self._last_page = page

    def known(self, page: int) -> bool:
        return page in self._cursors

    def cursor(self, page: int) -> Any:
        return self._cursors.get(page)

    def reset(self) -> None:
        self._cursors = {0: None}
        self._last_page = None

    async def resolve(
        self,
        page: int,
        next_cursor_of: Callable[[Any], Awaitable[Any]],
    ) -> Tuple[bool, Any]:
        """page のカーソルを返す

        Args:
            next_cursor_of: カーソルを受け取りそのページを取得して
                次ページのカーソル（無ければNone）を返すコルーチン

        Returns:
            (found, cursor)。ページが存在しなければ found=False
        """
        if page in self._cursors:
            return True, self._cursors[page]
        if self._last_page is not None and page > self._last_page:
            return False, None

        start = max(p for p in self._cursors if p < page)
        current = start
        while current < page:
            next_cursor = await next_cursor_of(self._cursors[current])
            self.remember(current, next_cursor)
            if not next_cursor:
                return False, None
            current += 1
        return True, self._cursors[page]
