"""HTTPトランスポートのテスト

httpx.MockTransport でベンダーAPIを模擬する。
"""

import asyncio

import httpx
import pytest

from src.marketplaces.errors import (
    AuthenticationError,
    TransportError,
    VendorRejectionError,
)
from src.marketplaces.transport import HttpTransport


class SleepRecorder:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


def _sequence(*responses):
    """リクエストごとに responses を順に返すMockTransport"""
    requests = []

    def handler(request):
        requests.append(request)
        item = responses[min(len(requests) - 1, len(responses) - 1)]
        if isinstance(item, Exception):
            raise item
        return item

    return httpx.MockTransport(handler), requests


def _run(transport, coro_factory):
    async def go():
        try:
            return await coro_factory()
        finally:
            await transport.close()
    return asyncio.run(go())


class TestRetry:
    """読み取りのみリトライ"""

    def test_get_retries_on_503(self):
        """GETは503で再試行"""
        mock, requests = _sequence(httpx.Response(503), httpx.Response(200, json={"ok": True}))
        sleep = SleepRecorder()
        transport = HttpTransport("https://api.test", sleep=sleep, transport=mock)

        data = _run(transport, lambda: transport.get_json("/items"))
        assert data == {"ok": True}
        assert len(requests) == 2
        assert sleep.delays == [1.0]

    def test_retry_after_header(self):
        """Retry-After に従って待つ"""
        mock, _ = _sequence(
            httpx.Response(429, headers={"retry-after": "7"}),
            httpx.Response(200, json={}),
        )
        sleep = SleepRecorder()
        transport = HttpTransport("https://api.test", sleep=sleep, transport=mock)

        _run(transport, lambda: transport.get("/items"))
        assert sleep.delays == [7.0]

    def test_retries_are_bounded(self):
        """再試行回数の上限"""
        mock, requests = _sequence(httpx.Response(500))
        transport = HttpTransport("https://api.test", max_retries=2,
                                  sleep=SleepRecorder(), transport=mock)

        with pytest.raises(TransportError):
            _run(transport, lambda: transport.get("/items"))
        assert len(requests) == 3

    def test_write_not_retried(self):
        """書き込みは再試行しない"""
        mock, requests = _sequence(httpx.Response(503), httpx.Response(200))
        transport = HttpTransport("https://api.test", sleep=SleepRecorder(), transport=mock)

        with pytest.raises(TransportError):
            _run(transport, lambda: transport.request("PUT", "/items/1", json={}))
        assert len(requests) == 1

    def test_connection_error_retried(self):
        """接続エラーは再試行"""
        mock, requests = _sequence(httpx.ConnectError("refused"), httpx.Response(200, json=[]))
        transport = HttpTransport("https://api.test", sleep=SleepRecorder(), transport=mock)

        assert _run(transport, lambda: transport.get_json("/items")) == []
        assert len(requests) == 2

    def test_backoff_is_capped(self):
        """待機時間の上限"""
        transport = HttpTransport("https://api.test", backoff_cap=5.0)
        assert transport.backoff_delay(0) == 1.0
        assert transport.backoff_delay(10) == 5.0
        assert transport.backoff_delay(0, retry_after=100.0) == 5.0


class TestAuthentication:
    """認証ヘッダーと401時の再認証"""

    def test_headers_evaluated_per_request(self):
        """ヘッダーはリクエストごとに評価"""
        mock, requests = _sequence(httpx.Response(200, json={}))
        tokens = iter(["t1", "t2"])

        async def headers():
            return {"Authorization": "Bearer " + next(tokens)}

        transport = HttpTransport("https://api.test", headers=headers, transport=mock)

        async def two_calls():
            await transport.get("/a")
            await transport.get("/b")

        _run(transport, two_calls)
        assert [r.headers["Authorization"] for r in requests] == ["Bearer t1", "Bearer t2"]

    def test_reauthenticates_once_on_401(self):
        """401で1回だけ再認証"""
        mock, requests = _sequence(httpx.Response(401), httpx.Response(200, json={"ok": 1}))
        reauth_calls = []

        async def on_unauthorized():
            reauth_calls.append(1)

        transport = HttpTransport("https://api.test", on_unauthorized=on_unauthorized,
                                  transport=mock)
        assert _run(transport, lambda: transport.send_json("POST", "/x", json={})) == {"ok": 1}
        assert reauth_calls == [1]
        assert len(requests) == 2

    def test_second_401_raises(self):
        """再認証後も401なら認証エラー"""
        mock, _ = _sequence(httpx.Response(401))

        async def on_unauthorized():
            pass

        transport = HttpTransport("https://api.test", on_unauthorized=on_unauthorized,
                                  transport=mock)
        with pytest.raises(AuthenticationError):
            _run(transport, lambda: transport.get("/x"))

    def test_401_without_hook(self):
        """再認証フックなしの401"""
        mock, _ = _sequence(httpx.Response(401, json={"errors": "Invalid token"}))
        transport = HttpTransport("https://api.test", transport=mock)
        with pytest.raises(AuthenticationError):
            _run(transport, lambda: transport.get("/x"))


class TestResponses:
    """レスポンス処理"""

    def test_on_response_hook(self):
        """レスポンスフック"""
        mock, _ = _sequence(httpx.Response(200, json={}, headers={"x-remaining": "5"}))
        seen = []
        transport = HttpTransport("https://api.test", on_response=seen.append,
                                  transport=mock)
        _run(transport, lambda: transport.get("/x"))
        assert seen[0].headers["x-remaining"] == "5"

    def test_empty_body(self):
        """空のボディ"""
        mock, _ = _sequence(httpx.Response(204))
        transport = HttpTransport("https://api.test", transport=mock)
        assert _run(transport, lambda: transport.send_json("DELETE", "/x")) == {}

    def test_vendor_rejection(self):
        """4xxはベンダー拒否"""
        mock, _ = _sequence(httpx.Response(400, json={"errors": [{"message": "bad"}]}))
        transport = HttpTransport("https://api.test", transport=mock)
        with pytest.raises(VendorRejectionError) as exc_info:
            _run(transport, lambda: transport.get("/x"))
        assert exc_info.value.message == "bad"

    def test_close_is_idempotent(self):
        """closeは何度呼んでもよい"""
        transport = HttpTransport("https://api.test")

        async def go():
            _ = transport.client
            await transport.close()
            await transport.close()

        asyncio.run(go())
