"""HTTPトランスポート（httpx.AsyncClient ラッパー）

- 読み取り（GET）のみ有限回リトライ（指数バックオフ、上限付き）
- 書き込み（PUT/POST/PATCH/DELETE）は冪等性キーが無いため自動リトライしない
- 401受信時は1回だけ再認証してリクエストを再送
- レスポンス毎にフックを呼び、アダプターがレート制限ヘッダーを記録できる
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from src.marketplaces.errors import AuthenticationError, MarketplaceError
from src.marketplaces.helpers import error_from_exception, error_from_response

logger = logging.getLogger(__name__)

# リトライ対象のステータス
RETRYABLE_STATUS = {408, 423, 425, 429, 500, 502, 503, 504}
SAFE_METHODS = {"GET", "HEAD"}

HeadersFactory = Callable[[], Awaitable[Dict[str, str]]]


class HttpTransport:
    """ベンダーAPI共通のHTTPクライアント"""

    def __init__(
        self,
        base_url: str,
        headers: Optional[HeadersFactory] = None,
        vendor: str = "marketplace",
        timeout: float = 30.0,
        max_retries: int = 3,
        backoff_base: float = 1.0,
        backoff_cap: float = 30.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        on_response: Optional[Callable[[httpx.Response], None]] = None,
        on_unauthorized: Optional[Callable[[], Awaitable[None]]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            base_url: APIのベースURL
            headers: 認証ヘッダーを返すコルーチン（毎リクエスト評価）
            vendor: エラーメッセージ・ログ用のベンダー名
            sleep: バックオフ用のsleep（テストで差し替え）
            on_response: 全レスポンスで呼ばれるフック
            on_unauthorized: 401受信時の再認証コルーチン
            transport: httpxトランスポート（テストではMockTransport）
        """
        self.base_url = base_url.rstrip("/")
        self.vendor = vendor
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self._headers = headers
        self._sleep = sleep
        self._on_response = on_response
        self._on_unauthorized = on_unauthorized
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    def backoff_delay(self, attempt: int,
                      retry_after: Optional[float] = None) -> float:
        """attempt回目のリトライ待機秒（Retry-Afterがあれば優先）"""
        if retry_after is not None:
            return min(retry_after, self.backoff_cap)
        return min(self.backoff_base * (2 ** attempt), self.backoff_cap)

    async def _build_headers(self, extra: Optional[Dict[str, str]]) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._headers is not None:
            headers.update(await self._headers())
        if extra:
            headers.update(extra)
        return headers

    async def request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        data: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        retry: Optional[bool] = None,
    ) -> httpx.Response:
        """リクエスト送信。2xx以外はMarketplaceErrorを送出

        Args:
            retry: Noneならメソッドで判定（GETのみリトライ）
        """
        method = method.upper()
        can_retry = (method in SAFE_METHODS) if retry is None else retry
        attempts = self.max_retries if can_retry else 0
        reauthenticated = False
        attempt = 0

        while True:
            try:
                response = await self.client.request(
                    method,
                    path,
                    params=params,
                    json=json,
                    data=data,
                    headers=await self._build_headers(headers),
                )
            except httpx.RequestError as e:
                if attempt < attempts:
                    delay = self.backoff_delay(attempt)
                    logger.warning(
                        f"{self.vendor}: 通信エラー、{delay:.1f}秒後にリトライ "
                        f"({attempt + 1}/{attempts}): {e}"
                    )
                    attempt += 1
                    await self._sleep(delay)
                    continue
                raise error_from_exception(e, self.vendor) from e

            if self._on_response is not None:
                self._on_response(response)

            if response.status_code == 401 and self._on_unauthorized is not None:
                if reauthenticated:
                    raise AuthenticationError(
                        f"{self.vendor}: request rejected after re-authentication",
                        status=401,
                    )
                logger.info(f"{self.vendor}: 401受信、再認証して再送")
                reauthenticated = True
                await self._on_unauthorized()
                continue

            if response.status_code in RETRYABLE_STATUS and attempt < attempts:
                error = error_from_response(response, self.vendor)
                delay = self.backoff_delay(
                    attempt, getattr(error, "retry_after", None)
                )
                logger.warning(
                    f"{self.vendor}: HTTP {response.status_code}、"
                    f"{delay:.1f}秒後にリトライ ({attempt + 1}/{attempts})"
                )
                attempt += 1
                await self._sleep(delay)
                continue

            if response.is_error:
                raise error_from_response(response, self.vendor)
            return response

    async def get(self, path: str, **kwargs) -> httpx.Response:
        return await self.request("GET", path, **kwargs)

    async def get_json(self, path: str, **kwargs) -> Any:
        return _json_or_empty(await self.request("GET", path, **kwargs))

    async def send_json(self, method: str, path: str, **kwargs) -> Any:
        return _json_or_empty(await self.request(method, path, **kwargs))

    async def close(self) -> None:
        """HTTPクライアントを解放（複数回呼んでも安全）"""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None


def _json_or_empty(response: httpx.Response) -> Any:
    if not response.content:
        return {}
    try:
        return response.json()
    except ValueError as e:
        raise MarketplaceError(f"Invalid JSON response: {e}") from e
