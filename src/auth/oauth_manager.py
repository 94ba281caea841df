"""OAuth 2.0 アクセストークン管理

トークンは {token, expires_at} の不変値として保持し、
期限判定は純粋関数 needs_refresh(now) で行う。
時計（clock）は注入可能なので、期限まわりのテストで実時間を待つ必要はない。

ベンダー差異（Amazon LWAのrefresh_token方式、DHLのBasic認証、
FedExのclient_credentials方式）は fetch_token コルーチン側で吸収する。
"""

import logging
import time
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from src.marketplaces.errors import AuthenticationError, MarketplaceError

logger = logging.getLogger(__name__)

# 期限切れ直前にリフレッシュするためのバッファ（秒）
DEFAULT_REFRESH_BUFFER = 60.0
DEFAULT_EXPIRES_IN = 3600

TokenFetcher = Callable[[], Awaitable[Dict[str, Any]]]


@dataclass(frozen=True)
class AccessToken:
    """アクセストークンと絶対失効時刻（epoch秒）"""

    token: str
    expires_at: float
    refresh_token: Optional[str] = None

    def needs_refresh(self, now: float,
                      buffer: float = DEFAULT_REFRESH_BUFFER) -> bool:
        """トークンが空、またはバッファ込みで期限切れならTrue"""
        return not self.token or now >= (self.expires_at - buffer)

    @classmethod
    def from_response(cls, token_data: Dict[str, Any], now: float,
                      default_expires_in: int = DEFAULT_EXPIRES_IN) -> "AccessToken":
        """トークンエンドポイントのJSONから生成"""
        access_token = token_data.get("access_token")
        if not access_token:
            raise AuthenticationError("トークンレスポンスにaccess_tokenがありません")
        expires_in = token_data.get("expires_in") or default_expires_in
        return cls(
            token=access_token,
            expires_at=now + float(expires_in),
            refresh_token=token_data.get("refresh_token"),
        )


class OAuthTokenManager:
    """アクセストークンのキャッシュとリフレッシュを管理

    ensure_valid() がリフレッシュに失敗した場合、1回だけ再認証を試み、
    それでも失敗したら AuthenticationError を送出する。
    """

    def __init__(
        self,
        fetch_token: TokenFetcher,
        clock: Callable[[], float] = time.time,
        buffer: float = DEFAULT_REFRESH_BUFFER,
        default_expires_in: int = DEFAULT_EXPIRES_IN,
        reauthenticate: Optional[TokenFetcher] = None,
        name: str = "oauth",
    ):
        """
        Args:
            fetch_token: トークンエンドポイントを叩いてJSONを返すコルーチン
            clock: 現在時刻（epoch秒）を返す関数
            buffer: 期限前リフレッシュのバッファ秒
            default_expires_in: レスポンスにexpires_inが無い場合の有効秒数
            reauthenticate: 再認証用コルーチン（Noneならfetch_tokenを再実行）
            name: ログ用の識別子
        """
        self._fetch_token = fetch_token
        self._reauthenticate = reauthenticate or fetch_token
        self.clock = clock
        self.buffer = buffer
        self.default_expires_in = default_expires_in
        self.name = name
        self._token: Optional[AccessToken] = None

    @property
    def token(self) -> Optional[AccessToken]:
        return self._token

    def set_token(self, token: Optional[AccessToken]) -> None:
        self._token = token

    def invalidate(self) -> None:
        """キャッシュ済みトークンを破棄（401受信時など）"""
        self._token = None

    def needs_refresh(self) -> bool:
        return self._token is None or self._token.needs_refresh(
            self.clock(), self.buffer
        )

    async def refresh(self) -> AccessToken:
        """トークンエンドポイントから新しいアクセストークンを取得"""
        return self._store(await self._fetch_token())

    def _store(self, token_data: Dict[str, Any]) -> AccessToken:
        new_token = AccessToken.from_response(
            token_data, self.clock(), self.default_expires_in
        )
        # リフレッシュトークンが新しく発行されなければ既存を引き継ぎ
        if new_token.refresh_token is None and self._token is not None:
            new_token = replace(new_token, refresh_token=self._token.refresh_token)
        self._token = new_token
        logger.debug(f"{self.name}: トークン更新 (expires_at={new_token.expires_at:.0f})")
        return new_token

    async def ensure_valid(self) -> str:
        """有効なアクセストークンを返す（期限切れなら自動リフレッシュ）"""
        if not self.needs_refresh():
            return self._token.token

        try:
            return (await self.refresh()).token
        except (MarketplaceError, httpx.HTTPError) as first_error:
            logger.warning(f"{self.name}: トークン更新失敗、再認証を試行: {first_error}")

        self.invalidate()
        try:
            return self._store(await self._reauthenticate()).token
        except (MarketplaceError, httpx.HTTPError) as e:
            raise AuthenticationError(
                f"{self.name}: re-authentication failed: {e}"
            ) from e
