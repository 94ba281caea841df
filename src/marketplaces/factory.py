"""アダプターファクトリー / レジストリ

マーケットプレイスID（正規化済み）→ アダプタークラスの登録と、
初期化済みインスタンスのキャッシュを管理する。
モジュールレベルのシングルトンは持たず、アプリ側で明示的に生成して注入する。

    factory = build_marketplace_factory(config)
    adapter = await factory.create_adapter("amazon_us", credentials)
    factory.get_adapter("AMAZON") is adapter  # True
"""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Type

import httpx

from src.marketplaces.errors import (
    AdapterNotInitializedError,
    MarketplaceError,
    NotSupportedError,
)
from src.marketplaces.models import MarketplaceCredentials

logger = logging.getLogger(__name__)

# 地域サフィックスを畳み込むマーケットプレイス（amazon_us → amazon）
REGIONAL_PREFIXES = ("amazon", "shopify")


def split_marketplace_id(marketplace_id: str) -> tuple:
    """("amazon", "de") のように (正規化ID, 地域サフィックス) を返す"""
    normalized = (marketplace_id or "").strip().lower().replace("-", "_")
    for prefix in REGIONAL_PREFIXES:
        if normalized.startswith(prefix + "_"):
            return prefix, normalized[len(prefix) + 1:] or None
    return normalized, None


def normalize_marketplace_id(marketplace_id: str) -> str:
    return split_marketplace_id(marketplace_id)[0]


class AdapterFactory:
    """アダプタークラスの登録と、初期化済みインスタンスのキャッシュ"""

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Any] = asyncio.sleep,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
        kind: str = "marketplace",
    ):
        """
        Args:
            config: load_config() の結果（各アダプターに渡す）
            clock / sleep: 各アダプターに注入（テスト用）
            http_transport: httpxトランスポート（テストではMockTransport）
            kind: ログ用の種別名（"marketplace" / "carrier"）
        """
        self.config = config
        self.clock = clock
        self.sleep = sleep
        self.http_transport = http_transport
        self.kind = kind
        self._registry: Dict[str, Type] = {}
        self._adapters: Dict[str, Any] = {}

    # --- 登録 ---

    def register_adapter(self, marketplace_id: str, adapter_cls: Type,
                         replace: bool = False) -> None:
        """アダプタークラスを登録

        同じクラスの再登録は何もしない。別クラスで上書きするには replace=True。
        """
        key = normalize_marketplace_id(marketplace_id)
        existing = self._registry.get(key)
        if existing is not None and existing is not adapter_cls and not replace:
            raise ValueError(
                f"{key} is already registered to {existing.__name__}"
            )
        self._registry[key] = adapter_cls

    def supported_marketplaces(self) -> List[str]:
        return sorted(self._registry)

    def is_supported(self, marketplace_id: str) -> bool:
        return normalize_marketplace_id(marketplace_id) in self._registry

    # --- 生成・取得 ---

    def _instantiate(self, adapter_cls: Type) -> Any:
        return adapter_cls(
            config=self.config,
            clock=self.clock,
            sleep=self.sleep,
            http_transport=self.http_transport,
        )

    async def create_adapter(self, marketplace_id: str,
                             credentials: MarketplaceCredentials) -> Any:
        """初期化済みアダプターを返す

        既にキャッシュ済みなら同じインスタンスを新しい認証情報で再初期化する。
        再初期化に失敗したインスタンスはクローズしてキャッシュから外す。

        Raises:
            NotSupportedError: 未登録のマーケットプレイス
            AuthenticationError: 認証失敗
        """
        key, region = split_marketplace_id(marketplace_id)
        adapter_cls = self._registry.get(key)
        if adapter_cls is None:
            raise NotSupportedError(f"Unsupported {self.kind}: {marketplace_id}")

        credentials = dict(credentials or {})
        if region and "region_hint" not in credentials:
            credentials["region_hint"] = region

        adapter = self._adapters.get(key)
        is_new = adapter is None
        if is_new:
            adapter = self._instantiate(adapter_cls)

        try:
            await adapter.initialize(credentials)
        except MarketplaceError:
            if not is_new:
                self._adapters.pop(key, None)
            await adapter.close()
            raise

        self._adapters[key] = adapter
        logger.info(f"{self.kind}アダプター{'作成' if is_new else '再初期化'}: {key}")
        return adapter

    def get_adapter(self, marketplace_id: str) -> Any:
        """キャッシュ済みアダプターを返す（生成はしない）"""
        key = normalize_marketplace_id(marketplace_id)
        adapter = self._adapters.get(key)
        if adapter is None:
            raise AdapterNotInitializedError(
                f"No active adapter for {key}. Call create_adapter() first."
            )
        return adapter

    def has_adapter(self, marketplace_id: str) -> bool:
        return normalize_marketplace_id(marketplace_id) in self._adapters

    def active_marketplace_ids(self) -> List[str]:
        return list(self._adapters)

    def active_adapters(self) -> Dict[str, Any]:
        return dict(self._adapters)

    # --- 解放 ---

    async def close_adapter(self, marketplace_id: str) -> bool:
        """アダプターをクローズしてキャッシュから外す（無ければFalse）"""
        adapter = self._adapters.pop(normalize_marketplace_id(marketplace_id), None)
        if adapter is None:
            return False
        await adapter.close()
        return True

    async def close_all_adapters(self) -> None:
        adapters = list(self._adapters.items())
        self._adapters.clear()
        for key, adapter in adapters:
            try:
                await adapter.close()
            except Exception as e:
                logger.error(f"{self.kind}アダプターのクローズ失敗 {key}: {e}")


def build_marketplace_factory(config: Optional[Dict[str, Any]] = None,
                              **kwargs) -> AdapterFactory:
    """Amazon / Shopify / Takealot を登録したファクトリー"""
    from src.marketplaces.amazon import AmazonAdapter
    from src.marketplaces.shopify import ShopifyAdapter
    from src.marketplaces.takealot import TakealotAdapter

    factory = AdapterFactory(config, kind="marketplace", **kwargs)
    for adapter_cls in (AmazonAdapter, ShopifyAdapter, TakealotAdapter):
        factory.register_adapter(adapter_cls.marketplace_id, adapter_cls)
    return factory


def build_carrier_factory(config: Optional[Dict[str, Any]] = None,
                          **kwargs) -> AdapterFactory:
    """DHL / FedEx を登録したファクトリー"""
    from src.shipping.dhl import DHLProvider
    from src.shipping.fedex import FedExProvider

    factory = AdapterFactory(config, kind="carrier", **kwargs)
    for provider_cls in (DHLProvider, FedExProvider):
        factory.register_adapter(provider_cls.carrier_id, provider_cls)
    return factory
