"""アプリケーションの組み立て（CLI / JSON API / cron 共通）

設定・DB・認証情報ストア・ファクトリー・各サービスをここで1回だけ生成して注入する。
アダプターのHTTPクライアントはイベントループに紐づくため、
非同期処理は run() で1ループ内に閉じ、最後に全アダプターをクローズする。
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

import httpx

from src.auth.credentials import CredentialManager
from src.config import database_path, load_config
from src.db.database import Database
from src.marketplaces.factory import (
    AdapterFactory,
    build_carrier_factory,
    build_marketplace_factory,
)
from src.shipping.rate_service import ShippingRateService
from src.sync.marketplace_sync import MarketplaceSyncService
from src.sync.product_push import ProductPushService

logger = logging.getLogger(__name__)

T = TypeVar("T")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT)


@dataclass
class AppContext:
    config: Dict[str, Any]
    database: Database
    credentials: CredentialManager
    marketplaces: AdapterFactory
    carriers: AdapterFactory
    push: ProductPushService
    sync: MarketplaceSyncService
    shipping: ShippingRateService

    async def connect_marketplaces(self, user_id: str,
                                   marketplace_ids: Optional[List[str]] = None) -> List[str]:
        """保存済みの認証情報でマーケットプレイスを初期化し、成功したIDを返す"""
        connected = []
        for marketplace_id in marketplace_ids or self.credentials.list_marketplaces(user_id):
            if not self.marketplaces.is_supported(marketplace_id):
                continue
            credentials = self.credentials.get_credentials(user_id, marketplace_id)
            if await self.sync.initialize_marketplace(marketplace_id, credentials):
                connected.append(marketplace_id)
        return connected

    async def connect_carriers(self, user_id: str,
                               carrier_ids: Optional[List[str]] = None) -> List[str]:
        connected = []
        for carrier_id in carrier_ids or self.credentials.list_marketplaces(user_id):
            if not self.carriers.is_supported(carrier_id):
                continue
            credentials = self.credentials.get_credentials(user_id, carrier_id)
            try:
                await self.carriers.create_adapter(carrier_id, credentials)
                connected.append(carrier_id)
            except Exception as e:
                logger.error(f"キャリア初期化失敗 {carrier_id}: {e}")
        return connected

    async def aclose(self) -> None:
        await self.marketplaces.close_all_adapters()
        await self.carriers.close_all_adapters()

    def run(self, work: Callable[[], Awaitable[T]]) -> T:
        """コルーチン関数を1つのイベントループで実行し、最後にアダプターを解放"""
        async def _run() -> T:
            try:
                return await work()
            finally:
                await self.aclose()
        return asyncio.run(_run())


def build_context(
    config: Optional[Dict[str, Any]] = None,
    db_path: Optional[str] = None,
    encryption_key: Optional[str] = None,
    clock: Callable[[], float] = time.time,
    sleep: Callable[[float], Any] = asyncio.sleep,
    http_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> AppContext:
    """全コンポーネントを組み立てる

    Raises:
        ValueError: CREDENTIAL_ENCRYPTION_KEY が未設定
    """
    config = config if config is not None else load_config()
    database = Database(db_path or database_path(config))
    database.init_tables()
    credentials = CredentialManager(database, encryption_key)

    factory_kwargs = {"clock": clock, "sleep": sleep, "http_transport": http_transport}
    marketplaces = build_marketplace_factory(config, **factory_kwargs)
    carriers = build_carrier_factory(config, **factory_kwargs)

    return AppContext(
        config=config,
        database=database,
        credentials=credentials,
        marketplaces=marketplaces,
        carriers=carriers,
        push=ProductPushService(database, credentials, marketplaces),
        sync=MarketplaceSyncService(marketplaces),
        shipping=ShippingRateService(carriers),
    )
