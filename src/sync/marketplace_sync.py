"""マーケットプレイス横断同期サービス

初期化済みアダプター（AdapterFactoryのキャッシュ）に対して
商品・在庫の同期、注文取得、ヘルスチェックを行う。
マーケットプレイス単位で失敗を分離し、1つの失敗で全体を止めない。
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from src.marketplaces.errors import MarketplaceError
from src.marketplaces.factory import AdapterFactory, normalize_marketplace_id
from src.marketplaces.models import (
    MarketplaceCredentials,
    MarketplaceHealth,
    MarketplaceOrder,
    MarketplaceProduct,
    OperationResult,
    PaginatedResponse,
    PriceUpdatePayload,
    ProductStatus,
    StatusUpdatePayload,
    StockUpdatePayload,
)

logger = logging.getLogger(__name__)

NOT_INITIALIZED = "Adapter not initialized. Call initialize_marketplace() first."


def _step_failure(sku: str, result: OperationResult) -> Optional[str]:
    """1SKUのバッチ結果が失敗なら理由を返す（成功ならNone）"""
    if not result.success:
        return result.error.message if result.error else "Unknown error"
    reason = result.data.reason_for(sku) if result.data is not None else None
    return reason


class MarketplaceSyncService:
    """マーケットプレイス同期サービス"""

    def __init__(self, factory: AdapterFactory):
        self.factory = factory

    async def initialize_marketplace(self, marketplace_id: str,
                                     credentials: MarketplaceCredentials) -> bool:
        """アダプターを初期化（失敗はログしてFalse）"""
        try:
            await self.factory.create_adapter(marketplace_id, credentials)
            logger.info(f"マーケットプレイス初期化: {marketplace_id}")
            return True
        except Exception as e:
            logger.error(f"マーケットプレイス初期化失敗 {marketplace_id}: {e}")
            return False

    def _targets(self, marketplace_ids: Optional[List[str]]) -> List[str]:
        if marketplace_ids:
            return list(marketplace_ids)
        return self.factory.active_marketplace_ids()

    # --- 商品 ---

    async def sync_product(self, product: Dict[str, Any],
                           marketplace_ids: Optional[List[str]] = None) -> Dict[str, Any]:
        """1商品を各マーケットプレイスに同期（在庫 → 価格 → ステータス）

        Args:
            product: {"sku", "stock_level"?, "price"?, "sale_price"?, "status"?}

        Returns:
            {"successful": [marketplace_id], "failed": [{"marketplace_id", "reason"}]}
        """
        sku = product["sku"]
        results: Dict[str, Any] = {"successful": [], "failed": []}

        for marketplace_id in self._targets(marketplace_ids):
            if not self.factory.has_adapter(marketplace_id):
                results["failed"].append({"marketplace_id": marketplace_id,
                                          "reason": NOT_INITIALIZED})
                continue
            adapter = self.factory.get_adapter(marketplace_id)
            try:
                reason = await self._sync_one(adapter, sku, product)
            except MarketplaceError as e:
                reason = e.message
            except Exception as e:
                logger.error(f"商品同期エラー {marketplace_id} sku={sku}: {e}")
                reason = str(e)

            if reason is None:
                results["successful"].append(marketplace_id)
            else:
                logger.warning(f"商品同期失敗 {marketplace_id} sku={sku}: {reason}")
                results["failed"].append({"marketplace_id": marketplace_id, "reason": reason})
        return results

    async def _sync_one(self, adapter, sku: str, product: Dict[str, Any]) -> Optional[str]:
        """最初に失敗したステップの理由を返す（全て成功ならNone）"""
        if product.get("stock_level") is not None:
            result = await adapter.update_stock(
                [StockUpdatePayload(sku=sku, quantity=int(product["stock_level"]))]
            )
            reason = _step_failure(sku, result)
            if reason is not None:
                return reason

        if product.get("price") is not None:
            result = await adapter.update_prices([PriceUpdatePayload(
                sku=sku,
                price=float(product["price"]),
                sale_price=product.get("sale_price"),
                currency=product.get("currency"),
            )])
            reason = _step_failure(sku, result)
            if reason is not None:
                return reason

        if product.get("status") is not None:
            result = await adapter.update_status(
                [StatusUpdatePayload(sku=sku, status=ProductStatus(product["status"]))]
            )
            reason = _step_failure(sku, result)
            if reason is not None:
                return reason
        return None

    async def sync_stock_levels(self, updates: List[StockUpdatePayload],
                                marketplace_ids: Optional[List[str]] = None) -> Dict[str, Any]:
        """在庫を各マーケットプレイスに一括同期

        Returns:
            {"successful": [{"marketplace_id", "skus"}],
             "failed": [{"marketplace_id", "reason", "skus"?}]}
        """
        results: Dict[str, Any] = {"successful": [], "failed": []}

        for marketplace_id in self._targets(marketplace_ids):
            if not self.factory.has_adapter(marketplace_id):
                results["failed"].append({"marketplace_id": marketplace_id,
                                          "reason": NOT_INITIALIZED})
                continue
            adapter = self.factory.get_adapter(marketplace_id)
            try:
                result = await adapter.update_stock(updates)
            except Exception as e:
                logger.error(f"在庫同期エラー {marketplace_id}: {e}")
                results["failed"].append({"marketplace_id": marketplace_id, "reason": str(e)})
                continue

            if not result.success:
                results["failed"].append({
                    "marketplace_id": marketplace_id,
                    "reason": result.error.message if result.error else "Unknown error",
                })
                continue

            batch = result.data
            if batch.successful:
                results["successful"].append({"marketplace_id": marketplace_id,
                                              "skus": list(batch.successful)})
            for failed in batch.failed:
                logger.warning(f"在庫同期失敗 {marketplace_id} sku={failed.sku}: {failed.reason}")
                results["failed"].append({"marketplace_id": marketplace_id,
                                          "reason": failed.reason, "skus": [failed.sku]})

        logger.info(f"在庫同期: {len(updates)}件 → 成功{len(results['successful'])} "
                    f"失敗{len(results['failed'])}")
        return results

    # --- 読み取り ---

    async def get_product(self, marketplace_id: str,
                          sku: str) -> OperationResult[Optional[MarketplaceProduct]]:
        adapter = self.factory.get_adapter(marketplace_id)
        return await adapter.get_product_by_sku(sku)

    async def get_recent_orders(
        self,
        marketplace_id: str,
        days_since: int = 7,
        page: int = 0,
        page_size: int = 20,
    ) -> PaginatedResponse[MarketplaceOrder]:
        adapter = self.factory.get_adapter(marketplace_id)
        since = datetime.now() - timedelta(days=days_since)
        return await adapter.get_recent_orders(since, page=page, page_size=page_size)

    async def check_marketplace_health(self) -> List[MarketplaceHealth]:
        """全アダプターのヘルスチェック（1つの例外で他を止めない）"""
        health = []
        for marketplace_id, adapter in self.factory.active_adapters().items():
            try:
                health.append(await adapter.get_marketplace_health())
            except Exception as e:
                logger.error(f"ヘルスチェック失敗 {marketplace_id}: {e}")
                health.append(MarketplaceHealth(
                    marketplace_id=normalize_marketplace_id(marketplace_id),
                    name=getattr(adapter, "marketplace_name", marketplace_id),
                    connected=False,
                    message=f"Error checking health: {e}",
                ))
        return health

    async def close_all(self) -> None:
        await self.factory.close_all_adapters()

