"""定期実行ジョブ（cron / CLI 共通）

StockSyncJob: DBの在庫数を接続済みの全マーケットプレイスへ送る
OrderFetchJob: 直近の注文を取得し、新規注文を受付確認（acknowledge）する
どちらも sync_log に実行記録を残す。アダプターは事前に初期化しておくこと。
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from src.db.database import Database
from src.marketplaces.models import OrderStatus, StockUpdatePayload
from src.sync.marketplace_sync import MarketplaceSyncService

logger = logging.getLogger(__name__)


class StockSyncJob:
    """在庫同期ジョブ"""

    def __init__(self, database: Database, sync_service: MarketplaceSyncService):
        self.db = database
        self.sync = sync_service

    async def run(self, marketplace_ids: Optional[List[str]] = None,
                  batch_size: int = 500) -> Dict[str, Any]:
        """
        Returns:
            {"items_checked": int, "items_changed": int,
             "successful": list, "failed": list}
        """
        targets = marketplace_ids or self.sync.factory.active_marketplace_ids()
        sync_id = self.db.create_sync_log("stock", ",".join(targets) or "all")
        results: Dict[str, Any] = {
            "items_checked": 0,
            "items_changed": 0,
            "successful": [],
            "failed": [],
        }

        try:
            offset = 0
            while True:
                products = self.db.get_products(status="active", limit=batch_size, offset=offset)
                if not products:
                    break
                offset += len(products)
                updates = [
                    StockUpdatePayload(sku=p["sku"], quantity=int(p["stock_level"] or 0))
                    for p in products
                ]
                results["items_checked"] += len(updates)
                if not targets:
                    continue

                outcome = await self.sync.sync_stock_levels(updates, targets)
                results["successful"].extend(outcome["successful"])
                results["failed"].extend(outcome["failed"])
                results["items_changed"] += sum(len(s["skus"]) for s in outcome["successful"])

            errors = [f"{f['marketplace_id']}: {f['reason']}" for f in results["failed"]]
            self.db.complete_sync_log(
                sync_id,
                items_checked=results["items_checked"],
                items_changed=results["items_changed"],
                errors=errors or None,
                success=True,
            )
        except Exception as e:
            logger.error(f"在庫同期失敗: {e}")
            self.db.complete_sync_log(sync_id, 0, 0, errors=[str(e)], success=False)
            raise

        return results


class OrderFetchJob:
    """注文取得ジョブ"""

    def __init__(self, database: Database, sync_service: MarketplaceSyncService):
        self.db = database
        self.sync = sync_service

    async def run(self, days: int = 1, limit: int = 200,
                  marketplace_ids: Optional[List[str]] = None) -> Dict[str, Any]:
        """
        Returns:
            {"orders": int, "acknowledged": int, "errors": list}
        """
        factory = self.sync.factory
        targets = marketplace_ids or factory.active_marketplace_ids()
        sync_id = self.db.create_sync_log("orders", ",".join(targets) or "all")
        results: Dict[str, Any] = {"orders": 0, "acknowledged": 0, "errors": []}
        since = datetime.now() - timedelta(days=days)

        for marketplace_id in targets:
            try:
                adapter = factory.get_adapter(marketplace_id)
                orders = await adapter.fetch_orders(since=since, limit=limit)
            except Exception as e:
                error_msg = f"注文取得エラー ({marketplace_id}): {e}"
                logger.error(error_msg)
                results["errors"].append(error_msg)
                continue

            results["orders"] += len(orders)
            for order in orders:
                if order.status != OrderStatus.NEW:
                    continue
                try:
                    ack = await adapter.acknowledge_order(order.id)
                except Exception as e:
                    results["errors"].append(f"受付確認エラー ({marketplace_id} {order.id}): {e}")
                    continue
                if ack.success:
                    results["acknowledged"] += 1
                    logger.info(f"新規注文: {order.marketplace_order_id} ({marketplace_id}) "
                                f"{order.total:.2f} {order.currency}")
                else:
                    error_msg = (f"受付確認失敗 ({marketplace_id} {order.id}): "
                                 f"{ack.error.message if ack.error else 'unknown'}")
                    logger.warning(error_msg)
                    results["errors"].append(error_msg)

        self.db.complete_sync_log(
            sync_id,
            items_checked=results["orders"],
            items_changed=results["acknowledged"],
            errors=results["errors"] or None,
            success=not results["errors"] or results["orders"] > 0,
        )
        return results
