"""商品更新のマーケットプレイスへのプッシュ

DB上の1商品について、価格・在庫・ステータスの部分更新を1マーケットプレイスに送る。
フィールドごとにアダプターを1回呼び（価格 → 在庫 → ステータスの順）、
結果を操作履歴に1件ずつ記録する。リトライはしない。
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from src.auth.credentials import CredentialManager
from src.db.database import Database
from src.marketplaces.errors import MarketplaceError, ProductNotFoundError, ValidationError
from src.marketplaces.factory import AdapterFactory
from src.marketplaces.models import (
    BatchUpdateResult,
    OperationResult,
    PriceUpdatePayload,
    ProductStatus,
    StatusUpdatePayload,
    StockUpdatePayload,
)

logger = logging.getLogger(__name__)

PUSHABLE_STATUSES = {
    ProductStatus.ACTIVE,
    ProductStatus.INACTIVE,
    ProductStatus.DRAFT,
    ProductStatus.ARCHIVED,
}

# details のキー → 操作履歴の type
ACTIVITY_TYPES = {
    "price": "price_update_push",
    "stock": "stock_update_push",
    "status": "status_update_push",
}

MSG_ALL_OK = "All requested updates were pushed successfully"
MSG_PARTIAL = "Some updates were pushed successfully, but others failed"
MSG_FAILED = "Failed to push updates to marketplace"


def build_price_payload(sku: str, price: Optional[float], rrp: Optional[float],
                        current_price: Optional[float] = None) -> PriceUpdatePayload:
    """RRPがあれば通常価格=RRP、販売価格=セール価格として組み立てる

    RRPだけの更新では販売価格に登録済みの価格を使う。
    """
    if rrp is not None:
        sale_price = price if price is not None else current_price
        return PriceUpdatePayload(
            sku=sku, price=rrp,
            sale_price=float(sale_price) if sale_price is not None else None,
        )
    return PriceUpdatePayload(sku=sku, price=price)


def classify(sku: str, result: OperationResult[BatchUpdateResult]) -> Dict[str, Any]:
    """アダプターのバッチ結果を1SKU分の {"success", "message"} に変換"""
    if not result.success:
        message = result.error.message if result.error else "Unknown error"
        return {"success": False, "message": message}
    batch = result.data or BatchUpdateResult()
    reason = batch.reason_for(sku)
    if reason is not None:
        return {"success": False, "message": reason}
    if sku in batch.successful:
        return {"success": True}
    return {"success": False, "message": f"No result returned for {sku}"}


def _validate_updates(updates: Dict[str, Any]) -> Optional[ProductStatus]:
    if not updates or all(updates.get(k) is None for k in ("price", "rrp", "stock", "status")):
        raise ValidationError("No updates provided")
    status = updates.get("status")
    if status is None:
        return None
    try:
        parsed = ProductStatus(str(status).lower())
    except ValueError:
        parsed = None
    if parsed not in PUSHABLE_STATUSES:
        raise ValidationError(
            f"Invalid status: {status}. Must be one of "
            f"{', '.join(sorted(s.value for s in PUSHABLE_STATUSES))}"
        )
    return parsed


class ProductPushService:
    """商品更新プッシュサービス"""

    def __init__(
        self,
        database: Database,
        credentials: CredentialManager,
        factory: AdapterFactory,
    ):
        self.db = database
        self.credentials = credentials
        self.factory = factory

    async def push_product_update(
        self,
        product_id: int,
        marketplace_id: str,
        user_id: str,
        updates: Dict[str, Any],
    ) -> Dict[str, Any]:
        """商品の部分更新をプッシュ

        Args:
            updates: {"price", "rrp", "stock", "status"} のうち送るものだけ

        Returns:
            {"success": bool, "message": str,
             "details": {"price": {...}, "stock": {...}, "status": {...}}}

        Raises:
            ValidationError: 更新内容が空、または不正なステータス
            ProductNotFoundError: 商品が存在しない
            CredentialsNotFoundError: 認証情報が未登録
        """
        status = _validate_updates(updates)

        product = self.db.get_product(product_id)
        if product is None:
            raise ProductNotFoundError(f"Product not found: {product_id}")
        sku = product["sku"]

        credentials = self.credentials.get_credentials(user_id, marketplace_id)
        adapter = await self.factory.create_adapter(marketplace_id, credentials)

        steps: List[Tuple[str, Any, Any]] = []
        price, rrp = updates.get("price"), updates.get("rrp")
        if price is not None or rrp is not None:
            steps.append(("price", adapter.update_prices,
                          build_price_payload(sku, price, rrp, product.get("price"))))
        if updates.get("stock") is not None:
            steps.append(("stock", adapter.update_stock,
                          StockUpdatePayload(sku=sku, quantity=int(updates["stock"]))))
        if status is not None:
            steps.append(("status", adapter.update_status,
                          StatusUpdatePayload(sku=sku, status=status)))

        details: Dict[str, Dict[str, Any]] = {}
        for field_name, call, payload in steps:
            try:
                outcome = classify(sku, await call([payload]))
            except MarketplaceError as e:
                outcome = {"success": False, "message": str(e)}
            details[field_name] = outcome
            self._log(product_id, marketplace_id, user_id, field_name,
                      _pushed_value(field_name, updates), outcome)

        succeeded = [d["success"] for d in details.values()]
        if all(succeeded):
            message = MSG_ALL_OK
            logger.info(f"プッシュ成功: product={product_id} sku={sku} → {marketplace_id}")
        elif any(succeeded):
            message = MSG_PARTIAL
            logger.warning(f"プッシュ一部失敗: product={product_id} sku={sku} → {marketplace_id}")
        else:
            message = MSG_FAILED
            logger.error(f"プッシュ失敗: product={product_id} sku={sku} → {marketplace_id}")

        return {"success": all(succeeded), "message": message, "details": details}

    def _log(self, product_id: int, marketplace_id: str, user_id: str,
             field_name: str, value: Any, outcome: Dict[str, Any]) -> None:
        activity_type = ACTIVITY_TYPES[field_name]
        self.db.log_activity({
            "user_id": user_id,
            "description": f"Marketplace push: {activity_type} to {marketplace_id}",
            "entity_type": "product",
            "entity_id": product_id,
            "action": "update",
            "status": "completed" if outcome["success"] else "failed",
            "metadata": {
                "type": activity_type,
                "marketplace_id": marketplace_id,
                "value": value,
                "message": outcome.get("message"),
            },
        })


def _pushed_value(field_name: str, updates: Dict[str, Any]) -> Any:
    if field_name == "price":
        return {k: updates[k] for k in ("price", "rrp") if updates.get(k) is not None}
    return updates.get(field_name)
