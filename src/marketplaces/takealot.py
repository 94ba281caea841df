"""Takealot Seller API アダプター

認証: X-API-Key ヘッダー
ページネーション: page / page_size（APIは1始まり、本アダプターは0始まりで受ける）
レート制限: x-ratelimit-limit / x-ratelimit-remaining / x-ratelimit-reset

5件を超える更新はバッチAPI（POST /v2/offers/batch）に投入し、
完了までポーリングする。販売価格は整数（ランド）のみ受け付ける。
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from src.config import section
from src.marketplaces.base import MarketplaceAdapter
from src.marketplaces.errors import (
    AdapterNotInitializedError,
    AuthenticationError,
    ErrorCode,
    MarketplaceError,
    ValidationError,
    VendorRejectionError,
)
from src.marketplaces.helpers import (
    batch_operation,
    check_health,
    connection_failed,
    extract_error_message,
    is_not_found,
    map_value,
    parse_datetime,
    rate_limit_from_headers,
    require_fields,
    to_float,
    to_int,
)
from src.marketplaces.models import (
    BatchUpdateResult,
    ConnectionStatus,
    Customer,
    FailedItem,
    MarketplaceCategory,
    MarketplaceCredentials,
    MarketplaceHealth,
    MarketplaceOrder,
    MarketplaceProduct,
    OperationResult,
    OrderAcknowledgment,
    OrderItem,
    OrderStatus,
    PaginatedResponse,
    PaymentStatus,
    PriceUpdatePayload,
    ProductStatus,
    RateLimitStatus,
    StatusUpdatePayload,
    StockUpdatePayload,
    TrackingInfo,
    Warehouse,
)
from src.marketplaces.pagination import paginate
from src.marketplaces.transport import HttpTransport

logger = logging.getLogger(__name__)

CURRENCY = "ZAR"

_OFFER_STATUS = {
    "buyable": ProductStatus.ACTIVE,
    "not buyable": ProductStatus.OUT_OF_STOCK,
    "disabled by seller": ProductStatus.INACTIVE,
    "disabled by takealot": ProductStatus.INACTIVE,
}

_SALE_STATUS = {
    "inactive": OrderStatus.CANCELLED,
    "cancelled": OrderStatus.CANCELLED,
    "in progress": OrderStatus.PROCESSING,
    "processed and ready for collection": OrderStatus.PROCESSING,
    "shipped to customer": OrderStatus.SHIPPED,
    "delivery confirmed": OrderStatus.DELIVERED,
    "returned": OrderStatus.RETURNED,
}

# ProductStatus → status_action
_STATUS_ACTION = {
    ProductStatus.ACTIVE: "Re-enable",
    ProductStatus.OUT_OF_STOCK: "Re-enable",
    ProductStatus.INACTIVE: "Disable",
    ProductStatus.ARCHIVED: "Disable",
    ProductStatus.DELETED: "Disable",
    ProductStatus.DRAFT: "Disable",
}

DEFAULT_WAREHOUSE = Warehouse(id=1, name="Default Warehouse")


def _unwrap(payload: Any) -> Any:
    """{"status": ..., "data": {...}} 形式なら data を返す"""
    if isinstance(payload, dict) and isinstance(payload.get("data"), (dict, list)):
        return payload["data"]
    return payload


def _whole_rand(amount: float) -> int:
    """価格は整数ランドで送る（丸めて0になる価格は拒否）"""
    rounded = int(round(amount))
    if rounded < 1:
        raise ValidationError(f"Price too low for Takealot (whole rand): {amount}")
    return rounded


# --- ワイヤ形式 ---

@dataclass
class _TakealotOffer:
    offer_id: str
    sku: str
    title: str
    selling_price: float
    rrp: Optional[float]
    status: str
    barcode: Optional[str]
    offer_url: Optional[str]
    leadtime_stock: List[Tuple[Warehouse, int]] = field(default_factory=list)
    takealot_stock: int = 0
    date_created: Optional[datetime] = None

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "_TakealotOffer":
        leadtime = []
        for entry in data.get("leadtime_stock") or []:
            warehouse = entry.get("merchant_warehouse") or {}
            leadtime.append((
                Warehouse(id=to_int(warehouse.get("warehouse_id")),
                          name=warehouse.get("name") or ""),
                to_int(entry.get("quantity_available")),
            ))
        takealot_stock = sum(
            to_int(entry.get("quantity_available"))
            for entry in data.get("stock_at_takealot") or []
        )
        return cls(
            offer_id=str(data.get("offer_id", "")),
            sku=data.get("sku") or "",
            title=data.get("title") or "",
            selling_price=to_float(data.get("selling_price")),
            rrp=to_float(data.get("rrp"), None),
            status=data.get("status") or "",
            barcode=data.get("barcode"),
            offer_url=data.get("offer_url"),
            leadtime_stock=leadtime,
            takealot_stock=takealot_stock,
            date_created=parse_datetime(data.get("date_created")),
        )

    def to_product(self) -> MarketplaceProduct:
        price, sale_price = self.selling_price, None
        if self.rrp and self.rrp > self.selling_price:
            price, sale_price = self.rrp, self.selling_price
        return MarketplaceProduct(
            id=self.offer_id,
            sku=self.sku,
            title=self.title,
            price=price,
            sale_price=sale_price,
            rrp=self.rrp,
            currency=CURRENCY,
            stock_level=sum(qty for _, qty in self.leadtime_stock) + self.takealot_stock,
            status=map_value(self.status, _OFFER_STATUS, ProductStatus.INACTIVE),
            barcode=self.barcode,
            marketplace_url=self.offer_url,
            created_at=self.date_created,
        )


def sale_to_order(sale: Dict[str, Any]) -> MarketplaceOrder:
    """Takealot sale（1明細=1レコード）→ MarketplaceOrder"""
    quantity = to_int(sale.get("quantity"), 1)
    total = to_float(sale.get("selling_price"))
    status_text = sale.get("sale_status")
    return MarketplaceOrder(
        id=str(sale.get("order_id", "")),
        marketplace_order_id=str(sale.get("order_id", "")),
        status=map_value(status_text, _SALE_STATUS, OrderStatus.PROCESSING),
        payment_status=PaymentStatus.PAID if status_text else PaymentStatus.PENDING,
        customer=Customer(name=sale.get("customer") or "", email=""),
        items=[OrderItem(
            sku=sale.get("sku") or "",
            title=sale.get("product_title") or "",
            quantity=quantity,
            unit_price=round(total / quantity, 2) if quantity else total,
            total=total,
            product_id=str(sale["tsin"]) if sale.get("tsin") else None,
            marketplace_item_id=str(sale.get("order_item_id", "")),
        )],
        subtotal=total,
        total=total,
        currency=CURRENCY,
        shipping_status=status_text,
        fulfillment_channel=sale.get("dc"),
        created_at=parse_datetime(sale.get("order_date")),
    )


class TakealotAdapter(MarketplaceAdapter):
    """Takealot Seller APIアダプター"""

    marketplace_id = "takealot"

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Any] = asyncio.sleep,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = section(config, "marketplaces", "takealot")
        self.http_config = section(config, "http")
        self.pagination_config = section(config, "pagination")
        self.clock = clock
        self.sleep = sleep
        self._http_transport = http_transport
        self._transport: Optional[HttpTransport] = None
        self._rate_limit: Optional[RateLimitStatus] = None
        self._api_key = ""
        self.warehouses: List[Warehouse] = []

    @property
    def marketplace_name(self) -> str:
        return "Takealot"

    # --- ライフサイクル ---

    async def initialize(self, credentials: MarketplaceCredentials) -> None:
        require_fields(credentials, ["api_key"], "Takealot")
        if self._transport is not None:
            await self._transport.close()

        self._api_key = credentials["api_key"]
        self._transport = HttpTransport(
            base_url=credentials.get("base_url")
            or self.config.get("base_url", "https://seller-api.takealot.com"),
            headers=self._auth_headers,
            vendor="Takealot",
            timeout=self.http_config.get("timeout", 30.0),
            max_retries=self.http_config.get("max_retries", 3),
            backoff_base=self.http_config.get("backoff_base", 1.0),
            backoff_cap=self.http_config.get("backoff_cap", 30.0),
            sleep=self.sleep,
            on_response=self._record_rate_limit,
            transport=self._http_transport,
        )

        try:
            await self._transport.get_json("/v2/offers/count")
        except AuthenticationError:
            raise
        except MarketplaceError as e:
            raise AuthenticationError(f"Takealot handshake failed: {e.message}") from e
        self.warehouses = await self._fetch_warehouses()
        logger.info(f"Takealot初期化完了: 倉庫{len(self.warehouses)}件")

    async def _auth_headers(self) -> Dict[str, str]:
        return {"X-API-Key": self._api_key}

    async def ensure_authenticated(self) -> None:
        self._http()

    def _http(self) -> HttpTransport:
        if self._transport is None:
            raise AdapterNotInitializedError("Takealot adapter is not initialized")
        return self._transport

    def _record_rate_limit(self, response: httpx.Response) -> None:
        status = rate_limit_from_headers(
            response.headers, self.clock(),
            limit_header="x-ratelimit-limit",
            remaining_header="x-ratelimit-remaining",
            reset_header="x-ratelimit-reset",
        )
        if status is not None:
            self._rate_limit = status

    def get_rate_limit_status(self) -> RateLimitStatus:
        if self._rate_limit is None:
            return RateLimitStatus(remaining=100, reset=self.clock(), limit=100)
        return self._rate_limit

    async def _fetch_warehouses(self) -> List[Warehouse]:
        """先頭オファーの leadtime_stock から出荷倉庫を推定"""
        try:
            data = _unwrap(await self._http().get_json(
                "/v2/offers", params={"page": 1, "page_size": 1}
            ))
        except MarketplaceError as e:
            logger.warning(f"Takealot倉庫取得失敗、デフォルト倉庫を使用: {e.message}")
            return [DEFAULT_WAREHOUSE]
        offers = data.get("offers", []) if isinstance(data, dict) else []
        warehouses: Dict[int, Warehouse] = {}
        for offer in offers[:1]:
            for warehouse, _ in _TakealotOffer.from_json(offer).leadtime_stock:
                warehouses.setdefault(warehouse.id, warehouse)
        return list(warehouses.values()) or [DEFAULT_WAREHOUSE]

    async def get_warehouses(self) -> List[Warehouse]:
        if not self.warehouses:
            self.warehouses = await self._fetch_warehouses()
        return self.warehouses

    async def test_connection(self) -> ConnectionStatus:
        try:
            await self._http().get_json("/v2/offers/count")
            return ConnectionStatus(connected=True,
                                    message="Successfully connected to Takealot API")
        except Exception as e:
            return connection_failed(e, "Takealot")

    async def get_marketplace_health(self) -> MarketplaceHealth:
        return await check_health(self)

    async def close(self) -> None:
        if self._transport is not None:
            await self._transport.close()
            self._transport = None

    # --- 商品 ---

    async def _get_offer(self, identifier: str,
                         identifier_type: str) -> Optional[_TakealotOffer]:
        try:
            data = _unwrap(await self._http().get_json(
                "/v2/offers/offer",
                params={"identifier": identifier, "identifier_type": identifier_type},
            ))
        except VendorRejectionError as e:
            if is_not_found(e):
                return None
            raise
        if not data or not isinstance(data, dict) or not data.get("offer_id"):
            return None
        return _TakealotOffer.from_json(data)

    async def _require_offer(self, sku: str) -> _TakealotOffer:
        offer = await self._get_offer(sku, "sku")
        if offer is None:
            raise VendorRejectionError(f"No product found with SKU: {sku}", status=404)
        return offer

    async def get_product_by_sku(self, sku: str) -> OperationResult[Optional[MarketplaceProduct]]:
        offer = await self._get_offer(sku, "sku")
        if offer is None:
            return OperationResult.fail(f"No product found with SKU: {sku}",
                                        ErrorCode.PRODUCT_NOT_FOUND)
        return OperationResult.ok(offer.to_product())

    async def get_product_by_id(self, product_id: str) -> OperationResult[Optional[MarketplaceProduct]]:
        if not str(product_id).isdigit():
            return OperationResult.fail(f"Invalid offer ID: {product_id}",
                                        ErrorCode.PRODUCT_NOT_FOUND)
        offer = await self._get_offer(str(product_id), "offer_id")
        if offer is None:
            return OperationResult.fail(f"No product found with ID: {product_id}",
                                        ErrorCode.PRODUCT_NOT_FOUND)
        return OperationResult.ok(offer.to_product())

    async def get_products(self, page: int = 0, page_size: int = 50,
                           filters: Optional[Dict[str, Any]] = None
                           ) -> PaginatedResponse[MarketplaceProduct]:
        page_size = min(page_size, self.config.get("max_page_size", 100))
        params: Dict[str, Any] = dict(filters or {})
        params.update({"page": page + 1, "page_size": page_size})
        data = _unwrap(await self._http().get_json("/v2/offers", params=params))
        offers = data.get("offers", []) if isinstance(data, dict) else []
        total = to_int(data.get("total_results"), len(offers)) if isinstance(data, dict) else 0
        total_pages = -(-total // page_size) if page_size else 0
        return PaginatedResponse(
            items=[_TakealotOffer.from_json(o).to_product() for o in offers],
            total=total,
            page=page,
            page_size=page_size,
            total_pages=total_pages,
            has_next_page=page < total_pages - 1,
        )

    async def fetch_products(self, limit: int = 100) -> List[MarketplaceProduct]:
        async def fetch_page(cursor, size):
            page = cursor or 0
            result = await self.get_products(page=page, page_size=self._page_size())
            return result.items, page + 1, result.has_next_page

        return await self._paginate(fetch_page, limit)

    def _page_size(self) -> int:
        # ページ番号指定のため、途中でページサイズを変えるとオフセットがずれる
        return self.config.get("max_page_size", 100)

    async def _paginate(self, fetch_page, limit: int) -> List[Any]:
        return await paginate(
            fetch_page,
            self.get_rate_limit_status,
            limit=limit,
            max_page_size=self._page_size(),
            sleep=self.sleep,
            clock=self.clock,
            threshold=self.pagination_config.get("rate_limit_threshold", 10),
            min_delay=self.pagination_config.get("min_delay", 0.5),
            burst_delay=self.pagination_config.get("burst_delay", 0.2),
        )

    def _leadtime_stock(self, quantity: int) -> List[Dict[str, Any]]:
        warehouse = (self.warehouses or [DEFAULT_WAREHOUSE])[0]
        return [{
            "merchant_warehouse": {"warehouse_id": warehouse.id,
                                   "name": warehouse.name},
            "quantity_available": max(0, int(round(quantity))),
        }]

    @staticmethod
    def _price_body(update: PriceUpdatePayload) -> Dict[str, Any]:
        if update.price is None or update.price <= 0:
            raise ValidationError("Price must be greater than zero")
        if update.sale_price is not None:
            if update.sale_price > update.price:
                raise ValidationError("Sale price cannot exceed regular price")
            return {"selling_price": _whole_rand(update.sale_price),
                    "rrp": _whole_rand(update.price)}
        return {"selling_price": _whole_rand(update.price)}

    @staticmethod
    def _status_body(update: StatusUpdatePayload) -> Dict[str, Any]:
        action = _STATUS_ACTION.get(ProductStatus(update.status))
        if action is None:
            raise ValidationError(f"Unsupported status for Takealot: {update.status}")
        return {"status_action": action}

    async def _update_offers(self, updates: List[Any],
                             build_body: Callable[[Any], Dict[str, Any]]
                             ) -> OperationResult[BatchUpdateResult]:
        """閾値以下は1件ずつPATCH、超えたらバッチAPI"""
        if len(updates) > self.config.get("batch_threshold", 5):
            try:
                return OperationResult.ok(await self._run_offer_batch(updates, build_body))
            except AuthenticationError:
                raise
            except MarketplaceError as e:
                logger.error(f"Takealot: バッチ更新失敗: {e.message}")
                return OperationResult.fail(e.message, e.code)

        async def handle(update: Any) -> None:
            body = build_body(update)
            offer = await self._require_offer(update.sku)
            response = await self._http().send_json(
                "PATCH", f"/v2/offers/offer/{offer.offer_id}", json=body
            )
            if isinstance(response, dict) and response.get("status") == "error":
                raise VendorRejectionError(extract_error_message(response))

        return await batch_operation(updates, handle, "Takealot")

    async def _run_offer_batch(self, updates: List[Any],
                               build_body: Callable[[Any], Dict[str, Any]]
                               ) -> BatchUpdateResult:
        result = BatchUpdateResult()
        offers: List[Dict[str, Any]] = []
        skus: List[str] = []
        for update in updates:
            try:
                body = build_body(update)
            except ValidationError as e:
                result.failed.append(FailedItem(sku=update.sku, reason=e.message))
                continue
            offers.append({"sku": update.sku, **body})
            skus.append(update.sku)
        if not offers:
            return result

        created = _unwrap(await self._http().send_json(
            "POST", "/v2/offers/batch", json={"offers": offers}
        ))
        batch_id = created.get("batch_id") if isinstance(created, dict) else None
        if not batch_id:
            raise VendorRejectionError("Failed to create batch update")

        batch = await self._poll_batch(batch_id)
        if batch is None:
            logger.warning(f"Takealot: バッチ{batch_id}がタイムアウト")
            result.failed.extend(FailedItem(sku=sku, reason="Batch processing timed out")
                                 for sku in skus)
            return result

        by_index = {to_int(r.get("index"), -1): r for r in batch.get("result") or []}
        for index, sku in enumerate(skus):
            item = by_index.get(index)
            if item is None:
                result.failed.append(FailedItem(
                    sku=sku, reason="No result for this item in batch response"))
            elif item.get("errors"):
                result.failed.append(FailedItem(
                    sku=sku,
                    reason=", ".join(e.get("message", "") for e in item["errors"]),
                ))
            else:
                result.successful.append(sku)
        return result

    async def _poll_batch(self, batch_id: str) -> Optional[Dict[str, Any]]:
        """バッチ完了（status.code が 200 または 400以上）までポーリング"""
        interval = self.config.get("batch_poll_interval", 5.0)
        for _ in range(self.config.get("batch_poll_attempts", 12)):
            await self.sleep(interval)
            try:
                batch = _unwrap(await self._http().get_json(f"/v2/offers/batch/{batch_id}"))
            except AuthenticationError:
                raise
            except MarketplaceError as e:
                logger.warning(f"Takealot: バッチ状態取得失敗 {batch_id}: {e.message}")
                continue
            code = to_int((batch.get("status") or {}).get("code")) if isinstance(batch, dict) else 0
            if code == 200 or code >= 400:
                return batch
        return None

    async def update_stock(self, updates: List[StockUpdatePayload]
                           ) -> OperationResult[BatchUpdateResult]:
        def body(update: StockUpdatePayload) -> Dict[str, Any]:
            if update.quantity < 0:
                raise ValidationError("Stock quantity cannot be negative")
            return {"leadtime_stock": self._leadtime_stock(update.quantity)}

        if not self.warehouses:
            await self.get_warehouses()
        return await self._update_offers(updates, body)

    async def update_prices(self, updates: List[PriceUpdatePayload]
                            ) -> OperationResult[BatchUpdateResult]:
        return await self._update_offers(updates, self._price_body)

    async def update_status(self, updates: List[StatusUpdatePayload]
                            ) -> OperationResult[BatchUpdateResult]:
        return await self._update_offers(updates, self._status_body)

    async def get_categories(self) -> OperationResult[List[MarketplaceCategory]]:
        return OperationResult.fail(
            "Takealot does not expose a category listing API",
            ErrorCode.OPERATION_NOT_SUPPORTED,
        )

    # --- 注文 ---

    async def get_orders(self, since: Optional[datetime] = None, page: int = 0,
                         page_size: int = 50) -> PaginatedResponse[MarketplaceOrder]:
        page_size = min(page_size, self.config.get("max_page_size", 100))
        params: Dict[str, Any] = {"page": page + 1, "page_size": page_size}
        if since is not None:
            params["from_date"] = since.strftime("%Y-%m-%d")
        data = _unwrap(await self._http().get_json("/v1/sales", params=params))
        sales = data.get("sales", []) if isinstance(data, dict) else []
        summary = data.get("page_summary", {}) if isinstance(data, dict) else {}
        total = to_int(summary.get("total"), len(sales))
        total_pages = -(-total // page_size) if page_size else 0
        return PaginatedResponse(
            items=[sale_to_order(s) for s in sales],
            total=total,
            page=page,
            page_size=page_size,
            total_pages=total_pages,
            has_next_page=page < total_pages - 1,
        )

    async def get_recent_orders(self, since: datetime, page: int = 0,
                                page_size: int = 50) -> PaginatedResponse[MarketplaceOrder]:
        return await self.get_orders(since=since, page=page, page_size=page_size)

    async def fetch_orders(self, since: Optional[datetime] = None,
                           limit: int = 100) -> List[MarketplaceOrder]:
        async def fetch_page(cursor, size):
            page = cursor or 0
            result = await self.get_orders(since=since, page=page,
                                           page_size=self._page_size())
            return result.items, page + 1, result.has_next_page

        return await self._paginate(fetch_page, limit)

    async def get_order_by_id(self, order_id: str) -> OperationResult[MarketplaceOrder]:
        if not str(order_id).isdigit():
            return OperationResult.fail(f"Invalid order ID: {order_id}",
                                        ErrorCode.ORDER_NOT_FOUND)
        data = _unwrap(await self._http().get_json(
            "/v1/sales", params={"order_id": int(order_id)}
        ))
        sales = data.get("sales", []) if isinstance(data, dict) else []
        if not sales:
            return OperationResult.fail(f"Order not found: {order_id}",
                                        ErrorCode.ORDER_NOT_FOUND)
        return OperationResult.ok(sale_to_order(sales[0]))

    async def acknowledge_order(self, order_id: str) -> OperationResult[OrderAcknowledgment]:
        # Takealot側で自動確認されるため存在確認のみ
        found = await self.get_order_by_id(order_id)
        if not found.success:
            return OperationResult.fail(
                f"Cannot acknowledge order: {order_id} - Order not found",
                ErrorCode.ORDER_NOT_FOUND,
            )
        return OperationResult.ok(OrderAcknowledgment(
            order_id=str(order_id), success=True, timestamp=datetime.now(),
        ))

    async def update_order_status(self, order_id: str, status: OrderStatus,
                                  tracking: Optional[TrackingInfo] = None
                                  ) -> OperationResult[Dict[str, Any]]:
        return OperationResult.fail(
            "Takealot does not support updating order status via API",
            ErrorCode.OPERATION_NOT_SUPPORTED,
        )
