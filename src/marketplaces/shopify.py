"""Shopify Admin REST API アダプター

認証: X-Shopify-Access-Token（オフライントークン、期限なし）
ページネーション: Linkヘッダーの page_info カーソル
レート制限: X-Shopify-Shop-Api-Call-Limit（"使用数/上限" のリーキーバケット）

商品IDは "{product_id}-{variant_id}" 形式。SKUはバリアント単位。
Shopifyの price は実売価格、compare_at_price は取り消し線の定価（RRP）。
"""

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

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
    is_not_found,
    iso_utc,
    map_value,
    parse_datetime,
    require_fields,
    to_float,
    to_int,
)
from src.marketplaces.models import (
    Address,
    BatchUpdateResult,
    ConnectionStatus,
    Customer,
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
)
from src.marketplaces.pagination import CursorChain, paginate
from src.marketplaces.transport import HttpTransport

logger = logging.getLogger(__name__)

# ProductStatus → Shopify product.status
SHOPIFY_STATUS = {
    ProductStatus.ACTIVE: "active",
    ProductStatus.INACTIVE: "archived",
    ProductStatus.DRAFT: "draft",
    ProductStatus.ARCHIVED: "archived",
}

_PRODUCT_STATUS = {
    "active": ProductStatus.ACTIVE,
    "archived": ProductStatus.INACTIVE,
    "draft": ProductStatus.DRAFT,
}

_PAYMENT_STATUS = {
    "paid": PaymentStatus.PAID,
    "pending": PaymentStatus.PENDING,
    "authorized": PaymentStatus.PENDING,
    "partially_paid": PaymentStatus.PARTIALLY_PAID,
    "refunded": PaymentStatus.REFUNDED,
    "partially_refunded": PaymentStatus.PARTIALLY_REFUNDED,
    "voided": PaymentStatus.FAILED,
}

_NEXT_LINK = re.compile(r'<([^>]+)>;\s*rel="next"')
_PAGE_INFO = re.compile(r"[?&]page_info=([^&>]+)")

# バケット容量（Shopify標準プラン）
DEFAULT_BUCKET_SIZE = 40


def extract_next_page_info(link_header: Optional[str]) -> Optional[str]:
    """Linkヘッダーから rel="next" の page_info を取り出す"""
    if not link_header:
        return None
    match = _NEXT_LINK.search(link_header)
    if not match:
        return None
    info = _PAGE_INFO.search(match.group(1))
    return info.group(1) if info else None


def _normalize_domain(shop_domain: str) -> str:
    domain = shop_domain.strip().lower()
    domain = re.sub(r"^https?://", "", domain).rstrip("/")
    if "." not in domain:
        domain = f"{domain}.myshopify.com"
    return domain


# --- ワイヤ形式（Shopify JSON → 型付き構造） ---

@dataclass
class _ShopifyVariant:
    id: str
    product_id: str
    sku: str
    title: str
    price: float
    compare_at_price: Optional[float]
    inventory_quantity: int
    inventory_item_id: Optional[str]
    barcode: Optional[str]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "_ShopifyVariant":
        item_id = data.get("inventory_item_id")
        return cls(
            id=str(data.get("id", "")),
            product_id=str(data.get("product_id", "")),
            sku=data.get("sku") or "",
            title=data.get("title") or "",
            price=to_float(data.get("price")),
            compare_at_price=to_float(data.get("compare_at_price"), None),
            inventory_quantity=to_int(data.get("inventory_quantity")),
            inventory_item_id=str(item_id) if item_id else None,
            barcode=data.get("barcode"),
            created_at=parse_datetime(data.get("created_at")),
            updated_at=parse_datetime(data.get("updated_at")),
        )


@dataclass
class _ShopifyProduct:
    id: str
    title: str
    status: str
    handle: str
    product_type: str
    variants: List[_ShopifyVariant] = field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "_ShopifyProduct":
        return cls(
            id=str(data.get("id", "")),
            title=data.get("title") or "",
            status=data.get("status") or "active",
            handle=data.get("handle") or "",
            product_type=data.get("product_type") or "",
            variants=[_ShopifyVariant.from_json(v) for v in data.get("variants", [])],
            created_at=parse_datetime(data.get("created_at")),
            updated_at=parse_datetime(data.get("updated_at")),
        )


def _address_from_json(data: Optional[Dict[str, Any]]) -> Optional[Address]:
    if not data:
        return None
    return Address(
        line1=data.get("address1") or "",
        line2=data.get("address2"),
        city=data.get("city") or "",
        state=data.get("province_code") or data.get("province"),
        postal_code=data.get("zip"),
        country=data.get("country_code") or data.get("country") or "",
        name=data.get("name"),
        company=data.get("company"),
        phone=data.get("phone"),
    )


def _order_status(data: Dict[str, Any]) -> OrderStatus:
    if data.get("cancelled_at"):
        return OrderStatus.CANCELLED
    if data.get("financial_status") == "refunded":
        return OrderStatus.REFUNDED
    fulfillment = data.get("fulfillment_status")
    if fulfillment == "fulfilled":
        return OrderStatus.SHIPPED
    if fulfillment == "partial":
        return OrderStatus.PARTIALLY_SHIPPED
    return OrderStatus.NEW


def order_from_json(data: Dict[str, Any]) -> MarketplaceOrder:
    """Shopify order JSON → MarketplaceOrder"""
    customer_data = data.get("customer") or {}
    name = " ".join(
        part for part in (customer_data.get("first_name"),
                          customer_data.get("last_name")) if part
    )
    items = []
    for line in data.get("line_items", []):
        quantity = to_int(line.get("quantity"))
        unit_price = to_float(line.get("price"))
        items.append(OrderItem(
            sku=line.get("sku") or "",
            title=line.get("title") or "",
            quantity=quantity,
            unit_price=unit_price,
            total=round(unit_price * quantity - to_float(line.get("total_discount")), 2),
            product_id=str(line["product_id"]) if line.get("product_id") else None,
            marketplace_item_id=str(line.get("id", "")),
        ))
    shipping_cost = sum(to_float(s.get("price")) for s in data.get("shipping_lines", []))

    return MarketplaceOrder(
        id=str(data.get("id", "")),
        marketplace_order_id=str(data.get("name") or data.get("order_number") or data.get("id", "")),
        status=_order_status(data),
        payment_status=map_value(data.get("financial_status"), _PAYMENT_STATUS,
                                 PaymentStatus.PENDING),
        customer=Customer(
            name=name,
            email=customer_data.get("email") or data.get("email") or "",
            phone=customer_data.get("phone") or data.get("phone"),
            id=str(customer_data["id"]) if customer_data.get("id") else None,
        ),
        items=items,
        subtotal=to_float(data.get("subtotal_price")),
        shipping_cost=shipping_cost,
        tax=to_float(data.get("total_tax")),
        total=to_float(data.get("total_price")),
        currency=data.get("currency") or "USD",
        shipping_address=_address_from_json(data.get("shipping_address")),
        billing_address=_address_from_json(data.get("billing_address")),
        shipping_status=data.get("fulfillment_status"),
        created_at=parse_datetime(data.get("created_at")),
        updated_at=parse_datetime(data.get("updated_at")),
    )


class ShopifyAdapter(MarketplaceAdapter):
    """Shopify Admin REST APIアダプター"""

    marketplace_id = "shopify"

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Any] = asyncio.sleep,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = section(config, "marketplaces", "shopify")
        self.http_config = section(config, "http")
        self.pagination_config = section(config, "pagination")
        self.clock = clock
        self.sleep = sleep
        self._http_transport = http_transport
        self._transport: Optional[HttpTransport] = None
        self._rate_limit: Optional[RateLimitStatus] = None
        self._cursors: Dict[str, CursorChain] = {}
        self.shop_domain: Optional[str] = None
        self.location_id: Optional[str] = None
        self.currency = "USD"
        self._access_token = ""

    @property
    def marketplace_name(self) -> str:
        return "Shopify"

    # --- ライフサイクル ---

    async def initialize(self, credentials: MarketplaceCredentials) -> None:
        require_fields(credentials, ["shop_domain", "access_token"], "Shopify")
        if self._transport is not None:
            await self._transport.close()

        self.shop_domain = _normalize_domain(credentials["shop_domain"])
        self._access_token = credentials["access_token"]
        self.location_id = credentials.get("location_id")
        api_version = credentials.get("api_version") or self.config.get("api_version", "2024-01")
        self._cursors = {}
        self._transport = HttpTransport(
            base_url=f"https://{self.shop_domain}/admin/api/{api_version}",
            headers=self._auth_headers,
            vendor="Shopify",
            timeout=self.http_config.get("timeout", 30.0),
            max_retries=self.http_config.get("max_retries", 3),
            backoff_base=self.http_config.get("backoff_base", 1.0),
            backoff_cap=self.http_config.get("backoff_cap", 30.0),
            sleep=self.sleep,
            on_response=self._record_rate_limit,
            transport=self._http_transport,
        )

        try:
            shop = (await self._transport.get_json("/shop.json")).get("shop", {})
        except AuthenticationError:
            raise
        except MarketplaceError as e:
            raise AuthenticationError(f"Shopify handshake failed: {e.message}") from e
        self.currency = shop.get("currency") or self.currency
        logger.info(f"Shopify初期化完了: {self.shop_domain}")

    async def _auth_headers(self) -> Dict[str, str]:
        return {
            "X-Shopify-Access-Token": self._access_token,
            "Content-Type": "application/json",
        }

    async def ensure_authenticated(self) -> None:
        # オフライントークンは失効しないため初期化済みかのみ確認
        self._http()

    def _http(self) -> HttpTransport:
        if self._transport is None:
            raise AdapterNotInitializedError("Shopify adapter is not initialized")
        return self._transport

    def _record_rate_limit(self, response: httpx.Response) -> None:
        header = response.headers.get("x-shopify-shop-api-call-limit")
        if not header or "/" not in header:
            return
        used, limit = (to_int(part) for part in header.split("/", 1))
        self._rate_limit = RateLimitStatus(
            remaining=max(limit - used, 0),
            reset=self.clock() + 1.0,
            limit=limit,
        )

    def get_rate_limit_status(self) -> RateLimitStatus:
        if self._rate_limit is None:
            return RateLimitStatus(
                remaining=DEFAULT_BUCKET_SIZE, reset=self.clock(),
                limit=DEFAULT_BUCKET_SIZE,
            )
        return self._rate_limit

    async def test_connection(self) -> ConnectionStatus:
        try:
            shop = (await self._http().get_json("/shop.json")).get("shop", {})
            return ConnectionStatus(
                connected=True,
                message=f"Connected to Shopify store {shop.get('name') or self.shop_domain}",
            )
        except Exception as e:
            return connection_failed(e, "Shopify")

    async def get_marketplace_health(self) -> MarketplaceHealth:
        return await check_health(self)

    async def close(self) -> None:
        if self._transport is not None:
            await self._transport.close()
            self._transport = None

    # --- 商品 ---

    def _to_product(self, product: _ShopifyProduct,
                    variant: _ShopifyVariant) -> MarketplaceProduct:
        title = product.title
        if variant.title and variant.title != "Default Title":
            title = f"{product.title} - {variant.title}"
        price, sale_price = variant.price, None
        if variant.compare_at_price and variant.compare_at_price > variant.price:
            price, sale_price = variant.compare_at_price, variant.price
        return MarketplaceProduct(
            id=f"{product.id}-{variant.id}",
            sku=variant.sku,
            title=title,
            price=price,
            sale_price=sale_price,
            rrp=variant.compare_at_price,
            currency=self.currency,
            stock_level=variant.inventory_quantity,
            status=_PRODUCT_STATUS.get(product.status, ProductStatus.INACTIVE),
            barcode=variant.barcode,
            marketplace_url=f"https://{self.shop_domain}/products/{product.handle}",
            category_id=product.product_type or None,
            created_at=variant.created_at or product.created_at,
            updated_at=variant.updated_at or product.updated_at,
        )

    async def _products_page(self, cursor: Optional[str], limit: int,
                              filters: Optional[Dict[str, Any]] = None
                              ) -> Tuple[List[_ShopifyProduct], Optional[str]]:
        """products.jsonを1ページ取得（page_info指定時はフィルタ不可）"""
        params: Dict[str, Any] = {"limit": limit}
        if cursor:
            params["page_info"] = cursor
        elif filters:
            params.update(filters)
        response = await self._http().get("/products.json", params=params)
        products = [_ShopifyProduct.from_json(p) for p in response.json().get("products", [])]
        return products, extract_next_page_info(response.headers.get("link"))

    async def _scan_variants(self, skus: Set[str]
                             ) -> Dict[str, Tuple[_ShopifyProduct, _ShopifyVariant]]:
        """全商品を走査してSKU→(商品, バリアント)を引く（全件見つかれば打ち切り）"""
        found: Dict[str, Tuple[_ShopifyProduct, _ShopifyVariant]] = {}
        cursor = None
        while True:
            products, cursor = await self._products_page(cursor, 250)
            for product in products:
                for variant in product.variants:
                    if variant.sku in skus and variant.sku not in found:
                        found[variant.sku] = (product, variant)
            if not cursor or len(found) == len(skus):
                return found

    def _variant_lookup(self, skus: List[str]):
        """バッチ内で1回だけ走査するSKU検索関数を返す"""
        index: Dict[str, Any] = {}

        async def lookup(sku: str) -> Tuple[_ShopifyProduct, _ShopifyVariant]:
            if "found" not in index:
                index["found"] = await self._scan_variants(set(skus))
            match = index["found"].get(sku)
            if match is None:
                raise VendorRejectionError(f"Product with SKU {sku} not found", status=404)
            return match

        return lookup

    async def get_product_by_sku(self, sku: str) -> OperationResult[Optional[MarketplaceProduct]]:
        found = await self._scan_variants({sku})
        if sku not in found:
            return OperationResult.fail(
                f"Product with SKU {sku} not found", ErrorCode.PRODUCT_NOT_FOUND
            )
        return OperationResult.ok(self._to_product(*found[sku]))

    async def get_product_by_id(self, product_id: str) -> OperationResult[Optional[MarketplaceProduct]]:
        base_id, _, variant_id = str(product_id).partition("-")
        try:
            data = await self._http().get_json(f"/products/{base_id}.json")
        except VendorRejectionError as e:
            if is_not_found(e):
                return OperationResult.fail(
                    f"Product with ID {product_id} not found", ErrorCode.PRODUCT_NOT_FOUND
                )
            raise
        product = _ShopifyProduct.from_json(data.get("product", {}))
        variants = product.variants
        if variant_id:
            variants = [v for v in variants if v.id == variant_id]
        if not variants:
            return OperationResult.fail(
                f"Product with ID {product_id} not found", ErrorCode.PRODUCT_NOT_FOUND
            )
        return OperationResult.ok(self._to_product(product, variants[0]))

    async def get_products(self, page: int = 0, page_size: int = 50,
                           filters: Optional[Dict[str, Any]] = None
                           ) -> PaginatedResponse[MarketplaceProduct]:
        page_size = min(page_size, self.config.get("max_page_size", 250))
        filters = dict(filters or {})
        chain_key = f"products:{page_size}:{sorted(filters.items())}"
        chain = self._cursors.setdefault(chain_key, CursorChain())

        async def next_cursor_of(cursor):
            _, next_cursor = await self._products_page(cursor, page_size, filters)
            return next_cursor

        found, cursor = await chain.resolve(page, next_cursor_of)
        count = await self._http().get_json("/products/count.json", params=filters)
        total = to_int(count.get("count"))
        total_pages = -(-total // page_size) if page_size else 0
        if not found:
            return PaginatedResponse(items=[], total=total, page=page,
                                     page_size=page_size, total_pages=total_pages)

        products, next_cursor = await self._products_page(cursor, page_size, filters)
        chain.remember(page, next_cursor)
        items = [self._to_product(p, v) for p in products for v in p.variants]
        return PaginatedResponse(
            items=items,
            total=total,
            page=page,
            page_size=page_size,
            total_pages=total_pages,
            has_next_page=bool(next_cursor),
            next_page_token=next_cursor,
        )

    async def fetch_products(self, limit: int = 100) -> List[MarketplaceProduct]:
        async def fetch_page(cursor, size):
            products, next_cursor = await self._products_page(cursor, size)
            items = [self._to_product(p, v) for p in products for v in p.variants]
            return items, next_cursor, bool(next_cursor)

        return await self._paginate(fetch_page, limit)

    async def _paginate(self, fetch_page, limit: int) -> List[Any]:
        return await paginate(
            fetch_page,
            self.get_rate_limit_status,
            limit=limit,
            max_page_size=self.config.get("max_page_size", 250),
            sleep=self.sleep,
            clock=self.clock,
            threshold=self.pagination_config.get("rate_limit_threshold", 10),
            min_delay=self.pagination_config.get("min_delay", 0.5),
            burst_delay=self.pagination_config.get("burst_delay", 0.2),
        )

    async def _default_location(self) -> str:
        """在庫更新先ロケーション（認証情報で未指定なら最初の有効ロケーション）"""
        if self.location_id:
            return str(self.location_id)
        data = await self._http().get_json("/locations.json")
        for location in data.get("locations", []):
            if location.get("active", True):
                self.location_id = str(location["id"])
                return self.location_id
        raise VendorRejectionError("No active Shopify location found")

    async def update_stock(self, updates: List[StockUpdatePayload]
                           ) -> OperationResult[BatchUpdateResult]:
        lookup = self._variant_lookup([u.sku for u in updates])

        async def handle(update: StockUpdatePayload) -> None:
            if update.quantity < 0:
                raise ValidationError("Stock quantity cannot be negative")
            _, variant = await lookup(update.sku)
            inventory_item_id = variant.inventory_item_id
            if not inventory_item_id:
                data = await self._http().get_json(f"/variants/{variant.id}.json")
                inventory_item_id = data.get("variant", {}).get("inventory_item_id")
            if not inventory_item_id:
                raise VendorRejectionError(f"Variant for SKU {update.sku} has no inventory item")
            location_id = update.location_id or await self._default_location()
            await self._http().send_json("POST", "/inventory_levels/set.json", json={
                "location_id": int(location_id),
                "inventory_item_id": int(inventory_item_id),
                "available": update.quantity,
            })

        return await batch_operation(updates, handle, "Shopify")

    async def update_prices(self, updates: List[PriceUpdatePayload]
                            ) -> OperationResult[BatchUpdateResult]:
        lookup = self._variant_lookup([u.sku for u in updates])

        async def handle(update: PriceUpdatePayload) -> None:
            if update.price is None or update.price <= 0:
                raise ValidationError("Price must be greater than zero")
            if update.sale_price is not None and update.sale_price > update.price:
                raise ValidationError("Sale price cannot exceed regular price")
            _, variant = await lookup(update.sku)
            # 通常価格=compare_at_price、セール価格=price
            if update.sale_price is not None:
                body = {"id": int(variant.id), "price": f"{update.sale_price:.2f}",
                        "compare_at_price": f"{update.price:.2f}"}
            else:
                body = {"id": int(variant.id), "price": f"{update.price:.2f}",
                        "compare_at_price": None}
            await self._http().send_json("PUT", f"/variants/{variant.id}.json",
                                         json={"variant": body})

        return await batch_operation(updates, handle, "Shopify")

    async def update_status(self, updates: List[StatusUpdatePayload]
                            ) -> OperationResult[BatchUpdateResult]:
        lookup = self._variant_lookup([u.sku for u in updates])

        async def handle(update: StatusUpdatePayload) -> None:
            shopify_status = SHOPIFY_STATUS.get(ProductStatus(update.status))
            if shopify_status is None:
                raise ValidationError(f"Unsupported status for Shopify: {update.status}")
            product, _ = await lookup(update.sku)
            await self._http().send_json("PUT", f"/products/{product.id}.json", json={
                "product": {"id": int(product.id), "status": shopify_status},
            })

        return await batch_operation(updates, handle, "Shopify")

    async def get_categories(self) -> OperationResult[List[MarketplaceCategory]]:
        data = await self._http().get_json("/custom_collections.json", params={"limit": 250})
        categories = [
            MarketplaceCategory(id=str(c.get("id")), name=c.get("title") or "",
                                path=c.get("handle"))
            for c in data.get("custom_collections", [])
        ]
        return OperationResult.ok(categories)

    # --- 注文 ---

    def _order_params(self, since: Optional[datetime]) -> Dict[str, Any]:
        params: Dict[str, Any] = {"status": "any"}
        if since is not None:
            params["updated_at_min"] = iso_utc(since)
        return params

    async def _orders_page(self, cursor: Optional[str], limit: int,
                           since: Optional[datetime]) -> Tuple[List[MarketplaceOrder], Optional[str]]:
        params: Dict[str, Any] = {"limit": limit}
        if cursor:
            params["page_info"] = cursor
        else:
            params.update(self._order_params(since))
        response = await self._http().get("/orders.json", params=params)
        orders = [order_from_json(o) for o in response.json().get("orders", [])]
        return orders, extract_next_page_info(response.headers.get("link"))

    async def get_orders(self, since: Optional[datetime] = None, page: int = 0,
                         page_size: int = 50) -> PaginatedResponse[MarketplaceOrder]:
        page_size = min(page_size, self.config.get("max_page_size", 250))
        chain_key = f"orders:{page_size}:{since.isoformat() if since else ''}"
        chain = self._cursors.setdefault(chain_key, CursorChain())

        async def next_cursor_of(cursor):
            _, next_cursor = await self._orders_page(cursor, page_size, since)
            return next_cursor

        found, cursor = await chain.resolve(page, next_cursor_of)
        count = await self._http().get_json("/orders/count.json",
                                            params=self._order_params(since))
        total = to_int(count.get("count"))
        total_pages = -(-total // page_size) if page_size else 0
        if not found:
            return PaginatedResponse(items=[], total=total, page=page,
                                     page_size=page_size, total_pages=total_pages)

        orders, next_cursor = await self._orders_page(cursor, page_size, since)
        chain.remember(page, next_cursor)
        return PaginatedResponse(
            items=orders, total=total, page=page, page_size=page_size,
            total_pages=total_pages, has_next_page=bool(next_cursor),
            next_page_token=next_cursor,
        )

    async def get_recent_orders(self, since: datetime, page: int = 0,
                                page_size: int = 50) -> PaginatedResponse[MarketplaceOrder]:
        return await self.get_orders(since=since, page=page, page_size=page_size)

    async def fetch_orders(self, since: Optional[datetime] = None,
                           limit: int = 100) -> List[MarketplaceOrder]:
        async def fetch_page(cursor, size):
            orders, next_cursor = await self._orders_page(cursor, size, since)
            return orders, next_cursor, bool(next_cursor)

        return await self._paginate(fetch_page, limit)

    async def _get_order_json(self, order_id: str) -> Optional[Dict[str, Any]]:
        try:
            data = await self._http().get_json(f"/orders/{order_id}.json")
        except VendorRejectionError as e:
            if is_not_found(e):
                return None
            raise
        return data.get("order") or None

    async def get_order_by_id(self, order_id: str) -> OperationResult[MarketplaceOrder]:
        data = await self._get_order_json(order_id)
        if data is None:
            return OperationResult.fail(f"Order with ID {order_id} not found",
                                        ErrorCode.ORDER_NOT_FOUND)
        return OperationResult.ok(order_from_json(data))

    async def acknowledge_order(self, order_id: str) -> OperationResult[OrderAcknowledgment]:
        data = await self._get_order_json(order_id)
        if data is None:
            return OperationResult.fail(f"Order with ID {order_id} not found",
                                        ErrorCode.ORDER_NOT_FOUND)
        tags = [t.strip() for t in (data.get("tags") or "").split(",") if t.strip()]
        if "acknowledged" not in tags:
            tags.append("acknowledged")
        try:
            await self._http().send_json("PUT", f"/orders/{order_id}.json", json={
                "order": {"id": int(order_id), "tags": ", ".join(tags)},
            })
        except VendorRejectionError as e:
            return OperationResult.fail(e.message, ErrorCode.VENDOR_REJECTED)
        return OperationResult.ok(OrderAcknowledgment(
            order_id=str(order_id), success=True, timestamp=datetime.now(),
        ))

    async def update_order_status(self, order_id: str, status: OrderStatus,
                                  tracking: Optional[TrackingInfo] = None
                                  ) -> OperationResult[Dict[str, Any]]:
        status = OrderStatus(status)
        try:
            if status == OrderStatus.CANCELLED:
                await self._http().send_json("POST", f"/orders/{order_id}/cancel.json", json={})
            elif status in (OrderStatus.SHIPPED, OrderStatus.DELIVERED) and tracking:
                location_id = await self._default_location()
                await self._http().send_json(
                    "POST", f"/orders/{order_id}/fulfillments.json",
                    json={"fulfillment": {
                        "location_id": int(location_id),
                        "tracking_number": tracking.tracking_number,
                        "tracking_company": tracking.carrier,
                        "notify_customer": True,
                    }},
                )
            else:
                await self._http().send_json("PUT", f"/orders/{order_id}.json", json={
                    "order": {"id": int(order_id), "note": f"Status updated to {status.value}"},
                })
        except VendorRejectionError as e:
            if is_not_found(e):
                return OperationResult.fail(f"Order with ID {order_id} not found",
                                            ErrorCode.ORDER_NOT_FOUND)
            return OperationResult.fail(e.message, ErrorCode.VENDOR_REJECTED)
        return OperationResult.ok({"order_id": str(order_id), "status": status.value})
