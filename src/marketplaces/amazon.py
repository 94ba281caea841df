"""Amazon Selling Partner API (SP-API) アダプター

認証: LWA (Login with Amazon) の refresh_token → アクセストークン
      以降 x-amz-access-token ヘッダーで各APIを呼ぶ
ページネーション: Orders API は NextToken、Listings API は pageToken
レート制限: APIセクション（orders / listings / fba / pricing / finances）ごとに
            x-amzn-RateLimit-Limit 等のヘッダーを記録し、最も厳しい値を返す

FBA商品の在庫はAmazon側で管理されるため、在庫更新はFBM（自社出荷）のみ対象。
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import quote

import httpx

from src.auth.oauth_manager import OAuthTokenManager
from src.config import section
from src.marketplaces.amazon_finances import AmazonFinances
from src.marketplaces.amazon_pricing import AmazonPricing
from src.marketplaces.base import MarketplaceAdapter
from src.marketplaces.errors import (
    AdapterNotInitializedError,
    ErrorCode,
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
    rate_limit_from_headers,
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

LISTINGS_VERSION = "2021-08-01"
FBA_INVENTORY_PATH = "/fba/inventory/v1/summaries"

REGION_ENDPOINTS = {
    "na": "https://sellingpartnerapi-na.amazon.com",
    "eu": "https://sellingpartnerapi-eu.amazon.com",
    "fe": "https://sellingpartnerapi-fe.amazon.com",
}

# 国コード → (マーケットプレイスID, リージョン, 通貨)
MARKETPLACES = {
    "us": ("ATVPDKIKX0DER", "na", "USD"),
    "ca": ("A2EUQ1WTGCTBG2", "na", "CAD"),
    "mx": ("A1AM78C64UM0Y8", "na", "MXN"),
    "uk": ("A1F83G8C2ARO7P", "eu", "GBP"),
    "de": ("A1PA6795UKMFR9", "eu", "EUR"),
    "fr": ("A13V1IB3VIYZZH", "eu", "EUR"),
    "it": ("APJ6JRA9NG5V4", "eu", "EUR"),
    "es": ("A1RKKUPIHCS9HS", "eu", "EUR"),
    "jp": ("A1VC38T7YXB528", "fe", "JPY"),
    "au": ("A39IBJ37TRP1C6", "fe", "AUD"),
}

_ORDER_STATUS = {
    "Pending": OrderStatus.NEW,
    "PendingAvailability": OrderStatus.NEW,
    "Unshipped": OrderStatus.PROCESSING,
    "InvoiceUnconfirmed": OrderStatus.PROCESSING,
    "PartiallyShipped": OrderStatus.PARTIALLY_SHIPPED,
    "Shipped": OrderStatus.SHIPPED,
    "Canceled": OrderStatus.CANCELLED,
    "Unfulfillable": OrderStatus.ON_HOLD,
}

# Listings APIの status 属性値
_LISTING_STATUS = {
    ProductStatus.ACTIVE: "BUYABLE",
    ProductStatus.INACTIVE: "INACTIVE",
    ProductStatus.ARCHIVED: "INACTIVE",
    ProductStatus.OUT_OF_STOCK: "INACTIVE",
}

FBA_REJECTION = "Stock for FBA listings is managed by Amazon"

# ヘッダー未受信時の想定残数
DEFAULT_REMAINING = 20


def api_section(path: str) -> str:
    """/orders/v0/... → "orders"、/products/pricing/... → "pricing"、/fba/inventory/... → "inventory" """
    parts = [p for p in path.split("/") if p]
    if not parts:
        return "default"
    if parts[0] in ("products", "fba") and len(parts) > 1:
        return parts[1]
    return parts[0]


# --- ワイヤ形式 ---

@dataclass
class _AmazonListing:
    sku: str
    asin: Optional[str]
    title: str
    product_type: Optional[str]
    statuses: List[str]
    price: Optional[float]
    sale_price: Optional[float]
    list_price: Optional[float]
    currency: Optional[str]
    quantity: int
    fulfillment_channels: List[str]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "_AmazonListing":
        summary = (data.get("summaries") or [{}])[0]
        offers = data.get("offers") or []
        attributes = data.get("attributes") or {}

        price = currency = None
        if offers:
            offer_price = offers[0].get("price") or {}
            price = to_float(offer_price.get("amount") or offer_price.get("Amount"), None)
            currency = offer_price.get("currencyCode") or offer_price.get("CurrencyCode")

        purchasable = (attributes.get("purchasable_offer") or [{}])[0]
        if price is None:
            price = _schedule_value(purchasable.get("our_price"))
            currency = currency or purchasable.get("currency")
        sale_price = _schedule_value(purchasable.get("discounted_price"))
        list_price = to_float(((attributes.get("list_price") or [{}])[0]).get("value"), None)

        availability = data.get("fulfillmentAvailability") or []
        return cls(
            sku=data.get("sku") or "",
            asin=summary.get("asin"),
            title=summary.get("itemName") or "",
            product_type=summary.get("productType"),
            statuses=list(summary.get("status") or []),
            price=price,
            sale_price=sale_price,
            list_price=list_price,
            currency=currency,
            quantity=sum(to_int(a.get("quantity")) for a in availability),
            fulfillment_channels=[a.get("fulfillmentChannelCode") or "" for a in availability],
            created_at=parse_datetime(summary.get("createdDate")),
            updated_at=parse_datetime(summary.get("lastUpdatedDate")),
        )

    @property
    def is_fba(self) -> bool:
        return any(c and c != "DEFAULT" for c in self.fulfillment_channels)


@dataclass
class _FbaInventorySummary:
    sku: str
    fulfillable: int
    total: int

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "_FbaInventorySummary":
        details = data.get("inventoryDetails") or {}
        total = to_int(data.get("totalQuantity"))
        return cls(
            sku=data.get("sellerSku") or "",
            fulfillable=to_int(details.get("fulfillableQuantity"), total),
            total=total,
        )


def _schedule_value(entries: Optional[List[Dict[str, Any]]]) -> Optional[float]:
    """[{schedule: [{value_with_tax: 12.5}]}] から値を取り出す"""
    for entry in entries or []:
        for schedule in entry.get("schedule") or []:
            value = to_float(schedule.get("value_with_tax"), None)
            if value is not None:
                return value
    return None


@dataclass
class _AmazonOrder:
    order_id: str
    status: str
    fulfillment_channel: Optional[str]
    purchase_date: Optional[datetime]
    last_update: Optional[datetime]
    total: float
    currency: str
    buyer_name: str
    buyer_email: str
    address: Optional[Dict[str, Any]]
    items: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "_AmazonOrder":
        order_total = data.get("OrderTotal") or {}
        buyer = data.get("BuyerInfo") or {}
        return cls(
            order_id=data.get("AmazonOrderId") or "",
            status=data.get("OrderStatus") or "",
            fulfillment_channel=data.get("FulfillmentChannel"),
            purchase_date=parse_datetime(data.get("PurchaseDate")),
            last_update=parse_datetime(data.get("LastUpdateDate")),
            total=to_float(order_total),
            currency=order_total.get("CurrencyCode") or "USD",
            buyer_name=buyer.get("BuyerName") or "",
            buyer_email=buyer.get("BuyerEmail") or "",
            address=data.get("ShippingAddress"),
        )

    def to_order(self) -> MarketplaceOrder:
        items = []
        subtotal = shipping = tax = 0.0
        for item in self.items:
            quantity = to_int(item.get("QuantityOrdered"))
            line_total = to_float(item.get("ItemPrice"))
            subtotal += line_total
            shipping += to_float(item.get("ShippingPrice"))
            tax += to_float(item.get("ItemTax"))
            items.append(OrderItem(
                sku=item.get("SellerSKU") or "",
                title=item.get("Title") or "",
                quantity=quantity,
                unit_price=round(line_total / quantity, 2) if quantity else line_total,
                total=line_total,
                product_id=item.get("ASIN"),
                marketplace_item_id=item.get("OrderItemId"),
            ))

        address = None
        if self.address:
            address = Address(
                line1=self.address.get("AddressLine1") or "",
                line2=self.address.get("AddressLine2"),
                city=self.address.get("City") or "",
                state=self.address.get("StateOrRegion"),
                postal_code=self.address.get("PostalCode"),
                country=self.address.get("CountryCode") or "",
                name=self.address.get("Name"),
                phone=self.address.get("Phone"),
            )

        status = map_value(self.status, _ORDER_STATUS, OrderStatus.NEW)
        return MarketplaceOrder(
            id=self.order_id,
            marketplace_order_id=self.order_id,
            status=status,
            payment_status=(PaymentStatus.FAILED if status == OrderStatus.CANCELLED
                            else PaymentStatus.PAID),
            customer=Customer(name=self.buyer_name, email=self.buyer_email),
            items=items,
            subtotal=round(subtotal, 2),
            shipping_cost=round(shipping, 2),
            tax=round(tax, 2),
            total=self.total,
            currency=self.currency,
            shipping_address=address,
            shipping_status=self.status,
            fulfillment_channel=self.fulfillment_channel,
            created_at=self.purchase_date,
            updated_at=self.last_update,
        )


class AmazonAdapter(MarketplaceAdapter):
    """Amazon SP-APIアダプター"""

    marketplace_id = "amazon"

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Any] = asyncio.sleep,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = section(config, "marketplaces", "amazon")
        self.http_config = section(config, "http")
        self.pagination_config = section(config, "pagination")
        self.clock = clock
        self.sleep = sleep
        self._http_transport = http_transport
        self._transport: Optional[HttpTransport] = None
        self._token_transport: Optional[HttpTransport] = None
        self._token_path = ""
        self._tokens: Optional[OAuthTokenManager] = None
        self._rate_limits: Dict[str, RateLimitStatus] = {}
        self._cursors: Dict[str, CursorChain] = {}
        self._credentials: Dict[str, Any] = {}
        self.seller_id = ""
        self.amazon_marketplace_id = MARKETPLACES["us"][0]
        self.currency = "USD"

    @property
    def marketplace_name(self) -> str:
        return "Amazon"

    # --- ライフサイクル ---

    async def initialize(self, credentials: MarketplaceCredentials) -> None:
        require_fields(
            credentials, ["client_id", "client_secret", "refresh_token", "seller_id"], "Amazon"
        )
        await self.close()

        self._credentials = dict(credentials)
        self.seller_id = credentials["seller_id"]
        region = self._resolve_marketplace(credentials)
        self._cursors = {}
        self._rate_limits = {}

        token_url = httpx.URL(self.config.get("token_url", "https://api.amazon.com/auth/o2/token"))
        self._token_path = token_url.path
        self._token_transport = self._build_transport(
            f"{token_url.scheme}://{token_url.host}", vendor="Amazon LWA"
        )
        self._tokens = OAuthTokenManager(
            fetch_token=self._fetch_token, clock=self.clock, name="Amazon LWA"
        )
        endpoint = credentials.get("endpoint") or REGION_ENDPOINTS[region]
        self._transport = self._build_transport(
            endpoint,
            vendor="Amazon",
            headers=self._auth_headers,
            on_response=self._record_rate_limit,
            on_unauthorized=self._reauthenticate,
        )

        # ハンドシェイク = LWAトークン取得
        await self._tokens.ensure_valid()
        logger.info(f"Amazon初期化完了: seller={self.seller_id} "
                    f"marketplace={self.amazon_marketplace_id} region={region}")

    def _resolve_marketplace(self, credentials: MarketplaceCredentials) -> str:
        """マーケットプレイスIDとリージョンを決定（amazon_de 等の地域ヒントを考慮）"""
        hint = (credentials.get("region_hint") or "").lower()
        if hint == "gb":
            hint = "uk"
        marketplace_id = credentials.get("marketplace_id") or MARKETPLACES.get(
            hint, MARKETPLACES["us"]
        )[0]
        region, currency = self.config.get("region", "na"), "USD"
        for mp_id, mp_region, mp_currency in MARKETPLACES.values():
            if mp_id == marketplace_id:
                region, currency = mp_region, mp_currency
                break
        region = credentials.get("region") or region
        if region not in REGION_ENDPOINTS:
            raise ValidationError(f"Unknown Amazon region: {region}")
        self.amazon_marketplace_id = marketplace_id
        self.currency = currency
        return region

    def _build_transport(self, base_url: str, vendor: str, **kwargs) -> HttpTransport:
        return HttpTransport(
            base_url=base_url,
            vendor=vendor,
            timeout=self.http_config.get("timeout", 30.0),
            max_retries=self.http_config.get("max_retries", 3),
            backoff_base=self.http_config.get("backoff_base", 1.0),
            backoff_cap=self.http_config.get("backoff_cap", 30.0),
            sleep=self.sleep,
            transport=self._http_transport,
            **kwargs,
        )

    async def _fetch_token(self) -> Dict[str, Any]:
        """LWAトークンエンドポイント（grant_type=refresh_token）"""
        return await self._token_transport.send_json("POST", self._token_path, data={
            "grant_type": "refresh_token",
            "refresh_token": self._credentials["refresh_token"],
            "client_id": self._credentials["client_id"],
            "client_secret": self._credentials["client_secret"],
        })

    async def _auth_headers(self) -> Dict[str, str]:
        token = await self._token_manager().ensure_valid()
        return {"x-amz-access-token": token, "Content-Type": "application/json"}

    async def _reauthenticate(self) -> None:
        self._token_manager().invalidate()
        await self.ensure_authenticated()

    def _token_manager(self) -> OAuthTokenManager:
        if self._tokens is None:
            raise AdapterNotInitializedError("Amazon adapter is not initialized")
        return self._tokens

    async def ensure_authenticated(self) -> None:
        await self._token_manager().ensure_valid()

    @property
    def http(self) -> HttpTransport:
        """認証済みSP-APIトランスポート（finances / pricing からも使う）"""
        if self._transport is None:
            raise AdapterNotInitializedError("Amazon adapter is not initialized")
        return self._transport

    def _record_rate_limit(self, response: httpx.Response) -> None:
        status = rate_limit_from_headers(
            response.headers, self.clock(),
            limit_header="x-amzn-ratelimit-limit",
            remaining_header="x-amzn-quota-remaining",
            reset_header="x-amzn-ratelimit-reset",
        )
        if status is not None:
            self._rate_limits[api_section(response.request.url.path)] = status

    def get_rate_limit_status(self) -> RateLimitStatus:
        """最も残数の少ないAPIセクションの状態を返す"""
        if not self._rate_limits:
            return RateLimitStatus(remaining=DEFAULT_REMAINING, reset=self.clock(),
                                   limit=DEFAULT_REMAINING)
        return min(self._rate_limits.values(), key=lambda s: s.remaining)

    def rate_limit_for(self, api: str) -> Optional[RateLimitStatus]:
        return self._rate_limits.get(api)

    async def test_connection(self) -> ConnectionStatus:
        try:
            data = await self.http.get_json("/sellers/v1/marketplaceParticipations")
            count = len(data.get("payload") or [])
            return ConnectionStatus(
                connected=True,
                message=f"Connected to Amazon SP-API ({count} marketplace participations)",
            )
        except Exception as e:
            return connection_failed(e, "Amazon")

    async def get_marketplace_health(self) -> MarketplaceHealth:
        return await check_health(self)

    async def close(self) -> None:
        for transport in (self._transport, self._token_transport):
            if transport is not None:
                await transport.close()
        self._transport = None
        self._token_transport = None

    # --- 商品 ---

    def _listing_path(self, sku: Optional[str] = None) -> str:
        path = f"/listings/{LISTINGS_VERSION}/items/{self.seller_id}"
        if sku is not None:
            path += f"/{quote(sku, safe='')}"
        return path

    async def _get_listing(self, sku: str) -> Optional[_AmazonListing]:
        try:
            data = await self.http.get_json(self._listing_path(sku), params={
                "marketplaceIds": self.amazon_marketplace_id,
                "includedData": "summaries,attributes,offers,fulfillmentAvailability",
            })
        except VendorRejectionError as e:
            if is_not_found(e):
                return None
            raise
        return _AmazonListing.from_json(data)

    async def _require_listing(self, sku: str) -> _AmazonListing:
        listing = await self._get_listing(sku)
        if listing is None:
            raise VendorRejectionError(f"Product with SKU {sku} not found", status=404)
        return listing

    def _to_product(self, listing: _AmazonListing,
                    stock_level: Optional[int] = None) -> MarketplaceProduct:
        price = listing.price or 0.0
        sale_price = listing.sale_price
        if listing.list_price and listing.list_price > price and sale_price is None:
            price, sale_price = listing.list_price, price
        status = ProductStatus.ACTIVE if "BUYABLE" in listing.statuses else ProductStatus.INACTIVE
        return MarketplaceProduct(
            id=listing.asin or listing.sku,
            sku=listing.sku,
            title=listing.title or f"Amazon Product ({listing.asin or listing.sku})",
            price=price,
            sale_price=sale_price,
            rrp=listing.list_price,
            currency=listing.currency or self.currency,
            stock_level=listing.quantity if stock_level is None else stock_level,
            status=status,
            marketplace_url=f"https://www.amazon.com/dp/{listing.asin}" if listing.asin else None,
            category_id=listing.product_type,
            created_at=listing.created_at,
            updated_at=listing.updated_at,
        )

    async def get_product_by_sku(self, sku: str) -> OperationResult[Optional[MarketplaceProduct]]:
        listing = await self._get_listing(sku)
        if listing is None:
            return OperationResult.fail(f"Product with SKU {sku} not found",
                                        ErrorCode.PRODUCT_NOT_FOUND)
        stock_level = None
        if listing.is_fba:
            summary = await self._get_fba_inventory(sku)
            if summary is not None:
                stock_level = summary.fulfillable
        return OperationResult.ok(self._to_product(listing, stock_level))

    async def _get_fba_inventory(self, sku: str) -> Optional[_FbaInventorySummary]:
        """FBA在庫サマリー（販売可能数）。取得できなければNone"""
        try:
            data = await self.http.get_json(FBA_INVENTORY_PATH, params={
                "details": "true",
                "granularityType": "Marketplace",
                "granularityId": self.amazon_marketplace_id,
                "marketplaceIds": self.amazon_marketplace_id,
                "sellerSkus": sku,
            })
        except VendorRejectionError as e:
            logger.warning(f"Amazon: FBA在庫取得失敗 sku={sku}: {e.message}")
            return None
        summaries = (data.get("payload") or {}).get("inventorySummaries") or []
        for entry in summaries:
            summary = _FbaInventorySummary.from_json(entry)
            if summary.sku == sku:
                return summary
        return None

    async def get_product_by_id(self, product_id: str) -> OperationResult[Optional[MarketplaceProduct]]:
        """ASINで検索（見つからなければSKUとして再検索）"""
        data = await self.http.get_json(self._listing_path(), params={
            "marketplaceIds": self.amazon_marketplace_id,
            "identifiers": product_id,
            "identifiersType": "ASIN",
            "includedData": "summaries,offers,fulfillmentAvailability",
        })
        items = data.get("items") or []
        if items:
            return OperationResult.ok(self._to_product(_AmazonListing.from_json(items[0])))
        result = await self.get_product_by_sku(product_id)
        if not result.success:
            return OperationResult.fail(f"Product with ID {product_id} not found",
                                        ErrorCode.PRODUCT_NOT_FOUND)
        return result

    async def _listings_page(self, cursor: Optional[str], page_size: int,
                             filters: Optional[Dict[str, Any]] = None
                             ) -> Tuple[List[MarketplaceProduct], Optional[str], int]:
        params: Dict[str, Any] = dict(filters or {})
        params.update({
            "marketplaceIds": self.amazon_marketplace_id,
            "pageSize": min(page_size, 20),
            "includedData": "summaries,offers,fulfillmentAvailability",
        })
        if cursor:
            params["pageToken"] = cursor
        data = await self.http.get_json(self._listing_path(), params=params)
        items = [self._to_product(_AmazonListing.from_json(i)) for i in data.get("items") or []]
        next_token = (data.get("pagination") or {}).get("nextToken")
        return items, next_token, to_int(data.get("numberOfResults"), len(items))

    async def get_products(self, page: int = 0, page_size: int = 50,
                           filters: Optional[Dict[str, Any]] = None
                           ) -> PaginatedResponse[MarketplaceProduct]:
        # Listings Items検索のpageSize上限は20
        page_size = min(page_size, 20)
        filters = dict(filters or {})
        chain = self._cursors.setdefault(
            f"listings:{page_size}:{sorted(filters.items())}", CursorChain()
        )

        async def next_cursor_of(cursor):
            _, next_token, _ = await self._listings_page(cursor, page_size, filters)
            return next_token

        found, cursor = await chain.resolve(page, next_cursor_of)
        if not found:
            return PaginatedResponse(items=[], total=0, page=page, page_size=page_size)
        items, next_token, total = await self._listings_page(cursor, page_size, filters)
        chain.remember(page, next_token)
        return PaginatedResponse(
            items=items,
            total=total,
            page=page,
            page_size=page_size,
            total_pages=-(-total // page_size) if page_size else 0,
            has_next_page=bool(next_token),
            next_page_token=next_token,
        )

    async def fetch_products(self, limit: int = 100) -> List[MarketplaceProduct]:
        async def fetch_page(cursor, size):
            items, next_token, _ = await self._listings_page(cursor, size)
            return items, next_token, bool(next_token)

        return await paginate(
            fetch_page, self.get_rate_limit_status,
            limit=limit, max_page_size=20, **self._pagination_kwargs(),
        )

    def _pagination_kwargs(self) -> Dict[str, Any]:
        return {
            "sleep": self.sleep,
            "clock": self.clock,
            "threshold": self.pagination_config.get("rate_limit_threshold", 10),
            "min_delay": self.pagination_config.get("min_delay", 0.5),
            "burst_delay": self.pagination_config.get("burst_delay", 0.2),
        }

    async def _patch_listing(self, listing: _AmazonListing, path: str, value: Any) -> None:
        """Listings Items APIのJSON Patch。status=INVALIDは商品単位の拒否"""
        data = await self.http.send_json(
            "PATCH", self._listing_path(listing.sku),
            params={"marketplaceIds": self.amazon_marketplace_id},
            json={
                "productType": listing.product_type or "PRODUCT",
                "patches": [{"op": "replace", "path": path, "value": value}],
            },
        )
        if data.get("status") == "INVALID":
            issues = [i.get("message", "") for i in data.get("issues") or []
                      if i.get("severity", "ERROR") == "ERROR"]
            raise VendorRejectionError("; ".join(issues) or "Listing update rejected")

    async def _batch(self, updates: List[Any], handler) -> OperationResult[BatchUpdateResult]:
        return await batch_operation(
            updates, handler, "Amazon",
            concurrency=self.config.get("batch_concurrency", 5),
        )

    async def update_stock(self, updates: List[StockUpdatePayload]
                           ) -> OperationResult[BatchUpdateResult]:
        async def handle(update: StockUpdatePayload) -> None:
            if update.quantity < 0:
                raise ValidationError("Stock quantity cannot be negative")
            listing = await self._require_listing(update.sku)
            if listing.is_fba:
                raise VendorRejectionError(FBA_REJECTION)
            await self._patch_listing(listing, "/attributes/fulfillment_availability", [{
                "fulfillment_channel_code": "DEFAULT",
                "quantity": update.quantity,
            }])

        return await self._batch(updates, handle)

    async def update_prices(self, updates: List[PriceUpdatePayload]
                            ) -> OperationResult[BatchUpdateResult]:
        async def handle(update: PriceUpdatePayload) -> None:
            if update.price is None or update.price <= 0:
                raise ValidationError("Price must be greater than zero")
            if update.sale_price is not None and update.sale_price > update.price:
                raise ValidationError("Sale price cannot exceed regular price")
            listing = await self._require_listing(update.sku)
            offer: Dict[str, Any] = {
                "marketplace_id": self.amazon_marketplace_id,
                "currency": update.currency or listing.currency or self.currency,
                "our_price": [{"schedule": [{"value_with_tax": update.price}]}],
            }
            if update.sale_price is not None:
                offer["discounted_price"] = [{"schedule": [{"value_with_tax": update.sale_price}]}]
            await self._patch_listing(listing, "/attributes/purchasable_offer", [offer])

        return await self._batch(updates, handle)

    async def update_status(self, updates: List[StatusUpdatePayload]
                            ) -> OperationResult[BatchUpdateResult]:
        async def handle(update: StatusUpdatePayload) -> None:
            value = _LISTING_STATUS.get(ProductStatus(update.status))
            if value is None:
                raise ValidationError(f"Unsupported status for Amazon: {update.status}")
            listing = await self._require_listing(update.sku)
            await self._patch_listing(listing, "/attributes/status", [{
                "marketplace_id": self.amazon_marketplace_id,
                "value": value,
            }])

        return await self._batch(updates, handle)

    async def get_categories(self) -> OperationResult[List[MarketplaceCategory]]:
        """Product Type Definitions を商品カテゴリとして返す"""
        data = await self.http.get_json("/definitions/2020-09-01/productTypes", params={
            "marketplaceIds": self.amazon_marketplace_id,
        })
        categories = [
            MarketplaceCategory(id=p.get("name") or "",
                                name=p.get("displayName") or p.get("name") or "")
            for p in data.get("productTypes") or []
        ]
        return OperationResult.ok(categories)

    # --- 注文 ---

    async def _order_items(self, order_id: str) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        next_token = None
        while True:
            params = {"NextToken": next_token} if next_token else None
            data = await self.http.get_json(f"/orders/v0/orders/{order_id}/orderItems",
                                            params=params)
            payload = data.get("payload") or {}
            items.extend(payload.get("OrderItems") or [])
            next_token = payload.get("NextToken")
            if not next_token:
                return items

    async def _orders_page(self, cursor: Optional[str], page_size: int,
                           since: Optional[datetime]
                           ) -> Tuple[List[MarketplaceOrder], Optional[str]]:
        params: Dict[str, Any] = {"MarketplaceIds": self.amazon_marketplace_id}
        if cursor:
            # NextToken指定時は他の絞り込み条件を送らない
            params["NextToken"] = cursor
        else:
            if since is None:
                since = datetime.fromtimestamp(self.clock(), tz=timezone.utc) - timedelta(days=30)
            params["CreatedAfter"] = iso_utc(since)
            params["MaxResultsPerPage"] = min(page_size, self.config.get("max_page_size", 100))
        data = await self.http.get_json("/orders/v0/orders", params=params)
        payload = data.get("payload") or {}
        orders = []
        for raw in payload.get("Orders") or []:
            parsed = _AmazonOrder.from_json(raw)
            parsed.items = await self._order_items(parsed.order_id)
            orders.append(parsed.to_order())
        return orders, payload.get("NextToken")

    async def get_orders(self, since: Optional[datetime] = None, page: int = 0,
                         page_size: int = 50) -> PaginatedResponse[MarketplaceOrder]:
        page_size = min(page_size, self.config.get("max_page_size", 100))
        since_key = since.isoformat() if since else ""
        chain = self._cursors.setdefault(f"orders:{page_size}:{since_key}", CursorChain())

        async def next_cursor_of(cursor):
            _, next_token = await self._orders_page(cursor, page_size, since)
            return next_token

        found, cursor = await chain.resolve(page, next_cursor_of)
        if not found:
            return PaginatedResponse(items=[], total=0, page=page, page_size=page_size)
        orders, next_token = await self._orders_page(cursor, page_size, since)
        chain.remember(page, next_token)
        # Orders APIは総件数を返さないため、取得済み件数から下限を推定
        total = page * page_size + len(orders)
        return PaginatedResponse(
            items=orders,
            total=total,
            page=page,
            page_size=page_size,
            total_pages=page + (2 if next_token else 1),
            has_next_page=bool(next_token),
            next_page_token=next_token,
        )

    async def get_recent_orders(self, since: datetime, page: int = 0,
                                page_size: int = 50) -> PaginatedResponse[MarketplaceOrder]:
        return await self.get_orders(since=since, page=page, page_size=page_size)

    async def fetch_orders(self, since: Optional[datetime] = None,
                           limit: int = 100) -> List[MarketplaceOrder]:
        async def fetch_page(cursor, size):
            orders, next_token = await self._orders_page(cursor, size, since)
            return orders, next_token, bool(next_token)

        return await paginate(
            fetch_page, self.get_rate_limit_status,
            limit=limit, max_page_size=self.config.get("max_page_size", 100),
            **self._pagination_kwargs(),
        )

    async def _get_order(self, order_id: str) -> Optional[_AmazonOrder]:
        try:
            data = await self.http.get_json(f"/orders/v0/orders/{order_id}")
        except VendorRejectionError as e:
            if is_not_found(e):
                return None
            raise
        payload = data.get("payload")
        if not payload:
            return None
        order = _AmazonOrder.from_json(payload)
        order.items = await self._order_items(order_id)
        return order

    async def get_order_by_id(self, order_id: str) -> OperationResult[MarketplaceOrder]:
        order = await self._get_order(order_id)
        if order is None:
            return OperationResult.fail(f"Order with ID {order_id} not found",
                                        ErrorCode.ORDER_NOT_FOUND)
        return OperationResult.ok(order.to_order())

    async def acknowledge_order(self, order_id: str) -> OperationResult[OrderAcknowledgment]:
        # SP-APIの通常注文には確認APIが無いため存在確認のみ
        order = await self._get_order(order_id)
        if order is None:
            return OperationResult.fail(
                f"Cannot acknowledge order: {order_id} - Order not found",
                ErrorCode.ORDER_NOT_FOUND,
            )
        return OperationResult.ok(OrderAcknowledgment(
            order_id=order_id, success=True, timestamp=datetime.now(),
        ))

    async def update_order_status(self, order_id: str, status: OrderStatus,
                                  tracking: Optional[TrackingInfo] = None
                                  ) -> OperationResult[Dict[str, Any]]:
        """MFN注文の出荷通知のみ対応"""
        order = await self._get_order(order_id)
        if order is None:
            return OperationResult.fail(f"Order with ID {order_id} not found",
                                        ErrorCode.ORDER_NOT_FOUND)
        if order.fulfillment_channel != "MFN":
            return OperationResult.fail(
                f"Cannot update order status: {order_id} - "
                "Only Merchant Fulfilled orders can be updated",
                ErrorCode.OPERATION_NOT_SUPPORTED,
            )
        if OrderStatus(status) != OrderStatus.SHIPPED or tracking is None:
            return OperationResult.fail(
                f"Unsupported status update: {OrderStatus(status).value}. Only 'shipped' "
                "status with tracking information is supported for Amazon orders.",
                ErrorCode.INVALID_STATUS,
            )

        shipped_at = tracking.shipped_date or datetime.now(timezone.utc)
        try:
            await self.http.send_json(
                "POST", f"/orders/v0/orders/{order_id}/shipmentConfirmation",
                json={
                    "marketplaceId": self.amazon_marketplace_id,
                    "packageDetail": {
                        "packageReferenceId": "1",
                        "carrierCode": tracking.carrier,
                        "trackingNumber": tracking.tracking_number,
                        "shipDate": iso_utc(shipped_at),
                        "orderItems": [
                            {"orderItemId": i.get("OrderItemId"),
                             "quantity": to_int(i.get("QuantityOrdered"))}
                            for i in order.items
                        ],
                    },
                },
            )
        except VendorRejectionError as e:
            return OperationResult.fail(f"Failed to update order status: {e.message}",
                                        ErrorCode.VENDOR_REJECTED)
        return OperationResult.ok({"order_id": order_id, "status": OrderStatus.SHIPPED.value})

    # --- 補助API ---

    @property
    def finances(self) -> AmazonFinances:
        return AmazonFinances(self)

    @property
    def pricing(self) -> AmazonPricing:
        return AmazonPricing(self)
