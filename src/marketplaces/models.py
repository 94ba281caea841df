"""マーケットプレイス共通型

各アダプターはベンダーのレスポンスをこのdataclass群に変換してから返す。
ベンダー固有の形状はアダプターの外に出さない。
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, TypeVar

T = TypeVar("T")

MarketplaceCredentials = Dict[str, Any]


class ProductStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    DRAFT = "draft"
    ARCHIVED = "archived"
    OUT_OF_STOCK = "out_of_stock"
    DELETED = "deleted"


class OrderStatus(str, Enum):
    NEW = "new"
    PROCESSING = "processing"
    PARTIALLY_SHIPPED = "partially_shipped"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    RETURNED = "returned"
    REFUNDED = "refunded"
    ON_HOLD = "on_hold"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    PARTIALLY_PAID = "partially_paid"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"
    FAILED = "failed"


def serialize(value: Any) -> Any:
    """dataclass/Enum/datetimeをJSON化可能な値に変換"""
    if hasattr(value, "__dataclass_fields__"):
        return serialize(asdict(value))
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: serialize(v) for k, v in value.items() if k != "raw"}
    if isinstance(value, (list, tuple)):
        return [serialize(v) for v in value]
    return value


class Serializable:
    def to_dict(self) -> Dict[str, Any]:
        return serialize(asdict(self))


# --- 商品 ---

@dataclass
class MarketplaceProduct(Serializable):
    id: str
    sku: str
    title: str
    price: float
    currency: str
    stock_level: int
    status: ProductStatus
    sale_price: Optional[float] = None
    rrp: Optional[float] = None
    barcode: Optional[str] = None
    marketplace_url: Optional[str] = None
    category_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass
class StockUpdatePayload:
    sku: str
    quantity: int
    location_id: Optional[str] = None


@dataclass
class PriceUpdatePayload:
    sku: str
    price: float
    sale_price: Optional[float] = None
    currency: Optional[str] = None


@dataclass
class StatusUpdatePayload:
    sku: str
    status: ProductStatus


# --- 注文 ---

@dataclass(frozen=True)
class Address(Serializable):
    line1: str = ""
    city: str = ""
    country: str = ""
    line2: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    name: Optional[str] = None
    company: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None


@dataclass(frozen=True)
class Customer(Serializable):
    name: str = ""
    email: str = ""
    phone: Optional[str] = None
    id: Optional[str] = None


@dataclass(frozen=True)
class OrderItem(Serializable):
    sku: str
    title: str
    quantity: int
    unit_price: float
    total: float
    product_id: Optional[str] = None
    marketplace_item_id: Optional[str] = None


@dataclass(frozen=True)
class MarketplaceOrder(Serializable):
    id: str
    marketplace_order_id: str
    status: OrderStatus
    payment_status: PaymentStatus
    customer: Customer
    items: List[OrderItem]
    total: float
    currency: str
    subtotal: float = 0.0
    shipping_cost: float = 0.0
    tax: float = 0.0
    shipping_address: Optional[Address] = None
    billing_address: Optional[Address] = None
    shipping_status: Optional[str] = None
    fulfillment_channel: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class TrackingInfo:
    carrier: str
    tracking_number: str
    shipped_date: Optional[datetime] = None


@dataclass
class OrderAcknowledgment(Serializable):
    order_id: str
    success: bool
    timestamp: datetime


# --- 結果エンベロープ ---

@dataclass
class FailedItem(Serializable):
    sku: str
    reason: str


@dataclass
class BatchUpdateResult(Serializable):
    successful: List[str] = field(default_factory=list)
    failed: List[FailedItem] = field(default_factory=list)

    def reason_for(self, sku: str) -> Optional[str]:
        for item in self.failed:
            if item.sku == sku:
                return item.reason
        return None


@dataclass
class OperationError(Serializable):
    message: str
    code: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class OperationResult(Generic[T]):
    """アダプター呼び出しの共通結果エンベロープ

    バッチ呼び出しのsuccess=Trueは「全件を試行した」の意味。
    個別の失敗はdata.failedを確認すること。
    """

    success: bool
    data: Optional[T] = None
    error: Optional[OperationError] = None

    @classmethod
    def ok(cls, data: Optional[T] = None) -> "OperationResult[T]":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, message: str, code: Optional[str] = None,
             details: Optional[Dict[str, Any]] = None) -> "OperationResult[T]":
        return cls(success=False,
                   error=OperationError(message, code, details or {}))

    def to_dict(self) -> Dict[str, Any]:
        result = {"success": self.success}
        if self.data is not None:
            result["data"] = serialize(self.data)
        if self.error is not None:
            result["error"] = self.error.to_dict()
        return result


@dataclass
class PaginatedResponse(Generic[T]):
    items: List[T]
    total: int
    page: int
    page_size: int
    total_pages: int = 0
    has_next_page: bool = False
    next_page_token: Optional[str] = None


# --- 接続・ヘルス ---

@dataclass
class ConnectionStatus(Serializable):
    connected: bool
    message: str
    last_checked: datetime = field(default_factory=datetime.now)


@dataclass
class RateLimitStatus(Serializable):
    remaining: int
    reset: float  # epoch秒
    limit: int


@dataclass
class MarketplaceCategory(Serializable):
    id: str
    name: str
    parent_id: Optional[str] = None
    path: Optional[str] = None


@dataclass
class Warehouse(Serializable):
    id: int
    name: str


@dataclass
class MarketplaceHealth(Serializable):
    marketplace_id: str
    name: str
    connected: bool
    message: str
    last_checked: datetime = field(default_factory=datetime.now)
    rate_limit: Optional[RateLimitStatus] = None
