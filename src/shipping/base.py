"""配送キャリア共通インターフェースとデータ型

DHL / FedEx 等のキャリアアダプターが実装する ShippingProvider ABC。
住所は注文と同じ Address 型（src.marketplaces.models）を使う。
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from src.marketplaces.models import Address, ConnectionStatus, RateLimitStatus, Serializable

ShippingCredentials = Dict[str, Any]


class WeightUnit(str, Enum):
    KG = "kg"
    LB = "lb"


class DimensionUnit(str, Enum):
    CM = "cm"
    IN = "in"


@dataclass(frozen=True)
class PackageDetails(Serializable):
    weight: float
    length: float
    width: float
    height: float
    weight_unit: WeightUnit = WeightUnit.KG
    dimension_unit: DimensionUnit = DimensionUnit.CM

    @property
    def is_metric(self) -> bool:
        return self.weight_unit == WeightUnit.KG


@dataclass(frozen=True)
class CustomsItem(Serializable):
    description: str
    quantity: int
    unit_value: float
    weight: float
    hs_code: Optional[str] = None
    country_of_origin: Optional[str] = None


@dataclass
class CustomsDeclaration(Serializable):
    items: List[CustomsItem]
    currency: str = "USD"
    invoice_number: Optional[str] = None
    export_reason: str = "SALE"

    @property
    def declared_value(self) -> float:
        return round(sum(i.unit_value * i.quantity for i in self.items), 2)


@dataclass
class RateRequest(Serializable):
    origin: Address
    destination: Address
    packages: List[PackageDetails]
    ship_date: Optional[datetime] = None
    currency: str = "USD"
    service_code: Optional[str] = None
    customs: Optional[CustomsDeclaration] = None


@dataclass
class ShipmentRequest(Serializable):
    origin: Address
    destination: Address
    packages: List[PackageDetails]
    service_code: str
    reference: Optional[str] = None
    ship_date: Optional[datetime] = None
    customs: Optional[CustomsDeclaration] = None
    label_format: str = "PDF"


@dataclass
class ShippingRate(Serializable):
    carrier: str
    service_code: str
    service_name: str
    price: float
    currency: str
    min_days: Optional[int] = None
    max_days: Optional[int] = None
    estimated_delivery: Optional[datetime] = None


@dataclass
class ShippingLabel(Serializable):
    format: str
    content: str  # base64
    url: Optional[str] = None


@dataclass
class CreatedShipment(Serializable):
    carrier: str
    shipment_id: str
    tracking_number: str
    service_code: str
    labels: List[ShippingLabel] = field(default_factory=list)
    price: Optional[float] = None
    currency: Optional[str] = None


@dataclass
class TrackingEvent(Serializable):
    timestamp: Optional[datetime]
    status: str
    description: str
    location: Optional[str] = None


@dataclass
class ShipmentTracking(Serializable):
    carrier: str
    tracking_number: str
    status: str
    events: List[TrackingEvent] = field(default_factory=list)
    estimated_delivery: Optional[datetime] = None
    delivered_at: Optional[datetime] = None


@dataclass
class AddressValidation(Serializable):
    valid: bool
    messages: List[str] = field(default_factory=list)
    suggested: Optional[Address] = None


@dataclass
class ReturnLabel(Serializable):
    carrier: str
    shipment_id: str
    tracking_number: str
    label: Optional[ShippingLabel] = None


@dataclass(frozen=True)
class ShippingService(Serializable):
    code: str
    name: str
    international: bool
    domestic: bool


class ShippingProvider(ABC):
    """配送キャリアの抽象基底クラス

    コンストラクタは MarketplaceAdapter と同じ
    (config, clock, sleep, http_transport) を受け取り、AdapterFactory から生成できる。
    """

    #: ファクトリーの登録キー
    carrier_id: str = ""
    supported_countries: List[str] = []
    supported_services: List[ShippingService] = []

    @property
    @abstractmethod
    def carrier_name(self) -> str:
        ...

    @abstractmethod
    async def initialize(self, credentials: ShippingCredentials) -> None:
        """認証ハンドシェイク（AuthenticationError を送出しうる）"""
        ...

    @abstractmethod
    async def ensure_authenticated(self) -> None:
        ...

    @abstractmethod
    async def test_connection(self) -> ConnectionStatus:
        ...

    @abstractmethod
    async def get_rates(self, request: RateRequest) -> List[ShippingRate]:
        ...

    @abstractmethod
    async def create_shipment(self, request: ShipmentRequest) -> CreatedShipment:
        ...

    @abstractmethod
    async def get_tracking(self, tracking_number: str) -> ShipmentTracking:
        ...

    @abstractmethod
    async def cancel_shipment(self, shipment_id: str) -> bool:
        ...

    @abstractmethod
    async def validate_address(self, address: Address) -> AddressValidation:
        ...

    @abstractmethod
    async def create_return_label(self, shipment_id: str,
                                  original: Optional[ShipmentRequest] = None) -> ReturnLabel:
        """返品ラベル作成

        Args:
            original: 元の出荷リクエスト（返品出荷を組み立てるキャリアで使う）
        """
        ...

    @abstractmethod
    def get_rate_limit_status(self) -> RateLimitStatus:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...

    def supports_country(self, country_code: str) -> bool:
        return (country_code or "").upper() in self.supported_countries

    def get_service(self, code: str) -> Optional[ShippingService]:
        for service in self.supported_services:
            if service.code == code:
                return service
        return None
