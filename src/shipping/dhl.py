"""DHL Express（MyDHL API）キャリアアダプター

認証: Basic(api_key:account_number) でトークン取得 → Bearer
料金・出荷・追跡・キャンセル・住所検証・返品ラベル
"""

import asyncio
import base64
import logging
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import httpx

from src.auth.oauth_manager import OAuthTokenManager
from src.config import section
from src.marketplaces.errors import (
    AdapterNotInitializedError,
    ShippingError,
    ValidationError,
    VendorRejectionError,
)
from src.marketplaces.helpers import (
    connection_failed,
    parse_datetime,
    rate_limit_from_headers,
    require_fields,
    to_float,
    to_int,
)
from src.marketplaces.models import Address, ConnectionStatus, RateLimitStatus
from src.marketplaces.transport import HttpTransport
from src.shipping.base import (
    AddressValidation,
    CreatedShipment,
    PackageDetails,
    RateRequest,
    ReturnLabel,
    ShipmentRequest,
    ShipmentTracking,
    ShippingCredentials,
    ShippingLabel,
    ShippingProvider,
    ShippingRate,
    ShippingService,
    TrackingEvent,
)

logger = logging.getLogger(__name__)

# 追跡ステータス（小文字化して照合）
_STATUS = {
    "pre-transit": "pending",
    "transit": "in_transit",
    "delivered": "delivered",
    "failure": "failed",
}

DEFAULT_REMAINING = 100


def map_status(code: Optional[str]) -> str:
    code = (code or "").lower()
    return _STATUS.get(code, code or "unknown")


def _party(address: Address) -> Dict[str, Any]:
    """customerDetails の shipper / receiver 形式"""
    return {
        "postalCode": address.postal_code or "",
        "cityName": address.city,
        "countryCode": address.country.upper(),
        "addressLine1": address.line1,
    }


def _contact(address: Address) -> Dict[str, Any]:
    return {
        "postalAddress": {
            "postalCode": address.postal_code or "",
            "cityName": address.city,
            "countryCode": address.country.upper(),
            "addressLine1": address.line1,
            "addressLine2": address.line2 or "",
            "provinceCode": address.state or "",
        },
        "contactInformation": {
            "fullName": address.name or "",
            "companyName": address.company or address.name or "",
            "phone": address.phone or "",
            "email": address.email or "",
        },
    }


def _package(package: PackageDetails) -> Dict[str, Any]:
    return {
        "weight": package.weight,
        "dimensions": {
            "length": package.length,
            "width": package.width,
            "height": package.height,
        },
    }


def _unit_of_measurement(packages: List[PackageDetails]) -> str:
    return "metric" if all(p.is_metric for p in packages) else "imperial"


def _planned_date(value: Optional[datetime], now: float) -> str:
    moment = value or datetime.fromtimestamp(now)
    return moment.strftime("%Y-%m-%dT%H:%M:%S GMT+00:00")


def _labels(documents: List[Dict[str, Any]]) -> List[ShippingLabel]:
    return [
        ShippingLabel(format=(doc.get("imageFormat") or "PDF").upper(),
                      content=doc.get("content") or "")
        for doc in documents or []
        if (doc.get("typeCode") or doc.get("type")) == "label"
    ]


class DHLProvider(ShippingProvider):
    """DHL Expressアダプター"""

    carrier_id = "dhl"
    supported_countries = [
        "US", "CA", "MX", "GB", "DE", "FR", "IT", "ES", "NL", "BE",
        "AT", "CH", "SE", "DK", "NO", "FI", "IE", "PL", "PT", "JP",
        "CN", "HK", "SG", "KR", "IN", "AU", "NZ", "ZA", "AE", "BR",
    ]
    supported_services = [
        ShippingService("P", "DHL Express Worldwide", international=True, domestic=False),
        ShippingService("T", "DHL Express 12:00", international=True, domestic=False),
        ShippingService("K", "DHL Express 9:00", international=True, domestic=False),
        ShippingService("N", "DHL Express Domestic", international=False, domestic=True),
    ]

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Any] = asyncio.sleep,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = section(config, "shipping", "dhl")
        self.http_config = section(config, "http")
        self.clock = clock
        self.sleep = sleep
        self._http_transport = http_transport
        self._transport: Optional[HttpTransport] = None
        self._token_transport: Optional[HttpTransport] = None
        self._tokens: Optional[OAuthTokenManager] = None
        self._rate_limit: Optional[RateLimitStatus] = None
        self._credentials: Dict[str, Any] = {}
        self.account_number = ""

    @property
    def carrier_name(self) -> str:
        return "DHL Express"

    # --- ライフサイクル ---

    async def initialize(self, credentials: ShippingCredentials) -> None:
        require_fields(credentials, ["api_key", "account_number"], "DHL")
        await self.close()

        self._credentials = dict(credentials)
        self.account_number = credentials["account_number"]
        test_mode = bool(credentials.get("test_mode"))
        url_key = "test_url" if test_mode else "base_url"
        base_url = self.config.get(url_key)
        if not base_url:
            raise ValidationError(f"DHL {url_key} is not configured")

        self._tokens = OAuthTokenManager(
            fetch_token=self._fetch_token, clock=self.clock, name="DHL"
        )
        self._token_transport = self._build_transport(base_url, vendor="DHL auth")
        self._transport = self._build_transport(
            base_url,
            vendor="DHL",
            headers=self._auth_headers,
            on_response=self._record_rate_limit,
            on_unauthorized=self._reauthenticate,
        )
        await self._tokens.ensure_valid()
        logger.info(f"DHL初期化完了: account={self.account_number} test_mode={test_mode}")

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
        basic = base64.b64encode(
            f"{self._credentials['api_key']}:{self._credentials['account_number']}".encode()
        ).decode()
        return await self._token_transport.send_json(
            "POST", "/authentication/v1/token",
            headers={"Authorization": f"Basic {basic}"},
        )

    async def _auth_headers(self) -> Dict[str, str]:
        token = await self._token_manager().ensure_valid()
        return {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}

    async def _reauthenticate(self) -> None:
        self._token_manager().invalidate()
        await self.ensure_authenticated()

    def _token_manager(self) -> OAuthTokenManager:
        if self._tokens is None:
            raise AdapterNotInitializedError("DHL provider is not initialized")
        return self._tokens

    async def ensure_authenticated(self) -> None:
        await self._token_manager().ensure_valid()

    @property
    def http(self) -> HttpTransport:
        if self._transport is None:
            raise AdapterNotInitializedError("DHL provider is not initialized")
        return self._transport

    def _record_rate_limit(self, response: httpx.Response) -> None:
        status = rate_limit_from_headers(
            response.headers, self.clock(),
            limit_header="ratelimit-limit",
            remaining_header="ratelimit-remaining",
            reset_header="ratelimit-reset",
        )
        if status is not None:
            self._rate_limit = status

    def get_rate_limit_status(self) -> RateLimitStatus:
        return self._rate_limit or RateLimitStatus(
            remaining=DEFAULT_REMAINING, reset=self.clock(), limit=DEFAULT_REMAINING
        )

    async def test_connection(self) -> ConnectionStatus:
        try:
            await self.ensure_authenticated()
            return ConnectionStatus(connected=True, message="Connected to DHL Express API")
        except Exception as e:
            return connection_failed(e, "DHL")

    async def close(self) -> None:
        for transport in (self._transport, self._token_transport):
            if transport is not None:
                await transport.close()
        self._transport = None
        self._token_transport = None

    # --- 料金 ---

    async def get_rates(self, request: RateRequest) -> List[ShippingRate]:
        if not request.packages:
            raise ValidationError("At least one package is required")
        body = {
            "customerDetails": {
                "shipperDetails": _party(request.origin),
                "receiverDetails": _party(request.destination),
            },
            "accounts": [{"typeCode": "shipper", "number": self.account_number}],
            "plannedShippingDateAndTime": _planned_date(request.ship_date, self.clock()),
            "unitOfMeasurement": _unit_of_measurement(request.packages),
            "isCustomsDeclarable": request.origin.country.upper() != request.destination.country.upper(),
            "packages": [_package(p) for p in request.packages],
        }
        if request.service_code:
            body["productCode"] = request.service_code

        data = await self.http.send_json("POST", "/rates", json=body)
        rates = []
        for product in data.get("products") or []:
            prices = product.get("totalPrice") or [{}]
            billed = next((p for p in prices if p.get("currencyType") == "BILLC"), prices[0])
            delivery = product.get("deliveryCapabilities") or {}
            days = to_int(delivery.get("totalTransitDays"), 0) or None
            rates.append(ShippingRate(
                carrier=self.carrier_id,
                service_code=product.get("productCode") or "",
                service_name=product.get("productName") or "",
                price=to_float(billed.get("price")),
                currency=billed.get("priceCurrency") or billed.get("currencyCode") or request.currency,
                min_days=days,
                max_days=days,
                estimated_delivery=parse_datetime(delivery.get("estimatedDeliveryDateAndTime")),
            ))
        return rates

    # --- 出荷 ---

    async def create_shipment(self, request: ShipmentRequest) -> CreatedShipment:
        if not request.packages:
            raise ValidationError("At least one package is required")
        international = request.origin.country.upper() != request.destination.country.upper()
        if international and request.customs is None:
            raise ValidationError("Customs declaration is required for international shipments")

        content: Dict[str, Any] = {
            "packages": [_package(p) for p in request.packages],
            "isCustomsDeclarable": international,
            "unitOfMeasurement": _unit_of_measurement(request.packages),
            "description": request.reference or "Merchandise",
        }
        if request.customs is not None:
            customs = request.customs
            content["declaredValue"] = customs.declared_value
            content["declaredValueCurrency"] = customs.currency
            content["exportDeclaration"] = {
                "lineItems": [
                    {
                        "number": index,
                        "description": item.description,
                        "price": item.unit_value,
                        "quantity": {"value": item.quantity, "unitOfMeasurement": "PCS"},
                        "commodityCodes": [{"typeCode": "outbound", "value": item.hs_code}]
                        if item.hs_code else [],
                        "manufacturerCountry": item.country_of_origin or request.origin.country,
                        "weight": {"netValue": item.weight, "grossValue": item.weight},
                    }
                    for index, item in enumerate(customs.items, start=1)
                ],
                "invoice": {"number": customs.invoice_number or request.reference or "",
                            "date": datetime.fromtimestamp(self.clock()).strftime("%Y-%m-%d")},
                "exportReason": customs.export_reason,
            }

        body = {
            "plannedShippingDateAndTime": _planned_date(request.ship_date, self.clock()),
            "pickup": {"isRequested": False},
            "productCode": request.service_code,
            "accounts": [{"typeCode": "shipper", "number": self.account_number}],
            "customerReferences": [{"value": request.reference, "typeCode": "CU"}]
            if request.reference else [],
            "customerDetails": {
                "shipperDetails": _contact(request.origin),
                "receiverDetails": _contact(request.destination),
            },
            "content": content,
            "outputImageProperties": {"imageOptions": [
                {"typeCode": "label", "templateName": "ECOM26_84_001"},
            ], "encodingFormat": request.label_format.lower()},
        }
        data = await self.http.send_json("POST", "/shipments", json=body)
        tracking_number = data.get("shipmentTrackingNumber")
        if not tracking_number:
            raise ShippingError("DHL shipment response has no tracking number")

        charges = (data.get("shipmentCharges") or [{}])[0]
        logger.info(f"DHL出荷作成: {tracking_number}")
        return CreatedShipment(
            carrier=self.carrier_id,
            shipment_id=data.get("shipmentIdentificationNumber") or tracking_number,
            tracking_number=tracking_number,
            service_code=request.service_code,
            labels=_labels(data.get("documents")),
            price=to_float(charges.get("price"), None),
            currency=charges.get("currencyType") or charges.get("priceCurrency"),
        )

    async def cancel_shipment(self, shipment_id: str) -> bool:
        response = await self.http.request("DELETE", f"/shipments/{shipment_id}")
        logger.info(f"DHL出荷キャンセル: {shipment_id}")
        return response.status_code in (200, 204)

    async def create_return_label(self, shipment_id: str,
                                  original: Optional[ShipmentRequest] = None) -> ReturnLabel:
        data = await self.http.send_json("POST", f"/shipments/{shipment_id}/return")
        labels = _labels(data.get("documents"))
        if not labels:
            raise ShippingError(f"DHL returned no return label for {shipment_id}")
        return ReturnLabel(
            carrier=self.carrier_id,
            shipment_id=shipment_id,
            tracking_number=data.get("shipmentTrackingNumber") or "",
            label=labels[0],
        )

    # --- 追跡 ---

    async def get_tracking(self, tracking_number: str) -> ShipmentTracking:
        data = await self.http.get_json("/tracking", params={
            "shipmentTrackingNumber": tracking_number,
        })
        shipments = data.get("shipments") or []
        if not shipments:
            raise ShippingError(f"DHL has no tracking data for {tracking_number}", status=404)

        shipment = shipments[0]
        events = []
        for event in shipment.get("events") or []:
            location = (event.get("serviceArea") or [{}])[0].get("description") or \
                ((event.get("location") or {}).get("address") or {}).get("addressLocality")
            timestamp = event.get("timestamp")
            if not timestamp and event.get("date"):
                timestamp = f"{event['date']}T{event.get('time') or '00:00:00'}"
            events.append(TrackingEvent(
                timestamp=parse_datetime(timestamp),
                status=map_status(event.get("statusCode") or event.get("typeCode")),
                description=event.get("description") or "",
                location=location,
            ))

        status = map_status(shipment.get("status"))
        return ShipmentTracking(
            carrier=self.carrier_id,
            tracking_number=shipment.get("shipmentTrackingNumber") or tracking_number,
            status=status,
            events=events,
            estimated_delivery=parse_datetime(shipment.get("estimatedDeliveryDate")),
            delivered_at=events[0].timestamp if status == "delivered" and events else None,
        )

    # --- 住所検証 ---

    async def validate_address(self, address: Address) -> AddressValidation:
        params = {
            "type": "delivery",
            "countryCode": address.country.upper(),
            "postalCode": address.postal_code or "",
            "cityName": address.city,
        }
        try:
            data = await self.http.get_json("/address-validate", params=params)
        except VendorRejectionError as e:
            return AddressValidation(valid=False, messages=[e.message])

        candidates = data.get("address") or []
        messages = [str(w) for w in data.get("warnings") or []]
        if not candidates:
            return AddressValidation(valid=False, messages=messages or ["Address not found"])

        match = candidates[0]
        suggested = Address(
            line1=address.line1,
            line2=address.line2,
            city=match.get("cityName") or address.city,
            state=match.get("provinceCode") or address.state,
            postal_code=match.get("postalCode") or address.postal_code,
            country=match.get("countryCode") or address.country,
        )
        return AddressValidation(
            valid=True,
            messages=messages,
            suggested=suggested if _differs(suggested, address) else None,
        )



def _differs(suggested: Address, original: Address) -> bool:
    return (
        (suggested.city or "").lower() != (original.city or "").lower()
        or (suggested.postal_code or "") != (original.postal_code or "")
        or (suggested.state or "") != (original.state or "")
    )
