"""FedEx（REST API）キャリアアダプター

認証: client_credentials（api_key / api_secret）→ Bearer
返品ラベルは元の出荷の送り主・届け先を入れ替えた RETURN_SHIPMENT として作成する。
"""

import asyncio
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

_STATUS = {
    "PU": "picked_up",
    "OC": "in_transit",
    "AR": "in_transit",
    "DP": "in_transit",
    "IT": "in_transit",
    "DL": "delivered",
    "DE": "exception",
    "EX": "exception",
}

DEFAULT_REMAINING = 100


def map_status(code: Optional[str]) -> str:
    code = (code or "").upper()
    return _STATUS.get(code, code.lower() or "unknown")


def _address(address: Address) -> Dict[str, Any]:
    lines = [line for line in (address.line1, address.line2) if line]
    return {
        "streetLines": lines,
        "city": address.city,
        "stateOrProvinceCode": address.state or "",
        "postalCode": address.postal_code or "",
        "countryCode": address.country.upper(),
    }


def _party(address: Address) -> Dict[str, Any]:
    return {
        "contact": {
            "personName": address.name or "",
            "companyName": address.company or "",
            "phoneNumber": address.phone or "",
            "emailAddress": address.email or "",
        },
        "address": _address(address),
    }


def _line_item(package: PackageDetails) -> Dict[str, Any]:
    return {
        "weight": {"units": "KG" if package.is_metric else "LB", "value": package.weight},
        "dimensions": {
            "length": package.length,
            "width": package.width,
            "height": package.height,
            "units": package.dimension_unit.value.upper(),
        },
    }


def _labels(shipment: Dict[str, Any]) -> List[ShippingLabel]:
    labels = []
    for piece in shipment.get("pieceResponses") or []:
        for doc in piece.get("packageDocuments") or []:
            if doc.get("contentType") == "LABEL":
                labels.append(ShippingLabel(
                    format=(doc.get("docType") or "PDF").upper(),
                    content=doc.get("encodedLabel") or "",
                    url=doc.get("url"),
                ))
    return labels


_TRANSIT_WORDS = {
    "ONE": 1, "TWO": 2, "THREE": 3, "FOUR": 4, "FIVE": 5, "SIX": 6, "SEVEN": 7,
    "EIGHT": 8, "NINE": 9, "TEN": 10,
}


def _transit_days(value: Any) -> int:
    """{"minimumTransitTime": "TWO_DAYS"} や 2 を日数に変換"""
    if isinstance(value, dict):
        value = value.get("minimumTransitTime") or value.get("description")
    if isinstance(value, str):
        head = value.split("_")[0].upper()
        if head in _TRANSIT_WORDS:
            return _TRANSIT_WORDS[head]
    return to_int(value, 0)


class FedExProvider(ShippingProvider):
    """FedExアダプター"""

    carrier_id = "fedex"
    supported_countries = [
        "US", "CA", "MX", "GB", "DE", "FR", "IT", "ES", "NL", "BE", "AT",
        "CH", "AU", "NZ", "JP", "CN", "HK", "SG", "KR", "IN", "ZA", "BR",
    ]
    supported_services = [
        ShippingService("PRIORITY_OVERNIGHT", "FedEx Priority Overnight",
                        international=False, domestic=True),
        ShippingService("STANDARD_OVERNIGHT", "FedEx Standard Overnight",
                        international=False, domestic=True),
        ShippingService("INTERNATIONAL_PRIORITY", "FedEx International Priority",
                        international=True, domestic=False),
        ShippingService("INTERNATIONAL_ECONOMY", "FedEx International Economy",
                        international=True, domestic=False),
    ]

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Any] = asyncio.sleep,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = section(config, "shipping", "fedex")
        self.http_config = section(config, "http")
        self.clock = clock
        self.sleep = sleep
        self._http_transport = http_transport
        self._transport: Optional[HttpTransport] = None
        self._token_transport: Optional[HttpTransport] = None
        self._tokens: Optional[OAuthTokenManager] = None
        self._rate_limit: Optional[RateLimitStatus] = None
        self._credentials: Dict[str, Any] = {}
        self._shipments: Dict[str, ShipmentRequest] = {}
        self.account_number = ""

    @property
    def carrier_name(self) -> str:
        return "FedEx"

    # --- ライフサイクル ---

    async def initialize(self, credentials: ShippingCredentials) -> None:
        require_fields(credentials, ["api_key", "api_secret", "account_number"], "FedEx")
        await self.close()

        self._credentials = dict(credentials)
        self.account_number = credentials["account_number"]
        test_mode = bool(credentials.get("test_mode"))
        url_key = "test_url" if test_mode else "base_url"
        base_url = self.config.get(url_key)
        if not base_url:
            raise ValidationError(f"FedEx {url_key} is not configured")

        self._tokens = OAuthTokenManager(
            fetch_token=self._fetch_token, clock=self.clock, name="FedEx"
        )
        self._token_transport = self._build_transport(base_url, vendor="FedEx auth")
        self._transport = self._build_transport(
            base_url,
            vendor="FedEx",
            headers=self._auth_headers,
            on_response=self._record_rate_limit,
            on_unauthorized=self._reauthenticate,
        )
        await self._tokens.ensure_valid()
        logger.info(f"FedEx初期化完了: account={self.account_number} test_mode={test_mode}")

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
        return await self._token_transport.send_json("POST", "/oauth/token", data={
            "grant_type": "client_credentials",
            "client_id": self._credentials["api_key"],
            "client_secret": self._credentials["api_secret"],
        })

    async def _auth_headers(self) -> Dict[str, str]:
        token = await self._token_manager().ensure_valid()
        return {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "X-locale": "en_US",
        }

    async def _reauthenticate(self) -> None:
        self._token_manager().invalidate()
        await self.ensure_authenticated()

    def _token_manager(self) -> OAuthTokenManager:
        if self._tokens is None:
            raise AdapterNotInitializedError("FedEx provider is not initialized")
        return self._tokens

    async def ensure_authenticated(self) -> None:
        await self._token_manager().ensure_valid()

    @property
    def http(self) -> HttpTransport:
        if self._transport is None:
            raise AdapterNotInitializedError("FedEx provider is not initialized")
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
        return self._rate_limit or RateLimitStatus(
            remaining=DEFAULT_REMAINING, reset=self.clock(), limit=DEFAULT_REMAINING
        )

    async def test_connection(self) -> ConnectionStatus:
        try:
            await self.ensure_authenticated()
            return ConnectionStatus(connected=True, message="Connected to FedEx API")
        except Exception as e:
            return connection_failed(e, "FedEx")

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
        shipment: Dict[str, Any] = {
            "shipper": {"address": _address(request.origin)},
            "recipient": {"address": _address(request.destination)},
            "pickupType": "DROPOFF_AT_FEDEX_LOCATION",
            "rateRequestType": ["ACCOUNT", "LIST"],
            "preferredCurrency": request.currency,
            "requestedPackageLineItems": [_line_item(p) for p in request.packages],
        }
        if request.service_code:
            shipment["serviceType"] = request.service_code
        if request.ship_date is not None:
            shipment["shipDateStamp"] = request.ship_date.strftime("%Y-%m-%d")

        data = await self.http.send_json("POST", "/rate/v1/rates/quotes", json={
            "accountNumber": {"value": self.account_number},
            "requestedShipment": shipment,
        })
        details = (data.get("output") or {}).get("rateReplyDetails")
        if details is None:
            raise ShippingError("FedEx rate response has no rateReplyDetails")

        rates = []
        for detail in details:
            rated = (detail.get("ratedShipmentDetails") or [{}])[0]
            commit = detail.get("commit") or {}
            transit_days = _transit_days(commit.get("transitDays"))
            service_type = detail.get("serviceType") or ""
            service = self.get_service(service_type)
            rates.append(ShippingRate(
                carrier=self.carrier_id,
                service_code=service_type,
                service_name=detail.get("serviceName") or (service.name if service else service_type),
                price=to_float(rated.get("totalNetCharge")),
                currency=rated.get("currency") or request.currency,
                min_days=transit_days or None,
                max_days=transit_days or None,
                estimated_delivery=parse_datetime((commit.get("dateDetail") or {}).get("dayFormat")),
            ))
        return rates

    # --- 出荷 ---

    def _requested_shipment(self, request: ShipmentRequest) -> Dict[str, Any]:
        shipment: Dict[str, Any] = {
            "shipper": _party(request.origin),
            "recipients": [_party(request.destination)],
            "shipDatestamp": (request.ship_date or datetime.fromtimestamp(self.clock()))
            .strftime("%Y-%m-%d"),
            "serviceType": request.service_code,
            "packagingType": "YOUR_PACKAGING",
            "pickupType": "DROPOFF_AT_FEDEX_LOCATION",
            "shippingChargesPayment": {"paymentType": "SENDER"},
            "labelSpecification": {
                "imageType": request.label_format.upper(),
                "labelStockType": "PAPER_85X11_TOP_HALF_LABEL",
            },
            "requestedPackageLineItems": [_line_item(p) for p in request.packages],
        }
        if request.reference:
            for item in shipment["requestedPackageLineItems"]:
                item["customerReferences"] = [
                    {"customerReferenceType": "CUSTOMER_REFERENCE", "value": request.reference}
                ]
        if request.customs is not None:
            customs = request.customs
            shipment["customsClearanceDetail"] = {
                "dutiesPayment": {"paymentType": "SENDER"},
                "totalCustomsValue": {"amount": customs.declared_value,
                                      "currency": customs.currency},
                "commodities": [
                    {
                        "description": item.description,
                        "quantity": item.quantity,
                        "quantityUnits": "PCS",
                        "unitPrice": {"amount": item.unit_value, "currency": customs.currency},
                        "customsValue": {"amount": round(item.unit_value * item.quantity, 2),
                                         "currency": customs.currency},
                        "weight": {"units": "KG", "value": item.weight},
                        "harmonizedCode": item.hs_code or "",
                        "countryOfManufacture": item.country_of_origin or request.origin.country,
                    }
                    for item in customs.items
                ],
            }
        return shipment

    async def _ship(self, requested_shipment: Dict[str, Any]) -> Dict[str, Any]:
        data = await self.http.send_json("POST", "/ship/v1/shipments", json={
            "labelResponseOptions": "LABEL",
            "accountNumber": {"value": self.account_number},
            "requestedShipment": requested_shipment,
        })
        shipments = (data.get("output") or {}).get("transactionShipments") or []
        if not shipments:
            raise ShippingError("FedEx shipment response has no transactionShipments")
        return shipments[0]

    async def create_shipment(self, request: ShipmentRequest) -> CreatedShipment:
        if not request.packages:
            raise ValidationError("At least one package is required")
        international = request.origin.country.upper() != request.destination.country.upper()
        if international and request.customs is None:
            raise ValidationError("Customs declaration is required for international shipments")

        shipment = await self._ship(self._requested_shipment(request))
        tracking_number = shipment.get("masterTrackingNumber") or ""
        rating = ((shipment.get("completedShipmentDetail") or {}).get("shipmentRating") or {})
        rate_detail = (rating.get("shipmentRateDetails") or [{}])[0]

        self._shipments[tracking_number] = request
        logger.info(f"FedEx出荷作成: {tracking_number}")
        return CreatedShipment(
            carrier=self.carrier_id,
            shipment_id=tracking_number,
            tracking_number=tracking_number,
            service_code=shipment.get("serviceType") or request.service_code,
            labels=_labels(shipment),
            price=to_float(rate_detail.get("totalNetCharge"), None),
            currency=rate_detail.get("currency"),
        )

    async def cancel_shipment(self, shipment_id: str) -> bool:
        data = await self.http.send_json("PUT", "/ship/v1/shipments/cancel", json={
            "accountNumber": {"value": self.account_number},
            "trackingNumber": shipment_id,
            "deletionControl": "DELETE_ALL_PACKAGES",
        })
        cancelled = bool((data.get("output") or {}).get("cancelledShipment"))
        if cancelled:
            self._shipments.pop(shipment_id, None)
            logger.info(f"FedEx出荷キャンセル: {shipment_id}")
        else:
            logger.warning(f"FedEx出荷キャンセル不可: {shipment_id}")
        return cancelled

    async def create_return_label(self, shipment_id: str,
                                  original: Optional[ShipmentRequest] = None) -> ReturnLabel:
        original = original or self._shipments.get(shipment_id)
        if original is None:
            raise ValidationError(
                f"FedEx return label needs the original shipment request for {shipment_id}"
            )
        reverse = ShipmentRequest(
            origin=original.destination,
            destination=original.origin,
            packages=original.packages,
            service_code=original.service_code,
            reference=original.reference,
            customs=original.customs,
            label_format=original.label_format,
        )
        requested = self._requested_shipment(reverse)
        requested["shipmentSpecialServices"] = {
            "specialServiceTypes": ["RETURN_SHIPMENT"],
            "returnShipmentDetail": {
                "returnType": "PRINT_RETURN_LABEL",
                "rma": {"reason": f"Return of {shipment_id}"},
            },
        }
        shipment = await self._ship(requested)
        labels = _labels(shipment)
        return ReturnLabel(
            carrier=self.carrier_id,
            shipment_id=shipment_id,
            tracking_number=shipment.get("masterTrackingNumber") or "",
            label=labels[0] if labels else None,
        )

    # --- 追跡 ---

    async def get_tracking(self, tracking_number: str) -> ShipmentTracking:
        data = await self.http.send_json("POST", "/track/v1/trackingnumbers", json={
            "includeDetailedScans": True,
            "trackingInfo": [{"trackingNumberInfo": {"trackingNumber": tracking_number}}],
        })
        complete = ((data.get("output") or {}).get("completeTrackResults") or [{}])[0]
        results = complete.get("trackResults") or []
        if not results:
            raise ShippingError(f"FedEx has no tracking data for {tracking_number}", status=404)

        result = results[0]
        if result.get("error"):
            error = result["error"]
            raise ShippingError(
                f"FedEx tracking error for {tracking_number}: {error.get('message') or error.get('code')}",
                status=404 if "NOTFOUND" in (error.get("code") or "") else None,
            )

        events = []
        for scan in result.get("scanEvents") or []:
            location = scan.get("scanLocation") or {}
            place = ", ".join(p for p in (location.get("city"), location.get("countryCode")) if p)
            events.append(TrackingEvent(
                timestamp=parse_datetime(scan.get("date")),
                status=map_status(scan.get("derivedStatusCode") or scan.get("eventType")),
                description=scan.get("eventDescription") or "",
                location=place or None,
            ))

        latest = result.get("latestStatusDetail") or {}
        dates = {d.get("type"): parse_datetime(d.get("dateTime"))
                 for d in result.get("dateAndTimes") or []}
        window = (result.get("estimatedDeliveryTimeWindow") or {}).get("window") or {}
        return ShipmentTracking(
            carrier=self.carrier_id,
            tracking_number=(result.get("trackingNumberInfo") or {}).get("trackingNumber")
            or tracking_number,
            status=map_status(latest.get("code")),
            events=events,
            estimated_delivery=parse_datetime(window.get("ends")) or dates.get("ESTIMATED_DELIVERY"),
            delivered_at=dates.get("ACTUAL_DELIVERY"),
        )

    # --- 住所検証 ---

    async def validate_address(self, address: Address) -> AddressValidation:
        data = await self.http.send_json("POST", "/address/v1/addresses/resolve", json={
            "addressesToValidate": [{"address": _address(address)}],
        })
        resolved = (data.get("output") or {}).get("resolvedAddresses") or []
        if not resolved:
            return AddressValidation(valid=False, messages=["Address could not be resolved"])

        match = resolved[0]
        messages = [
            m.get("message") or m.get("code") if isinstance(m, dict) else str(m)
            for m in match.get("customerMessages") or []
        ]
        attributes = match.get("attributes") or {}
        if "Resolved" in attributes:
            valid = str(attributes["Resolved"]).lower() == "true"
        else:
            valid = not messages

        street = match.get("streetLinesToken") or []
        suggested = Address(
            line1=street[0] if street else address.line1,
            line2=street[1] if len(street) > 1 else address.line2,
            city=match.get("city") or address.city,
            state=match.get("stateOrProvinceCode") or address.state,
            postal_code=match.get("postalCode") or address.postal_code,
            country=match.get("countryCode") or address.country,
        )
        return AddressValidation(valid=valid, messages=messages, suggested=suggested)
