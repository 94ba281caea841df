"""FedExアダプターのテスト"""

import asyncio
import json
from datetime import datetime

import pytest

from src.marketplaces.errors import AuthenticationError, ShippingError, ValidationError
from src.marketplaces.models import Address
from src.shipping.base import (
    CustomsDeclaration,
    CustomsItem,
    PackageDetails,
    RateRequest,
    ShipmentRequest,
)
from src.shipping.fedex import FedExProvider, _transit_days, map_status

CREDENTIALS = {"api_key": "fx_key", "api_secret": "fx_secret", "account_number": "740561073"}

ORIGIN = Address(line1="10 Fed Way", city="Memphis", state="TN", country="US",
                 postal_code="38116", name="Shop", phone="555-0100")
DESTINATION = Address(line1="20 Oak Ave", line2="Apt 3", city="Austin", state="TX",
                      country="US", postal_code="73301", name="Ann")
PACKAGE = PackageDetails(weight=1.2, length=20, width=15, height=10)

SHIP_RESPONSE = {"output": {"transactionShipments": [{
    "masterTrackingNumber": "794600000001",
    "serviceType": "STANDARD_OVERNIGHT",
    "pieceResponses": [{"packageDocuments": [
        {"contentType": "LABEL", "docType": "pdf", "encodedLabel": "JVBERi0="},
    ]}],
    "completedShipmentDetail": {"shipmentRating": {"shipmentRateDetails": [
        {"totalNetCharge": 31.4, "currency": "USD"},
    ]}},
}]}}


@pytest.fixture
def api(router):
    router.add("POST", "/oauth/token", {"access_token": "fx_token", "expires_in": 3599})
    return router


def _provider(router, **kwargs):
    return FedExProvider(http_transport=router.transport, **kwargs)


def _run(router, work, provider=None):
    provider = provider or _provider(router)

    async def go():
        try:
            await provider.initialize(CREDENTIALS)
            return await work(provider)
        finally:
            await provider.close()
    return asyncio.run(go())


class TestInitialize:

    def test_client_credentials(self, api):
        """client_credentials でトークン取得"""
        _run(api, lambda p: asyncio.sleep(0))
        request = api.calls("POST", "/oauth/token")[0]
        assert request.url.host == "apis.fedex.com"
        body = request.content.decode()
        assert "grant_type=client_credentials" in body
        assert "client_id=fx_key" in body
        assert "client_secret=fx_secret" in body

    def test_sandbox(self, api):
        """テストモードはサンドボックスURL"""
        provider = _provider(api)
        asyncio.run(provider.initialize(dict(CREDENTIALS, test_mode=True)))
        asyncio.run(provider.close())
        assert api.requests[0].url.host == "apis-sandbox.fedex.com"

    def test_missing_secret(self, router):
        """api_secret が無ければ認証エラー"""
        with pytest.raises(AuthenticationError):
            asyncio.run(_provider(router).initialize({"api_key": "x", "account_number": "1"}))

    def test_unconfigured_url(self, router):
        """base_url 未設定は設定エラー"""
        provider = FedExProvider(config={"shipping": {"fedex": {}}}, http_transport=router.transport)
        with pytest.raises(ValidationError, match="FedEx base_url is not configured"):
            asyncio.run(provider.initialize(CREDENTIALS))
        assert router.requests == []

    def test_bearer_and_locale_headers(self, api):
        """Bearerトークンとロケールヘッダー"""
        api.add("POST", "/rate/v1/rates/quotes", {"output": {"rateReplyDetails": []}})
        request = RateRequest(origin=ORIGIN, destination=DESTINATION, packages=[PACKAGE])
        _run(api, lambda p: p.get_rates(request))
        headers = api.calls("POST", "/rate/v1/rates/quotes")[0].headers
        assert headers["Authorization"] == "Bearer fx_token"
        assert headers["X-locale"] == "en_US"


class TestRates:

    def test_rates_mapping(self, api):
        """運賃見積もりの変換"""
        api.add("POST", "/rate/v1/rates/quotes", {"output": {"rateReplyDetails": [{
            "serviceType": "STANDARD_OVERNIGHT",
            "ratedShipmentDetails": [{"totalNetCharge": 42.75, "currency": "USD"}],
            "commit": {"transitDays": {"minimumTransitTime": "ONE_DAY"},
                       "dateDetail": {"dayFormat": "2024-03-02T10:30:00"}},
        }]}})
        request = RateRequest(origin=ORIGIN, destination=DESTINATION, packages=[PACKAGE],
                              service_code="STANDARD_OVERNIGHT",
                              ship_date=datetime(2024, 3, 1))
        rates = _run(api, lambda p: p.get_rates(request))

        assert rates[0].service_name == "FedEx Standard Overnight"
        assert rates[0].price == 42.75
        assert rates[0].min_days == 1
        assert rates[0].estimated_delivery == datetime(2024, 3, 2, 10, 30)

        body = api.last_json("POST", "/rate/v1/rates/quotes")
        shipment = body["requestedShipment"]
        assert body["accountNumber"] == {"value": "740561073"}
        assert shipment["serviceType"] == "STANDARD_OVERNIGHT"
        assert shipment["shipDateStamp"] == "2024-03-01"
        assert shipment["recipient"]["address"]["streetLines"] == ["20 Oak Ave", "Apt 3"]
        assert shipment["requestedPackageLineItems"][0]["weight"] == {"units": "KG", "value": 1.2}

    def test_missing_reply_details(self, api):
        """見積もり結果なしは配送エラー"""
        api.add("POST", "/rate/v1/rates/quotes", {"output": {}})
        request = RateRequest(origin=ORIGIN, destination=DESTINATION, packages=[PACKAGE])
        with pytest.raises(ShippingError):
            _run(api, lambda p: p.get_rates(request))

    def test_transit_days(self):
        """輸送日数の変換"""
        assert _transit_days({"minimumTransitTime": "THREE_DAYS"}) == 3
        assert _transit_days("2") == 2
        assert _transit_days(None) == 0


class TestShipments:

    def test_create_and_return_label(self, api):
        """出荷作成と返品ラベル"""
        api.add("POST", "/ship/v1/shipments", SHIP_RESPONSE)
        request = ShipmentRequest(origin=ORIGIN, destination=DESTINATION, packages=[PACKAGE],
                                  service_code="STANDARD_OVERNIGHT", reference="ORDER-7")

        async def work(provider):
            created = await provider.create_shipment(request)
            returned = await provider.create_return_label(created.shipment_id)
            return created, returned

        created, returned = _run(api, work)
        assert created.tracking_number == "794600000001"
        assert created.labels[0].format == "PDF"
        assert created.price == 31.4

        first, second = [
            json.loads(r.content)["requestedShipment"]
            for r in api.calls("POST", "/ship/v1/shipments")
        ]
        assert first["requestedPackageLineItems"][0]["customerReferences"] == [
            {"customerReferenceType": "CUSTOMER_REFERENCE", "value": "ORDER-7"},
        ]
        assert second["shipper"]["address"]["city"] == "Austin"
        assert second["recipients"][0]["address"]["city"] == "Memphis"
        assert second["shipmentSpecialServices"]["specialServiceTypes"] == ["RETURN_SHIPMENT"]
        assert returned.label.content == "JVBERi0="

    def test_return_label_without_original(self, api):
        """元の出荷が無い返品ラベルはエラー"""
        with pytest.raises(ValidationError):
            _run(api, lambda p: p.create_return_label("unknown"))

    def test_customs_commodities(self, api):
        """税関申告の品目"""
        api.add("POST", "/ship/v1/shipments", SHIP_RESPONSE)
        abroad = Address(line1="1 Rue", city="Paris", country="FR", postal_code="75001")
        customs = CustomsDeclaration(items=[
            CustomsItem(description="Mug", quantity=3, unit_value=12.5, weight=0.4),
        ], currency="USD")
        request = ShipmentRequest(origin=ORIGIN, destination=abroad, packages=[PACKAGE],
                                  service_code="INTERNATIONAL_PRIORITY", customs=customs)
        _run(api, lambda p: p.create_shipment(request))

        detail = api.last_json("POST", "/ship/v1/shipments")["requestedShipment"][
            "customsClearanceDetail"]
        assert detail["totalCustomsValue"] == {"amount": 37.5, "currency": "USD"}
        assert detail["commodities"][0]["customsValue"]["amount"] == 37.5
        assert detail["commodities"][0]["countryOfManufacture"] == "US"

    def test_cancel(self, api):
        """出荷キャンセル"""
        api.add("PUT", "/ship/v1/shipments/cancel", {"output": {"cancelledShipment": True}})
        assert _run(api, lambda p: p.cancel_shipment("794600000001")) is True
        assert api.last_json("PUT", "/ship/v1/shipments/cancel")["trackingNumber"] == \
            "794600000001"

    def test_cancel_refused(self, api):
        """キャンセル拒否"""
        api.add("PUT", "/ship/v1/shipments/cancel", {"output": {"cancelledShipment": False}})
        assert _run(api, lambda p: p.cancel_shipment("794600000001")) is False


class TestTracking:

    def test_tracking(self, api):
        """追跡イベント"""
        api.add("POST", "/track/v1/trackingnumbers", {"output": {"completeTrackResults": [{
            "trackResults": [{
                "trackingNumberInfo": {"trackingNumber": "794600000001"},
                "latestStatusDetail": {"code": "DL"},
                "dateAndTimes": [{"type": "ACTUAL_DELIVERY",
                                  "dateTime": "2024-03-02T14:00:00"}],
                "scanEvents": [
                    {"date": "2024-03-02T14:00:00", "derivedStatusCode": "DL",
                     "eventDescription": "Delivered",
                     "scanLocation": {"city": "AUSTIN", "countryCode": "US"}},
                    {"date": "2024-03-01T18:00:00", "eventType": "PU",
                     "eventDescription": "Picked up", "scanLocation": {}},
                ],
            }],
        }]}})
        tracking = _run(api, lambda p: p.get_tracking("794600000001"))

        assert tracking.status == "delivered"
        assert tracking.delivered_at == datetime(2024, 3, 2, 14, 0)
        assert tracking.events[0].location == "AUSTIN, US"
        assert tracking.events[1].status == "picked_up"
        assert tracking.events[1].location is None

    def test_tracking_not_found(self, api):
        """追跡番号が見つからない"""
        api.add("POST", "/track/v1/trackingnumbers", {"output": {"completeTrackResults": [{
            "trackResults": [{"error": {"code": "TRACKING.TRACKINGNUMBER.NOTFOUND",
                                        "message": "Tracking number cannot be found."}}],
        }]}})
        with pytest.raises(ShippingError) as exc:
            _run(api, lambda p: p.get_tracking("000"))
        assert exc.value.status == 404

    def test_map_status(self):
        """FedExの状態コードを共通ステータスに変換"""
        assert map_status("it") == "in_transit"
        assert map_status("HL") == "hl"
        assert map_status("") == "unknown"


class TestAddressValidation:

    def test_resolved(self, api):
        """解決された住所を正規化して返す"""
        api.add("POST", "/address/v1/addresses/resolve", {"output": {"resolvedAddresses": [{
            "streetLinesToken": ["20 OAK AVE", "APT 3"],
            "city": "AUSTIN",
            "stateOrProvinceCode": "TX",
            "postalCode": "73301-0001",
            "countryCode": "US",
            "attributes": {"Resolved": "true"},
        }]}})
        result = _run(api, lambda p: p.validate_address(DESTINATION))
        assert result.valid is True
        assert result.suggested.postal_code == "73301-0001"
        assert result.suggested.line1 == "20 OAK AVE"

    def test_unresolved_with_messages(self, api):
        """解決できなかった住所とメッセージ"""
        api.add("POST", "/address/v1/addresses/resolve", {"output": {"resolvedAddresses": [{
            "customerMessages": [{"code": "STANDARDIZED.ADDRESS.NOTFOUND"}],
        }]}})
        result = _run(api, lambda p: p.validate_address(DESTINATION))
        assert result.valid is False
        assert result.messages == ["STANDARDIZED.ADDRESS.NOTFOUND"]

    def test_nothing_resolved(self, api):
        """解決結果なしは無効"""
        api.add("POST", "/address/v1/addresses/resolve", {"output": {}})
        result = _run(api, lambda p: p.validate_address(DESTINATION))
        assert result.valid is False
