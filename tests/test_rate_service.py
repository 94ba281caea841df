"""配送料金サービスのテスト

実キャリアの代わりに結果を固定したフェイクを factory に登録する。
"""

import asyncio

import pytest

from src.marketplaces.errors import ShippingError, TransportError
from src.marketplaces.factory import AdapterFactory
from src.marketplaces.models import Address
from src.shipping.base import (
    AddressValidation,
    PackageDetails,
    RateRequest,
    ShipmentTracking,
    ShippingRate,
)
from src.shipping.rate_service import ShippingRateService


class FakeCarrier:
    carrier_id = "fake"
    countries = ("ZA", "GB")
    prices = (12.0,)
    fail = False

    def __init__(self, config=None, clock=None, sleep=None, http_transport=None):
        self.rate_calls = 0

    async def initialize(self, credentials):
        pass

    async def close(self):
        pass

    def supports_country(self, country_code):
        return country_code.upper() in self.countries

    async def get_rates(self, request):
        self.rate_calls += 1
        if self.fail:
            raise TransportError("{} API error (503)".format(self.carrier_id), status=503)
        return [ShippingRate(self.carrier_id, "S{}".format(i), "Service", price, "USD")
                for i, price in enumerate(self.prices)]

    async def get_tracking(self, tracking_number):
        if tracking_number != self.carrier_id + "-1":
            raise ShippingError("not found", status=404)
        return ShipmentTracking(self.carrier_id, tracking_number, "in_transit")

    async def validate_address(self, address):
        return AddressValidation(valid=True, messages=[self.carrier_id])


class Cheap(FakeCarrier):
    carrier_id = "cheap"
    prices = (5.0, 0.0, 30.0)


class Pricey(FakeCarrier):
    carrier_id = "pricey"
    prices = (20.0,)


class Broken(FakeCarrier):
    carrier_id = "broken"
    fail = True


class LocalOnly(FakeCarrier):
    carrier_id = "local"
    countries = ("US",)
    prices = (1.0,)


REQUEST = RateRequest(
    origin=Address(line1="1 Main St", city="Cape Town", country="ZA"),
    destination=Address(line1="3 High St", city="London", country="GB"),
    packages=[PackageDetails(weight=1, length=10, width=10, height=10)],
)


@pytest.fixture
def service():
    factory = AdapterFactory(kind="carrier")
    for carrier in (Cheap, Pricey, Broken, LocalOnly):
        factory.register_adapter(carrier.carrier_id, carrier)

    async def setup():
        for carrier in (Cheap, Pricey, Broken, LocalOnly):
            await factory.create_adapter(carrier.carrier_id, {})

    asyncio.run(setup())
    return ShippingRateService(factory)


class TestRates:

    def test_sorted_and_zero_prices_dropped(self, service):
        """安い順に並べ、価格0の見積もりは除く"""
        rates = asyncio.run(service.get_rates(REQUEST))
        assert [(r.carrier, r.price) for r in rates] == [
            ("cheap", 5.0), ("pricey", 20.0), ("cheap", 30.0),
        ]

    def test_failed_carrier_recorded(self, service):
        """失敗した配送業者を記録"""
        asyncio.run(service.get_rates(REQUEST))
        assert list(service.last_errors) == ["broken"]
        assert "503" in service.last_errors["broken"]

    def test_unsupported_destination_skipped(self, service):
        """未対応の宛先はスキップ"""
        asyncio.run(service.get_rates(REQUEST))
        assert service.factory.get_adapter("local").rate_calls == 0

    def test_selected_carriers(self, service):
        """指定した配送業者だけ"""
        rates = asyncio.run(service.get_rates(REQUEST, carriers=["pricey"]))
        assert [r.carrier for r in rates] == ["pricey"]

    def test_cheapest(self, service):
        """最安の見積もり"""
        rate = asyncio.run(service.get_cheapest_rate(REQUEST))
        assert rate.price == 5.0

    def test_no_carriers(self):
        """配送業者なし"""
        service = ShippingRateService(AdapterFactory(kind="carrier"))
        with pytest.raises(ShippingError):
            asyncio.run(service.get_rates(REQUEST))


class TestTracking:

    def test_tries_each_carrier(self, service):
        """配送業者を順に試す"""
        tracking = asyncio.run(service.get_tracking("pricey-1"))
        assert tracking.carrier == "pricey"

    def test_named_carrier(self, service):
        """配送業者を指定した追跡"""
        tracking = asyncio.run(service.get_tracking("cheap-1", carrier="cheap"))
        assert tracking.carrier == "cheap"

    def test_not_found_anywhere(self, service):
        """どの配送業者でも見つからない"""
        with pytest.raises(ShippingError) as exc:
            asyncio.run(service.get_tracking("nope"))
        assert exc.value.status == 404
        assert "cheap: not found" in exc.value.message

    def test_validate_address(self, service):
        """住所検証"""
        result = asyncio.run(service.validate_address(REQUEST.destination, carrier="pricey"))
        assert result.messages == ["pricey"]
