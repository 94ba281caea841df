"""テスト共通フィクスチャ

ベンダーAPIは httpx.MockTransport に載せた VendorRouter で模擬する。
"""

import json
import re
from datetime import datetime

import httpx
import pytest

from src.marketplaces.errors import AuthenticationError
from src.marketplaces.factory import AdapterFactory
from src.marketplaces.models import (
    BatchUpdateResult,
    Customer,
    FailedItem,
    MarketplaceHealth,
    MarketplaceOrder,
    OperationResult,
    OrderAcknowledgment,
    OrderStatus,
    PaginatedResponse,
    PaymentStatus,
)


class VendorRouter:
    """(メソッド, パス正規表現) → レスポンスの簡易ルーター

    レスポンスにリストを渡すと呼び出し毎に順に返す（最後の要素は繰り返し）。
    関数を渡すと request を受け取って httpx.Response を返す。
    """

    def __init__(self):
        self.routes = []
        self.requests = []

    def add(self, method, path, json_body=None, status=200, headers=None, responses=None):
        if responses is None:
            responses = [httpx.Response(status, json=json_body, headers=headers)]
        elif not isinstance(responses, list):
            responses = [responses]
        self.routes.append({"method": method.upper(), "pattern": re.compile(path + "$"),
                            "responses": responses, "count": 0})
        return self

    def __call__(self, request):
        self.requests.append(request)
        for route in self.routes:
            if route["method"] != request.method or not route["pattern"].search(request.url.path):
                continue
            responses = route["responses"]
            item = responses[min(route["count"], len(responses) - 1)]
            route["count"] += 1
            if callable(item):
                return item(request)
            return item
        return httpx.Response(404, json={"errors": "No route for {} {}".format(
            request.method, request.url.path)})

    @property
    def transport(self):
        return httpx.MockTransport(self)

    def calls(self, method, path):
        pattern = re.compile(path + "$")
        return [r for r in self.requests
                if r.method == method.upper() and pattern.search(r.url.path)]

    def last_json(self, method, path):
        return json.loads(self.calls(method, path)[-1].content)


class SleepRecorder:
    """asyncio.sleep の代わりに待機秒だけ記録"""

    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def router():
    return VendorRouter()


@pytest.fixture
def sleep():
    return SleepRecorder()


@pytest.fixture
def clock():
    return FakeClock()


class FakeMarketplace:
    """サービス層テスト用のメモリ上アダプター

    rejections（または認証情報の "rejections"）に sku → 理由 を入れると
    その SKU を failed にする。
    raise_error / fail_message でバッチ呼び出し全体を失敗させる。
    """

    marketplace_id = "fake"
    marketplace_name = "Fake Market"

    def __init__(self, config=None, clock=None, sleep=None, http_transport=None):
        self.credentials = None
        self.calls = []
        self.rejections = {}
        self.raise_error = None
        self.fail_message = None
        self.health_error = None
        self.orders = []
        self.ack_failures = set()
        self.acknowledged = []
        self.closed = False

    async def initialize(self, credentials):
        if credentials.get("invalid"):
            raise AuthenticationError("{} rejected credentials".format(self.marketplace_name))
        self.credentials = credentials
        self.rejections.update(credentials.get("rejections") or {})
        self.closed = False

    async def close(self):
        self.closed = True

    async def _batch(self, kind, payloads):
        self.calls.append((kind, payloads))
        if self.raise_error is not None:
            raise self.raise_error
        if self.fail_message is not None:
            return OperationResult.fail(self.fail_message, code="API_ERROR")
        batch = BatchUpdateResult()
        for payload in payloads:
            if payload.sku in self.rejections:
                batch.failed.append(FailedItem(payload.sku, self.rejections[payload.sku]))
            else:
                batch.successful.append(payload.sku)
        return OperationResult.ok(batch)

    async def update_stock(self, updates):
        return await self._batch("stock", updates)

    async def update_prices(self, updates):
        return await self._batch("price", updates)

    async def update_status(self, updates):
        return await self._batch("status", updates)

    async def get_product_by_sku(self, sku):
        return OperationResult.ok(None)

    async def get_marketplace_health(self):
        if self.health_error is not None:
            raise self.health_error
        return MarketplaceHealth(marketplace_id=self.marketplace_id,
                                 name=self.marketplace_name, connected=True,
                                 message="Connected")

    async def fetch_orders(self, since=None, limit=100):
        return list(self.orders)[:limit]

    async def get_recent_orders(self, since, page=0, page_size=20):
        self.calls.append(("recent_orders", since))
        return PaginatedResponse(items=list(self.orders), total=len(self.orders),
                                 page=page, page_size=page_size)

    async def acknowledge_order(self, order_id):
        if order_id in self.ack_failures:
            return OperationResult.fail("Order not found: {}".format(order_id),
                                        code="ORDER_NOT_FOUND")
        self.acknowledged.append(order_id)
        return OperationResult.ok(OrderAcknowledgment(order_id, True, datetime.now()))


class OtherMarketplace(FakeMarketplace):
    marketplace_id = "other"
    marketplace_name = "Other Market"


@pytest.fixture
def register_fakes():
    """既存のファクトリーに fake / other を登録する関数"""
    def register(factory):
        factory.register_adapter("fake", FakeMarketplace)
        factory.register_adapter("other", OtherMarketplace)
        return factory
    return register


@pytest.fixture
def fake_factory(register_fakes):
    """fake / other を登録したファクトリー（未初期化）"""
    return register_fakes(AdapterFactory())


def make_order(order_id, status="new", total=25.0):
    """テスト用の MarketplaceOrder"""
    return MarketplaceOrder(
        id=order_id,
        marketplace_order_id="M-" + order_id,
        status=OrderStatus(status),
        payment_status=PaymentStatus.PAID,
        customer=Customer(name="Ann"),
        items=[],
        total=total,
        currency="USD",
    )


@pytest.fixture
def order_factory():
    return make_order
