"""Takealotアダプターのテスト

- 5件以下は1件ずつPATCH、超えたらバッチAPI + ポーリング
- 販売価格は整数ランドに丸め
- 0始まりページ → APIの1始まりページ
"""

import asyncio
from datetime import datetime

import httpx
import pytest

from src.marketplaces.errors import AuthenticationError, ErrorCode
from src.marketplaces.models import (
    OrderStatus,
    PriceUpdatePayload,
    ProductStatus,
    StatusUpdatePayload,
    StockUpdatePayload,
)
from src.marketplaces.takealot import TakealotAdapter

CREDENTIALS = {"api_key": "tk_test"}

OFFER = {
    "offer_id": 12345,
    "sku": "MUG-1",
    "title": "Mug",
    "selling_price": 80,
    "rrp": 100,
    "status": "Buyable",
    "barcode": "600123",
    "offer_url": "https://www.takealot.com/mug/PLID1",
    "leadtime_stock": [{"merchant_warehouse": {"warehouse_id": 7, "name": "CPT"},
                        "quantity_available": 4}],
    "stock_at_takealot": [{"quantity_available": 2}],
}

SALE = {
    "order_id": 900,
    "order_item_id": 1,
    "sku": "MUG-1",
    "product_title": "Mug",
    "quantity": 2,
    "selling_price": 160,
    "sale_status": "Shipped to Customer",
    "customer": "Ann",
    "order_date": "2024-03-01 10:00:00",
    "dc": "JHB",
}


@pytest.fixture
def api(router):
    router.add("GET", "/v2/offers/count", {"count": 1},
               headers={"x-ratelimit-limit": "100", "x-ratelimit-remaining": "98",
                        "x-ratelimit-reset": "60"})
    router.add("GET", "/v2/offers", {"offers": [OFFER], "total_results": 1})
    router.add("GET", "/v2/offers/offer", responses=[
        lambda request: httpx.Response(200, json=OFFER)
        if request.url.params.get("identifier") == "MUG-1"
        else httpx.Response(404, json={"message": "Offer not found"}),
    ])
    router.add("PATCH", r"/v2/offers/offer/\d+", {"offer_id": 12345})
    return router


def _adapter(router, sleep=None, config=None, clock=None):
    kwargs = {"http_transport": router.transport}
    if sleep is not None:
        kwargs["sleep"] = sleep
    if config is not None:
        kwargs["config"] = config
    if clock is not None:
        kwargs["clock"] = clock
    return TakealotAdapter(**kwargs)


def _run(adapter, work):
    async def go():
        try:
            await adapter.initialize(CREDENTIALS)
            return await work()
        finally:
            await adapter.close()
    return asyncio.run(go())


class TestInitialize:

    def test_handshake_and_warehouses(self, api, clock):
        """接続確認と倉庫一覧"""
        adapter = _adapter(api, clock=clock)
        _run(adapter, lambda: asyncio.sleep(0))
        assert [(w.id, w.name) for w in adapter.warehouses] == [(7, "CPT")]
        assert api.requests[0].headers["X-API-Key"] == "tk_test"
        status = adapter.get_rate_limit_status()
        assert status.remaining == 98
        assert status.reset == clock.now + 60

    def test_invalid_key(self, router):
        """APIキー拒否は認証エラー"""
        router.add("GET", "/v2/offers/count", {"message": "Unauthorized"}, status=401)
        adapter = _adapter(router)
        with pytest.raises(AuthenticationError):
            _run(adapter, lambda: asyncio.sleep(0))


class TestProducts:

    def test_offer_mapping(self, api):
        """オファーを共通の商品モデルに変換"""
        adapter = _adapter(api)
        result = _run(adapter, lambda: adapter.get_product_by_sku("MUG-1"))
        product = result.data
        assert product.id == "12345"
        assert product.price == 100.0
        assert product.sale_price == 80.0
        assert product.rrp == 100.0
        assert product.currency == "ZAR"
        assert product.stock_level == 6
        assert product.status == ProductStatus.ACTIVE

    def test_not_found(self, api):
        """存在しないSKU"""
        adapter = _adapter(api)
        result = _run(adapter, lambda: adapter.get_product_by_sku("NOPE"))
        assert result.error.code == ErrorCode.PRODUCT_NOT_FOUND

    def test_invalid_offer_id(self, api):
        """数値でないオファーIDは PRODUCT_NOT_FOUND"""
        adapter = _adapter(api)
        result = _run(adapter, lambda: adapter.get_product_by_id("abc"))
        assert result.error.code == ErrorCode.PRODUCT_NOT_FOUND

    def test_page_is_one_based_on_wire(self, api):
        """送信するページ番号は1始まり"""
        adapter = _adapter(api)
        page = _run(adapter, lambda: adapter.get_products(page=0, page_size=500))
        params = api.calls("GET", "/v2/offers")[-1].url.params
        assert params["page"] == "1"
        assert params["page_size"] == "100"
        assert page.total == 1
        assert page.has_next_page is False


class TestSingleUpdates:
    """5件以下: 1件ずつPATCH"""

    def test_stock_uses_first_warehouse(self, api):
        """在庫は先頭の倉庫に設定"""
        adapter = _adapter(api)
        result = _run(adapter, lambda: adapter.update_stock([StockUpdatePayload("MUG-1", 9)]))
        assert result.data.successful == ["MUG-1"]
        assert api.last_json("PATCH", r"/v2/offers/offer/\d+") == {
            "leadtime_stock": [{"merchant_warehouse": {"warehouse_id": 7, "name": "CPT"},
                                "quantity_available": 9}],
        }

    def test_price_rounded_to_rand(self, api):
        """価格は整数ランドに丸める"""
        adapter = _adapter(api)
        _run(adapter, lambda: adapter.update_prices([
            PriceUpdatePayload("MUG-1", price=149.6, sale_price=99.5),
        ]))
        assert api.last_json("PATCH", r"/v2/offers/offer/\d+") == {
            "selling_price": 100, "rrp": 150,
        }

    def test_status_action(self, api):
        """ステータスは status_action で送る"""
        adapter = _adapter(api)
        _run(adapter, lambda: adapter.update_status([
            StatusUpdatePayload("MUG-1", ProductStatus.INACTIVE),
        ]))
        assert api.last_json("PATCH", r"/v2/offers/offer/\d+") == {"status_action": "Disable"}

    def test_unknown_sku(self, api):
        """不明なSKUは品目単位の失敗"""
        adapter = _adapter(api)
        result = _run(adapter, lambda: adapter.update_prices([PriceUpdatePayload("NOPE", 10)]))
        assert result.success is True
        assert result.data.failed[0].reason == "No product found with SKU: NOPE"

    def test_price_rounding_to_zero_rejected(self, api):
        """0.5ランド未満は0に丸まるため送らない"""
        adapter = _adapter(api)
        result = _run(adapter, lambda: adapter.update_prices([PriceUpdatePayload("MUG-1", 0.4)]))
        assert result.success is True
        assert result.data.failed[0].sku == "MUG-1"
        assert "whole rand" in result.data.failed[0].reason
        assert api.calls("PATCH", r"/v2/offers/offer/\d+") == []


class TestBatchUpdates:
    """6件以上: バッチAPI"""

    def _updates(self, count=6):
        return [StockUpdatePayload("SKU-{}".format(i), i) for i in range(count)]

    def test_batch_results_by_index(self, api, sleep):
        """バッチ結果を送信順で対応付け"""
        api.add("POST", "/v2/offers/batch", {"batch_id": "b1"})
        api.add("GET", "/v2/offers/batch/b1", responses=[
            httpx.Response(200, json={"status": {"code": 102}}),
            httpx.Response(200, json={"status": {"code": 200}, "result": [
                {"index": i} for i in range(5)
            ] + [{"index": 5, "errors": [{"message": "Invalid SKU"}]}]}),
        ])
        adapter = _adapter(api, sleep=sleep)
        result = _run(adapter, lambda: adapter.update_stock(self._updates()))

        assert result.success is True
        assert result.data.successful == ["SKU-{}".format(i) for i in range(5)]
        assert result.data.failed[0].sku == "SKU-5"
        assert result.data.failed[0].reason == "Invalid SKU"
        assert sleep.delays == [5.0, 5.0]
        body = api.last_json("POST", "/v2/offers/batch")
        assert len(body["offers"]) == 6
        assert body["offers"][0]["sku"] == "SKU-0"

    def test_batch_timeout(self, api, sleep):
        """バッチ完了待ちのタイムアウト"""
        api.add("POST", "/v2/offers/batch", {"batch_id": "b2"})
        api.add("GET", "/v2/offers/batch/b2", {"status": {"code": 102}})
        adapter = _adapter(api, sleep=sleep)
        result = _run(adapter, lambda: adapter.update_stock(self._updates()))

        assert len(sleep.delays) == 12
        assert len(result.data.failed) == 6
        assert {f.reason for f in result.data.failed} == {"Batch processing timed out"}

    def test_invalid_items_excluded_from_batch(self, api, sleep):
        """不正な品目はバッチから除外"""
        api.add("POST", "/v2/offers/batch", {"batch_id": "b3"})
        api.add("GET", "/v2/offers/batch/b3", {"status": {"code": 200}, "result": [
            {"index": i} for i in range(6)
        ]})
        updates = self._updates() + [StockUpdatePayload("NEG", -1)]
        adapter = _adapter(api, sleep=sleep)
        result = _run(adapter, lambda: adapter.update_stock(updates))

        assert len(result.data.successful) == 6
        assert result.data.failed[0].sku == "NEG"
        assert len(api.last_json("POST", "/v2/offers/batch")["offers"]) == 6

    def test_batch_creation_failure(self, api, sleep):
        """バッチ作成の失敗"""
        api.add("POST", "/v2/offers/batch", {"message": "Server error"}, status=500)
        adapter = _adapter(api, sleep=sleep)
        result = _run(adapter, lambda: adapter.update_stock(self._updates()))
        assert result.success is False


class TestOrders:

    def test_sales_mapping(self, api):
        """販売データを共通の注文モデルに変換"""
        api.add("GET", "/v1/sales", {"sales": [SALE], "page_summary": {"total": 1}})
        adapter = _adapter(api)
        page = _run(adapter, lambda: adapter.get_recent_orders(datetime(2024, 3, 1)))
        order = page.items[0]
        assert order.marketplace_order_id == "900"
        assert order.status == OrderStatus.SHIPPED
        assert order.items[0].unit_price == 80.0
        assert order.currency == "ZAR"
        assert order.fulfillment_channel == "JHB"
        params = api.calls("GET", "/v1/sales")[0].url.params
        assert params["from_date"] == "2024-03-01"

    def test_acknowledge_missing_order(self, api):
        """存在しない注文の確認"""
        api.add("GET", "/v1/sales", {"sales": []})
        adapter = _adapter(api)
        result = _run(adapter, lambda: adapter.acknowledge_order("901"))
        assert result.success is False
        assert result.error.code == ErrorCode.ORDER_NOT_FOUND

    def test_update_order_status_not_supported(self, api):
        """注文ステータス更新は未対応"""
        adapter = _adapter(api)
        result = _run(adapter, lambda: adapter.update_order_status("900", OrderStatus.SHIPPED))
        assert result.error.code == ErrorCode.OPERATION_NOT_SUPPORTED


class TestFetchPaging:
    """ページ番号指定の全件取得（最終ページが端数）"""

    OFFERS = [dict(OFFER, offer_id=i, sku="SKU-{}".format(i)) for i in range(1, 151)]

    def _serve_offers(self, request):
        page = int(request.url.params.get("page", 1))
        size = int(request.url.params.get("page_size", 100))
        start = (page - 1) * size
        return httpx.Response(200, json={"offers": self.OFFERS[start:start + size],
                                         "total_results": len(self.OFFERS)})

    @pytest.fixture
    def offers_api(self, router):
        router.add("GET", "/v2/offers/count", {"count": len(self.OFFERS)})
        router.add("GET", "/v2/offers", responses=[self._serve_offers])
        return router

    def test_all_items_fetched_once(self, offers_api, sleep):
        """全件を重複なく取得"""
        adapter = _adapter(offers_api, sleep=sleep)
        products = _run(adapter, lambda: adapter.fetch_products(limit=150))
        skus = [p.sku for p in products]
        assert len(skus) == 150
        assert len(set(skus)) == 150
        assert skus[-1] == "SKU-150"

    def test_page_size_fixed_across_pages(self, offers_api, sleep):
        """残り件数でページサイズを縮めない"""
        adapter = _adapter(offers_api, sleep=sleep)
        products = _run(adapter, lambda: adapter.fetch_products(limit=130))
        assert [p.sku for p in products] == ["SKU-{}".format(i) for i in range(1, 131)]
        wire = [(r.url.params["page"], r.url.params["page_size"])
                for r in offers_api.calls("GET", "/v2/offers")][-2:]
        assert wire == [("1", "100"), ("2", "100")]

    def test_sales_pages(self, router, sleep):
        """販売データも複数ページ取得"""
        sales = [dict(SALE, order_id=i) for i in range(1, 121)]

        def serve(request):
            page = int(request.url.params["page"])
            size = int(request.url.params["page_size"])
            start = (page - 1) * size
            return httpx.Response(200, json={"sales": sales[start:start + size],
                                             "page_summary": {"total": len(sales)}})

        router.add("GET", "/v2/offers/count", {"count": 0})
        router.add("GET", "/v2/offers", {"offers": [], "total_results": 0})
        router.add("GET", "/v1/sales", responses=[serve])
        adapter = _adapter(router, sleep=sleep)
        orders = _run(adapter, lambda: adapter.fetch_orders(limit=110))
        ids = [o.marketplace_order_id for o in orders]
        assert ids == [str(i) for i in range(1, 111)]
