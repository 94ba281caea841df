"""アダプター共通ヘルパーのテスト"""

import asyncio
from datetime import datetime, timezone

import httpx
import pytest

from src.marketplaces.errors import (
    AuthenticationError,
    AuthorizationError,
    RateLimitError,
    TransportError,
    VendorRejectionError,
)
from src.marketplaces.helpers import (
    batch_operation,
    chunked,
    error_from_exception,
    error_from_response,
    extract_error_message,
    iso_utc,
    map_value,
    parse_datetime,
    rate_limit_from_headers,
    require_fields,
    run_batch,
    to_float,
    to_int,
)
from src.marketplaces.models import StockUpdatePayload


class TestExtractErrorMessage:
    """ベンダー別エラー形状"""

    def test_error_list(self):
        """errors リストからメッセージを取り出す"""
        payload = {"errors": [{"message": "Invalid SKU"}, {"code": "E2"}]}
        assert extract_error_message(payload) == "Invalid SKU; E2"

    def test_error_list_with_path(self):
        payload = {"errors": [{"message": "required", "path": "price"}]}
        assert extract_error_message(payload) == "price: required"

    def test_shopify_field_errors(self):
        """Shopifyのフィールド別エラー"""
        payload = {"errors": {"price": ["must be greater than 0"]}}
        assert extract_error_message(payload) == "price: must be greater than 0"

    def test_string_errors(self):
        assert extract_error_message({"errors": "Not Found"}) == "Not Found"

    def test_dhl_detail(self):
        """DHLの detail"""
        assert extract_error_message({"title": "Bad", "detail": "Postal code"}) == "Postal code"

    def test_empty(self):
        assert extract_error_message(None) == "Unknown error"
        assert extract_error_message({}, default="HTTP 500") == "HTTP 500"


class TestErrorFromResponse:
    """HTTPステータス → 例外分類"""

    def _response(self, status, json=None, headers=None):
        return httpx.Response(status, json=json or {}, headers=headers)

    def test_401(self):
        """401は認証エラー"""
        assert isinstance(error_from_response(self._response(401)), AuthenticationError)

    def test_403(self):
        """403は権限エラー"""
        assert isinstance(error_from_response(self._response(403)), AuthorizationError)

    def test_429_retry_after(self):
        """429は Retry-After 付きのレート制限エラー"""
        error = error_from_response(self._response(429, headers={"retry-after": "3"}))
        assert isinstance(error, RateLimitError)
        assert error.retry_after == 3.0

    def test_5xx(self):
        """5xxは通信エラー"""
        error = error_from_response(self._response(503))
        assert isinstance(error, TransportError)
        assert error.status == 503

    def test_4xx_is_vendor_rejection(self):
        """その他の4xxはベンダー拒否"""
        error = error_from_response(self._response(422, {"errors": [{"message": "bad price"}]}))
        assert isinstance(error, VendorRejectionError)
        assert error.message == "bad price"
        assert error.status == 422

    def test_request_error(self):
        """接続失敗は通信エラー"""
        error = error_from_exception(httpx.ConnectError("refused"), "shopify")
        assert isinstance(error, TransportError)
        assert "shopify" in error.message


class TestConversions:
    """値変換"""

    def test_to_float(self):
        assert to_float("12.5") == 12.5
        assert to_float({"Amount": "3.20"}) == 3.2
        assert to_float({"CurrencyCode": "USD", "CurrencyAmount": -4.5}) == -4.5
        assert to_float("", None) is None
        assert to_float("abc") == 0.0

    def test_to_int(self):
        assert to_int("7") == 7
        assert to_int("7.9") == 7
        assert to_int(None, 5) == 5

    def test_parse_datetime_iso_z(self):
        """Z付きISO文字列"""
        value = parse_datetime("2024-03-01T10:00:00Z")
        assert value == datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc)

    def test_parse_datetime_epoch(self):
        """エポック秒"""
        assert parse_datetime(0) == datetime(1970, 1, 1, tzinfo=timezone.utc)

    def test_parse_datetime_invalid(self):
        assert parse_datetime("not a date") is None
        assert parse_datetime(None) is None

    def test_iso_utc_naive(self):
        assert iso_utc(datetime(2024, 1, 2, 3, 4, 5)) == "2024-01-02T03:04:05Z"

    def test_map_value_case_insensitive(self):
        assert map_value("ACTIVE", {"active": 1}, 0) == 1
        assert map_value("other", {"active": 1}, 0) == 0
        assert map_value(None, {"active": 1}, 0) == 0

    def test_chunked(self):
        assert list(chunked([1, 2, 3, 4, 5], 2)) == [[1, 2], [3, 4], [5]]
        assert list(chunked([], 3)) == []

    def test_chunked_rejects_zero_size(self):
        """サイズ0は拒否"""
        with pytest.raises(ValueError):
            list(chunked([1, 2], 0))


class TestRateLimitHeaders:
    """レート制限ヘッダー解析"""

    def test_relative_reset(self):
        """リセットまでの秒数"""
        status = rate_limit_from_headers(
            {"x-limit": "40", "x-remaining": "12", "x-reset": "5"},
            now=100.0, limit_header="x-limit", remaining_header="x-remaining",
            reset_header="x-reset",
        )
        assert status.remaining == 12
        assert status.limit == 40
        assert status.reset == 105.0

    def test_epoch_reset(self):
        """リセット時刻（エポック秒）"""
        status = rate_limit_from_headers(
            {"x-remaining": "1", "x-reset": "1700000000"},
            now=0.0, limit_header="x-limit", remaining_header="x-remaining",
            reset_header="x-reset",
        )
        assert status.reset == 1700000000.0
        assert status.limit == 1

    def test_missing_headers(self):
        assert rate_limit_from_headers({}, 0.0, "x-limit", "x-remaining") is None


class TestRunBatch:
    """バッチ実行"""

    def test_item_failure_continues(self):
        """品目単位の失敗を記録して続行"""
        async def handler(item):
            if item.sku == "BAD":
                raise VendorRejectionError("invalid sku")

        items = [StockUpdatePayload("A", 1), StockUpdatePayload("BAD", 1),
                 StockUpdatePayload("C", 1)]
        result = asyncio.run(run_batch(items, handler))
        assert result.successful == ["A", "C"]
        assert [(f.sku, f.reason) for f in result.failed] == [("BAD", "invalid sku")]

    def test_transport_error_fails_batch(self):
        """通信エラーはバッチ全体の失敗"""
        async def handler(item):
            raise TransportError("timeout")

        result = asyncio.run(batch_operation([StockUpdatePayload("A", 1)], handler, "test"))
        assert result.success is False
        assert result.error.message == "timeout"

    def test_authentication_error_propagates(self):
        """認証エラーはそのまま送出"""
        async def handler(item):
            raise AuthenticationError("expired")

        with pytest.raises(AuthenticationError):
            asyncio.run(batch_operation([StockUpdatePayload("A", 1)], handler, "test"))

    def test_concurrent_batch(self):
        """同時実行でも全件処理"""
        async def handler(item):
            await asyncio.sleep(0)

        items = [StockUpdatePayload(str(i), i) for i in range(5)]
        result = asyncio.run(run_batch(items, handler, concurrency=3))
        assert sorted(result.successful) == ["0", "1", "2", "3", "4"]

    def test_zero_concurrency_runs_sequentially(self):
        """同時実行数0は逐次処理"""
        async def handler(item):
            pass

        items = [StockUpdatePayload("A", 1), StockUpdatePayload("B", 1)]
        result = asyncio.run(run_batch(items, handler, concurrency=0))
        assert result.successful == ["A", "B"]


class TestRequireFields:

    def test_missing(self):
        with pytest.raises(AuthenticationError) as exc_info:
            require_fields({"a": "x", "b": ""}, ["a", "b", "c"], "vendor")
        assert "b, c" in exc_info.value.message

    def test_ok(self):
        require_fields({"a": "x"}, ["a"], "vendor")
