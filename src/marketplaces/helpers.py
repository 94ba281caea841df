"""アダプター共通ヘルパー

継承ではなく関数として各アダプターから組み合わせて使う。
- ベンダーエラーの分類（HTTPステータス → MarketplaceError階層）
- 値の型変換（数値・日時）
- バッチ更新の実行（1件の失敗がバッチ全体を止めない）
- レート制限ヘッダーの解析
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import (
    Any, Awaitable, Callable, Dict, Iterable, Iterator, List, Mapping,
    Optional, Sequence, TypeVar,
)

import httpx

from src.marketplaces.errors import (
    AuthenticationError,
    AuthorizationError,
    MarketplaceError,
    RateLimitError,
    TransportError,
    ValidationError,
    VendorRejectionError,
)
from src.marketplaces.models import (
    BatchUpdateResult,
    ConnectionStatus,
    FailedItem,
    MarketplaceHealth,
    OperationResult,
    RateLimitStatus,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# 個別アイテムの失敗として扱う例外（バッチは継続）
ITEM_LEVEL_ERRORS = (VendorRejectionError, ValidationError, AuthorizationError)


# --- エラー分類 ---

def extract_error_message(payload: Any, default: str = "Unknown error") -> str:
    """ベンダーごとに異なるエラーJSONからメッセージを取り出す

    対応形状:
      - {"errors": [{"message": ...}]}           Amazon / Takealot / FedEx
      - {"errors": {"price": ["must be ..."]}}  Shopify
      - {"errors": "Not Found"}                 Shopify
      - {"detail": ...} / {"title": ...}        DHL
      - {"message": ...} / {"error_description": ...} / {"error": ...}
    """
    if not payload:
        return default
    if isinstance(payload, str):
        return payload
    if not isinstance(payload, dict):
        return default

    errors = payload.get("errors")
    if isinstance(errors, list) and errors:
        messages = []
        for err in errors:
            if isinstance(err, dict):
                text = err.get("message") or err.get("detail") or err.get("code")
                if err.get("path") and text:
                    text = f"{err['path']}: {text}"
                if text:
                    messages.append(str(text))
            elif err:
                messages.append(str(err))
        if messages:
            return "; ".join(messages)
    if isinstance(errors, dict) and errors:
        parts = []
        for field_name, value in errors.items():
            if isinstance(value, list):
                value = ", ".join(str(v) for v in value)
            parts.append(f"{field_name}: {value}")
        return "; ".join(parts)
    if isinstance(errors, str) and errors:
        return errors

    for key in ("detail", "title", "message", "error_description", "error"):
        value = payload.get(key)
        if isinstance(value, str) and value:
            return value
        if isinstance(value, dict) and value.get("message"):
            return str(value["message"])
    return default


def _response_payload(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


def error_from_response(response: httpx.Response,
                        vendor: str = "marketplace") -> MarketplaceError:
    """エラーレスポンスを例外に変換"""
    status = response.status_code
    message = extract_error_message(
        _response_payload(response), default=f"HTTP {status}"
    )
    text = f"{vendor} API error ({status}): {message}"

    if status == 401:
        return AuthenticationError(text, status=status)
    if status == 403:
        return AuthorizationError(text, status=status)
    if status == 429:
        retry_after = response.headers.get("retry-after")
        return RateLimitError(
            text,
            retry_after=to_float(retry_after, None),
            status=status,
        )
    if status >= 500 or status == 408:
        return TransportError(text, status=status)
    return VendorRejectionError(message, status=status)


def error_from_exception(exc: Exception,
                         vendor: str = "marketplace") -> MarketplaceError:
    """httpx例外などをMarketplaceErrorに変換（既に変換済みならそのまま）"""
    if isinstance(exc, MarketplaceError):
        return exc
    if isinstance(exc, httpx.HTTPStatusError):
        return error_from_response(exc.response, vendor)
    if isinstance(exc, httpx.RequestError):
        return TransportError(f"{vendor} request failed: {exc}")
    return MarketplaceError(f"{vendor} error: {exc}")


def is_not_found(exc: MarketplaceError) -> bool:
    return exc.status == 404


# --- 値変換 ---

def to_float(value: Any, default: Optional[float] = 0.0) -> Optional[float]:
    """文字列・数値・{"Amount": ...} / {"CurrencyAmount": ...}形式をfloatに変換"""
    if isinstance(value, dict):
        value = value.get("Amount", value.get("CurrencyAmount", value.get("amount", value.get("value"))))
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def to_int(value: Any, default: int = 0) -> int:
    if value is None or value == "":
        return default
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return default


def parse_datetime(value: Any) -> Optional[datetime]:
    """ISO 8601文字列（末尾Z含む）・epoch秒をdatetimeに変換"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        pass
    for fmt in ("%Y-%m-%d %H:%M:%S", "%d %b %Y %H:%M:%S", "%Y-%m-%d"):
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    logger.debug(f"日時パース失敗: {value!r}")
    return None


def iso_utc(value: datetime) -> str:
    """datetimeをUTCのISO 8601（Z付き）に変換"""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def map_value(value: Optional[str], mapping: Mapping[str, T], default: T) -> T:
    """大文字小文字を無視した辞書マッピング"""
    if value is None:
        return default
    lowered = {k.lower(): v for k, v in mapping.items()}
    return lowered.get(str(value).strip().lower(), default)


def chunked(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    if size < 1:
        raise ValueError(f"chunk size must be at least 1: {size}")
    for start in range(0, len(items), size):
        yield items[start:start + size]


# --- バッチ実行 ---

async def run_batch(
    items: Iterable[Any],
    handler: Callable[[Any], Awaitable[None]],
    concurrency: int = 1,
    vendor: str = "marketplace",
) -> BatchUpdateResult:
    """アイテムごとにhandlerを実行し、成功/失敗SKUを集計

    ベンダーの業務エラー（ITEM_LEVEL_ERRORS）は failed に記録して継続。
    通信・認証エラーはバッチ全体の失敗として送出する。

    Args:
        items: sku属性を持つペイロードのリスト
        handler: 1件分の更新コルーチン（失敗時は例外を送出）
        concurrency: 同時実行数（1なら逐次）
    """
    result = BatchUpdateResult()
    item_list = list(items)

    async def _one(item: Any) -> None:
        try:
            await handler(item)
        except ITEM_LEVEL_ERRORS as e:
            logger.warning(f"{vendor}: 更新失敗 sku={item.sku}: {e.message}")
            result.failed.append(FailedItem(sku=item.sku, reason=e.message))
            return
        result.successful.append(item.sku)

    for chunk in chunked(item_list, max(concurrency, 1)):
        if len(chunk) == 1:
            await _one(chunk[0])
        else:
            await asyncio.gather(*(_one(item) for item in chunk))
    return result


async def batch_operation(
    items: Iterable[Any],
    handler: Callable[[Any], Awaitable[None]],
    vendor: str,
    concurrency: int = 1,
) -> OperationResult[BatchUpdateResult]:
    """run_batchをOperationResultで包む

    通信エラー等でバッチ全体が失敗した場合は success=False を返す。
    認証エラー（再認証後も失敗）だけはそのまま送出する。
    """
    try:
        result = await run_batch(items, handler, concurrency, vendor)
    except AuthenticationError:
        raise
    except MarketplaceError as e:
        logger.error(f"{vendor}: バッチ更新失敗: {e.message}")
        return OperationResult.fail(e.message, e.code)
    return OperationResult.ok(result)


# --- レート制限 ---

def rate_limit_from_headers(
    headers: Mapping[str, str],
    now: float,
    limit_header: str,
    remaining_header: str,
    reset_header: Optional[str] = None,
    default_reset: float = 1.0,
) -> Optional[RateLimitStatus]:
    """レート制限ヘッダーを解析（該当ヘッダーが無ければNone）

    reset_headerの値がepoch秒っぽければそのまま、小さければ相対秒として扱う。
    """
    remaining = headers.get(remaining_header)
    if remaining is None:
        return None
    limit = to_int(headers.get(limit_header), default=to_int(remaining))
    reset_raw = to_float(headers.get(reset_header), None) if reset_header else None
    if reset_raw is None:
        reset = now + default_reset
    elif reset_raw > 1_000_000_000:
        reset = reset_raw
    else:
        reset = now + reset_raw
    return RateLimitStatus(remaining=to_int(remaining), reset=reset, limit=limit)


# --- ヘルスチェック ---

async def check_health(adapter: Any) -> MarketplaceHealth:
    """test_connection() と get_rate_limit_status() からヘルス情報を組み立てる"""
    status: ConnectionStatus = await adapter.test_connection()
    return MarketplaceHealth(
        marketplace_id=adapter.marketplace_id,
        name=adapter.marketplace_name,
        connected=status.connected,
        message=status.message,
        last_checked=status.last_checked,
        rate_limit=adapter.get_rate_limit_status(),
    )


def connection_failed(exc: Exception, vendor: str) -> ConnectionStatus:
    """test_connection用: 例外を connected=False に変換"""
    if isinstance(exc, MarketplaceError):
        message = exc.message
    else:
        message = str(exc)
    return ConnectionStatus(connected=False, message=f"{vendor} connection failed: {message}")


def require_fields(credentials: Dict[str, Any], fields: List[str],
                   vendor: str) -> None:
    """必須の認証項目が揃っているか検証"""
    missing = [f for f in fields if not credentials.get(f)]
    if missing:
        raise AuthenticationError(
            f"{vendor} credentials missing required fields: {', '.join(missing)}"
        )
