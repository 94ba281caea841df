"""マーケットプレイス共通エラー体系

アダプターはベンダー固有のエラー形状を境界でこの階層に変換する。
サービス層はこの階層だけを扱う。
"""

from typing import Any, Dict, Optional


class ErrorCode:
    """OperationResult.errorに載せる判定用コード"""

    PRODUCT_NOT_FOUND = "PRODUCT_NOT_FOUND"
    ORDER_NOT_FOUND = "ORDER_NOT_FOUND"
    OPERATION_NOT_SUPPORTED = "OPERATION_NOT_SUPPORTED"
    VENDOR_REJECTED = "VENDOR_REJECTED"
    API_ERROR = "API_ERROR"
    INVALID_STATUS = "INVALID_STATUS"


class MarketplaceError(Exception):
    """アダプター境界を越える全エラーの基底クラス"""

    code = "MARKETPLACE_ERROR"

    def __init__(self, message: str, code: Optional[str] = None,
                 status: Optional[int] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.status = status
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        data = {"message": self.message, "code": self.code}
        if self.status is not None:
            data["status"] = self.status
        return data


class ValidationError(MarketplaceError):
    """入力エラー（通信前に送出）"""

    code = "VALIDATION_ERROR"


class AuthenticationError(MarketplaceError):
    """認証情報不足、またはベンダー側で認証拒否"""

    code = "AUTHENTICATION_ERROR"


class AuthorizationError(MarketplaceError):
    code = "FORBIDDEN"


class NotSupportedError(MarketplaceError):
    """未登録のマーケットプレイスID"""

    code = "NOT_SUPPORTED"


class AdapterNotInitializedError(MarketplaceError):
    """create_adapter()前にget_adapter()が呼ばれた"""

    code = "ADAPTER_NOT_INITIALIZED"


class RateLimitError(MarketplaceError):
    code = "RATE_LIMITED"

    def __init__(self, message: str, retry_after: Optional[float] = None,
                 **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class TransportError(MarketplaceError):
    """通信失敗・タイムアウト・5xx"""

    code = "TRANSPORT_ERROR"


class VendorRejectionError(MarketplaceError):
    """個別リクエストの4xx業務エラー（不正SKU・不正価格等）"""

    code = ErrorCode.VENDOR_REJECTED


class ProductNotFoundError(MarketplaceError):
    code = "NOT_FOUND"


class CredentialsNotFoundError(MarketplaceError):
    code = "CREDENTIALS_NOT_FOUND"


class ShippingError(MarketplaceError):
    code = "SHIPPING_ERROR"
