"""マーケットプレイス共通インターフェース

全アダプター（Amazon, Shopify, Takealot等）が実装すべき機能セットをABCで定義。
共通処理は基底クラスに持たせず、helpers / transport / pagination の
関数・部品を各アダプターが組み合わせて使う。
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from src.marketplaces.models import (
    BatchUpdateResult,
    ConnectionStatus,
    MarketplaceCategory,
    MarketplaceCredentials,
    MarketplaceHealth,
    MarketplaceOrder,
    MarketplaceProduct,
    OperationResult,
    OrderAcknowledgment,
    OrderStatus,
    PaginatedResponse,
    PriceUpdatePayload,
    RateLimitStatus,
    StatusUpdatePayload,
    StockUpdatePayload,
    TrackingInfo,
)


class MarketplaceAdapter(ABC):
    """マーケットプレイスアダプターの抽象基底クラス

    新規マーケットプレイス追加時はこのクラスを継承し、
    marketplace_id を定義して全メソッドを実装すること。
    """

    #: ファクトリーの登録キー（正規化済みID）
    marketplace_id: str = ""

    @property
    @abstractmethod
    def marketplace_name(self) -> str:
        """表示名を返す（例: 'Amazon', 'Shopify'）"""
        ...

    # --- ライフサイクル ---

    @abstractmethod
    async def initialize(self, credentials: MarketplaceCredentials) -> None:
        """認証ハンドシェイク

        2回目の呼び出しは新しい認証情報で再認証する（エラーにしない）。

        Raises:
            AuthenticationError: 必須項目不足、または認証拒否
        """
        ...

    @abstractmethod
    async def ensure_authenticated(self) -> None:
        """トークン期限を確認し、必要ならリフレッシュ

        リフレッシュ失敗時は1回だけ再認証を試み、
        それでも失敗なら AuthenticationError を送出する。
        """
        ...

    @abstractmethod
    async def test_connection(self) -> ConnectionStatus:
        """軽量な読み取りで接続確認（例外は送出せず connected=False を返す）"""
        ...

    @abstractmethod
    async def get_marketplace_health(self) -> MarketplaceHealth:
        ...

    @abstractmethod
    def get_rate_limit_status(self) -> RateLimitStatus:
        """直近レスポンスのヘッダーから読んだレート制限状態"""
        ...

    @abstractmethod
    async def close(self) -> None:
        """HTTPクライアント等を解放（複数回呼んでも安全）"""
        ...

    # --- 商品 ---

    @abstractmethod
    async def get_product_by_sku(
        self, sku: str
    ) -> OperationResult[Optional[MarketplaceProduct]]:
        """SKUで商品を取得

        Returns:
            見つからない場合は success=False, error.code="PRODUCT_NOT_FOUND"
        """
        ...

    @abstractmethod
    async def get_product_by_id(
        self, product_id: str
    ) -> OperationResult[Optional[MarketplaceProduct]]:
        ...

    @abstractmethod
    async def get_products(
        self,
        page: int = 0,
        page_size: int = 50,
        filters: Optional[Dict[str, Any]] = None,
    ) -> PaginatedResponse[MarketplaceProduct]:
        """商品一覧（pageは0始まり。カーソル方式のベンダーは内部で変換）"""
        ...

    @abstractmethod
    async def fetch_products(self, limit: int = 100) -> List[MarketplaceProduct]:
        """レート制限を考慮してlimit件まで商品を取得"""
        ...

    @abstractmethod
    async def update_stock(
        self, updates: List[StockUpdatePayload]
    ) -> OperationResult[BatchUpdateResult]:
        """在庫数を一括更新

        1件の拒否はバッチを止めない。拒否されたSKUは data.failed に理由付きで入る。
        """
        ...

    @abstractmethod
    async def update_prices(
        self, updates: List[PriceUpdatePayload]
    ) -> OperationResult[BatchUpdateResult]:
        ...

    @abstractmethod
    async def update_status(
        self, updates: List[StatusUpdatePayload]
    ) -> OperationResult[BatchUpdateResult]:
        ...

    @abstractmethod
    async def get_categories(self) -> OperationResult[List[MarketplaceCategory]]:
        ...

    # --- 注文 ---

    @abstractmethod
    async def get_orders(
        self,
        since: Optional[datetime] = None,
        page: int = 0,
        page_size: int = 50,
    ) -> PaginatedResponse[MarketplaceOrder]:
        ...

    @abstractmethod
    async def get_recent_orders(
        self,
        since: datetime,
        page: int = 0,
        page_size: int = 50,
    ) -> PaginatedResponse[MarketplaceOrder]:
        ...

    @abstractmethod
    async def fetch_orders(
        self, since: Optional[datetime] = None, limit: int = 100
    ) -> List[MarketplaceOrder]:
        """レート制限を考慮してlimit件まで注文を取得"""
        ...

    @abstractmethod
    async def get_order_by_id(
        self, order_id: str
    ) -> OperationResult[MarketplaceOrder]:
        """見つからない場合は success=False, error.code="ORDER_NOT_FOUND" """
        ...

    @abstractmethod
    async def acknowledge_order(
        self, order_id: str
    ) -> OperationResult[OrderAcknowledgment]:
        ...

    @abstractmethod
    async def update_order_status(
        self,
        order_id: str,
        status: OrderStatus,
        tracking: Optional[TrackingInfo] = None,
    ) -> OperationResult[Dict[str, Any]]:
        """注文ステータス更新（ベンダー拒否は success=False で返す）"""
        ...
