"""JSON API（Flask）

マーケットプレイスへのプッシュ・ヘルスチェック・注文取得・操作履歴を提供する薄いAPI層。
起動: python -m src.cli.main web --port 8080

エラー対応:
    ValidationError / NotSupportedError         → 400
    AuthorizationError                          → 403
    ProductNotFoundError / CredentialsNotFoundError / AdapterNotInitializedError → 404
    その他の MarketplaceError（ベンダー・通信エラー） → 502
"""

import logging
from typing import Optional

from flask import Flask, jsonify, request

from src.app_context import AppContext, build_context
from src.marketplaces.errors import (
    AdapterNotInitializedError,
    AuthorizationError,
    CredentialsNotFoundError,
    MarketplaceError,
    NotSupportedError,
    ProductNotFoundError,
    ValidationError,
)
from src.marketplaces.models import serialize

logger = logging.getLogger(__name__)

BAD_REQUEST_ERRORS = (ValidationError, NotSupportedError)
NOT_FOUND_ERRORS = (ProductNotFoundError, CredentialsNotFoundError, AdapterNotInitializedError)


def error_status(exc: MarketplaceError) -> int:
    if isinstance(exc, BAD_REQUEST_ERRORS):
        return 400
    if isinstance(exc, AuthorizationError):
        return 403
    if isinstance(exc, NOT_FOUND_ERRORS):
        return 404
    return 502


def create_app(context: Optional[AppContext] = None) -> Flask:
    """Flaskアプリファクトリ"""
    app = Flask(__name__)
    ctx = context or build_context()

    def _user_id() -> Optional[str]:
        return request.args.get("user_id") or (request.get_json(silent=True) or {}).get("user_id")

    @app.errorhandler(MarketplaceError)
    def handle_marketplace_error(e):
        status = error_status(e)
        if status == 502:
            logger.error(f"マーケットプレイスAPIエラー: {e}")
        return jsonify({"error": e.message, "code": e.code}), status

    @app.route("/api/products/<int:product_id>/push", methods=["POST"])
    def push_product(product_id):
        """商品の部分更新をマーケットプレイスへプッシュ

        body: {"marketplace_id", "user_id", "updates": {"price", "rrp", "stock", "status"}}
        """
        data = request.get_json(silent=True) or {}
        marketplace_id = (data.get("marketplace_id") or "").strip()
        user_id = data.get("user_id")
        if not marketplace_id or not user_id:
            return jsonify({"error": "marketplace_idとuser_idは必須です"}), 400

        result = ctx.run(lambda: ctx.push.push_product_update(
            product_id, marketplace_id, user_id, data.get("updates") or {}
        ))
        return jsonify(result)

    @app.route("/api/marketplaces/health")
    def marketplace_health():
        """ユーザーが接続済みの全マーケットプレイスのヘルス"""
        user_id = _user_id()
        if not user_id:
            return jsonify({"error": "user_idは必須です"}), 400

        async def work():
            await ctx.connect_marketplaces(user_id)
            return await ctx.sync.check_marketplace_health()

        health = ctx.run(work)
        return jsonify({"marketplaces": serialize(health)})

    @app.route("/api/marketplaces/<marketplace_id>/orders")
    def marketplace_orders(marketplace_id):
        user_id = _user_id()
        if not user_id:
            return jsonify({"error": "user_idは必須です"}), 400
        days = request.args.get("days", 7, type=int)
        page = request.args.get("page", 0, type=int)
        page_size = request.args.get("page_size", 20, type=int)
        if days < 1 or page < 0 or not 1 <= page_size <= 100:
            return jsonify({"error": "days / page / page_size が不正です"}), 400

        async def work():
            credentials = ctx.credentials.get_credentials(user_id, marketplace_id)
            await ctx.marketplaces.create_adapter(marketplace_id, credentials)
            return await ctx.sync.get_recent_orders(
                marketplace_id, days_since=days, page=page, page_size=page_size
            )

        orders = ctx.run(work)
        return jsonify(serialize(orders))

    @app.route("/api/products/<int:product_id>/activity")
    def product_activity(product_id):
        if ctx.database.get_product(product_id) is None:
            return jsonify({"error": "商品ID {} が見つかりません".format(product_id)}), 404
        limit = request.args.get("limit", 50, type=int)
        activities = ctx.database.get_activities(entity_id=product_id,
                                                 entity_type="product", limit=limit)
        return jsonify({"activities": activities})

    return app
