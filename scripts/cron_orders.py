"""cron用 注文取得エントリポイント

接続済みマーケットプレイスの直近注文を取得し、新規注文を受付確認する。5分間隔で実行。

crontab設定例:
    */5 * * * * cd /path/to/ec-sync && python scripts/cron_orders.py >> logs/orders.log 2>&1
"""

import logging
import os
import sys
from datetime import datetime
from pathlib import Path

from dotenv import load_dotenv

# プロジェクト設定
_project_root = Path(__file__).parent.parent
_env_path = _project_root / "config" / ".env"
if _env_path.exists():
    load_dotenv(_env_path)

sys.path.insert(0, str(_project_root))

# ログ設定
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("cron_orders")


def main():
    """注文取得を実行"""
    from src.app_context import build_context
    from src.sync.jobs import OrderFetchJob

    user_id = os.environ.get("ECSYNC_USER_ID")
    if not user_id:
        logger.error("ECSYNC_USER_ID が未設定です。")
        sys.exit(1)

    logger.info("注文取得開始")
    start = datetime.now()

    try:
        ctx = build_context()
    except ValueError as e:
        logger.error(f"初期化失敗: {e}")
        sys.exit(1)

    async def work():
        connected = await ctx.connect_marketplaces(user_id)
        if not connected:
            return None
        return await OrderFetchJob(ctx.database, ctx.sync).run(days=1, marketplace_ids=connected)

    try:
        results = ctx.run(work)
    except Exception as e:
        logger.error(f"注文取得失敗: {e}")
        sys.exit(1)

    if results is None:
        logger.error("接続可能なマーケットプレイスがありません。")
        sys.exit(1)

    elapsed = (datetime.now() - start).total_seconds()
    logger.info(
        f"注文取得完了: "
        f"注文={results['orders']}件, "
        f"受付確認={results['acknowledged']}件, "
        f"エラー={len(results['errors'])}件, "
        f"所要時間={elapsed:.1f}秒"
    )


if __name__ == "__main__":
    main()
