"""DB初期化スクリプト

テーブル作成。冪等に実行可能。
CLIからも直接実行可能: python scripts/setup_db.py
"""

import sys
from pathlib import Path

from dotenv import load_dotenv

_project_root = Path(__file__).parent.parent
_env_path = _project_root / "config" / ".env"
if _env_path.exists():
    load_dotenv(_env_path)

# プロジェクトルートをパスに追加
sys.path.insert(0, str(_project_root))

from src.config import database_path, load_config
from src.db.database import Database


def main():
    db = Database(database_path(load_config()))
    print(f"DB: {db.db_path}")

    # テーブル作成
    tables = db.init_tables()
    print(f"テーブル作成完了: {', '.join(tables)}")

    # 統計
    stats = db.get_stats()
    print("\n--- DB統計 ---")
    for key, value in stats.items():
        print(f"  {key}: {value}")


if __name__ == "__main__":
    main()
