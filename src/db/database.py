"""SQLiteデータベース接続管理

同期sqlite3を使用（DB操作はサブミリ秒、async不要）。
商品マスタ・暗号化済み認証情報・操作履歴・同期ログを扱う。
"""

import json
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from src.db.schema import ALL_INDEXES, ALL_TABLES

# 商品の部分更新で変更可能なカラム
PRODUCT_COLUMNS = (
    "title", "price", "sale_price", "rrp", "currency",
    "stock_level", "status", "barcode",
)


class Database:
    """SQLiteデータベースマネージャー"""

    def __init__(self, db_path: Optional[str] = None):
        if db_path is None:
            # プロジェクトルートからの相対パス
            project_root = Path(__file__).parent.parent.parent
            db_path = str(project_root / "data" / "ecsync.db")

        self.db_path = db_path
        # dataディレクトリが存在しない場合は作成
        os.makedirs(os.path.dirname(os.path.abspath(db_path)), exist_ok=True)

    @contextmanager
    def connect(self):
        """コネクション管理（コンテキストマネージャー）"""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def init_tables(self) -> List[str]:
        """全テーブルを作成（冪等）。作成したテーブル名リストを返す"""
        created = []
        with self.connect() as conn:
            for name, sql in ALL_TABLES:
                conn.execute(sql)
                created.append(name)
            for sql in ALL_INDEXES:
                conn.execute(sql)
        return created

    def get_stats(self) -> Dict[str, Any]:
        """全テーブルのレコード数"""
        stats = {}
        with self.connect() as conn:
            for name, _ in ALL_TABLES:
                try:
                    row = conn.execute(
                        f"SELECT COUNT(*) as cnt FROM {name}"
                    ).fetchone()
                    stats[name] = row["cnt"]
                except sqlite3.OperationalError:
                    stats[name] = "テーブル未作成"
        return stats

    # --- 商品 ---

    def upsert_product(self, product: Dict[str, Any]) -> int:
        """商品をupsert（skuで一意判定）。product IDを返す"""
        now = datetime.now().isoformat()
        with self.connect() as conn:
            conn.execute(
                """INSERT INTO products
                   (sku, title, price, sale_price, rrp, currency,
                    stock_level, status, barcode, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(sku) DO UPDATE SET
                    title = excluded.title,
                    price = excluded.price,
                    sale_price = excluded.sale_price,
                    rrp = excluded.rrp,
                    currency = excluded.currency,
                    stock_level = excluded.stock_level,
                    status = excluded.status,
                    barcode = excluded.barcode,
                    updated_at = excluded.updated_at""",
                (
                    product["sku"],
                    product.get("title") or product["sku"],
                    product.get("price"),
                    product.get("sale_price"),
                    product.get("rrp"),
                    product.get("currency", "USD"),
                    product.get("stock_level", 0),
                    product.get("status", "active"),
                    product.get("barcode"),
                    now,
                ),
            )
            row = conn.execute(
                "SELECT id FROM products WHERE sku = ?",
                (product["sku"],),
            ).fetchone()
            return row["id"]

    def get_product(self, product_id: int) -> Optional[dict]:
        """商品をIDで取得"""
        with self.connect() as conn:
            row = conn.execute(
                "SELECT * FROM products WHERE id = ?",
                (product_id,),
            ).fetchone()
            return dict(row) if row else None

    def get_product_by_sku(self, sku: str) -> Optional[dict]:
        with self.connect() as conn:
            row = conn.execute(
                "SELECT * FROM products WHERE sku = ?",
                (sku,),
            ).fetchone()
            return dict(row) if row else None

    def get_products(
        self,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[dict]:
        """商品一覧を取得"""
        query = "SELECT * FROM products WHERE 1=1"
        params: List[Any] = []

        if status:
            query += " AND status = ?"
            params.append(status)

        query += " ORDER BY id LIMIT ? OFFSET ?"
        params.extend([limit, offset])

        with self.connect() as conn:
            rows = conn.execute(query, params).fetchall()
            return [dict(row) for row in rows]

    def update_product(self, product_id: int, updates: Dict[str, Any]) -> bool:
        """商品の部分更新（ホワイトリストで更新可能カラムを制限）"""
        set_clauses = []
        params: List[Any] = []
        for key, value in updates.items():
            if key not in PRODUCT_COLUMNS:
                continue
            set_clauses.append("{} = ?".format(key))
            params.append(value)

        if not set_clauses:
            return False

        set_clauses.append("updated_at = ?")
        params.append(datetime.now().isoformat())
        params.append(product_id)

        with self.connect() as conn:
            cursor = conn.execute(
                "UPDATE products SET {} WHERE id = ?".format(
                    ", ".join(set_clauses)
                ),
                params,
            )
            return cursor.rowcount > 0

    # --- 認証情報（暗号化済みの文字列のみ扱う） ---

    def save_credentials(self, user_id: str, marketplace_id: str,
                         encrypted: str) -> None:
        now = datetime.now().isoformat()
        with self.connect() as conn:
            conn.execute(
                """INSERT INTO marketplace_credentials
                   (user_id, marketplace_id, encrypted_credentials, updated_at)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT(user_id, marketplace_id) DO UPDATE SET
                    encrypted_credentials = excluded.encrypted_credentials,
                    updated_at = excluded.updated_at""",
                (user_id, marketplace_id, encrypted, now),
            )

    def get_encrypted_credentials(self, user_id: str,
                                  marketplace_id: str) -> Optional[str]:
        with self.connect() as conn:
            row = conn.execute(
                """SELECT encrypted_credentials FROM marketplace_credentials
                   WHERE user_id = ? AND marketplace_id = ?""",
                (user_id, marketplace_id),
            ).fetchone()
            return row["encrypted_credentials"] if row else None

    def delete_credentials(self, user_id: str, marketplace_id: str) -> bool:
        with self.connect() as conn:
            cursor = conn.execute(
                """DELETE FROM marketplace_credentials
                   WHERE user_id = ? AND marketplace_id = ?""",
                (user_id, marketplace_id),
            )
            return cursor.rowcount > 0

    def list_credential_marketplaces(self, user_id: str) -> List[dict]:
        """ユーザーが接続済みのマーケットプレイス（認証情報の中身は返さない）"""
        with self.connect() as conn:
            rows = conn.execute(
                """SELECT marketplace_id, created_at, updated_at
                   FROM marketplace_credentials
                   WHERE user_id = ? ORDER BY marketplace_id""",
                (user_id,),
            ).fetchall()
            return [dict(row) for row in rows]

    # --- 操作履歴 ---

    def log_activity(self, entry: Dict[str, Any]) -> int:
        """操作履歴を1件記録。activity IDを返す"""
        metadata = entry.get("metadata")
        with self.connect() as conn:
            cursor = conn.execute(
                """INSERT INTO activity_log
                   (user_id, description, entity_type, entity_id,
                    action, status, metadata)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (
                    entry.get("user_id"),
                    entry["description"],
                    entry["entity_type"],
                    str(entry["entity_id"]) if entry.get("entity_id") is not None else None,
                    entry["action"],
                    entry["status"],
                    json.dumps(metadata, default=str) if metadata is not None else None,
                ),
            )
            return cursor.lastrowid

    def get_activities(
        self,
        entity_id: Optional[Any] = None,
        entity_type: Optional[str] = None,
        limit: int = 50,
    ) -> List[dict]:
        """操作履歴を新しい順に取得（metadataはdictに復元）"""
        query = "SELECT * FROM activity_log WHERE 1=1"
        params: List[Any] = []

        if entity_id is not None:
            query += " AND entity_id = ?"
            params.append(str(entity_id))
        if entity_type:
            query += " AND entity_type = ?"
            params.append(entity_type)

        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)

        with self.connect() as conn:
            rows = conn.execute(query, params).fetchall()

        activities = []
        for row in rows:
            activity = dict(row)
            if activity.get("metadata"):
                activity["metadata"] = json.loads(activity["metadata"])
            activities.append(activity)
        return activities

    # --- 同期ログ ---

    def create_sync_log(self, sync_type: str, marketplace: str = "all") -> int:
        """同期ログを開始。sync_log IDを返す"""
        with self.connect() as conn:
            cursor = conn.execute(
                """INSERT INTO sync_log (sync_type, marketplace, status)
                   VALUES (?, ?, 'running')""",
                (sync_type, marketplace),
            )
            return cursor.lastrowid

    def complete_sync_log(self, sync_id: int, items_checked: int,
                          items_changed: int,
                          errors: Optional[List[str]] = None,
                          success: bool = True) -> None:
        """同期ログを完了"""
        errors_json = json.dumps(errors) if errors else None
        status = "completed" if success else "failed"

        with self.connect() as conn:
            conn.execute(
                """UPDATE sync_log
                   SET status = ?, items_checked = ?, items_changed = ?,
                       errors = ?, completed_at = ?
                   WHERE id = ?""",
                (status, items_checked, items_changed,
                 errors_json, datetime.now().isoformat(), sync_id),
            )

    def get_sync_logs(self, sync_type: Optional[str] = None,
                      limit: int = 20) -> List[dict]:
        query = "SELECT * FROM sync_log"
        params: List[Any] = []
        if sync_type:
            query += " WHERE sync_type = ?"
            params.append(sync_type)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)

        with self.connect() as conn:
            rows = conn.execute(query, params).fetchall()
        logs = []
        for row in rows:
            log = dict(row)
            if log.get("errors"):
                log["errors"] = json.loads(log["errors"])
            logs.append(log)
        return logs
