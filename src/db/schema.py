"""SQLiteスキーマ定義

商品マスタ・マーケットプレイス認証情報・操作履歴・同期ログの4テーブル。
冪等に実行可能（IF NOT EXISTS）。
"""

# 自社の商品マスタ（マーケットプレイスへのプッシュ元）
PRODUCTS_TABLE = """
CREATE TABLE IF NOT EXISTS products (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    sku                 TEXT UNIQUE NOT NULL,
    title               TEXT NOT NULL,
    price               REAL,                     -- 通常価格
    sale_price          REAL,                     -- セール価格（NULLはセール無し）
    rrp                 REAL,                     -- 希望小売価格
    currency            TEXT DEFAULT 'USD',
    stock_level         INTEGER DEFAULT 0,
    status              TEXT DEFAULT 'active',    -- 'active','inactive','draft','archived'
    barcode             TEXT,
    created_at          DATETIME DEFAULT CURRENT_TIMESTAMP,
    updated_at          DATETIME DEFAULT CURRENT_TIMESTAMP
);
"""

# ユーザー×マーケットプレイスの認証情報（AES-256-CBCで暗号化済み）
MARKETPLACE_CREDENTIALS_TABLE = """
CREATE TABLE IF NOT EXISTS marketplace_credentials (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id             TEXT NOT NULL,
    marketplace_id      TEXT NOT NULL,            -- 正規化済み 'amazon','shopify','takealot','dhl','fedex'
    encrypted_credentials TEXT NOT NULL,          -- base64(IV + 暗号文)
    created_at          DATETIME DEFAULT CURRENT_TIMESTAMP,
    updated_at          DATETIME DEFAULT CURRENT_TIMESTAMP,
    UNIQUE(user_id, marketplace_id)
);
"""

# 操作履歴（プッシュ1フィールドにつき1行）
ACTIVITY_LOG_TABLE = """
CREATE TABLE IF NOT EXISTS activity_log (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id             TEXT,
    description         TEXT NOT NULL,
    entity_type         TEXT NOT NULL,            -- 'product' etc.
    entity_id           TEXT,
    action              TEXT NOT NULL,            -- 'update' etc.
    status              TEXT NOT NULL,            -- 'completed','failed'
    metadata            TEXT,                     -- JSON object
    created_at          DATETIME DEFAULT CURRENT_TIMESTAMP
);
"""

# 同期ログ（cronの在庫同期・注文取得の実行記録）
SYNC_LOG_TABLE = """
CREATE TABLE IF NOT EXISTS sync_log (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    sync_type           TEXT NOT NULL,            -- 'stock' or 'orders'
    marketplace         TEXT,                     -- 'amazon','shopify','takealot','all'
    status              TEXT DEFAULT 'running',   -- 'running','completed','failed'
    items_checked       INTEGER DEFAULT 0,
    items_changed       INTEGER DEFAULT 0,
    errors              TEXT,                     -- JSON array
    started_at          DATETIME DEFAULT CURRENT_TIMESTAMP,
    completed_at        DATETIME
);
"""

ACTIVITY_LOG_INDEX = """
CREATE INDEX IF NOT EXISTS idx_activity_log_entity
    ON activity_log (entity_type, entity_id);
"""

# 全テーブル定義（作成順）
ALL_TABLES = [
    ("products", PRODUCTS_TABLE),
    ("marketplace_credentials", MARKETPLACE_CREDENTIALS_TABLE),
    ("activity_log", ACTIVITY_LOG_TABLE),
    ("sync_log", SYNC_LOG_TABLE),
]

ALL_INDEXES = [ACTIVITY_LOG_INDEX]
