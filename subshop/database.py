"""
SQLite 数据库连接管理和初始化。
使用同步 sqlite3，提供 get_db() 获取连接，transaction() 获取写事务。
"""

import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

import bcrypt
from dotenv import load_dotenv

load_dotenv()

DB_PATH = os.getenv("DB_PATH", "data/subshop.db")
DB_BUSY_TIMEOUT = float(os.getenv("DB_BUSY_TIMEOUT", "10"))

TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_db() -> sqlite3.Connection:
    """获取 SQLite 数据库连接，启用 WAL 模式和外键约束。"""
    conn = sqlite3.connect(DB_PATH, timeout=DB_BUSY_TIMEOUT)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


@contextmanager
def transaction(conn: sqlite3.Connection | None = None):
    """
    写事务上下文：BEGIN IMMEDIATE 取得写锁，正常退出提交，异常回滚。

    传入已有连接时视为嵌套调用，直接复用外层事务，不提交也不关闭。
    """
    if conn is not None:
        yield conn
        return

    db = get_db()
    try:
        db.execute("BEGIN IMMEDIATE")
        yield db
        db.commit()
    except BaseException:
        db.rollback()
        raise
    finally:
        db.close()


def format_time(value: datetime) -> str:
    return value.strftime(TIME_FORMAT)


def parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.strptime(value, TIME_FORMAT)


# ── 建表 SQL ──────────────────────────────────────────────

_CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS admin (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    username        VARCHAR(64)  NOT NULL UNIQUE,
    password_hash   VARCHAR(128) NOT NULL,
    login_fail_count INTEGER     DEFAULT 0,
    locked_until    DATETIME,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS accounts (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    name            VARCHAR(128) NOT NULL,
    email           VARCHAR(128),
    phone           VARCHAR(32),
    role            VARCHAR(16)  NOT NULL DEFAULT 'customer',
    wholesaler_id   INTEGER      REFERENCES accounts(id),
    key             VARCHAR(32)  NOT NULL,
    balance_cents   INTEGER      NOT NULL DEFAULT 0 CHECK (balance_cents >= 0),
    version         INTEGER      NOT NULL DEFAULT 0,
    active          INTEGER      DEFAULT 1,
    notes           TEXT,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    updated_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS products (
    id              VARCHAR(64)  PRIMARY KEY,
    name            VARCHAR(256) NOT NULL,
    category        VARCHAR(64),
    kind            VARCHAR(16)  NOT NULL DEFAULT 'subscription',
    price_cents     INTEGER      NOT NULL,
    wholesale_price_cents INTEGER NOT NULL,
    monthly_pricing TEXT,
    available_months TEXT,
    value_cents     INTEGER,
    min_quantity    INTEGER      DEFAULT 1,
    requires_id     INTEGER      DEFAULT 0,
    active          INTEGER      DEFAULT 1,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    updated_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS orders (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    order_no        VARCHAR(32)  NOT NULL UNIQUE,
    client_order_no VARCHAR(64),
    buyer_id        INTEGER      NOT NULL REFERENCES accounts(id),
    owner_id        INTEGER      REFERENCES accounts(id),
    product_id      VARCHAR(64)  NOT NULL REFERENCES products(id),
    kind            VARCHAR(16)  NOT NULL,
    tier            VARCHAR(16)  NOT NULL DEFAULT 'retail',
    quantity        INTEGER,
    duration_months INTEGER,
    total_cents     INTEGER      NOT NULL,
    status          VARCHAR(16)  NOT NULL DEFAULT 'pending',
    credential_status VARCHAR(16) NOT NULL DEFAULT 'pending',
    credential      TEXT,
    stock_id        INTEGER      REFERENCES credential_stock(id),
    account_ref     VARCHAR(128),
    customer_name   VARCHAR(128),
    notes           TEXT,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    fulfilled_at    DATETIME,
    cancelled_at    DATETIME
);

CREATE TABLE IF NOT EXISTS subscriptions (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    owner_id        INTEGER      NOT NULL REFERENCES accounts(id),
    buyer_id        INTEGER      NOT NULL REFERENCES accounts(id),
    product_id      VARCHAR(64)  NOT NULL REFERENCES products(id),
    order_id        INTEGER      REFERENCES orders(id),
    start_date      DATETIME     NOT NULL,
    end_date        DATETIME     NOT NULL,
    duration_months INTEGER      NOT NULL,
    status          VARCHAR(16)  NOT NULL DEFAULT 'pending',
    credential      TEXT,
    stock_id        INTEGER      REFERENCES credential_stock(id),
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    updated_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    cancelled_at    DATETIME,
    CHECK (end_date >= start_date)
);

CREATE TABLE IF NOT EXISTS credential_stock (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    product_id      VARCHAR(64)  NOT NULL REFERENCES products(id),
    credential      TEXT         NOT NULL,
    status          VARCHAR(16)  NOT NULL DEFAULT 'available',
    order_id        INTEGER,
    subscription_id INTEGER,
    account_id      INTEGER,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    assigned_at     DATETIME
);

CREATE TABLE IF NOT EXISTS wallet_entries (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    account_id      INTEGER      NOT NULL REFERENCES accounts(id),
    entry_type      VARCHAR(16)  NOT NULL,
    amount_cents    INTEGER      NOT NULL,
    balance_after_cents INTEGER  NOT NULL,
    reference_type  VARCHAR(32),
    reference_id    VARCHAR(64),
    reason          TEXT,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS stock_requests (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    account_id      INTEGER      NOT NULL REFERENCES accounts(id),
    product_id      VARCHAR(64)  NOT NULL REFERENCES products(id),
    order_id        INTEGER      REFERENCES orders(id),
    subscription_id INTEGER      REFERENCES subscriptions(id),
    status          VARCHAR(16)  NOT NULL DEFAULT 'pending',
    notes           TEXT,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    resolved_at     DATETIME
);
"""

# ── 索引 SQL ──────────────────────────────────────────────

_CREATE_INDEXES = """
CREATE INDEX IF NOT EXISTS idx_accounts_wholesaler
    ON accounts(wholesaler_id);
CREATE UNIQUE INDEX IF NOT EXISTS idx_orders_order_no
    ON orders(order_no);
CREATE UNIQUE INDEX IF NOT EXISTS idx_orders_client_order_no
    ON orders(buyer_id, client_order_no);
CREATE INDEX IF NOT EXISTS idx_orders_buyer
    ON orders(buyer_id, created_at);
CREATE INDEX IF NOT EXISTS idx_orders_owner
    ON orders(owner_id);
CREATE INDEX IF NOT EXISTS idx_subscriptions_owner
    ON subscriptions(owner_id);
CREATE INDEX IF NOT EXISTS idx_subscriptions_status_end
    ON subscriptions(status, end_date);
CREATE INDEX IF NOT EXISTS idx_credential_stock_product_status
    ON credential_stock(product_id, status);
CREATE INDEX IF NOT EXISTS idx_wallet_entries_account
    ON wallet_entries(account_id, created_at);
CREATE INDEX IF NOT EXISTS idx_stock_requests_status
    ON stock_requests(status);
"""


# ── 初始化 ────────────────────────────────────────────────

def init_db() -> None:
    """创建数据库目录、表、索引，并在首次启动时创建默认管理员。"""
    db_dir = Path(DB_PATH).parent
    db_dir.mkdir(parents=True, exist_ok=True)

    conn = get_db()
    try:
        conn.executescript(_CREATE_TABLES)
        conn.executescript(_CREATE_INDEXES)

        # 首次启动：通过环境变量创建默认管理员
        _create_default_admin(conn)

        conn.commit()
    finally:
        conn.close()


def _create_default_admin(conn: sqlite3.Connection) -> None:
    """如果 admin 表为空，则根据环境变量创建默认管理员账号。"""
    row = conn.execute("SELECT COUNT(*) AS cnt FROM admin").fetchone()
    if row["cnt"] > 0:
        return

    username = os.getenv("ADMIN_USERNAME", "admin")
    password = os.getenv("ADMIN_PASSWORD", "admin123")

    password_hash = bcrypt.hashpw(
        password.encode("utf-8"), bcrypt.gensalt()
    ).decode("utf-8")

    conn.execute(
        "INSERT INTO admin (username, password_hash) VALUES (?, ?)",
        (username, password_hash),
    )
