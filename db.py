"""
db.py
SQLite helpers + initialization (creates DB/tables, inserts default admin, etc.)
"""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

import config

DB_FILE = Path(config.DB_FILE)


@contextmanager
def get_conn(db_file: Path | str | None = None):
    conn = sqlite3.connect(db_file or DB_FILE, check_same_thread=False, timeout=10)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def execute(sql: str, params: tuple = (), db_file=None) -> int:
    with get_conn(db_file) as conn:
        cur = conn.execute(sql, params)
        return cur.lastrowid


def execute_rowcount(sql: str, params: tuple = (), db_file=None) -> int:
    with get_conn(db_file) as conn:
        cur = conn.execute(sql, params)
        return cur.rowcount


def executemany(sql: str, seq_of_params: list[tuple], db_file=None) -> None:
    with get_conn(db_file) as conn:
        conn.executemany(sql, seq_of_params)


def fetch_one(sql: str, params: tuple = (), db_file=None):
    with get_conn(db_file) as conn:
        cur = conn.execute(sql, params)
        return cur.fetchone()


def fetch_all(sql: str, params: tuple = (), db_file=None) -> list[sqlite3.Row]:
    with get_conn(db_file) as conn:
        cur = conn.execute(sql, params)
        return cur.fetchall()


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS accounts (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT,
        role TEXT NOT NULL DEFAULT 'member' CHECK(role IN ('admin','member')),
        current_membership_id INTEGER,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS account_history (
        account_id INTEGER NOT NULL,
        membership_id INTEGER NOT NULL,
        position INTEGER NOT NULL,
        PRIMARY KEY(account_id, position),
        FOREIGN KEY(account_id) REFERENCES accounts(id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS addon_services (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        price TEXT NOT NULL,
        category TEXT,
        active INTEGER NOT NULL DEFAULT 1
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS plans (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        description TEXT,
        base_price TEXT NOT NULL,
        active INTEGER NOT NULL DEFAULT 1
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS plan_addons (
        plan_id INTEGER NOT NULL,
        addon_id INTEGER NOT NULL,
        PRIMARY KEY(plan_id, addon_id),
        FOREIGN KEY(plan_id) REFERENCES plans(id) ON DELETE CASCADE,
        FOREIGN KEY(addon_id) REFERENCES addon_services(id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS discounts (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        percentage TEXT NOT NULL,
        interval TEXT NOT NULL CHECK(interval IN ('Monthly','Quarterly','Yearly')),
        active INTEGER NOT NULL DEFAULT 1
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS memberships (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        account_id INTEGER NOT NULL,
        plan_id INTEGER NOT NULL,
        interval TEXT NOT NULL CHECK(interval IN ('Monthly','Quarterly','Yearly')),
        goals TEXT NOT NULL DEFAULT '[]',
        total TEXT NOT NULL,
        time_slot TEXT NOT NULL,
        start_date TEXT NOT NULL,
        end_date TEXT NOT NULL,
        status TEXT NOT NULL CHECK(status IN ('Active','Frozen','Cancelled','Expired')),
        payment_reference TEXT,
        payment_status TEXT NOT NULL CHECK(payment_status IN ('pending','completed','refunded')),
        freeze_start_date TEXT,
        version INTEGER NOT NULL DEFAULT 0,
        FOREIGN KEY(account_id) REFERENCES accounts(id),
        FOREIGN KEY(plan_id) REFERENCES plans(id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS membership_addons (
        membership_id INTEGER NOT NULL,
        addon_id INTEGER NOT NULL,
        PRIMARY KEY(membership_id, addon_id),
        FOREIGN KEY(membership_id) REFERENCES memberships(id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS freeze_records (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        membership_id INTEGER NOT NULL,
        start_date TEXT NOT NULL,
        end_date TEXT NOT NULL,
        duration_days INTEGER NOT NULL,
        FOREIGN KEY(membership_id) REFERENCES memberships(id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS time_slot_capacity (
        time_slot TEXT PRIMARY KEY,
        max_capacity INTEGER NOT NULL CHECK(max_capacity > 0)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS payments (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        membership_id INTEGER NOT NULL,
        kind TEXT NOT NULL CHECK(kind IN ('charge','refund')),
        purpose TEXT NOT NULL,
        amount TEXT NOT NULL,
        currency TEXT NOT NULL,
        reference TEXT,
        status TEXT NOT NULL,
        created_at TEXT NOT NULL,
        FOREIGN KEY(membership_id) REFERENCES memberships(id)
    )
    """,
    # Small settings table (used to force password change on first login)
    """
    CREATE TABLE IF NOT EXISTS app_settings (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_memberships_slot ON memberships(time_slot, status)",
    "CREATE INDEX IF NOT EXISTS idx_memberships_account ON memberships(account_id)",
]


def _create_tables(db_file=None) -> None:
    with get_conn(db_file) as conn:
        for stmt in SCHEMA:
            conn.execute(stmt)


def get_setting(key: str, default: str | None = None, db_file=None) -> str | None:
    row = fetch_one("SELECT value FROM app_settings WHERE key = ?", (key,), db_file)
    if row:
        return str(row["value"])
    return default


def set_setting(key: str, value: str, db_file=None) -> None:
    execute(
        """
        INSERT INTO app_settings(key, value) VALUES(?, ?)
        ON CONFLICT(key) DO UPDATE SET value=excluded.value
        """,
        (key, value),
        db_file,
    )


def init_db(default_admin_hash: str | None = None, db_file=None) -> None:
    """
    Initialize the database.
    - Create tables
    - Insert default admin operator (admin@gym.local / admin123) if no admin exists
    - Force password change on first login
    """
    _create_tables(db_file)
    if default_admin_hash is None:
        return

    admin = fetch_one("SELECT id FROM accounts WHERE role = 'admin' LIMIT 1", db_file=db_file)
    if not admin:
        now = datetime.now(timezone.utc).isoformat(timespec="seconds")
        execute(
            "INSERT INTO accounts(name, email, password_hash, role, created_at) VALUES(?,?,?,?,?)",
            ("Administrator", "admin@gym.local", default_admin_hash, "admin", now),
            db_file,
        )
        set_setting("force_password_change", "1", db_file)
    elif get_setting("force_password_change", db_file=db_file) is None:
        set_setting("force_password_change", "0", db_file)


def is_force_password_change(db_file=None) -> bool:
    return get_setting("force_password_change", db_file=db_file) == "1"


def clear_force_password_change(db_file=None) -> None:
    set_setting("force_password_change", "0", db_file)
