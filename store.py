"""
store.py
BookingStore: persistence for memberships, accounts, the catalog and payment records.

Each public method is one connection/transaction. Membership writes are
version checked so a stale copy can never overwrite a newer one.
"""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Iterable

import db
from errors import ConcurrentModificationError, NotFoundError
from models import (
    LIVE_STATUSES,
    Account,
    AddonService,
    BillingInterval,
    Discount,
    FreezeRecord,
    Membership,
    MembershipStatus,
    PaymentStatus,
    Plan,
)


def to_iso(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(s: str | None) -> datetime | None:
    if s is None:
        return None
    return datetime.fromisoformat(s)


class BookingStore:
    def __init__(self, db_file: Path | str | None = None):
        self.db_file = db_file or db.DB_FILE

    def init(self) -> None:
        db.init_db(db_file=self.db_file)

    # ---------- Row mapping ----------

    def _membership_from_row(self, conn: sqlite3.Connection, row: sqlite3.Row) -> Membership:
        addon_rows = conn.execute(
            "SELECT addon_id FROM membership_addons WHERE membership_id = ? ORDER BY addon_id", (row["id"],)
        ).fetchall()
        freeze_rows = conn.execute(
            "SELECT start_date, end_date, duration_days FROM freeze_records WHERE membership_id = ? ORDER BY id",
            (row["id"],),
        ).fetchall()
        return Membership(
            id=row["id"],
            account_id=row["account_id"],
            plan_id=row["plan_id"],
            addon_ids=[r["addon_id"] for r in addon_rows],
            interval=BillingInterval(row["interval"]),
            goals=json.loads(row["goals"]),
            total=Decimal(row["total"]),
            time_slot=row["time_slot"],
            start_date=from_iso(row["start_date"]),
            end_date=from_iso(row["end_date"]),
            status=MembershipStatus(row["status"]),
            payment_reference=row["payment_reference"],
            payment_status=PaymentStatus(row["payment_status"]),
            freeze_start_date=from_iso(row["freeze_start_date"]),
            freeze_history=[
                FreezeRecord(from_iso(r["start_date"]), from_iso(r["end_date"]), r["duration_days"])
                for r in freeze_rows
            ],
            version=row["version"],
        )

    @staticmethod
    def _plan_from_row(conn: sqlite3.Connection, row: sqlite3.Row) -> Plan:
        included = conn.execute(
            "SELECT addon_id FROM plan_addons WHERE plan_id = ? ORDER BY addon_id", (row["id"],)
        ).fetchall()
        return Plan(
            id=row["id"],
            name=row["name"],
            base_price=Decimal(row["base_price"]),
            description=row["description"],
            included_addon_ids=tuple(r["addon_id"] for r in included),
            active=bool(row["active"]),
        )

    @staticmethod
    def _addon_from_row(row: sqlite3.Row) -> AddonService:
        return AddonService(
            id=row["id"],
            name=row["name"],
            price=Decimal(row["price"]),
            category=row["category"],
            active=bool(row["active"]),
        )

    @staticmethod
    def _account_from_row(conn: sqlite3.Connection, row: sqlite3.Row) -> Account:
        history = conn.execute(
            "SELECT membership_id FROM account_history WHERE account_id = ? ORDER BY position", (row["id"],)
        ).fetchall()
        return Account(
            id=row["id"],
            name=row["name"],
            email=row["email"],
            role=row["role"],
            password_hash=row["password_hash"],
            current_membership_id=row["current_membership_id"],
            history=[r["membership_id"] for r in history],
        )

    # ---------- Memberships ----------

    def add_membership(self, m: Membership, make_current: bool = True) -> Membership:
        """
        Insert a new membership and link it to its account.
        Appends to the account history and (optionally) sets it as current, in one transaction.
        """
        with db.get_conn(self.db_file) as conn:
            cur = conn.execute(
                """
                INSERT INTO memberships(account_id, plan_id, interval, goals, total, time_slot, start_date,
                    end_date, status, payment_reference, payment_status, freeze_start_date, version)
                VALUES(?,?,?,?,?,?,?,?,?,?,?,?,0)
                """,
                (
                    m.account_id,
                    m.plan_id,
                    m.interval.value,
                    json.dumps(list(m.goals)),
                    str(m.total),
                    m.time_slot,
                    to_iso(m.start_date),
                    to_iso(m.end_date),
                    m.status.value,
                    m.payment_reference,
                    m.payment_status.value,
                    to_iso(m.freeze_start_date) if m.freeze_start_date else None,
                ),
            )
            m.id = cur.lastrowid
            m.version = 0
            conn.executemany(
                "INSERT INTO membership_addons(membership_id, addon_id) VALUES(?,?)",
                [(m.id, a) for a in sorted(set(m.addon_ids))],
            )
            self._append_history(conn, m.account_id, m.id)
            if make_current:
                conn.execute("UPDATE accounts SET current_membership_id = ? WHERE id = ?", (m.id, m.account_id))
        return m

    def get_membership(self, membership_id: int) -> Membership | None:
        with db.get_conn(self.db_file) as conn:
            row = conn.execute("SELECT * FROM memberships WHERE id = ?", (membership_id,)).fetchone()
            if row is None:
                return None
            return self._membership_from_row(conn, row)

    def save_membership(self, m: Membership, clear_current: bool = False) -> Membership:
        """
        Write back a membership loaded earlier.
        Fails with ConcurrentModificationError if anyone saved it since it was read.
        clear_current also drops the owning account's current reference in the same transaction.
        """
        with db.get_conn(self.db_file) as conn:
            cur = conn.execute(
                """
                UPDATE memberships SET plan_id=?, interval=?, goals=?, total=?, time_slot=?, start_date=?,
                    end_date=?, status=?, payment_reference=?, payment_status=?, freeze_start_date=?,
                    version = version + 1
                WHERE id = ? AND version = ?
                """,
                (
                    m.plan_id,
                    m.interval.value,
                    json.dumps(list(m.goals)),
                    str(m.total),
                    m.time_slot,
                    to_iso(m.start_date),
                    to_iso(m.end_date),
                    m.status.value,
                    m.payment_reference,
                    m.payment_status.value,
                    to_iso(m.freeze_start_date) if m.freeze_start_date else None,
                    m.id,
                    m.version,
                ),
            )
            if cur.rowcount == 0:
                raise ConcurrentModificationError(
                    "Membership was modified by another operation.",
                    context={"membership_id": m.id, "version": m.version},
                )

            conn.execute("DELETE FROM membership_addons WHERE membership_id = ?", (m.id,))
            conn.executemany(
                "INSERT INTO membership_addons(membership_id, addon_id) VALUES(?,?)",
                [(m.id, a) for a in sorted(set(m.addon_ids))],
            )
            stored = conn.execute(
                "SELECT COUNT(*) AS c FROM freeze_records WHERE membership_id = ?", (m.id,)
            ).fetchone()["c"]
            # Freeze history is append-only
            conn.executemany(
                "INSERT INTO freeze_records(membership_id, start_date, end_date, duration_days) VALUES(?,?,?,?)",
                [(m.id, to_iso(r.start), to_iso(r.end), r.duration_days) for r in m.freeze_history[stored:]],
            )
            if clear_current:
                conn.execute(
                    "UPDATE accounts SET current_membership_id = NULL WHERE id = ? AND current_membership_id = ?",
                    (m.account_id, m.id),
                )
        m.version += 1
        return m

    def find_by_account(self, account_id: int, statuses: Iterable[MembershipStatus] | None = None) -> list[Membership]:
        """Memberships of an account, newest first."""
        sql = "SELECT * FROM memberships WHERE account_id = ?"
        params: list = [account_id]
        if statuses is not None:
            statuses = list(statuses)
            sql += f" AND status IN ({','.join('?' * len(statuses))})"
            params.extend(s.value for s in statuses)
        sql += " ORDER BY start_date DESC, id DESC"
        with db.get_conn(self.db_file) as conn:
            return [self._membership_from_row(conn, r) for r in conn.execute(sql, tuple(params)).fetchall()]

    def find_by_time_slot_and_status(self, time_slot: str, statuses: Iterable[MembershipStatus]) -> list[Membership]:
        statuses = list(statuses)
        sql = (
            "SELECT * FROM memberships WHERE time_slot = ? "
            f"AND status IN ({','.join('?' * len(statuses))}) ORDER BY id"
        )
        with db.get_conn(self.db_file) as conn:
            rows = conn.execute(sql, (time_slot, *[s.value for s in statuses])).fetchall()
            return [self._membership_from_row(conn, r) for r in rows]

    def count_by_time_slot(
        self,
        time_slot: str,
        statuses: Iterable[MembershipStatus] = LIVE_STATUSES,
        as_of: datetime | None = None,
    ) -> int:
        """Memberships occupying a slot; with as_of, Active ones already past end_date are not counted."""
        statuses = list(statuses)
        sql = f"SELECT COUNT(*) AS c FROM memberships WHERE time_slot = ? AND status IN ({','.join('?' * len(statuses))})"
        params: list = [time_slot, *[s.value for s in statuses]]
        if as_of is not None:
            sql += " AND (status = ? OR end_date >= ?)"
            params.extend([MembershipStatus.FROZEN.value, to_iso(as_of)])
        row = db.fetch_one(sql, tuple(params), self.db_file)
        return int(row["c"])

    def list_memberships(self) -> list[sqlite3.Row]:
        return db.fetch_all(
            """
            SELECT m.id, a.name AS account, a.email, p.name AS plan, m.interval, m.total, m.time_slot,
                m.start_date, m.end_date, m.status, m.payment_status
            FROM memberships m
            JOIN accounts a ON a.id = m.account_id
            JOIN plans p ON p.id = m.plan_id
            ORDER BY m.id DESC
            """,
            db_file=self.db_file,
        )

    # ---------- Accounts ----------

    def add_account(self, name: str, email: str, role: str = "member", password_hash: str | None = None) -> Account:
        email = email.strip().lower()
        now = datetime.now(timezone.utc).isoformat(timespec="seconds")
        account_id = db.execute(
            "INSERT INTO accounts(name, email, password_hash, role, created_at) VALUES(?,?,?,?,?)",
            (name, email, password_hash, role, now),
            self.db_file,
        )
        return Account(id=account_id, name=name, email=email, role=role, password_hash=password_hash)

    def get_account(self, account_id: int) -> Account | None:
        with db.get_conn(self.db_file) as conn:
            row = conn.execute("SELECT * FROM accounts WHERE id = ?", (account_id,)).fetchone()
            return self._account_from_row(conn, row) if row else None

    def get_account_by_email(self, email: str) -> Account | None:
        with db.get_conn(self.db_file) as conn:
            row = conn.execute("SELECT * FROM accounts WHERE email = ?", (email.strip().lower(),)).fetchone()
            return self._account_from_row(conn, row) if row else None

    def set_current_membership(self, account_id: int, membership_id: int | None) -> None:
        updated = db.execute_rowcount(
            "UPDATE accounts SET current_membership_id = ? WHERE id = ?", (membership_id, account_id), self.db_file
        )
        if not updated:
            raise NotFoundError("Account not found", context={"account_id": account_id})

    def set_password_hash(self, account_id: int, password_hash: str) -> None:
        db.execute("UPDATE accounts SET password_hash = ? WHERE id = ?", (password_hash, account_id), self.db_file)

    @staticmethod
    def _append_history(conn: sqlite3.Connection, account_id: int, membership_id: int) -> None:
        pos = conn.execute(
            "SELECT COALESCE(MAX(position), -1) + 1 AS p FROM account_history WHERE account_id = ?", (account_id,)
        ).fetchone()["p"]
        conn.execute(
            "INSERT INTO account_history(account_id, membership_id, position) VALUES(?,?,?)",
            (account_id, membership_id, pos),
        )

    def append_history(self, account_id: int, membership_id: int) -> None:
        with db.get_conn(self.db_file) as conn:
            self._append_history(conn, account_id, membership_id)

    def delete_account(self, account_id: int) -> bool:
        """Remove an account that never held a membership. Returns False if it has one."""
        with db.get_conn(self.db_file) as conn:
            held = conn.execute("SELECT 1 FROM memberships WHERE account_id = ? LIMIT 1", (account_id,)).fetchone()
            if held:
                return False
            conn.execute("DELETE FROM account_history WHERE account_id = ?", (account_id,))
            return conn.execute("DELETE FROM accounts WHERE id = ?", (account_id,)).rowcount > 0

    # ---------- Catalog ----------

    def add_addon(self, name: str, price, category: str | None = None, active: bool = True) -> AddonService:
        addon_id = db.execute(
            "INSERT INTO addon_services(name, price, category, active) VALUES(?,?,?,?)",
            (name, str(price), category, int(active)),
            self.db_file,
        )
        return AddonService(id=addon_id, name=name, price=Decimal(str(price)), category=category, active=active)

    def add_plan(
        self,
        name: str,
        base_price,
        description: str | None = None,
        included_addon_ids: Iterable[int] = (),
        active: bool = True,
    ) -> Plan:
        included = tuple(sorted(set(included_addon_ids)))
        with db.get_conn(self.db_file) as conn:
            cur = conn.execute(
                "INSERT INTO plans(name, description, base_price, active) VALUES(?,?,?,?)",
                (name, description, str(base_price), int(active)),
            )
            plan_id = cur.lastrowid
            conn.executemany(
                "INSERT INTO plan_addons(plan_id, addon_id) VALUES(?,?)", [(plan_id, a) for a in included]
            )
        return Plan(
            id=plan_id,
            name=name,
            base_price=Decimal(str(base_price)),
            description=description,
            included_addon_ids=included,
            active=active,
        )

    def add_discount(self, name: str, percentage, interval: BillingInterval, active: bool = True) -> Discount:
        discount_id = db.execute(
            "INSERT INTO discounts(name, percentage, interval, active) VALUES(?,?,?,?)",
            (name, str(percentage), interval.value, int(active)),
            self.db_file,
        )
        return Discount(id=discount_id, name=name, percentage=Decimal(str(percentage)), interval=interval, active=active)

    def set_plan_active(self, plan_id: int, active: bool) -> None:
        db.execute("UPDATE plans SET active = ? WHERE id = ?", (int(active), plan_id), self.db_file)

    def set_addon_active(self, addon_id: int, active: bool) -> None:
        db.execute("UPDATE addon_services SET active = ? WHERE id = ?", (int(active), addon_id), self.db_file)

    def get_plan(self, plan_id: int) -> Plan | None:
        with db.get_conn(self.db_file) as conn:
            row = conn.execute("SELECT * FROM plans WHERE id = ?", (plan_id,)).fetchone()
            return self._plan_from_row(conn, row) if row else None

    def list_plans(self, active_only: bool = True) -> list[Plan]:
        sql = "SELECT * FROM plans" + (" WHERE active = 1" if active_only else "") + " ORDER BY id"
        with db.get_conn(self.db_file) as conn:
            return [self._plan_from_row(conn, r) for r in conn.execute(sql).fetchall()]

    def get_addons(self, addon_ids: Iterable[int]) -> list[AddonService]:
        ids = list(dict.fromkeys(addon_ids))
        if not ids:
            return []
        rows = db.fetch_all(
            f"SELECT * FROM addon_services WHERE id IN ({','.join('?' * len(ids))}) ORDER BY id",
            tuple(ids),
            self.db_file,
        )
        return [self._addon_from_row(r) for r in rows]

    def list_addons(self, active_only: bool = True) -> list[AddonService]:
        sql = "SELECT * FROM addon_services" + (" WHERE active = 1" if active_only else "") + " ORDER BY id"
        return [self._addon_from_row(r) for r in db.fetch_all(sql, db_file=self.db_file)]

    def list_discounts(self, interval: BillingInterval | None = None, active_only: bool = True) -> list[Discount]:
        sql = "SELECT * FROM discounts WHERE 1=1"
        params: list = []
        if interval is not None:
            sql += " AND interval = ?"
            params.append(interval.value)
        if active_only:
            sql += " AND active = 1"
        sql += " ORDER BY id"
        return [
            Discount(
                id=r["id"],
                name=r["name"],
                percentage=Decimal(r["percentage"]),
                interval=BillingInterval(r["interval"]),
                active=bool(r["active"]),
            )
            for r in db.fetch_all(sql, tuple(params), self.db_file)
        ]

    # ---------- Capacity ----------

    def get_capacity(self, time_slot: str) -> int | None:
        row = db.fetch_one(
            "SELECT max_capacity FROM time_slot_capacity WHERE time_slot = ?", (time_slot,), self.db_file
        )
        return int(row["max_capacity"]) if row else None

    def set_capacity(self, time_slot: str, max_capacity: int) -> None:
        db.execute(
            """
            INSERT INTO time_slot_capacity(time_slot, max_capacity) VALUES(?, ?)
            ON CONFLICT(time_slot) DO UPDATE SET max_capacity=excluded.max_capacity
            """,
            (time_slot, max_capacity),
            self.db_file,
        )

    # ---------- Payment records ----------

    def record_payment(
        self,
        membership_id: int,
        kind: str,
        purpose: str,
        amount: Decimal,
        currency: str,
        reference: str | None,
        status: str,
        created_at: datetime,
    ) -> int:
        return db.execute(
            """
            INSERT INTO payments(membership_id, kind, purpose, amount, currency, reference, status, created_at)
            VALUES(?,?,?,?,?,?,?,?)
            """,
            (membership_id, kind, purpose, str(amount), currency, reference, status, to_iso(created_at)),
            self.db_file,
        )

    def update_payment_status(self, membership_id: int, reference: str, status: str) -> int:
        return db.execute_rowcount(
            "UPDATE payments SET status = ? WHERE membership_id = ? AND reference = ?",
            (status, membership_id, reference),
            self.db_file,
        )

    def list_payments(self, membership_id: int | None = None) -> list[sqlite3.Row]:
        sql = "SELECT * FROM payments"
        params: tuple = ()
        if membership_id is not None:
            sql += " WHERE membership_id = ?"
            params = (membership_id,)
        sql += " ORDER BY created_at DESC, id DESC"
        return db.fetch_all(sql, params, self.db_file)
