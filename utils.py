"""
utils.py
Dates, exports, revenue summary, sample data.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pandas as pd

from models import INTERVAL_DAYS, BillingInterval
from store import BookingStore

ONE_DAY = timedelta(days=1)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def days_between(later: datetime, earlier: datetime) -> int:
    """Whole days from earlier to later, floored (negative if later is before earlier)."""
    return (later - earlier) // ONE_DAY


def add_days(start: datetime, days: int) -> datetime:
    return start + timedelta(days=days)


def interval_end_date(start: datetime, interval: BillingInterval) -> datetime:
    return add_days(start, INTERVAL_DAYS[interval])


def _rows_to_csv_bytes(rows) -> bytes:
    df = pd.DataFrame([dict(r) for r in rows])
    return df.to_csv(index=False).encode("utf-8")


def memberships_to_csv_bytes(store: BookingStore) -> bytes:
    return _rows_to_csv_bytes(store.list_memberships())


def payments_to_csv_bytes(store: BookingStore) -> bytes:
    return _rows_to_csv_bytes(store.list_payments())


def revenue_summary_by_month(store: BookingStore) -> pd.DataFrame:
    """
    Net revenue per month: charges minus refunds.
    Failed gateway calls are never recorded, so every row counts.
    """
    rows = store.list_payments()
    if not rows:
        return pd.DataFrame(columns=["month", "charges", "refunds", "revenue"])

    df = pd.DataFrame([dict(r) for r in rows])
    df["amount"] = df["amount"].astype(float)
    df["month"] = df["created_at"].str.slice(0, 7)
    df["charges"] = df["amount"].where(df["kind"] == "charge", 0.0)
    df["refunds"] = df["amount"].where(df["kind"] == "refund", 0.0)
    out = df.groupby("month", as_index=False)[["charges", "refunds"]].sum()
    out["revenue"] = out["charges"] - out["refunds"]
    return out.sort_values("month", ascending=False).reset_index(drop=True)


def insert_sample_data(store: BookingStore) -> None:
    """
    Insert a small catalog: add-ons, three plans, interval discounts and slot capacities
    (safe to run multiple times: adds new rows each time).
    """
    sauna = store.add_addon("Sauna access", "10", "Wellness")
    trainer = store.add_addon("Personal trainer (4 sessions)", "40", "Fitness")
    classes = store.add_addon("Group classes", "15", "Fitness")

    store.add_plan("Basic", "30", "Gym floor access")
    store.add_plan("Standard", "50", "Gym floor + group classes", [classes.id])
    store.add_plan("Premium", "80", "Everything included", [sauna.id, trainer.id, classes.id])

    store.add_discount("Quarterly saver", "10", BillingInterval.QUARTERLY)
    store.add_discount("Annual saver", "20", BillingInterval.YEARLY)

    store.set_capacity("06:00-08:00", 40)
    store.set_capacity("17:00-19:00", 60)
