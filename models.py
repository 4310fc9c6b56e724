"""
models.py
Domain types for memberships, the catalog and lifecycle results.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum


class BillingInterval(str, Enum):
    MONTHLY = "Monthly"
    QUARTERLY = "Quarterly"
    YEARLY = "Yearly"


class MembershipStatus(str, Enum):
    ACTIVE = "Active"
    FROZEN = "Frozen"
    CANCELLED = "Cancelled"
    EXPIRED = "Expired"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    REFUNDED = "refunded"


# Price multiplier applied to a monthly base price
INTERVAL_MULTIPLIER = {
    BillingInterval.MONTHLY: 1,
    BillingInterval.QUARTERLY: 3,
    BillingInterval.YEARLY: 12,
}

# Length of a billing interval in days (used for end_date calculation)
INTERVAL_DAYS = {
    BillingInterval.MONTHLY: 30,
    BillingInterval.QUARTERLY: 90,
    BillingInterval.YEARLY: 365,
}

# Extension months accepted by extend()
EXTENSION_INTERVALS = {
    1: BillingInterval.MONTHLY,
    3: BillingInterval.QUARTERLY,
    12: BillingInterval.YEARLY,
}

LIVE_STATUSES = (MembershipStatus.ACTIVE, MembershipStatus.FROZEN)

FULL_REFUND_WINDOW_DAYS = 7
MIN_FREEZE_DAYS = 7
# Max days credited to end_date per freeze episode
FREEZE_CREDIT_CAP_DAYS = 50
# Budget reported by freeze status; kept separate so it can be tuned on its own
FREEZE_STATUS_CEILING_DAYS = FREEZE_CREDIT_CAP_DAYS

DEFAULT_SLOT_CAPACITY = 150
MONEY_EPSILON = Decimal("0.01")


@dataclass(frozen=True)
class AddonService:
    id: int | None
    name: str
    price: Decimal
    category: str | None = None
    active: bool = True


@dataclass(frozen=True)
class Plan:
    id: int | None
    name: str
    base_price: Decimal
    description: str | None = None
    included_addon_ids: tuple[int, ...] = ()
    active: bool = True


@dataclass(frozen=True)
class Discount:
    id: int | None
    name: str
    percentage: Decimal
    interval: BillingInterval
    active: bool = True


@dataclass(frozen=True)
class FreezeRecord:
    start: datetime
    end: datetime
    duration_days: int

    def to_dict(self) -> dict:
        return {
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "duration_days": self.duration_days,
        }


@dataclass
class Account:
    id: int | None
    name: str
    email: str
    role: str = "member"  # 'admin' or 'member'
    password_hash: str | None = None
    current_membership_id: int | None = None
    history: list[int] = field(default_factory=list)


@dataclass
class Membership:
    id: int | None
    account_id: int
    plan_id: int
    addon_ids: list[int]
    interval: BillingInterval
    goals: list[str]
    total: Decimal
    time_slot: str
    start_date: datetime
    end_date: datetime
    status: MembershipStatus = MembershipStatus.ACTIVE
    payment_reference: str | None = None
    payment_status: PaymentStatus = PaymentStatus.PENDING
    freeze_start_date: datetime | None = None
    freeze_history: list[FreezeRecord] = field(default_factory=list)
    version: int = 0

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_STATUSES

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "account_id": self.account_id,
            "plan_id": self.plan_id,
            "addon_ids": list(self.addon_ids),
            "interval": self.interval.value,
            "goals": list(self.goals),
            "total": str(self.total),
            "time_slot": self.time_slot,
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
            "status": self.status.value,
            "payment_reference": self.payment_reference,
            "payment_status": self.payment_status.value,
            "freeze_start_date": self.freeze_start_date.isoformat() if self.freeze_start_date else None,
            "freeze_history": [r.to_dict() for r in self.freeze_history],
        }


# ---------- Lifecycle results ----------

@dataclass(frozen=True)
class CreateResult:
    membership: Membership
    payment_client_secret: str

    def to_dict(self) -> dict:
        return {"membership": self.membership.to_dict(), "payment_client_secret": self.payment_client_secret}


@dataclass(frozen=True)
class FreezeResult:
    status: MembershipStatus
    freeze_start_date: datetime

    def to_dict(self) -> dict:
        return {"status": self.status.value, "freeze_start_date": self.freeze_start_date.isoformat()}


@dataclass(frozen=True)
class UnfreezeResult:
    status: MembershipStatus
    new_end_date: datetime
    extension_days: int
    freeze_duration_days: int

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "new_end_date": self.new_end_date.isoformat(),
            "extension_days": self.extension_days,
            "freeze_duration_days": self.freeze_duration_days,
        }


@dataclass(frozen=True)
class CancelResult:
    refund_amount: Decimal
    refund_status: str  # refunded / failed / skipped / not_required
    refund_reference: str | None = None
    warnings: tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {
            "refund_amount": str(self.refund_amount),
            "refund_status": self.refund_status,
            "refund_reference": self.refund_reference,
            "warnings": list(self.warnings),
        }


@dataclass(frozen=True)
class ExtendResult:
    extension_cost: Decimal
    new_end_date: datetime
    payment_client_secret: str

    def to_dict(self) -> dict:
        return {
            "extension_cost": str(self.extension_cost),
            "new_end_date": self.new_end_date.isoformat(),
            "payment_client_secret": self.payment_client_secret,
        }


@dataclass(frozen=True)
class EditResult:
    membership: Membership
    payment_required: bool
    difference: Decimal
    payment_client_secret: str | None = None
    refund_details: dict | None = None

    def to_dict(self) -> dict:
        return {
            "membership": self.membership.to_dict(),
            "payment_required": self.payment_required,
            "difference": str(self.difference),
            "payment_client_secret": self.payment_client_secret,
            "refund_details": self.refund_details,
        }


@dataclass(frozen=True)
class FreezeStatus:
    status: MembershipStatus
    freeze_start_date: datetime | None
    freeze_history: tuple[FreezeRecord, ...]
    current_freeze_duration_days: int | None = None
    remaining_freeze_days: int | None = None

    def to_dict(self) -> dict:
        out = {
            "status": self.status.value,
            "freeze_start_date": self.freeze_start_date.isoformat() if self.freeze_start_date else None,
            "freeze_history": [r.to_dict() for r in self.freeze_history],
        }
        if self.status is MembershipStatus.FROZEN:
            out["current_freeze_duration_days"] = self.current_freeze_duration_days
            out["remaining_freeze_days"] = self.remaining_freeze_days
        return out


@dataclass(frozen=True)
class Availability:
    time_slot: str
    is_available: bool
    remaining_slots: int
    capacity: int

    def to_dict(self) -> dict:
        return {
            "time_slot": self.time_slot,
            "is_available": self.is_available,
            "remaining_slots": self.remaining_slots,
            "capacity": self.capacity,
        }


@dataclass(frozen=True)
class MembershipDetails:
    membership: Membership
    plan: Plan
    addons: tuple[AddonService, ...]
    active_days: int
    days_remaining: int

    def to_dict(self) -> dict:
        m = self.membership
        return {
            "plan": self.plan.name,
            "addons": [a.name for a in self.addons],
            "start_date": m.start_date.isoformat(),
            "end_date": m.end_date.isoformat(),
            "active_days": self.active_days,
            "days_remaining": self.days_remaining,
            "interval": m.interval.value,
            "total": str(m.total),
        }
