"""
lifecycle.py
MembershipLifecycleManager: purchase, freeze/unfreeze, cancel, extend and edit.

Every operation on a membership runs under that membership's lock for its whole
read / compute / pay / persist cycle, and the store re-checks the version on
write. Gateway calls run on a worker pool with a bounded wait.

Extend and edit apply the new dates/prices as soon as the gateway accepts the
authorization request, before the client has completed the payment.
confirm_payment() later marks the charge as succeeded once the gateway reports it.
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Callable, Iterable

import config
from errors import (
    ConcurrentModificationError,
    FreezeTooShort,
    InvalidTransition,
    MembershipError,
    NotFoundError,
    PaymentError,
    ValidationError,
)
from logging_config import get_logger
from models import (
    DEFAULT_SLOT_CAPACITY,
    FREEZE_CREDIT_CAP_DAYS,
    FREEZE_STATUS_CEILING_DAYS,
    FULL_REFUND_WINDOW_DAYS,
    INTERVAL_DAYS,
    LIVE_STATUSES,
    MIN_FREEZE_DAYS,
    MONEY_EPSILON,
    AddonService,
    Availability,
    BillingInterval,
    CancelResult,
    CreateResult,
    Discount,
    EditResult,
    ExtendResult,
    FreezeRecord,
    FreezeResult,
    FreezeStatus,
    Membership,
    MembershipDetails,
    MembershipStatus,
    PaymentStatus,
    Plan,
    UnfreezeResult,
)
from payments import PaymentGateway
from pricing import (
    compute_total,
    extension_cost,
    interval_for_months,
    parse_interval,
    prorate,
    round_money,
    select_discount,
    to_minor_units,
)
from store import BookingStore
from utils import add_days, days_between, interval_end_date, utcnow

logger = get_logger(__name__)


class _EntityLock:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.Lock()
        self.users = 0


class MembershipLifecycleManager:
    def __init__(
        self,
        store: BookingStore,
        gateway: PaymentGateway,
        clock: Callable[[], datetime] = utcnow,
        currency: str = config.CURRENCY,
        payment_timeout: float = config.PAYMENT_TIMEOUT_SECONDS,
        lock_timeout: float = config.LOCK_TIMEOUT_SECONDS,
        freeze_credit_cap_days: int = FREEZE_CREDIT_CAP_DAYS,
        freeze_status_ceiling_days: int = FREEZE_STATUS_CEILING_DAYS,
        payment_workers: int = 4,
    ):
        self.store = store
        self.gateway = gateway
        self.clock = clock
        self.currency = currency
        self.payment_timeout = payment_timeout
        self.lock_timeout = lock_timeout
        self.freeze_credit_cap_days = freeze_credit_cap_days
        self.freeze_status_ceiling_days = freeze_status_ceiling_days

        self._locks: dict[tuple[str, int | str], _EntityLock] = {}
        self._locks_guard = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=payment_workers, thread_name_prefix="payment")

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    # ---------- Plumbing ----------

    @contextmanager
    def _locked(self, kind: str, entity_id: int | str):
        key = (kind, entity_id)
        with self._locks_guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = _EntityLock()
            entry.users += 1
        try:
            if not entry.lock.acquire(timeout=self.lock_timeout):
                raise ConcurrentModificationError(
                    f"{kind.capitalize()} is busy with another operation.", context={f"{kind}_id": entity_id}
                )
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            # Entries live only while someone holds or waits on them
            with self._locks_guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._locks[key]

    def _call_gateway(self, operation: str, fn, *args):
        future = self._executor.submit(fn, *args)
        try:
            return future.result(timeout=self.payment_timeout)
        except FuturesTimeout:
            future.cancel()
            logger.warning("payment_gateway_timeout", operation=operation, timeout=self.payment_timeout)
            raise PaymentError("Payment gateway did not respond in time.", context={"operation": operation}) from None
        except PaymentError:
            raise
        except Exception as exc:
            logger.exception("payment_gateway_error", operation=operation)
            raise PaymentError("Payment gateway error.", context={"operation": operation}) from exc

    def _load(self, membership_id: int, now: datetime) -> Membership:
        """Fetch a membership, expiring it first if its end date has passed."""
        m = self.store.get_membership(membership_id)
        if m is None:
            raise NotFoundError("Membership not found", context={"membership_id": membership_id})
        if m.status is MembershipStatus.ACTIVE and m.end_date < now:
            m.status = MembershipStatus.EXPIRED
            self.store.save_membership(m, clear_current=True)
            logger.info("membership_expired", membership_id=m.id, end_date=m.end_date.isoformat())
        return m

    def _load_locked(self, membership_id: int, now: datetime) -> Membership:
        with self._locked("membership", membership_id):
            return self._load(membership_id, now)

    def _plan(self, plan_id: int, require_active: bool = True) -> Plan:
        plan = self.store.get_plan(plan_id)
        if plan is None:
            raise NotFoundError("Plan not found", context={"plan_id": plan_id})
        if require_active and not plan.active:
            raise ValidationError("Plan is not available for purchase.", context={"plan_id": plan_id})
        return plan

    def _addons(self, addon_ids: Iterable[int]) -> list[AddonService]:
        wanted = list(dict.fromkeys(addon_ids or ()))
        addons = self.store.get_addons(wanted)
        missing = set(wanted) - {a.id for a in addons}
        if missing:
            raise NotFoundError("One or more add-on services were not found.", context={"addon_ids": sorted(missing)})
        inactive = [a.id for a in addons if not a.active]
        if inactive:
            raise ValidationError("One or more add-on services are not available.", context={"addon_ids": inactive})
        return addons

    def _discount(self, interval: BillingInterval) -> Discount | None:
        return select_discount(self.store.list_discounts(interval), interval)

    @staticmethod
    def _require_live(m: Membership, action: str) -> None:
        if not m.is_live:
            raise InvalidTransition(
                f"Cannot {action} a {m.status.value.lower()} membership.",
                context={"membership_id": m.id, "status": m.status.value},
            )

    def _record(self, m: Membership, kind: str, purpose: str, amount: Decimal, reference: str | None, status: str, now):
        self.store.record_payment(m.id, kind, purpose, round_money(amount), self.currency, reference, status, now)

    # ---------- Purchase ----------

    def create_membership(
        self,
        account_id: int,
        plan_id: int,
        addon_ids: Iterable[int],
        time_slot: str,
        interval: BillingInterval | str,
        goals: Iterable[str] | None = (),
    ) -> CreateResult:
        interval = parse_interval(interval)
        time_slot = (time_slot or "").strip()
        if not time_slot:
            raise ValidationError("Time slot is required.")

        with self._locked("account", account_id):
            now = self.clock()
            account = self.store.get_account(account_id)
            if account is None:
                raise NotFoundError("Account not found", context={"account_id": account_id})
            if account.current_membership_id is not None:
                current = self._load_locked(account.current_membership_id, now)
                if current.is_live:
                    raise ValidationError(
                        "Account already has an active membership.",
                        error_code="ACTIVE_MEMBERSHIP_EXISTS",
                        context={"membership_id": current.id},
                    )

            plan = self._plan(plan_id)
            addons = self._addons(addon_ids)
            total = compute_total(plan, addons, interval, self._discount(interval))

            # The seat stays claimed from the capacity check until the insert
            with self._locked("slot", time_slot):
                if not self.check_availability(time_slot).is_available:
                    raise ValidationError("Selected time slot is full.", context={"time_slot": time_slot})

                auth = self._call_gateway(
                    "authorize",
                    self.gateway.authorize,
                    to_minor_units(total),
                    self.currency,
                    {"account_id": account_id, "plan_id": plan.id, "purpose": "purchase"},
                )

                m = Membership(
                    id=None,
                    account_id=account_id,
                    plan_id=plan.id,
                    addon_ids=[a.id for a in addons],
                    interval=interval,
                    goals=[g.strip() for g in goals or () if g and g.strip()],
                    total=total,
                    time_slot=time_slot,
                    start_date=now,
                    end_date=interval_end_date(now, interval),
                    payment_reference=auth.reference,
                    payment_status=PaymentStatus.PENDING,
                )
                self.store.add_membership(m, make_current=True)
                self._record(m, "charge", "purchase", total, auth.reference, "pending", now)

        logger.info("membership_created", membership_id=m.id, account_id=account_id, total=str(total))
        return CreateResult(membership=m, payment_client_secret=auth.client_secret)

    def enroll(
        self,
        name: str,
        email: str,
        plan_id: int,
        addon_ids: Iterable[int],
        time_slot: str,
        interval: BillingInterval | str,
        goals: Iterable[str] | None = (),
    ) -> CreateResult:
        """
        Purchase by email, registering the member on their first purchase.
        An account registered here is removed again if the purchase is rejected.
        """
        email = (email or "").strip()
        if not email:
            raise ValidationError("Member email is required.")
        account = self.store.get_account_by_email(email)
        registered = account is None
        if registered:
            name = (name or "").strip()
            if not name:
                raise ValidationError("Member name is required.")
            account = self.store.add_account(name, email)

        try:
            return self.create_membership(account.id, plan_id, addon_ids, time_slot, interval, goals)
        except MembershipError:
            if registered:
                self.store.delete_account(account.id)
                logger.info("enrollment_rolled_back", account_id=account.id)
            raise

    def confirm_payment(self, membership_id: int, reference: str | None = None) -> Membership:
        """
        Ask the gateway whether a payment went through.
        Without a reference the membership's purchase payment is checked.
        """
        with self._locked("membership", membership_id):
            m = self._load(membership_id, self.clock())
            reference = reference or m.payment_reference
            if not reference:
                raise ValidationError("Membership has no payment to confirm.", context={"membership_id": m.id})

            status = self._call_gateway("confirm_status", self.gateway.confirm_status, reference)
            if status == "succeeded":
                self.store.update_payment_status(m.id, reference, "succeeded")
                if reference == m.payment_reference and m.payment_status is PaymentStatus.PENDING:
                    m.payment_status = PaymentStatus.COMPLETED
                    self.store.save_membership(m)
            logger.info("payment_status_checked", membership_id=m.id, reference=reference, status=status)
            return m

    # ---------- Freeze ----------

    def freeze(self, membership_id: int) -> FreezeResult:
        with self._locked("membership", membership_id):
            now = self.clock()
            m = self._load(membership_id, now)
            if m.status is not MembershipStatus.ACTIVE:
                raise InvalidTransition(
                    f"Cannot freeze a {m.status.value.lower()} membership.",
                    context={"membership_id": m.id, "status": m.status.value},
                )
            m.status = MembershipStatus.FROZEN
            m.freeze_start_date = now
            self.store.save_membership(m)

        logger.info("membership_frozen", membership_id=m.id)
        return FreezeResult(status=m.status, freeze_start_date=now)

    def unfreeze(self, membership_id: int) -> UnfreezeResult:
        with self._locked("membership", membership_id):
            now = self.clock()
            m = self._load(membership_id, now)
            if m.status is not MembershipStatus.FROZEN:
                raise InvalidTransition("Membership is not frozen.", context={"membership_id": m.id})

            duration = days_between(now, m.freeze_start_date)
            if duration < MIN_FREEZE_DAYS:
                raise FreezeTooShort(
                    f"Membership must stay frozen for at least {MIN_FREEZE_DAYS} days.",
                    context={"membership_id": m.id, "freeze_duration_days": duration},
                )

            credit = min(duration, self.freeze_credit_cap_days)
            m.end_date = add_days(m.end_date, credit)
            m.freeze_history.append(FreezeRecord(start=m.freeze_start_date, end=now, duration_days=duration))
            m.freeze_start_date = None
            m.status = MembershipStatus.ACTIVE
            self.store.save_membership(m)

        logger.info("membership_unfrozen", membership_id=m.id, freeze_days=duration, credited_days=credit)
        return UnfreezeResult(
            status=m.status, new_end_date=m.end_date, extension_days=credit, freeze_duration_days=duration
        )

    def get_freeze_status(self, membership_id: int) -> FreezeStatus:
        with self._locked("membership", membership_id):
            now = self.clock()
            m = self._load(membership_id, now)

        if m.status is not MembershipStatus.FROZEN:
            return FreezeStatus(status=m.status, freeze_start_date=None, freeze_history=tuple(m.freeze_history))

        current = days_between(now, m.freeze_start_date)
        return FreezeStatus(
            status=m.status,
            freeze_start_date=m.freeze_start_date,
            freeze_history=tuple(m.freeze_history),
            current_freeze_duration_days=current,
            remaining_freeze_days=max(0, self.freeze_status_ceiling_days - current),
        )

    # ---------- Cancel ----------

    @staticmethod
    def refund_due(m: Membership, now: datetime) -> Decimal:
        """Full refund inside the first week, otherwise the unused share of the total."""
        if days_between(now, m.start_date) <= FULL_REFUND_WINDOW_DAYS:
            return m.total
        total_days = days_between(m.end_date, m.start_date)
        remaining = max(0, days_between(m.end_date, now))
        return prorate(m.total, remaining, total_days)

    def cancel(self, membership_id: int) -> CancelResult:
        """
        Cancel and refund.

        A failed refund does not stop the cancellation; it comes back as
        refund_status='failed' with a warning for the operator.
        """
        with self._locked("membership", membership_id):
            now = self.clock()
            m = self._load(membership_id, now)
            self._require_live(m, "cancel")

            amount = round_money(self.refund_due(m, now))
            warnings: list[str] = []
            receipt = None
            if amount <= 0:
                refund_status = "not_required"
            elif not m.payment_reference:
                refund_status = "skipped"
                warnings.append("No payment reference on file; refund was not issued.")
            else:
                try:
                    receipt = self._call_gateway(
                        "refund", self.gateway.refund, m.payment_reference, to_minor_units(amount)
                    )
                    refund_status = "refunded"
                    m.payment_status = PaymentStatus.REFUNDED
                except PaymentError as exc:
                    logger.warning(
                        "refund_failed", membership_id=m.id, amount=str(amount), error=exc.message, exc_info=True
                    )
                    refund_status = "failed"
                    warnings.append("Refund failed and needs manual follow-up.")

            if m.status is MembershipStatus.FROZEN:
                m.freeze_history.append(
                    FreezeRecord(m.freeze_start_date, now, days_between(now, m.freeze_start_date))
                )
                m.freeze_start_date = None
            m.status = MembershipStatus.CANCELLED
            self.store.save_membership(m, clear_current=True)
            if receipt is not None:
                self._record(m, "refund", "cancellation", amount, receipt.refund_reference, receipt.status, now)

        logger.info("membership_cancelled", membership_id=m.id, refund_amount=str(amount), refund_status=refund_status)
        return CancelResult(
            refund_amount=amount,
            refund_status=refund_status,
            refund_reference=receipt.refund_reference if receipt else None,
            warnings=tuple(warnings),
        )

    # ---------- Extend / edit ----------

    def extend(self, membership_id: int, months: int) -> ExtendResult:
        interval = interval_for_months(months)

        with self._locked("membership", membership_id):
            now = self.clock()
            m = self._load(membership_id, now)
            self._require_live(m, "extend")

            plan = self._plan(m.plan_id, require_active=False)
            cost = extension_cost(plan, months, self._discount(interval))
            auth = self._call_gateway(
                "authorize",
                self.gateway.authorize,
                to_minor_units(cost),
                self.currency,
                {"membership_id": m.id, "months": months, "purpose": "extension"},
            )

            m.end_date = add_days(m.end_date, INTERVAL_DAYS[interval])
            m.total = m.total + cost
            self.store.save_membership(m)
            self._record(m, "charge", "extension", cost, auth.reference, "pending", now)

        logger.info("membership_extended", membership_id=m.id, months=months, cost=str(cost))
        return ExtendResult(
            extension_cost=round_money(cost), new_end_date=m.end_date, payment_client_secret=auth.client_secret
        )

    def edit(self, membership_id: int, plan_id: int, addon_ids: Iterable[int]) -> EditResult:
        """
        Switch plan/add-ons for the rest of the term.

        The prorated difference between the new and current configuration is
        charged (positive) or refunded (negative); within MONEY_EPSILON nothing moves.
        """
        with self._locked("membership", membership_id):
            now = self.clock()
            m = self._load(membership_id, now)
            self._require_live(m, "edit")

            plan = self._plan(plan_id)
            addons = self._addons(addon_ids)
            discount = self._discount(m.interval)
            # m.total covers the whole term, extensions included; the new
            # configuration is priced over that same term
            current_price = compute_total(
                self._plan(m.plan_id, require_active=False), self.store.get_addons(m.addon_ids), m.interval, discount
            )
            new_total = m.total * compute_total(plan, addons, m.interval, discount) / current_price

            total_days = days_between(m.end_date, m.start_date)
            remaining = max(0, days_between(m.end_date, now))
            difference = prorate(new_total, remaining, total_days) - prorate(m.total, remaining, total_days)

            secret = None
            refund_details = None
            if difference > MONEY_EPSILON:
                auth = self._call_gateway(
                    "authorize",
                    self.gateway.authorize,
                    to_minor_units(difference),
                    self.currency,
                    {"membership_id": m.id, "plan_id": plan.id, "purpose": "plan_change"},
                )
                secret = auth.client_secret
                self._record(m, "charge", "plan_change", difference, auth.reference, "pending", now)
            elif difference < -MONEY_EPSILON:
                refund_amount = round_money(-difference)
                if not m.payment_reference:
                    refund_details = {
                        "amount": str(refund_amount),
                        "status": "skipped",
                        "warning": "No payment reference on file; refund was not issued.",
                    }
                else:
                    receipt = self._call_gateway(
                        "refund", self.gateway.refund, m.payment_reference, to_minor_units(refund_amount)
                    )
                    refund_details = {
                        "amount": str(refund_amount),
                        "status": receipt.status,
                        "refund_reference": receipt.refund_reference,
                    }
                    self._record(m, "refund", "plan_change", refund_amount, receipt.refund_reference, receipt.status, now)

            m.plan_id = plan.id
            m.addon_ids = [a.id for a in addons]
            m.total = new_total
            self.store.save_membership(m)

        logger.info("membership_edited", membership_id=m.id, plan_id=plan.id, difference=str(difference))
        return EditResult(
            membership=m,
            payment_required=secret is not None,
            difference=round_money(difference),
            payment_client_secret=secret,
            refund_details=refund_details,
        )

    # ---------- Read-only projections ----------

    def get_membership_details(self, membership_id: int) -> MembershipDetails:
        with self._locked("membership", membership_id):
            now = self.clock()
            m = self._load(membership_id, now)
        plan = self._plan(m.plan_id, require_active=False)
        return MembershipDetails(
            membership=m,
            plan=plan,
            addons=tuple(self.store.get_addons(m.addon_ids)),
            active_days=max(0, days_between(now, m.start_date)),
            days_remaining=max(0, days_between(m.end_date, now)),
        )

    def check_availability(self, time_slot: str) -> Availability:
        time_slot = (time_slot or "").strip()
        if not time_slot:
            raise ValidationError("Time slot is required.")
        capacity = self.store.get_capacity(time_slot) or DEFAULT_SLOT_CAPACITY
        taken = self.store.count_by_time_slot(time_slot, LIVE_STATUSES, as_of=self.clock())
        remaining = max(0, capacity - taken)
        return Availability(time_slot=time_slot, is_available=remaining > 0, remaining_slots=remaining, capacity=capacity)

    def set_capacity(self, time_slot: str, max_capacity: int) -> None:
        time_slot = (time_slot or "").strip()
        if not time_slot:
            raise ValidationError("Time slot is required.")
        if isinstance(max_capacity, bool) or not isinstance(max_capacity, int) or max_capacity <= 0:
            raise ValidationError("Capacity must be a positive whole number.", context={"max_capacity": max_capacity})
        self.store.set_capacity(time_slot, max_capacity)
        logger.info("slot_capacity_updated", time_slot=time_slot, max_capacity=max_capacity)

    # ---------- Account-scoped entry points ----------

    def current_membership_id(self, account_id: int) -> int:
        """
        The account's current membership.
        Falls back to its most recent active membership and repairs the reference.
        """
        account = self.store.get_account(account_id)
        if account is None:
            raise NotFoundError("Account not found", context={"account_id": account_id})

        now = self.clock()
        if account.current_membership_id is not None:
            current = self._load_locked(account.current_membership_id, now)
            if current.is_live:
                return current.id

        for candidate in self.store.find_by_account(account_id, [MembershipStatus.ACTIVE]):
            candidate = self._load_locked(candidate.id, now)
            if candidate.is_live:
                self.store.set_current_membership(account_id, candidate.id)
                logger.info("current_membership_repaired", account_id=account_id, membership_id=candidate.id)
                return candidate.id

        raise NotFoundError("No active membership found", context={"account_id": account_id})

    def freeze_for(self, account_id: int) -> FreezeResult:
        return self.freeze(self.current_membership_id(account_id))

    def unfreeze_for(self, account_id: int) -> UnfreezeResult:
        return self.unfreeze(self.current_membership_id(account_id))

    def cancel_for(self, account_id: int) -> CancelResult:
        return self.cancel(self.current_membership_id(account_id))

    def extend_for(self, account_id: int, months: int) -> ExtendResult:
        return self.extend(self.current_membership_id(account_id), months)

    def edit_for(self, account_id: int, plan_id: int, addon_ids: Iterable[int]) -> EditResult:
        return self.edit(self.current_membership_id(account_id), plan_id, addon_ids)

    def freeze_status_for(self, account_id: int) -> FreezeStatus:
        return self.get_freeze_status(self.current_membership_id(account_id))

    def details_for(self, account_id: int) -> MembershipDetails:
        return self.get_membership_details(self.current_membership_id(account_id))
