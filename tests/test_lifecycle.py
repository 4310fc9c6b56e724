"""
Tests for the membership lifecycle: purchase, freeze, cancel, extend, edit,
expiry, availability and per-membership locking.
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from decimal import Decimal

import pytest

from errors import (
    FreezeTooShort,
    InvalidInterval,
    InvalidTransition,
    NotFoundError,
    PaymentError,
    UnsupportedExtension,
    ValidationError,
)
from lifecycle import MembershipLifecycleManager
from models import BillingInterval, CreateResult, FreezeResult, MembershipStatus, PaymentStatus
from tests.conftest import SLOT, T0


class TestCreateMembership:
    def test_creates_active_membership(self, buy, store, gateway, member, catalog):
        result = buy()
        m = result.membership

        assert m.status is MembershipStatus.ACTIVE
        assert m.total == Decimal("30")
        assert m.start_date == T0
        assert m.end_date == T0 + timedelta(days=30)
        assert m.payment_status is PaymentStatus.PENDING
        assert m.goals == ["strength", "cardio"]
        assert result.payment_client_secret == f"{m.payment_reference}_secret"
        assert gateway.intents[m.payment_reference]["amount"] == 3000

        account = store.get_account(member.id)
        assert account.current_membership_id == m.id
        assert account.history == [m.id]

        stored = store.get_membership(m.id)
        assert stored.plan_id == catalog.basic.id
        assert stored.total == Decimal("30")

        payments = store.list_payments(m.id)
        assert [(p["kind"], p["purpose"], p["amount"]) for p in payments] == [("charge", "purchase", "30.00")]

    def test_quarterly_total_uses_addons_and_discount(self, buy, store, catalog):
        m = buy(plan=catalog.standard, addons=[catalog.sauna], interval=BillingInterval.QUARTERLY).membership
        assert m.total == Decimal("162")
        assert m.end_date == T0 + timedelta(days=90)
        assert sorted(store.get_membership(m.id).addon_ids) == [catalog.sauna.id]

    def test_gateway_failure_creates_nothing(self, buy, store, gateway, member):
        gateway.fail_authorize = True
        with pytest.raises(PaymentError):
            buy()
        assert store.find_by_account(member.id) == []
        assert store.get_account(member.id).current_membership_id is None
        assert store.list_payments() == []

    def test_gateway_timeout_is_payment_error(self, store, gateway, clock, member, catalog):
        gateway.latency = 0.5
        slow = MembershipLifecycleManager(store, gateway, clock=clock, payment_timeout=0.05)
        try:
            with pytest.raises(PaymentError) as exc:
                slow.create_membership(member.id, catalog.basic.id, [], SLOT, "Monthly")
        finally:
            slow.close()
        assert exc.value.status_code == 402
        assert store.find_by_account(member.id) == []

    def test_missing_plan(self, manager, member, catalog):
        with pytest.raises(NotFoundError):
            manager.create_membership(member.id, 9999, [], SLOT, "Monthly")

    def test_inactive_plan(self, manager, member, catalog):
        with pytest.raises(ValidationError):
            manager.create_membership(member.id, catalog.retired_plan.id, [], SLOT, "Monthly")

    def test_missing_addon(self, manager, member, catalog):
        with pytest.raises(NotFoundError):
            manager.create_membership(member.id, catalog.basic.id, [catalog.sauna.id, 4242], SLOT, "Monthly")

    def test_inactive_addon(self, manager, member, catalog):
        with pytest.raises(ValidationError):
            manager.create_membership(member.id, catalog.basic.id, [catalog.retired_addon.id], SLOT, "Monthly")

    @pytest.mark.parametrize("slot", ["", "   ", None])
    def test_time_slot_required(self, manager, member, catalog, slot):
        with pytest.raises(ValidationError):
            manager.create_membership(member.id, catalog.basic.id, [], slot, "Monthly")

    def test_unknown_interval(self, manager, member, catalog):
        with pytest.raises(InvalidInterval):
            manager.create_membership(member.id, catalog.basic.id, [], SLOT, "Weekly")

    def test_unknown_account(self, manager, catalog):
        with pytest.raises(NotFoundError):
            manager.create_membership(12345, catalog.basic.id, [], SLOT, "Monthly")

    def test_second_live_purchase_rejected(self, buy):
        buy()
        with pytest.raises(ValidationError) as exc:
            buy()
        assert exc.value.error_code == "ACTIVE_MEMBERSHIP_EXISTS"

    def test_purchase_after_cancel_appends_history(self, buy, manager, store, member):
        first = buy().membership
        manager.cancel(first.id)
        second = buy().membership

        account = store.get_account(member.id)
        assert account.current_membership_id == second.id
        assert account.history == [first.id, second.id]
        assert store.get_membership(first.id).status is MembershipStatus.CANCELLED

    def test_full_slot_rejected(self, buy, manager, store):
        manager.set_capacity(SLOT, 1)
        buy()
        other = store.add_account("Omar Samy", "omar@example.com")
        with pytest.raises(ValidationError):
            buy(account=other)

    def test_goals_optional(self, manager, member, catalog):
        m = manager.create_membership(member.id, catalog.basic.id, None, SLOT, "Monthly", None).membership
        assert m.goals == []
        assert m.addon_ids == []


class TestEnroll:
    def test_registers_new_member(self, manager, store, catalog):
        result = manager.enroll(" Omar Samy ", "Omar@Example.com", catalog.basic.id, [], SLOT, "Monthly")

        account = store.get_account_by_email("omar@example.com")
        assert account.name == "Omar Samy"
        assert account.current_membership_id == result.membership.id

    def test_reuses_existing_account(self, manager, store, member, catalog):
        result = manager.enroll("", member.email, catalog.basic.id, [], SLOT, "Monthly")
        assert result.membership.account_id == member.id

    def test_rejected_purchase_leaves_no_account(self, manager, store, gateway, catalog):
        gateway.fail_authorize = True
        with pytest.raises(PaymentError):
            manager.enroll("Omar Samy", "omar@example.com", catalog.basic.id, [], SLOT, "Monthly")
        assert store.get_account_by_email("omar@example.com") is None

    def test_full_slot_leaves_no_account(self, buy, manager, store, catalog):
        manager.set_capacity(SLOT, 1)
        buy()
        with pytest.raises(ValidationError):
            manager.enroll("Omar Samy", "omar@example.com", catalog.basic.id, [], SLOT, "Monthly")
        assert store.get_account_by_email("omar@example.com") is None

    def test_rejection_keeps_existing_account(self, buy, manager, store, member, catalog):
        buy()
        with pytest.raises(ValidationError):
            manager.enroll("", member.email, catalog.basic.id, [], SLOT, "Monthly")
        assert store.get_account(member.id) is not None

    @pytest.mark.parametrize("name, email", [("Omar Samy", " "), ("", "new@example.com")])
    def test_name_and_email_required(self, manager, store, catalog, name, email):
        with pytest.raises(ValidationError):
            manager.enroll(name, email, catalog.basic.id, [], SLOT, "Monthly")
        assert store.get_account_by_email("new@example.com") is None


class TestFreeze:
    def test_freeze(self, buy, manager, store, clock):
        m = buy().membership
        clock.advance(days=2)

        result = manager.freeze(m.id)

        assert result.status is MembershipStatus.FROZEN
        assert result.freeze_start_date == clock.now
        stored = store.get_membership(m.id)
        assert stored.status is MembershipStatus.FROZEN
        assert stored.freeze_start_date == clock.now

    def test_freeze_twice(self, buy, manager):
        m = buy().membership
        manager.freeze(m.id)
        with pytest.raises(InvalidTransition):
            manager.freeze(m.id)

    def test_unfreeze_active(self, buy, manager):
        m = buy().membership
        with pytest.raises(InvalidTransition):
            manager.unfreeze(m.id)

    def test_unfreeze_after_five_days_too_short(self, buy, manager, store, clock):
        m = buy().membership
        manager.freeze(m.id)
        clock.advance(days=5)

        with pytest.raises(FreezeTooShort) as exc:
            manager.unfreeze(m.id)

        assert exc.value.context["freeze_duration_days"] == 5
        stored = store.get_membership(m.id)
        assert stored.status is MembershipStatus.FROZEN
        assert stored.freeze_history == []

    def test_unfreeze_after_ten_days(self, buy, manager, store, clock):
        m = buy().membership
        freeze_start = clock.advance(days=1)
        manager.freeze(m.id)
        clock.advance(days=10)

        result = manager.unfreeze(m.id)

        assert result.status is MembershipStatus.ACTIVE
        assert result.extension_days == 10
        assert result.new_end_date == m.end_date + timedelta(days=10)
        stored = store.get_membership(m.id)
        assert stored.status is MembershipStatus.ACTIVE
        assert stored.freeze_start_date is None
        assert stored.end_date == m.end_date + timedelta(days=10)
        assert len(stored.freeze_history) == 1
        record = stored.freeze_history[0]
        assert record.duration_days == 10
        assert record.start == freeze_start
        assert record.end == clock.now

    def test_unfreeze_after_sixty_days_is_capped(self, buy, manager, store, clock):
        m = buy().membership
        manager.freeze(m.id)
        clock.advance(days=60)

        result = manager.unfreeze(m.id)

        assert result.extension_days == 50
        assert result.freeze_duration_days == 60
        stored = store.get_membership(m.id)
        assert stored.end_date == m.end_date + timedelta(days=50)
        assert stored.freeze_history[0].duration_days == 60

    def test_frozen_membership_does_not_expire(self, buy, manager, store, clock):
        m = buy().membership
        manager.freeze(m.id)
        clock.advance(days=45)

        manager.unfreeze(m.id)

        assert store.get_membership(m.id).end_date == m.end_date + timedelta(days=45)

    def test_freeze_history_accumulates(self, buy, manager, store, clock):
        m = buy().membership
        for days in (7, 8):
            manager.freeze(m.id)
            clock.advance(days=days)
            manager.unfreeze(m.id)
        stored = store.get_membership(m.id)
        assert [r.duration_days for r in stored.freeze_history] == [7, 8]
        assert stored.end_date == m.end_date + timedelta(days=15)


class TestFreezeStatus:
    def test_active(self, buy, manager):
        m = buy().membership
        status = manager.get_freeze_status(m.id)
        assert status.status is MembershipStatus.ACTIVE
        assert status.current_freeze_duration_days is None
        assert "remaining_freeze_days" not in status.to_dict()

    def test_frozen(self, buy, manager, clock):
        m = buy().membership
        manager.freeze(m.id)
        clock.advance(days=12)

        status = manager.get_freeze_status(m.id)

        assert status.status is MembershipStatus.FROZEN
        assert status.current_freeze_duration_days == 12
        assert status.remaining_freeze_days == 38
        assert status.to_dict()["remaining_freeze_days"] == 38

    def test_ceiling_is_independent_of_credit_cap(self, buy, store, gateway, clock):
        m = buy().membership
        custom = MembershipLifecycleManager(store, gateway, clock=clock, freeze_status_ceiling_days=90)
        try:
            custom.freeze(m.id)
            clock.advance(days=95)
            assert custom.get_freeze_status(m.id).remaining_freeze_days == 0
            clock.now -= timedelta(days=83)
            assert custom.get_freeze_status(m.id).remaining_freeze_days == 78
            clock.advance(days=60)
            assert custom.unfreeze(m.id).extension_days == 50
        finally:
            custom.close()

    def test_history_is_reported(self, buy, manager, clock):
        m = buy().membership
        manager.freeze(m.id)
        clock.advance(days=9)
        manager.unfreeze(m.id)

        status = manager.get_freeze_status(m.id)
        assert [r.duration_days for r in status.freeze_history] == [9]


class TestCancel:
    def test_full_refund_in_first_week(self, buy, manager, store, gateway, member, catalog, clock):
        m = buy(plan=catalog.ninety).membership
        clock.advance(days=5)

        result = manager.cancel(m.id)

        assert result.refund_amount == Decimal("90")
        assert result.refund_status == "refunded"
        assert result.warnings == ()
        assert gateway.refunds[-1]["amount"] == 9000
        stored = store.get_membership(m.id)
        assert stored.status is MembershipStatus.CANCELLED
        assert stored.payment_status is PaymentStatus.REFUNDED
        assert store.get_account(member.id).current_membership_id is None

    def test_prorated_refund(self, buy, manager, store, gateway, catalog, clock):
        m = buy(plan=catalog.ninety).membership
        clock.advance(days=10)

        result = manager.cancel(m.id)

        assert result.refund_amount == Decimal("60")
        assert gateway.refunds[-1] == {"reference": m.payment_reference, "amount": 6000, "id": result.refund_reference}
        refunds = [p for p in store.list_payments(m.id) if p["kind"] == "refund"]
        assert [(p["amount"], p["purpose"]) for p in refunds] == [("60.00", "cancellation")]

    def test_refund_failure_still_cancels(self, buy, manager, store, gateway, member, catalog, clock):
        m = buy(plan=catalog.ninety).membership
        clock.advance(days=10)
        gateway.fail_refund = True

        result = manager.cancel(m.id)

        assert result.refund_status == "failed"
        assert result.refund_amount == Decimal("60")
        assert result.refund_reference is None
        assert len(result.warnings) == 1
        stored = store.get_membership(m.id)
        assert stored.status is MembershipStatus.CANCELLED
        assert stored.payment_status is PaymentStatus.PENDING
        assert store.get_account(member.id).current_membership_id is None

    def test_refund_timeout_still_cancels(self, buy, store, gateway, clock, catalog):
        m = buy(plan=catalog.ninety).membership
        gateway.latency = 0.5
        slow = MembershipLifecycleManager(store, gateway, clock=clock, payment_timeout=0.05)
        try:
            result = slow.cancel(m.id)
        finally:
            slow.close()
        assert result.refund_status == "failed"
        assert store.get_membership(m.id).status is MembershipStatus.CANCELLED

    def test_missing_payment_reference_skips_refund(self, buy, manager, store):
        m = buy().membership
        stored = store.get_membership(m.id)
        stored.payment_reference = None
        store.save_membership(stored)

        result = manager.cancel(m.id)

        assert result.refund_status == "skipped"
        assert result.warnings
        assert store.get_membership(m.id).status is MembershipStatus.CANCELLED

    def test_nothing_left_to_refund(self, buy, manager, store, gateway, clock):
        m = buy().membership
        clock.advance(days=30)

        result = manager.cancel(m.id)

        assert result.refund_amount == Decimal("0")
        assert result.refund_status == "not_required"
        assert gateway.refunds == []

    def test_cancel_frozen_closes_freeze(self, buy, manager, store, clock):
        m = buy().membership
        manager.freeze(m.id)
        clock.advance(days=3)

        manager.cancel(m.id)

        stored = store.get_membership(m.id)
        assert stored.status is MembershipStatus.CANCELLED
        assert stored.freeze_start_date is None
        assert [r.duration_days for r in stored.freeze_history] == [3]

    def test_cancel_twice(self, buy, manager):
        m = buy().membership
        manager.cancel(m.id)
        with pytest.raises(InvalidTransition):
            manager.cancel(m.id)

    def test_unknown_membership(self, manager):
        with pytest.raises(NotFoundError):
            manager.cancel(31337)


class TestExtend:
    def test_extend_quarter(self, buy, manager, store, gateway, catalog):
        m = buy(plan=catalog.standard).membership

        result = manager.extend(m.id, 3)

        assert result.extension_cost == Decimal("135.00")
        assert result.new_end_date == m.end_date + timedelta(days=90)
        reference = result.payment_client_secret.removesuffix("_secret")
        assert gateway.intents[reference]["amount"] == 13500
        stored = store.get_membership(m.id)
        assert stored.end_date == m.end_date + timedelta(days=90)
        assert stored.total == Decimal("185")
        assert stored.payment_reference == m.payment_reference

    def test_extend_month_without_discount(self, buy, manager, store):
        m = buy().membership
        result = manager.extend(m.id, 1)
        assert result.extension_cost == Decimal("30.00")
        assert store.get_membership(m.id).end_date == m.end_date + timedelta(days=30)

    def test_extend_frozen(self, buy, manager, store):
        m = buy().membership
        manager.freeze(m.id)
        manager.extend(m.id, 12)
        assert store.get_membership(m.id).status is MembershipStatus.FROZEN

    def test_unsupported_months(self, buy, manager):
        m = buy().membership
        with pytest.raises(UnsupportedExtension):
            manager.extend(m.id, 6)

    def test_gateway_failure_leaves_membership_unchanged(self, buy, manager, store, gateway):
        m = buy().membership
        gateway.fail_authorize = True

        with pytest.raises(PaymentError):
            manager.extend(m.id, 1)

        stored = store.get_membership(m.id)
        assert stored.end_date == m.end_date
        assert stored.total == m.total

    def test_extend_cancelled(self, buy, manager):
        m = buy().membership
        manager.cancel(m.id)
        with pytest.raises(InvalidTransition):
            manager.extend(m.id, 1)


class TestEdit:
    def test_upgrade_charges_prorated_difference(self, buy, manager, store, gateway, catalog, clock):
        m = buy(plan=catalog.basic).membership
        clock.advance(days=10)

        result = manager.edit(m.id, catalog.premium.id, [])

        # 20 of 30 days left: 60 * 20/30 - 30 * 20/30
        assert result.difference == Decimal("20.00")
        assert result.payment_required is True
        reference = result.payment_client_secret.removesuffix("_secret")
        assert gateway.intents[reference]["amount"] == 2000
        assert result.refund_details is None
        stored = store.get_membership(m.id)
        assert stored.plan_id == catalog.premium.id
        assert stored.total == Decimal("60")

    def test_downgrade_refunds_difference(self, buy, manager, store, gateway, catalog, clock):
        m = buy(plan=catalog.premium).membership
        clock.advance(days=10)

        result = manager.edit(m.id, catalog.basic.id, [])

        assert result.payment_required is False
        assert result.payment_client_secret is None
        assert result.refund_details["amount"] == "20.00"
        assert gateway.refunds[-1]["amount"] == 2000
        assert gateway.refunds[-1]["reference"] == m.payment_reference
        assert store.get_membership(m.id).total == Decimal("30")

    def test_addons_change_price(self, buy, manager, store, catalog, clock):
        m = buy(plan=catalog.basic).membership
        clock.advance(days=15)

        result = manager.edit(m.id, catalog.basic.id, [catalog.sauna.id, catalog.towels.id])

        assert result.difference == Decimal("7.50")
        assert sorted(store.get_membership(m.id).addon_ids) == [catalog.sauna.id, catalog.towels.id]

    def test_same_price_moves_no_money(self, buy, manager, store, gateway, catalog, clock):
        m = buy(plan=catalog.basic).membership
        intents_before = len(gateway.intents)
        clock.advance(days=3)

        result = manager.edit(m.id, catalog.basic_plus.id, [])

        assert result.payment_required is False
        assert result.refund_details is None
        assert len(gateway.intents) == intents_before
        assert gateway.refunds == []
        assert store.get_membership(m.id).plan_id == catalog.basic_plus.id

    def test_gateway_failure_aborts(self, buy, manager, store, gateway, catalog, clock):
        m = buy(plan=catalog.basic).membership
        clock.advance(days=10)
        gateway.fail_authorize = True

        with pytest.raises(PaymentError):
            manager.edit(m.id, catalog.premium.id, [])

        stored = store.get_membership(m.id)
        assert stored.plan_id == catalog.basic.id
        assert stored.total == Decimal("30")

    def test_refund_failure_aborts(self, buy, manager, store, gateway, catalog, clock):
        m = buy(plan=catalog.premium).membership
        clock.advance(days=10)
        gateway.fail_refund = True

        with pytest.raises(PaymentError):
            manager.edit(m.id, catalog.basic.id, [])

        assert store.get_membership(m.id).plan_id == catalog.premium.id

    def test_same_plan_after_extension_moves_no_money(self, buy, manager, store, gateway, catalog, clock):
        m = buy(plan=catalog.basic).membership
        manager.extend(m.id, 1)
        clock.advance(days=10)

        result = manager.edit(m.id, catalog.basic.id, [])

        assert result.difference == Decimal("0.00")
        assert result.refund_details is None
        assert gateway.refunds == []
        stored = store.get_membership(m.id)
        assert stored.total == Decimal("60")
        assert stored.end_date == T0 + timedelta(days=60)

    def test_upgrade_after_extension_prices_whole_term(self, buy, manager, store, catalog, clock):
        m = buy(plan=catalog.basic).membership
        manager.extend(m.id, 1)
        clock.advance(days=10)

        result = manager.edit(m.id, catalog.standard.id, [])

        # term total 60 -> 100, 50 of 60 days left
        assert result.difference == Decimal("33.33")
        assert result.payment_required is True
        assert store.get_membership(m.id).total == Decimal("100")

    def test_inactive_plan_rejected(self, buy, manager, catalog):
        m = buy().membership
        with pytest.raises(ValidationError):
            manager.edit(m.id, catalog.retired_plan.id, [])


class TestExpiry:
    def test_expired_on_read(self, buy, manager, store, member, clock):
        m = buy().membership
        clock.advance(days=31)

        with pytest.raises(InvalidTransition):
            manager.freeze(m.id)

        assert store.get_membership(m.id).status is MembershipStatus.EXPIRED
        assert store.get_account(member.id).current_membership_id is None

    def test_expired_membership_allows_new_purchase(self, buy, clock):
        buy()
        clock.advance(days=31)
        assert buy().membership.status is MembershipStatus.ACTIVE


class TestAvailability:
    def test_default_capacity(self, buy, manager):
        buy()
        avail = manager.check_availability(SLOT)
        assert avail.capacity == 150
        assert avail.remaining_slots == 149
        assert avail.is_available is True

    def test_full_slot(self, buy, manager):
        manager.set_capacity(SLOT, 1)
        buy()
        avail = manager.check_availability(SLOT)
        assert avail.is_available is False
        assert avail.remaining_slots == 0

    def test_cancelled_and_expired_do_not_count(self, buy, manager, store, clock):
        first = buy().membership
        manager.cancel(first.id)
        other = store.add_account("Omar Samy", "omar@example.com")
        buy(account=other)
        clock.advance(days=31)

        assert manager.check_availability(SLOT).remaining_slots == 150

    def test_frozen_counts(self, buy, manager):
        m = buy().membership
        manager.freeze(m.id)
        assert manager.check_availability(SLOT).remaining_slots == 149

    def test_frozen_past_end_date_keeps_its_seat(self, buy, manager, clock):
        manager.set_capacity(SLOT, 1)
        m = buy().membership
        clock.advance(days=25)
        manager.freeze(m.id)
        clock.advance(days=10)

        assert manager.get_freeze_status(m.id).status is MembershipStatus.FROZEN
        avail = manager.check_availability(SLOT)
        assert avail.remaining_slots == 0
        assert avail.is_available is False

    @pytest.mark.parametrize("capacity", [0, -1, 2.5, True])
    def test_invalid_capacity(self, manager, capacity):
        with pytest.raises(ValidationError):
            manager.set_capacity(SLOT, capacity)


class TestConfirmPayment:
    def test_succeeded(self, buy, manager, store, gateway):
        m = buy().membership
        gateway.mark_succeeded(m.payment_reference)

        confirmed = manager.confirm_payment(m.id)

        assert confirmed.payment_status is PaymentStatus.COMPLETED
        assert store.get_membership(m.id).payment_status is PaymentStatus.COMPLETED
        assert store.list_payments(m.id)[0]["status"] == "succeeded"

    def test_still_pending(self, buy, manager, store):
        m = buy().membership
        assert manager.confirm_payment(m.id).payment_status is PaymentStatus.PENDING

    def test_extension_payment(self, buy, manager, store, gateway):
        m = buy().membership
        reference = manager.extend(m.id, 1).payment_client_secret.removesuffix("_secret")
        gateway.mark_succeeded(reference)

        manager.confirm_payment(m.id, reference)

        statuses = {p["reference"]: p["status"] for p in store.list_payments(m.id)}
        assert statuses[reference] == "succeeded"
        assert statuses[m.payment_reference] == "pending"
        assert store.get_membership(m.id).payment_status is PaymentStatus.PENDING


class TestAccountScoped:
    def test_operations_follow_current_membership(self, buy, manager, member, clock):
        m = buy().membership
        assert manager.freeze_for(member.id).status is MembershipStatus.FROZEN
        assert manager.freeze_status_for(member.id).status is MembershipStatus.FROZEN
        clock.advance(days=8)
        assert manager.unfreeze_for(member.id).extension_days == 8
        assert manager.extend_for(member.id, 1).new_end_date == m.end_date + timedelta(days=38)

        result = manager.cancel_for(member.id)

        # 60 total over 68 days, 60 left; more than the 30 charged on the purchase reference
        assert result.refund_amount == Decimal("52.94")
        assert result.refund_status == "failed"
        assert manager.store.get_account(member.id).current_membership_id is None

    def test_repairs_missing_reference(self, buy, manager, store, member):
        m = buy().membership
        store.set_current_membership(member.id, None)

        assert manager.current_membership_id(member.id) == m.id
        assert store.get_account(member.id).current_membership_id == m.id

    def test_no_membership(self, manager, member):
        with pytest.raises(NotFoundError) as exc:
            manager.freeze_for(member.id)
        assert exc.value.message == "No active membership found"

    def test_details(self, buy, manager, member, catalog, clock):
        buy(addons=[catalog.sauna])
        clock.advance(days=10)

        details = manager.details_for(member.id)

        assert details.active_days == 10
        assert details.days_remaining == 20
        assert details.plan.name == "Basic"
        assert [a.name for a in details.addons] == ["Sauna"]
        assert details.to_dict()["total"] == "40"


class TestConcurrency:
    def test_concurrent_freeze_applies_once(self, buy, manager, store):
        m = buy().membership
        barrier = threading.Barrier(2)

        def attempt():
            barrier.wait()
            try:
                return manager.freeze(m.id)
            except InvalidTransition as exc:
                return exc

        with ThreadPoolExecutor(max_workers=2) as pool:
            outcomes = list(pool.map(lambda _: attempt(), range(2)))

        assert sum(isinstance(o, FreezeResult) for o in outcomes) == 1
        assert sum(isinstance(o, InvalidTransition) for o in outcomes) == 1
        assert store.get_membership(m.id).version == m.version + 1

    def test_concurrent_freeze_and_edit_keep_state_consistent(self, buy, manager, store, catalog, clock):
        m = buy().membership
        clock.advance(days=1)
        barrier = threading.Barrier(2)

        def run(fn):
            barrier.wait()
            return fn()

        with ThreadPoolExecutor(max_workers=2) as pool:
            freeze = pool.submit(run, lambda: manager.freeze(m.id))
            edit = pool.submit(run, lambda: manager.edit(m.id, catalog.premium.id, []))
            freeze.result()
            edit.result()

        stored = store.get_membership(m.id)
        assert stored.status is MembershipStatus.FROZEN
        assert stored.freeze_start_date is not None
        assert stored.plan_id == catalog.premium.id
        assert stored.version == m.version + 2

    def test_concurrent_purchases_share_last_seat(self, manager, store, gateway, member, catalog):
        manager.set_capacity(SLOT, 1)
        other = store.add_account("Omar Samy", "omar@example.com")
        gateway.latency = 0.2
        barrier = threading.Barrier(2)

        def attempt(account_id):
            barrier.wait()
            try:
                return manager.create_membership(account_id, catalog.basic.id, [], SLOT, "Monthly")
            except ValidationError as exc:
                return exc

        with ThreadPoolExecutor(max_workers=2) as pool:
            outcomes = list(pool.map(attempt, [member.id, other.id]))

        assert sum(isinstance(o, CreateResult) for o in outcomes) == 1
        assert sum(isinstance(o, ValidationError) for o in outcomes) == 1
        assert store.count_by_time_slot(SLOT) == 1
        assert len(gateway.intents) == 1

    def test_lock_entries_released(self, buy, manager, catalog, clock):
        m = buy().membership
        manager.freeze(m.id)
        clock.advance(days=8)
        manager.unfreeze(m.id)
        manager.edit(m.id, catalog.premium.id, [])
        manager.check_availability(SLOT)

        assert manager._locks == {}
