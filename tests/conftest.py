"""
Shared fixtures: temporary database, seeded catalog, a controllable clock,
a sandbox gateway and a manager wired to all of them.
"""

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from lifecycle import MembershipLifecycleManager
from logging_config import setup_logging
from models import BillingInterval
from payments import SandboxGateway
from store import BookingStore

T0 = datetime(2025, 1, 1, 9, 0, tzinfo=timezone.utc)
SLOT = "06:00-08:00"


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, days: int = 0, **kwargs) -> datetime:
        self.now += timedelta(days=days, **kwargs)
        return self.now


@pytest.fixture(scope="session", autouse=True)
def _logging():
    setup_logging(log_format="console", level="DEBUG")


@pytest.fixture
def store(tmp_path):
    s = BookingStore(tmp_path / "gym-test.db")
    s.init()
    return s


@pytest.fixture
def clock():
    return FakeClock(T0)


@pytest.fixture
def gateway():
    return SandboxGateway()


@pytest.fixture
def manager(store, gateway, clock):
    m = MembershipLifecycleManager(store, gateway, clock=clock, payment_timeout=2, lock_timeout=2)
    yield m
    m.close()


@pytest.fixture
def catalog(store):
    sauna = store.add_addon("Sauna", "10", "Wellness")
    towels = store.add_addon("Towel service", "5", "Wellness")
    retired = store.add_addon("Squash court", "20", "Fitness", active=False)
    return SimpleNamespace(
        sauna=sauna,
        towels=towels,
        retired_addon=retired,
        basic=store.add_plan("Basic", "30"),
        basic_plus=store.add_plan("Basic Plus", "30"),
        standard=store.add_plan("Standard", "50"),
        premium=store.add_plan("Premium", "60"),
        ninety=store.add_plan("Ninety", "90"),
        retired_plan=store.add_plan("Legacy", "25", active=False),
        quarterly=store.add_discount("Quarterly saver", "10", BillingInterval.QUARTERLY),
    )


@pytest.fixture
def member(store):
    return store.add_account("Mona Ali", "mona@example.com")


@pytest.fixture
def buy(manager, member, catalog):
    """Purchase a membership for `member` (Basic, Monthly) unless told otherwise."""

    def _buy(plan=None, addons=(), interval=BillingInterval.MONTHLY, account=None, slot=SLOT):
        return manager.create_membership(
            (account or member).id,
            (plan or catalog.basic).id,
            [a.id for a in addons],
            slot,
            interval,
            ["strength", "cardio"],
        )

    return _buy
