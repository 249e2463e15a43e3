from datetime import datetime, timedelta, timezone

import pytest

from models import Subscription, User
from store import InMemoryStore, clear_devices, clear_locks, clear_reports, clear_users

# Stable reference instant for tests
T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class FixedClock:
    """Controllable clock injected wherever the code asks for "now"."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(scope="session", autouse=True)
def mock_store():
    """
    Force the use of InMemoryStore for all tests, ignoring Redis configuration.
    """
    memory_store = InMemoryStore()
    # Replace global store
    import store as store_module

    store_module._STORE = memory_store
    yield memory_store


@pytest.fixture(autouse=True)
def clear_data(mock_store):
    """
    Clear all stored data so each test starts with an empty in-memory store.
    """
    clear_users()
    clear_devices()
    clear_reports()
    clear_locks()
    import view_state

    view_state.clear_view_state()


@pytest.fixture(autouse=True)
def no_simulated_delays(monkeypatch):
    """Skip the simulated network and payment delays."""
    import accounts
    import entitlements

    monkeypatch.setattr(accounts, "AUTH_DELAY_SECONDS", 0)
    monkeypatch.setattr(entitlements, "UPGRADE_DELAY_SECONDS", 0)


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def make_user(mock_store, clock):
    """
    Factory that stores a registered user on the given tier.

    Returns:
        Callable[..., User]: `make_user(tier="free", posts_this_month=0, user_id=...)`.
    """
    counter = {"n": 0}

    def _make(tier: str = "free", posts_this_month: int = 0, user_id: str = None, **extra) -> User:
        counter["n"] += 1
        uid = user_id or f"user-test-{counter['n']}"
        user = User(
            id=uid,
            username=f"tester{counter['n']}",
            email=f"tester{counter['n']}@example.com",
            created_at=clock(),
            subscription=Subscription(tier=tier, start_date=clock()),
            posts_this_month=posts_this_month,
            **extra,
        )
        return mock_store.add_user(user)

    return _make
