"""Tests for the in-memory and Redis storage backends."""

from datetime import timedelta
from unittest.mock import patch

import fakeredis
import pytest

from conftest import T0
from models import AnonymousPost, MediaItem, Report, Session, Subscription, User
from store import InMemoryStore, RedisStore


@pytest.fixture
def redis_store():
    client = fakeredis.FakeRedis(decode_responses=True)
    with patch("store._redis_client_from_env", return_value=client):
        yield RedisStore()


@pytest.fixture(params=["memory", "redis"])
def backend(request):
    if request.param == "memory":
        return InMemoryStore()
    return request.getfixturevalue("redis_store")


def _user(user_id="u1", email="Alice@Example.com", **extra) -> User:
    return User(
        id=user_id,
        username="alice",
        email=email,
        created_at=T0,
        subscription=Subscription(tier="free", start_date=T0),
        **extra,
    )


def _report(report_id: str, minutes_ago: int = 0, **extra) -> Report:
    return Report(
        id=report_id,
        agency_id="1",
        latitude=34.05,
        longitude=-118.24,
        description="Patrol car monitoring traffic",
        timestamp=T0 - timedelta(minutes=minutes_ago),
        **extra,
    )


def test_user_round_trip(backend):
    user = _user(posts_this_month=4, usage_period_start=T0)
    backend.add_user(user)

    assert backend.get_user("u1") == user
    assert backend.get_user_by_email("alice@example.com") == user
    assert backend.get_user("missing") is None


def test_update_user_keeps_nested_subscription(backend):
    backend.add_user(_user())
    premium = Subscription(
        tier="yearly", start_date=T0, end_date=T0 + timedelta(days=365), auto_renew=True, payment_method="Google Pay"
    )

    updated = backend.update_user("u1", subscription=premium, posts_this_month=0)

    assert backend.get_user("u1").subscription == premium
    assert updated.subscription.tier == "yearly"


def test_update_user_email_moves_index(backend):
    backend.add_user(_user())

    backend.update_user("u1", email="new@example.com")

    assert backend.get_user_by_email("new@example.com").id == "u1"
    assert backend.get_user_by_email("alice@example.com") is None


def test_update_missing_user_raises(backend):
    with pytest.raises(KeyError):
        backend.update_user("ghost", posts_this_month=1)


def test_provider_lookup(backend):
    backend.add_user(_user(auth_provider="google", provider_user_id="g-1"))

    assert backend.get_user_by_provider("google", "g-1").id == "u1"
    assert backend.get_user_by_provider("apple", "g-1") is None


def test_sessions(backend):
    session = Session(token="tok", user_id="u1", created_at=T0)
    backend.add_session(session, ttl_seconds=60)

    assert backend.get_session("tok") == session
    assert backend.delete_session("tok") is True
    assert backend.get_session("tok") is None
    assert backend.delete_session("tok") is False


def test_anonymous_posts_are_append_only(backend):
    backend.append_anonymous_post("dev", AnonymousPost(id="r1", timestamp=T0))
    backend.append_anonymous_post("dev", AnonymousPost(id="r2", timestamp=T0 + timedelta(minutes=1)))

    assert [p.id for p in backend.get_anonymous_posts("dev")] == ["r1", "r2"]
    assert backend.get_anonymous_posts("other") == []


def test_devices_and_welcome_flag(backend):
    backend.add_device("dev", "ios", T0)

    assert backend.device_exists("dev")
    assert not backend.device_exists("other")
    assert backend.get_has_seen_welcome("dev") is False
    backend.set_has_seen_welcome("dev", True)
    assert backend.get_has_seen_welcome("dev") is True


def test_reports_newest_first(backend):
    backend.add_report(_report("old", minutes_ago=10))
    backend.add_report(_report("new", minutes_ago=0))

    assert [r.id for r in backend.get_all_reports()] == ["new", "old"]
    assert backend.count_reports() == 2


def test_report_round_trip_with_media(backend):
    report = _report(
        "r1",
        verified=True,
        media=[MediaItem(uri="https://example.com/v.mp4", type="video")],
        user_id="u1",
        username="alice",
    )
    backend.add_report(report)

    assert backend.get_report("r1") == report


def test_increment_upvotes(backend):
    backend.add_report(_report("r1"))

    assert backend.increment_report_upvotes("r1").upvotes == 1
    assert backend.increment_report_upvotes("r1").upvotes == 2
    assert backend.increment_report_upvotes("missing") is None


def test_delete_report(backend):
    backend.add_report(_report("r1", minutes_ago=5))
    backend.add_report(_report("r2"))

    assert backend.delete_report("r1") is True
    assert backend.delete_report("r1") is False
    assert [r.id for r in backend.get_all_reports()] == ["r2"]
    assert backend.count_reports() == 1


def test_clear_reports(backend):
    backend.add_report(_report("r1"))
    backend.clear_reports()

    assert backend.get_all_reports() == []
    assert backend.count_reports() == 0


def test_locks_are_exclusive(backend):
    assert backend.acquire_lock("quota:user:u1", "owner-a")
    assert not backend.acquire_lock("quota:user:u1", "owner-b")

    # Only the owner can release.
    backend.release_lock("quota:user:u1", "owner-b")
    assert not backend.acquire_lock("quota:user:u1", "owner-b")

    backend.release_lock("quota:user:u1", "owner-a")
    assert backend.acquire_lock("quota:user:u1", "owner-b")


def test_redis_keys(redis_store):
    redis_store.add_user(_user())
    redis_store.add_report(_report("r1"))

    keys = set(redis_store.client.keys("*"))
    assert {"user:u1", "user:email:alice@example.com", "report:r1", "reports:created"} <= keys
