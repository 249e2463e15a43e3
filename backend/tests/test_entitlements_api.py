"""Tests for entitlement, subscription, auth and device HTTP endpoints."""

from fastapi.testclient import TestClient

from main import app

client = TestClient(app)


def _register(email="member@example.com"):
    response = client.post(
        "/auth/register",
        json={"username": "member", "email": email, "password": "secret"},
    )
    assert response.status_code == 201
    return response.json()


def test_health():
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["storage"] == "connected"


def test_anonymous_entitlements():
    response = client.get("/entitlements", headers={"X-Device-Id": "fresh-device"})
    assert response.status_code == 200
    assert response.json() == {"remaining_posts": 2, "post_limit": 2, "can_post": True, "unlimited": False}


def test_entitlements_need_identity():
    assert client.get("/entitlements").status_code == 400


def test_free_user_entitlements():
    session = _register()
    response = client.get("/entitlements", headers={"X-Session-Token": session["token"]})
    assert response.json() == {"remaining_posts": 10, "post_limit": 10, "can_post": True, "unlimited": False}


def test_upgrade_makes_posting_unlimited():
    session = _register()
    headers = {"X-Session-Token": session["token"]}

    response = client.post("/subscriptions/upgrade", json={"tier": "monthly"}, headers=headers)

    assert response.status_code == 200
    body = response.json()
    assert body["subscription"]["tier"] == "monthly"
    assert body["subscription"]["payment_method"] == "Google Pay"
    assert body["entitlements"] == {"remaining_posts": None, "post_limit": None, "can_post": True, "unlimited": True}
    assert client.get("/entitlements", headers=headers).json()["unlimited"] is True


def test_anonymous_upgrade_rejected():
    response = client.post("/subscriptions/upgrade", json={"tier": "yearly"}, headers={"X-Device-Id": "d1"})
    assert response.status_code == 401


def test_upgrade_unknown_tier_is_validation_error():
    session = _register()
    response = client.post(
        "/subscriptions/upgrade", json={"tier": "platinum"}, headers={"X-Session-Token": session["token"]}
    )
    assert response.status_code == 422


def test_declined_payment(monkeypatch):
    import entitlements

    class DecliningProcessor:
        async def charge(self, user, tier, payment_method):
            return False

    monkeypatch.setattr(entitlements, "SimulatedPaymentProcessor", DecliningProcessor)
    session = _register()

    response = client.post(
        "/subscriptions/upgrade", json={"tier": "monthly"}, headers={"X-Session-Token": session["token"]}
    )
    assert response.status_code == 402
    assert response.json()["detail"]["error"] == "upgrade_failed"


def test_login_logout_flow():
    _register("flow@example.com")

    bad = client.post("/auth/login", json={"email": "flow@example.com", "password": "nope"})
    assert bad.status_code == 401

    good = client.post("/auth/login", json={"email": "FLOW@example.com", "password": "secret"})
    assert good.status_code == 200
    token = good.json()["token"]
    assert client.get("/me", headers={"X-Session-Token": token}).json()["email"] == "flow@example.com"

    assert client.post("/auth/logout", headers={"X-Session-Token": token}).status_code == 200
    assert client.get("/me", headers={"X-Session-Token": token}).status_code == 401
    # After logout the caller is anonymous again.
    response = client.get("/entitlements", headers={"X-Session-Token": token, "X-Device-Id": "d1"})
    assert response.json()["post_limit"] == 2


def test_duplicate_registration():
    _register("dup@example.com")
    response = client.post(
        "/auth/register", json={"username": "again", "email": "dup@example.com", "password": "secret"}
    )
    assert response.status_code == 409


def test_social_sign_in():
    response = client.post(
        "/auth/social",
        json={"id": "g-42", "provider": "google", "email": "g42@example.com", "name": "Gee"},
    )
    assert response.status_code == 200
    assert response.json()["user"]["auth_provider"] == "google"


def test_profile_update():
    session = _register()
    headers = {"X-Session-Token": session["token"]}

    response = client.patch("/me", json={"username": "renamed"}, headers=headers)
    assert response.status_code == 200
    assert response.json()["username"] == "renamed"

    _register("other@example.com")
    assert client.patch("/me", json={"email": "other@example.com"}, headers=headers).status_code == 409


def test_device_initialization_and_welcome():
    device_id = client.post("/devices", json={"platform": "ios", "model": "iPhone"}).json()["device_id"]
    assert device_id.startswith("iosiPhone-")

    again = client.post("/devices", json={"platform": "ios", "model": "iPhone", "device_id": device_id})
    assert again.json()["device_id"] == device_id

    assert client.get(f"/devices/{device_id}/welcome").json()["has_seen_welcome"] is False
    client.put(f"/devices/{device_id}/welcome", json={"seen": True})
    assert client.get(f"/devices/{device_id}/welcome").json()["has_seen_welcome"] is True
