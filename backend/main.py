"""FastAPI application for crowdsourced law-enforcement sighting reports.

This module provides HTTP endpoints for:
- Device identity and the welcome flag
- Email, Google and Apple sign-in sessions
- Posting entitlements and subscription upgrades
- The report feed (list, detail, create, upvote) and viewer map state
"""

import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

from dotenv import load_dotenv

# Load .env.local from project root (one level up from backend/)
env_path = Path(__file__).parent.parent / ".env.local"
load_dotenv(env_path)

from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

# Configure logging
log_level = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, log_level, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

from accounts import AccountService, SocialProfile  # noqa: E402
from entitlements import EntitlementEngine  # noqa: E402
from limits import is_unlimited  # noqa: E402
from mock_data import AGENCIES  # noqa: E402
from models import (  # noqa: E402
    AnonymousIdentity,
    Coordinates,
    EntitlementSnapshot,
    Identity,
    ReportCreate,
    SubscriptionTier,
    User,
)
from reports import DEFAULT_LIST_LIMIT, SEED_MOCK_REPORTS, ReportService, new_report_id  # noqa: E402
from store import ping  # noqa: E402
import view_state  # noqa: E402


def seed_mock_data() -> dict:
    """
    Seed demo accounts and mock reports into an empty store for local testing.

    Returns:
        dict: Counts of added users and reports.
    """
    users_added = AccountService().seed_demo_users()
    reports_added = ReportService().seed_mock_reports()
    return {"users_added": users_added, "reports_added": reports_added}


@asynccontextmanager
async def lifespan(app: FastAPI):
    if SEED_MOCK_REPORTS:
        try:
            logger.info("Seeded mock data: %s", seed_mock_data())
        except Exception:
            logger.exception("Failed to seed mock data")
    yield


app = FastAPI(
    title="Sightline Reports API",
    description="API for crowdsourced sighting reports with tiered posting quotas",
    version="0.1.0",
    lifespan=lifespan,
)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Log all unhandled exceptions with full details."""
    logger.exception(f"Unhandled exception for {request.method} {request.url}: {exc}")
    raise


# Configure CORS for the mobile/web client
cors_origins = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:8081,http://localhost:19006").split(",")
    if origin.strip()
]
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------- Request / response bodies ----------


class DeviceRequest(BaseModel):
    platform: str
    model: Optional[str] = None
    device_id: Optional[str] = None


class WelcomeUpdate(BaseModel):
    seen: bool


class LoginRequest(BaseModel):
    email: str
    password: str = Field(min_length=1, max_length=72)


class RegisterRequest(BaseModel):
    username: str = Field(min_length=1)
    email: str = Field(min_length=3)
    password: str = Field(min_length=1, max_length=72)


class ProfileUpdate(BaseModel):
    username: Optional[str] = None
    email: Optional[str] = None
    avatar: Optional[str] = None


class UpgradeRequest(BaseModel):
    tier: SubscriptionTier
    payment_method: Optional[str] = None


class SelectionUpdate(BaseModel):
    report_id: Optional[str] = None


class LocationUpdate(BaseModel):
    location: Optional[Coordinates] = None


def _entitlement_payload(snapshot: EntitlementSnapshot) -> dict:
    """
    Render an entitlement snapshot for JSON.

    Unlimited values become null with `unlimited: true`; remaining posts are
    clamped at zero for display.
    """
    unlimited = is_unlimited(snapshot.post_limit) or is_unlimited(snapshot.remaining_posts)
    return {
        "remaining_posts": None if unlimited else int(snapshot.display_remaining),
        "post_limit": None if unlimited else int(snapshot.post_limit),
        "can_post": snapshot.can_post,
        "unlimited": unlimited,
    }


def _session_payload(session, user: User) -> dict:
    return {"token": session.token, "user": user.model_dump(mode="json")}


def _require_identity(session_token: Optional[str], device_id: Optional[str]) -> Identity:
    """
    Resolve the caller from headers.

    Raises:
        HTTPException: With status code 400 if there is neither a session nor a device id.
    """
    identity = AccountService().resolve_identity(session_token, device_id)
    if identity is None:
        raise HTTPException(status_code=400, detail="X-Device-Id or X-Session-Token header is required")
    return identity


def _require_user(session_token: Optional[str]) -> User:
    user = AccountService().get_session_user(session_token)
    if not user:
        raise HTTPException(status_code=401, detail="Authentication required")
    return user


def _require_viewer(session_token: Optional[str], device_id: Optional[str]) -> str:
    identity = _require_identity(session_token, device_id)
    if isinstance(identity, AnonymousIdentity):
        return identity.device_id
    return identity.user_id


# ---------- Status ----------


@app.get("/")
def read_root():
    return {"status": "ok", "service": "sightline-reports"}


@app.get("/health")
def health_check():
    """
    Report service and storage connectivity status for health monitoring.

    Raises:
        HTTPException: With a 503 status when the storage check fails.
    """
    try:
        environment = os.getenv("ENVIRONMENT", "development")
        store_healthy = ping()
        return {
            "status": "healthy",
            "service": "sightline-reports",
            "environment": environment,
            "storage": "connected" if store_healthy else "disconnected",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
    except Exception as e:
        logger.error("Health check failed: %s", e)
        raise HTTPException(
            status_code=503,
            detail={
                "status": "unhealthy",
                "service": "sightline-reports",
                "error": str(e),
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        )


# ---------- Devices ----------


@app.post("/devices")
def initialize_device(payload: DeviceRequest):
    device_id = AccountService().initialize_device_id(payload.platform, payload.model, payload.device_id)
    return {"device_id": device_id}


@app.get("/devices/{device_id}/welcome")
def get_welcome(device_id: str):
    return {"device_id": device_id, "has_seen_welcome": AccountService().has_seen_welcome(device_id)}


@app.put("/devices/{device_id}/welcome")
def set_welcome(device_id: str, payload: WelcomeUpdate):
    AccountService().set_has_seen_welcome(device_id, payload.seen)
    return {"device_id": device_id, "has_seen_welcome": payload.seen}


# ---------- Auth ----------


@app.post("/auth/login")
async def login(payload: LoginRequest):
    service = AccountService()
    session = await service.login(payload.email, payload.password)
    if not session:
        raise HTTPException(status_code=401, detail="Invalid email or password")
    return _session_payload(session, service.store.get_user(session.user_id))


@app.post("/auth/register", status_code=201)
async def register(payload: RegisterRequest):
    service = AccountService()
    session = await service.register(payload.username, payload.email, payload.password)
    if not session:
        raise HTTPException(status_code=409, detail="Email already registered")
    return _session_payload(session, service.store.get_user(session.user_id))


@app.post("/auth/social")
async def social_sign_in(payload: SocialProfile):
    service = AccountService()
    session = await service.sign_in_with_provider(payload)
    return _session_payload(session, service.store.get_user(session.user_id))


@app.post("/auth/logout")
def logout(x_session_token: Optional[str] = Header(None)):
    if not x_session_token:
        raise HTTPException(status_code=401, detail="Authentication required")
    AccountService().logout(x_session_token)
    return {"success": True}


@app.get("/me")
def get_me(x_session_token: Optional[str] = Header(None)):
    return _require_user(x_session_token).model_dump(mode="json")


@app.patch("/me")
def update_me(payload: ProfileUpdate, x_session_token: Optional[str] = Header(None)):
    user = _require_user(x_session_token)
    try:
        updated = AccountService().update_profile(user.id, payload.model_dump(exclude_unset=True))
    except ValueError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    if not updated:
        raise HTTPException(status_code=404, detail="User not found")
    return updated.model_dump(mode="json")


# ---------- Entitlements ----------


@app.get("/entitlements")
def get_entitlements(
    x_session_token: Optional[str] = Header(None),
    x_device_id: Optional[str] = Header(None),
):
    identity = _require_identity(x_session_token, x_device_id)
    return _entitlement_payload(EntitlementEngine(identity).snapshot())


@app.post("/subscriptions/upgrade")
async def upgrade_subscription(
    payload: UpgradeRequest,
    x_session_token: Optional[str] = Header(None),
    x_device_id: Optional[str] = Header(None),
):
    """
    Upgrade the signed-in user's subscription.

    Raises:
        HTTPException(401): If the caller is not signed in.
        HTTPException(402): If the payment was declined or the upgrade failed.
    """
    identity = _require_identity(x_session_token, x_device_id)
    if isinstance(identity, AnonymousIdentity):
        raise HTTPException(status_code=401, detail="Sign in to upgrade your subscription")

    engine = EntitlementEngine(identity)
    if not await engine.upgrade_subscription(payload.tier, payload.payment_method):
        raise HTTPException(
            status_code=402,
            detail={"error": "upgrade_failed", "message": "Subscription upgrade failed, please try again"},
        )
    user = engine.store.get_user(identity.user_id)
    return {
        "success": True,
        "subscription": user.subscription.model_dump(mode="json"),
        "entitlements": _entitlement_payload(engine.snapshot()),
    }


# ---------- Reports ----------


@app.get("/agencies")
def list_agencies():
    return {"agencies": [agency.model_dump() for agency in AGENCIES]}


@app.get("/reports")
def list_reports(
    latitude: Optional[float] = Query(None),
    longitude: Optional[float] = Query(None),
    radius: Optional[float] = Query(None, gt=0),
    limit: int = Query(DEFAULT_LIST_LIMIT, ge=1, le=200),
):
    reports, total = ReportService().list_reports(latitude, longitude, radius, limit)
    return {"reports": [r.model_dump(mode="json") for r in reports], "total": total}


@app.get("/reports/{report_id}")
def get_report_detail(report_id: str):
    report = ReportService().get_report(report_id)
    if not report:
        raise HTTPException(status_code=404, detail="Report not found")
    return {"report": report.model_dump(mode="json")}


@app.post("/reports", status_code=201)
def create_report(
    payload: ReportCreate,
    x_session_token: Optional[str] = Header(None),
    x_device_id: Optional[str] = Header(None),
):
    """
    Submit a report after checking and consuming the caller's posting quota.

    The report is stored while the quota lock is held and the post is counted
    only once it exists; a report whose use cannot be recorded is removed again.

    Raises:
        HTTPException(429): If the caller has no posts left.
        HTTPException(503): If the post could not be recorded right now.
    """
    identity = _require_identity(x_session_token, x_device_id)
    engine = EntitlementEngine(identity)
    service = ReportService()
    report_id = new_report_id()

    if not isinstance(identity, AnonymousIdentity):
        user = engine.store.get_user(identity.user_id)
        if user:
            payload = payload.model_copy(update={"user_id": user.id, "username": user.username})

    created = {}

    def publish():
        created["report"] = service.add_report(payload, report_id=report_id)

    if not engine.try_consume_post(report_id, publish=publish, unpublish=lambda: service.delete_report(report_id)):
        snapshot = engine.snapshot()
        if snapshot.can_post:
            raise HTTPException(
                status_code=503,
                detail={"error": "post_not_recorded", "message": "Could not submit the report, please try again"},
            )
        raise HTTPException(
            status_code=429,
            detail={
                "error": "quota_exceeded",
                "message": "No posts left for this period. Sign in or upgrade to keep posting.",
                "entitlements": _entitlement_payload(snapshot),
            },
        )

    return {
        "success": True,
        "report": created["report"].model_dump(mode="json"),
        "entitlements": _entitlement_payload(engine.snapshot()),
    }


@app.post("/reports/{report_id}/upvote")
def upvote_report(report_id: str):
    report = ReportService().upvote_report(report_id)
    if not report:
        raise HTTPException(status_code=404, detail="Report not found")
    return {"success": True, "report_id": report_id, "new_upvote_count": report.upvotes}


# ---------- Viewer map state ----------


@app.get("/view")
def get_view(
    x_session_token: Optional[str] = Header(None),
    x_device_id: Optional[str] = Header(None),
):
    viewer_id = _require_viewer(x_session_token, x_device_id)
    return view_state.get_view_state(viewer_id).model_dump()


@app.put("/view/selection")
def select_report(
    payload: SelectionUpdate,
    x_session_token: Optional[str] = Header(None),
    x_device_id: Optional[str] = Header(None),
):
    viewer_id = _require_viewer(x_session_token, x_device_id)
    return ReportService().select_report(viewer_id, payload.report_id).model_dump()


@app.put("/view/location")
def set_user_location(
    payload: LocationUpdate,
    x_session_token: Optional[str] = Header(None),
    x_device_id: Optional[str] = Header(None),
):
    viewer_id = _require_viewer(x_session_token, x_device_id)
    return ReportService().set_user_location(viewer_id, payload.location).model_dump()


@app.put("/view/region")
def set_map_region(
    payload: Coordinates,
    x_session_token: Optional[str] = Header(None),
    x_device_id: Optional[str] = Header(None),
):
    viewer_id = _require_viewer(x_session_token, x_device_id)
    return ReportService().set_map_region(viewer_id, payload).model_dump()


@app.post("/admin/seed")
def seed_data():
    return seed_mock_data()
