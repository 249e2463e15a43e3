"""
Accounts, sessions and device identity.

Resolves who is calling (an anonymous device or a registered user) so the
entitlement engine can be built for them. Login, registration and social
sign-in simulate a network round trip with a short delay.
"""

import asyncio
import logging
import os
import random
import secrets
import string
from datetime import datetime
from typing import Callable, Literal, Optional
from uuid import uuid4

import bcrypt
from pydantic import BaseModel

import store as store_module
from anonymous_posts import utcnow
from mock_data import DEMO_PASSWORD, demo_users
from models import AnonymousIdentity, Identity, RegisteredIdentity, Session, Subscription, User

logger = logging.getLogger(__name__)

AUTH_DELAY_SECONDS = float(os.getenv("AUTH_DELAY_SECONDS", "1.0"))
SESSION_TTL_SECONDS = int(os.getenv("SESSION_TTL_SECONDS", str(30 * 24 * 60 * 60)))

PROFILE_FIELDS = frozenset({"username", "email", "avatar"})

_BASE36 = string.digits + string.ascii_lowercase


class SocialProfile(BaseModel):
    """Profile returned by a provider SDK after the user signed in on the device."""

    id: str
    provider: Literal["google", "apple"]
    email: Optional[str] = None
    name: Optional[str] = None
    picture: Optional[str] = None


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits))


def generate_device_id(platform: str, model: Optional[str] = None, now: Optional[datetime] = None) -> str:
    """Build `<platform><model>-<random>-<timestamp>` with base36 parts."""
    now = now or utcnow()
    random_part = "".join(random.choices(_BASE36, k=13))
    timestamp_part = _to_base36(int(now.timestamp() * 1000))
    return f"{platform}{model or ''}-{random_part}-{timestamp_part}"


async def _simulate_network_delay():
    if AUTH_DELAY_SECONDS > 0:
        await asyncio.sleep(AUTH_DELAY_SECONDS)


class AccountService:
    def __init__(self, store=None, clock: Callable[[], datetime] = utcnow):
        self.store = store if store is not None else store_module.get_store()
        self.clock = clock

    # Devices
    def initialize_device_id(
        self,
        platform: str,
        model: Optional[str] = None,
        device_id: Optional[str] = None,
    ) -> str:
        """
        Return the caller's device id, issuing one if needed.

        A previously issued id is returned unchanged. Storage faults are logged
        and a fresh id is returned without being persisted.
        """
        try:
            if device_id and self.store.device_exists(device_id):
                return device_id
        except Exception:
            logger.exception("Failed to look up device %s", device_id)

        new_id = generate_device_id(platform, model, self.clock())
        try:
            self.store.add_device(new_id, platform, self.clock())
        except Exception:
            logger.exception("Failed to persist device id %s, using in-memory id", new_id)
        return new_id

    def has_seen_welcome(self, device_id: str) -> bool:
        try:
            return self.store.get_has_seen_welcome(device_id)
        except Exception:
            logger.exception("Failed to read welcome flag for device %s", device_id)
            return False

    def set_has_seen_welcome(self, device_id: str, seen: bool) -> None:
        self.store.set_has_seen_welcome(device_id, seen)

    # Sessions
    def _start_session(self, user: User) -> Session:
        session = Session(token=secrets.token_urlsafe(32), user_id=user.id, created_at=self.clock())
        self.store.add_session(session, SESSION_TTL_SECONDS)
        return session

    async def login(self, email: str, password: str) -> Optional[Session]:
        """
        Sign in with email and password.

        Returns:
            Session or None: A new session, or None when the email is unknown or
            the password does not match.
        """
        await _simulate_network_delay()
        user = self.store.get_user_by_email(email)
        if not user:
            return None
        password_hash = self.store.get_password_hash(user.id)
        if not password_hash or not verify_password(password, password_hash):
            logger.info("Failed login for %s", email)
            return None
        return self._start_session(user)

    async def register(self, username: str, email: str, password: str) -> Optional[Session]:
        """
        Create a free-tier account and sign it in.

        Returns:
            Session or None: None when the email is already registered.
        """
        await _simulate_network_delay()
        if self.store.get_user_by_email(email):
            return None
        now = self.clock()
        user = User(
            id=f"user-{uuid4().hex}",
            username=username,
            email=email,
            created_at=now,
            subscription=Subscription(tier="free", start_date=now),
            posts_this_month=0,
            auth_provider="email",
        )
        self.store.add_user(user)
        self.store.set_password_hash(user.id, hash_password(password))
        logger.info("Registered user %s", user.id)
        return self._start_session(user)

    async def sign_in_with_provider(self, profile: SocialProfile) -> Session:
        """
        Sign in with a Google or Apple profile, creating a free account on first use.

        An existing account is matched by provider id first, then by email.
        """
        await _simulate_network_delay()
        user = self.store.get_user_by_provider(profile.provider, profile.id)
        if user is None and profile.email:
            user = self.store.get_user_by_email(profile.email)
        if user is None:
            now = self.clock()
            email = profile.email or f"{profile.id}@{profile.provider}.users.invalid"
            user = User(
                id=f"user-{uuid4().hex}",
                username=(profile.name or email.split("@")[0]).strip(),
                email=email,
                avatar=profile.picture,
                created_at=now,
                subscription=Subscription(tier="free", start_date=now),
                posts_this_month=0,
                auth_provider=profile.provider,
                provider_user_id=profile.id,
            )
            self.store.add_user(user)
            logger.info("Created %s account %s", profile.provider, user.id)
        return self._start_session(user)

    def logout(self, token: str) -> bool:
        return self.store.delete_session(token)

    def get_session_user(self, token: Optional[str]) -> Optional[User]:
        if not token:
            return None
        session = self.store.get_session(token)
        if not session:
            return None
        return self.store.get_user(session.user_id)

    def update_profile(self, user_id: str, updates: dict) -> Optional[User]:
        """
        Apply profile edits (username, email, avatar). Other keys are ignored.

        Returns:
            User or None: The updated user, or None when the user is unknown.

        Raises:
            ValueError: If the new email belongs to another account.
        """
        allowed = {k: v for k, v in updates.items() if k in PROFILE_FIELDS and v is not None}
        if not self.store.get_user(user_id):
            return None
        if "email" in allowed:
            owner = self.store.get_user_by_email(allowed["email"])
            if owner and owner.id != user_id:
                raise ValueError("Email already registered")
        if not allowed:
            return self.store.get_user(user_id)
        return self.store.update_user(user_id, **allowed)

    def resolve_identity(self, session_token: Optional[str], device_id: Optional[str]) -> Optional[Identity]:
        """
        Work out who is calling.

        A valid session wins; otherwise the caller is the anonymous device. Store
        faults while reading the session fall back to the device identity.

        Returns:
            Identity or None: None when there is neither a session nor a device id.
        """
        try:
            user = self.get_session_user(session_token)
        except Exception:
            logger.exception("Failed to resolve session")
            user = None
        if user:
            return RegisteredIdentity(user_id=user.id)
        if device_id:
            return AnonymousIdentity(device_id=device_id)
        return None

    def seed_demo_users(self) -> int:
        """Add the demo accounts unless their emails are already taken."""
        added = 0
        for user in demo_users(self.clock()):
            if self.store.get_user_by_email(user.email):
                continue
            self.store.add_user(user)
            self.store.set_password_hash(user.id, hash_password(DEMO_PASSWORD))
            added += 1
        return added
