"""Storage layer for users, sessions, devices, anonymous posts and reports.

Defaults to in-memory dicts, but will use Redis if configured (Upstash-friendly).
Every mutation is written through before the call returns.
"""

import json
import logging
import os
from datetime import datetime
from threading import Lock
from typing import Any, Dict, Iterable, List, Optional

import requests

from models import AnonymousPost, Report, Session, User

try:
    import redis  # type: ignore
except ImportError:
    redis = None

logger = logging.getLogger(__name__)


def _dt_to_iso(dt: datetime) -> str:
    return dt.isoformat()


def _iso_to_dt(value: str) -> datetime:
    return datetime.fromisoformat(value)


def _strip_quotes(value: Optional[str]) -> Optional[str]:
    """Strip surrounding quotes from environment variable values."""
    if value is None:
        return None
    # Strip single or double quotes from both ends
    return value.strip('"').strip("'")


# ---------- Redis (standard) client helpers ----------


def _redis_client_from_env():
    """Return a redis-py client if REDIS_URL/UPSTASH_REDIS_URL is set."""
    url = _strip_quotes(os.getenv("REDIS_URL") or os.getenv("UPSTASH_REDIS_URL"))
    if not url or not redis:
        return None
    return redis.from_url(url, decode_responses=True)


# ---------- Upstash REST client (fallback when redis-py URL not provided) ----------


class UpstashRESTClient:
    """Minimal Upstash REST wrapper for the commands we need."""

    def __init__(self, base_url: str, token: str):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.session = requests.Session()

    def _cmd(self, *args: str):
        resp = self.session.post(
            self.base_url,
            headers={"Authorization": f"Bearer {self.token}"},
            json=list(args),
            timeout=10,
        )
        resp.raise_for_status()
        data = resp.json()
        return data.get("result")

    def ping(self) -> bool:
        return self._cmd("PING") == "PONG"

    def set(self, key: str, value: str):
        """
        Set a string value for a Redis key using the Upstash REST client.

        Returns:
            The raw Redis reply from the SET command (for example, "OK").
        """
        return self._cmd("SET", key, value)

    def set_with_opts(self, key: str, value: str, *options: str):
        """
        Execute SET with additional options (e.g., NX/EX) supported by Upstash REST.
        """
        return self._cmd("SET", key, value, *options)

    def get(self, key: str) -> Optional[str]:
        return self._cmd("GET", key)

    def hset(self, key: str, mapping: Dict[str, Any]):
        # Upstash REST HSET supports: ["HSET", key, field1, value1, field2, value2, ...]
        args = ["HSET", key]
        for field, value in mapping.items():
            args.extend([field, str(value)])
        return self._cmd(*args)

    def hgetall(self, key: str) -> Dict[str, str]:
        # Upstash REST HGETALL returns ["field1", "value1", ...]
        result = self._cmd("HGETALL", key)
        if not result:
            return {}
        return dict(zip(result[0::2], result[1::2]))

    def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        return int(self._cmd("HINCRBY", key, field, str(amount)) or 0)

    def zadd(self, key: str, score: float, member: str):
        return self._cmd("ZADD", key, str(score), member)

    def zrange(self, key: str, start: int, stop: int, rev: bool = False) -> List[str]:
        args = ["ZRANGE", key, str(start), str(stop)]
        if rev:
            args.append("REV")
        result = self._cmd(*args)
        return result or []

    def zcard(self, key: str) -> int:
        return int(self._cmd("ZCARD", key) or 0)

    def zrem(self, key: str, *members: str) -> int:
        return int(self._cmd("ZREM", key, *members) or 0)

    def rpush(self, key: str, *values: str) -> int:
        """
        Append one or more values to the end of a Redis list.

        Returns:
            int: The length of the list after the push.
        """
        if not values:
            return 0
        return int(self._cmd("RPUSH", key, *values) or 0)

    def lrange(self, key: str, start: int, stop: int) -> List[str]:
        result = self._cmd("LRANGE", key, str(start), str(stop))
        return result or []

    def delete(self, *keys: str):
        if not keys:
            return 0
        return self._cmd("DEL", *keys)

    def scan_iter(self, pattern: str, count: int = 100) -> Iterable[str]:
        cursor = "0"
        while True:
            result = self._cmd("SCAN", cursor, "MATCH", pattern, "COUNT", str(count))
            cursor = result[0]
            for key in result[1]:
                yield key
            if cursor == "0":
                break


def _upstash_rest_client_from_env():
    url = _strip_quotes(os.getenv("UPSTASH_REDIS_REST_URL"))
    token = _strip_quotes(os.getenv("UPSTASH_REDIS_REST_TOKEN"))
    if url and token:
        return UpstashRESTClient(url, token)
    return None


# ---------- Store backends ----------


class InMemoryStore:
    def __init__(self):
        """
        Create an in-memory storage backend.

        Attributes:
            users: user ID -> User.
            password_hashes: user ID -> bcrypt hash.
            sessions: session token -> Session.
            devices: device ID -> registration metadata.
            anonymous_posts: device ID -> append-only list of AnonymousPost.
            welcome_seen: device ID -> whether the welcome screen was shown.
            reports: Reports ordered newest first.
            locks: lock key -> owner.
        """
        self.users: Dict[str, User] = {}
        self.password_hashes: Dict[str, str] = {}
        self.sessions: Dict[str, Session] = {}
        self.devices: Dict[str, Dict[str, str]] = {}
        self.anonymous_posts: Dict[str, List[AnonymousPost]] = {}
        self.welcome_seen: Dict[str, bool] = {}
        self.reports: List[Report] = []
        self.locks: Dict[str, str] = {}
        self._locks_guard = Lock()

    def ping(self) -> bool:
        return True

    # Users
    def add_user(self, user: User) -> User:
        self.users[user.id] = user
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        return self.users.get(str(user_id))

    def get_user_by_email(self, email: str) -> Optional[User]:
        """
        Find a user by email, ignoring case.

        Returns:
            User or None: The matching user, or None when no account uses the email.
        """
        wanted = email.lower()
        for user in self.users.values():
            if user.email.lower() == wanted:
                return user
        return None

    def get_user_by_provider(self, provider: str, provider_user_id: str) -> Optional[User]:
        for user in self.users.values():
            if user.auth_provider == provider and user.provider_user_id == provider_user_id:
                return user
        return None

    def update_user(self, user_id: str, **updates) -> User:
        """
        Update fields of a stored user and return the updated object.

        Raises:
            KeyError: If the user does not exist.
        """
        existing = self.users.get(str(user_id))
        if not existing:
            raise KeyError(f"User {user_id} not found")
        updated = existing.model_copy(update=updates)
        self.users[updated.id] = updated
        return updated

    def set_password_hash(self, user_id: str, password_hash: str) -> None:
        self.password_hashes[str(user_id)] = password_hash

    def get_password_hash(self, user_id: str) -> Optional[str]:
        return self.password_hashes.get(str(user_id))

    def clear_users(self):
        self.users.clear()
        self.password_hashes.clear()
        self.sessions.clear()

    # Sessions
    def add_session(self, session: Session, ttl_seconds: int = 0) -> Session:
        """
        Store a session. The in-memory store ignores `ttl_seconds`; sessions live
        until deleted.
        """
        self.sessions[session.token] = session
        return session

    def get_session(self, token: str) -> Optional[Session]:
        return self.sessions.get(token)

    def delete_session(self, token: str) -> bool:
        return self.sessions.pop(token, None) is not None

    # Devices
    def add_device(self, device_id: str, platform: str, created_at: datetime) -> None:
        self.devices[device_id] = {"platform": platform, "created_at": _dt_to_iso(created_at)}

    def device_exists(self, device_id: str) -> bool:
        return device_id in self.devices

    def append_anonymous_post(self, device_id: str, post: AnonymousPost) -> AnonymousPost:
        self.anonymous_posts.setdefault(device_id, []).append(post)
        return post

    def get_anonymous_posts(self, device_id: str) -> List[AnonymousPost]:
        """
        Return the device's anonymous post history, oldest first.

        Returns a copy; callers cannot mutate stored history.
        """
        return list(self.anonymous_posts.get(device_id, []))

    def set_has_seen_welcome(self, device_id: str, seen: bool) -> None:
        self.welcome_seen[device_id] = seen

    def get_has_seen_welcome(self, device_id: str) -> bool:
        return self.welcome_seen.get(device_id, False)

    def clear_devices(self):
        self.devices.clear()
        self.anonymous_posts.clear()
        self.welcome_seen.clear()

    # Reports
    def add_report(self, report: Report) -> Report:
        self.reports.insert(0, report)
        return report

    def get_report(self, report_id: str) -> Optional[Report]:
        for report in self.reports:
            if report.id == report_id:
                return report
        return None

    def get_all_reports(self) -> List[Report]:
        return list(self.reports)

    def count_reports(self) -> int:
        return len(self.reports)

    def update_report(self, report_id: str, **updates) -> Report:
        for index, report in enumerate(self.reports):
            if report.id == report_id:
                updated = report.model_copy(update=updates)
                self.reports[index] = updated
                return updated
        raise KeyError(f"Report {report_id} not found")

    def delete_report(self, report_id: str) -> bool:
        before = len(self.reports)
        self.reports = [r for r in self.reports if r.id != report_id]
        return len(self.reports) < before

    def increment_report_upvotes(self, report_id: str) -> Optional[Report]:
        """
        Add one upvote to a report.

        Returns:
            Report or None: The updated report, or None when the id is unknown.
        """
        with self._locks_guard:
            report = self.get_report(report_id)
            if not report:
                return None
            return self.update_report(report_id, upvotes=report.upvotes + 1)

    def clear_reports(self):
        self.reports.clear()

    # Locks
    def acquire_lock(self, key: str, owner: str, ttl_seconds: int = 10) -> bool:
        """
        Acquire a named lock for `owner`.

        The in-memory implementation does not enforce TTL; the lock remains until
        released via `release_lock`.
        """
        with self._locks_guard:
            if self.locks.get(key):
                return False
            self.locks[key] = owner
            return True

    def release_lock(self, key: str, owner: str):
        with self._locks_guard:
            if self.locks.get(key) == owner:
                self.locks.pop(key, None)

    def clear_locks(self):
        with self._locks_guard:
            self.locks.clear()


class RedisStore:
    """Redis-backed implementation (works with Upstash REST or redis-py)."""

    def __init__(self):
        client = _redis_client_from_env()
        self.mode = "redis" if client else "rest"
        if client:
            self.client = client
        else:
            rest_client = _upstash_rest_client_from_env()
            if not rest_client:
                raise RuntimeError("RedisStore requires REDIS_URL/UPSTASH_REDIS_URL or UPSTASH_REDIS_REST_URL/_TOKEN")
            self.client = rest_client

    # Key helpers
    @staticmethod
    def _user_key(user_id: str) -> str:
        return f"user:{user_id}"

    @staticmethod
    def _user_email_key(email: str) -> str:
        return f"user:email:{email.lower()}"

    @staticmethod
    def _user_provider_key(provider: str, provider_user_id: str) -> str:
        return f"user:provider:{provider}:{provider_user_id}"

    @staticmethod
    def _user_password_key(user_id: str) -> str:
        return f"user:{user_id}:password"

    @staticmethod
    def _session_key(token: str) -> str:
        return f"session:{token}"

    @staticmethod
    def _device_key(device_id: str) -> str:
        return f"device:{device_id}"

    @staticmethod
    def _device_posts_key(device_id: str) -> str:
        """
        Build the key of the device's append-only anonymous post list.

        Returns:
            str: Redis key in the form "device:<device_id>:anonymous_posts".
        """
        return f"device:{device_id}:anonymous_posts"

    @staticmethod
    def _device_welcome_key(device_id: str) -> str:
        return f"device:{device_id}:welcome"

    @staticmethod
    def _report_key(report_id: str) -> str:
        return f"report:{report_id}"

    @staticmethod
    def _reports_created_key() -> str:
        return "reports:created"

    @staticmethod
    def _lock_key(key: str) -> str:
        return f"lock:{key}"

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except Exception as exc:
            logger.warning("Redis ping failed: %s", exc)
            return False

    # --- users ---
    @staticmethod
    def _user_to_hash(user: User) -> Dict[str, str]:
        payload = user.model_dump(mode="json")
        payload["subscription"] = json.dumps(payload["subscription"])
        return {k: str(v) for k, v in payload.items() if v is not None}

    @staticmethod
    def _user_from_hash(data: Dict[str, str]) -> Optional[User]:
        if not data:
            return None
        data = dict(data)
        data["subscription"] = json.loads(data["subscription"])
        return User.model_validate(data)

    def add_user(self, user: User) -> User:
        self._hset(self._user_key(user.id), self._user_to_hash(user))
        self._set(self._user_email_key(user.email), user.id)
        if user.auth_provider and user.provider_user_id:
            self._set(self._user_provider_key(user.auth_provider, user.provider_user_id), user.id)
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        return self._user_from_hash(self._hgetall(self._user_key(user_id)))

    def get_user_by_email(self, email: str) -> Optional[User]:
        user_id = self._get(self._user_email_key(email))
        return self.get_user(user_id) if user_id else None

    def get_user_by_provider(self, provider: str, provider_user_id: str) -> Optional[User]:
        user_id = self._get(self._user_provider_key(provider, provider_user_id))
        return self.get_user(user_id) if user_id else None

    def update_user(self, user_id: str, **updates) -> User:
        """
        Update fields of a stored user and return the updated object.

        Raises:
            KeyError: If the user does not exist.
        """
        existing = self.get_user(user_id)
        if not existing:
            raise KeyError(f"User {user_id} not found")
        updated = existing.model_copy(update=updates)
        if updated.email.lower() != existing.email.lower():
            self._delete(self._user_email_key(existing.email))
        # Re-validate so nested models round-trip through model_dump.
        updated = User.model_validate(updated.model_dump())
        return self.add_user(updated)

    def set_password_hash(self, user_id: str, password_hash: str) -> None:
        self._set(self._user_password_key(user_id), password_hash)

    def get_password_hash(self, user_id: str) -> Optional[str]:
        return self._get(self._user_password_key(user_id))

    def clear_users(self):
        keys = list(self._scan_iter("user:*")) + list(self._scan_iter("session:*"))
        self._delete(*keys)

    # --- sessions ---
    def add_session(self, session: Session, ttl_seconds: int = 0) -> Session:
        key = self._session_key(session.token)
        value = session.model_dump_json()
        if ttl_seconds > 0:
            if self.mode == "redis":
                self.client.set(key, value, ex=ttl_seconds)
            else:
                self.client.set_with_opts(key, value, "EX", str(ttl_seconds))
        else:
            self._set(key, value)
        return session

    def get_session(self, token: str) -> Optional[Session]:
        raw = self._get(self._session_key(token))
        if not raw:
            return None
        return Session.model_validate_json(raw)

    def delete_session(self, token: str) -> bool:
        key = self._session_key(token)
        existed = self._get(key) is not None
        self._delete(key)
        return existed

    # --- devices ---
    def add_device(self, device_id: str, platform: str, created_at: datetime) -> None:
        self._hset(self._device_key(device_id), {"platform": platform, "created_at": _dt_to_iso(created_at)})

    def device_exists(self, device_id: str) -> bool:
        return bool(self._hgetall(self._device_key(device_id)))

    def append_anonymous_post(self, device_id: str, post: AnonymousPost) -> AnonymousPost:
        self.client.rpush(self._device_posts_key(device_id), post.model_dump_json())
        return post

    def get_anonymous_posts(self, device_id: str) -> List[AnonymousPost]:
        raw_items = self.client.lrange(self._device_posts_key(device_id), 0, -1)
        posts: List[AnonymousPost] = []
        for raw in raw_items:
            try:
                posts.append(AnonymousPost.model_validate_json(raw))
            except ValueError as exc:
                logger.warning("Skipping malformed anonymous post for device %s: %s", device_id, exc)
        return posts

    def set_has_seen_welcome(self, device_id: str, seen: bool) -> None:
        self._set(self._device_welcome_key(device_id), "1" if seen else "0")

    def get_has_seen_welcome(self, device_id: str) -> bool:
        return self._get(self._device_welcome_key(device_id)) == "1"

    def clear_devices(self):
        self._delete(*list(self._scan_iter("device:*")))

    # --- reports ---
    @staticmethod
    def _report_to_hash(report: Report) -> Dict[str, str]:
        payload = report.model_dump(mode="json")
        payload["media"] = json.dumps(payload["media"])
        payload["verified"] = "1" if report.verified else "0"
        return {k: str(v) for k, v in payload.items() if v is not None}

    @staticmethod
    def _report_from_hash(data: Dict[str, str]) -> Optional[Report]:
        if not data:
            return None
        data = dict(data)
        data["media"] = json.loads(data.get("media") or "[]")
        data["verified"] = data.get("verified") == "1"
        return Report.model_validate(data)

    def add_report(self, report: Report) -> Report:
        self._hset(self._report_key(report.id), self._report_to_hash(report))
        self._zadd(self._reports_created_key(), report.timestamp.timestamp(), report.id)
        return report

    def get_report(self, report_id: str) -> Optional[Report]:
        return self._report_from_hash(self._hgetall(self._report_key(report_id)))

    def get_all_reports(self) -> List[Report]:
        ids = self._zrange(self._reports_created_key(), 0, -1, rev=True)  # Newest first
        reports: List[Report] = []
        for report_id in ids:
            report = self.get_report(report_id)
            if report:
                reports.append(report)
        return reports

    def count_reports(self) -> int:
        return int(self.client.zcard(self._reports_created_key()) or 0)

    def update_report(self, report_id: str, **updates) -> Report:
        existing = self.get_report(report_id)
        if not existing:
            raise KeyError(f"Report {report_id} not found")
        updated = Report.model_validate(existing.model_copy(update=updates).model_dump())
        self._hset(self._report_key(report_id), self._report_to_hash(updated))
        return updated

    def delete_report(self, report_id: str) -> bool:
        key = self._report_key(report_id)
        existed = bool(self._hgetall(key))
        self._delete(key)
        self.client.zrem(self._reports_created_key(), report_id)
        return existed

    def increment_report_upvotes(self, report_id: str) -> Optional[Report]:
        key = self._report_key(report_id)
        if not self._hgetall(key):
            return None
        self.client.hincrby(key, "upvotes", 1)
        return self.get_report(report_id)

    def clear_reports(self):
        keys = list(self._scan_iter("report:*"))
        self._delete(*keys, self._reports_created_key())

    # --- locks ---
    def acquire_lock(self, key: str, owner: str, ttl_seconds: int = 10) -> bool:
        """
        Acquire a named lock by atomically setting a lock key with `owner` as value.

        Returns:
            `True` if the lock was acquired, `False` otherwise.
        """
        lock_key = self._lock_key(key)
        if self.mode == "redis":
            return bool(self.client.set(lock_key, owner, nx=True, ex=ttl_seconds))
        try:
            result = self.client.set_with_opts(lock_key, owner, "NX", "EX", str(ttl_seconds))
        except Exception as exc:
            logger.warning("Failed to acquire lock %s: %s", key, exc)
            return False
        return bool(result)

    def release_lock(self, key: str, owner: str):
        """
        Release a named lock if it is held by `owner`.
        """
        lock_key = self._lock_key(key)
        if self.mode == "redis":
            lua_script = """
            if redis.call('get', KEYS[1]) == ARGV[1] then
                return redis.call('del', KEYS[1])
            else
                return 0
            end
            """
            try:
                self.client.eval(lua_script, 1, lock_key, owner)
            except Exception as exc:
                logger.warning("Failed to release lock %s: %s", key, exc)
            return

        if self._get(lock_key) == owner:
            self._delete(lock_key)

    def clear_locks(self):
        self._delete(*list(self._scan_iter("lock:*")))

    # --- client wrappers ---
    def _set(self, key: str, value: str):
        self.client.set(key, value)

    def _get(self, key: str) -> Optional[str]:
        return self.client.get(key)

    def _zadd(self, key: str, score: float, member: str):
        if self.mode == "redis":
            self.client.zadd(key, {member: score})
        else:
            self.client.zadd(key, score, member)

    def _zrange(self, key: str, start: int, stop: int, rev: bool = False) -> List[str]:
        if self.mode == "redis":
            return self.client.zrange(key, start, stop, desc=rev)
        return self.client.zrange(key, start, stop, rev=rev)

    def _delete(self, *keys: str):
        if not keys:
            return
        self.client.delete(*keys)

    def _scan_iter(self, pattern: str) -> Iterable[str]:
        yield from self.client.scan_iter(pattern)

    def _hset(self, key: str, mapping: Dict[str, Any]):
        if self.mode == "redis":
            self.client.hset(key, mapping=mapping)
        else:
            self.client.hset(key, mapping)

    def _hgetall(self, key: str) -> Dict[str, str]:
        return self.client.hgetall(key)


# ---------- Store selector ----------


def _select_store():
    try:
        if os.getenv("REDIS_URL") or os.getenv("UPSTASH_REDIS_URL") or os.getenv("UPSTASH_REDIS_REST_URL"):
            return RedisStore()
    except Exception as exc:  # fall back for local dev if misconfigured
        logger.warning("RedisStore unavailable, falling back to in-memory. Reason: %s", exc)
    return InMemoryStore()


_STORE = _select_store()


def get_store():
    """Return the active storage backend."""
    return _STORE


# Public API (delegates to current store)
def ping() -> bool:
    return _STORE.ping()


def clear_users():
    """Remove all users, credentials and sessions (dev reset and tests)."""
    _STORE.clear_users()


def clear_devices():
    _STORE.clear_devices()


def clear_reports():
    _STORE.clear_reports()


def clear_locks():
    _STORE.clear_locks()
