"""Expiring OTP session and resend-cooldown leases.

A lease is acquired with an expiry, read back while live, and either released
explicitly or left to expire. The Mongo store relies on TTL indexes so state
is shared between processes and survives restarts; the in-memory store is for
single-process development and tests.
"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_aware(value: datetime) -> datetime:
    # Motor returns naive UTC datetimes unless tz_aware is set on the client
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class MongoOtpStore:
    def __init__(self, db, clock: Callable[[], datetime] = _utc_now) -> None:
        self.sessions = db.otp_sessions
        self.cooldowns = db.otp_cooldowns
        self._clock = clock

    async def ensure_indexes(self) -> None:
        await self.sessions.create_index("phone", unique=True)
        await self.sessions.create_index("expires_at", expireAfterSeconds=0)
        await self.cooldowns.create_index("phone", unique=True)
        await self.cooldowns.create_index("expires_at", expireAfterSeconds=0)

    async def acquire_session(self, phone: str, session_id: str, ttl_seconds: int, is_test: bool = False) -> None:
        now = self._clock()
        await self.sessions.update_one(
            {"phone": phone},
            {
                "$set": {
                    "session_id": session_id,
                    "is_test": is_test,
                    "attempts": 0,
                    "created_at": now.isoformat(),
                    "expires_at": now + timedelta(seconds=ttl_seconds),
                }
            },
            upsert=True,
        )

    async def get_session(self, phone: str) -> Optional[Dict[str, Any]]:
        # TTL monitor runs once a minute, so expiry is also checked here
        return await self.sessions.find_one(
            {"phone": phone, "expires_at": {"$gt": self._clock()}},
            {"_id": 0},
        )

    async def record_failure(self, phone: str, max_attempts: int) -> int:
        session = await self.sessions.find_one_and_update(
            {"phone": phone, "expires_at": {"$gt": self._clock()}},
            {"$inc": {"attempts": 1}},
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )
        if not session:
            return max_attempts
        attempts = int(session.get("attempts", 0))
        if attempts >= max_attempts:
            await self.release_session(phone)
        return attempts

    async def release_session(self, phone: str) -> None:
        await self.sessions.delete_one({"phone": phone})

    async def acquire_cooldown(self, phone: str, seconds: int) -> bool:
        """Take the resend lease atomically; False while a live lease exists."""
        now = self._clock()
        try:
            await self.cooldowns.update_one(
                {"phone": phone, "expires_at": {"$lte": now}},
                {"$set": {"sent_at": now.isoformat(), "expires_at": now + timedelta(seconds=seconds)}},
                upsert=True,
            )
        except DuplicateKeyError:
            return False
        return True

    async def cooldown_remaining(self, phone: str) -> int:
        lease = await self.cooldowns.find_one({"phone": phone}, {"_id": 0, "expires_at": 1})
        if not lease:
            return 0
        remaining = (_as_aware(lease["expires_at"]) - self._clock()).total_seconds()
        return max(0, int(remaining + 0.999))

    async def release_cooldown(self, phone: str) -> None:
        await self.cooldowns.delete_one({"phone": phone})


class InMemoryOtpStore:
    def __init__(self, clock: Callable[[], datetime] = _utc_now) -> None:
        self._sessions: Dict[str, Dict[str, Any]] = {}
        self._cooldowns: Dict[str, datetime] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    async def ensure_indexes(self) -> None:
        return None

    def _live_session(self, phone: str) -> Optional[Dict[str, Any]]:
        session = self._sessions.get(phone)
        if session and session["expires_at"] <= self._clock():
            self._sessions.pop(phone, None)
            return None
        return session

    async def acquire_session(self, phone: str, session_id: str, ttl_seconds: int, is_test: bool = False) -> None:
        now = self._clock()
        async with self._lock:
            self._sessions[phone] = {
                "phone": phone,
                "session_id": session_id,
                "is_test": is_test,
                "attempts": 0,
                "created_at": now.isoformat(),
                "expires_at": now + timedelta(seconds=ttl_seconds),
            }

    async def get_session(self, phone: str) -> Optional[Dict[str, Any]]:
        async with self._lock:
            session = self._live_session(phone)
            return dict(session) if session else None

    async def record_failure(self, phone: str, max_attempts: int) -> int:
        async with self._lock:
            session = self._live_session(phone)
            if not session:
                return max_attempts
            session["attempts"] += 1
            if session["attempts"] >= max_attempts:
                self._sessions.pop(phone, None)
            return session["attempts"]

    async def release_session(self, phone: str) -> None:
        async with self._lock:
            self._sessions.pop(phone, None)

    async def acquire_cooldown(self, phone: str, seconds: int) -> bool:
        now = self._clock()
        async with self._lock:
            expires_at = self._cooldowns.get(phone)
            if expires_at and expires_at > now:
                return False
            self._cooldowns[phone] = now + timedelta(seconds=seconds)
            return True

    async def cooldown_remaining(self, phone: str) -> int:
        async with self._lock:
            expires_at = self._cooldowns.get(phone)
        if not expires_at:
            return 0
        return max(0, int((expires_at - self._clock()).total_seconds() + 0.999))

    async def release_cooldown(self, phone: str) -> None:
        async with self._lock:
            self._cooldowns.pop(phone, None)


def build_otp_store(backend: str, db):
    if backend == "memory":
        logger.warning("otp_store_memory_backend state_is_process_local=true")
        return InMemoryOtpStore()
    return MongoOtpStore(db)
