from __future__ import annotations

import functools
import json
import uuid
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

import redis.asyncio as aioredis
from cryptography.fernet import Fernet
from redis.exceptions import RedisError, WatchError

from communityhub.logging import get_logger
from communityhub.service.errors import StoreUnavailableError
from communityhub.storage.errors import ConstraintViolation
from communityhub.storage.memory import derive_cipher_key
from communityhub.storage.models import (
    PendingTwoFactorChallenge,
    Session,
    TwoFactorEnrollment,
    TwoFactorEvent,
    User,
    utcnow,
)

logger = get_logger(__name__)

T = TypeVar("T")

_SESSION_DATETIME_FIELDS = ("created_at", "last_activity", "expires_at", "revoked_at")
_PENDING_CHALLENGE_TTL_SECONDS = 15 * 60
_EVENT_HISTORY_LIMIT = 200
_SESSION_UPDATE_ATTEMPTS = 5


def _store_operation(operation: str):
    """Translate backend failures into ``StoreUnavailableError``."""

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            try:
                return await func(*args, **kwargs)
            except RedisError as exc:
                logger.error("store_operation_failed", operation=operation, error=str(exc))
                raise StoreUnavailableError(operation, exc) from exc

        return wrapper

    return decorator


def _dump_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _load_datetime(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    parsed = datetime.fromisoformat(raw)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class RedisStore:
    """Session and two-factor store on ``redis.asyncio``.

    Keys:
      ``session:{id}``            JSON session, expires with the session
      ``user_sessions:{user}``    set of session ids owned by the user
      ``sessions:expiry``         sorted set of session ids scored by expiry
      ``2fa:{user}``              JSON enrollment without backup codes
      ``2fa_backup:{user}``       set of backup code digests
      ``2fa_pending:{session}``   JSON pending challenge
      ``2fa_events:{user}``       capped list of audit events

    Set removals (SREM/ZREM) report whether this caller removed the member,
    which gives revoke-once and consume-once semantics without Lua.
    """

    # Default operation timeout for Redis commands
    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        redis_url: str,
        *,
        two_factor_encryption_key: str,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Any = None,
    ) -> None:
        self.redis_url = redis_url
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._cipher = Fernet(derive_cipher_key(two_factor_encryption_key))

    @staticmethod
    def _ttl_seconds(expires_at: datetime, now: Optional[datetime] = None) -> int:
        """Clamp to at least 1 second; Redis rejects zero or negative TTLs."""
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        now = now or utcnow()
        return max(1, int((expires_at - now).total_seconds()))

    @staticmethod
    def _session_to_json(session: Session) -> str:
        payload = asdict(session)
        for name in _SESSION_DATETIME_FIELDS:
            payload[name] = _dump_datetime(payload[name])
        return json.dumps(payload)

    @staticmethod
    def _session_from_json(raw: str) -> Session:
        payload = json.loads(raw)
        for name in _SESSION_DATETIME_FIELDS:
            payload[name] = _load_datetime(payload.get(name))
        return Session(**payload)

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except RedisError:
            return False

    async def close(self) -> None:
        await self.client.aclose()

    # users
    @_store_operation("create_user")
    async def create_user(
        self, email: str, handle: Optional[str] = None, *, role: str = "user"
    ) -> User:
        user = User(id=str(uuid.uuid4()), email=email, handle=handle, role=role)
        claimed = await self.client.set(f"user_email:{email}", user.id, nx=True)
        if not claimed:
            raise ConstraintViolation("email already exists", {"field": "email"})
        await self.client.set(
            f"user:{user.id}",
            json.dumps({
                "id": user.id,
                "email": user.email,
                "handle": user.handle,
                "role": user.role,
                "created_at": _dump_datetime(user.created_at),
            }),
        )
        return user

    @_store_operation("get_user")
    async def get_user(self, user_id: str) -> Optional[User]:
        raw = await self.client.get(f"user:{user_id}")
        if not raw:
            return None
        payload = json.loads(raw)
        return User(
            id=payload["id"],
            email=payload["email"],
            handle=payload.get("handle"),
            role=payload.get("role", "user"),
            created_at=_load_datetime(payload.get("created_at")) or utcnow(),
        )

    # sessions
    @_store_operation("create_session")
    async def create_session(self, session: Session) -> Session:
        if not await self.client.exists(f"user:{session.user_id}"):
            raise ConstraintViolation("user does not exist", {"user_id": session.user_id})
        pipe = self.client.pipeline()
        pipe.set(
            f"session:{session.id}",
            self._session_to_json(session),
            ex=self._ttl_seconds(session.expires_at),
        )
        pipe.sadd(f"user_sessions:{session.user_id}", session.id)
        pipe.zadd("sessions:expiry", {session.id: session.expires_at.timestamp()})
        await pipe.execute()
        return session

    @_store_operation("get_session")
    async def get_session(self, session_id: str) -> Optional[Session]:
        raw = await self.client.get(f"session:{session_id}")
        return self._session_from_json(raw) if raw else None

    async def _update_session(
        self, session_id: str, mutate: Callable[[Session], Optional[int]]
    ) -> Optional[Session]:
        """Read-modify-write one session document under WATCH.

        ``mutate`` edits the session in place and returns a new TTL in seconds,
        or None to keep the current one. A concurrent write to the key aborts
        the transaction and the update is replayed on fresh data.
        """
        key = f"session:{session_id}"
        for attempt in range(_SESSION_UPDATE_ATTEMPTS):
            async with self.client.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(key)
                    raw = await pipe.get(key)
                    if not raw:
                        return None
                    session = self._session_from_json(raw)
                    ttl = mutate(session)
                    pipe.multi()
                    # xx: never resurrect a session revoked in between
                    if ttl is None:
                        pipe.set(key, self._session_to_json(session), keepttl=True, xx=True)
                    else:
                        pipe.set(key, self._session_to_json(session), ex=ttl, xx=True)
                        pipe.zadd(
                            "sessions:expiry", {session_id: session.expires_at.timestamp()}, xx=True
                        )
                    results = await pipe.execute()
                    return session if results[0] else None
                except WatchError:
                    logger.debug("session_update_conflict", session_id=session_id, attempt=attempt + 1)
        raise WatchError(f"session {session_id} kept changing during update")

    @_store_operation("touch_session")
    async def touch_session(
        self, session_id: str, last_activity: datetime, expires_at: datetime
    ) -> Optional[Session]:
        def bump(session: Session) -> int:
            session.last_activity = last_activity
            session.expires_at = expires_at
            return self._ttl_seconds(expires_at, last_activity)

        return await self._update_session(session_id, bump)

    @_store_operation("mark_session_verified")
    async def mark_session_verified(self, session_id: str) -> bool:
        def verify(session: Session) -> None:
            session.two_factor_verified = True

        return await self._update_session(session_id, verify) is not None

    @_store_operation("list_sessions")
    async def list_sessions(self, user_id: str) -> List[Session]:
        index_key = f"user_sessions:{user_id}"
        session_ids = sorted(await self.client.smembers(index_key))
        if not session_ids:
            return []
        raws = await self.client.mget([f"session:{sid}" for sid in session_ids])
        sessions: List[Session] = []
        missing: List[str] = []
        for sid, raw in zip(session_ids, raws):
            if raw:
                sessions.append(self._session_from_json(raw))
            else:
                missing.append(sid)
        if missing:
            # Keys that expired on their own leave stale index members behind
            await self.client.srem(index_key, *missing)
        sessions.sort(key=lambda sess: sess.last_activity, reverse=True)
        return sessions

    async def _remove_session(self, session_id: str, user_id: str) -> bool:
        removed = await self.client.srem(f"user_sessions:{user_id}", session_id)
        pipe = self.client.pipeline()
        pipe.delete(f"session:{session_id}")
        pipe.delete(f"2fa_pending:{session_id}")
        pipe.zrem("sessions:expiry", session_id)
        await pipe.execute()
        return bool(removed)

    @_store_operation("revoke_session")
    async def revoke_session(
        self, session_id: str, *, user_id: Optional[str] = None, now: Optional[datetime] = None
    ) -> bool:
        raw = await self.client.get(f"session:{session_id}")
        if not raw:
            return False
        session = self._session_from_json(raw)
        if user_id is not None and session.user_id != user_id:
            return False
        return await self._remove_session(session_id, session.user_id)

    @_store_operation("revoke_other_sessions")
    async def revoke_other_sessions(
        self, user_id: str, keep_session_id: str, *, now: Optional[datetime] = None
    ) -> int:
        session_ids = await self.client.smembers(f"user_sessions:{user_id}")
        revoked = 0
        for sid in session_ids:
            if sid == keep_session_id:
                continue
            if await self._remove_session(sid, user_id):
                revoked += 1
        return revoked

    @_store_operation("delete_expired_sessions")
    async def delete_expired_sessions(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        expired_ids = await self.client.zrangebyscore("sessions:expiry", "-inf", now.timestamp())
        removed = 0
        for sid in expired_ids:
            raw = await self.client.get(f"session:{sid}")
            if raw:
                owner = self._session_from_json(raw).user_id
                await self.client.srem(f"user_sessions:{owner}", sid)
            pipe = self.client.pipeline()
            pipe.delete(f"session:{sid}")
            pipe.delete(f"2fa_pending:{sid}")
            pipe.zrem("sessions:expiry", sid)
            _, _, dropped = await pipe.execute()
            # Concurrent sweepers each count a session at most once
            removed += int(dropped)
        return removed

    # two-factor enrollment
    def _encrypt_secret(self, secret: str) -> str:
        return self._cipher.encrypt(secret.encode()).decode()

    def _decrypt_secret(self, secret: str) -> str:
        return self._cipher.decrypt(secret.encode()).decode()

    @_store_operation("save_enrollment")
    async def save_enrollment(self, enrollment: TwoFactorEnrollment) -> None:
        payload = {
            "user_id": enrollment.user_id,
            "secret": self._encrypt_secret(enrollment.secret),
            "enabled": enrollment.enabled,
            "created_at": _dump_datetime(enrollment.created_at),
            "enabled_at": _dump_datetime(enrollment.enabled_at),
            "last_used_at": _dump_datetime(enrollment.last_used_at),
        }
        backup_key = f"2fa_backup:{enrollment.user_id}"
        pipe = self.client.pipeline()
        pipe.set(f"2fa:{enrollment.user_id}", json.dumps(payload))
        pipe.delete(backup_key)
        if enrollment.backup_code_hashes:
            pipe.sadd(backup_key, *enrollment.backup_code_hashes)
        await pipe.execute()

    @_store_operation("get_enrollment")
    async def get_enrollment(self, user_id: str) -> Optional[TwoFactorEnrollment]:
        raw = await self.client.get(f"2fa:{user_id}")
        if not raw:
            return None
        payload = json.loads(raw)
        hashes = await self.client.smembers(f"2fa_backup:{user_id}")
        return TwoFactorEnrollment(
            user_id=payload["user_id"],
            secret=self._decrypt_secret(payload["secret"]),
            enabled=bool(payload.get("enabled")),
            backup_code_hashes=sorted(hashes),
            created_at=_load_datetime(payload.get("created_at")) or utcnow(),
            enabled_at=_load_datetime(payload.get("enabled_at")),
            last_used_at=_load_datetime(payload.get("last_used_at")),
        )

    @_store_operation("replace_backup_codes")
    async def replace_backup_codes(self, user_id: str, code_hashes: List[str]) -> bool:
        if not await self.client.exists(f"2fa:{user_id}"):
            return False
        backup_key = f"2fa_backup:{user_id}"
        pipe = self.client.pipeline()
        pipe.delete(backup_key)
        if code_hashes:
            pipe.sadd(backup_key, *code_hashes)
        await pipe.execute()
        return True

    @_store_operation("consume_backup_code")
    async def consume_backup_code(self, user_id: str, code_hash: str) -> bool:
        return bool(await self.client.srem(f"2fa_backup:{user_id}", code_hash))

    @_store_operation("delete_enrollment")
    async def delete_enrollment(self, user_id: str) -> None:
        await self.client.delete(f"2fa:{user_id}", f"2fa_backup:{user_id}")

    # pending challenges
    @_store_operation("save_pending_challenge")
    async def save_pending_challenge(self, challenge: PendingTwoFactorChallenge) -> None:
        payload = {
            "session_id": challenge.session_id,
            "user_id": challenge.user_id,
            "secret": self._encrypt_secret(challenge.secret),
            "backup_code_hashes": list(challenge.backup_code_hashes),
            "status": challenge.status,
            "created_at": _dump_datetime(challenge.created_at),
        }
        await self.client.set(
            f"2fa_pending:{challenge.session_id}",
            json.dumps(payload),
            ex=_PENDING_CHALLENGE_TTL_SECONDS,
        )

    @_store_operation("get_pending_challenge")
    async def get_pending_challenge(
        self, session_id: str
    ) -> Optional[PendingTwoFactorChallenge]:
        raw = await self.client.get(f"2fa_pending:{session_id}")
        if not raw:
            return None
        payload = json.loads(raw)
        return PendingTwoFactorChallenge(
            session_id=payload["session_id"],
            user_id=payload["user_id"],
            secret=self._decrypt_secret(payload["secret"]),
            backup_code_hashes=list(payload.get("backup_code_hashes") or []),
            status=payload.get("status", "unverified"),
            created_at=_load_datetime(payload.get("created_at")) or utcnow(),
        )

    @_store_operation("promote_pending_challenge")
    async def promote_pending_challenge(self, session_id: str) -> bool:
        # A marker key claimed with NX makes promotion happen once
        claimed = await self.client.set(
            f"2fa_pending_promoted:{session_id}", "1", nx=True, ex=_PENDING_CHALLENGE_TTL_SECONDS
        )
        if not claimed:
            return False
        raw = await self.client.get(f"2fa_pending:{session_id}")
        if not raw:
            await self.client.delete(f"2fa_pending_promoted:{session_id}")
            return False
        payload = json.loads(raw)
        payload["status"] = "verified"
        await self.client.set(f"2fa_pending:{session_id}", json.dumps(payload), keepttl=True)
        return True

    @_store_operation("delete_pending_challenge")
    async def delete_pending_challenge(self, session_id: str) -> None:
        await self.client.delete(
            f"2fa_pending:{session_id}", f"2fa_pending_promoted:{session_id}"
        )

    # audit
    @_store_operation("record_two_factor_event")
    async def record_two_factor_event(self, event: TwoFactorEvent) -> None:
        payload: Dict[str, Any] = asdict(event)
        payload["created_at"] = _dump_datetime(event.created_at)
        key = f"2fa_events:{event.user_id}"
        pipe = self.client.pipeline()
        pipe.lpush(key, json.dumps(payload))
        pipe.ltrim(key, 0, _EVENT_HISTORY_LIMIT - 1)
        await pipe.execute()

    @_store_operation("list_two_factor_events")
    async def list_two_factor_events(self, user_id: str, limit: int = 50) -> List[TwoFactorEvent]:
        raws = await self.client.lrange(f"2fa_events:{user_id}", 0, limit - 1)
        events = []
        for raw in raws:
            payload = json.loads(raw)
            payload["created_at"] = _load_datetime(payload.get("created_at")) or utcnow()
            events.append(TwoFactorEvent(**payload))
        return events
