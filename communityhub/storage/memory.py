from __future__ import annotations

import base64
import hashlib
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional

from cryptography.fernet import Fernet, InvalidToken

from communityhub.logging import get_logger
from communityhub.storage.errors import ConstraintViolation
from communityhub.storage.models import (
    PendingTwoFactorChallenge,
    Session,
    TwoFactorEnrollment,
    TwoFactorEvent,
    User,
    utcnow,
)


def derive_cipher_key(key_material: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())


class MemoryStore:
    """In-process session and two-factor store.

    Methods are coroutines so callers can swap in ``RedisStore`` without
    changes; every mutation happens under one re-entrant lock, which makes
    revocation and backup-code consumption check-and-set operations.
    """

    def __init__(self, *, two_factor_encryption_key: str) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.enrollments: Dict[str, TwoFactorEnrollment] = {}
        self.pending_challenges: Dict[str, PendingTwoFactorChallenge] = {}
        self.two_factor_events: Dict[str, List[TwoFactorEvent]] = {}
        # RLock for all data operations to ensure thread safety
        self._data_lock = threading.RLock()
        self._cipher = Fernet(derive_cipher_key(two_factor_encryption_key))

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None

    # users
    async def create_user(
        self, email: str, handle: Optional[str] = None, *, role: str = "user"
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(id=str(uuid.uuid4()), email=email, handle=handle, role=role)
            self.users[user.id] = user
            return user

    async def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    # sessions
    async def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation(
                    "user does not exist", {"user_id": session.user_id}
                )
            self.sessions[session.id] = replace(session)
            return replace(session)

    async def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    async def touch_session(
        self, session_id: str, last_activity: datetime, expires_at: datetime
    ) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or sess.is_revoked:
                return None
            sess.last_activity = last_activity
            sess.expires_at = expires_at
            return replace(sess)

    async def mark_session_verified(self, session_id: str) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or sess.is_revoked:
                return False
            sess.two_factor_verified = True
            return True

    async def list_sessions(self, user_id: str) -> List[Session]:
        with self._data_lock:
            owned = [
                replace(sess)
                for sess in self.sessions.values()
                if sess.user_id == user_id and not sess.is_revoked
            ]
        owned.sort(key=lambda sess: sess.last_activity, reverse=True)
        return owned

    async def revoke_session(
        self, session_id: str, *, user_id: Optional[str] = None, now: Optional[datetime] = None
    ) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or sess.is_revoked:
                return False
            if user_id is not None and sess.user_id != user_id:
                return False
            sess.revoked_at = now or utcnow()
            self.pending_challenges.pop(session_id, None)
            return True

    async def revoke_other_sessions(
        self, user_id: str, keep_session_id: str, *, now: Optional[datetime] = None
    ) -> int:
        revoked_at = now or utcnow()
        with self._data_lock:
            revoked = 0
            for sid, sess in self.sessions.items():
                if sid == keep_session_id or sess.user_id != user_id or sess.is_revoked:
                    continue
                sess.revoked_at = revoked_at
                self.pending_challenges.pop(sid, None)
                revoked += 1
            return revoked

    async def delete_expired_sessions(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        with self._data_lock:
            stale = [
                sid
                for sid, sess in self.sessions.items()
                if sess.is_revoked or sess.is_expired(now)
            ]
            for sid in stale:
                self.sessions.pop(sid, None)
                self.pending_challenges.pop(sid, None)
            return len(stale)

    # two-factor enrollment
    def _encrypt_secret(self, secret: str) -> str:
        return self._cipher.encrypt(secret.encode()).decode()

    def _decrypt_secret(self, secret: str) -> str:
        try:
            return self._cipher.decrypt(secret.encode()).decode()
        except InvalidToken:
            self.logger.warning("two_factor_secret_decrypt_failed")
            raise

    async def save_enrollment(self, enrollment: TwoFactorEnrollment) -> None:
        with self._data_lock:
            stored = replace(
                enrollment,
                secret=self._encrypt_secret(enrollment.secret),
                backup_code_hashes=list(enrollment.backup_code_hashes),
            )
            self.enrollments[enrollment.user_id] = stored

    async def get_enrollment(self, user_id: str) -> Optional[TwoFactorEnrollment]:
        with self._data_lock:
            stored = self.enrollments.get(user_id)
            if not stored:
                return None
            return replace(
                stored,
                secret=self._decrypt_secret(stored.secret),
                backup_code_hashes=list(stored.backup_code_hashes),
            )

    async def replace_backup_codes(self, user_id: str, code_hashes: List[str]) -> bool:
        with self._data_lock:
            stored = self.enrollments.get(user_id)
            if not stored:
                return False
            stored.backup_code_hashes = list(code_hashes)
            return True

    async def consume_backup_code(self, user_id: str, code_hash: str) -> bool:
        with self._data_lock:
            stored = self.enrollments.get(user_id)
            if not stored or code_hash not in stored.backup_code_hashes:
                return False
            stored.backup_code_hashes.remove(code_hash)
            stored.last_used_at = utcnow()
            return True

    async def delete_enrollment(self, user_id: str) -> None:
        with self._data_lock:
            self.enrollments.pop(user_id, None)

    # pending challenges, keyed by session id
    async def save_pending_challenge(self, challenge: PendingTwoFactorChallenge) -> None:
        with self._data_lock:
            self.pending_challenges[challenge.session_id] = replace(
                challenge,
                secret=self._encrypt_secret(challenge.secret),
                backup_code_hashes=list(challenge.backup_code_hashes),
            )

    async def get_pending_challenge(
        self, session_id: str
    ) -> Optional[PendingTwoFactorChallenge]:
        with self._data_lock:
            stored = self.pending_challenges.get(session_id)
            if not stored:
                return None
            return replace(
                stored,
                secret=self._decrypt_secret(stored.secret),
                backup_code_hashes=list(stored.backup_code_hashes),
            )

    async def promote_pending_challenge(self, session_id: str) -> bool:
        """Flip a pending challenge to verified exactly once."""
        with self._data_lock:
            stored = self.pending_challenges.get(session_id)
            if not stored or stored.is_verified:
                return False
            stored.status = "verified"
            return True

    async def delete_pending_challenge(self, session_id: str) -> None:
        with self._data_lock:
            self.pending_challenges.pop(session_id, None)

    # audit
    async def record_two_factor_event(self, event: TwoFactorEvent) -> None:
        with self._data_lock:
            self.two_factor_events.setdefault(event.user_id, []).append(event)

    async def list_two_factor_events(self, user_id: str, limit: int = 50) -> List[TwoFactorEvent]:
        with self._data_lock:
            events = list(self.two_factor_events.get(user_id, []))
        return list(reversed(events))[:limit]
