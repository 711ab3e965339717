from __future__ import annotations

import re
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from communityhub.config import SecurityConfig
from communityhub.logging import get_logger
from communityhub.service.monitoring import MonitoringSink
from communityhub.storage.models import Session, utcnow

logger = get_logger(__name__)


def parse_device_info(user_agent: Optional[str]) -> str:
    if not user_agent:
        return "Unknown Device"
    if re.search(r"Mobile|Android|iPhone|iPad", user_agent):
        if "iPhone" in user_agent:
            return "iPhone"
        if "iPad" in user_agent:
            return "iPad"
        if "Android" in user_agent:
            return "Android Device"
        return "Mobile Device"
    if "Windows" in user_agent:
        return "Windows Computer"
    if "Mac" in user_agent:
        return "Mac Computer"
    if "Linux" in user_agent:
        return "Linux Computer"
    return "Unknown Device"


class SessionManager:
    """Server half of the session lifecycle.

    All store calls are awaited; ``StoreUnavailableError`` from the store is
    propagated unchanged so the pipeline can decide to fail closed.
    """

    def __init__(
        self,
        store,
        config: SecurityConfig,
        monitoring: MonitoringSink,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.config = config
        self.monitoring = monitoring
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    async def create_session(
        self,
        user_id: str,
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Session:
        """Open a session for a user who has just authenticated.

        The login exchange itself lives elsewhere; this enforces the
        per-user session cap by revoking the least recently active sessions.
        """
        now = self.now()
        active = await self.list_sessions(user_id)
        surplus = len(active) - self.config.max_sessions_per_user + 1
        if surplus > 0:
            for stale in sorted(active, key=lambda sess: sess.last_activity)[:surplus]:
                await self.store.revoke_session(stale.id, user_id=user_id, now=now)
            logger.info("session_cap_enforced", user_id=user_id, revoked=surplus)
        session = Session.new(
            user_id,
            ttl_minutes=self.config.session_ttl_minutes,
            user_agent=user_agent,
            ip_address=ip_address,
            device_info=parse_device_info(user_agent),
            now=now,
        )
        created = await self.store.create_session(session)
        logger.info("session_created", user_id=user_id, device=created.device_info)
        return created

    async def get_active_session(self, session_id: Optional[str]) -> Optional[Session]:
        if not session_id:
            return None
        session = await self.store.get_session(session_id)
        if not session or not session.is_active(self.now()):
            return None
        return session

    async def refresh(self, session_id: Optional[str], *, force: bool = False) -> Optional[Session]:
        """Validate a session and slide its expiry when it has been idle long enough.

        ``force`` slides the expiry regardless of the last bump (explicit
        client extension). Returns None for unknown, revoked or expired
        sessions; expired ones are revoked on the way out.
        """
        if not session_id:
            return None
        now = self.now()
        session = await self.store.get_session(session_id)
        if not session or session.is_revoked:
            return None
        if session.is_expired(now):
            await self.store.revoke_session(session_id, now=now)
            logger.info("session_expired", session_id=session_id, user_id=session.user_id)
            return None
        if not force and now - session.last_activity < timedelta(
            minutes=self.config.session_refresh_after_minutes
        ):
            return session
        refreshed = await self.store.touch_session(
            session_id,
            last_activity=now,
            expires_at=now + timedelta(minutes=self.config.session_ttl_minutes),
        )
        return refreshed

    async def list_sessions(self, user_id: str) -> List[Session]:
        """Active sessions for a user, most recent activity first."""
        now = self.now()
        sessions = await self.store.list_sessions(user_id)
        active = [sess for sess in sessions if sess.is_active(now)]
        active.sort(key=lambda sess: sess.last_activity, reverse=True)
        return active

    async def revoke_session(self, session_id: str, user_id: str) -> bool:
        revoked = await self.store.revoke_session(session_id, user_id=user_id, now=self.now())
        if revoked:
            logger.info("session_revoked", session_id=session_id, user_id=user_id)
        return revoked

    async def revoke_all_other_sessions(self, current_session_id: str, user_id: str) -> int:
        revoked = await self.store.revoke_other_sessions(
            user_id, current_session_id, now=self.now()
        )
        logger.info("session_revoked_others", user_id=user_id, revoked=revoked)
        return revoked

    async def sign_out(self, session_id: str, user_id: str) -> bool:
        await self.store.delete_pending_challenge(session_id)
        return await self.revoke_session(session_id, user_id)

    async def mark_two_factor_verified(self, session_id: str) -> bool:
        return await self.store.mark_session_verified(session_id)

    async def cleanup_expired(self) -> int:
        removed = await self.store.delete_expired_sessions(self.now())
        self.monitoring.record("session_cleanup_completed", removed=removed)
        return removed
