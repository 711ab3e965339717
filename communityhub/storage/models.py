from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    handle: Optional[str] = None
    role: str = "user"
    created_at: datetime = field(default_factory=utcnow)
    is_active: bool = True
    meta: Dict | None = None


@dataclass
class Session:
    """One authenticated device or browser context.

    ``two_factor_verified`` is scoped to the session: it is only ever set,
    never cleared, so a new login is the only way back to unverified.
    """

    id: str
    user_id: str
    created_at: datetime
    last_activity: datetime
    expires_at: datetime
    two_factor_verified: bool = False
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    device_info: Optional[str] = None
    revoked_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        ttl_minutes: int = 60 * 24 * 30,
        user_agent: str | None = None,
        ip_address: str | None = None,
        *,
        device_info: str | None = None,
        now: datetime | None = None,
    ) -> "Session":
        now = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            created_at=now,
            last_activity=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            user_agent=user_agent,
            ip_address=ip_address,
            device_info=device_info,
        )

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.expires_at <= (now or utcnow())

    def is_active(self, now: datetime | None = None) -> bool:
        return not self.is_revoked and not self.is_expired(now)


@dataclass
class TwoFactorEnrollment:
    """Per-user TOTP enrollment; ``secret`` is plaintext only outside the store."""

    user_id: str
    secret: str
    enabled: bool = False
    backup_code_hashes: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    enabled_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None


@dataclass
class PendingTwoFactorChallenge:
    session_id: str
    user_id: str
    secret: str
    backup_code_hashes: List[str] = field(default_factory=list)
    status: str = "unverified"
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_verified(self) -> bool:
        return self.status == "verified"


@dataclass
class TwoFactorEvent:
    id: str
    user_id: str
    action: str
    success: bool
    method: Optional[str] = None
    session_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
