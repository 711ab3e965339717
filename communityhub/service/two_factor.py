from __future__ import annotations

import hashlib
import hmac
import re
import secrets
import time
import uuid
from dataclasses import dataclass, field
from typing import Callable, List, Optional
from urllib.parse import quote

import pyotp

from communityhub.config import SecurityConfig
from communityhub.logging import get_logger
from communityhub.service.context import CookieSpec
from communityhub.service.errors import ConflictError, NotFoundError, ValidationError
from communityhub.service.routing import RouteTable
from communityhub.service.sessions import SessionManager
from communityhub.storage.models import (
    PendingTwoFactorChallenge,
    Session,
    TwoFactorEnrollment,
    TwoFactorEvent,
    utcnow,
)

logger = get_logger(__name__)

MARKER_COOKIE_MAX_AGE = 24 * 60 * 60
_TOTP_PATTERN = re.compile(r"^\d{6}$")
_BACKUP_PATTERN = re.compile(r"^[0-9A-F]{8}$")


def normalize_code(code: str) -> str:
    return re.sub(r"[\s-]", "", code or "").upper()


def hash_backup_code(code: str) -> str:
    return hashlib.sha256(normalize_code(code).encode("utf-8")).hexdigest()


def generate_backup_codes(count: int) -> List[str]:
    return [secrets.token_hex(4).upper() for _ in range(count)]


@dataclass
class TwoFactorSetup:
    secret: str
    provisioning_uri: str
    backup_codes: List[str] = field(default_factory=list)


@dataclass
class TwoFactorStatus:
    enabled: bool
    has_backup_codes: bool
    backup_codes_remaining: int


@dataclass
class VerificationResult:
    success: bool
    method: Optional[str] = None
    backup_codes_remaining: Optional[int] = None


@dataclass(frozen=True)
class TwoFactorCheck:
    required: bool
    verified: bool
    redirect_target: Optional[str] = None


class TwoFactorService:
    """TOTP enrollment and step-up verification.

    Setup creates a pending challenge bound to the calling session; a valid
    TOTP code promotes it into the user's enabled enrollment. After that,
    ``verify`` accepts a TOTP code or a backup code. Backup codes are stored
    as SHA-256 digests and consumed through the store's atomic remove.
    """

    def __init__(
        self,
        store,
        sessions: SessionManager,
        config: SecurityConfig,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.config = config
        self._clock = clock
        self._marker_key = (config.two_factor_secret_key or "").encode("utf-8") or config.signing_key

    def _verify_totp(self, secret: str, code: str) -> bool:
        code = normalize_code(code)
        if not _TOTP_PATTERN.match(code):
            return False
        totp = pyotp.TOTP(secret)
        return totp.verify(
            code, for_time=int(self._clock()), valid_window=self.config.totp_valid_window
        )

    async def _record(
        self,
        user_id: str,
        action: str,
        success: bool,
        *,
        method: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> None:
        await self.store.record_two_factor_event(
            TwoFactorEvent(
                id=str(uuid.uuid4()),
                user_id=user_id,
                action=action,
                success=success,
                method=method,
                session_id=session_id,
            )
        )
        log = logger.info if success else logger.warning
        log(f"two_factor_{action}", user_id=user_id, success=success, method=method)

    async def setup(
        self, user_id: str, session_id: str, account_name: Optional[str] = None
    ) -> TwoFactorSetup:
        existing = await self.store.get_enrollment(user_id)
        if existing and existing.enabled:
            raise ConflictError("two-factor authentication is already enabled")
        secret = pyotp.random_base32()
        backup_codes = generate_backup_codes(self.config.backup_code_count)
        hashes = [hash_backup_code(code) for code in backup_codes]
        uri = pyotp.TOTP(secret).provisioning_uri(
            name=account_name or user_id, issuer_name=self.config.totp_issuer
        )
        await self.store.save_pending_challenge(
            PendingTwoFactorChallenge(
                session_id=session_id,
                user_id=user_id,
                secret=secret,
                backup_code_hashes=hashes,
            )
        )
        await self.store.save_enrollment(
            TwoFactorEnrollment(user_id=user_id, secret=secret, backup_code_hashes=hashes)
        )
        await self._record(user_id, "setup", True, session_id=session_id)
        return TwoFactorSetup(secret=secret, provisioning_uri=uri, backup_codes=backup_codes)

    async def enable(self, user_id: str, session_id: str, code: str) -> TwoFactorStatus:
        challenge = await self.store.get_pending_challenge(session_id)
        if not challenge or challenge.user_id != user_id:
            raise NotFoundError("no pending two-factor setup for this session")
        if challenge.is_verified:
            raise ConflictError("two-factor setup already completed")
        if not self._verify_totp(challenge.secret, code):
            await self._record(user_id, "enable", False, method="totp", session_id=session_id)
            raise ValidationError("invalid verification code", error_code="invalid_code")
        if not await self.store.promote_pending_challenge(session_id):
            raise ConflictError("two-factor setup already completed")
        now = utcnow()
        await self.store.save_enrollment(
            TwoFactorEnrollment(
                user_id=user_id,
                secret=challenge.secret,
                enabled=True,
                backup_code_hashes=list(challenge.backup_code_hashes),
                enabled_at=now,
                last_used_at=now,
            )
        )
        await self.sessions.mark_two_factor_verified(session_id)
        await self._record(user_id, "enable", True, method="totp", session_id=session_id)
        return await self.status(user_id)

    async def _check_code(self, enrollment: TwoFactorEnrollment, code: str) -> Optional[str]:
        if self._verify_totp(enrollment.secret, code):
            return "totp"
        normalized = normalize_code(code)
        if _BACKUP_PATTERN.match(normalized) and await self.store.consume_backup_code(
            enrollment.user_id, hash_backup_code(normalized)
        ):
            return "backup_code"
        return None

    async def _require_enabled(self, user_id: str) -> TwoFactorEnrollment:
        enrollment = await self.store.get_enrollment(user_id)
        if not enrollment or not enrollment.enabled:
            raise ValidationError(
                "two-factor authentication is not enabled", error_code="two_factor_not_enabled"
            )
        return enrollment

    async def verify(self, user_id: str, session_id: str, code: str) -> VerificationResult:
        """Step-up check for an existing enrollment; failures are retryable."""
        enrollment = await self._require_enabled(user_id)
        method = await self._check_code(enrollment, code)
        if method is None:
            await self._record(user_id, "verify", False, session_id=session_id)
            return VerificationResult(success=False)
        await self.sessions.mark_two_factor_verified(session_id)
        await self._record(user_id, "verify", True, method=method, session_id=session_id)
        remaining = None
        if method == "backup_code":
            refreshed = await self.store.get_enrollment(user_id)
            remaining = len(refreshed.backup_code_hashes) if refreshed else 0
        return VerificationResult(success=True, method=method, backup_codes_remaining=remaining)

    async def status(self, user_id: str) -> TwoFactorStatus:
        enrollment = await self.store.get_enrollment(user_id)
        if not enrollment or not enrollment.enabled:
            return TwoFactorStatus(enabled=False, has_backup_codes=False, backup_codes_remaining=0)
        remaining = len(enrollment.backup_code_hashes)
        return TwoFactorStatus(
            enabled=True, has_backup_codes=remaining > 0, backup_codes_remaining=remaining
        )

    async def disable(self, user_id: str, session_id: str, code: str) -> int:
        """Turn 2FA off; returns how many other sessions were signed out."""
        enrollment = await self._require_enabled(user_id)
        method = await self._check_code(enrollment, code)
        if method is None:
            await self._record(user_id, "disable", False, session_id=session_id)
            raise ValidationError("invalid verification code", error_code="invalid_code")
        await self.store.delete_enrollment(user_id)
        await self.store.delete_pending_challenge(session_id)
        revoked = await self.sessions.revoke_all_other_sessions(session_id, user_id)
        await self._record(user_id, "disable", True, method=method, session_id=session_id)
        return revoked

    async def regenerate_backup_codes(self, user_id: str, session_id: str, code: str) -> List[str]:
        enrollment = await self._require_enabled(user_id)
        if not self._verify_totp(enrollment.secret, code):
            await self._record(user_id, "regenerate_backup_codes", False, session_id=session_id)
            raise ValidationError("invalid verification code", error_code="invalid_code")
        codes = generate_backup_codes(self.config.backup_code_count)
        await self.store.replace_backup_codes(user_id, [hash_backup_code(c) for c in codes])
        await self._record(
            user_id, "regenerate_backup_codes", True, method="totp", session_id=session_id
        )
        return codes

    def marker_value(self, user_id: str, session_id: str) -> str:
        digest = hmac.new(
            self._marker_key, f"2fa:{user_id}:{session_id}".encode("utf-8"), hashlib.sha256
        ).hexdigest()
        return f"{session_id}.{digest[:32]}"

    def marker_cookie(self, user_id: str, session_id: str) -> CookieSpec:
        return CookieSpec(
            name=self.config.two_factor_cookie_name,
            value=self.marker_value(user_id, session_id),
            max_age=MARKER_COOKIE_MAX_AGE,
            httponly=True,
            secure=self.config.cookie_secure,
            samesite="lax",
        )

    def verify_marker(self, value: Optional[str], user_id: str, session_id: str) -> bool:
        if not value:
            return False
        return hmac.compare_digest(value, self.marker_value(user_id, session_id))


class TwoFactorGate:
    """Decides whether a session must step up before reaching a route."""

    def __init__(self, store, routes: RouteTable, config: SecurityConfig) -> None:
        self.store = store
        self.routes = routes
        self.config = config

    def requires_step_up(self, path: str) -> bool:
        return self.routes.requires_step_up(path)

    def redirect_target(self, original: str) -> str:
        return f"{self.config.two_factor_challenge_path}?redirect={quote(original, safe='/')}"

    async def check_requirement(self, session: Session, original: str = "/") -> TwoFactorCheck:
        enrollment = await self.store.get_enrollment(session.user_id)
        if not enrollment or not enrollment.enabled:
            return TwoFactorCheck(required=False, verified=True)
        if session.two_factor_verified:
            return TwoFactorCheck(required=True, verified=True)
        return TwoFactorCheck(
            required=True, verified=False, redirect_target=self.redirect_target(original)
        )
