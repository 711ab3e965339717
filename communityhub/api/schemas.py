from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from communityhub.logging import get_correlation_id

# Stable error codes exposed to clients
_VALID_ERROR_CODES = {
    "validation_error",
    "unauthorized",
    "forbidden",
    "csrf_missing",
    "csrf_invalid",
    "csrf_mismatch",
    "not_found",
    "conflict",
    "session_expired",
    "server_error",
    "store_unavailable",
    "invalid_code",
    "two_factor_not_enabled",
}


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable machine-readable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope format shared by every JSON response."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


class CsrfTokenResponse(BaseModel):
    token: str
    header_name: str
    expires_in: int


class SessionInfo(BaseModel):
    id: str
    device_info: Optional[str] = None
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    created_at: datetime
    last_activity: datetime
    expires_at: datetime
    two_factor_verified: bool = False
    current: bool = False


class SessionListResponse(BaseModel):
    sessions: List[SessionInfo] = Field(default_factory=list)


class RevokeSessionRequest(BaseModel):
    session_id: str = Field(..., min_length=1, max_length=128)


class RevokeResponse(BaseModel):
    revoked: int


class SessionRefreshResponse(BaseModel):
    session_id: str
    expires_at: datetime
    last_activity: datetime


class TwoFactorCodeRequest(BaseModel):
    code: str = Field(..., min_length=6, max_length=16)

    @field_validator("code")
    @classmethod
    def _strip(cls, value: str) -> str:
        return value.strip()


class TwoFactorSetupResponse(BaseModel):
    secret: str
    provisioning_uri: str
    backup_codes: List[str]


class TwoFactorStatusResponse(BaseModel):
    enabled: bool
    has_backup_codes: bool
    backup_codes_remaining: int


class TwoFactorVerifyResponse(BaseModel):
    verified: bool
    method: Optional[str] = None
    backup_codes_remaining: Optional[int] = None
    redirect: Optional[str] = None


class BackupCodesResponse(BaseModel):
    backup_codes: List[str]


class CleanupResponse(BaseModel):
    removed: int
    timestamp: datetime


class HeaderAuditResponse(BaseModel):
    profile: str
    headers: Dict[str, str] = Field(default_factory=dict)
    missing: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)
    score: int
    is_valid: bool
    timestamp: datetime
