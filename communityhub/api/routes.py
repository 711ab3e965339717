from __future__ import annotations

import hmac
import html
import json
from datetime import datetime, timezone
from typing import Optional, Tuple
from urllib.parse import urlsplit

from fastapi import APIRouter, Query, Request
from fastapi.responses import HTMLResponse, Response

from communityhub.api.schemas import (
    BackupCodesResponse,
    CleanupResponse,
    CsrfTokenResponse,
    Envelope,
    HeaderAuditResponse,
    RevokeResponse,
    RevokeSessionRequest,
    SessionInfo,
    SessionListResponse,
    SessionRefreshResponse,
    TwoFactorCodeRequest,
    TwoFactorSetupResponse,
    TwoFactorStatusResponse,
    TwoFactorVerifyResponse,
)
from communityhub.logging import get_logger
from communityhub.service.context import CookieSpec, RequestContext
from communityhub.service.errors import (
    AuthenticationError,
    ForbiddenError,
    NotFoundError,
    SessionExpiredError,
    ValidationError,
)
from communityhub.service.headers import (
    audit_security_headers,
    build_security_headers,
    generate_nonce,
)
from communityhub.service.runtime import get_runtime
from communityhub.storage.models import Session

logger = get_logger(__name__)

router = APIRouter()


def _security_context(request: Request) -> RequestContext:
    ctx = getattr(request.state, "security", None)
    if ctx is None:
        # The pipeline middleware always attaches a context; this only guards misconfiguration
        raise AuthenticationError("authentication required")
    return ctx


def _require_session(request: Request) -> Tuple[RequestContext, Session]:
    ctx = _security_context(request)
    if ctx.session is None:
        raise AuthenticationError("authentication required")
    return ctx, ctx.session


def _safe_redirect(target: Optional[str]) -> str:
    # Same-site absolute paths only. Browsers treat a backslash like "/" and
    # strip tabs and newlines before parsing.
    if not target or not target.startswith("/") or target.startswith("//"):
        return "/"
    if "\\" in target or any(ord(char) < 0x20 or ord(char) == 0x7F for char in target):
        return "/"
    parts = urlsplit(target)
    if parts.scheme or parts.netloc:
        return "/"
    return target


def _session_info(session: Session, current_id: str) -> SessionInfo:
    return SessionInfo(
        id=session.id,
        device_info=session.device_info,
        user_agent=session.user_agent,
        ip_address=session.ip_address,
        created_at=session.created_at,
        last_activity=session.last_activity,
        expires_at=session.expires_at,
        two_factor_verified=session.two_factor_verified,
        current=session.id == current_id,
    )


@router.get("/api/csrf/token", response_model=Envelope, tags=["csrf"])
@router.get("/api/csrf-token", response_model=Envelope, tags=["csrf"])
async def issue_csrf_token(request: Request):
    runtime = get_runtime()
    ctx = _security_context(request)
    token, cookie = runtime.csrf.token_for_client(ctx)
    if cookie is not None:
        ctx.set_cookie(cookie)
    return Envelope(
        status="ok",
        data=CsrfTokenResponse(
            token=token,
            header_name=runtime.config.csrf_header_name,
            expires_in=runtime.config.csrf_max_age_seconds,
        ),
    )


@router.get("/api/auth/sessions", response_model=Envelope, tags=["sessions"])
async def list_sessions(request: Request):
    runtime = get_runtime()
    _, session = _require_session(request)
    sessions = await runtime.sessions.list_sessions(session.user_id)
    return Envelope(
        status="ok",
        data=SessionListResponse(sessions=[_session_info(s, session.id) for s in sessions]),
    )


@router.post("/api/auth/sessions/revoke", response_model=Envelope, tags=["sessions"])
async def revoke_session(body: RevokeSessionRequest, request: Request):
    runtime = get_runtime()
    _, session = _require_session(request)
    if body.session_id == session.id:
        raise ValidationError("use sign-out to end the current session")
    revoked = await runtime.sessions.revoke_session(body.session_id, session.user_id)
    if not revoked:
        raise NotFoundError("session not found", detail={"session_id": body.session_id})
    return Envelope(status="ok", data=RevokeResponse(revoked=1))


@router.post("/api/auth/sessions/revoke-others", response_model=Envelope, tags=["sessions"])
async def revoke_other_sessions(request: Request):
    runtime = get_runtime()
    _, session = _require_session(request)
    revoked = await runtime.sessions.revoke_all_other_sessions(session.id, session.user_id)
    return Envelope(status="ok", data=RevokeResponse(revoked=revoked))


@router.post("/api/auth/sign-out", response_model=Envelope, tags=["sessions"])
async def sign_out(request: Request):
    runtime = get_runtime()
    ctx, session = _require_session(request)
    await runtime.sessions.sign_out(session.id, session.user_id)
    for name in (runtime.config.session_cookie_name, runtime.config.two_factor_cookie_name):
        ctx.set_cookie(CookieSpec(name=name, secure=runtime.config.cookie_secure, delete=True))
    logger.info("session_signed_out", user_id=session.user_id)
    return Envelope(status="ok", data={"signed_out": True})


@router.post("/api/auth/session/refresh", response_model=Envelope, tags=["sessions"])
async def refresh_session(request: Request):
    runtime = get_runtime()
    _, session = _require_session(request)
    refreshed = await runtime.sessions.refresh(session.id, force=True)
    if refreshed is None:
        raise SessionExpiredError("session expired")
    return Envelope(
        status="ok",
        data=SessionRefreshResponse(
            session_id=refreshed.id,
            expires_at=refreshed.expires_at,
            last_activity=refreshed.last_activity,
        ),
    )


@router.post("/api/auth/2fa/setup", response_model=Envelope, tags=["two-factor"])
async def setup_two_factor(request: Request):
    runtime = get_runtime()
    _, session = _require_session(request)
    user = await runtime.store.get_user(session.user_id)
    setup = await runtime.two_factor.setup(
        session.user_id, session.id, user.email if user else None
    )
    return Envelope(
        status="ok",
        data=TwoFactorSetupResponse(
            secret=setup.secret,
            provisioning_uri=setup.provisioning_uri,
            backup_codes=setup.backup_codes,
        ),
    )


@router.post("/api/auth/2fa/enable", response_model=Envelope, tags=["two-factor"])
async def enable_two_factor(body: TwoFactorCodeRequest, request: Request):
    runtime = get_runtime()
    ctx, session = _require_session(request)
    status = await runtime.two_factor.enable(session.user_id, session.id, body.code)
    ctx.set_cookie(runtime.two_factor.marker_cookie(session.user_id, session.id))
    return Envelope(
        status="ok",
        data=TwoFactorStatusResponse(
            enabled=status.enabled,
            has_backup_codes=status.has_backup_codes,
            backup_codes_remaining=status.backup_codes_remaining,
        ),
    )


@router.post("/api/auth/2fa/verify", response_model=Envelope, tags=["two-factor"])
async def verify_two_factor(
    body: TwoFactorCodeRequest,
    request: Request,
    redirect: Optional[str] = Query(None, max_length=2048),
):
    runtime = get_runtime()
    ctx, session = _require_session(request)
    result = await runtime.two_factor.verify(session.user_id, session.id, body.code)
    if not result.success:
        raise ValidationError("invalid verification code", error_code="invalid_code")
    ctx.set_cookie(runtime.two_factor.marker_cookie(session.user_id, session.id))
    return Envelope(
        status="ok",
        data=TwoFactorVerifyResponse(
            verified=True,
            method=result.method,
            backup_codes_remaining=result.backup_codes_remaining,
            redirect=_safe_redirect(redirect),
        ),
    )


@router.get("/api/auth/2fa/status", response_model=Envelope, tags=["two-factor"])
async def two_factor_status(request: Request):
    runtime = get_runtime()
    _, session = _require_session(request)
    status = await runtime.two_factor.status(session.user_id)
    return Envelope(
        status="ok",
        data=TwoFactorStatusResponse(
            enabled=status.enabled,
            has_backup_codes=status.has_backup_codes,
            backup_codes_remaining=status.backup_codes_remaining,
        ),
    )


@router.post("/api/auth/2fa/disable", response_model=Envelope, tags=["two-factor"])
async def disable_two_factor(body: TwoFactorCodeRequest, request: Request):
    runtime = get_runtime()
    ctx, session = _require_session(request)
    revoked = await runtime.two_factor.disable(session.user_id, session.id, body.code)
    ctx.set_cookie(
        CookieSpec(
            name=runtime.config.two_factor_cookie_name,
            secure=runtime.config.cookie_secure,
            delete=True,
        )
    )
    return Envelope(status="ok", data={"enabled": False, "revoked_sessions": revoked})


@router.post("/api/auth/2fa/backup-codes", response_model=Envelope, tags=["two-factor"])
async def regenerate_backup_codes(body: TwoFactorCodeRequest, request: Request):
    runtime = get_runtime()
    _, session = _require_session(request)
    codes = await runtime.two_factor.regenerate_backup_codes(
        session.user_id, session.id, body.code
    )
    return Envelope(status="ok", data=BackupCodesResponse(backup_codes=codes))


async def _run_cleanup(request: Request):
    runtime = get_runtime()
    expected = runtime.settings.cron_secret
    supplied = request.headers.get("authorization", "")
    if not expected or not hmac.compare_digest(supplied, f"Bearer {expected}"):
        raise AuthenticationError("invalid cron credentials")
    removed = await runtime.sessions.cleanup_expired()
    return Envelope(
        status="ok",
        data=CleanupResponse(removed=removed, timestamp=datetime.now(timezone.utc)),
    )


@router.get("/api/cron/cleanup-sessions", response_model=Envelope, tags=["cron"])
async def cleanup_sessions_get(request: Request):
    return await _run_cleanup(request)


@router.post("/api/cron/cleanup-sessions", response_model=Envelope, tags=["cron"])
async def cleanup_sessions_post(request: Request):
    return await _run_cleanup(request)


_CHALLENGE_PAGE = """<!doctype html>
<html lang="en">
<head>
<meta charset="utf-8">
<title>Two-factor verification</title>
</head>
<body>
<main>
<h1>Two-factor verification</h1>
<p>Enter the 6-digit code from your authenticator app, or one of your backup codes.</p>
<form id="two-factor-form" data-redirect="{redirect}" data-header="{header_name}">
<input name="code" autocomplete="one-time-code" maxlength="16" required>
<button type="submit">Verify</button>
</form>
<p id="two-factor-error" role="alert"></p>
</main>
<script nonce="{nonce}">
const form = document.getElementById("two-factor-form");
form.addEventListener("submit", async (event) => {{
  event.preventDefault();
  const target = form.dataset.redirect;
  const tokenResponse = await fetch("/api/csrf/token", {{credentials: "same-origin"}});
  const tokenBody = await tokenResponse.json();
  const response = await fetch("/api/auth/2fa/verify?redirect=" + encodeURIComponent(target), {{
    method: "POST",
    credentials: "same-origin",
    headers: {{"Content-Type": "application/json", [form.dataset.header]: tokenBody.data.token}},
    body: JSON.stringify({{code: form.code.value}}),
  }});
  if (response.ok) {{
    window.location.assign(target);
  }} else {{
    document.getElementById("two-factor-error").textContent = "Invalid code, please try again.";
  }}
}});
</script>
</body>
</html>
"""


@router.get("/auth/2fa-verify", response_class=HTMLResponse, tags=["two-factor"])
async def two_factor_challenge_page(
    request: Request, redirect: Optional[str] = Query(None, max_length=2048)
):
    runtime = get_runtime()
    ctx = _security_context(request)
    body = _CHALLENGE_PAGE.format(
        nonce=html.escape(ctx.nonce or "", quote=True),
        redirect=html.escape(_safe_redirect(redirect), quote=True),
        header_name=html.escape(runtime.config.csrf_header_name, quote=True),
    )
    return HTMLResponse(content=body)


# Violations of these directives point at injected script or hijacked forms
_CRITICAL_CSP_DIRECTIVES = ("script-src", "object-src", "base-uri", "form-action")
# Browser extensions and internal pages trip the policy without any attack
_CSP_FALSE_POSITIVES = (
    "chrome-extension:",
    "moz-extension:",
    "safari-extension:",
    "ms-browser-extension:",
    "about:blank",
    "data:text/html,chromewebdata",
)


@router.post("/api/security/csp-report", status_code=204, tags=["security"])
async def csp_report(request: Request):
    """Receive a browser CSP violation report.

    Browsers post ``application/csp-report`` rather than JSON, so the body is
    decoded by hand instead of through a pydantic model.
    """
    runtime = get_runtime()
    try:
        report = json.loads(await request.body() or b"null")
    except ValueError as exc:
        raise ValidationError("invalid CSP report format") from exc
    violation = report.get("csp-report") if isinstance(report, dict) else None
    if not isinstance(violation, dict):
        logger.warning("csp_report_invalid", reason="missing csp-report field")
        raise ValidationError("invalid CSP report format")

    directive = str(violation.get("violated-directive") or violation.get("effective-directive") or "")
    blocked_uri = str(violation.get("blocked-uri") or "")
    details = {
        "document_uri": violation.get("document-uri"),
        "violated_directive": directive,
        "blocked_uri": blocked_uri,
        "source_file": violation.get("source-file"),
        "line_number": violation.get("line-number"),
        "column_number": violation.get("column-number"),
        "user_agent": request.headers.get("user-agent"),
    }
    if any(pattern in blocked_uri for pattern in _CSP_FALSE_POSITIVES):
        logger.debug("csp_report_ignored", **details)
    elif any(name in directive for name in _CRITICAL_CSP_DIRECTIVES):
        runtime.monitoring.critical("csp_violation", severity="high", **details)
    else:
        runtime.monitoring.record("csp_violation", severity="medium", **details)
    return Response(status_code=204)


@router.get("/api/security/audit", response_model=Envelope, tags=["security"])
async def security_audit(request: Request):
    """Grade the header set this deployment puts on API responses. Admins only."""
    runtime = get_runtime()
    ctx, session = _require_session(request)
    user = await runtime.store.get_user(session.user_id)
    if not user or user.role != "admin":
        raise ForbiddenError("admin access required")
    headers = build_security_headers(
        runtime.config, ctx.nonce or generate_nonce(), path="/api/security/audit"
    )
    audit = audit_security_headers(headers)
    return Envelope(
        status="ok",
        data=HeaderAuditResponse(
            profile=runtime.config.header_profile,
            headers=headers,
            missing=audit.missing,
            recommendations=audit.recommendations,
            score=audit.score,
            is_valid=audit.is_valid,
            timestamp=datetime.now(timezone.utc),
        ),
    )
