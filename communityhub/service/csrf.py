from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from communityhub.config import SecurityConfig
from communityhub.logging import get_logger
from communityhub.service.context import CookieSpec, RequestContext
from communityhub.service.routing import RouteTable
from communityhub.service.tokens import TokenCodec

logger = get_logger(__name__)

SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "TRACE"})

ALLOW = "allow"
REJECT = "reject"
ALLOW_WITH_COOKIE = "allow_with_cookie"


@dataclass(frozen=True)
class CsrfDecision:
    kind: str
    reason: Optional[str] = None
    cookie: Optional[CookieSpec] = None

    @property
    def allowed(self) -> bool:
        return self.kind != REJECT


class CsrfGuard:
    """Double-submit CSRF protection on top of ``TokenCodec``.

    Safe requests are never blocked; they only get a fresh cookie when the
    current one is missing or no longer verifies. Unsafe requests need a
    header (or form) token and a cookie token that both verify.
    """

    def __init__(self, codec: TokenCodec, config: SecurityConfig, routes: RouteTable) -> None:
        self.codec = codec
        self.config = config
        self.routes = routes

    def build_cookie(self, token: str) -> CookieSpec:
        return CookieSpec(
            name=self.config.csrf_cookie_name,
            value=token,
            max_age=self.config.csrf_max_age_seconds,
            httponly=False,
            secure=self.config.cookie_secure,
            samesite=self.config.csrf_same_site,
        )

    def _supplied_token(self, ctx: RequestContext) -> Optional[str]:
        return ctx.header(self.config.csrf_header_name) or ctx.form_token or None

    def protect(self, ctx: RequestContext) -> CsrfDecision:
        if self.routes.is_exempt(ctx.path):
            return CsrfDecision(ALLOW)

        cookie_token = ctx.cookies.get(self.config.csrf_cookie_name)
        cookie_valid = bool(cookie_token) and self.codec.verify(cookie_token)

        if ctx.method.upper() in SAFE_METHODS:
            if cookie_valid:
                ctx.csrf_token = cookie_token
                return CsrfDecision(ALLOW)
            fresh = self.codec.issue()
            ctx.csrf_token = fresh
            return CsrfDecision(ALLOW_WITH_COOKIE, cookie=self.build_cookie(fresh))

        supplied = self._supplied_token(ctx)
        reason: Optional[str] = None
        if not supplied:
            reason = "missing"
        elif not self.codec.verify(supplied):
            reason = "invalid"
        elif not cookie_token:
            reason = "missing"
        elif not cookie_valid:
            reason = "invalid"
        elif self.config.csrf_require_match and supplied != cookie_token:
            reason = "mismatch"

        if reason:
            logger.warning(
                "csrf_rejected",
                reason=reason,
                method=ctx.method,
                path=ctx.path,
                has_cookie=bool(cookie_token),
            )
            return CsrfDecision(REJECT, reason=reason)
        ctx.csrf_token = cookie_token
        return CsrfDecision(ALLOW)

    def token_for_client(self, ctx: RequestContext) -> tuple[str, Optional[CookieSpec]]:
        """Return a usable token, reusing the cookie while it still verifies."""
        cookie_token = ctx.cookies.get(self.config.csrf_cookie_name)
        if cookie_token and self.codec.verify(cookie_token):
            return cookie_token, None
        fresh = self.codec.issue()
        return fresh, self.build_cookie(fresh)
