from __future__ import annotations

from dataclasses import dataclass
from typing import List, MutableMapping, Optional, Protocol, Sequence

from communityhub.config import SecurityConfig
from communityhub.logging import get_logger
from communityhub.service.context import CookieSpec, RequestContext
from communityhub.service.csrf import CsrfGuard
from communityhub.service.errors import (
    AuthenticationError,
    CsrfError,
    ServiceError,
    StoreUnavailableError,
)
from communityhub.service.headers import apply_security_headers, generate_nonce
from communityhub.service.monitoring import MonitoringSink
from communityhub.service.routing import RouteClass, RouteTable
from communityhub.service.sessions import SessionManager
from communityhub.service.two_factor import TwoFactorCheck, TwoFactorGate, TwoFactorService

logger = get_logger(__name__)

CONTINUE = "continue"
SKIP_REMAINING = "skip_remaining"
REJECT = "reject"
REDIRECT = "redirect"


@dataclass(frozen=True)
class StageOutcome:
    kind: str = CONTINUE
    error: Optional[ServiceError] = None
    location: Optional[str] = None

    @property
    def terminal(self) -> bool:
        return self.kind in (REJECT, REDIRECT)


PROCEED = StageOutcome()


class PipelineStage(Protocol):
    name: str

    async def evaluate(self, ctx: RequestContext) -> StageOutcome: ...


class CsrfStage:
    name = "csrf"

    def __init__(self, guard: CsrfGuard) -> None:
        self.guard = guard

    async def evaluate(self, ctx: RequestContext) -> StageOutcome:
        decision = self.guard.protect(ctx)
        if not decision.allowed:
            return StageOutcome(REJECT, error=CsrfError(decision.reason or "invalid"))
        if decision.cookie is not None:
            ctx.set_cookie(decision.cookie)
        return PROCEED


class SessionRefreshStage:
    """Resolves the session cookie; a store outage leaves the request unauthenticated.

    A 2FA marker cookie that was not minted for the resolved session is
    cleared. The gate itself only trusts the stored verification flag.
    """

    name = "session_refresh"

    def __init__(
        self,
        sessions: SessionManager,
        config: SecurityConfig,
        monitoring: MonitoringSink,
        markers: Optional[TwoFactorService] = None,
    ) -> None:
        self.sessions = sessions
        self.config = config
        self.monitoring = monitoring
        self.markers = markers

    async def evaluate(self, ctx: RequestContext) -> StageOutcome:
        session_id = ctx.cookies.get(self.config.session_cookie_name)
        ctx.session_id = session_id or None
        if not session_id:
            self._drop_foreign_marker(ctx)
            return PROCEED
        try:
            ctx.session = await self.sessions.refresh(session_id)
        except StoreUnavailableError as exc:
            ctx.session = None
            ctx.store_failures.append(exc.operation)
            self.monitoring.critical(
                "store_unavailable", stage=self.name, operation=exc.operation, path=ctx.path
            )
            return PROCEED
        if ctx.session is None:
            # Unknown, revoked or expired: drop the stale cookie
            ctx.set_cookie(
                CookieSpec(
                    name=self.config.session_cookie_name,
                    secure=self.config.cookie_secure,
                    delete=True,
                )
            )
        self._drop_foreign_marker(ctx)
        return PROCEED

    def _drop_foreign_marker(self, ctx: RequestContext) -> None:
        marker = ctx.cookies.get(self.config.two_factor_cookie_name)
        if not marker or self.markers is None:
            return
        if ctx.session is not None and self.markers.verify_marker(
            marker, ctx.session.user_id, ctx.session.id
        ):
            return
        logger.info("two_factor_marker_cleared", path=ctx.path, session_id=ctx.session_id)
        ctx.set_cookie(
            CookieSpec(
                name=self.config.two_factor_cookie_name,
                secure=self.config.cookie_secure,
                delete=True,
            )
        )


class RouteClassificationStage:
    name = "route_classification"

    def __init__(self, routes: RouteTable) -> None:
        self.routes = routes

    async def evaluate(self, ctx: RequestContext) -> StageOutcome:
        ctx.route_class = self.routes.classify(ctx.path)
        if ctx.route_class is RouteClass.EXEMPT:
            return StageOutcome(SKIP_REMAINING)
        return PROCEED


class TwoFactorStage:
    name = "two_factor"

    def __init__(self, gate: TwoFactorGate, monitoring: MonitoringSink) -> None:
        self.gate = gate
        self.monitoring = monitoring

    async def evaluate(self, ctx: RequestContext) -> StageOutcome:
        if ctx.route_class is not RouteClass.REQUIRES_2FA:
            return PROCEED
        if ctx.session is None:
            return StageOutcome(REJECT, error=AuthenticationError("authentication required"))
        try:
            check = await self.gate.check_requirement(ctx.session, ctx.path_with_query)
        except StoreUnavailableError as exc:
            ctx.store_failures.append(exc.operation)
            self.monitoring.critical(
                "store_unavailable", stage=self.name, operation=exc.operation, path=ctx.path
            )
            check = TwoFactorCheck(
                required=True,
                verified=False,
                redirect_target=self.gate.redirect_target(ctx.path_with_query),
            )
        if check.required and not check.verified:
            logger.info(
                "two_factor_step_up_required",
                user_id=ctx.session.user_id,
                path=ctx.path,
            )
            return StageOutcome(REDIRECT, location=check.redirect_target)
        return PROCEED


class SecurityPipeline:
    """Runs the stages in order and stops at the first terminal outcome.

    Header attachment is not a stage: ``finalize`` must be applied to every
    response, whichever outcome produced it.
    """

    def __init__(self, stages: Sequence[PipelineStage], config: SecurityConfig) -> None:
        self.stages: List[PipelineStage] = list(stages)
        self.config = config

    @classmethod
    def build(
        cls,
        *,
        config: SecurityConfig,
        guard: CsrfGuard,
        sessions: SessionManager,
        routes: RouteTable,
        gate: TwoFactorGate,
        monitoring: MonitoringSink,
        markers: Optional[TwoFactorService] = None,
    ) -> "SecurityPipeline":
        return cls(
            [
                CsrfStage(guard),
                SessionRefreshStage(sessions, config, monitoring, markers),
                RouteClassificationStage(routes),
                TwoFactorStage(gate, monitoring),
            ],
            config,
        )

    async def evaluate(self, ctx: RequestContext) -> StageOutcome:
        if ctx.nonce is None:
            ctx.nonce = generate_nonce()
        for stage in self.stages:
            outcome = await stage.evaluate(ctx)
            if outcome.terminal:
                return outcome
            if outcome.kind == SKIP_REMAINING:
                break
        return PROCEED

    def finalize(self, ctx: RequestContext, headers: MutableMapping[str, str]) -> None:
        if ctx.nonce is None:
            ctx.nonce = generate_nonce()
        apply_security_headers(headers, self.config, ctx.nonce, path=ctx.path)


__all__ = [
    "CookieSpec",
    "CsrfStage",
    "PipelineStage",
    "RequestContext",
    "RouteClassificationStage",
    "SecurityPipeline",
    "SessionRefreshStage",
    "StageOutcome",
    "TwoFactorStage",
]
