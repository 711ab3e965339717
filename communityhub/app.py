from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import RedirectResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from communityhub.api.error_handling import register_exception_handlers, service_error_response
from communityhub.api.routes import router
from communityhub.config import SecurityConfig
from communityhub.logging import get_logger, set_correlation_id
from communityhub.service.context import RequestContext
from communityhub.service.csrf import SAFE_METHODS
from communityhub.service.errors import ServerError, ServiceError
from communityhub.service.pipeline import REDIRECT, REJECT, StageOutcome
from communityhub.service.runtime import get_runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3
_FORM_CONTENT_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")

_cleanup_task: asyncio.Task | None = None


async def _run_session_cleanup(interval_seconds: int) -> None:
    """Background loop that sweeps expired and revoked sessions."""

    interval = max(interval_seconds, 60)
    try:
        while True:
            await asyncio.sleep(interval)
            try:
                removed = await get_runtime().sessions.cleanup_expired()
                logger.info("session_cleanup_tick", removed=removed)
            except ServiceError as exc:
                logger.warning("session_cleanup_failed", error=exc.message)
    except asyncio.CancelledError:
        logger.info("session_cleanup_task_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    global _cleanup_task
    runtime = get_runtime()
    _cleanup_task = asyncio.create_task(
        _run_session_cleanup(runtime.settings.session_cleanup_interval_seconds)
    )

    yield

    if _cleanup_task:
        _cleanup_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _cleanup_task
        _cleanup_task = None
    await get_runtime().close()
    logger.info("runtime_cleanup_complete")


app = FastAPI(title="Community Hub Security", version=__version__, lifespan=lifespan)


async def _read_form_token(request: Request, config: SecurityConfig) -> Optional[str]:
    content_type = request.headers.get("content-type", "")
    if not content_type.startswith(_FORM_CONTENT_TYPES):
        return None
    # Cache the body first so the endpoint can still read it after us
    await request.body()
    try:
        form = await request.form()
    except (StarletteHTTPException, ValueError) as exc:
        logger.warning("csrf_form_parse_failed", error=str(exc))
        return None
    try:
        value = form.get(config.csrf_form_field)
        return value if isinstance(value, str) else None
    finally:
        await form.close()


async def build_request_context(request: Request, config: SecurityConfig) -> RequestContext:
    form_token = None
    if request.method.upper() not in SAFE_METHODS and not request.headers.get(
        config.csrf_header_name
    ):
        form_token = await _read_form_token(request, config)
    return RequestContext(
        method=request.method.upper(),
        path=request.url.path,
        query_string=request.url.query,
        headers={key.lower(): value for key, value in request.headers.items()},
        cookies=dict(request.cookies),
        form_token=form_token,
        client_ip=request.client.host if request.client else None,
    )


def _write_cookies(response: Response, ctx: RequestContext) -> None:
    for cookie in ctx.cookies_to_set:
        if cookie.delete:
            response.delete_cookie(
                cookie.name,
                path=cookie.path,
                secure=cookie.secure,
                httponly=cookie.httponly,
                samesite=cookie.samesite,
            )
            continue
        response.set_cookie(
            cookie.name,
            cookie.value,
            max_age=cookie.max_age,
            path=cookie.path,
            secure=cookie.secure,
            httponly=cookie.httponly,
            samesite=cookie.samesite,
        )


@app.middleware("http")
async def security_pipeline(request: Request, call_next):
    """CSRF, session refresh, route classification and the 2FA gate.

    Security headers and pending cookies are written on every response that
    leaves here, including rejections, redirects and unexpected failures.
    """
    runtime = get_runtime()
    ctx = RequestContext(method=request.method.upper(), path=request.url.path)
    try:
        ctx = await build_request_context(request, runtime.config)
        request.state.security = ctx
        outcome = await runtime.pipeline.evaluate(ctx)
    except Exception as exc:
        logger.exception(
            "security_pipeline_failed",
            exc_info=exc,
            path=ctx.path,
            method=ctx.method,
            error_type=type(exc).__name__,
        )
        runtime.monitoring.critical(
            "security_pipeline_failed", path=ctx.path, error_type=type(exc).__name__
        )
        outcome = StageOutcome(REJECT, error=ServerError("internal server error"))
    if outcome.kind == REJECT and outcome.error is not None:
        response: Response = service_error_response(outcome.error)
    elif outcome.kind == REDIRECT and outcome.location:
        response = RedirectResponse(outcome.location, status_code=307)
    else:
        try:
            response = await call_next(request)
        except Exception as exc:
            logger.exception(
                "unhandled_exception",
                exc_info=exc,
                path=ctx.path,
                method=ctx.method,
                error_type=type(exc).__name__,
            )
            response = service_error_response(ServerError("internal server error"))
    _write_cookies(response, ctx)
    runtime.pipeline.finalize(ctx, response.headers)
    return response


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Bind X-Request-ID (or a fresh UUID) for structured logging and echo it back."""
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Liveness plus a bounded probe of the session store."""
    runtime = get_runtime()
    try:
        store_ok = await asyncio.wait_for(runtime.store.ping(), HEALTH_CHECK_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component="store", timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        store_ok = False
    if not store_ok:
        runtime.monitoring.critical("store_unavailable", stage="health_check")
    return {
        "status": "healthy" if store_ok else "unhealthy",
        "checks": {
            "store": {
                "status": "healthy" if store_ok else "unhealthy",
                "type": type(runtime.store).__name__,
            }
        },
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app() -> FastAPI:
    return app
