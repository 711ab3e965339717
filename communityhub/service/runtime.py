from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from communityhub.config import SecurityConfig, Settings, get_settings, reset_settings_cache
from communityhub.logging import get_logger
from communityhub.service.csrf import CsrfGuard
from communityhub.service.monitoring import MonitoringSink, RecordingMonitoringSink
from communityhub.service.pipeline import SecurityPipeline
from communityhub.service.routing import RouteTable
from communityhub.service.sessions import SessionManager
from communityhub.service.tokens import TokenCodec
from communityhub.service.two_factor import TwoFactorGate, TwoFactorService
from communityhub.storage.memory import MemoryStore
from communityhub.storage.redis_store import RedisStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse(
                (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
            )
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Union[MemoryStore, RedisStore, None] = None,
        monitoring: Optional[MonitoringSink] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.config = SecurityConfig.from_settings(self.settings)
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        encryption_key = self.settings.two_factor_secret_key or self.settings.csrf_secret
        if store is not None:
            self.store = store
        elif self.settings.use_memory_store or not self.settings.redis_url:
            self.store = MemoryStore(two_factor_encryption_key=encryption_key)
        else:
            logger.info("redis_store_selected", redis_url=_mask_url_password(self.settings.redis_url))
            self.store = RedisStore(
                self.settings.redis_url, two_factor_encryption_key=encryption_key
            )
        self.monitoring = monitoring or RecordingMonitoringSink()
        self.routes = RouteTable(self.config.exempt_prefixes, self.config.two_factor_prefixes)
        self.codec = TokenCodec(
            self.config.signing_key, max_age_seconds=self.config.csrf_max_age_seconds
        )
        self.csrf = CsrfGuard(self.codec, self.config, self.routes)
        self.sessions = SessionManager(self.store, self.config, self.monitoring)
        self.two_factor = TwoFactorService(self.store, self.sessions, self.config)
        self.gate = TwoFactorGate(self.store, self.routes, self.config)
        self.pipeline = SecurityPipeline.build(
            config=self.config,
            guard=self.csrf,
            sessions=self.sessions,
            routes=self.routes,
            gate=self.gate,
            monitoring=self.monitoring,
            markers=self.two_factor,
        )
        logger.info(
            "runtime_initialized",
            store=type(self.store).__name__,
            header_profile=self.config.header_profile,
            csrf_require_match=self.config.csrf_require_match,
        )

    async def close(self) -> None:
        await self.store.close()


runtime: Runtime | None = None
# Thread-safe singleton creation
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.store, RedisStore):
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.close())
            except RuntimeError:
                asyncio.run(runtime.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
