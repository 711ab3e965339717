from __future__ import annotations

import asyncio
import contextlib
import math
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from communityhub.logging import get_logger

logger = get_logger(__name__)

ACTIVITY_EVENTS = frozenset(
    {
        "pointermove",
        "mousemove",
        "mousedown",
        "keypress",
        "keydown",
        "scroll",
        "touchstart",
        "click",
    }
)


@dataclass(frozen=True)
class CountdownState:
    remaining_seconds: float
    remaining_minutes: int
    warning: bool
    expired: bool
    progress_percent: float


def format_remaining(minutes: int) -> str:
    if minutes >= 60:
        return f"{minutes // 60}h {minutes % 60}m"
    return f"{minutes}m"


class ActivityTracker:
    """Client-side idle countdown for an authenticated session.

    Activity only moves ``last_activity`` forward; ``tick`` derives the
    warning and expiry states from it. The expiry callback fires once per
    expiry and is re-armed only by a successful ``extend``.
    """

    def __init__(
        self,
        *,
        timeout_seconds: float = 30 * 60,
        warning_seconds: float = 5 * 60,
        refresh: Optional[Callable[[], Awaitable[bool]]] = None,
        sign_out: Optional[Callable[[], Awaitable[object]]] = None,
        on_expired: Optional[Callable[[], None]] = None,
        on_warning_change: Optional[Callable[[bool], None]] = None,
        clock: Callable[[], float] = time.monotonic,
        debounce_seconds: float = 1.0,
    ) -> None:
        if warning_seconds >= timeout_seconds:
            raise ValueError("warning_seconds must be shorter than timeout_seconds")
        self.timeout_seconds = timeout_seconds
        self.warning_seconds = warning_seconds
        self._refresh = refresh
        self._sign_out = sign_out
        self._on_expired = on_expired
        self._on_warning_change = on_warning_change
        self._clock = clock
        self.debounce_seconds = debounce_seconds
        self.last_activity = clock()
        self.warning = False
        self.expired = False
        self._task: Optional[asyncio.Task] = None

    def record_activity(self, event: str = "click") -> bool:
        """Note a user interaction; returns whether ``last_activity`` moved."""
        if self.expired or event not in ACTIVITY_EVENTS:
            return False
        now = self._clock()
        if now - self.last_activity < self.debounce_seconds:
            return False
        self.last_activity = now
        return True

    def _set_warning(self, active: bool) -> None:
        if active == self.warning:
            return
        self.warning = active
        if self._on_warning_change:
            self._on_warning_change(active)

    def _expire(self) -> None:
        self._set_warning(False)
        self.expired = True
        logger.info("session_client_expired")
        if self._on_expired:
            self._on_expired()

    def remaining(self) -> float:
        return self.timeout_seconds - (self._clock() - self.last_activity)

    def tick(self) -> CountdownState:
        remaining = self.remaining()
        if remaining <= 0:
            if not self.expired:
                self._expire()
        elif not self.expired:
            self._set_warning(remaining <= self.warning_seconds)
        remaining_seconds = max(0.0, remaining)
        remaining_minutes = max(0, math.ceil(remaining / 60))
        return CountdownState(
            remaining_seconds=remaining_seconds,
            remaining_minutes=remaining_minutes,
            warning=self.warning,
            expired=self.expired,
            progress_percent=min(100.0, remaining_seconds / self.warning_seconds * 100),
        )

    def _reset(self) -> None:
        self.last_activity = self._clock()
        self.expired = False
        self._set_warning(False)

    async def extend(self) -> bool:
        """Ask the server for more time; any failure ends the session locally."""
        ok = False
        if self._refresh is not None:
            try:
                ok = bool(await self._refresh())
            except Exception as exc:
                logger.warning("session_extend_failed", error=str(exc))
                ok = False
        if ok:
            self._reset()
            return True
        if not self.expired:
            self._expire()
        return False

    async def sign_out(self) -> None:
        try:
            if self._sign_out is not None:
                await self._sign_out()
        except Exception as exc:
            logger.warning("session_sign_out_failed", error=str(exc))
        finally:
            self._set_warning(False)
            self.expired = True
            if self._on_expired:
                self._on_expired()

    async def run(self, interval: float = 1.0) -> None:
        while True:
            self.tick()
            await asyncio.sleep(interval)

    def start(self, interval: float = 1.0) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(interval))
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
