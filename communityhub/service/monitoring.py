from __future__ import annotations

from typing import Any, Dict, List, Protocol, Tuple

from communityhub.logging import get_logger


class MonitoringSink(Protocol):
    """Operational event sink (cleanup completions, store outages, alerts)."""

    def record(self, event: str, **fields: Any) -> None: ...

    def critical(self, event: str, **fields: Any) -> None: ...


class LoggingMonitoringSink:
    """Default sink that forwards events to structlog."""

    def __init__(self) -> None:
        self.logger = get_logger("communityhub.monitoring")

    def record(self, event: str, **fields: Any) -> None:
        self.logger.info(event, **fields)

    def critical(self, event: str, **fields: Any) -> None:
        self.logger.critical(event, **fields)


class RecordingMonitoringSink(LoggingMonitoringSink):
    """Keeps events in memory as well; used by tests and the health probe."""

    def __init__(self, limit: int = 500) -> None:
        super().__init__()
        self.limit = limit
        self.events: List[Tuple[str, str, Dict[str, Any]]] = []

    def _keep(self, level: str, event: str, fields: Dict[str, Any]) -> None:
        self.events.append((level, event, fields))
        if len(self.events) > self.limit:
            del self.events[: len(self.events) - self.limit]

    def record(self, event: str, **fields: Any) -> None:
        self._keep("info", event, fields)
        super().record(event, **fields)

    def critical(self, event: str, **fields: Any) -> None:
        self._keep("critical", event, fields)
        super().critical(event, **fields)

    def names(self) -> List[str]:
        return [name for _, name, _ in self.events]
