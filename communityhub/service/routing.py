from __future__ import annotations

from enum import Enum
from typing import Iterable

from communityhub.config import DEFAULT_EXEMPT_PREFIXES, DEFAULT_TWO_FACTOR_PREFIXES

STATIC_EXTENSIONS = (".svg", ".png", ".jpg", ".jpeg", ".gif", ".webp", ".ico")


class RouteClass(str, Enum):
    EXEMPT = "exempt"
    REQUIRES_2FA = "requires-2fa"
    STANDARD = "standard"


def _matches(path: str, prefix: str) -> bool:
    # "/admin" covers "/admin" and "/admin/..." but not "/administrator"
    if prefix.endswith("/"):
        return path.startswith(prefix) or path == prefix.rstrip("/")
    return path == prefix or path.startswith(prefix + "/")


class RouteTable:
    """Pure mapping from a request path to its ``RouteClass``."""

    def __init__(
        self,
        exempt_prefixes: Iterable[str] = DEFAULT_EXEMPT_PREFIXES,
        two_factor_prefixes: Iterable[str] = DEFAULT_TWO_FACTOR_PREFIXES,
    ) -> None:
        self.exempt_prefixes = tuple(exempt_prefixes)
        self.two_factor_prefixes = tuple(two_factor_prefixes)

    @staticmethod
    def _normalize(path: str) -> str:
        path = (path or "/").split("?", 1)[0].split("#", 1)[0]
        if not path.startswith("/"):
            path = "/" + path
        while "//" in path:
            path = path.replace("//", "/")
        return path

    def is_exempt(self, path: str) -> bool:
        path = self._normalize(path)
        if path.lower().endswith(STATIC_EXTENSIONS):
            return True
        return any(_matches(path, prefix) for prefix in self.exempt_prefixes)

    def requires_step_up(self, path: str) -> bool:
        if self.is_exempt(path):
            return False
        path = self._normalize(path)
        return any(_matches(path, prefix) for prefix in self.two_factor_prefixes)

    def classify(self, path: str) -> RouteClass:
        if self.is_exempt(path):
            return RouteClass.EXEMPT
        if self.requires_step_up(path):
            return RouteClass.REQUIRES_2FA
        return RouteClass.STANDARD
