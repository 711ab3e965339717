from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from communityhub.service.routing import RouteClass
from communityhub.storage.models import Session


@dataclass(frozen=True)
class CookieSpec:
    """A cookie the pipeline wants written (or cleared) on the response."""

    name: str
    value: str = ""
    max_age: Optional[int] = None
    httponly: bool = True
    secure: bool = True
    samesite: str = "lax"
    path: str = "/"
    delete: bool = False


@dataclass
class RequestContext:
    """Per-request state threaded through the security stages.

    The inbound half is filled from the HTTP request; stages only write to
    the outbound half (``session``, ``cookies``, ``nonce``...), never to the
    request or response objects themselves.
    """

    method: str
    path: str
    query_string: str = ""
    headers: Dict[str, str] = field(default_factory=dict)
    cookies: Dict[str, str] = field(default_factory=dict)
    form_token: Optional[str] = None
    client_ip: Optional[str] = None
    # outbound
    route_class: Optional[RouteClass] = None
    session: Optional[Session] = None
    session_id: Optional[str] = None
    csrf_token: Optional[str] = None
    nonce: Optional[str] = None
    cookies_to_set: List[CookieSpec] = field(default_factory=list)
    store_failures: List[str] = field(default_factory=list)

    @property
    def user_agent(self) -> Optional[str]:
        return self.headers.get("user-agent")

    @property
    def path_with_query(self) -> str:
        if self.query_string:
            return f"{self.path}?{self.query_string}"
        return self.path

    def header(self, name: str) -> Optional[str]:
        return self.headers.get(name.lower())

    def set_cookie(self, cookie: CookieSpec) -> None:
        # Later writes for the same cookie win
        self.cookies_to_set = [c for c in self.cookies_to_set if c.name != cookie.name]
        self.cookies_to_set.append(cookie)
