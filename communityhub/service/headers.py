from __future__ import annotations

import base64
import secrets
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, MutableMapping, Optional

from communityhub.config import HeaderProfile, SecurityConfig

NONCE_BYTES = 16


@dataclass(frozen=True)
class HeaderPolicy:
    enable_csp: bool = True
    enable_hsts: bool = True
    enable_xss_protection: bool = True
    enable_content_type_options: bool = True
    enable_referrer_policy: bool = True
    enable_permissions_policy: bool = True
    report_only: bool = False


PROFILES: Dict[str, HeaderPolicy] = {
    HeaderProfile.DEVELOPMENT.value: HeaderPolicy(
        enable_csp=False,
        enable_hsts=False,
        enable_permissions_policy=False,
        report_only=True,
    ),
    HeaderProfile.PRODUCTION.value: HeaderPolicy(),
    HeaderProfile.TEST.value: HeaderPolicy(
        enable_csp=False,
        enable_hsts=False,
        enable_xss_protection=False,
        enable_content_type_options=False,
        enable_referrer_policy=False,
        enable_permissions_policy=False,
    ),
}

_PERMISSIONS = (
    "camera=(self)",
    "microphone=(self)",
    "geolocation=(self)",
    "notifications=(self)",
    "push=(self)",
    "accelerometer=()",
    "ambient-light-sensor=()",
    "autoplay=()",
    "battery=()",
    "display-capture=()",
    "document-domain=()",
    "encrypted-media=()",
    "fullscreen=(self)",
    "gyroscope=()",
    "magnetometer=()",
    "midi=()",
    "payment=()",
    "picture-in-picture=()",
    "publickey-credentials-get=(self)",
    "screen-wake-lock=(self)",
    "sync-xhr=()",
    "usb=()",
    "web-share=(self)",
    "xr-spatial-tracking=()",
)

HSTS_VALUE = "max-age=31536000; includeSubDomains; preload"


def generate_nonce() -> str:
    return base64.b64encode(secrets.token_bytes(NONCE_BYTES)).decode("ascii")


def build_csp(nonce: Optional[str], report_uri: Optional[str] = None) -> str:
    directives: Dict[str, List[str]] = {
        "default-src": ["'self'"],
        "script-src": ["'self'", "'unsafe-inline'"]
        + ([f"'nonce-{nonce}'"] if nonce else []),
        "style-src": ["'self'", "'unsafe-inline'", "https://fonts.googleapis.com"],
        "font-src": ["'self'", "https://fonts.gstatic.com", "data:"],
        "img-src": ["'self'", "data:", "blob:", "https:"],
        "media-src": ["'self'", "https:", "blob:"],
        "connect-src": ["'self'", "https:", "wss:"],
        "frame-src": ["'self'"],
        "worker-src": ["'self'", "blob:"],
        "manifest-src": ["'self'"],
        "base-uri": ["'self'"],
        "form-action": ["'self'"],
        "frame-ancestors": ["'none'"],
        "object-src": ["'none'"],
        "upgrade-insecure-requests": [],
    }
    if report_uri:
        directives["report-uri"] = [report_uri]
    return "; ".join(
        f"{name} {' '.join(sources)}" if sources else name
        for name, sources in directives.items()
    )


def build_permissions_policy() -> str:
    return ", ".join(_PERMISSIONS)


def build_security_headers(
    config: SecurityConfig, nonce: str, *, path: str = "/"
) -> Dict[str, str]:
    """Header set for one response, according to the configured profile."""
    policy = PROFILES.get(config.header_profile, PROFILES[HeaderProfile.PRODUCTION.value])
    headers: Dict[str, str] = {}
    if policy.enable_csp:
        name = (
            "Content-Security-Policy-Report-Only"
            if policy.report_only
            else "Content-Security-Policy"
        )
        headers[name] = build_csp(nonce, f"{config.app_base_url}/api/security/csp-report")
    if policy.enable_hsts and config.enable_hsts:
        headers["Strict-Transport-Security"] = HSTS_VALUE
    if policy.enable_xss_protection:
        headers["X-XSS-Protection"] = "1; mode=block"
    if policy.enable_content_type_options:
        headers["X-Content-Type-Options"] = "nosniff"
    if policy.enable_referrer_policy:
        headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    if policy.enable_permissions_policy:
        headers["Permissions-Policy"] = build_permissions_policy()
    headers["X-Frame-Options"] = "DENY"
    headers["X-DNS-Prefetch-Control"] = "on"
    headers["Cross-Origin-Embedder-Policy"] = "credentialless"
    headers["Cross-Origin-Opener-Policy"] = "same-origin"
    headers["Cross-Origin-Resource-Policy"] = "same-origin"
    headers["X-Nonce"] = nonce
    if path.startswith("/api/"):
        headers["Cache-Control"] = "no-store, no-cache, must-revalidate"
        headers["Pragma"] = "no-cache"
        headers["Expires"] = "0"
    return headers


def apply_security_headers(
    target: MutableMapping[str, str], config: SecurityConfig, nonce: str, *, path: str = "/"
) -> None:
    for name, value in build_security_headers(config, nonce, path=path).items():
        target[name] = value


_HEADER_WEIGHTS = {
    "X-Frame-Options": 15,
    "X-Content-Type-Options": 10,
    "Referrer-Policy": 10,
    "X-XSS-Protection": 10,
    "Strict-Transport-Security": 20,
    "Content-Security-Policy": 25,
    "Permissions-Policy": 10,
}

_REQUIRED_HEADERS = (
    "X-Frame-Options",
    "X-Content-Type-Options",
    "Referrer-Policy",
    "X-XSS-Protection",
    "Strict-Transport-Security",
    "Content-Security-Policy",
)


@dataclass
class HeaderAudit:
    is_valid: bool
    missing: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    score: int = 0


def _lookup(headers: Mapping[str, str], name: str) -> Optional[str]:
    lowered = name.lower()
    for key, value in headers.items():
        if key.lower() == lowered:
            return value
    return None


def security_score(headers: Mapping[str, str]) -> int:
    return sum(weight for name, weight in _HEADER_WEIGHTS.items() if _lookup(headers, name))


def audit_security_headers(headers: Mapping[str, str]) -> HeaderAudit:
    """Grade a response's header set; valid means nothing required is missing and score >= 80."""
    missing = [name for name in _REQUIRED_HEADERS if not _lookup(headers, name)]
    recommendations: List[str] = []
    frame_options = _lookup(headers, "X-Frame-Options")
    if frame_options and frame_options.upper() != "DENY":
        recommendations.append("Consider using X-Frame-Options: DENY for maximum protection")
    csp = _lookup(headers, "Content-Security-Policy")
    if csp:
        if "'unsafe-inline'" in csp:
            recommendations.append("Avoid using unsafe-inline in Content-Security-Policy")
        if "'unsafe-eval'" in csp:
            recommendations.append("Remove unsafe-eval from Content-Security-Policy")
        if "report-uri" not in csp and "report-to" not in csp:
            recommendations.append("Add CSP reporting to monitor violations")
    hsts = _lookup(headers, "Strict-Transport-Security")
    if hsts and "includeSubDomains" not in hsts:
        recommendations.append("Include subdomains in HSTS policy")
    score = security_score(headers)
    return HeaderAudit(
        is_valid=not missing and score >= 80,
        missing=missing,
        recommendations=recommendations,
        score=score,
    )
