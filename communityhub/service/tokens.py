from __future__ import annotations

import hashlib
import hmac
import re
import secrets
import time
from typing import Callable, Optional

SECRET_BYTES = 32
SIGNATURE_HEX_CHARS = 16
# Tolerated clock drift for timestamps from the near future
FUTURE_SKEW_MS = 5_000

_HEX_PART = re.compile(r"^[0-9a-f]+$")


class TokenCodec:
    """Signs and verifies ``hex(secret).hex(timestamp).hex(signature)`` tokens.

    Verification never raises: every malformed, tampered or stale token is
    simply reported as invalid.
    """

    def __init__(
        self,
        key: bytes,
        *,
        max_age_seconds: int = 30 * 60,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        if not key:
            raise ValueError("token signing key must not be empty")
        self._key = key
        self.max_age_seconds = max_age_seconds
        self._clock = clock or time.time

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _sign(self, secret_hex: str, timestamp_hex: str) -> str:
        message = f"{secret_hex}.{timestamp_hex}".encode("ascii")
        digest = hmac.new(self._key, message, hashlib.sha256).hexdigest()
        return digest[:SIGNATURE_HEX_CHARS]

    def issue(self) -> str:
        secret_hex = secrets.token_bytes(SECRET_BYTES).hex()
        timestamp_hex = format(self._now_ms(), "x")
        return f"{secret_hex}.{timestamp_hex}.{self._sign(secret_hex, timestamp_hex)}"

    @staticmethod
    def _split(token: object) -> Optional[tuple[str, str, str]]:
        if not isinstance(token, str):
            return None
        parts = token.split(".")
        if len(parts) != 3:
            return None
        secret_hex, timestamp_hex, signature = parts
        if len(secret_hex) != SECRET_BYTES * 2 or len(signature) != SIGNATURE_HEX_CHARS:
            return None
        if not all(_HEX_PART.match(part) for part in parts):
            return None
        # An absurdly long timestamp cannot be a real issuance time
        if len(timestamp_hex) > 16:
            return None
        return secret_hex, timestamp_hex, signature

    def issued_at(self, token: object) -> Optional[float]:
        """Issuance time in epoch seconds, or None when the token is malformed."""
        parts = self._split(token)
        if parts is None:
            return None
        return int(parts[1], 16) / 1000.0

    def verify(self, token: object) -> bool:
        parts = self._split(token)
        if parts is None:
            return False
        secret_hex, timestamp_hex, signature = parts
        expected = self._sign(secret_hex, timestamp_hex)
        if not hmac.compare_digest(expected, signature):
            return False
        age_ms = self._now_ms() - int(timestamp_hex, 16)
        if age_ms < -FUTURE_SKEW_MS:
            return False
        return age_ms <= self.max_age_seconds * 1000
