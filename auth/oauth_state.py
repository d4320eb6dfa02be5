"""
Signed OAuth state — CSRF protection without server-side sessions.

A state is ``urlsafe_b64(json({"payload": <json>, "signature": <hex>}))``
where ``<json>`` holds the caller's data plus the issue timestamp and
``<hex>`` is HMAC-SHA256 over ``<json>`` with the server secret.

Callers only ever see ``InvalidState``; the precise reason is logged.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from base64 import urlsafe_b64decode, urlsafe_b64encode
from typing import Any, Callable, Dict, Optional

from utils.exceptions import InvalidState

logger = logging.getLogger(__name__)


class _Rejected(Exception):
    """Internal: carries the log-only reason a state was refused."""


class StateSigner:
    """Creates and verifies signed, time-bound OAuth state strings."""

    def __init__(
        self,
        secret: str,
        ttl_seconds: int = 600,
        clock: Callable[[], float] = time.time,
    ):
        if not secret:
            raise ValueError("OAuth state secret must not be empty")
        self._secret = secret.encode()
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def _sign(self, raw: bytes) -> str:
        return hmac.new(self._secret, raw, hashlib.sha256).hexdigest()

    def create(self, payload: Dict[str, Any]) -> str:
        """Return an opaque state string carrying ``payload``."""
        body = json.dumps(
            {"data": payload, "ts": self._clock()},
            separators=(",", ":"),
            sort_keys=True,
        )
        return urlsafe_b64encode(_envelope(body, self._sign(body.encode()))).decode()

    def verify(self, state: str, max_age_seconds: Optional[int] = None) -> Dict[str, Any]:
        """
        Return the payload given to ``create``.

        Raises ``InvalidState`` for malformed input, a bad signature or an
        age beyond ``max_age_seconds`` (default: the signer's TTL).
        """
        max_age = self.ttl_seconds if max_age_seconds is None else max_age_seconds
        try:
            return self._verify(state, max_age)
        except _Rejected as exc:
            logger.warning("OAuth state rejected: %s", exc)
            raise InvalidState() from None

    def _verify(self, state: str, max_age: int) -> Dict[str, Any]:
        try:
            raw = urlsafe_b64decode(state.encode("ascii"))
            # b64decode ignores stray characters and unused trailing bits
            if urlsafe_b64encode(raw).decode() != state:
                raise ValueError("non-canonical encoding")
            envelope = json.loads(raw)
            body = envelope["payload"]
            signature = envelope["signature"]
            if not isinstance(body, str) or not isinstance(signature, str):
                raise TypeError("payload and signature must be strings")
            if _envelope(body, signature) != raw:
                raise ValueError("non-canonical envelope")
        except (ValueError, TypeError, KeyError, UnicodeError) as exc:
            raise _Rejected(f"malformed ({type(exc).__name__})") from None

        if not hmac.compare_digest(self._sign(body.encode()), signature):
            raise _Rejected("bad signature")

        try:
            decoded = json.loads(body)
            data = decoded["data"]
            issued_at = float(decoded["ts"])
        except (ValueError, TypeError, KeyError) as exc:
            raise _Rejected(f"malformed payload ({type(exc).__name__})") from None

        age = self._clock() - issued_at
        if age > max_age:
            raise _Rejected(f"expired ({age:.0f}s old, max {max_age}s)")
        if not isinstance(data, dict):
            raise _Rejected("payload is not an object")
        return data


def _envelope(body: str, signature: str) -> bytes:
    return json.dumps({"payload": body, "signature": signature}, separators=(",", ":")).encode()
