"""
Action Tokens — compact, tamper-evident one-tap response links.

Wire format:
    base64url(json(payload)) + "." + base64url(hmac_sha256(secret, first_segment))

base64url is used without padding. The payload is
    {"subject_id": str, "day": 3|7|14, "value": "better"|"same"|"worse", "exp": int}
where `exp` is a unix timestamp in seconds. A token is valid strictly
before `exp`.

Tokens are bearer credentials: anyone holding one can record that single
response for that subject and day until it expires.
"""
from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import structlog
from typing import Any, Callable, Optional

from checkins.errors import ConfigurationError
from models.schemas import CHECKIN_DAYS, RESPONSE_VALUES, ActionTokenPayload, ResponseValue

logger = structlog.get_logger()

DEFAULT_TTL_SECONDS = 7 * 24 * 60 * 60
PREVIEW_TTL_SECONDS = 60 * 60


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(value + padding)


class TokenCodec:
    """
    Signs and verifies action tokens with a shared HMAC secret.

    `clock` returns the current unix time in seconds; tests pass a fixed one.
    """

    def __init__(self, secret: str, clock: Callable[[], float] = time.time):
        if not secret:
            raise ConfigurationError("check-in token secret is not configured")
        self._key = secret.encode("utf-8")
        self._clock = clock

    def _signature(self, body: str) -> str:
        digest = hmac.new(self._key, body.encode("ascii"), hashlib.sha256).digest()
        return _b64encode(digest)

    def sign(
        self,
        subject_id: str,
        day: int,
        value: ResponseValue | str,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
    ) -> str:
        payload = {
            "subject_id": subject_id,
            "day": int(day),
            "value": ResponseValue(value).value,
            "exp": int(self._clock()) + int(ttl_seconds),
        }
        body = _b64encode(json.dumps(payload, separators=(",", ":")).encode("utf-8"))
        return f"{body}.{self._signature(body)}"

    def verify(self, token: Any) -> Optional[ActionTokenPayload]:
        """Return the payload, or None for any invalid, tampered or expired token."""
        if not isinstance(token, str) or not token:
            return None

        parts = token.split(".")
        if len(parts) != 2 or not parts[0] or not parts[1]:
            logger.debug("token_rejected", reason="malformed")
            return None
        body, signature = parts

        if not (body.isascii() and signature.isascii()) or \
                not hmac.compare_digest(signature, self._signature(body)):
            logger.debug("token_rejected", reason="bad_signature")
            return None

        try:
            data = json.loads(_b64decode(body))
        except (ValueError, UnicodeDecodeError):
            logger.debug("token_rejected", reason="undecodable")
            return None
        if not isinstance(data, dict):
            logger.debug("token_rejected", reason="not_an_object")
            return None

        subject_id = data.get("subject_id")
        day = data.get("day")
        value = data.get("value")
        exp = data.get("exp")

        if not isinstance(subject_id, str) or not subject_id:
            logger.debug("token_rejected", reason="missing_subject")
            return None
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            logger.debug("token_rejected", reason="missing_exp")
            return None
        if exp <= self._clock():
            logger.debug("token_rejected", reason="expired")
            return None
        if isinstance(day, bool) or day not in CHECKIN_DAYS:
            logger.debug("token_rejected", reason="bad_day")
            return None
        if value not in RESPONSE_VALUES:
            logger.debug("token_rejected", reason="bad_value")
            return None

        return ActionTokenPayload(
            subject_id=subject_id, day=int(day), value=ResponseValue(value), exp=int(exp),
        )


_codec: Optional[TokenCodec] = None


def get_token_codec() -> TokenCodec:
    """Process-wide codec built from settings. Raises ConfigurationError without a secret."""
    global _codec
    if _codec is None:
        from config.settings import get_settings
        _codec = TokenCodec(get_settings().checkins.token_secret)
    return _codec


def reset_token_codec() -> None:
    """Drop the cached codec (for testing)."""
    global _codec
    _codec = None
