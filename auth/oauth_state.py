"""
OAuth ``state`` guard — stateless anti-CSRF token for the authorize /
callback round trip.

The value is a signed ``{iat, exp, nonce}`` claim set.  Nothing is stored
server-side, so a captured state can be replayed until it expires; the
short TTL bounds that window.
"""

from __future__ import annotations

import logging
import secrets
import time
from typing import Callable

from pydantic import ValidationError

from auth.signed_token import b64url_encode, decode_and_verify, encode
from utils.errors import MalformedPayload, StateExpired
from utils.schemas import StatePayload

logger = logging.getLogger(__name__)

STATE_TTL_SECONDS = 600
_NONCE_BYTES = 24


class OAuthStateGuard:
    """Mint and verify signed OAuth state values."""

    def __init__(
        self,
        secret: str,
        ttl_seconds: int = STATE_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._secret = secret
        self._ttl = ttl_seconds
        self._clock = clock

    def _now(self) -> int:
        return int(self._clock())

    def mint(self) -> str:
        iat = self._now()
        payload = StatePayload(
            iat=iat,
            exp=iat + self._ttl,
            nonce=b64url_encode(secrets.token_bytes(_NONCE_BYTES)),
        )
        return encode(payload.model_dump(), self._secret)

    def verify(self, token: str) -> StatePayload:
        """
        Return the verified claims.

        Raises ``MalformedToken``, ``InvalidSignature`` or
        ``MalformedPayload`` from the codec, and ``StateExpired`` once
        ``exp`` is in the past.
        """
        claims = decode_and_verify(token, self._secret, required=("iat", "exp", "nonce"))
        try:
            payload = StatePayload.model_validate(claims)
        except ValidationError as exc:
            raise MalformedPayload() from exc
        if payload.exp < self._now():
            logger.info("Rejected expired OAuth state (exp=%d)", payload.exp)
            raise StateExpired()
        return payload
