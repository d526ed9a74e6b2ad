"""
Webhook signature verification.

Jobber signs each delivery with ``base64(HMAC-SHA256(client_secret, raw_body))``
in the ``X-Jobber-Hmac-SHA256`` header.  Verification must run on the exact
bytes received, before any JSON parsing.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
from typing import Optional

SIGNATURE_HEADER = "X-Jobber-Hmac-SHA256"


def payload_sha256(raw_body: bytes) -> str:
    """Hex SHA-256 of the raw body; the content half of the dedupe key."""
    return hashlib.sha256(raw_body).hexdigest()


class WebhookAuthenticator:
    def __init__(self, client_secret: str) -> None:
        self._key = client_secret.encode()

    def compute_signature(self, raw_body: bytes) -> str:
        digest = hmac.new(self._key, raw_body, hashlib.sha256).digest()
        return base64.b64encode(digest).decode("ascii")

    def verify(self, raw_body: bytes, provided_signature: Optional[str]) -> bool:
        if not provided_signature:
            return False
        expected = self.compute_signature(raw_body).encode()
        provided = provided_signature.encode()
        # Length is not secret; only equal-length values reach the constant-time compare.
        if len(expected) != len(provided):
            return False
        return hmac.compare_digest(expected, provided)
