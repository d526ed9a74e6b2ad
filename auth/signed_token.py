"""
Signed, tamper-evident tokens.

A token is ``<payload>.<signature>`` where ``payload`` is compact JSON in
URL-safe base64 (no padding) and ``signature`` is the URL-safe base64
HMAC-SHA256 of the *encoded* payload.  The codec carries no expiry
semantics; callers put whatever claims they need in the payload.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
from typing import Any, Dict, Iterable

from utils.errors import InvalidSignature, MalformedPayload, MalformedToken

_SEPARATOR = "."


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(data: str) -> bytes:
    return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))


def sign(data: str, secret: str) -> str:
    digest = hmac.new(secret.encode(), data.encode(), hashlib.sha256).digest()
    return b64url_encode(digest)


def encode(payload: Dict[str, Any], secret: str) -> str:
    """Serialise ``payload`` and append its signature."""
    raw = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode()
    encoded = b64url_encode(raw)
    return f"{encoded}{_SEPARATOR}{sign(encoded, secret)}"


def decode_and_verify(
    token: str,
    secret: str,
    required: Iterable[str] = (),
) -> Dict[str, Any]:
    """
    Verify ``token`` against ``secret`` and return its payload.

    Raises
    ------
    MalformedToken
        The token is not exactly two non-empty ``.``-separated parts.
    InvalidSignature
        The signature does not match the payload.
    MalformedPayload
        The payload cannot be decoded, is not a JSON object, or lacks
        one of the ``required`` fields.
    """
    parts = token.split(_SEPARATOR) if token else []
    if len(parts) != 2 or not all(parts):
        raise MalformedToken()
    encoded, signature = parts

    expected = sign(encoded, secret)
    if not hmac.compare_digest(signature.encode(), expected.encode()):
        raise InvalidSignature()

    try:
        payload = json.loads(b64url_decode(encoded).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
        raise MalformedPayload() from exc

    if not isinstance(payload, dict):
        raise MalformedPayload()
    for field in required:
        if not payload.get(field):
            raise MalformedPayload()
    return payload
