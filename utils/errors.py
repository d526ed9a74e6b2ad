"""
Error taxonomy for the integration layer.

Every error carries the HTTP ``status_code`` the route layer should answer
with, so routes translate exceptions without re-deciding severity.
"""

from __future__ import annotations

from typing import Iterable


class IntegrationError(Exception):
    """Base class for all errors raised by this package."""

    status_code: int = 500

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


# ── Configuration ──────────────────────────────────────────────────────


class ConfigMissing(IntegrationError):
    """A required secret / setting is absent.  Fatal at startup."""

    def __init__(self, names: Iterable[str]) -> None:
        self.names = list(names)
        super().__init__(
            f"Missing required environment variables: {', '.join(self.names)}"
        )


# ── Signed tokens / OAuth state ────────────────────────────────────────


class SignedTokenError(IntegrationError):
    status_code = 401


class MalformedToken(SignedTokenError):
    def __init__(self, message: str = "Malformed state token") -> None:
        super().__init__(message)


class InvalidSignature(SignedTokenError):
    def __init__(self, message: str = "Invalid state signature") -> None:
        super().__init__(message)


class MalformedPayload(SignedTokenError):
    def __init__(self, message: str = "Malformed state payload") -> None:
        super().__init__(message)


class StateExpired(SignedTokenError):
    def __init__(self, message: str = "State token expired") -> None:
        super().__init__(message)


# ── Credentials ────────────────────────────────────────────────────────


class CredentialError(IntegrationError):
    status_code = 400


class CredentialNotFound(CredentialError):
    status_code = 404

    def __init__(self, connection_id: str) -> None:
        self.connection_id = connection_id
        super().__init__(f"No token found for connection {connection_id}")


class TokenExchangeFailed(CredentialError):
    pass


class RefreshFailed(CredentialError):
    pass


# ── Webhooks ───────────────────────────────────────────────────────────


class WebhookError(IntegrationError):
    pass


class InvalidWebhookSignature(WebhookError):
    status_code = 401

    def __init__(self, message: str = "Invalid webhook signature") -> None:
        super().__init__(message)


class MalformedWebhookPayload(WebhookError):
    status_code = 400

    def __init__(self, message: str = "Invalid JSON payload") -> None:
        super().__init__(message)


class DuplicateWebhook(WebhookError):
    """Not a failure: the delivery was already persisted."""

    status_code = 200


class PersistenceFailure(WebhookError):
    status_code = 500

    def __init__(self, message: str = "Webhook persistence failed") -> None:
        super().__init__(message)
