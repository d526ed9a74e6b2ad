"""
BaseConnector — abstract interface for the OAuth2 provider client.

The credential store only talks to this interface, so tests can swap in a
fake provider without touching HTTP.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from utils.schemas import TokenResponse


class BaseConnector(ABC):
    """Abstract base for OAuth2 provider clients."""

    # ── Identity ────────────────────────────────────────────────────────
    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Unique slug stored on ``Connection.provider``."""
        ...

    # ── OAuth flow ──────────────────────────────────────────────────────

    @abstractmethod
    def get_auth_url(self, state: str) -> str:
        """
        Build the provider's OAuth2 authorization URL.

        Parameters
        ----------
        state : str
            Signed anti-forgery state value.
        """
        ...

    @abstractmethod
    async def exchange_code(self, code: str) -> TokenResponse:
        """
        Exchange the authorization code for tokens.

        Raises ``TokenExchangeFailed`` on network error, non-2xx status,
        or a body missing ``access_token`` / ``refresh_token`` / ``expires_in``.
        """
        ...

    @abstractmethod
    async def refresh_access_token(self, refresh_token: str) -> TokenResponse:
        """
        Run the ``refresh_token`` grant.

        Raises ``RefreshFailed`` on network error, timeout, non-2xx status,
        or a body missing ``access_token`` / ``expires_in``.
        """
        ...

    @abstractmethod
    async def graphql(
        self,
        access_token: str,
        query: str,
        variables: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Run a query against the provider API with a bearer token."""
        ...

    # ── Helpers ─────────────────────────────────────────────────────────

    def is_configured(self) -> bool:
        """Return True if client id / secret / redirect URI are all set."""
        return True
