"""
JobberConnector — OAuth2 client for the Jobber API.

Token requests are JSON POSTs carrying the client credentials in the body.
Every outbound call is bounded by ``timeout``; a timeout surfaces as the
same failure as any other transport error.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Type
from urllib.parse import urlencode

import httpx
from pydantic import ValidationError

from connectors.base import BaseConnector
from utils.errors import CredentialError, RefreshFailed, TokenExchangeFailed
from utils.schemas import TokenResponse

logger = logging.getLogger(__name__)

# Jobber OAuth2 / API endpoints
JOBBER_AUTHORIZE_URL = "https://api.getjobber.com/api/oauth/authorize"
JOBBER_TOKEN_URL = "https://api.getjobber.com/api/oauth/token"
JOBBER_GRAPHQL_URL = "https://api.getjobber.com/api/graphql"


class JobberConnector(BaseConnector):
    """OAuth2 connector for Jobber."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._redirect_uri = redirect_uri
        self._timeout = timeout
        self._transport = transport

    @property
    def provider_name(self) -> str:
        return "jobber"

    def is_configured(self) -> bool:
        return bool(self._client_id and self._client_secret and self._redirect_uri)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    def get_auth_url(self, state: str) -> str:
        params = {
            "response_type": "code",
            "client_id": self._client_id,
            "redirect_uri": self._redirect_uri,
            "state": state,
        }
        return f"{JOBBER_AUTHORIZE_URL}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> TokenResponse:
        """Exchange the auth code for an access / refresh token pair."""
        token = await self._token_request(
            {
                "grant_type": "authorization_code",
                "client_id": self._client_id,
                "client_secret": self._client_secret,
                "code": code,
                "redirect_uri": self._redirect_uri,
            },
            error_cls=TokenExchangeFailed,
        )
        if not token.refresh_token:
            raise TokenExchangeFailed("Token exchange failed: no refresh_token in response")
        return token

    async def refresh_access_token(self, refresh_token: str) -> TokenResponse:
        return await self._token_request(
            {
                "grant_type": "refresh_token",
                "client_id": self._client_id,
                "client_secret": self._client_secret,
                "refresh_token": refresh_token,
            },
            error_cls=RefreshFailed,
        )

    async def _token_request(
        self,
        body: Dict[str, str],
        *,
        error_cls: Type[CredentialError],
    ) -> TokenResponse:
        """POST to the token endpoint; raise ``error_cls`` on any failure."""
        grant = body["grant_type"]
        try:
            async with self._client() as client:
                resp = await client.post(
                    JOBBER_TOKEN_URL,
                    json=body,
                    headers={"Accept": "application/json"},
                )
        except httpx.HTTPError as exc:
            logger.warning("Jobber %s request failed: %s", grant, exc.__class__.__name__)
            raise error_cls(f"Token request failed: {exc.__class__.__name__}") from exc

        try:
            token = TokenResponse.model_validate(resp.json())
        except (ValueError, ValidationError):
            token = TokenResponse()

        if resp.is_error or not token.access_token:
            reason = (
                token.error_description
                or token.error
                or f"status {resp.status_code} {resp.reason_phrase}".strip()
            )
            logger.warning("Jobber %s rejected: %s", grant, reason)
            raise error_cls(f"Token request failed: {reason}")
        if token.expires_in is None:
            logger.warning("Jobber %s response has no expires_in", grant)
            raise error_cls("Token request failed: no expires_in in response")

        return token

    async def graphql(
        self,
        access_token: str,
        query: str,
        variables: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        POST a GraphQL document.

        A non-2xx response is folded into the ``errors`` list so callers
        handle transport-level and query-level errors the same way.
        """
        async with self._client() as client:
            resp = await client.post(
                JOBBER_GRAPHQL_URL,
                json={"query": query, "variables": variables or {}},
                headers={"Authorization": f"Bearer {access_token}"},
            )
        try:
            body = resp.json()
        except ValueError:
            body = {}

        if resp.is_error:
            return {
                "errors": [
                    {
                        "message": f"GraphQL request failed with {resp.status_code}",
                        "extensions": {"status": resp.status_code, "response": body},
                    }
                ]
            }
        return body
