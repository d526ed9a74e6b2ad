"""
Connector routes — OAuth connect/callback, connection listing, refresh,
disconnect and a connectivity check against the Jobber API.
"""

from __future__ import annotations

import html
import logging
from typing import Any, Dict, List, Optional

import httpx
from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse

from api.dependencies import get_connector, get_credential_store, get_settings, get_state_guard
from auth.oauth_state import OAuthStateGuard
from config.settings import Settings
from connectors.base import BaseConnector
from connectors.token_manager import CredentialStore
from utils.errors import CredentialError, CredentialNotFound, SignedTokenError
from utils.schemas import ConnectionDetail, ConnectionSummary

logger = logging.getLogger(__name__)

router = APIRouter(tags=["connectors"])

_VIEWER_QUERY = """
  query ConnectionTestQuery {
    viewer {
      id
      email
      name
    }
  }
"""


def _app_url(settings: Settings, path: str) -> str:
    return settings.app_base_url.rstrip("/") + path


# ── OAuth ──────────────────────────────────────────────────────────────


@router.get("/jobber/connect", response_model=None)
async def connect(
    guard: OAuthStateGuard = Depends(get_state_guard),
    connector: BaseConnector = Depends(get_connector),
) -> HTMLResponse | RedirectResponse:
    """Redirect the operator to Jobber's consent screen."""
    if not connector.is_configured():
        logger.error("OAuth connect refused: Jobber client credentials are not configured")
        return _error_html("Jobber OAuth is not configured.", status.HTTP_503_SERVICE_UNAVAILABLE)
    return RedirectResponse(connector.get_auth_url(guard.mint()))


@router.get("/jobber/callback", response_model=None)
async def oauth_callback(
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    error_description: Optional[str] = Query(None),
    guard: OAuthStateGuard = Depends(get_state_guard),
    store: CredentialStore = Depends(get_credential_store),
    settings: Settings = Depends(get_settings),
) -> HTMLResponse | RedirectResponse:
    """
    Jobber redirects here after consent.

    Verifies the signed state, exchanges the code, stores the new
    connection and sends the operator to the connection listing.
    """
    if error:
        return _error_html(f"Authorization denied: {error_description or error}", 400)
    if not code or not state:
        return _error_html("Missing required query params: code and state.", 400)

    try:
        guard.verify(state)
    except SignedTokenError as exc:
        logger.warning("OAuth callback rejected: %s", exc.message)
        return _error_html(exc.message, status.HTTP_401_UNAUTHORIZED)

    try:
        conn = await store.exchange_code(code)
    except CredentialError as exc:
        logger.error("OAuth token exchange failed: %s", exc.message)
        return _error_html(exc.message, 400)

    logger.info("OAuth connected: connection=%s", conn.connection_id)
    return RedirectResponse(_app_url(settings, "/connections"), status_code=status.HTTP_303_SEE_OTHER)


# ── Connections ────────────────────────────────────────────────────────


@router.get("/connections", response_model=List[ConnectionSummary])
async def list_connections(
    store: CredentialStore = Depends(get_credential_store),
) -> List[ConnectionSummary]:
    return await store.list_connections()


@router.get("/connections/{connection_id}", response_model=ConnectionDetail)
async def get_connection(
    connection_id: str,
    store: CredentialStore = Depends(get_credential_store),
) -> ConnectionDetail:
    detail = await store.get_connection(connection_id)
    if detail is None:
        raise HTTPException(status.HTTP_404_NOT_FOUND, "Connection not found")
    return detail


@router.post("/api/connections/{connection_id}/refresh", response_model=None)
async def refresh_connection(
    connection_id: str,
    store: CredentialStore = Depends(get_credential_store),
    settings: Settings = Depends(get_settings),
) -> JSONResponse | RedirectResponse:
    """Force a refresh regardless of the current expiry."""
    try:
        await store.refresh(connection_id)
    except CredentialNotFound:
        return JSONResponse({"error": "Token not found"}, status_code=status.HTTP_404_NOT_FOUND)
    except CredentialError as exc:
        return JSONResponse({"error": exc.message}, status_code=status.HTTP_400_BAD_REQUEST)
    return RedirectResponse(
        _app_url(settings, f"/connections/{connection_id}"),
        status_code=status.HTTP_303_SEE_OTHER,
    )


@router.post("/api/connections/{connection_id}/disconnect")
async def disconnect_connection(
    connection_id: str,
    store: CredentialStore = Depends(get_credential_store),
    settings: Settings = Depends(get_settings),
) -> RedirectResponse:
    if not await store.disconnect(connection_id):
        raise HTTPException(status.HTTP_404_NOT_FOUND, "Connection not found")
    return RedirectResponse(_app_url(settings, "/connections"), status_code=status.HTTP_303_SEE_OTHER)


@router.get("/api/jobber/test")
async def test_connection(
    connection_id: Optional[str] = Query(None, alias="connectionId"),
    store: CredentialStore = Depends(get_credential_store),
    connector: BaseConnector = Depends(get_connector),
) -> JSONResponse:
    """Run a ``viewer`` query with a valid token for the connection."""
    if not connection_id:
        return JSONResponse({"error": "Missing connectionId"}, status_code=status.HTTP_400_BAD_REQUEST)

    try:
        access_token = await store.get_valid_access_token(connection_id)
    except CredentialNotFound as exc:
        return JSONResponse({"ok": False, "error": exc.message}, status_code=status.HTTP_404_NOT_FOUND)
    except CredentialError as exc:
        return JSONResponse({"ok": False, "error": exc.message}, status_code=status.HTTP_502_BAD_GATEWAY)

    try:
        result: Dict[str, Any] = await connector.graphql(access_token, _VIEWER_QUERY)
    except httpx.HTTPError as exc:
        logger.warning("Jobber test query failed: %s", exc.__class__.__name__)
        return JSONResponse(
            {"ok": False, "error": f"Request failed: {exc.__class__.__name__}"},
            status_code=status.HTTP_502_BAD_GATEWAY,
        )

    if result.get("errors"):
        return JSONResponse({"ok": False, "errors": result["errors"]}, status_code=status.HTTP_400_BAD_REQUEST)
    return JSONResponse({"ok": True, "data": result.get("data")})


# ── Error page ─────────────────────────────────────────────────────────


def _error_html(message: str, status_code: int) -> HTMLResponse:
    return HTMLResponse(
        content=(
            "<!doctype html><html><head><title>OAuth Error</title></head>"
            '<body style="font-family:sans-serif;padding:24px">'
            f"<h1>OAuth Error</h1><p>{html.escape(message)}</p>"
            '<p><a href="/">Back home</a></p></body></html>'
        ),
        status_code=status_code,
    )
