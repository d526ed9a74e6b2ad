"""
FastAPI dependencies (shared across routes).

Components are built once from ``config`` and handed to routes through
``Depends``; tests replace them with ``app.dependency_overrides``.
"""

from __future__ import annotations

from functools import lru_cache

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from auth.oauth_state import OAuthStateGuard
from config.settings import Settings, config
from connectors.base import BaseConnector
from connectors.encryption import TokenCipher
from connectors.jobber import JobberConnector
from connectors.token_manager import CredentialStore
from database.session import async_session_factory
from webhooks.ingestion import WebhookIngestor
from webhooks.signature import WebhookAuthenticator


def get_settings() -> Settings:
    return config


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return async_session_factory


@lru_cache
def get_connector() -> BaseConnector:
    return JobberConnector(
        config.jobber_client_id,
        config.jobber_client_secret,
        config.jobber_redirect_uri,
        timeout=config.provider_timeout_seconds,
    )


@lru_cache
def get_state_guard() -> OAuthStateGuard:
    return OAuthStateGuard(config.oauth_state_secret, ttl_seconds=config.oauth_state_ttl_seconds)


@lru_cache
def get_credential_store() -> CredentialStore:
    return CredentialStore(
        get_connector(),
        get_session_factory(),
        cipher=TokenCipher(config.token_encryption_key),
        refresh_window_seconds=config.token_refresh_window_seconds,
    )


@lru_cache
def get_webhook_ingestor() -> WebhookIngestor:
    return WebhookIngestor(
        WebhookAuthenticator(config.jobber_client_secret),
        get_session_factory(),
    )
