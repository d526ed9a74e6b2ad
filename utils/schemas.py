"""
Pydantic schemas shared across the integration layer.
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


# ═══════════════════════════════════════════════════════════════════════════════
# OAuth state
# ═══════════════════════════════════════════════════════════════════════════════


class StatePayload(BaseModel):
    """Claims carried by the signed OAuth ``state`` value."""

    iat: int
    exp: int
    nonce: str


# ═══════════════════════════════════════════════════════════════════════════════
# Provider token endpoint
# ═══════════════════════════════════════════════════════════════════════════════


class TokenResponse(BaseModel):
    """
    Body returned by the provider's token endpoint for both the
    ``authorization_code`` and ``refresh_token`` grants.

    Unknown keys are ignored; error responses populate ``error`` /
    ``error_description`` instead of the token fields.
    """

    model_config = ConfigDict(extra="ignore")

    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    scope: Optional[str] = None
    token_type: Optional[str] = None

    error: Optional[str] = None
    error_description: Optional[str] = None

    def scope_list(self) -> Optional[List[str]]:
        """Space-separated ``scope`` → list, or None when no scope was returned."""
        if not self.scope:
            return None
        return [s for s in self.scope.split(" ") if s]


# ═══════════════════════════════════════════════════════════════════════════════
# Webhook ingestion
# ═══════════════════════════════════════════════════════════════════════════════


class IngestStage(str, enum.Enum):
    """Terminal stage of an accepted delivery; rejections raise instead."""

    PERSISTED = "persisted"
    DEDUPED = "deduped"


class IngestResult(BaseModel):
    stage: IngestStage
    event_id: Optional[str] = None
    job_id: Optional[str] = None
    payload_hash: str
    external_id: Optional[str] = None
    topic: Optional[str] = None

    @property
    def deduped(self) -> bool:
        return self.stage is IngestStage.DEDUPED

    def response_body(self) -> Dict[str, Any]:
        if self.deduped:
            return {"ok": True, "deduped": True}
        return {"ok": True}


# ═══════════════════════════════════════════════════════════════════════════════
# Connection admin views (never expose token secrets)
# ═══════════════════════════════════════════════════════════════════════════════


class WebhookEventSummary(BaseModel):
    event_id: str
    external_id: Optional[str] = None
    topic: Optional[str] = None
    payload_hash: str
    received_at: Optional[datetime] = None


class ConnectionSummary(BaseModel):
    connection_id: str
    provider: str
    created_at: Optional[datetime] = None
    last_refreshed_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    scopes: List[str] = Field(default_factory=list)
    token_valid: bool = False


class ConnectionDetail(ConnectionSummary):
    recent_webhook_events: List[WebhookEventSummary] = Field(default_factory=list)
