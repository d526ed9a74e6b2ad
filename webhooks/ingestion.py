"""
Webhook ingestion pipeline.

Per delivery::

    RECEIVED → AUTHENTICATED → PARSED → PERSISTED | DEDUPED
                    └──────────┴──→ REJECTED

The event row and its PENDING job are written in one transaction.  The
unique (external_id, payload_hash) constraint is the only guard against
concurrent duplicate deliveries: whichever insert commits first wins and
every other one is reported as deduped.  No job is processed here.
"""

from __future__ import annotations

import json
import logging
import uuid
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database.models import Connection, Job, JobStatus, WebhookEvent
from utils.errors import (
    DuplicateWebhook,
    InvalidWebhookSignature,
    MalformedWebhookPayload,
    PersistenceFailure,
)
from utils.schemas import IngestResult, IngestStage
from webhooks.signature import WebhookAuthenticator, payload_sha256

logger = logging.getLogger(__name__)


def _reject_constant(name: str) -> Any:
    # NaN and Infinity are not JSON.
    raise ValueError(f"Invalid JSON constant: {name}")


def _string_field(payload: Dict[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        value = payload.get(key)
        if isinstance(value, str) and value:
            return value
    return None


class WebhookIngestor:
    def __init__(
        self,
        authenticator: WebhookAuthenticator,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        self._authenticator = authenticator
        self._session_factory = session_factory

    async def ingest(
        self,
        raw_body: bytes,
        signature: Optional[str],
        *,
        request_id: Optional[str] = None,
    ) -> IngestResult:
        """
        Authenticate, parse and persist one delivery.

        Raises ``InvalidWebhookSignature`` (401), ``MalformedWebhookPayload``
        (400) or ``PersistenceFailure`` (500).  A duplicate delivery is a
        successful result with ``stage == DEDUPED``.
        """
        if not self._authenticator.verify(raw_body, signature):
            logger.warning("Webhook rejected: bad signature (request_id=%s)", request_id)
            raise InvalidWebhookSignature()

        try:
            payload = json.loads(raw_body.decode("utf-8"), parse_constant=_reject_constant)
        except (UnicodeDecodeError, ValueError) as exc:
            raise MalformedWebhookPayload() from exc
        if not isinstance(payload, dict):
            raise MalformedWebhookPayload()

        payload_hash = payload_sha256(raw_body)
        external_id = _string_field(payload, "id", "eventId")
        topic = _string_field(payload, "topic")

        try:
            return await self._persist(payload, payload_hash, external_id, topic)
        except DuplicateWebhook:
            logger.info(
                "Webhook deduped: external_id=%s hash=%s (request_id=%s)",
                external_id, payload_hash, request_id,
            )
            return IngestResult(
                stage=IngestStage.DEDUPED,
                payload_hash=payload_hash,
                external_id=external_id,
                topic=topic,
            )
        except SQLAlchemyError as exc:
            logger.error(
                "Webhook persistence failed: external_id=%s hash=%s topic=%s "
                "(request_id=%s): %s",
                external_id, payload_hash, topic, request_id, exc.__class__.__name__,
            )
            raise PersistenceFailure() from exc

    async def _resolve_connection(
        self,
        session: AsyncSession,
        payload: Dict[str, Any],
    ) -> Optional[uuid.UUID]:
        """
        Best-effort owner lookup from the payload's ``connectionId``.

        Jobber payloads carry no local identifier, so this only resolves
        when the sender includes one that names an existing connection.
        """
        candidate = _string_field(payload, "connectionId")
        if candidate is None:
            return None
        try:
            cid = uuid.UUID(candidate)
        except ValueError:
            return None
        result = await session.execute(
            select(Connection.connection_id).where(Connection.connection_id == cid)
        )
        return result.scalar_one_or_none()

    async def _persist(
        self,
        payload: Dict[str, Any],
        payload_hash: str,
        external_id: Optional[str],
        topic: Optional[str],
    ) -> IngestResult:
        async with self._session_factory() as session:
            try:
                async with session.begin():
                    event = WebhookEvent(
                        event_id=uuid.uuid4(),
                        external_id=external_id or "",
                        payload_hash=payload_hash,
                        topic=topic,
                        connection_id=await self._resolve_connection(session, payload),
                        raw_payload=payload,
                    )
                    job = Job(job_id=uuid.uuid4(), webhook_event_id=event.event_id, status=JobStatus.PENDING)
                    session.add(event)
                    await session.flush()
                    session.add(job)
            except IntegrityError:
                if await self._already_stored(external_id, payload_hash):
                    raise DuplicateWebhook()
                raise

        logger.info(
            "Webhook received: event_id=%s topic=%s has_external_id=%s",
            event.event_id, topic, bool(external_id),
        )
        return IngestResult(
            stage=IngestStage.PERSISTED,
            event_id=str(event.event_id),
            job_id=str(job.job_id),
            payload_hash=payload_hash,
            external_id=external_id,
            topic=topic,
        )

    async def _already_stored(self, external_id: Optional[str], payload_hash: str) -> bool:
        """Tell a unique-key collision apart from any other integrity error."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(WebhookEvent.event_id).where(
                    WebhookEvent.external_id == (external_id or ""),
                    WebhookEvent.payload_hash == payload_hash,
                )
            )
            return result.first() is not None
