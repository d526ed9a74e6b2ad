"""
Tests for the webhook ingestion pipeline: auth, parsing, dedupe, atomicity.
"""

import asyncio
import json

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database.models import Job, JobStatus, WebhookEvent
from utils.errors import InvalidWebhookSignature, MalformedWebhookPayload, PersistenceFailure
from utils.schemas import IngestStage
from webhooks.ingestion import WebhookIngestor


def _body(**fields) -> bytes:
    return json.dumps(fields).encode()


async def _counts(session_factory):
    async with session_factory() as session:
        events = (await session.execute(select(func.count()).select_from(WebhookEvent))).scalar_one()
        jobs = (await session.execute(select(func.count()).select_from(Job))).scalar_one()
    return events, jobs


class TestIngest:
    @pytest.mark.asyncio
    async def test_fresh_delivery_persists_event_and_job(self, ingestor, authenticator, session_factory):
        body = _body(id="evt_1", topic="QUOTE_CREATE", data={"quoteId": "q1"})

        result = await ingestor.ingest(body, authenticator.compute_signature(body))

        assert result.stage is IngestStage.PERSISTED
        assert result.response_body() == {"ok": True}
        async with session_factory() as session:
            event = (await session.execute(select(WebhookEvent))).scalar_one()
            job = (await session.execute(select(Job))).scalar_one()
        assert event.external_id == "evt_1"
        assert event.topic == "QUOTE_CREATE"
        assert event.raw_payload["data"] == {"quoteId": "q1"}
        assert event.connection_id is None
        assert job.webhook_event_id == event.event_id
        assert job.status == JobStatus.PENDING

    @pytest.mark.asyncio
    async def test_event_id_fallback(self, ingestor, authenticator):
        body = _body(eventId="alt_1")
        result = await ingestor.ingest(body, authenticator.compute_signature(body))
        assert result.external_id == "alt_1"

    @pytest.mark.asyncio
    async def test_same_body_twice_is_deduped(self, ingestor, authenticator, session_factory):
        body = _body(id="evt_1", topic="QUOTE_CREATE")
        sig = authenticator.compute_signature(body)

        first = await ingestor.ingest(body, sig)
        second = await ingestor.ingest(body, sig)

        assert first.deduped is False
        assert second.deduped is True
        assert second.response_body() == {"ok": True, "deduped": True}
        assert await _counts(session_factory) == (1, 1)

    @pytest.mark.asyncio
    async def test_body_without_identifier_still_dedupes(self, ingestor, authenticator, session_factory):
        body = _body(topic="CLIENT_UPDATE")
        sig = authenticator.compute_signature(body)
        await ingestor.ingest(body, sig)
        result = await ingestor.ingest(body, sig)
        assert result.deduped is True
        assert await _counts(session_factory) == (1, 1)

    @pytest.mark.asyncio
    async def test_same_identifier_different_content_is_new(self, ingestor, authenticator, session_factory):
        for n in (1, 2):
            body = _body(id="evt_1", attempt=n)
            await ingestor.ingest(body, authenticator.compute_signature(body))
        assert await _counts(session_factory) == (2, 2)


class TestRejections:
    @pytest.mark.asyncio
    async def test_bad_signature(self, ingestor, session_factory):
        with pytest.raises(InvalidWebhookSignature):
            await ingestor.ingest(_body(id="x"), "bm90LXRoZS1zaWduYXR1cmU=")
        assert await _counts(session_factory) == (0, 0)

    @pytest.mark.asyncio
    async def test_missing_signature(self, ingestor):
        with pytest.raises(InvalidWebhookSignature):
            await ingestor.ingest(_body(id="x"), None)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [
            b"{not json",
            b"[1, 2]",
            b"\xff\xfe",
            b'{"id":"evt_nan","amount":NaN}',
            b'{"id":"evt_inf","amount":Infinity}',
            b'{"id":"evt_ninf","amount":-Infinity}',
        ],
    )
    async def test_malformed_payload_after_authentication(self, ingestor, authenticator, body):
        with pytest.raises(MalformedWebhookPayload):
            await ingestor.ingest(body, authenticator.compute_signature(body))

    @pytest.mark.asyncio
    async def test_storage_failure_is_persistence_failure(self, authenticator):
        # Engine with no tables: every insert fails.
        bare = create_async_engine("sqlite+aiosqlite://")
        try:
            ingestor = WebhookIngestor(
                authenticator,
                async_sessionmaker(bare, class_=AsyncSession, expire_on_commit=False),
            )
            body = _body(id="evt_1")
            with pytest.raises(PersistenceFailure):
                await ingestor.ingest(body, authenticator.compute_signature(body))
        finally:
            await bare.dispose()


class TestConnectionResolution:
    @pytest.mark.asyncio
    async def test_known_connection_is_linked(self, ingestor, authenticator, store, session_factory):
        conn = await store.exchange_code("code")
        body = _body(id="evt_1", connectionId=str(conn.connection_id))

        await ingestor.ingest(body, authenticator.compute_signature(body))

        async with session_factory() as session:
            event = (await session.execute(select(WebhookEvent))).scalar_one()
        assert event.connection_id == conn.connection_id
        detail = await store.get_connection(conn.connection_id)
        assert [e.external_id for e in detail.recent_webhook_events] == ["evt_1"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("candidate", ["9a7f5e5c-3c1e-4d7b-8f2a-1e2d3c4b5a69", "garbage", 42])
    async def test_unknown_connection_left_unresolved(self, ingestor, authenticator, session_factory, candidate):
        body = _body(id="evt_1", connectionId=candidate)
        result = await ingestor.ingest(body, authenticator.compute_signature(body))
        assert result.stage is IngestStage.PERSISTED
        async with session_factory() as session:
            event = (await session.execute(select(WebhookEvent))).scalar_one()
        assert event.connection_id is None


class TestConcurrentDuplicates:
    @pytest.mark.asyncio
    async def test_simultaneous_deliveries_leave_one_event(self, authenticator, file_engine):
        factory = async_sessionmaker(file_engine, class_=AsyncSession, expire_on_commit=False)
        ingestor = WebhookIngestor(authenticator, factory)
        body = _body(id="evt_race", topic="JOB_UPDATE")
        sig = authenticator.compute_signature(body)

        results = await asyncio.gather(*(ingestor.ingest(body, sig) for _ in range(5)))

        stages = sorted(r.stage.value for r in results)
        assert stages == ["deduped"] * 4 + ["persisted"]
        assert await _counts(factory) == (1, 1)
