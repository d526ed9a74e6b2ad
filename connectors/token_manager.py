"""
Token manager — exchange / store / refresh OAuth credentials per connection.

``CredentialStore.get_valid_access_token`` is the single interface other
code uses to obtain an access token for a connection.  Refresh is lazy:
a token within ``refresh_window_seconds`` of expiry is refreshed on read,
before it is handed out.

Concurrent refreshes of one connection are serialised by a per-connection
``asyncio.Lock`` inside this process; across processes the credential
write is a compare-and-swap on ``Credential.version``, and the loser of a
race returns the winner's credential instead of overwriting it.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from connectors.base import BaseConnector
from connectors.encryption import TokenCipher
from database.models import Connection, Credential, WebhookEvent
from utils.errors import CredentialNotFound
from utils.schemas import ConnectionDetail, ConnectionSummary, WebhookEventSummary

logger = logging.getLogger(__name__)

REFRESH_WINDOW_SECONDS = 120


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


def _parse_id(connection_id: str | uuid.UUID) -> Optional[uuid.UUID]:
    if isinstance(connection_id, uuid.UUID):
        return connection_id
    try:
        return uuid.UUID(str(connection_id))
    except ValueError:
        return None


class CredentialStore:
    def __init__(
        self,
        connector: BaseConnector,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        cipher: Optional[TokenCipher] = None,
        refresh_window_seconds: int = REFRESH_WINDOW_SECONDS,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._connector = connector
        self._session_factory = session_factory
        self._cipher = cipher or TokenCipher(None)
        self._refresh_window = timedelta(seconds=refresh_window_seconds)
        self._clock = clock or _utcnow
        self._locks: Dict[uuid.UUID, asyncio.Lock] = {}

    def _now(self) -> datetime:
        return _as_utc(self._clock())

    def _lock_for(self, cid: uuid.UUID) -> asyncio.Lock:
        lock = self._locks.get(cid)
        if lock is None:
            lock = self._locks[cid] = asyncio.Lock()
        return lock

    def needs_refresh(self, expires_at: datetime) -> bool:
        return _as_utc(expires_at) - self._now() <= self._refresh_window

    # ── Reads ──────────────────────────────────────────────────────────

    async def _load_credential(self, connection_id: str | uuid.UUID) -> Credential:
        cid = _parse_id(connection_id)
        if cid is None:
            raise CredentialNotFound(str(connection_id))
        async with self._session_factory() as session:
            result = await session.execute(
                select(Credential).where(Credential.connection_id == cid)
            )
            cred = result.scalar_one_or_none()
        if cred is None:
            raise CredentialNotFound(str(connection_id))
        return cred

    async def get_valid_access_token(self, connection_id: str | uuid.UUID) -> str:
        """
        Return an access token that is valid for at least the refresh window.

        Raises ``CredentialNotFound`` when the connection has no credential
        and ``RefreshFailed`` when a due refresh fails; an expiring token is
        never returned in place of a failed refresh.
        """
        cred = await self._load_credential(connection_id)
        if not self.needs_refresh(cred.expires_at):
            return self._cipher.decrypt(cred.access_token)

        async with self._lock_for(cred.connection_id):
            # Another caller may have refreshed while we waited.
            cred = await self._load_credential(cred.connection_id)
            if self.needs_refresh(cred.expires_at):
                cred = await self._refresh_locked(cred)
        return self._cipher.decrypt(cred.access_token)

    # ── Writes ─────────────────────────────────────────────────────────

    async def exchange_code(
        self,
        code: str,
        connection_id: str | uuid.UUID | None = None,
    ) -> Connection:
        """
        Run the code grant and persist the new Connection + Credential in
        one transaction.  Raises ``TokenExchangeFailed``; nothing is
        written in that case.  A ``connection_id`` that is not a UUID raises
        ``ValueError`` before the provider is called.
        """
        cid = uuid.uuid4()
        if connection_id is not None:
            cid = _parse_id(connection_id)
            if cid is None:
                raise ValueError(f"connection_id is not a UUID: {connection_id!r}")

        token = await self._connector.exchange_code(code)
        now = self._now()

        conn = Connection(
            connection_id=cid,
            provider=self._connector.provider_name,
            created_at=now,
            last_refreshed_at=now,
        )
        conn.credential = Credential(
            access_token=self._cipher.encrypt(token.access_token),
            refresh_token=self._cipher.encrypt(token.refresh_token),
            expires_at=now + timedelta(seconds=token.expires_in or 0),
            scopes=token.scope_list() or [],
            version=1,
            updated_at=now,
        )
        async with self._session_factory() as session:
            async with session.begin():
                session.add(conn)

        logger.info("Created %s connection %s", conn.provider, conn.connection_id)
        return conn

    async def refresh(
        self,
        connection_id: str | uuid.UUID,
        current_refresh_token: Optional[str] = None,
    ) -> Credential:
        """
        Refresh unconditionally and return the stored credential.

        ``current_refresh_token`` defaults to the stored one.  Raises
        ``CredentialNotFound`` or ``RefreshFailed``; on failure the stored
        credential is left untouched.
        """
        cred = await self._load_credential(connection_id)
        async with self._lock_for(cred.connection_id):
            cred = await self._load_credential(cred.connection_id)
            return await self._refresh_locked(cred, current_refresh_token)

    async def _refresh_locked(
        self,
        existing: Credential,
        refresh_token: Optional[str] = None,
    ) -> Credential:
        cid = existing.connection_id
        refresh_token = refresh_token or self._cipher.decrypt(existing.refresh_token)

        token = await self._connector.refresh_access_token(refresh_token)
        now = self._now()

        values = {
            "access_token": self._cipher.encrypt(token.access_token),
            "refresh_token": self._cipher.encrypt(token.refresh_token or refresh_token),
            "expires_at": now + timedelta(seconds=token.expires_in or 0),
            "version": existing.version + 1,
            "updated_at": now,
        }
        scopes = token.scope_list()
        if scopes is not None:
            values["scopes"] = scopes

        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(Credential)
                    .where(
                        Credential.connection_id == cid,
                        Credential.version == existing.version,
                    )
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                won = result.rowcount == 1
                if won:
                    await session.execute(
                        update(Connection)
                        .where(Connection.connection_id == cid)
                        .values(last_refreshed_at=now)
                        .execution_options(synchronize_session=False)
                    )

        if won:
            logger.info("Refreshed %s token for connection %s", self._connector.provider_name, cid)
        else:
            logger.info(
                "Concurrent refresh already stored a newer credential for %s; discarding ours",
                cid,
            )
        return await self._load_credential(cid)

    async def disconnect(self, connection_id: str | uuid.UUID) -> bool:
        """
        Delete a connection and its credential.
        Returns True if deleted, False if not found.
        """
        cid = _parse_id(connection_id)
        if cid is None:
            return False
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    select(Connection)
                    .options(
                        selectinload(Connection.credential),
                        selectinload(Connection.webhook_events),
                    )
                    .where(Connection.connection_id == cid)
                )
                conn = result.scalar_one_or_none()
                if conn is None:
                    return False
                await session.delete(conn)

        self._locks.pop(cid, None)
        logger.info("Disconnected %s connection %s", conn.provider, cid)
        return True

    # ── Admin views ────────────────────────────────────────────────────

    def _summary(self, conn: Connection, cls=ConnectionSummary, **extra) -> ConnectionSummary:
        cred = conn.credential
        return cls(
            connection_id=str(conn.connection_id),
            provider=conn.provider,
            created_at=conn.created_at,
            last_refreshed_at=conn.last_refreshed_at,
            expires_at=cred.expires_at if cred else None,
            scopes=list(cred.scopes or []) if cred else [],
            token_valid=bool(cred and _as_utc(cred.expires_at) > self._now()),
            **extra,
        )

    async def list_connections(self) -> List[ConnectionSummary]:
        """All connections, newest first.  Token secrets are never included."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(Connection)
                .options(selectinload(Connection.credential))
                .order_by(Connection.created_at.desc())
            )
            rows = result.scalars().all()
        return [self._summary(c) for c in rows]

    async def get_connection(
        self,
        connection_id: str | uuid.UUID,
        recent_events: int = 20,
    ) -> Optional[ConnectionDetail]:
        cid = _parse_id(connection_id)
        if cid is None:
            return None
        async with self._session_factory() as session:
            result = await session.execute(
                select(Connection)
                .options(selectinload(Connection.credential))
                .where(Connection.connection_id == cid)
            )
            conn = result.scalar_one_or_none()
            if conn is None:
                return None
            events = await session.execute(
                select(WebhookEvent)
                .where(WebhookEvent.connection_id == cid)
                .order_by(WebhookEvent.received_at.desc())
                .limit(recent_events)
            )
            event_rows = events.scalars().all()

        return self._summary(
            conn,
            cls=ConnectionDetail,
            recent_webhook_events=[
                WebhookEventSummary(
                    event_id=str(e.event_id),
                    external_id=e.external_id or None,
                    topic=e.topic,
                    payload_hash=e.payload_hash,
                    received_at=e.received_at,
                )
                for e in event_rows
            ],
        )
