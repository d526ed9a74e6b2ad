"""
SQLAlchemy ORM models for connections, credentials, webhook events and jobs.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import ARRAY, JSONB
from sqlalchemy.orm import DeclarativeBase, relationship


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# JSONB / text[] on PostgreSQL, plain JSON elsewhere (tests run on SQLite).
_JsonType = JSON().with_variant(JSONB(), "postgresql")
_ScopesType = JSON().with_variant(ARRAY(Text), "postgresql")


class Base(DeclarativeBase):
    pass


class JobStatus(str, enum.Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


class Connection(Base):
    __tablename__ = "connections"

    connection_id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    provider = Column(String(32), nullable=False, default="jobber")
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    last_refreshed_at = Column(DateTime(timezone=True), nullable=True)

    credential = relationship(
        "Credential",
        back_populates="connection",
        uselist=False,
        cascade="all, delete-orphan",
    )
    webhook_events = relationship("WebhookEvent", back_populates="connection")


class Credential(Base):
    __tablename__ = "credentials"

    connection_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("connections.connection_id", ondelete="CASCADE"),
        primary_key=True,
    )
    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    scopes = Column(_ScopesType, nullable=False, default=list)
    # Bumped on every write; refresh writes are compare-and-swap on it.
    version = Column(Integer, nullable=False, default=1)
    updated_at = Column(DateTime(timezone=True), default=_utcnow)

    connection = relationship("Connection", back_populates="credential")


class WebhookEvent(Base):
    __tablename__ = "webhook_events"
    __table_args__ = (
        UniqueConstraint(
            "external_id",
            "payload_hash",
            name="uq_webhook_events_external_id_payload_hash",
        ),
        Index("ix_webhook_events_connection_received", "connection_id", "received_at"),
    )

    event_id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    # "" when the provider did not send an identifier, so the unique pair
    # still collides on identical bodies (NULLs never compare equal).
    external_id = Column(String(255), nullable=False, default="")
    payload_hash = Column(String(64), nullable=False)
    topic = Column(String(128), nullable=True)
    connection_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("connections.connection_id", ondelete="SET NULL"),
        nullable=True,
    )
    raw_payload = Column(_JsonType, nullable=False)
    received_at = Column(DateTime(timezone=True), default=_utcnow)

    connection = relationship("Connection", back_populates="webhook_events")
    job = relationship("Job", back_populates="webhook_event", uselist=False)


class Job(Base):
    __tablename__ = "jobs"

    job_id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    webhook_event_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("webhook_events.event_id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    status = Column(
        Enum(JobStatus, name="job_status", native_enum=False, length=16),
        nullable=False,
        default=JobStatus.PENDING,
    )
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    webhook_event = relationship("WebhookEvent", back_populates="job")
