"""
SQLAlchemy ORM models for forms, integrations, credentials and submissions.

Users live in the identity provider; ``*_user_id`` columns hold its ids.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import ARRAY, JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, relationship


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class IntegrationConnection(Base):
    """A sheet, calendar or Drive folder a form mirrors into."""

    __tablename__ = "integration_connections"

    connection_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    owner_user_id = Column(UUID(as_uuid=True), nullable=False)
    provider = Column(String(16), nullable=False)  # sheets | calendar | drive
    external_id = Column(String(256), nullable=False)
    external_url = Column(Text)
    sheet_name = Column(String(128), nullable=False, default="Form Submissions")
    # Append-only: columns are never reordered or removed.
    header_layout = Column(ARRAY(Text), nullable=False, default=list)
    settings = Column(JSONB, nullable=False, default=dict)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    last_synced = Column(DateTime(timezone=True))


class Form(Base):
    __tablename__ = "forms"

    form_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    owner_user_id = Column(UUID(as_uuid=True), nullable=False)
    title = Column(String(255), nullable=False)
    field_labels = Column(JSONB, nullable=False, default=dict)
    notification_emails = Column(ARRAY(Text), nullable=False, default=list)
    notify_includes_files = Column(Boolean, nullable=False, default=False)
    sheets_connection_id = Column(
        UUID(as_uuid=True),
        ForeignKey("integration_connections.connection_id", ondelete="SET NULL"),
        nullable=True,
    )
    calendar_connection_id = Column(
        UUID(as_uuid=True),
        ForeignKey("integration_connections.connection_id", ondelete="SET NULL"),
        nullable=True,
    )
    drive_connection_id = Column(
        UUID(as_uuid=True),
        ForeignKey("integration_connections.connection_id", ondelete="SET NULL"),
        nullable=True,
    )
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    sheets_connection = relationship("IntegrationConnection", foreign_keys=[sheets_connection_id])
    calendar_connection = relationship("IntegrationConnection", foreign_keys=[calendar_connection_id])
    drive_connection = relationship("IntegrationConnection", foreign_keys=[drive_connection_id])
    submissions = relationship("SubmissionRecord", back_populates="form", cascade="all, delete-orphan")


class SubmissionRecord(Base):
    __tablename__ = "submissions"

    submission_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    form_id = Column(UUID(as_uuid=True), ForeignKey("forms.form_id", ondelete="CASCADE"), nullable=False)
    payload = Column(JSONB, nullable=False, default=dict)
    submitted_at = Column(DateTime(timezone=True), default=_utcnow)
    processing_status = Column(String(16), nullable=False, default="pending")
    completed_at = Column(DateTime(timezone=True), nullable=True)

    form = relationship("Form", back_populates="submissions")
    deliveries = relationship("DeliveryLog", back_populates="submission", cascade="all, delete-orphan")

    __table_args__ = (Index("ix_submissions_form_submitted", "form_id", "submitted_at"),)


class DeliveryLog(Base):
    """One row per (submission, destination) attempt."""

    __tablename__ = "delivery_logs"

    log_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    submission_id = Column(
        UUID(as_uuid=True),
        ForeignKey("submissions.submission_id", ondelete="CASCADE"),
        nullable=False,
    )
    destination = Column(String(16), nullable=False)
    result = Column(String(32), nullable=False)
    detail = Column(Text)
    error_kind = Column(String(64))
    attempts = Column(Integer, nullable=False, default=0)
    external_ref = Column(Text)
    links = Column(JSONB, nullable=False, default=list)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    submission = relationship("SubmissionRecord", back_populates="deliveries")

    __table_args__ = (Index("ix_delivery_logs_submission", "submission_id", "destination"),)


class UserCredential(Base):
    __tablename__ = "user_credentials"

    credential_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), nullable=False)
    provider = Column(String(16), nullable=False)  # sheets | calendar
    account_label = Column(String(255))
    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text)
    token_type = Column(String(32), default="Bearer")
    expires_at = Column(DateTime(timezone=True), nullable=False)
    status = Column(String(16), nullable=False, default="active")
    error_message = Column(Text)
    connected_at = Column(DateTime(timezone=True), default=_utcnow)
    last_refreshed = Column(DateTime(timezone=True))

    __table_args__ = (UniqueConstraint("user_id", "provider", name="uq_user_credentials_user_provider"),)
