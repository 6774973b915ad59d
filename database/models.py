"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

Key design decisions:
  - JSON type instead of PostgreSQL-specific JSONB.
  - String primary keys (uuid hex) — no database-specific sequences.
  - Uniqueness that the engine relies on ((subject_id, day) on the queue and
    on responses) is declared as a UniqueConstraint, not left to the code.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    String, Integer, Boolean, DateTime, Text, ForeignKey,
    Index, JSON, UniqueConstraint,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Subjects (completed assessments) & payments
# ──────────────────────────────────────────────────────────────

class SubjectRow(Base):
    __tablename__ = "subjects"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    email: Mapped[str] = mapped_column(String(320), default="")
    phone_number: Mapped[str] = mapped_column(String(32), default="")
    guide_type: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    sms_opt_in: Mapped[bool] = mapped_column(Boolean, default=False)
    sms_opted_out: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class PaymentRow(Base):
    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    subject_id: Mapped[str] = mapped_column(String(64), ForeignKey("subjects.id"), nullable=False)
    status: Mapped[str] = mapped_column(String(32), default="succeeded")
    amount_cents: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_payments_subject_status", "subject_id", "status"),
    )


# ──────────────────────────────────────────────────────────────
#  Check-in queue
# ──────────────────────────────────────────────────────────────

class QueueItemRow(Base):
    __tablename__ = "check_in_queue"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    subject_id: Mapped[str] = mapped_column(String(64), ForeignKey("subjects.id"), nullable=False)
    day: Mapped[int] = mapped_column(Integer, nullable=False)

    due_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    template_key: Mapped[str] = mapped_column(String(64), nullable=False)
    channel: Mapped[str] = mapped_column(String(16), default="email")

    status: Mapped[str] = mapped_column(String(16), default="queued")
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("subject_id", "day", name="uq_check_in_queue_subject_day"),
        Index("ix_check_in_queue_status_due", "status", "due_at"),
    )


# ──────────────────────────────────────────────────────────────
#  Content
# ──────────────────────────────────────────────────────────────

class TemplateRow(Base):
    __tablename__ = "message_templates"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    subject: Mapped[str] = mapped_column(String(256), default="")
    shell_text: Mapped[str] = mapped_column(Text, nullable=False)
    disclaimer_text: Mapped[str] = mapped_column(Text, default="")
    channel: Mapped[str] = mapped_column(String(16), default="email")
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class DiagnosisInsertRow(Base):
    __tablename__ = "diagnosis_inserts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    diagnosis_code: Mapped[str] = mapped_column(String(64), nullable=False)
    day: Mapped[int] = mapped_column(Integer, nullable=False)
    branch: Mapped[str] = mapped_column(String(16), nullable=False)
    insert_text: Mapped[str] = mapped_column(Text, nullable=False)

    __table_args__ = (
        UniqueConstraint("diagnosis_code", "day", "branch", name="uq_diagnosis_inserts_key"),
    )


class EncouragementRow(Base):
    __tablename__ = "encouragements"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    text: Mapped[str] = mapped_column(String(512), unique=True, nullable=False)


# ──────────────────────────────────────────────────────────────
#  Responses & alerts
# ──────────────────────────────────────────────────────────────

class CheckinResponseRow(Base):
    __tablename__ = "check_in_responses"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    subject_id: Mapped[str] = mapped_column(String(64), nullable=False)
    day: Mapped[int] = mapped_column(Integer, nullable=False)
    value: Mapped[str] = mapped_column(String(16), nullable=False)
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        UniqueConstraint("subject_id", "day", name="uq_check_in_responses_subject_day"),
    )


class AlertRow(Base):
    __tablename__ = "alerts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    subject_id: Mapped[str] = mapped_column(String(64), nullable=False)
    type: Mapped[str] = mapped_column(String(32), default="red_flag")
    payload: Mapped[Any] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_alerts_subject", "subject_id"),
    )
