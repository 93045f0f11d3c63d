"""
SQLAlchemy ORM models for the Loan Lead Pipeline.

Persistent entities: visitors, return tokens, leads, dead letters and the
activity log. Timestamps are naive UTC.
"""

from sqlalchemy import (
    Column, String, Integer, Boolean, DateTime, Text, ForeignKey,
    JSON, Index,
)
from sqlalchemy.orm import DeclarativeBase

from lead_pipeline.models import utcnow


class Base(DeclarativeBase):
    pass


class VisitorRow(Base):
    __tablename__ = "visitors"

    id = Column(String(36), primary_key=True)
    email_hash = Column(String(64), nullable=False, unique=True)
    session_id = Column(String(255), nullable=False)
    last_activity_at = Column(DateTime, nullable=False, default=utcnow)
    abandonment_step = Column(Integer, nullable=False, default=1)
    abandoned = Column(Boolean, nullable=False, default=False)
    phone_number = Column(String(16), nullable=True)
    credit_status = Column(String(10), nullable=False, default="unknown")  # unknown, approved, declined
    metadata_json = Column(JSON, default=dict)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index("ix_visitor_inactive", "abandoned", "last_activity_at"),
    )


class ReturnTokenRow(Base):
    __tablename__ = "return_tokens"

    token = Column(String(64), primary_key=True)
    visitor_id = Column(String(36), ForeignKey("visitors.id"), nullable=False, index=True)
    issued_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    abandonment_step = Column(Integer, nullable=False, default=1)
    used = Column(Boolean, nullable=False, default=False)
    used_at = Column(DateTime, nullable=True)
    message_sent = Column(Boolean, nullable=False, default=False)
    provider_message_id = Column(String(255), nullable=True)


class LeadRow(Base):
    __tablename__ = "leads"

    id = Column(String(36), primary_key=True)
    visitor_id = Column(String(36), ForeignKey("visitors.id"), nullable=False, index=True)
    credit_check_id = Column(String(36), nullable=False, unique=True)
    lead_data = Column(JSON, nullable=False)
    status = Column(String(20), nullable=False, default="pending")  # pending, processing, submitted, failed, dead_lettered
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    external_reference = Column(String(255), nullable=True)
    submitted_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index("ix_lead_status_created", "status", "created_at"),
    )


class DeadLetterRow(Base):
    __tablename__ = "dead_letters"

    lead_id = Column(String(36), ForeignKey("leads.id"), primary_key=True)
    error = Column(Text, nullable=False)
    attempts = Column(Integer, nullable=False, default=0)
    dead_lettered_at = Column(DateTime, nullable=False)
    resolved_at = Column(DateTime, nullable=True)


class ActivityRow(Base):
    """Append-only audit trail. ``seq`` gives a stable write order."""
    __tablename__ = "activity_log"

    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String(36), nullable=False, unique=True)
    stage = Column(String(50), nullable=False, index=True)
    action = Column(String(50), nullable=False)
    target_id = Column(String(64), nullable=True, index=True)
    outcome = Column(String(10), nullable=False)  # success, failure, skipped
    timestamp = Column(DateTime, nullable=False, default=utcnow)
    metadata_json = Column(JSON, default=dict)
