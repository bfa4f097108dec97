"""SQLAlchemy models for the reconciliation audit trail."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, relationship


class Base(DeclarativeBase):
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CycleRun(Base):
    """
    A single reconciliation cycle.

    Each cycle fetches the last hour of bank history and matches it against
    every pending payment. Summary counts make it easy to spot a cycle that
    matched nothing or routed payments to manual review.
    """

    __tablename__ = "cycle_runs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    status = Column(String(20), nullable=False, default="running")
    transactions_seen = Column(Integer, default=0)
    credits_seen = Column(Integer, default=0)
    pending_count = Column(Integer, default=0)
    completed_count = Column(Integer, default=0)
    manual_review_count = Column(Integer, default=0)
    expired_count = Column(Integer, default=0)
    error_count = Column(Integer, default=0)
    error = Column(Text, nullable=True)
    started_at = Column(DateTime(timezone=True), default=_utcnow)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    audit_logs = relationship("AuditLog", back_populates="cycle", lazy="raise")


class AuditLog(Base):
    """
    Immutable audit trail entry.

    Every status transition, settlement attempt and expiry sweep gets an
    entry. Payments live in the external ledger, so payment_id is a plain
    column rather than a foreign key.
    """

    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    payment_id = Column(String(64), nullable=True, index=True)
    cycle_id = Column(String(36), ForeignKey("cycle_runs.id"), nullable=True, index=True)
    action = Column(String(50), nullable=False)
    details = Column(Text, nullable=True)
    timestamp = Column(DateTime(timezone=True), default=_utcnow)

    cycle = relationship("CycleRun", back_populates="audit_logs")
