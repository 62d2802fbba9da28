"""Mirror tables.

Rows for requests and submissions are only ever written from a canonical
ledger read; ``synced_block`` is the block that read was pinned to and
guards against an older read overwriting a newer one.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes on every backend.

    SQLite drops tzinfo on the way out; values are stored as UTC and
    re-tagged on load.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


class Base(DeclarativeBase):
    pass


class DataRequest(Base):
    __tablename__ = "data_request"

    request_id: Mapped[int] = mapped_column(
        BigInteger,
        primary_key=True,
        autoincrement=False,
        comment="Ledger-assigned request id",
    )
    buyer_address: Mapped[str] = mapped_column(String(42), nullable=False, index=True)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    budget: Mapped[str] = mapped_column(
        String(80),
        nullable=False,
        comment="Wei amount as decimal string",
    )
    formats_mask: Mapped[int] = mapped_column(Integer, nullable=False)
    accepted_formats: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    status: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    quality_score: Mapped[int | None] = mapped_column(Integer)
    report_cid: Mapped[str | None] = mapped_column(String(128))
    finalized_submission_id: Mapped[int | None] = mapped_column(BigInteger)
    creation_tx_hash: Mapped[str | None] = mapped_column(String(66))
    finalization_tx_hash: Mapped[str | None] = mapped_column(String(66))
    finalized_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    created_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(),
        index=True,
        comment="Ledger creation timestamp",
    )
    synced_block: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        default=0,
        comment="Block the last applied canonical read was pinned to",
    )
    synced_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
        default=utcnow,
    )


class Submission(Base):
    __tablename__ = "submission"

    submission_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    request_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("data_request.request_id"),
        nullable=False,
        index=True,
    )
    seller_address: Mapped[str] = mapped_column(String(42), nullable=False, index=True)
    model_address: Mapped[str] = mapped_column(String(42), nullable=False)
    format: Mapped[str] = mapped_column(String(16), nullable=False)
    file_size: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    sample_count: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    file_extensions: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    dataset_reference: Mapped[str] = mapped_column(Text, nullable=False, default="")
    status: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    quality_checked: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        comment="Monotonic: once set by the quality engine or the ledger it stays set",
    )
    created_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), index=True)
    synced_block: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    synced_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
        default=utcnow,
    )


class QualityVerification(Base):
    """One immutable verification per submission.

    Uniqueness is enforced by the constraint, never by a prior lookup.
    Only ``report_cid`` may change after creation.
    """

    __tablename__ = "quality_verification"
    __table_args__ = (UniqueConstraint("submission_id", name="uq_verification_submission"),)

    verification_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    submission_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    verified_by: Mapped[str] = mapped_column(String(42), nullable=False)
    approved: Mapped[bool] = mapped_column(Boolean, nullable=False)
    overall_score: Mapped[int] = mapped_column(Integer, nullable=False)
    metrics: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    issues: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    report_cid: Mapped[str | None] = mapped_column(String(128))
    report_metadata: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    verified_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)


class OperationLog(Base):
    """Audit trail of quality engine invocations, kept even on failure."""

    __tablename__ = "operation_log"

    operation_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    submission_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    operation_type: Mapped[str] = mapped_column(String(32), nullable=False, default="quality_check")
    model_address: Mapped[str | None] = mapped_column(String(42))
    model_info: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    input_params: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    output_refs: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    execution_time_ms: Mapped[int | None] = mapped_column(Integer)
    self_verification_score: Mapped[int | None] = mapped_column(Integer)
    error_message: Mapped[str | None] = mapped_column(Text)
    error_code: Mapped[str | None] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime())


class LedgerTransaction(Base):
    """Orchestrated writes, tracked from broadcast to receipt."""

    __tablename__ = "ledger_transaction"

    tx_hash: Mapped[str] = mapped_column(String(66), primary_key=True)
    call: Mapped[str] = mapped_column(String(64), nullable=False)
    args: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    sender: Mapped[str] = mapped_column(String(42), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    block_number: Mapped[int | None] = mapped_column(BigInteger)
    error: Mapped[str | None] = mapped_column(Text)
    submitted_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)


class SyncFailure(Base):
    """Events whose synchronization exhausted the retry budget."""

    __tablename__ = "sync_failure"
    __table_args__ = (
        UniqueConstraint("tx_hash", "log_index", name="uq_sync_failure_event"),
        Index("ix_sync_failure_resolved", "resolved"),
    )

    failure_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_name: Mapped[str] = mapped_column(String(32), nullable=False)
    tx_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    log_index: Mapped[int] = mapped_column(Integer, nullable=False)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    args: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    request_id: Mapped[int | None] = mapped_column(BigInteger)
    submission_id: Mapped[int | None] = mapped_column(BigInteger)
    error: Mapped[str] = mapped_column(Text, nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False)
    resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime())


__all__ = [
    "Base",
    "UTCDateTime",
    "DataRequest",
    "LedgerTransaction",
    "OperationLog",
    "QualityVerification",
    "Submission",
    "SyncFailure",
    "utcnow",
]
