"""Read models returned by the mirror store."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from sdmarket.shared.enums import DataFormat, RequestStatus, SubmissionStatus


class OperationStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


OPERATION_TRANSITIONS: dict[OperationStatus, frozenset[OperationStatus]] = {
    OperationStatus.PENDING: frozenset({OperationStatus.PROCESSING, OperationStatus.FAILED}),
    OperationStatus.PROCESSING: frozenset({OperationStatus.COMPLETED, OperationStatus.FAILED}),
    OperationStatus.COMPLETED: frozenset(),
    OperationStatus.FAILED: frozenset(),
}


class TxStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REVERTED = "reverted"
    TIMED_OUT = "timed_out"


class _Record(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class MirrorRequest(_Record):
    request_id: int
    buyer_address: str
    description: str = ""
    budget: str
    formats_mask: int
    accepted_formats: list[DataFormat]
    status: RequestStatus
    quality_score: int | None = None
    report_cid: str | None = None
    finalized_submission_id: int | None = None
    creation_tx_hash: str | None = None
    finalization_tx_hash: str | None = None
    finalized_at: datetime | None = None
    created_at: datetime | None = None
    synced_block: int = 0
    synced_at: datetime | None = None


class MirrorSubmission(_Record):
    submission_id: int
    request_id: int
    seller_address: str
    model_address: str
    format: DataFormat
    file_size: int = 0
    sample_count: int = 0
    file_extensions: list[str] = Field(default_factory=list)
    dataset_reference: str = ""
    status: SubmissionStatus
    quality_checked: bool = False
    verification_id: int | None = None
    created_at: datetime | None = None
    synced_block: int = 0
    synced_at: datetime | None = None


class IssueRecord(_Record):
    severity: str
    category: str
    description: str
    location: str


class VerificationRecord(_Record):
    verification_id: int
    submission_id: int
    verified_by: str
    approved: bool
    overall_score: int = Field(ge=0, le=100)
    metrics: dict[str, float] = Field(default_factory=dict)
    issues: list[IssueRecord] = Field(default_factory=list)
    report_cid: str | None = None
    report_metadata: dict[str, Any] = Field(default_factory=dict)
    verified_at: datetime


class OperationLogRecord(_Record):
    operation_id: int
    submission_id: int
    operation_type: str
    model_address: str | None = None
    model_info: dict[str, Any] = Field(default_factory=dict)
    status: OperationStatus
    input_params: dict[str, Any] = Field(default_factory=dict)
    output_refs: dict[str, Any] = Field(default_factory=dict)
    execution_time_ms: int | None = None
    self_verification_score: int | None = None
    error_message: str | None = None
    error_code: str | None = None
    created_at: datetime
    completed_at: datetime | None = None


class TransactionRecord(_Record):
    tx_hash: str
    call: str
    args: dict[str, Any] = Field(default_factory=dict)
    sender: str
    status: TxStatus
    block_number: int | None = None
    error: str | None = None
    submitted_at: datetime
    updated_at: datetime


class SyncFailureRecord(_Record):
    failure_id: int
    event_name: str
    tx_hash: str
    log_index: int
    block_number: int
    args: dict[str, Any] = Field(default_factory=dict)
    request_id: int | None = None
    submission_id: int | None = None
    error: str
    attempts: int
    resolved: bool = False
    created_at: datetime
    resolved_at: datetime | None = None


class Page(BaseModel):
    items: list[Any]
    total: int
    limit: int
    offset: int


__all__ = [
    "OPERATION_TRANSITIONS",
    "IssueRecord",
    "MirrorRequest",
    "MirrorSubmission",
    "OperationLogRecord",
    "OperationStatus",
    "Page",
    "SyncFailureRecord",
    "TransactionRecord",
    "TxStatus",
    "VerificationRecord",
]
