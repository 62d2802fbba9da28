"""Pydantic models for canonical ledger reads, transactions and events.

Raw contract tuples are decoded here so the client, the fakes used in
tests, and the synchronizer all share one decoding path.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Sequence

from pydantic import BaseModel, Field

from sdmarket.base.errors import NotFoundError
from sdmarket.shared.enums import (
    REQUEST_STATUS_ORDER,
    SUBMISSION_STATUS_ORDER,
    DataFormat,
    EventName,
    RequestStatus,
    SubmissionStatus,
    decode_formats_mask,
)


def _ts(value: Any) -> datetime | None:
    """Unix seconds -> aware datetime; 0 means unset."""
    seconds = int(value or 0)
    if seconds <= 0:
        return None
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def _address(value: Any) -> str:
    return str(value).lower()


def split_extensions(raw: str | Sequence[str] | None) -> list[str]:
    """Comma-separated extension string -> ordered list of non-empty items."""
    if raw is None:
        return []
    items = raw.split(",") if isinstance(raw, str) else list(raw)
    return [str(e).strip() for e in items if str(e).strip()]


def join_extensions(extensions: str | Sequence[str]) -> str:
    if isinstance(extensions, str):
        return ",".join(split_extensions(extensions))
    return ",".join(split_extensions(list(extensions)))


class LedgerRequest(BaseModel):
    """Decoded ``requests(id)`` tuple."""

    request_id: int
    buyer_address: str
    description: str = ""
    budget: str = Field(description="Wei amount as decimal string")
    formats_mask: int
    accepted_formats: list[DataFormat]
    status: RequestStatus
    quality_score: int | None = None
    report_cid: str | None = None
    finalized_submission_id: int | None = None
    created_at: datetime | None = None
    block_number: int = Field(default=0, description="Block the read was pinned to")

    @classmethod
    def from_tuple(cls, raw: Sequence[Any], requested_id: int, block_number: int = 0) -> LedgerRequest:
        (rid, buyer, budget, mask, description, status, score, report_cid,
         finalized_id, created_at) = raw
        if int(rid) == 0:
            raise NotFoundError("request", requested_id)
        return cls(
            request_id=int(rid),
            buyer_address=_address(buyer),
            description=description,
            budget=str(int(budget)),
            formats_mask=int(mask),
            accepted_formats=decode_formats_mask(int(mask)),
            status=REQUEST_STATUS_ORDER[int(status)],
            quality_score=int(score) or None,
            report_cid=report_cid or None,
            finalized_submission_id=int(finalized_id) or None,
            created_at=_ts(created_at),
            block_number=block_number,
        )


class LedgerSubmission(BaseModel):
    """Decoded ``submissions(id)`` tuple."""

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
    created_at: datetime | None = None
    block_number: int = 0

    @classmethod
    def from_tuple(cls, raw: Sequence[Any], requested_id: int, block_number: int = 0) -> LedgerSubmission:
        (sid, request_id, seller, model, fmt, file_size, sample_count,
         extensions, dataset_ref, status, quality_checked, created_at) = raw
        if int(sid) == 0:
            raise NotFoundError("submission", requested_id)
        return cls(
            submission_id=int(sid),
            request_id=int(request_id),
            seller_address=_address(seller),
            model_address=_address(model),
            format=DataFormat.from_index(fmt),
            file_size=int(file_size),
            sample_count=int(sample_count),
            file_extensions=split_extensions(extensions),
            dataset_reference=dataset_ref,
            status=SUBMISSION_STATUS_ORDER[int(status)],
            quality_checked=bool(quality_checked),
            created_at=_ts(created_at),
            block_number=block_number,
        )


class LedgerEvent(BaseModel):
    """A decoded contract event with its position on the ledger."""

    name: EventName
    args: dict[str, Any] = Field(default_factory=dict)
    tx_hash: str
    block_number: int
    log_index: int = 0

    @property
    def key(self) -> tuple[str, int]:
        return (self.tx_hash, self.log_index)

    @property
    def request_id(self) -> int | None:
        value = self.args.get("requestId")
        return int(value) if value is not None else None

    @property
    def submission_id(self) -> int | None:
        value = self.args.get("submissionId")
        return int(value) if value is not None else None

    @classmethod
    def from_decoded(cls, name: str, args: dict[str, Any], tx_hash: str,
                     block_number: int, log_index: int) -> LedgerEvent:
        normalized: dict[str, Any] = {}
        for k, v in args.items():
            if isinstance(v, (bytes, bytearray)):
                v = "0x" + bytes(v).hex()
            elif isinstance(v, str) and v.startswith("0x") and len(v) == 42:
                v = v.lower()
            normalized[k] = v
        return cls(
            name=EventName(name),
            args=normalized,
            tx_hash=tx_hash,
            block_number=block_number,
            log_index=log_index,
        )


class TxHandle(BaseModel):
    """A submitted, not yet confirmed transaction."""

    tx_hash: str
    call: str
    sender: str
    submitted_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class TxReceipt(BaseModel):
    """A mined transaction with its decoded events (unparsable logs dropped)."""

    tx_hash: str
    block_number: int
    status: int
    gas_used: int = 0
    events: list[LedgerEvent] = Field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == 1

    def find_event(self, name: EventName) -> LedgerEvent | None:
        for event in self.events:
            if event.name == name:
                return event
        return None


__all__ = [
    "LedgerEvent",
    "LedgerRequest",
    "LedgerSubmission",
    "TxHandle",
    "TxReceipt",
    "join_extensions",
    "split_extensions",
]
