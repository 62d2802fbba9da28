"""Ledger enums and the accepted-formats bitmask codec.

Enum member order matches the contract's uint8 encoding and must not be
reordered.
"""

from __future__ import annotations

from enum import Enum
from typing import Iterable

from sdmarket.base.errors import InvalidFormatError, InvalidFormatsMaskError


class DataFormat(str, Enum):
    AUDIO = "AUDIO"
    CSV = "CSV"
    IMAGE = "IMAGE"
    TEXT = "TEXT"
    VIDEO = "VIDEO"
    MIXED = "MIXED"

    @property
    def ledger_index(self) -> int:
        return DATA_FORMAT_ORDER.index(self)

    @classmethod
    def from_index(cls, index: int) -> DataFormat:
        try:
            position = int(index)
            if position < 0:
                raise IndexError(position)
            return DATA_FORMAT_ORDER[position]
        except (IndexError, ValueError, TypeError) as e:
            raise InvalidFormatError(f"unknown format index: {index!r}") from e

    @classmethod
    def from_name(cls, name: str) -> DataFormat:
        """Resolve a human-readable format name (case-insensitive)."""
        try:
            return cls(str(name).strip().upper())
        except ValueError as e:
            raise InvalidFormatError(f"unknown data format: {name!r}") from e


DATA_FORMAT_ORDER: tuple[DataFormat, ...] = tuple(DataFormat)
NUM_FORMATS = len(DATA_FORMAT_ORDER)
MAX_FORMATS_MASK = (1 << NUM_FORMATS) - 1


class RequestStatus(str, Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"


class SubmissionStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    PAID = "PAID"
    REFUNDED = "REFUNDED"

    @property
    def is_terminal(self) -> bool:
        return self in (SubmissionStatus.PAID, SubmissionStatus.REFUNDED)


REQUEST_STATUS_ORDER: tuple[RequestStatus, ...] = tuple(RequestStatus)
SUBMISSION_STATUS_ORDER: tuple[SubmissionStatus, ...] = tuple(SubmissionStatus)


class EventName(str, Enum):
    REQUEST_CREATED = "RequestCreated"
    SUBMISSION_SUBMITTED = "SubmissionSubmitted"
    SUBMISSION_VERIFIED = "SubmissionVerified"
    PAYMENT_RELEASED = "PaymentReleased"
    REFUND_ISSUED = "RefundIssued"


FINALIZING_EVENTS = frozenset({EventName.PAYMENT_RELEASED, EventName.REFUND_ISSUED})


def validate_formats_mask(mask: int) -> int:
    """Reject masks outside ``[1, 2**NUM_FORMATS - 1]``."""
    if isinstance(mask, bool) or not isinstance(mask, int):
        raise InvalidFormatsMaskError(f"formats mask must be an integer, got {mask!r}")
    if mask < 1 or mask > MAX_FORMATS_MASK:
        raise InvalidFormatsMaskError(
            f"formats mask {mask} outside [1, {MAX_FORMATS_MASK}]"
        )
    return mask


def decode_formats_mask(mask: int) -> list[DataFormat]:
    """Bit i set -> format i accepted. Mask 0 is invalid, never an empty set."""
    validate_formats_mask(mask)
    return [fmt for i, fmt in enumerate(DATA_FORMAT_ORDER) if mask & (1 << i)]


def encode_formats(formats: Iterable[DataFormat | str]) -> int:
    mask = 0
    for fmt in formats:
        if not isinstance(fmt, DataFormat):
            fmt = DataFormat.from_name(fmt)
        mask |= 1 << fmt.ledger_index
    return validate_formats_mask(mask)


__all__ = [
    "DATA_FORMAT_ORDER",
    "FINALIZING_EVENTS",
    "MAX_FORMATS_MASK",
    "NUM_FORMATS",
    "REQUEST_STATUS_ORDER",
    "SUBMISSION_STATUS_ORDER",
    "DataFormat",
    "EventName",
    "RequestStatus",
    "SubmissionStatus",
    "decode_formats_mask",
    "encode_formats",
    "validate_formats_mask",
]
