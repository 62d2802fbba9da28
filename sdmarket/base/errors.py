"""Error taxonomy shared by the ledger, sync, quality and storage layers.

Failures propagate to the orchestrating caller. The only sanctioned
error-to-default conversion in the codebase is omitting absent quality
metrics from the aggregate.
"""

from __future__ import annotations


class MarketError(Exception):
    """Base class for all sdmarket errors."""


class ConfigError(MarketError):
    """Required configuration is missing or malformed. Fatal at startup."""


class NotInitializedError(MarketError):
    """A service was used before ``initialize()`` succeeded."""


class NotFoundError(MarketError, LookupError):
    """An entity does not exist: a ledger sentinel id 0, or a missing row or object."""

    def __init__(self, kind: str, entity_id: int | str):
        super().__init__(f"{kind} {entity_id} not found")
        self.kind = kind
        self.entity_id = entity_id


class SignerMissingError(MarketError):
    """A write was attempted by a read-only deployment."""


class InvalidFormatsMaskError(MarketError, ValueError):
    """A formats bitmask is zero or has bits outside the known formats."""


class InvalidFormatError(MarketError, ValueError):
    """A data format name has no ledger enum index."""


class InvalidScoreError(MarketError, ValueError):
    """A quality score falls outside [0, 100]."""


class LedgerConnectionError(MarketError, ConnectionError):
    """The ledger endpoint is unreachable."""


class TransactionError(MarketError):
    """Base for failures tied to a submitted transaction."""

    def __init__(self, message: str, tx_hash: str | None = None):
        super().__init__(message)
        self.tx_hash = tx_hash


class TransactionRevertedError(TransactionError):
    """The transaction was mined with a failed status."""


class ConfirmationTimeoutError(TransactionError, TimeoutError):
    """Confirmations were not observed in time. The tx may still be mined."""


class EventNotFoundError(TransactionError):
    """A confirmed transaction is missing its expected event.

    Signals an ABI or protocol mismatch; never retried.
    """


class VerificationExistsError(MarketError):
    """A verification already exists for the submission."""

    def __init__(self, submission_id: int):
        super().__init__(f"submission {submission_id} already has a verification")
        self.submission_id = submission_id


class StorageError(MarketError):
    """Content-addressed or bulk storage operation failed."""


class DurableSyncError(MarketError):
    """Event synchronization exhausted its retry budget."""

    def __init__(self, event_name: str, attempts: int, cause: BaseException):
        super().__init__(f"{event_name} sync failed after {attempts} attempts: {cause}")
        self.event_name = event_name
        self.attempts = attempts
        self.cause = cause


__all__ = [
    "ConfigError",
    "ConfirmationTimeoutError",
    "DurableSyncError",
    "EventNotFoundError",
    "InvalidFormatError",
    "InvalidFormatsMaskError",
    "InvalidScoreError",
    "LedgerConnectionError",
    "MarketError",
    "NotFoundError",
    "NotInitializedError",
    "SignerMissingError",
    "StorageError",
    "TransactionError",
    "TransactionRevertedError",
    "VerificationExistsError",
]
