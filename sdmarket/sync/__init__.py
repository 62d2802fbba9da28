"""Mirror synchronization: the shared sync routine and its two callers,
the event ingestor and the transaction orchestrator."""

from .cursor import IngestCursor
from .ingestor import EventIngestor, EventState, IngestOutcome
from .orchestrator import TransactionOrchestrator, TxResult
from .synchronizer import StateSynchronizer, SyncResult

__all__ = [
    "EventIngestor",
    "EventState",
    "IngestCursor",
    "IngestOutcome",
    "StateSynchronizer",
    "SyncResult",
    "TransactionOrchestrator",
    "TxResult",
]
