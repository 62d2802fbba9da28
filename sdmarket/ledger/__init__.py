"""Ledger access: the contract client, decoded models and the event stream.

Everything authoritative about requests, submissions and escrow is read
from the contract through this package; the mirror only ever stores what
a canonical read returned.
"""

from .client import EVENT_TOPICS, LedgerClient
from .models import LedgerEvent, LedgerRequest, LedgerSubmission, TxHandle, TxReceipt
from .subscription import EventSubscription

__all__ = [
    "EVENT_TOPICS",
    "EventSubscription",
    "LedgerClient",
    "LedgerEvent",
    "LedgerRequest",
    "LedgerSubmission",
    "TxHandle",
    "TxReceipt",
]
