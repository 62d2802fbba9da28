"""Off-chain mirror of ledger entities and quality bookkeeping."""

from .database import MirrorDatabase
from .store import MirrorStore

__all__ = ["MirrorDatabase", "MirrorStore"]
