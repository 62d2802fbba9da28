"""State synchronizer: canonical read, then idempotent upsert.

This is the single routine both the event path and the orchestrated-write
path go through. It never trusts event payload fields beyond the ids they
carry; every call re-reads the ledger, so redelivered or out-of-order
events converge on the same mirror state.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

import bittensor as bt

from sdmarket.ledger.models import LedgerEvent, LedgerRequest, LedgerSubmission
from sdmarket.mirror.models import MirrorRequest, MirrorSubmission
from sdmarket.mirror.store import MirrorStore
from sdmarket.shared.enums import EventName, RequestStatus


class CanonicalReader(Protocol):
    """The slice of the ledger client the synchronizer needs."""

    async def read_request(self, request_id: int) -> LedgerRequest: ...

    async def read_submission(self, submission_id: int) -> LedgerSubmission: ...


@dataclass
class SyncResult:
    """Post-sync mirror state for the entities an event touched."""

    event: EventName | None = None
    request: MirrorRequest | None = None
    submission: MirrorSubmission | None = None


class StateSynchronizer:
    def __init__(self, ledger: CanonicalReader, store: MirrorStore):
        self.ledger = ledger
        self.store = store

    async def sync_request(
        self,
        request_id: int,
        creation_tx_hash: str | None = None,
        finalization_tx_hash: str | None = None,
    ) -> MirrorRequest:
        """Re-read a request and upsert it. Raises NotFoundError if the
        ledger has no such request."""
        canonical = await self.ledger.read_request(request_id)
        await self.store.upsert_request(canonical)

        # A finalization reference only makes sense once the ledger says closed.
        if canonical.status is not RequestStatus.CLOSED:
            finalization_tx_hash = None
        if creation_tx_hash or finalization_tx_hash:
            await self.store.attach_request_tx_refs(
                request_id,
                creation_tx_hash=creation_tx_hash,
                finalization_tx_hash=finalization_tx_hash,
            )

        record = await self.store.get_request(request_id)
        bt.logging.debug({
            "sync_request": {
                "id": request_id,
                "status": record.status.value,
                "block": canonical.block_number,
            }
        })
        return record

    async def sync_submission(self, submission_id: int) -> MirrorSubmission:
        """Re-read a submission and upsert it, pulling in its parent request
        first if the mirror has never seen it."""
        canonical = await self.ledger.read_submission(submission_id)
        if await self.store.get_request(canonical.request_id) is None:
            await self.sync_request(canonical.request_id)
        await self.store.upsert_submission(canonical)

        record = await self.store.get_submission(submission_id)
        bt.logging.debug({
            "sync_submission": {
                "id": submission_id,
                "status": record.status.value,
                "block": canonical.block_number,
            }
        })
        return record

    async def sync_event(self, event: LedgerEvent) -> SyncResult:
        """Bring every entity the event references up to canonical state."""
        result = SyncResult(event=event.name)
        name = event.name

        if name is EventName.REQUEST_CREATED:
            result.request = await self.sync_request(event.request_id, creation_tx_hash=event.tx_hash)

        elif name is EventName.SUBMISSION_SUBMITTED:
            result.submission = await self.sync_submission(event.submission_id)
            result.request = await self.store.get_request(result.submission.request_id)

        elif name is EventName.SUBMISSION_VERIFIED:
            result.submission = await self.sync_submission(event.submission_id)
            result.request = await self.sync_request(result.submission.request_id)

        elif name is EventName.PAYMENT_RELEASED:
            # Carries only the submission id; the parent request comes from the read.
            result.submission = await self.sync_submission(event.submission_id)
            result.request = await self.sync_request(
                result.submission.request_id, finalization_tx_hash=event.tx_hash,
            )

        elif name is EventName.REFUND_ISSUED:
            result.request = await self.sync_request(
                event.request_id, finalization_tx_hash=event.tx_hash,
            )
            if result.request.finalized_submission_id:
                result.submission = await self.sync_submission(result.request.finalized_submission_id)

        bt.logging.info({
            "sync_event": {
                "event": name.value,
                "tx_hash": event.tx_hash,
                "block": event.block_number,
                "request_id": result.request.request_id if result.request else None,
                "submission_id": result.submission.submission_id if result.submission else None,
            }
        })
        return result


__all__ = ["CanonicalReader", "StateSynchronizer", "SyncResult"]
