"""Transaction orchestrator.

Every write follows one path: validate inputs, submit, record the
transaction as pending, await confirmation, extract the expected event
from the receipt, run the shared synchronizer. The mirror is touched only
after a confirmed receipt. A confirmation timeout leaves the transaction
recorded as ``timed_out`` for ``reconcile_pending()``; it is never treated
as aborted.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Sequence

import bittensor as bt

from sdmarket.base.errors import (
    ConfirmationTimeoutError,
    EventNotFoundError,
    InvalidScoreError,
    TransactionRevertedError,
)
from sdmarket.ledger.client import LedgerClient
from sdmarket.ledger.models import TxHandle, TxReceipt, join_extensions
from sdmarket.mirror.models import TransactionRecord, TxStatus
from sdmarket.mirror.store import MirrorStore
from sdmarket.shared.enums import FINALIZING_EVENTS, DataFormat, EventName, validate_formats_mask

from .synchronizer import StateSynchronizer, SyncResult

# Event each write is expected to emit; the id it carries is the result.
_EXPECTED_EVENT: dict[str, tuple[EventName, str] | None] = {
    "createRequest": (EventName.REQUEST_CREATED, "requestId"),
    "submitDataset": (EventName.SUBMISSION_SUBMITTED, "submissionId"),
    "verifySubmission": (EventName.SUBMISSION_VERIFIED, "submissionId"),
    # Cancellation may or may not refund; the request is re-synced either way.
    "cancelRequest": None,
}


@dataclass
class TxResult:
    """Correlated identifiers returned to the caller of a write."""

    entity_id: int
    tx_hash: str
    block_number: int
    sync: SyncResult | None = None


class TransactionOrchestrator:
    def __init__(
        self,
        ledger: LedgerClient,
        synchronizer: StateSynchronizer,
        store: MirrorStore,
        confirmations: int | None = None,
        timeout: float | None = None,
    ):
        self.ledger = ledger
        self.synchronizer = synchronizer
        self.store = store
        self.confirmations = confirmations
        self.timeout = timeout

    # -- Writes --

    async def create_request(self, formats_mask: int, description: str, budget: int) -> TxResult:
        validate_formats_mask(formats_mask)
        if int(budget) < 0:
            raise ValueError(f"budget must be non-negative, got {budget}")
        return await self._execute(
            "createRequest",
            [formats_mask, description],
            value=int(budget),
            record_args={"formatsMask": formats_mask, "description": description, "budget": str(budget)},
        )

    async def submit_dataset(
        self,
        request_id: int,
        data_format: str,
        file_size: int,
        sample_count: int,
        file_extensions: str | Sequence[str],
        dataset_reference: str,
        model_address: str,
    ) -> TxResult:
        fmt = DataFormat.from_name(data_format)
        extensions = join_extensions(file_extensions)
        args = [
            int(request_id),
            fmt.ledger_index,
            int(file_size),
            int(sample_count),
            extensions,
            dataset_reference,
            model_address,
        ]
        return await self._execute(
            "submitDataset",
            args,
            record_args={
                "requestId": int(request_id),
                "format": fmt.value,
                "fileSize": int(file_size),
                "sampleCount": int(sample_count),
                "fileExtensions": extensions,
                "datasetReference": dataset_reference,
                "model": model_address,
            },
        )

    async def verify_submission(
        self,
        submission_id: int,
        approved: bool,
        quality_score: int,
        report_cid: str | None,
    ) -> TxResult:
        if isinstance(quality_score, bool) or not 0 <= int(quality_score) <= 100:
            raise InvalidScoreError(f"quality score {quality_score} outside [0, 100]")
        return await self._execute(
            "verifySubmission",
            [int(submission_id), bool(approved), int(quality_score), report_cid or ""],
            record_args={
                "submissionId": int(submission_id),
                "approved": bool(approved),
                "qualityScore": int(quality_score),
                "qualityReportCid": report_cid or "",
            },
        )

    async def cancel_request(self, request_id: int) -> TxResult:
        return await self._execute(
            "cancelRequest",
            [int(request_id)],
            record_args={"requestId": int(request_id)},
        )

    # -- Shared path --

    async def _execute(
        self,
        call: str,
        args: list[Any],
        value: int = 0,
        record_args: dict[str, Any] | None = None,
    ) -> TxResult:
        handle = await self.ledger.submit(call, args, value=value)
        await self.store.record_transaction(
            handle.tx_hash,
            call,
            handle.sender,
            args=record_args,
            submitted_at=handle.submitted_at,
        )
        receipt = await self._confirm(handle)
        return await self._apply_receipt(call, receipt, record_args or {})

    async def _confirm(self, handle: TxHandle) -> TxReceipt:
        try:
            receipt = await self.ledger.await_confirmation(handle, self.confirmations, self.timeout)
        except ConfirmationTimeoutError as e:
            await self.store.update_transaction(handle.tx_hash, TxStatus.TIMED_OUT, error=str(e))
            bt.logging.warning({
                "ledger_tx_timeout": {
                    "call": handle.call,
                    "tx_hash": handle.tx_hash,
                    "action": "retained for reconciliation",
                }
            })
            raise
        except TransactionRevertedError as e:
            await self.store.update_transaction(handle.tx_hash, TxStatus.REVERTED, error=str(e))
            bt.logging.error({"ledger_tx_reverted": {"call": handle.call, "tx_hash": handle.tx_hash}})
            raise
        await self.store.update_transaction(
            handle.tx_hash, TxStatus.CONFIRMED, block_number=receipt.block_number,
        )
        return receipt

    async def _apply_receipt(self, call: str, receipt: TxReceipt, record_args: dict[str, Any]) -> TxResult:
        """Post-confirmation sync. Shared by fresh writes and reconciliation."""
        expected = _EXPECTED_EVENT[call]
        if expected is None:
            entity_id = int(record_args["requestId"])
            sync = SyncResult(request=await self.synchronizer.sync_request(
                entity_id, finalization_tx_hash=receipt.tx_hash,
            ))
        else:
            name, id_field = expected
            event = receipt.find_event(name)
            if event is None:
                raise EventNotFoundError(
                    f"{call} confirmed without a {name.value} event",
                    tx_hash=receipt.tx_hash,
                )
            entity_id = int(event.args[id_field])
            sync = await self.synchronizer.sync_event(event)

        # Verification and cancellation can finalize the parent request in
        # the same transaction; those events go through the same routine.
        for finalizing in receipt.events:
            if finalizing.name in FINALIZING_EVENTS:
                final = await self.synchronizer.sync_event(finalizing)
                sync.request = final.request or sync.request
                sync.submission = final.submission or sync.submission

        bt.logging.info({
            "ledger_write_applied": {
                "call": call,
                "id": entity_id,
                "tx_hash": receipt.tx_hash,
                "block": receipt.block_number,
            }
        })
        return TxResult(
            entity_id=entity_id,
            tx_hash=receipt.tx_hash,
            block_number=receipt.block_number,
            sync=sync,
        )

    # -- Reconciliation --

    async def reconcile_pending(self) -> list[TxResult]:
        """Settle transactions whose confirmation wait expired.

        Mined and successful ones go through the same post-confirmation
        sync as a fresh write. Unmined ones stay as they are, and so does a
        transaction whose sync fails; the next pass tries it again.
        """
        applied: list[TxResult] = []
        for tx in await self.store.list_unsettled_transactions():
            try:
                result = await self._reconcile_one(tx)
            except Exception as e:
                bt.logging.warning({"reconcile_tx": {"tx_hash": tx.tx_hash, "status": "retry", "error": str(e)}})
                continue
            if result is not None:
                applied.append(result)
        return applied

    async def _reconcile_one(self, tx: TransactionRecord) -> TxResult | None:
        receipt = await self.ledger.get_receipt(tx.tx_hash)
        if receipt is None:
            bt.logging.debug({"reconcile_tx": {"tx_hash": tx.tx_hash, "status": "not_mined"}})
            return None
        if not receipt.succeeded:
            await self.store.update_transaction(tx.tx_hash, TxStatus.REVERTED, block_number=receipt.block_number)
            bt.logging.warning({"reconcile_tx": {"tx_hash": tx.tx_hash, "status": "reverted"}})
            return None

        head = await self.ledger.block_number()
        required = self.confirmations if self.confirmations is not None else self.ledger.settings.confirmations
        if head - receipt.block_number + 1 < required:
            return None

        result: TxResult | None = None
        if tx.call in _EXPECTED_EVENT:
            try:
                result = await self._apply_receipt(tx.call, receipt, tx.args)
            except EventNotFoundError as e:
                bt.logging.error({"reconcile_tx": {"tx_hash": tx.tx_hash, "error": str(e)}})
        # Only settled once the mirror reflects it.
        await self.store.update_transaction(tx.tx_hash, TxStatus.CONFIRMED, block_number=receipt.block_number)
        if result is None:
            return None
        bt.logging.info({"reconcile_tx": {"tx_hash": tx.tx_hash, "status": "confirmed", "id": result.entity_id}})
        return result


__all__ = ["TxResult", "TransactionOrchestrator"]
