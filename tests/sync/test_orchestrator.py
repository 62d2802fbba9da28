"""Tests for orchestrated ledger writes and reconciliation."""

import pytest

from sdmarket.base.errors import (
    ConfirmationTimeoutError,
    EventNotFoundError,
    InvalidFormatError,
    InvalidFormatsMaskError,
    InvalidScoreError,
    TransactionRevertedError,
)
from sdmarket.mirror.models import TxStatus
from sdmarket.shared.enums import EventName, RequestStatus, SubmissionStatus
from sdmarket.sync.orchestrator import TransactionOrchestrator
from sdmarket.sync.synchronizer import StateSynchronizer


@pytest.fixture
def orchestrator(ledger, store):
    return TransactionOrchestrator(ledger, StateSynchronizer(ledger, store), store)


async def _open_request(orchestrator):
    return await orchestrator.create_request(0b10, "tabular rows", 10**18)


async def _submit(orchestrator, request_id, extensions=("csv",)):
    return await orchestrator.submit_dataset(
        request_id, "csv", 2048, 500, list(extensions), "s3://bucket/rows.csv",
        "0x00000000000000000000000000000000000000a7",
    )


class TestValidation:

    @pytest.mark.asyncio
    async def test_zero_mask_rejected_before_any_ledger_call(self, orchestrator, ledger):
        with pytest.raises(InvalidFormatsMaskError):
            await orchestrator.create_request(0, "nothing", 1)
        assert ledger.sent == []

    @pytest.mark.asyncio
    async def test_negative_budget(self, orchestrator, ledger):
        with pytest.raises(ValueError):
            await orchestrator.create_request(1, "x", -1)
        assert ledger.sent == []

    @pytest.mark.asyncio
    async def test_unknown_format_name(self, orchestrator, ledger):
        with pytest.raises(InvalidFormatError):
            await orchestrator.submit_dataset(1, "PARQUET", 1, 1, "pq", "ref", "0x" + "a7" * 20)
        assert ledger.sent == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("score", [-1, 101, True])
    async def test_score_out_of_range(self, orchestrator, ledger, score):
        with pytest.raises(InvalidScoreError):
            await orchestrator.verify_submission(1, True, score, None)
        assert ledger.sent == []


class TestWrites:

    @pytest.mark.asyncio
    async def test_create_request(self, orchestrator, ledger, store):
        result = await _open_request(orchestrator)

        assert result.entity_id == 1
        assert ledger.sent == [("createRequest", [0b10, "tabular rows"], 10**18)]
        request = await store.get_request(1)
        assert request.status is RequestStatus.OPEN
        assert request.creation_tx_hash == result.tx_hash
        tx = await store.get_transaction(result.tx_hash)
        assert tx.status is TxStatus.CONFIRMED
        assert tx.block_number == result.block_number

    @pytest.mark.asyncio
    async def test_submit_dataset(self, orchestrator, ledger, store):
        await _open_request(orchestrator)
        result = await _submit(orchestrator, 1, extensions=("csv", " tsv"))

        call, args, _ = ledger.sent[-1]
        assert call == "submitDataset"
        assert args[1] == 1  # CSV enum index
        assert args[4] == "csv,tsv"
        submission = await store.get_submission(result.entity_id)
        assert submission.file_extensions == ["csv", "tsv"]
        assert submission.status is SubmissionStatus.PENDING

    @pytest.mark.asyncio
    async def test_approval_syncs_payment_in_same_receipt(self, orchestrator, store):
        await _open_request(orchestrator)
        sub = await _submit(orchestrator, 1)

        result = await orchestrator.verify_submission(sub.entity_id, True, 88, "bafyreport")

        assert result.sync.submission.status is SubmissionStatus.PAID
        assert result.sync.request.status is RequestStatus.CLOSED
        request = await store.get_request(1)
        assert request.finalization_tx_hash == result.tx_hash
        assert request.quality_score == 88

    @pytest.mark.asyncio
    async def test_rejection_leaves_request_open(self, orchestrator, store):
        await _open_request(orchestrator)
        sub = await _submit(orchestrator, 1)

        result = await orchestrator.verify_submission(sub.entity_id, False, 40, None)

        assert result.sync.submission.status is SubmissionStatus.REJECTED
        assert (await store.get_request(1)).status is RequestStatus.OPEN

    @pytest.mark.asyncio
    async def test_cancel_request(self, orchestrator, store):
        await _open_request(orchestrator)
        result = await orchestrator.cancel_request(1)

        assert result.entity_id == 1
        request = await store.get_request(1)
        assert request.status is RequestStatus.CLOSED
        assert request.finalization_tx_hash == result.tx_hash


class TestFailures:

    @pytest.mark.asyncio
    async def test_missing_event_is_not_retried(self, orchestrator, ledger, store):
        ledger.drop_events = {EventName.REQUEST_CREATED}

        with pytest.raises(EventNotFoundError):
            await _open_request(orchestrator)

        assert len(ledger.sent) == 1
        assert await store.get_request(1) is None

    @pytest.mark.asyncio
    async def test_revert_touches_nothing(self, orchestrator, ledger, store):
        ledger.revert_next = True

        with pytest.raises(TransactionRevertedError) as exc:
            await _open_request(orchestrator)

        tx = await store.get_transaction(exc.value.tx_hash)
        assert tx.status is TxStatus.REVERTED
        assert (await store.list_requests()).total == 0

    @pytest.mark.asyncio
    async def test_timeout_is_retained_then_reconciled(self, orchestrator, ledger, store):
        ledger.timeout_next = True

        with pytest.raises(ConfirmationTimeoutError) as exc:
            await _open_request(orchestrator)

        tx_hash = exc.value.tx_hash
        assert (await store.get_transaction(tx_hash)).status is TxStatus.TIMED_OUT
        assert await store.get_request(1) is None

        [result] = await orchestrator.reconcile_pending()

        assert result.tx_hash == tx_hash
        assert result.entity_id == 1
        assert (await store.get_transaction(tx_hash)).status is TxStatus.CONFIRMED
        assert (await store.get_request(1)).creation_tx_hash == tx_hash
        assert await orchestrator.reconcile_pending() == []

    @pytest.mark.asyncio
    async def test_unmined_transaction_stays_pending(self, orchestrator, ledger, store):
        ledger.timeout_next = True
        with pytest.raises(ConfirmationTimeoutError) as exc:
            await _open_request(orchestrator)
        ledger.unmined.add(exc.value.tx_hash)

        assert await orchestrator.reconcile_pending() == []
        assert (await store.get_transaction(exc.value.tx_hash)).status is TxStatus.TIMED_OUT

    @pytest.mark.asyncio
    async def test_failed_sync_stays_unsettled_and_does_not_block_batch(self, orchestrator, ledger, store):
        hashes = []
        for _ in range(2):
            ledger.timeout_next = True
            with pytest.raises(ConfirmationTimeoutError) as exc:
                await _open_request(orchestrator)
            hashes.append(exc.value.tx_hash)
        ledger.read_failures = 1

        [first] = await orchestrator.reconcile_pending()

        [retained] = [h for h in hashes if h != first.tx_hash]
        assert (await store.get_transaction(retained)).status is TxStatus.TIMED_OUT

        [second] = await orchestrator.reconcile_pending()

        assert second.tx_hash == retained
        for tx_hash in hashes:
            assert (await store.get_transaction(tx_hash)).status is TxStatus.CONFIRMED
        assert (await store.list_requests()).total == 2

    @pytest.mark.asyncio
    async def test_reconcile_waits_for_depth(self, ledger, store):
        orchestrator = TransactionOrchestrator(ledger, StateSynchronizer(ledger, store), store, confirmations=3)
        ledger.timeout_next = True
        with pytest.raises(ConfirmationTimeoutError):
            await _open_request(orchestrator)

        assert await orchestrator.reconcile_pending() == []
        ledger.head += 2
        assert len(await orchestrator.reconcile_pending()) == 1
