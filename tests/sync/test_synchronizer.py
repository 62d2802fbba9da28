"""Tests for the shared canonical-read-then-upsert routine."""

import pytest

from sdmarket.base.errors import NotFoundError
from sdmarket.mirror.database import MirrorDatabase
from sdmarket.mirror.store import MirrorStore
from sdmarket.shared.enums import EventName, RequestStatus, SubmissionStatus
from sdmarket.sync.synchronizer import StateSynchronizer


@pytest.fixture
def sync(ledger, store):
    return StateSynchronizer(ledger, store)


def _created(ledger):
    receipt = ledger.mine(ledger.create_request(0b10, "rows", 10**18))
    return receipt.events[0]


def _submitted(ledger, request_id):
    receipt = ledger.mine(ledger.submit_dataset(request_id, 1, 2048, 500, "csv", "ref", ledger.MODEL))
    return receipt.events[0]


class TestSyncRequest:

    @pytest.mark.asyncio
    async def test_unknown_request(self, sync):
        with pytest.raises(NotFoundError):
            await sync.sync_request(404)

    @pytest.mark.asyncio
    async def test_finalization_ref_needs_closed_request(self, sync, ledger):
        rid = ledger.open_csv_request()
        record = await sync.sync_request(rid, finalization_tx_hash="0xfinal")
        assert record.finalization_tx_hash is None
        assert record.finalized_at is None


class TestSyncEvent:

    @pytest.mark.asyncio
    async def test_request_created(self, sync, ledger):
        event = _created(ledger)
        result = await sync.sync_event(event)

        assert result.event is EventName.REQUEST_CREATED
        assert result.request.status is RequestStatus.OPEN
        assert result.request.creation_tx_hash == event.tx_hash
        assert result.request.synced_block == ledger.head

    @pytest.mark.asyncio
    async def test_redelivery_is_idempotent(self, sync, store, ledger):
        created = _created(ledger)
        submitted = _submitted(ledger, created.request_id)

        for event in (created, submitted, created, submitted):
            await sync.sync_event(event)

        assert (await store.list_requests()).total == 1
        assert (await store.list_submissions()).total == 1
        assert (await store.get_request(created.request_id)).creation_tx_hash == created.tx_hash

    @pytest.mark.asyncio
    async def test_order_does_not_matter(self, ledger, store):
        created = _created(ledger)
        submitted = _submitted(ledger, created.request_id)
        sync = StateSynchronizer(ledger, store)

        # Submission first: the parent request is pulled in by the read.
        result = await sync.sync_event(submitted)
        assert result.request is not None
        assert result.request.creation_tx_hash is None

        await sync.sync_event(created)

        request = await store.get_request(created.request_id)
        submission = await store.get_submission(submitted.submission_id)
        assert request.creation_tx_hash == created.tx_hash
        assert submission.status is SubmissionStatus.PENDING
        assert submission.request_id == request.request_id

    @pytest.mark.asyncio
    async def test_payment_finalizes_request(self, sync, ledger, store):
        created = _created(ledger)
        submitted = _submitted(ledger, created.request_id)
        await sync.sync_event(created)
        await sync.sync_event(submitted)

        receipt = ledger.mine(ledger.verify(submitted.submission_id, True, 88, "bafyreport"))
        paid = receipt.find_event(EventName.PAYMENT_RELEASED)
        await sync.sync_event(receipt.find_event(EventName.SUBMISSION_VERIFIED))
        result = await sync.sync_event(paid)

        assert result.submission.status is SubmissionStatus.PAID
        assert result.submission.quality_checked is True
        assert result.request.status is RequestStatus.CLOSED
        assert result.request.quality_score == 88
        assert result.request.report_cid == "bafyreport"
        assert result.request.finalized_submission_id == submitted.submission_id
        assert result.request.finalization_tx_hash == paid.tx_hash

    @pytest.mark.asyncio
    async def test_refund_closes_request(self, sync, ledger):
        created = _created(ledger)
        await sync.sync_event(created)

        refund = ledger.mine(ledger.cancel(created.request_id)).events[0]
        result = await sync.sync_event(refund)

        assert result.request.status is RequestStatus.CLOSED
        assert result.request.finalization_tx_hash == refund.tx_hash
        assert result.submission is None

    @pytest.mark.asyncio
    async def test_event_payload_is_not_trusted(self, sync, ledger):
        created = _created(ledger)
        created.args["budget"] = 1  # payload disagrees with the contract

        result = await sync.sync_event(created)

        assert result.request.budget == str(10**18)


class TestConvergence:

    @pytest.mark.asyncio
    async def test_double_sync_submission_is_identical(self, sync, ledger, store):
        rid = ledger.open_csv_request()
        sid = ledger.add_csv_submission(rid)

        first = await sync.sync_submission(sid)
        second = await sync.sync_submission(sid)

        assert first.model_dump(exclude={"synced_at"}) == second.model_dump(exclude={"synced_at"})
        assert (await store.list_submissions()).total == 1

    @pytest.mark.asyncio
    async def test_verify_before_submit_converges(self, ledger, store, tmp_path):
        created = _created(ledger)
        submitted = _submitted(ledger, created.request_id)
        verified = ledger.mine(ledger.verify(submitted.submission_id, False, 40, "")).events[0]

        other_db = MirrorDatabase(f"sqlite+aiosqlite:///{tmp_path / 'other.db'}")
        await other_db.initialize()
        other = MirrorStore(other_db)
        try:
            for event in (created, submitted, verified):
                await StateSynchronizer(ledger, store).sync_event(event)
            for event in (verified, submitted, created):
                await StateSynchronizer(ledger, other).sync_event(event)

            in_order = await store.get_submission(submitted.submission_id)
            reordered = await other.get_submission(submitted.submission_id)
            assert in_order.status is SubmissionStatus.REJECTED
            assert in_order.model_dump(exclude={"synced_at"}) == reordered.model_dump(exclude={"synced_at"})

            request_a = await store.get_request(created.request_id)
            request_b = await other.get_request(created.request_id)
            assert request_a.model_dump(exclude={"synced_at"}) == request_b.model_dump(exclude={"synced_at"})
        finally:
            await other_db.close()
