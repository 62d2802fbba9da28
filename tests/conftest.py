"""Shared fixtures: an in-memory market contract and a throwaway mirror."""

from __future__ import annotations

import itertools
from datetime import datetime, timezone
from typing import Any, Sequence

import pytest
import pytest_asyncio

from sdmarket.base.config import LedgerSettings
from sdmarket.base.errors import (
    ConfirmationTimeoutError,
    LedgerConnectionError,
    TransactionRevertedError,
)
from sdmarket.ledger.models import LedgerEvent, LedgerRequest, LedgerSubmission, TxHandle, TxReceipt
from sdmarket.mirror.database import MirrorDatabase
from sdmarket.mirror.store import MirrorStore
from sdmarket.shared.enums import DataFormat, EventName

_NULL_ADDRESS = "0x" + "0" * 40
_EMPTY_REQUEST = (0, _NULL_ADDRESS, 0, 0, "", 0, 0, "", 0, 0)
_EMPTY_SUBMISSION = (0, 0, _NULL_ADDRESS, _NULL_ADDRESS, 0, 0, 0, "", "", 0, False, 0)


class FakeLedger:
    """Contract state held in plain lists shaped like the raw view tuples.

    Writes are mined immediately into a new block. Knobs on the instance
    inject the failure modes the sync layer has to survive.
    """

    BUYER = "0x00000000000000000000000000000000000000b1"
    SELLER = "0x0000000000000000000000000000000000000051"
    MODEL = "0x00000000000000000000000000000000000000a7"
    CREATED_AT = int(datetime(2025, 3, 1, tzinfo=timezone.utc).timestamp())

    def __init__(self, confirmations: int = 1):
        self.settings = LedgerSettings(
            rpc_url="http://ledger.test",
            contract_address="0x" + "ab" * 20,
            confirmations=confirmations,
        )
        self.head = 100
        self.requests: dict[int, list[Any]] = {}
        self.submissions: dict[int, list[Any]] = {}
        self.receipts: dict[str, TxReceipt] = {}
        self.events: list[LedgerEvent] = []
        self.sent: list[tuple[str, list[Any], int]] = []
        self.has_signer = True
        self.signer_address = self.SELLER

        # Failure injection
        self.read_failures = 0
        self.read_error: type[Exception] = LedgerConnectionError
        self.submit_failures = 0
        self.revert_next = False
        self.timeout_next = False
        self.unmined: set[str] = set()
        self.drop_events: set[EventName] = set()

        self.reads = 0
        self._ids = itertools.count(1)
        self._sub_ids = itertools.count(1)
        self._tx = itertools.count(1)

    async def initialize(self) -> None:
        pass

    async def close(self) -> None:
        pass

    # -- Reads --

    def _maybe_fail(self) -> None:
        self.reads += 1
        if self.read_failures > 0:
            self.read_failures -= 1
            raise self.read_error("node unavailable")

    async def block_number(self) -> int:
        return self.head

    async def read_request(self, request_id: int) -> LedgerRequest:
        self._maybe_fail()
        raw = self.requests.get(int(request_id), _EMPTY_REQUEST)
        return LedgerRequest.from_tuple(tuple(raw), request_id, self.head)

    async def read_submission(self, submission_id: int) -> LedgerSubmission:
        self._maybe_fail()
        raw = self.submissions.get(int(submission_id), _EMPTY_SUBMISSION)
        return LedgerSubmission.from_tuple(tuple(raw), submission_id, self.head)

    async def get_events(self, from_block: int, to_block: int) -> list[LedgerEvent]:
        return [e for e in self.events if from_block <= e.block_number <= to_block]

    # -- Contract state changes --

    def create_request(self, formats_mask: int, description: str, budget: int,
                       buyer: str | None = None) -> list[tuple[EventName, dict]]:
        buyer = buyer or self.BUYER
        rid = next(self._ids)
        self.requests[rid] = [rid, buyer, budget, formats_mask, description,
                              0, 0, "", 0, self.CREATED_AT + rid]
        return [(EventName.REQUEST_CREATED, {"requestId": rid, "buyer": buyer, "budget": budget})]

    def submit_dataset(self, request_id: int, fmt: int, file_size: int, sample_count: int,
                       extensions: str, reference: str, model: str,
                       seller: str | None = None) -> list[tuple[EventName, dict]]:
        seller = seller or self.SELLER
        sid = next(self._sub_ids)
        self.submissions[sid] = [sid, request_id, seller, model, fmt, file_size, sample_count,
                                 extensions, reference, 0, False, self.CREATED_AT + 100 + sid]
        return [(EventName.SUBMISSION_SUBMITTED,
                 {"submissionId": sid, "requestId": request_id, "seller": seller})]

    def verify(self, submission_id: int, approved: bool, score: int, cid: str) -> list[tuple[EventName, dict]]:
        sub = self.submissions[submission_id]
        sub[10] = True
        out = [(EventName.SUBMISSION_VERIFIED,
                {"submissionId": submission_id, "approved": approved, "qualityScore": score})]
        if not approved:
            sub[9] = 2
            return out
        req = self.requests[sub[1]]
        sub[9] = 3
        req[5] = 1
        req[6] = score
        req[7] = cid
        req[8] = submission_id
        out.append((EventName.PAYMENT_RELEASED,
                    {"submissionId": submission_id, "seller": sub[2], "amount": req[2]}))
        return out

    def cancel(self, request_id: int) -> list[tuple[EventName, dict]]:
        req = self.requests[request_id]
        req[5] = 1
        return [(EventName.REFUND_ISSUED, {"requestId": request_id, "buyer": req[1], "amount": req[2]})]

    def mine(self, emitted: Sequence[tuple[EventName, dict]], status: int = 1) -> TxReceipt:
        """Put emitted events into a new block and return its receipt."""
        self.head += 1
        tx_hash = f"0x{next(self._tx):064x}"
        events = [
            LedgerEvent(name=name, args=args, tx_hash=tx_hash, block_number=self.head, log_index=i)
            for i, (name, args) in enumerate(emitted)
        ]
        self.events.extend(events)
        receipt = TxReceipt(
            tx_hash=tx_hash,
            block_number=self.head,
            status=status,
            events=[e for e in events if e.name not in self.drop_events],
        )
        self.receipts[tx_hash] = receipt
        return receipt

    def open_csv_request(self) -> int:
        self.create_request(1 << DataFormat.CSV.ledger_index, "csv rows", 10**18)
        return max(self.requests)

    def add_csv_submission(self, request_id: int, extensions: str = "csv") -> int:
        self.submit_dataset(request_id, DataFormat.CSV.ledger_index, 2048, 500,
                            extensions, "s3://bucket/datasets/rows.csv", self.MODEL)
        return max(self.submissions)

    # -- Writes --

    async def submit(self, call: str, args: Sequence[Any], value: int = 0) -> TxHandle:
        if self.submit_failures > 0:
            self.submit_failures -= 1
            raise LedgerConnectionError(f"{call} not broadcast")
        self.sent.append((call, list(args), value))
        if self.revert_next:
            self.revert_next = False
            receipt = self.mine([], status=0)
        else:
            if call == "createRequest":
                emitted = self.create_request(args[0], args[1], value)
            elif call == "submitDataset":
                emitted = self.submit_dataset(*args)
            elif call == "verifySubmission":
                emitted = self.verify(*args)
            elif call == "cancelRequest":
                emitted = self.cancel(*args)
            else:
                raise AssertionError(f"unexpected call {call}")
            receipt = self.mine(emitted)
        return TxHandle(tx_hash=receipt.tx_hash, call=call, sender=self.signer_address)

    async def await_confirmation(self, handle: TxHandle, confirmations: int | None = None,
                                 timeout: float | None = None) -> TxReceipt:
        if self.timeout_next:
            self.timeout_next = False
            raise ConfirmationTimeoutError(f"{handle.call} timed out", tx_hash=handle.tx_hash)
        receipt = self.receipts[handle.tx_hash]
        if not receipt.succeeded:
            raise TransactionRevertedError(f"{handle.call} reverted", tx_hash=handle.tx_hash)
        return receipt

    async def get_receipt(self, tx_hash: str) -> TxReceipt | None:
        if tx_hash in self.unmined:
            return None
        return self.receipts.get(tx_hash)


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest_asyncio.fixture
async def database(tmp_path):
    db = MirrorDatabase(f"sqlite+aiosqlite:///{tmp_path / 'mirror.db'}")
    await db.initialize()
    yield db
    await db.close()


@pytest_asyncio.fixture
async def store(database) -> MirrorStore:
    return MirrorStore(database)
