"""Automatic verification of new submissions.

Registered on the ingestor for SubmissionSubmitted when
``quality.auto_verify`` is enabled: runs the quality engine on the
post-sync submission and writes the decision back to the ledger. A
decision that is stored locally but never reached the ledger is sent
again the next time the handler runs for that submission.
"""

from __future__ import annotations

import bittensor as bt

from sdmarket.base.errors import VerificationExistsError
from sdmarket.ledger.models import LedgerEvent
from sdmarket.mirror.store import MirrorStore
from sdmarket.shared.enums import SubmissionStatus
from sdmarket.sync.orchestrator import TransactionOrchestrator, TxResult
from sdmarket.sync.synchronizer import SyncResult

from .engine import QualityEngine


class AutoVerificationHandler:
    name = "auto_verify"
    version = "1.0"

    def __init__(
        self,
        engine: QualityEngine,
        orchestrator: TransactionOrchestrator,
        store: MirrorStore,
    ):
        self.engine = engine
        self.orchestrator = orchestrator
        self.store = store

    async def __call__(self, event: LedgerEvent, result: SyncResult) -> TxResult | None:
        submission = result.submission
        if submission is None:
            return None
        if submission.status is not SubmissionStatus.PENDING:
            bt.logging.debug({
                "auto_verify_skip": {"submission_id": submission.submission_id, "status": submission.status.value}
            })
            return None
        # The engine already ran but the ledger is still pending: either the
        # write is in flight or it never landed and has to be sent again.
        existing = await self.store.get_verification(submission.submission_id)
        if existing is not None:
            if await self._write_in_flight(submission.submission_id):
                bt.logging.debug({
                    "auto_verify_skip": {"submission_id": submission.submission_id, "reason": "write in flight"}
                })
                return None
            return await self._write_back(
                submission.submission_id, existing.approved, existing.overall_score, existing.report_cid,
                resent=True,
            )

        try:
            outcome = await self.engine.verify(submission)
        except VerificationExistsError:
            return None

        return await self._write_back(
            submission.submission_id, outcome.approved, outcome.overall_score, outcome.report_cid,
        )

    async def _write_in_flight(self, submission_id: int) -> bool:
        for tx in await self.store.list_unsettled_transactions():
            if tx.call == "verifySubmission" and tx.args.get("submissionId") == submission_id:
                return True
        return False

    async def _write_back(
        self,
        submission_id: int,
        approved: bool,
        overall_score: int,
        report_cid: str | None,
        resent: bool = False,
    ) -> TxResult:
        tx = await self.orchestrator.verify_submission(submission_id, approved, overall_score, report_cid)
        bt.logging.info({
            "auto_verify": {
                "submission_id": submission_id,
                "approved": approved,
                "overall_score": overall_score,
                "tx_hash": tx.tx_hash,
                "resent": resent,
            }
        })
        return tx

    def __repr__(self) -> str:
        return f"<{self.name} v{self.version}>"


__all__ = ["AutoVerificationHandler"]
