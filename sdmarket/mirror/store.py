"""Mirror persistence.

Writes follow three rules:

- requests and submissions are upserted by canonical id, and an upsert is
  applied only if its read was pinned at or after the stored one
  (last-canonical-read-wins);
- a verification is created through the ``submission_id`` unique
  constraint; a second insert surfaces as ``VerificationExistsError``;
- transaction references and ``quality_checked`` are never cleared by a
  later sync.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Sequence

import bittensor as bt
from sqlalchemy import func, literal, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError

from sdmarket.base.errors import NotFoundError, VerificationExistsError
from sdmarket.ledger.models import LedgerRequest, LedgerSubmission
from sdmarket.shared.enums import RequestStatus, SubmissionStatus

from .database import MirrorDatabase
from .models import (
    OPERATION_TRANSITIONS,
    MirrorRequest,
    MirrorSubmission,
    OperationLogRecord,
    OperationStatus,
    Page,
    SyncFailureRecord,
    TransactionRecord,
    TxStatus,
    VerificationRecord,
)
from .schema import (
    DataRequest,
    LedgerTransaction,
    OperationLog,
    QualityVerification,
    Submission,
    SyncFailure,
    UTCDateTime,
    utcnow,
)

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


def _clamp_limit(limit: int | None) -> int:
    if limit is None or limit <= 0:
        return DEFAULT_PAGE_SIZE
    return min(int(limit), MAX_PAGE_SIZE)


class MirrorStore:
    """Queryable off-chain copy of ledger entities plus engine bookkeeping."""

    def __init__(self, db: MirrorDatabase):
        self.db = db

    def _insert(self, table: Any):
        if self.db.dialect == "postgresql":
            return postgresql.insert(table)
        return sqlite.insert(table)

    # -- Canonical upserts --

    async def upsert_request(self, req: LedgerRequest) -> bool:
        """Apply a canonical request read. Returns False if a newer read
        was already stored."""
        values = {
            "request_id": req.request_id,
            "buyer_address": req.buyer_address,
            "description": req.description,
            "budget": req.budget,
            "formats_mask": req.formats_mask,
            "accepted_formats": [f.value for f in req.accepted_formats],
            "status": req.status.value,
            "quality_score": req.quality_score,
            "report_cid": req.report_cid,
            "finalized_submission_id": req.finalized_submission_id,
            "created_at": req.created_at,
            "synced_block": req.block_number,
            "synced_at": utcnow(),
        }
        stmt = self._insert(DataRequest).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[DataRequest.request_id],
            set_={k: stmt.excluded[k] for k in values if k != "request_id"},
            where=DataRequest.synced_block <= stmt.excluded.synced_block,
        )
        async with self.db.session() as session:
            conn = await session.connection()
            result = await conn.execute(stmt)
        applied = bool(result.rowcount)
        bt.logging.debug({
            "mirror_upsert": {
                "entity": "request",
                "id": req.request_id,
                "block": req.block_number,
                "applied": applied,
            }
        })
        return applied

    async def upsert_submission(self, sub: LedgerSubmission) -> bool:
        values = {
            "submission_id": sub.submission_id,
            "request_id": sub.request_id,
            "seller_address": sub.seller_address,
            "model_address": sub.model_address,
            "format": sub.format.value,
            "file_size": sub.file_size,
            "sample_count": sub.sample_count,
            "file_extensions": list(sub.file_extensions),
            "dataset_reference": sub.dataset_reference,
            "status": sub.status.value,
            "quality_checked": sub.quality_checked,
            "created_at": sub.created_at,
            "synced_block": sub.block_number,
            "synced_at": utcnow(),
        }
        stmt = self._insert(Submission).values(**values)
        set_ = {k: stmt.excluded[k] for k in values if k != "submission_id"}
        set_["quality_checked"] = or_(Submission.quality_checked, stmt.excluded.quality_checked)
        stmt = stmt.on_conflict_do_update(
            index_elements=[Submission.submission_id],
            set_=set_,
            where=Submission.synced_block <= stmt.excluded.synced_block,
        )
        async with self.db.session() as session:
            conn = await session.connection()
            result = await conn.execute(stmt)
        applied = bool(result.rowcount)
        bt.logging.debug({
            "mirror_upsert": {
                "entity": "submission",
                "id": sub.submission_id,
                "block": sub.block_number,
                "applied": applied,
            }
        })
        return applied

    async def attach_request_tx_refs(
        self,
        request_id: int,
        creation_tx_hash: str | None = None,
        finalization_tx_hash: str | None = None,
        finalized_at: datetime | None = None,
    ) -> None:
        """Fill transaction references that are still empty. Never overwrites."""
        values: dict[str, Any] = {}
        if creation_tx_hash:
            values["creation_tx_hash"] = func.coalesce(DataRequest.creation_tx_hash, creation_tx_hash)
        if finalization_tx_hash:
            values["finalization_tx_hash"] = func.coalesce(
                DataRequest.finalization_tx_hash, finalization_tx_hash,
            )
            values["finalized_at"] = func.coalesce(
                DataRequest.finalized_at, literal(finalized_at or utcnow(), UTCDateTime()),
            )
        if not values:
            return
        async with self.db.session() as session:
            await session.execute(
                update(DataRequest).where(DataRequest.request_id == request_id).values(**values)
            )

    async def mark_submission_quality_checked(self, submission_id: int) -> None:
        async with self.db.session() as session:
            await session.execute(
                update(Submission)
                .where(Submission.submission_id == submission_id)
                .values(quality_checked=True)
            )

    # -- Request / submission queries --

    async def get_request(self, request_id: int) -> MirrorRequest | None:
        async with self.db.session() as session:
            row = await session.get(DataRequest, request_id)
            return MirrorRequest.model_validate(row) if row is not None else None

    async def get_submission(self, submission_id: int) -> MirrorSubmission | None:
        stmt = (
            select(Submission, QualityVerification.verification_id)
            .outerjoin(
                QualityVerification,
                QualityVerification.submission_id == Submission.submission_id,
            )
            .where(Submission.submission_id == submission_id)
        )
        async with self.db.session() as session:
            row = (await session.execute(stmt)).first()
        if row is None:
            return None
        sub, verification_id = row
        record = MirrorSubmission.model_validate(sub)
        record.verification_id = verification_id
        return record

    async def list_requests(
        self,
        status: RequestStatus | str | None = None,
        buyer_address: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> Page:
        """Requests newest first. ``[since, until)`` filters the ledger
        creation time."""
        conditions = []
        if status is not None:
            conditions.append(DataRequest.status == RequestStatus(status).value)
        if buyer_address:
            conditions.append(DataRequest.buyer_address == buyer_address.lower())
        if since is not None:
            conditions.append(DataRequest.created_at >= since)
        if until is not None:
            conditions.append(DataRequest.created_at < until)

        limit = _clamp_limit(limit)
        stmt = (
            select(DataRequest)
            .where(*conditions)
            .order_by(DataRequest.created_at.desc(), DataRequest.request_id.desc())
            .limit(limit)
            .offset(max(0, offset))
        )
        count = select(func.count()).select_from(DataRequest).where(*conditions)
        async with self.db.session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            total = (await session.execute(count)).scalar_one()
        return Page(
            items=[MirrorRequest.model_validate(r) for r in rows],
            total=total,
            limit=limit,
            offset=max(0, offset),
        )

    async def list_submissions(
        self,
        request_id: int | None = None,
        status: SubmissionStatus | str | None = None,
        seller_address: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> Page:
        conditions = []
        if request_id is not None:
            conditions.append(Submission.request_id == request_id)
        if status is not None:
            conditions.append(Submission.status == SubmissionStatus(status).value)
        if seller_address:
            conditions.append(Submission.seller_address == seller_address.lower())
        if since is not None:
            conditions.append(Submission.created_at >= since)
        if until is not None:
            conditions.append(Submission.created_at < until)

        limit = _clamp_limit(limit)
        stmt = (
            select(Submission)
            .where(*conditions)
            .order_by(Submission.created_at.desc(), Submission.submission_id.desc())
            .limit(limit)
            .offset(max(0, offset))
        )
        count = select(func.count()).select_from(Submission).where(*conditions)
        async with self.db.session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            total = (await session.execute(count)).scalar_one()
        return Page(
            items=[MirrorSubmission.model_validate(r) for r in rows],
            total=total,
            limit=limit,
            offset=max(0, offset),
        )

    # -- Verifications --

    async def create_verification(
        self,
        submission_id: int,
        verified_by: str,
        approved: bool,
        overall_score: int,
        metrics: dict[str, float],
        issues: Sequence[dict[str, Any]],
        report_cid: str | None,
        report_metadata: dict[str, Any] | None = None,
        verified_at: datetime | None = None,
    ) -> VerificationRecord:
        row = QualityVerification(
            submission_id=submission_id,
            verified_by=verified_by.lower(),
            approved=approved,
            overall_score=overall_score,
            metrics=dict(metrics),
            issues=list(issues),
            report_cid=report_cid,
            report_metadata=dict(report_metadata or {}),
            verified_at=verified_at or utcnow(),
        )
        try:
            async with self.db.session() as session:
                session.add(row)
                await session.flush()
                record = VerificationRecord.model_validate(row)
        except IntegrityError as e:
            raise VerificationExistsError(submission_id) from e

        bt.logging.info({
            "verification_created": {
                "submission_id": submission_id,
                "approved": approved,
                "overall_score": overall_score,
                "report_cid": report_cid,
            }
        })
        return record

    async def get_verification(self, submission_id: int) -> VerificationRecord | None:
        stmt = select(QualityVerification).where(QualityVerification.submission_id == submission_id)
        async with self.db.session() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
            return VerificationRecord.model_validate(row) if row is not None else None

    async def update_verification_report(self, submission_id: int, report_cid: str) -> None:
        """The single permitted mutation of a verification."""
        async with self.db.session() as session:
            result = await session.execute(
                update(QualityVerification)
                .where(QualityVerification.submission_id == submission_id)
                .values(report_cid=report_cid)
            )
        if not result.rowcount:
            raise NotFoundError("verification", submission_id)

    # -- Operation log --

    async def create_operation(
        self,
        submission_id: int,
        operation_type: str = "quality_check",
        model_address: str | None = None,
        model_info: dict[str, Any] | None = None,
        input_params: dict[str, Any] | None = None,
    ) -> OperationLogRecord:
        row = OperationLog(
            submission_id=submission_id,
            operation_type=operation_type,
            model_address=model_address,
            model_info=dict(model_info or {}),
            status=OperationStatus.PENDING.value,
            input_params=dict(input_params or {}),
            output_refs={},
            created_at=utcnow(),
        )
        async with self.db.session() as session:
            session.add(row)
            await session.flush()
            return OperationLogRecord.model_validate(row)

    async def transition_operation(
        self,
        operation_id: int,
        status: OperationStatus,
        **fields: Any,
    ) -> OperationLogRecord:
        """Move an operation along pending -> processing -> completed|failed."""
        async with self.db.session() as session:
            row = await session.get(OperationLog, operation_id)
            if row is None:
                raise NotFoundError("operation", operation_id)
            current = OperationStatus(row.status)
            if status not in OPERATION_TRANSITIONS[current]:
                raise ValueError(f"operation {operation_id}: {current.value} -> {status.value} not allowed")
            row.status = status.value
            for key, value in fields.items():
                setattr(row, key, value)
            if status in (OperationStatus.COMPLETED, OperationStatus.FAILED):
                row.completed_at = utcnow()
            await session.flush()
            return OperationLogRecord.model_validate(row)

    async def get_operation(self, operation_id: int) -> OperationLogRecord | None:
        async with self.db.session() as session:
            row = await session.get(OperationLog, operation_id)
            return OperationLogRecord.model_validate(row) if row is not None else None

    async def list_operations(self, submission_id: int) -> list[OperationLogRecord]:
        stmt = (
            select(OperationLog)
            .where(OperationLog.submission_id == submission_id)
            .order_by(OperationLog.operation_id)
        )
        async with self.db.session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [OperationLogRecord.model_validate(r) for r in rows]

    # -- Transactions --

    async def record_transaction(
        self,
        tx_hash: str,
        call: str,
        sender: str,
        args: dict[str, Any] | None = None,
        submitted_at: datetime | None = None,
    ) -> TransactionRecord:
        now = utcnow()
        row = LedgerTransaction(
            tx_hash=tx_hash,
            call=call,
            args=dict(args or {}),
            sender=sender.lower(),
            status=TxStatus.PENDING.value,
            submitted_at=submitted_at or now,
            updated_at=now,
        )
        async with self.db.session() as session:
            session.add(row)
            await session.flush()
            return TransactionRecord.model_validate(row)

    async def update_transaction(
        self,
        tx_hash: str,
        status: TxStatus,
        block_number: int | None = None,
        error: str | None = None,
    ) -> None:
        values: dict[str, Any] = {"status": status.value, "updated_at": utcnow()}
        if block_number is not None:
            values["block_number"] = block_number
        if error is not None:
            values["error"] = error
        async with self.db.session() as session:
            await session.execute(
                update(LedgerTransaction).where(LedgerTransaction.tx_hash == tx_hash).values(**values)
            )

    async def get_transaction(self, tx_hash: str) -> TransactionRecord | None:
        async with self.db.session() as session:
            row = await session.get(LedgerTransaction, tx_hash)
            return TransactionRecord.model_validate(row) if row is not None else None

    async def list_unsettled_transactions(self) -> list[TransactionRecord]:
        """Transactions still awaiting a receipt (pending or timed out)."""
        stmt = (
            select(LedgerTransaction)
            .where(LedgerTransaction.status.in_([TxStatus.PENDING.value, TxStatus.TIMED_OUT.value]))
            .order_by(LedgerTransaction.submitted_at)
        )
        async with self.db.session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [TransactionRecord.model_validate(r) for r in rows]

    # -- Durable sync failures --

    async def record_sync_failure(
        self,
        event_name: str,
        tx_hash: str,
        log_index: int,
        block_number: int,
        args: dict[str, Any],
        error: str,
        attempts: int,
        request_id: int | None = None,
        submission_id: int | None = None,
    ) -> None:
        """Insert or refresh the failure row for an event."""
        values = {
            "event_name": event_name,
            "tx_hash": tx_hash,
            "log_index": log_index,
            "block_number": block_number,
            "args": args,
            "request_id": request_id,
            "submission_id": submission_id,
            "error": error,
            "attempts": attempts,
            "resolved": False,
            "created_at": utcnow(),
        }
        stmt = self._insert(SyncFailure).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[SyncFailure.tx_hash, SyncFailure.log_index],
            set_={
                "error": stmt.excluded.error,
                "attempts": SyncFailure.attempts + stmt.excluded.attempts,
                "resolved": False,
                "resolved_at": None,
            },
        )
        async with self.db.session() as session:
            await session.execute(stmt)

    async def list_sync_failures(self, include_resolved: bool = False) -> list[SyncFailureRecord]:
        stmt = select(SyncFailure).order_by(SyncFailure.block_number, SyncFailure.log_index)
        if not include_resolved:
            stmt = stmt.where(SyncFailure.resolved.is_(False))
        async with self.db.session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [SyncFailureRecord.model_validate(r) for r in rows]

    async def resolve_sync_failure(self, failure_id: int) -> None:
        async with self.db.session() as session:
            await session.execute(
                update(SyncFailure)
                .where(SyncFailure.failure_id == failure_id)
                .values(resolved=True, resolved_at=utcnow())
            )


__all__ = ["DEFAULT_PAGE_SIZE", "MAX_PAGE_SIZE", "MirrorStore"]
