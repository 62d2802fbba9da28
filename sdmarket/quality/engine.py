"""Quality engine.

Computes metrics for a submission, aggregates a score, decides approval,
derives issues, persists a report and records the verification. Every
invocation is also written to the operation log, which moves
pending -> processing -> completed | failed whether or not the run
succeeds.

The engine never touches the ledger. Its outcome feeds
``TransactionOrchestrator.verify_submission``.
"""

from __future__ import annotations

import time

import bittensor as bt

from sdmarket.base.config import ZERO_ADDRESS
from sdmarket.base.errors import NotInitializedError, StorageError
from sdmarket.mirror.models import MirrorSubmission, OperationStatus
from sdmarket.mirror.store import MirrorStore
from sdmarket.storage.interface import ContentStore

from .checks import CheckRegistry, check_completeness, check_format_compliance
from .models import DatasetInfo, QualityOutcome, QualityReport, VerifyOptions
from .scoring import identify_issues, is_approved, ordered_metrics, overall_score, summarize

REPORT_VERSION = "1.0"


class QualityEngine:
    def __init__(
        self,
        store: MirrorStore,
        content_store: ContentStore | None = None,
        threshold: int = 70,
        verifier_address: str = ZERO_ADDRESS,
        registry: CheckRegistry | None = None,
    ):
        self.store = store
        self.content_store = content_store
        self.threshold = threshold
        self.verifier_address = verifier_address
        self.registry = registry or CheckRegistry.with_defaults()

    async def run_quality_checks(self, submission: MirrorSubmission) -> dict[str, float]:
        """Base metrics for every format plus the format's own check set.
        Metrics a check set does not produce are absent, not zero."""
        checks = self.registry.for_format(submission.format)
        metrics: dict[str, float] = {
            "completeness": check_completeness(submission),
            "formatCompliance": check_format_compliance(
                submission.file_extensions, checks.expected_extensions,
            ),
        }
        metrics.update(await checks.run(submission))
        return ordered_metrics(metrics)

    def build_report(
        self,
        submission: MirrorSubmission,
        metrics: dict[str, float],
        threshold: int | None = None,
    ) -> QualityReport:
        threshold = self.threshold if threshold is None else threshold
        score = overall_score(metrics)
        approved = is_approved(score, threshold)
        return QualityReport(
            submissionId=submission.submission_id,
            requestId=submission.request_id,
            approved=approved,
            overallScore=score,
            metrics=metrics,
            issues=identify_issues(metrics, submission.file_size),
            summary=summarize(metrics, score, approved),
            datasetInfo=DatasetInfo(
                format=submission.format,
                fileSize=submission.file_size,
                sampleCount=submission.sample_count,
                fileExtensions=list(submission.file_extensions),
            ),
        )

    async def verify(
        self,
        submission: MirrorSubmission,
        options: VerifyOptions | None = None,
    ) -> QualityOutcome:
        """Run checks and record an immutable verification.

        Raises VerificationExistsError if the submission was already
        verified. Report storage failures do not fail the run.
        """
        options = options or VerifyOptions()
        threshold = self.threshold if options.threshold is None else options.threshold
        verifier = options.verifier_address or self.verifier_address
        started = time.perf_counter()

        op = await self.store.create_operation(
            submission.submission_id,
            operation_type="quality_check",
            model_address=options.model_address or ZERO_ADDRESS,
            model_info={
                "name": options.model_name,
                "version": options.model_version,
                "type": "quality_check",
                "provider": "internal",
            },
            input_params={
                "requestId": submission.request_id,
                "format": submission.format.value,
                "threshold": threshold,
            },
        )
        await self.store.transition_operation(op.operation_id, OperationStatus.PROCESSING)

        try:
            metrics = await self.run_quality_checks(submission)
            report = self.build_report(submission, metrics, threshold)
            report_cid, report_url = await self._persist_report(report)
            elapsed = time.perf_counter() - started
            verification = await self.store.create_verification(
                submission_id=submission.submission_id,
                verified_by=verifier,
                approved=report.approved,
                overall_score=report.overallScore,
                metrics=report.metrics,
                issues=[i.model_dump(mode="json") for i in report.issues],
                report_cid=report_cid,
                report_metadata={
                    "reportType": options.report_type,
                    "reportVersion": REPORT_VERSION,
                    "toolsUsed": list(options.tools_used),
                    "executionTime": round(elapsed, 3),
                },
            )
            await self.store.mark_submission_quality_checked(submission.submission_id)
        except Exception as e:
            await self.store.transition_operation(
                op.operation_id,
                OperationStatus.FAILED,
                execution_time_ms=int((time.perf_counter() - started) * 1000),
                error_message=str(e),
                error_code=type(e).__name__,
            )
            bt.logging.error({
                "quality_verification_failed": {
                    "submission_id": submission.submission_id,
                    "operation_id": op.operation_id,
                    "error": str(e),
                }
            })
            raise

        execution_ms = int((time.perf_counter() - started) * 1000)
        await self.store.transition_operation(
            op.operation_id,
            OperationStatus.COMPLETED,
            execution_time_ms=execution_ms,
            self_verification_score=report.overallScore,
            output_refs={"ipfs_cid": report_cid, "gateway_url": report_url},
        )

        bt.logging.info({
            "quality_verification": {
                "submission_id": submission.submission_id,
                "format": submission.format.value,
                "overall_score": report.overallScore,
                "approved": report.approved,
                "issues": len(report.issues),
                "report_cid": report_cid,
                "execution_ms": execution_ms,
            }
        })
        return QualityOutcome(
            submission_id=submission.submission_id,
            approved=report.approved,
            overall_score=report.overallScore,
            report=report,
            report_cid=report_cid,
            report_url=report_url,
            verification_id=verification.verification_id,
            operation_id=op.operation_id,
            execution_time_ms=execution_ms,
        )

    async def _persist_report(self, report: QualityReport) -> tuple[str | None, str | None]:
        """Store and pin the report. Returns (None, None) if it could not be stored."""
        store = self.content_store
        if store is None or not store.available:
            bt.logging.warning({
                "quality_report_not_persisted": {
                    "submission_id": report.submissionId,
                    "reason": "content store unavailable",
                }
            })
            return None, None

        document = {"version": REPORT_VERSION, **report.model_dump(mode="json")}
        try:
            cid = await store.put_json(document)
        except (StorageError, NotInitializedError) as e:
            bt.logging.warning({
                "quality_report_not_persisted": {
                    "submission_id": report.submissionId,
                    "reason": str(e),
                }
            })
            return None, None
        try:
            await store.pin(cid)
        except (StorageError, NotInitializedError) as e:
            bt.logging.warning({"quality_report_not_pinned": {"cid": cid, "reason": str(e)}})
        return cid, store.gateway_url(cid)


__all__ = ["REPORT_VERSION", "QualityEngine"]
