"""Quality report models."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field

from sdmarket.shared.enums import DataFormat

# Report and issue ordering follows this list.
METRIC_NAMES: tuple[str, ...] = (
    "accuracy",
    "completeness",
    "consistency",
    "validity",
    "uniqueness",
    "formatCompliance",
    "distributionScore",
    "diversityScore",
    "syntheticQuality",
    "privacyPreservation",
    "biasScore",
)

CRITICAL_METRICS: tuple[str, ...] = ("accuracy", "validity", "formatCompliance")


class Severity(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"


class QualityIssue(BaseModel):
    severity: Severity
    category: str
    description: str
    location: str = "dataset"


class QualitySummary(BaseModel):
    status: str
    overallScore: int
    criticalScore: int
    metricsCount: int
    recommendation: str


class DatasetInfo(BaseModel):
    format: DataFormat
    fileSize: int
    sampleCount: int
    fileExtensions: list[str]


class QualityReport(BaseModel):
    """The document persisted to content-addressed storage."""

    submissionId: int
    requestId: int
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    approved: bool
    overallScore: int = Field(ge=0, le=100)
    metrics: dict[str, float]
    issues: list[QualityIssue] = Field(default_factory=list)
    summary: QualitySummary
    datasetInfo: DatasetInfo


class VerifyOptions(BaseModel):
    """Caller-supplied knobs for a single verification run."""

    threshold: int | None = Field(default=None, ge=0, le=100)
    verifier_address: str | None = None
    model_address: str | None = None
    model_name: str = "QualityVerifier"
    model_version: str = "1.0"
    report_type: str = "automatic"
    tools_used: list[str] = Field(default_factory=lambda: ["automated-validator"])


class QualityOutcome(BaseModel):
    """What the engine hands back: the decision plus where it was recorded."""

    submission_id: int
    approved: bool
    overall_score: int
    report: QualityReport
    report_cid: str | None = None
    report_url: str | None = None
    verification_id: int
    operation_id: int
    execution_time_ms: int


__all__ = [
    "CRITICAL_METRICS",
    "METRIC_NAMES",
    "DatasetInfo",
    "QualityIssue",
    "QualityOutcome",
    "QualityReport",
    "QualitySummary",
    "Severity",
    "VerifyOptions",
]
