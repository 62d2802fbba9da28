"""Deterministic aggregation: overall score, approval, issues, summary."""

from __future__ import annotations

import math
from typing import Mapping

import numpy as np

from .models import CRITICAL_METRICS, METRIC_NAMES, QualityIssue, QualitySummary, Severity

HIGH_SEVERITY_BELOW = 60
MEDIUM_SEVERITY_BELOW = 75
LARGE_FILE_BYTES = 1024 ** 3

APPROVED_RECOMMENDATION = "Dataset meets quality standards and is approved for use"
REJECTED_RECOMMENDATION = "Dataset does not meet minimum quality standards"


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def ordered_metrics(metrics: Mapping[str, float | None]) -> dict[str, float]:
    """Drop absent metrics and order the rest: known names first, then any
    extras alphabetically."""
    present = {k: v for k, v in metrics.items() if v is not None}
    known = [k for k in METRIC_NAMES if k in present]
    extra = sorted(k for k in present if k not in METRIC_NAMES)
    return {k: present[k] for k in known + extra}


def overall_score(metrics: Mapping[str, float]) -> int:
    """Unweighted mean of present metrics, rounded half up. 0 if none."""
    values = np.array([float(v) for v in metrics.values() if v is not None], dtype=np.float64)
    if values.size == 0:
        return 0
    return _round_half_up(float(values.mean()))


def is_approved(score: int, threshold: int) -> bool:
    return score >= threshold


def identify_issues(metrics: Mapping[str, float], file_size: int | None) -> list[QualityIssue]:
    issues: list[QualityIssue] = []
    for name, score in metrics.items():
        shown = f"{score:g}"
        if score < HIGH_SEVERITY_BELOW:
            issues.append(QualityIssue(
                severity=Severity.HIGH,
                category=name,
                description=f"{name} score is below acceptable threshold: {shown}%",
                location="dataset",
            ))
        elif score < MEDIUM_SEVERITY_BELOW:
            issues.append(QualityIssue(
                severity=Severity.MEDIUM,
                category=name,
                description=f"{name} score could be improved: {shown}%",
                location="dataset",
            ))

    if (file_size or 0) > LARGE_FILE_BYTES:
        issues.append(QualityIssue(
            severity=Severity.MEDIUM,
            category="fileSize",
            description="File size is very large, may affect performance",
            location="metadata",
        ))
    return issues


def summarize(metrics: Mapping[str, float], score: int, approved: bool) -> QualitySummary:
    critical = [float(metrics[m]) for m in CRITICAL_METRICS if metrics.get(m) is not None]
    critical_score = _round_half_up(float(np.mean(critical))) if critical else score
    return QualitySummary(
        status="APPROVED" if approved else "REJECTED",
        overallScore=score,
        criticalScore=critical_score,
        metricsCount=len(metrics),
        recommendation=APPROVED_RECOMMENDATION if approved else REJECTED_RECOMMENDATION,
    )


__all__ = [
    "HIGH_SEVERITY_BELOW",
    "LARGE_FILE_BYTES",
    "MEDIUM_SEVERITY_BELOW",
    "identify_issues",
    "is_approved",
    "ordered_metrics",
    "overall_score",
    "summarize",
]
