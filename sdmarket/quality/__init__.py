"""Deterministic quality gating for dataset submissions."""

from .checks import CheckRegistry, check_completeness, check_format_compliance
from .engine import QualityEngine
from .models import QualityIssue, QualityOutcome, QualityReport, QualitySummary, VerifyOptions

__all__ = [
    "CheckRegistry",
    "QualityEngine",
    "QualityIssue",
    "QualityOutcome",
    "QualityReport",
    "QualitySummary",
    "VerifyOptions",
    "check_completeness",
    "check_format_compliance",
]
