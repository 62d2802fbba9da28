"""Per-format quality checks.

Each data format has one check set, registered in a table keyed by the
format enum, plus an explicit default for formats without one. A check
set contributes only the metrics it actually measures; anything it does
not produce is left out of the metrics map rather than zeroed.

The per-format values are deterministic placeholders for real dataset
inspection.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

import bittensor as bt

from sdmarket.mirror.models import MirrorSubmission
from sdmarket.shared.enums import DataFormat


@runtime_checkable
class FormatChecks(Protocol):
    """Interface for a format's check set."""

    data_format: DataFormat | None
    expected_extensions: frozenset[str]

    async def run(self, submission: MirrorSubmission) -> dict[str, float]:
        ...


class CsvChecks:
    data_format = DataFormat.CSV
    expected_extensions = frozenset({"csv", "tsv"})

    async def run(self, submission: MirrorSubmission) -> dict[str, float]:
        return {"accuracy": 85, "validity": 90, "consistency": 80, "distributionScore": 75}


class ImageChecks:
    data_format = DataFormat.IMAGE
    expected_extensions = frozenset({"jpg", "jpeg", "png", "gif", "bmp", "webp"})

    async def run(self, submission: MirrorSubmission) -> dict[str, float]:
        return {"validity": 90, "diversityScore": 80, "syntheticQuality": 85}


class AudioChecks:
    data_format = DataFormat.AUDIO
    expected_extensions = frozenset({"mp3", "wav", "flac", "aac", "ogg"})

    async def run(self, submission: MirrorSubmission) -> dict[str, float]:
        return {"validity": 88, "syntheticQuality": 82}


class TextChecks:
    data_format = DataFormat.TEXT
    expected_extensions = frozenset({"txt", "json", "xml", "md"})

    async def run(self, submission: MirrorSubmission) -> dict[str, float]:
        return {"validity": 85, "diversityScore": 78, "biasScore": 75, "syntheticQuality": 80}


class VideoChecks:
    data_format = DataFormat.VIDEO
    expected_extensions = frozenset({"mp4", "avi", "mov", "mkv", "webm"})

    async def run(self, submission: MirrorSubmission) -> dict[str, float]:
        return {"validity": 87, "syntheticQuality": 83}


class DefaultChecks:
    """Fallback for formats with no dedicated check set (MIXED)."""

    data_format = None
    expected_extensions: frozenset[str] = frozenset()

    async def run(self, submission: MirrorSubmission) -> dict[str, float]:
        return {"validity": 80}


class CheckRegistry:
    """Format -> check set table with an explicit default."""

    def __init__(self, default: FormatChecks | None = None) -> None:
        self._checks: dict[DataFormat, FormatChecks] = {}
        self.default = default or DefaultChecks()

    def register(self, checks: FormatChecks) -> None:
        if checks.data_format is None:
            raise ValueError("check set must name a data format; use the default slot instead")
        if checks.data_format in self._checks:
            raise ValueError(f"Checks already registered: {checks.data_format.value}")
        self._checks[checks.data_format] = checks
        bt.logging.debug({"quality_checks_registered": checks.data_format.value})

    def for_format(self, data_format: DataFormat) -> FormatChecks:
        return self._checks.get(data_format, self.default)

    @property
    def formats(self) -> list[DataFormat]:
        return list(self._checks)

    @classmethod
    def with_defaults(cls) -> CheckRegistry:
        registry = cls()
        for checks in (CsvChecks(), ImageChecks(), AudioChecks(), TextChecks(), VideoChecks()):
            registry.register(checks)
        return registry


def check_completeness(submission: MirrorSubmission) -> int:
    """100, less 20 per missing size/count and 10 per blank extensions/reference."""
    score = 100
    if not submission.file_size:
        score -= 20
    if not submission.sample_count:
        score -= 20
    if not [e for e in submission.file_extensions if e.strip()]:
        score -= 10
    if not (submission.dataset_reference or "").strip():
        score -= 10
    return max(0, score)


def check_format_compliance(extensions: list[str], expected: frozenset[str]) -> float:
    """Percentage of declared extensions in the expected set.

    No expected set means any extension complies. Declaring no extensions
    at all complies with nothing.
    """
    if not expected:
        return 100.0
    declared = [e.strip().lower().lstrip(".") for e in extensions if e.strip()]
    if not declared:
        return 0.0
    matches = [e for e in declared if e in expected]
    return len(matches) / len(declared) * 100


__all__ = [
    "AudioChecks",
    "CheckRegistry",
    "CsvChecks",
    "DefaultChecks",
    "FormatChecks",
    "ImageChecks",
    "TextChecks",
    "VideoChecks",
    "check_completeness",
    "check_format_compliance",
]
