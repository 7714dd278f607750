"""Data quality validation, reporting and auto-fix."""

from judgesync.quality.fixer import AutoFixer
from judgesync.quality.reports import build_report, health_score, render_text_report
from judgesync.quality.rules import Thresholds
from judgesync.quality.validator import DataQualityValidator

__all__ = [
    "AutoFixer",
    "DataQualityValidator",
    "Thresholds",
    "build_report",
    "health_score",
    "render_text_report",
]
