"""Service layer for continuity tracking."""

from __future__ import annotations

from .analysis import ContinuityAnalysis, analyze_book, continuity_score  # noqa: F401
from .book_scan import BookScanError, BookScanSummary, scan_book, scan_status_payload  # noqa: F401
from .consistency_check import (  # noqa: F401
    ConsistencyCheckError,
    ConsistencyCheckResult,
    IssueCandidate,
    check_consistency,
)
from .resolution import UnknownResolutionMethod, resolve_issue, status_for_method  # noqa: F401

__all__ = [
    "BookScanError",
    "BookScanSummary",
    "ConsistencyCheckError",
    "ConsistencyCheckResult",
    "ContinuityAnalysis",
    "IssueCandidate",
    "UnknownResolutionMethod",
    "analyze_book",
    "check_consistency",
    "continuity_score",
    "resolve_issue",
    "scan_book",
    "scan_status_payload",
    "status_for_method",
]
