"""Issue resolution workflow: map a user action to a terminal issue status."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, Optional

from ..models import ConsistencyIssue

RESOLUTION_STATUSES: Dict[str, str] = {
    "fixed": "resolved",
    "intentional": "acknowledged",
    "wont_fix": "dismissed",
}
FALLBACK_STATUS = "resolved"


class UnknownResolutionMethod(ValueError):
    """Raised for a resolution method outside :data:`RESOLUTION_STATUSES`."""

    def __init__(self, method: object) -> None:
        super().__init__(
            f"Unknown resolution method {method!r}; expected one of: {', '.join(RESOLUTION_STATUSES)}."
        )
        self.method = method


def status_for_method(method: Optional[str]) -> str:
    try:
        return RESOLUTION_STATUSES[method]
    except (KeyError, TypeError) as exc:
        raise UnknownResolutionMethod(method) from exc


def resolve_issue(
    issue: ConsistencyIssue,
    method: Optional[str],
    notes: Optional[str] = None,
    *,
    status: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ConsistencyIssue:
    """Apply a resolution to ``issue``, overwriting any earlier one.

    ``status`` lets the caller supply the status it settled on for an unknown
    method; otherwise :func:`status_for_method` decides and may raise.
    """

    issue.status = status or status_for_method(method)
    issue.resolution = {
        "method": method,
        "notes": notes or "",
        "resolvedAt": (now or datetime.utcnow()).isoformat(),
    }
    return issue
