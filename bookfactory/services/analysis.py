"""Continuity analysis: counts plus a single penalty-based score."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List

from sqlalchemy import func

from ..extensions import db
from ..models import CHARACTER_FACT_CATEGORIES, Book, Chapter, ConsistencyIssue, StoryFact, TimelineEvent

CRITICAL_PENALTY = 15
WARNING_PENALTY = 5
TOP_ISSUE_LIMIT = 5


def continuity_score(critical_open: int, other_open: int) -> int:
    score = 100 - CRITICAL_PENALTY * critical_open - WARNING_PENALTY * other_open
    return max(0, min(100, score))


@dataclass
class ContinuityAnalysis:
    book_id: int
    analyzed_at: datetime
    chapters_analyzed: int
    total_facts: int
    total_events: int
    total_characters: int
    issues_found: int
    critical_issues: int
    warning_issues: int
    top_issues: List[ConsistencyIssue] = field(default_factory=list)

    @property
    def score(self) -> int:
        return continuity_score(self.critical_issues, self.warning_issues)

    def to_dict(self) -> Dict[str, Any]:
        score = self.score
        return {
            "bookId": self.book_id,
            "analyzedAt": self.analyzed_at.isoformat(),
            "chaptersAnalyzed": self.chapters_analyzed,
            "stats": {
                "totalFacts": self.total_facts,
                "totalEvents": self.total_events,
                "totalCharacters": self.total_characters,
                "issuesFound": self.issues_found,
                "criticalIssues": self.critical_issues,
                "warningIssues": self.warning_issues,
            },
            "continuityScore": score,
            # Per-category analysis does not exist yet; every category mirrors the aggregate.
            "scoreBreakdown": {
                "characterConsistency": score,
                "timelineAccuracy": score,
                "plotCoherence": score,
                "worldConsistency": score,
            },
            "topIssues": [issue.to_dict() for issue in self.top_issues],
            "unresolvedThreads": [],
        }


def analyze_book(book: Book) -> ContinuityAnalysis:
    fact_count = StoryFact.query.filter_by(book_id=book.id).count()
    event_count = TimelineEvent.query.filter_by(book_id=book.id).count()
    issue_count = ConsistencyIssue.query.filter_by(book_id=book.id).count()
    open_issues = ConsistencyIssue.query.filter_by(book_id=book.id, status="open").count()
    critical_issues = ConsistencyIssue.query.filter_by(
        book_id=book.id, status="open", severity="critical"
    ).count()

    character_count = (
        db.session.query(func.count(func.distinct(StoryFact.subject)))
        .filter(StoryFact.book_id == book.id, StoryFact.category.in_(CHARACTER_FACT_CATEGORIES))
        .scalar()
        or 0
    )

    chapters_analyzed = 0
    status = book.scan_status
    if status is not None and status.completed_at is not None:
        chapters_analyzed = (
            Chapter.query.filter(
                Chapter.book_id == book.id,
                Chapter.content.isnot(None),
                func.trim(Chapter.content) != "",
            ).count()
        )

    top_issues = (
        ConsistencyIssue.query.filter_by(book_id=book.id, status="open")
        .order_by(*ConsistencyIssue.list_ordering())
        .limit(TOP_ISSUE_LIMIT)
        .all()
    )

    return ContinuityAnalysis(
        book_id=book.id,
        analyzed_at=datetime.utcnow(),
        chapters_analyzed=chapters_analyzed,
        total_facts=fact_count,
        total_events=event_count,
        total_characters=character_count,
        issues_found=issue_count,
        critical_issues=critical_issues,
        warning_issues=open_issues - critical_issues,
        top_issues=top_issues,
    )
