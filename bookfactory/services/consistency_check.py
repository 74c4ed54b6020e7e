"""Real-time consistency checking of new manuscript text against stored facts."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from typing import Any, Iterable, List, Optional, Sequence

from flask import current_app

from ..extensions import db
from ..models import ISSUE_SEVERITIES, ISSUE_TYPES, Book, Chapter, ConsistencyIssue, StoryFact
from .llm import _get_text_generator, raise_for_rate_limit
from .prompts import CONSISTENCY_CHECK_KEY, render_prompt


NO_FACTS_MESSAGE = "No facts tracked yet"
NO_MODEL_REASON = "No language model is configured."
UNPARSEABLE_REASON = "The language model reply could not be parsed as a JSON array."


class ConsistencyCheckError(RuntimeError):
    """Raised when the language model call itself fails."""


@dataclass
class IssueCandidate:
    type: str
    severity: str
    title: str
    description: str
    excerpt: str = ""
    suggestion: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ConsistencyCheckResult:
    """Outcome of a check.

    ``degraded_reason`` is set when the model could not be consulted or its
    reply was unusable, so an empty ``issues`` list is not a clean bill.
    """

    issues: List[IssueCandidate] = field(default_factory=list)
    facts_checked: int = 0
    degraded_reason: Optional[str] = None
    message: Optional[str] = None

    @property
    def degraded(self) -> bool:
        return self.degraded_reason is not None


def select_facts_for_check(book: Book, *, limit: Optional[int] = None) -> List[StoryFact]:
    """Return the book's most important facts, critical first."""

    if limit is None:
        limit = current_app.config.get("CONTINUITY_FACT_LIMIT", 100)
    return (
        StoryFact.query.filter_by(book_id=book.id)
        .order_by(StoryFact.importance_rank(), StoryFact.id.asc())
        .limit(limit)
        .all()
    )


def build_fact_context(facts: Iterable[StoryFact]) -> str:
    return "\n".join(
        f'{fact.subject}: {fact.attribute} = "{fact.current_value}" (from {fact.origin_label})'
        for fact in facts
    )


def truncate_content(content: Optional[str], limit: int) -> str:
    return (content or "")[:limit]


def extract_json_span(raw: Optional[str], opening: str = "[", closing: str = "]") -> Optional[str]:
    """Return the text from the first ``opening`` to the last ``closing``."""

    if not raw:
        return None
    start = raw.find(opening)
    end = raw.rfind(closing)
    if start == -1 or end == -1 or end < start:
        return None
    return raw[start : end + 1]


def parse_issue_candidates(raw: Optional[str]) -> Optional[List[IssueCandidate]]:
    """Decode the model reply. ``None`` means the reply was unusable."""

    span = extract_json_span(raw)
    if span is None:
        return None
    try:
        data = json.loads(span)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, list):
        return None
    return coerce_issue_candidates(data)


def coerce_issue_candidates(items: Sequence[Any]) -> List[IssueCandidate]:
    candidates: List[IssueCandidate] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        title = _clean_text(item.get("title"))
        description = _clean_text(item.get("description"))
        if not title or not description:
            continue
        issue_type = _clean_text(item.get("type"))
        severity = _clean_text(item.get("severity"))
        candidates.append(
            IssueCandidate(
                type=issue_type if issue_type in ISSUE_TYPES else "contradiction",
                severity=severity if severity in ISSUE_SEVERITIES else "warning",
                title=title,
                description=description,
                excerpt=_clean_text(item.get("excerpt")),
                suggestion=_clean_text(item.get("suggestion")),
            )
        )
    return candidates


def check_consistency(facts: Sequence[StoryFact], content: str) -> ConsistencyCheckResult:
    """Ask the language model whether ``content`` contradicts ``facts``."""

    if not facts:
        return ConsistencyCheckResult(issues=[], facts_checked=0, message=NO_FACTS_MESSAGE)

    facts_checked = len(facts)
    generator = _get_text_generator()
    if generator is None:
        return ConsistencyCheckResult(facts_checked=facts_checked, degraded_reason=NO_MODEL_REASON)

    prompt, max_tokens = render_prompt(
        CONSISTENCY_CHECK_KEY,
        fact_context=build_fact_context(facts),
        content=truncate_content(content, current_app.config.get("CONTINUITY_CONTENT_LIMIT", 5000)),
    )

    try:
        raw_response = generator.generate_response(prompt, max_new_tokens=max_tokens)
    except Exception as exc:
        raise_for_rate_limit(exc)
        raise ConsistencyCheckError("The consistency check could not reach the language model.") from exc

    candidates = parse_issue_candidates(raw_response)
    if candidates is None:
        current_app.logger.warning(
            "Consistency check reply was not a JSON array; returning no issues. Reply: %.200s",
            raw_response,
        )
        return ConsistencyCheckResult(facts_checked=facts_checked, degraded_reason=UNPARSEABLE_REASON)

    return ConsistencyCheckResult(issues=candidates, facts_checked=facts_checked)


def persist_candidates(
    book: Book,
    candidates: Iterable[IssueCandidate],
    *,
    chapter: Optional[Chapter] = None,
    detected_by: str = "realtime",
) -> List[ConsistencyIssue]:
    """Store candidates as open issues. The caller commits."""

    stored: List[ConsistencyIssue] = []
    for candidate in candidates:
        issue = ConsistencyIssue(
            book=book,
            type=candidate.type,
            severity=candidate.severity,
            title=candidate.title,
            description=candidate.description,
            excerpt=candidate.excerpt or None,
            suggestion=candidate.suggestion or None,
            status="open",
            chapter_id=chapter.id if chapter else None,
            chapter_title=chapter.title if chapter else None,
            detected_by=detected_by,
        )
        db.session.add(issue)
        stored.append(issue)
    return stored


def _clean_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()
