"""Fact and timeline-event accessors scoped to a single book."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import func

from ..extensions import db
from ..models import Book, StoryFact, TimelineEvent

DEFAULT_CONFIDENCE = "explicit"
DEFAULT_IMPORTANCE = "significant"
DEFAULT_SOURCE = "user"


def normalize_established_in(raw: Any) -> Optional[Dict[str, Any]]:
    """Keep the known keys of an ``establishedIn`` reference."""

    if not isinstance(raw, Mapping):
        return None
    reference = {
        "chapterId": raw.get("chapterId"),
        "chapterTitle": str(raw.get("chapterTitle") or "").strip(),
        "excerpt": str(raw.get("excerpt") or "").strip(),
        "position": raw.get("position") if isinstance(raw.get("position"), int) else 0,
    }
    if not reference["chapterId"] and not reference["chapterTitle"]:
        return None
    return reference


def create_fact(
    book: Book,
    *,
    subject: str,
    attribute: str,
    value: str,
    category: Optional[str] = None,
    established_in: Optional[Mapping[str, Any]] = None,
    confidence: Optional[str] = None,
    importance: Optional[str] = None,
    source: Optional[str] = None,
) -> StoryFact:
    """Add a fact to the session; ``current_value`` starts equal to ``value``."""

    fact = StoryFact(
        book=book,
        category=category or "custom",
        subject=subject.strip(),
        attribute=attribute.strip(),
        value=value.strip(),
        current_value=value.strip(),
        established_in=normalize_established_in(established_in),
        confidence=confidence or DEFAULT_CONFIDENCE,
        importance=importance or DEFAULT_IMPORTANCE,
        source=source or DEFAULT_SOURCE,
        history=[],
    )
    db.session.add(fact)
    return fact


def record_fact_change(
    fact: StoryFact,
    new_value: str,
    *,
    change_type: str = "update",
    changed_in: Optional[Mapping[str, Any]] = None,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> StoryFact:
    """Move ``fact`` to ``new_value``, appending the old value to its history."""

    new_value = new_value.strip()
    if new_value == fact.current_value:
        return fact

    entry = {
        "previousValue": fact.current_value,
        "newValue": new_value,
        "changeType": change_type,
        "changedIn": normalize_established_in(changed_in),
        "notes": notes or "",
        "timestamp": (now or datetime.utcnow()).isoformat(),
    }
    # Reassign so the JSON column is flagged dirty.
    fact.history = list(fact.history or []) + [entry]
    fact.current_value = new_value
    return fact


def list_facts(book: Book) -> List[StoryFact]:
    return (
        StoryFact.query.filter_by(book_id=book.id)
        .order_by(StoryFact.created_at.desc(), StoryFact.id.desc())
        .all()
    )


def list_events(book: Book) -> List[TimelineEvent]:
    return (
        TimelineEvent.query.filter_by(book_id=book.id)
        .order_by(TimelineEvent.position.asc(), TimelineEvent.id.asc())
        .all()
    )


def next_event_position(book: Book) -> int:
    current = (
        db.session.query(func.max(TimelineEvent.position))
        .filter(TimelineEvent.book_id == book.id)
        .scalar()
    )
    return 0 if current is None else current + 1


def create_event(
    book: Book,
    *,
    description: str,
    position: Optional[int] = None,
    story_time: Optional[str] = None,
    story_time_type: Optional[str] = None,
    chapter_id: Optional[int] = None,
    chapter_title: Optional[str] = None,
    characters: Optional[List[str]] = None,
    locations: Optional[List[str]] = None,
    importance: Optional[str] = None,
) -> TimelineEvent:
    event = TimelineEvent(
        book=book,
        position=next_event_position(book) if position is None else position,
        description=description.strip(),
        story_time=(story_time or "").strip() or None,
        story_time_type=story_time_type or "relative",
        chapter_id=chapter_id,
        chapter_title=chapter_title,
        characters=[str(name).strip() for name in characters or [] if str(name).strip()],
        locations=[str(place).strip() for place in locations or [] if str(place).strip()],
        importance=importance or DEFAULT_IMPORTANCE,
    )
    db.session.add(event)
    return event
