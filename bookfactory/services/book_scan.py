"""Book-wide continuity scan.

Walks the chapters of a book in order, asks the language model to extract
facts, timeline events and issues from each one and stores the results.
Progress is kept in the book's single :class:`ScanStatus` row and committed
after every chapter so it can be polled while the scan runs.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from flask import current_app

from ..extensions import db
from ..models import FACT_CATEGORIES, IMPORTANCE_LEVELS, Book, Chapter, ScanStatus, StoryFact
from .consistency_check import build_fact_context, coerce_issue_candidates, extract_json_span, persist_candidates
from .llm import _get_text_generator
from .prompts import CHAPTER_EXTRACTION_KEY, render_prompt
from .story_facts import create_event, create_fact

PHASE_NOT_STARTED = "Not started"
PHASE_STARTING = "Starting..."
PHASE_COMPLETE = "Complete"
PHASE_ERROR = "Error"


class BookScanError(RuntimeError):
    """Raised when a scan cannot start."""


@dataclass
class ChapterExtraction:
    facts: List[Dict[str, Any]] = field(default_factory=list)
    events: List[Dict[str, Any]] = field(default_factory=list)
    issues: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class BookScanSummary:
    total_chapters: int
    facts_added: int = 0
    events_added: int = 0
    issues_added: int = 0
    phase: str = PHASE_STARTING
    progress: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started": True,
            "totalChapters": self.total_chapters,
            "factsAdded": self.facts_added,
            "eventsAdded": self.events_added,
            "issuesAdded": self.issues_added,
            "phase": self.phase,
            "progress": self.progress,
        }


def scan_status_payload(book: Book) -> Dict[str, Any]:
    status = ScanStatus.query.filter_by(book_id=book.id).first()
    if status is None:
        return {"phase": PHASE_NOT_STARTED, "progress": 0}
    return status.to_dict()


def _set_status(book: Book, phase: str, progress: int, *, completed: bool = False) -> ScanStatus:
    status = ScanStatus.query.filter_by(book_id=book.id).first()
    if status is None:
        status = ScanStatus(book_id=book.id)
        db.session.add(status)
    if phase == PHASE_STARTING:
        status.started_at = datetime.utcnow()
        status.completed_at = None
    status.phase = phase
    status.progress = progress
    if completed:
        status.completed_at = datetime.utcnow()
    db.session.commit()
    return status


def scan_book(book: Book) -> BookScanSummary:
    chapters = Chapter.query.filter_by(book_id=book.id).order_by(Chapter.order.asc(), Chapter.id.asc()).all()
    if not chapters:
        raise BookScanError("No chapters to scan")

    summary = BookScanSummary(total_chapters=len(chapters))
    _set_status(book, PHASE_STARTING, 0)

    context_limit = current_app.config.get("CONTINUITY_SCAN_CONTEXT_FACTS", 50)
    extracted_facts: List[StoryFact] = []

    try:
        for index, chapter in enumerate(chapters):
            progress = round((index + 1) / len(chapters) * 100)
            _set_status(book, f"Analyzing: {chapter.title}", progress)

            result = extract_from_chapter(chapter, extracted_facts[-context_limit:])

            for raw_fact in result.facts:
                fact = _store_fact(book, chapter, raw_fact)
                if fact is not None:
                    extracted_facts.append(fact)
                    summary.facts_added += 1

            for raw_event in result.events:
                if _store_event(book, chapter, raw_event):
                    summary.events_added += 1

            issues = persist_candidates(
                book,
                coerce_issue_candidates(result.issues),
                chapter=chapter,
                detected_by="auto",
            )
            summary.issues_added += len(issues)
            db.session.commit()
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Continuity scan failed for book %s", book.id)
        _set_status(book, PHASE_ERROR, 0)
        summary.phase, summary.progress = PHASE_ERROR, 0
        return summary

    _set_status(book, PHASE_COMPLETE, 100, completed=True)
    summary.phase, summary.progress = PHASE_COMPLETE, 100
    return summary


def extract_from_chapter(chapter: Chapter, existing_facts: List[StoryFact]) -> ChapterExtraction:
    """Ask the model for the chapter's facts, events and issues.

    Empty chapters, a missing model, a failed call or an unparseable reply all
    yield an empty extraction for this chapter.
    """

    content = (chapter.content or "")[: current_app.config.get("CONTINUITY_CHAPTER_LIMIT", 15000)]
    if not content.strip():
        return ChapterExtraction()

    generator = _get_text_generator()
    if generator is None:
        return ChapterExtraction()

    prompt, max_tokens = render_prompt(
        CHAPTER_EXTRACTION_KEY,
        fact_context=_scan_fact_context(existing_facts),
        chapter_title=chapter.title,
        content=content,
    )

    try:
        raw_response = generator.generate_response(prompt, max_new_tokens=max_tokens)
    except Exception as exc:  # pragma: no cover - network failures
        current_app.logger.warning("Chapter extraction failed for '%s'. Error: %s", chapter.title, exc)
        return ChapterExtraction()

    return parse_extraction(raw_response)


def parse_extraction(raw_response: Optional[str]) -> ChapterExtraction:
    span = extract_json_span(raw_response, "{", "}")
    if span is None:
        return ChapterExtraction()
    try:
        data = json.loads(span)
    except json.JSONDecodeError:
        return ChapterExtraction()
    if not isinstance(data, dict):
        return ChapterExtraction()

    def _dicts(key: str) -> List[Dict[str, Any]]:
        items = data.get(key)
        if not isinstance(items, list):
            return []
        return [item for item in items if isinstance(item, dict)]

    return ChapterExtraction(facts=_dicts("facts"), events=_dicts("events"), issues=_dicts("issues"))


def _scan_fact_context(facts: List[StoryFact]) -> str:
    if not facts:
        return "None established yet"
    return "\n".join(f'{fact.subject}: {fact.attribute} = "{fact.current_value}"' for fact in facts)


def _store_fact(book: Book, chapter: Chapter, raw: Dict[str, Any]) -> Optional[StoryFact]:
    subject = str(raw.get("subject") or "").strip()
    attribute = str(raw.get("attribute") or "").strip()
    value = str(raw.get("value") or "").strip()
    if not subject or not attribute or not value:
        return None
    category = raw.get("category")
    importance = raw.get("importance")
    position = raw.get("position")
    return create_fact(
        book,
        subject=subject,
        attribute=attribute,
        value=value,
        category=category if category in FACT_CATEGORIES else "custom",
        established_in={
            "chapterId": chapter.id,
            "chapterTitle": chapter.title,
            "excerpt": str(raw.get("excerpt") or "")[:200],
            "position": position if isinstance(position, int) else 0,
        },
        confidence="extracted",
        importance=importance if importance in IMPORTANCE_LEVELS else None,
        source="extracted",
    )


def _store_event(book: Book, chapter: Chapter, raw: Dict[str, Any]) -> bool:
    description = str(raw.get("description") or "").strip()
    if not description:
        return False
    story_time = raw.get("storyTime") if isinstance(raw.get("storyTime"), dict) else {}
    time_type = story_time.get("type")
    importance = raw.get("importance")
    characters = raw.get("characters")
    locations = raw.get("locations")
    create_event(
        book,
        description=description,
        story_time=str(story_time.get("value") or ""),
        story_time_type=time_type if time_type in ("absolute", "relative") else None,
        chapter_id=chapter.id,
        chapter_title=chapter.title,
        characters=characters if isinstance(characters, list) else None,
        locations=locations if isinstance(locations, list) else None,
        importance=importance if importance in IMPORTANCE_LEVELS else None,
    )
    return True
