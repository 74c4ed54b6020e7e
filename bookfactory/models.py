from __future__ import annotations

import hashlib
import secrets
from datetime import datetime
from typing import Any, Dict, Optional

from flask_login import UserMixin
from sqlalchemy import case
from werkzeug.security import check_password_hash, generate_password_hash

from .extensions import db, login_manager


FACT_CATEGORIES = (
    "character_trait",
    "character_knowledge",
    "character_status",
    "timeline",
    "location",
    "object",
    "world_rule",
    "relationship",
    "plot_thread",
    "custom",
)
CHARACTER_FACT_CATEGORIES = ("character_trait", "character_knowledge", "character_status")
FACT_CONFIDENCE_LEVELS = ("explicit", "implicit", "inferred", "extracted")
IMPORTANCE_LEVELS = ("critical", "significant", "minor")
FACT_SOURCES = ("user", "ai", "import", "extracted")

ISSUE_TYPES = (
    "contradiction",
    "timeline_conflict",
    "character_knowledge",
    "location_impossible",
    "trait_inconsistency",
)
ISSUE_SEVERITIES = ("critical", "warning")
ISSUE_STATUSES = ("open", "resolved", "acknowledged", "dismissed")
ISSUE_DETECTORS = ("auto", "realtime", "user")


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _rank(column, ordered_values):
    return case(
        {value: index for index, value in enumerate(ordered_values)},
        value=column,
        else_=len(ordered_values),
    )


class User(UserMixin, db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(255), nullable=False)
    display_name = db.Column(db.String(120), nullable=False)
    token_hash = db.Column(db.String(64), nullable=True, unique=True, index=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    books = db.relationship("Book", backref="owner", lazy=True, cascade="all, delete-orphan")

    def set_password(self, password: str) -> None:
        self.password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        return check_password_hash(self.password_hash, password)

    def issue_token(self) -> str:
        """Create a new bearer session token, replacing any previous one."""

        token = secrets.token_urlsafe(32)
        self.token_hash = _hash_token(token)
        return token

    def revoke_token(self) -> None:
        self.token_hash = None

    @classmethod
    def from_token(cls, token: str) -> Optional["User"]:
        if not token:
            return None
        return cls.query.filter_by(token_hash=_hash_token(token)).first()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "displayName": self.display_name,
            "createdAt": _isoformat(self.created_at),
        }

    def __repr__(self) -> str:  # pragma: no cover - repr for debugging
        return f"<User {self.email}>"


@login_manager.request_loader
def load_user_from_request(request) -> Optional[User]:
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return User.from_token(token.strip())


class Book(db.Model):
    __tablename__ = "books"

    id = db.Column(db.Integer, primary_key=True)
    owner_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    genre = db.Column(db.String(80), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    chapters = db.relationship(
        "Chapter",
        backref="book",
        lazy=True,
        cascade="all, delete-orphan",
        order_by="Chapter.order",
    )
    facts = db.relationship("StoryFact", backref="book", lazy=True, cascade="all, delete-orphan")
    events = db.relationship(
        "TimelineEvent",
        backref="book",
        lazy=True,
        cascade="all, delete-orphan",
        order_by="TimelineEvent.position",
    )
    issues = db.relationship("ConsistencyIssue", backref="book", lazy=True, cascade="all, delete-orphan")
    scan_status = db.relationship(
        "ScanStatus",
        backref="book",
        uselist=False,
        lazy=True,
        cascade="all, delete-orphan",
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "genre": self.genre,
            "chapterCount": len(self.chapters),
            "createdAt": _isoformat(self.created_at),
            "updatedAt": _isoformat(self.updated_at),
        }

    def __repr__(self) -> str:  # pragma: no cover
        return f"<Book {self.title}>"


class Chapter(db.Model):
    __tablename__ = "chapters"

    id = db.Column(db.Integer, primary_key=True)
    book_id = db.Column(db.Integer, db.ForeignKey("books.id"), nullable=False, index=True)
    title = db.Column(db.String(200), nullable=False)
    content = db.Column(db.Text, nullable=True)
    order = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    @property
    def word_count(self) -> int:
        return len((self.content or "").split())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "bookId": self.book_id,
            "title": self.title,
            "content": self.content or "",
            "order": self.order,
            "wordCount": self.word_count,
            "updatedAt": _isoformat(self.updated_at),
        }

    def __repr__(self) -> str:  # pragma: no cover
        return f"<Chapter {self.order}: {self.title}>"


class StoryFact(db.Model):
    __tablename__ = "story_facts"

    id = db.Column(db.Integer, primary_key=True)
    book_id = db.Column(db.Integer, db.ForeignKey("books.id"), nullable=False, index=True)
    category = db.Column(db.String(50), nullable=False, default="custom")
    subject = db.Column(db.String(200), nullable=False)
    attribute = db.Column(db.String(200), nullable=False)
    value = db.Column(db.Text, nullable=False)
    current_value = db.Column(db.Text, nullable=False)
    established_in = db.Column(db.JSON, nullable=True)
    confidence = db.Column(db.String(20), nullable=False, default="explicit")
    importance = db.Column(db.String(20), nullable=False, default="significant")
    source = db.Column(db.String(20), nullable=False, default="user")
    history = db.Column(db.JSON, nullable=False, default=list)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    @classmethod
    def importance_rank(cls):
        return _rank(cls.importance, IMPORTANCE_LEVELS)

    @property
    def origin_label(self) -> str:
        established = self.established_in if isinstance(self.established_in, dict) else {}
        return established.get("chapterTitle") or "earlier"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "bookId": self.book_id,
            "category": self.category,
            "subject": self.subject,
            "attribute": self.attribute,
            "value": self.value,
            "currentValue": self.current_value,
            "establishedIn": self.established_in,
            "confidence": self.confidence,
            "importance": self.importance,
            "source": self.source,
            "history": list(self.history or []),
            "createdAt": _isoformat(self.created_at),
            "updatedAt": _isoformat(self.updated_at),
        }

    def __repr__(self) -> str:  # pragma: no cover
        return f"<StoryFact {self.subject}.{self.attribute}={self.current_value!r}>"


class TimelineEvent(db.Model):
    __tablename__ = "timeline_events"

    id = db.Column(db.Integer, primary_key=True)
    book_id = db.Column(db.Integer, db.ForeignKey("books.id"), nullable=False, index=True)
    position = db.Column(db.Integer, nullable=False, default=0)
    description = db.Column(db.Text, nullable=False)
    story_time = db.Column(db.String(200), nullable=True)
    story_time_type = db.Column(db.String(20), nullable=False, default="relative")
    chapter_id = db.Column(db.Integer, db.ForeignKey("chapters.id", ondelete="SET NULL"), nullable=True)
    chapter_title = db.Column(db.String(200), nullable=True)
    characters = db.Column(db.JSON, nullable=False, default=list)
    locations = db.Column(db.JSON, nullable=False, default=list)
    importance = db.Column(db.String(20), nullable=False, default="significant")
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "bookId": self.book_id,
            "position": self.position,
            "description": self.description,
            "storyTime": {"type": self.story_time_type, "value": self.story_time},
            "chapterId": self.chapter_id,
            "chapterTitle": self.chapter_title,
            "characters": list(self.characters or []),
            "locations": list(self.locations or []),
            "importance": self.importance,
            "createdAt": _isoformat(self.created_at),
        }

    def __repr__(self) -> str:  # pragma: no cover
        return f"<TimelineEvent {self.position}: {self.description[:30]}>"


class ConsistencyIssue(db.Model):
    __tablename__ = "consistency_issues"

    id = db.Column(db.Integer, primary_key=True)
    book_id = db.Column(db.Integer, db.ForeignKey("books.id"), nullable=False, index=True)
    type = db.Column(db.String(40), nullable=False, default="contradiction")
    severity = db.Column(db.String(20), nullable=False, default="warning")
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=False)
    excerpt = db.Column(db.Text, nullable=True)
    suggestion = db.Column(db.Text, nullable=True)
    status = db.Column(db.String(20), nullable=False, default="open", index=True)
    resolution = db.Column(db.JSON, nullable=True)
    chapter_id = db.Column(db.Integer, db.ForeignKey("chapters.id", ondelete="SET NULL"), nullable=True)
    chapter_title = db.Column(db.String(200), nullable=True)
    detected_by = db.Column(db.String(20), nullable=False, default="auto")
    detected_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    @classmethod
    def list_ordering(cls):
        """Open issues first, critical before warning, newest first."""

        return (
            _rank(cls.status, ISSUE_STATUSES),
            _rank(cls.severity, ISSUE_SEVERITIES),
            cls.detected_at.desc(),
            cls.id.desc(),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "bookId": self.book_id,
            "type": self.type,
            "severity": self.severity,
            "title": self.title,
            "description": self.description,
            "excerpt": self.excerpt or "",
            "suggestion": self.suggestion or "",
            "status": self.status,
            "resolution": self.resolution,
            "chapterId": self.chapter_id,
            "chapterTitle": self.chapter_title,
            "detectedBy": self.detected_by,
            "detectedAt": _isoformat(self.detected_at),
        }

    def __repr__(self) -> str:  # pragma: no cover
        return f"<ConsistencyIssue {self.title} ({self.status})>"


class ScanStatus(db.Model):
    __tablename__ = "scan_statuses"

    id = db.Column(db.Integer, primary_key=True)
    book_id = db.Column(db.Integer, db.ForeignKey("books.id"), nullable=False, unique=True)
    phase = db.Column(db.String(255), nullable=False, default="Starting...")
    progress = db.Column(db.Integer, nullable=False, default=0)
    started_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase,
            "progress": self.progress,
            "startedAt": _isoformat(self.started_at),
            "completedAt": _isoformat(self.completed_at),
        }

    def __repr__(self) -> str:  # pragma: no cover
        return f"<ScanStatus book={self.book_id} {self.phase} {self.progress}%>"
