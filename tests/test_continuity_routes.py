import sys
from datetime import datetime, timedelta
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from bookfactory import create_app
from bookfactory.config import TestConfig
from bookfactory.extensions import db
from bookfactory.models import Book, Chapter, ConsistencyIssue, StoryFact, TimelineEvent, User
from bookfactory.services import consistency_check


@pytest.fixture
def app_instance():
    app = create_app(TestConfig)
    ctx = app.app_context()
    ctx.push()
    db.create_all()
    yield app
    db.session.remove()
    db.drop_all()
    ctx.pop()


@pytest.fixture
def client(app_instance):
    return app_instance.test_client()


@pytest.fixture
def user(app_instance):
    user = User(email="author@example.com", display_name="Test Author")
    user.set_password("password123")
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture
def headers(user):
    token = user.issue_token()
    db.session.commit()
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def book(user):
    book = Book(title="The Glass Orchard", owner=user)
    db.session.add(book)
    db.session.commit()
    return book


def _add_fact(book, subject, attribute, value, *, importance="significant", chapter_title=None):
    fact = StoryFact(
        book=book,
        category="character_trait",
        subject=subject,
        attribute=attribute,
        value=value,
        current_value=value,
        importance=importance,
        established_in={"chapterId": 1, "chapterTitle": chapter_title} if chapter_title else None,
        history=[],
    )
    db.session.add(fact)
    db.session.commit()
    return fact


def _add_issue(book, title, *, status="open", severity="warning", detected_at=None):
    issue = ConsistencyIssue(
        book=book,
        type="contradiction",
        severity=severity,
        title=title,
        description=f"{title} description",
        status=status,
        detected_at=detected_at or datetime.utcnow(),
    )
    db.session.add(issue)
    db.session.commit()
    return issue


def test_requests_without_token_are_unauthorized(client, book):
    response = client.get(f"/continuity/{book.id}/facts")

    assert response.status_code == 401
    assert response.get_json() == {"error": "Unauthorized"}


def test_invalid_token_is_unauthorized(client, book):
    response = client.get(
        f"/continuity/{book.id}/issues",
        headers={"Authorization": "Bearer not-a-real-token"},
    )

    assert response.status_code == 401


def test_other_authors_book_looks_missing(client, book):
    intruder = User(email="intruder@example.com", display_name="Intruder")
    intruder.set_password("password123")
    db.session.add(intruder)
    token = intruder.issue_token()
    db.session.commit()

    response = client.get(
        f"/continuity/{book.id}/facts",
        headers={"Authorization": f"Bearer {token}"},
    )

    assert response.status_code == 404
    assert response.get_json()["error"] == "Book not found"


def test_create_fact_applies_defaults(client, headers, book):
    response = client.post(
        f"/continuity/{book.id}/facts",
        json={
            "category": "character_trait",
            "subject": "Mara",
            "attribute": "eye color",
            "value": "green",
            "establishedIn": {"chapterId": 3, "chapterTitle": "The Orchard", "excerpt": "her green eyes"},
        },
        headers=headers,
    )

    assert response.status_code == 201
    fact = response.get_json()["fact"]
    assert fact["confidence"] == "explicit"
    assert fact["importance"] == "significant"
    assert fact["source"] == "user"
    assert fact["currentValue"] == "green"
    assert fact["history"] == []
    assert fact["establishedIn"]["chapterTitle"] == "The Orchard"
    assert StoryFact.query.count() == 1


def test_create_fact_reports_field_errors(client, headers, book):
    response = client.post(
        f"/continuity/{book.id}/facts",
        json={"attribute": "eye color", "value": "green", "importance": "enormous"},
        headers=headers,
    )

    assert response.status_code == 400
    payload = response.get_json()
    assert payload["error"] == "Invalid request"
    assert "subject" in payload["fields"]
    assert "importance" in payload["fields"]
    assert StoryFact.query.count() == 0


def test_changing_a_fact_value_appends_history(client, headers, book):
    fact = _add_fact(book, "Mara", "hair", "black")

    response = client.patch(
        f"/continuity/{book.id}/facts/{fact.id}",
        json={"value": "silver", "notes": "Aged ten years"},
        headers=headers,
    )

    assert response.status_code == 200
    payload = response.get_json()["fact"]
    assert payload["value"] == "black"
    assert payload["currentValue"] == "silver"
    assert len(payload["history"]) == 1
    change = payload["history"][0]
    assert change["previousValue"] == "black"
    assert change["newValue"] == "silver"
    assert change["changeType"] == "update"
    assert change["notes"] == "Aged ten years"


def test_facts_are_listed_newest_first(client, headers, book):
    _add_fact(book, "Mara", "hair", "black")
    _add_fact(book, "Oskar", "height", "tall")

    response = client.get(f"/continuity/{book.id}/facts", headers=headers)

    assert response.status_code == 200
    assert [fact["subject"] for fact in response.get_json()["facts"]] == ["Oskar", "Mara"]


def test_events_are_ordered_by_position(client, headers, book):
    db.session.add_all(
        [
            TimelineEvent(book=book, position=2, description="The orchard burns"),
            TimelineEvent(book=book, position=0, description="Mara arrives"),
            TimelineEvent(book=book, position=1, description="The letter is found"),
        ]
    )
    db.session.commit()

    response = client.get(f"/continuity/{book.id}/events", headers=headers)

    assert response.status_code == 200
    assert [event["description"] for event in response.get_json()["events"]] == [
        "Mara arrives",
        "The letter is found",
        "The orchard burns",
    ]


def test_new_events_are_appended_to_the_timeline(client, headers, book):
    chapter = Chapter(book=book, title="Arrival", content="", order=1)
    db.session.add(chapter)
    db.session.add(TimelineEvent(book=book, position=4, description="Earlier event"))
    db.session.commit()

    response = client.post(
        f"/continuity/{book.id}/events",
        json={"description": "Mara meets Oskar", "date": "Day 3", "chapterId": chapter.id, "characters": ["Mara", "Oskar"]},
        headers=headers,
    )

    assert response.status_code == 201
    event = response.get_json()["event"]
    assert event["position"] == 5
    assert event["storyTime"]["value"] == "Day 3"
    assert event["chapterTitle"] == "Arrival"
    assert event["characters"] == ["Mara", "Oskar"]


def test_null_event_fields_fall_back_to_defaults(client, headers, book):
    db.session.add(TimelineEvent(book=book, position=2, description="Earlier event"))
    db.session.commit()

    response = client.post(
        f"/continuity/{book.id}/events",
        json={"description": "Mara leaves", "position": None, "chapterId": None, "importance": None},
        headers=headers,
    )

    assert response.status_code == 201
    event = response.get_json()["event"]
    assert event["position"] == 3
    assert event["chapterId"] is None
    assert event["importance"] == "significant"


def test_issues_are_ordered_by_status_severity_and_recency(client, headers, book):
    now = datetime.utcnow()
    _add_issue(book, "dismissed", status="dismissed", severity="critical", detected_at=now)
    _add_issue(book, "old open warning", severity="warning", detected_at=now - timedelta(days=3))
    _add_issue(book, "resolved", status="resolved", severity="critical", detected_at=now)
    _add_issue(book, "older open critical", severity="critical", detected_at=now - timedelta(days=2))
    _add_issue(book, "new open warning", severity="warning", detected_at=now)
    _add_issue(book, "newer open critical", severity="critical", detected_at=now - timedelta(hours=1))
    _add_issue(book, "acknowledged", status="acknowledged", severity="warning", detected_at=now)

    response = client.get(f"/continuity/{book.id}/issues", headers=headers)

    assert response.status_code == 200
    titles = [issue["title"] for issue in response.get_json()["issues"]]
    assert titles == [
        "newer open critical",
        "older open critical",
        "new open warning",
        "old open warning",
        "resolved",
        "acknowledged",
        "dismissed",
    ]


@pytest.mark.parametrize(
    "method, expected_status",
    [
        ("fixed", "resolved"),
        ("intentional", "acknowledged"),
        ("wont_fix", "dismissed"),
        ("shrug", "resolved"),
    ],
)
def test_resolve_maps_method_to_status(client, headers, book, method, expected_status):
    issue = _add_issue(book, "Eye colour changes")

    response = client.post(
        f"/continuity/{book.id}/issues/{issue.id}/resolve",
        json={"method": method},
        headers=headers,
    )

    assert response.status_code == 200
    payload = response.get_json()["issue"]
    assert payload["status"] == expected_status
    assert payload["resolution"]["method"] == method
    assert payload["resolution"]["notes"] == ""
    assert payload["resolution"]["resolvedAt"]


def test_resolve_rejects_unknown_method_in_strict_mode(app_instance, client, headers, book):
    app_instance.config["CONTINUITY_STRICT_RESOLUTION"] = True
    issue = _add_issue(book, "Eye colour changes")

    response = client.post(
        f"/continuity/{book.id}/issues/{issue.id}/resolve",
        json={"method": "shrug"},
        headers=headers,
    )

    assert response.status_code == 400
    assert "method" in response.get_json()["fields"]
    assert db.session.get(ConsistencyIssue, issue.id).status == "open"


def test_second_resolution_overwrites_the_first(client, headers, book):
    issue = _add_issue(book, "Timeline slip")
    url = f"/continuity/{book.id}/issues/{issue.id}/resolve"

    client.post(url, json={"method": "intentional", "notes": "Unreliable narrator"}, headers=headers)
    response = client.post(url, json={"method": "fixed"}, headers=headers)

    payload = response.get_json()["issue"]
    assert payload["status"] == "resolved"
    assert payload["resolution"]["method"] == "fixed"
    assert payload["resolution"]["notes"] == ""


def test_resolve_unknown_issue_is_not_found(client, headers, book):
    response = client.post(
        f"/continuity/{book.id}/issues/999/resolve",
        json={"method": "fixed"},
        headers=headers,
    )

    assert response.status_code == 404


def test_analysis_scores_open_issues(client, headers, book):
    _add_fact(book, "Mara", "eye color", "green")
    _add_issue(book, "critical one", severity="critical")
    _add_issue(book, "critical two", severity="critical")
    _add_issue(book, "warning", severity="warning")
    _add_issue(book, "already fixed", status="resolved", severity="critical")

    response = client.get(f"/continuity/{book.id}/analysis", headers=headers)

    assert response.status_code == 200
    analysis = response.get_json()
    assert analysis["continuityScore"] == 65
    assert analysis["stats"]["totalFacts"] == 1
    assert analysis["stats"]["totalCharacters"] == 1
    assert analysis["stats"]["issuesFound"] == 4
    assert analysis["stats"]["criticalIssues"] == 2
    assert analysis["stats"]["warningIssues"] == 1
    assert set(analysis["scoreBreakdown"].values()) == {65}
    assert [issue["title"] for issue in analysis["topIssues"]][-1] == "warning"


def test_scan_status_defaults_when_no_scan_ran(client, headers, book):
    response = client.get(f"/continuity/{book.id}/scan/status", headers=headers)

    assert response.status_code == 200
    assert response.get_json() == {"phase": "Not started", "progress": 0}


def test_check_without_facts_returns_message(monkeypatch, client, headers, book):
    def _unexpected():
        raise AssertionError("the language model must not be consulted without facts")

    monkeypatch.setattr(consistency_check, "_get_text_generator", _unexpected)

    response = client.post(
        "/continuity/check",
        json={"content": "Mara blinked her blue eyes.", "bookId": book.id},
        headers=headers,
    )

    assert response.status_code == 200
    assert response.get_json() == {"issues": [], "message": "No facts tracked yet"}


def test_check_requires_content_and_book(client, headers, book):
    response = client.post("/continuity/check", json={"bookId": book.id}, headers=headers)

    assert response.status_code == 400
    assert "content" in response.get_json()["fields"]


def test_check_rejects_empty_content(client, headers, book):
    response = client.post("/continuity/check", json={"content": "", "bookId": book.id}, headers=headers)

    assert response.status_code == 400
    assert "content" in response.get_json()["fields"]


def test_check_accepts_whitespace_content_without_facts(client, headers, book):
    response = client.post("/continuity/check", json={"content": "   ", "bookId": book.id}, headers=headers)

    assert response.status_code == 200
    assert response.get_json() == {"issues": [], "message": "No facts tracked yet"}


def test_check_treats_null_optional_fields_as_missing(monkeypatch, client, headers, book):
    _add_fact(book, "Mara", "eye color", "green")

    class DummyGenerator:
        def generate_response(self, prompt: str, **_: object) -> str:
            return '[{"type": "contradiction", "severity": "warning", "title": "t", "description": "d"}]'

    monkeypatch.setattr(consistency_check, "_get_text_generator", lambda: DummyGenerator())

    response = client.post(
        "/continuity/check",
        json={"content": "New text", "bookId": book.id, "chapterId": None, "persist": None},
        headers=headers,
    )

    assert response.status_code == 200
    payload = response.get_json()
    assert len(payload["issues"]) == 1
    assert "persistedIssueIds" not in payload
    assert ConsistencyIssue.query.count() == 0


def test_check_unparseable_reply_degrades_to_no_issues(monkeypatch, client, headers, book):
    _add_fact(book, "Mara", "eye color", "green")
    _add_fact(book, "Oskar", "home", "the lighthouse")

    class DummyGenerator:
        def generate_response(self, prompt: str, **_: object) -> str:
            return "Everything looks consistent to me!"

    monkeypatch.setattr(consistency_check, "_get_text_generator", lambda: DummyGenerator())

    response = client.post(
        "/continuity/check",
        json={"content": "Mara walked to the lighthouse.", "bookId": book.id},
        headers=headers,
    )

    assert response.status_code == 200
    payload = response.get_json()
    assert payload["issues"] == []
    assert payload["factsChecked"] == 2
    assert payload["degraded"] is True


def test_check_returns_and_persists_issues(monkeypatch, client, headers, book):
    _add_fact(book, "Mara", "eye color", "green", importance="critical", chapter_title="Chapter 1")
    chapter = Chapter(book=book, title="Chapter 4", content="", order=4)
    db.session.add(chapter)
    db.session.commit()

    reply = (
        "Here is what I found:\n"
        '[{"type": "trait_inconsistency", "severity": "critical", "title": "Eye colour changed", '
        '"description": "Mara was established with green eyes.", "excerpt": "her blue eyes", '
        '"suggestion": "Use green."}]'
    )

    class DummyGenerator:
        def generate_response(self, prompt: str, **_: object) -> str:
            return reply

    monkeypatch.setattr(consistency_check, "_get_text_generator", lambda: DummyGenerator())

    response = client.post(
        "/continuity/check",
        json={
            "content": "Mara rubbed her blue eyes.",
            "bookId": book.id,
            "chapterId": chapter.id,
            "persist": True,
        },
        headers=headers,
    )

    assert response.status_code == 200
    payload = response.get_json()
    assert payload["factsChecked"] == 1
    assert "degraded" not in payload
    assert payload["issues"] == [
        {
            "type": "trait_inconsistency",
            "severity": "critical",
            "title": "Eye colour changed",
            "description": "Mara was established with green eyes.",
            "excerpt": "her blue eyes",
            "suggestion": "Use green.",
        }
    ]
    assert len(payload["persistedIssueIds"]) == 1
    stored = db.session.get(ConsistencyIssue, payload["persistedIssueIds"][0])
    assert stored.status == "open"
    assert stored.detected_by == "realtime"
    assert stored.chapter_title == "Chapter 4"


def test_check_does_not_persist_by_default(monkeypatch, client, headers, book):
    _add_fact(book, "Mara", "eye color", "green")

    class DummyGenerator:
        def generate_response(self, prompt: str, **_: object) -> str:
            return '[{"type": "contradiction", "severity": "warning", "title": "t", "description": "d"}]'

    monkeypatch.setattr(consistency_check, "_get_text_generator", lambda: DummyGenerator())

    response = client.post(
        "/continuity/check",
        json={"content": "New text", "bookId": book.id},
        headers=headers,
    )

    assert len(response.get_json()["issues"]) == 1
    assert ConsistencyIssue.query.count() == 0


def test_check_reports_upstream_failure(monkeypatch, client, headers, book):
    _add_fact(book, "Mara", "eye color", "green")

    class FailingGenerator:
        def generate_response(self, prompt: str, **_: object) -> str:
            raise RuntimeError("connection reset")

    monkeypatch.setattr(consistency_check, "_get_text_generator", lambda: FailingGenerator())

    response = client.post(
        "/continuity/check",
        json={"content": "New text", "bookId": book.id},
        headers=headers,
    )

    assert response.status_code == 500
    assert response.get_json() == {"error": "Check failed"}


def test_check_reports_rate_limiting(monkeypatch, client, headers, book):
    _add_fact(book, "Mara", "eye color", "green")

    class ThrottledGenerator:
        def generate_response(self, prompt: str, **_: object) -> str:
            raise RuntimeError("Rate limit reached for requests")

    monkeypatch.setattr(consistency_check, "_get_text_generator", lambda: ThrottledGenerator())

    response = client.post(
        "/continuity/check",
        json={"content": "New text", "bookId": book.id},
        headers=headers,
    )

    assert response.status_code == 503
