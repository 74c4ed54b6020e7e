import sys
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from bookfactory import create_app
from bookfactory.config import TestConfig
from bookfactory.extensions import db
from bookfactory.models import Book, StoryFact, User
from bookfactory.services import consistency_check


@pytest.fixture
def app_ctx():
    app = create_app(TestConfig)
    ctx = app.app_context()
    ctx.push()
    db.create_all()
    yield app
    db.session.remove()
    db.drop_all()
    ctx.pop()


@pytest.fixture
def book(app_ctx):
    user = User(email="author@example.com", display_name="Author")
    user.set_password("password123")
    book = Book(title="Saltwater Hymns", owner=user)
    db.session.add_all([user, book])
    db.session.commit()
    return book


def _fact(book, subject, attribute, value, importance="significant", chapter_title=None):
    fact = StoryFact(
        book=book,
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


def test_fact_context_names_origin_chapter_or_earlier(book):
    first = _fact(book, "Mara", "eye color", "green", chapter_title="Chapter 1")
    second = _fact(book, "Oskar", "home", "the lighthouse")

    context = consistency_check.build_fact_context([first, second])

    assert context.splitlines() == [
        'Mara: eye color = "green" (from Chapter 1)',
        'Oskar: home = "the lighthouse" (from earlier)',
    ]


def test_fact_context_uses_current_value(book):
    fact = _fact(book, "Mara", "hair", "black")
    fact.current_value = "silver"

    assert consistency_check.build_fact_context([fact]) == 'Mara: hair = "silver" (from earlier)'


def test_selected_facts_put_critical_first_and_respect_limit(app_ctx, book):
    _fact(book, "Minor", "detail", "a", importance="minor")
    _fact(book, "Significant", "detail", "b", importance="significant")
    _fact(book, "Critical", "detail", "c", importance="critical")
    app_ctx.config["CONTINUITY_FACT_LIMIT"] = 2

    facts = consistency_check.select_facts_for_check(book)

    assert [fact.subject for fact in facts] == ["Critical", "Significant"]


def test_prompt_carries_facts_and_truncated_content(monkeypatch, book):
    fact = _fact(book, "Mara", "eye color", "green", chapter_title="Chapter 1")
    prompts = []

    class DummyGenerator:
        def generate_response(self, prompt: str, **kwargs: object) -> str:
            prompts.append((prompt, kwargs))
            return "[]"

    monkeypatch.setattr(consistency_check, "_get_text_generator", lambda: DummyGenerator())

    content = "x" * 6000 + "TAIL"
    result = consistency_check.check_consistency([fact], content)

    assert result.issues == []
    assert not result.degraded
    assert result.facts_checked == 1
    prompt, kwargs = prompts[0]
    assert 'Mara: eye color = "green" (from Chapter 1)' in prompt
    assert "x" * 5000 in prompt
    assert "x" * 5001 not in prompt
    assert "TAIL" not in prompt
    assert "Be conservative" in prompt
    assert kwargs["max_new_tokens"] == 2000


def test_missing_generator_is_reported_as_degraded(monkeypatch, book):
    fact = _fact(book, "Mara", "eye color", "green")
    monkeypatch.setattr(consistency_check, "_get_text_generator", lambda: None)

    result = consistency_check.check_consistency([fact], "Some text")

    assert result.issues == []
    assert result.degraded
    assert result.degraded_reason == consistency_check.NO_MODEL_REASON
    assert result.facts_checked == 1


def test_no_facts_short_circuits(book):
    result = consistency_check.check_consistency([], "Some text")

    assert result.message == consistency_check.NO_FACTS_MESSAGE
    assert result.issues == []
    assert not result.degraded


@pytest.mark.parametrize(
    "reply",
    [
        None,
        "",
        "No issues found.",
        "[not json at all]",
        '[{"title": "unterminated"',
    ],
)
def test_unusable_replies_parse_to_none(reply):
    assert consistency_check.parse_issue_candidates(reply) is None


def test_reply_parsing_normalises_items():
    reply = (
        "Sure! ```json\n"
        "[\n"
        '  {"type": "made_up", "severity": "catastrophic", "title": " Ghost ", "description": "Dead man talks"},\n'
        '  {"type": "timeline_conflict", "severity": "critical", "title": "", "description": "no title"},\n'
        '  "stray string",\n'
        '  {"type": "location_impossible", "severity": "warning", "title": "Two places", '
        '"description": "Oskar is at sea and at home", "suggestion": "Move the scene"}\n'
        "]\n```"
    )

    candidates = consistency_check.parse_issue_candidates(reply)

    assert [c.title for c in candidates] == ["Ghost", "Two places"]
    assert candidates[0].type == "contradiction"
    assert candidates[0].severity == "warning"
    assert candidates[1].type == "location_impossible"
    assert candidates[1].suggestion == "Move the scene"
    assert candidates[1].excerpt == ""


def test_empty_array_is_a_clean_result():
    assert consistency_check.parse_issue_candidates("Result: []") == []
