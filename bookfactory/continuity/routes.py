from __future__ import annotations

from flask import abort, current_app, jsonify, request
from flask_login import login_required

from ..books.routes import owned_book_or_404
from ..errors import error_response, validation_error
from ..extensions import db
from ..models import Chapter, ConsistencyIssue, StoryFact
from ..services.analysis import analyze_book
from ..services.book_scan import BookScanError, scan_book, scan_status_payload
from ..services.consistency_check import (
    ConsistencyCheckError,
    check_consistency,
    persist_candidates,
    select_facts_for_check,
)
from ..services.llm import LLMRateLimitError
from ..services.resolution import FALLBACK_STATUS, UnknownResolutionMethod, resolve_issue, status_for_method
from ..services.story_facts import create_event, create_fact, list_events, list_facts, record_fact_change
from . import bp
from .forms import ConsistencyCheckForm, EventForm, FactForm, FactUpdateForm, ResolveIssueForm


def _request_json() -> dict:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


def _fact_or_404(book_id: int, fact_id: int) -> StoryFact:
    fact = StoryFact.query.filter_by(id=fact_id, book_id=book_id).first()
    if fact is None:
        abort(404, description="Fact not found")
    return fact


@bp.route("/<int:book_id>/facts", methods=["GET"])
@login_required
def get_facts(book_id: int):
    book = owned_book_or_404(book_id)
    return jsonify({"facts": [fact.to_dict() for fact in list_facts(book)]})


@bp.route("/<int:book_id>/facts", methods=["POST"])
@login_required
def add_fact(book_id: int):
    book = owned_book_or_404(book_id)
    form = FactForm()
    if not form.validate_on_submit():
        return validation_error(form)

    fact = create_fact(
        book,
        subject=form.subject.data,
        attribute=form.attribute.data,
        value=form.value.data,
        category=form.category.data or None,
        established_in=_request_json().get("establishedIn"),
        confidence=form.confidence.data or None,
        importance=form.importance.data or None,
        source=form.source.data or None,
    )
    db.session.commit()
    return jsonify({"fact": fact.to_dict()}), 201


@bp.route("/<int:book_id>/facts/<int:fact_id>", methods=["PATCH"])
@login_required
def update_fact(book_id: int, fact_id: int):
    book = owned_book_or_404(book_id)
    fact = _fact_or_404(book.id, fact_id)
    form = FactUpdateForm()
    if not form.validate_on_submit():
        return validation_error(form)

    record_fact_change(
        fact,
        form.value.data,
        change_type=form.change_type.data or "update",
        changed_in=_request_json().get("changedIn"),
        notes=form.notes.data,
    )
    db.session.commit()
    return jsonify({"fact": fact.to_dict()})


@bp.route("/<int:book_id>/facts/<int:fact_id>", methods=["DELETE"])
@login_required
def delete_fact(book_id: int, fact_id: int):
    book = owned_book_or_404(book_id)
    fact = _fact_or_404(book.id, fact_id)
    db.session.delete(fact)
    db.session.commit()
    return jsonify({"deleted": fact_id})


@bp.route("/<int:book_id>/events", methods=["GET"])
@login_required
def get_events(book_id: int):
    book = owned_book_or_404(book_id)
    return jsonify({"events": [event.to_dict() for event in list_events(book)]})


@bp.route("/<int:book_id>/events", methods=["POST"])
@login_required
def add_event(book_id: int):
    book = owned_book_or_404(book_id)
    form = EventForm()
    if not form.validate_on_submit():
        return validation_error(form)

    chapter = None
    if form.chapter_id.data is not None:
        chapter = Chapter.query.filter_by(id=form.chapter_id.data, book_id=book.id).first()
        if chapter is None:
            return validation_error({"chapterId": ["Chapter not found in this book."]})

    payload = _request_json()
    event = create_event(
        book,
        description=form.description.data,
        position=form.position.data,
        story_time=form.date.data,
        chapter_id=chapter.id if chapter else None,
        chapter_title=chapter.title if chapter else None,
        characters=payload.get("characters") if isinstance(payload.get("characters"), list) else None,
        locations=payload.get("locations") if isinstance(payload.get("locations"), list) else None,
        importance=form.importance.data or None,
    )
    db.session.commit()
    return jsonify({"event": event.to_dict()}), 201


@bp.route("/<int:book_id>/issues", methods=["GET"])
@login_required
def get_issues(book_id: int):
    book = owned_book_or_404(book_id)
    issues = (
        ConsistencyIssue.query.filter_by(book_id=book.id)
        .order_by(*ConsistencyIssue.list_ordering())
        .all()
    )
    return jsonify({"issues": [issue.to_dict() for issue in issues]})


@bp.route("/<int:book_id>/issues/<int:issue_id>/resolve", methods=["POST"])
@login_required
def resolve(book_id: int, issue_id: int):
    book = owned_book_or_404(book_id)
    issue = ConsistencyIssue.query.filter_by(id=issue_id, book_id=book.id).first()
    if issue is None:
        return error_response("Issue not found", 404)

    form = ResolveIssueForm()
    if not form.validate_on_submit():
        return validation_error(form)

    method = form.method.data or None
    try:
        status = status_for_method(method)
    except UnknownResolutionMethod as exc:
        if current_app.config.get("CONTINUITY_STRICT_RESOLUTION"):
            return validation_error({"method": [str(exc)]})
        current_app.logger.warning(
            "Unknown resolution method %r for issue %s; marking it %s.", method, issue.id, FALLBACK_STATUS
        )
        status = FALLBACK_STATUS

    resolve_issue(issue, method, form.notes.data, status=status)
    db.session.commit()
    return jsonify({"issue": issue.to_dict()})


@bp.route("/<int:book_id>/analysis", methods=["GET"])
@login_required
def analysis(book_id: int):
    book = owned_book_or_404(book_id)
    return jsonify(analyze_book(book).to_dict())


@bp.route("/<int:book_id>/scan", methods=["POST"])
@login_required
def start_scan(book_id: int):
    book = owned_book_or_404(book_id)
    try:
        summary = scan_book(book)
    except BookScanError as exc:
        return error_response(str(exc), 400)
    return jsonify(summary.to_dict())


@bp.route("/<int:book_id>/scan/status", methods=["GET"])
@login_required
def scan_status(book_id: int):
    book = owned_book_or_404(book_id)
    return jsonify(scan_status_payload(book))


@bp.route("/check", methods=["POST"])
@login_required
def check():
    form = ConsistencyCheckForm()
    if not form.validate_on_submit():
        return validation_error(form)

    book = owned_book_or_404(form.book_id.data)
    chapter = None
    if form.chapter_id.data is not None:
        chapter = Chapter.query.filter_by(id=form.chapter_id.data, book_id=book.id).first()

    facts = select_facts_for_check(book)
    try:
        result = check_consistency(facts, form.content.data)
    except LLMRateLimitError as exc:
        return error_response(str(exc), 503)
    except ConsistencyCheckError:
        current_app.logger.exception("Consistency check failed for book %s", book.id)
        return error_response("Check failed", 500)

    if result.message:
        return jsonify({"issues": [], "message": result.message})

    payload = {
        "issues": [candidate.to_dict() for candidate in result.issues],
        "factsChecked": result.facts_checked,
    }
    if result.degraded:
        payload["degraded"] = True
        payload["degradedReason"] = result.degraded_reason

    if form.persist.data and result.issues:
        stored = persist_candidates(book, result.issues, chapter=chapter)
        db.session.commit()
        payload["persistedIssueIds"] = [issue.id for issue in stored]

    return jsonify(payload)
