from __future__ import annotations

from flask import abort, jsonify
from flask_login import current_user, login_required
from sqlalchemy import func

from ..errors import validation_error
from ..extensions import db
from ..models import Book, Chapter
from . import bp
from .forms import BookForm, BookUpdateForm, ChapterForm, ChapterUpdateForm


def owned_book_or_404(book_id: int) -> Book:
    """Return the caller's book; other owners' books look missing."""

    book = Book.query.filter_by(id=book_id, owner_id=current_user.id).first()
    if book is None:
        abort(404, description="Book not found")
    return book


def _chapter_or_404(book: Book, chapter_id: int) -> Chapter:
    chapter = Chapter.query.filter_by(id=chapter_id, book_id=book.id).first()
    if chapter is None:
        abort(404, description="Chapter not found")
    return chapter


@bp.route("", methods=["GET"])
@login_required
def list_books():
    books = (
        Book.query.filter_by(owner_id=current_user.id)
        .order_by(Book.updated_at.desc())
        .all()
    )
    return jsonify({"books": [book.to_dict() for book in books]})


@bp.route("", methods=["POST"])
@login_required
def create_book():
    form = BookForm()
    if not form.validate_on_submit():
        return validation_error(form)

    book = Book(
        owner=current_user,
        title=form.title.data,
        description=form.description.data or None,
        genre=form.genre.data or None,
    )
    db.session.add(book)
    db.session.commit()
    return jsonify({"book": book.to_dict()}), 201


@bp.route("/<int:book_id>", methods=["GET"])
@login_required
def get_book(book_id: int):
    book = owned_book_or_404(book_id)
    return jsonify({"book": book.to_dict()})


@bp.route("/<int:book_id>", methods=["PATCH"])
@login_required
def update_book(book_id: int):
    book = owned_book_or_404(book_id)
    form = BookUpdateForm()
    if not form.validate_on_submit():
        return validation_error(form)

    if form.present("title") and form.title.data:
        book.title = form.title.data
    if form.present("description"):
        book.description = form.description.data or None
    if form.present("genre"):
        book.genre = form.genre.data or None
    db.session.commit()
    return jsonify({"book": book.to_dict()})


@bp.route("/<int:book_id>", methods=["DELETE"])
@login_required
def delete_book(book_id: int):
    book = owned_book_or_404(book_id)
    db.session.delete(book)
    db.session.commit()
    return jsonify({"deleted": book_id})


@bp.route("/<int:book_id>/chapters", methods=["GET"])
@login_required
def list_chapters(book_id: int):
    book = owned_book_or_404(book_id)
    chapters = (
        Chapter.query.filter_by(book_id=book.id)
        .order_by(Chapter.order.asc(), Chapter.id.asc())
        .all()
    )
    return jsonify({"chapters": [chapter.to_dict() for chapter in chapters]})


@bp.route("/<int:book_id>/chapters", methods=["POST"])
@login_required
def create_chapter(book_id: int):
    book = owned_book_or_404(book_id)
    form = ChapterForm()
    if not form.validate_on_submit():
        return validation_error(form)

    order = form.order.data
    if order is None:
        last_order = db.session.query(func.max(Chapter.order)).filter(Chapter.book_id == book.id).scalar()
        order = (last_order or 0) + 1

    chapter = Chapter(book=book, title=form.title.data, content=form.content.data or "", order=order)
    db.session.add(chapter)
    db.session.commit()
    return jsonify({"chapter": chapter.to_dict()}), 201


@bp.route("/<int:book_id>/chapters/<int:chapter_id>", methods=["PATCH"])
@login_required
def update_chapter(book_id: int, chapter_id: int):
    book = owned_book_or_404(book_id)
    chapter = _chapter_or_404(book, chapter_id)
    form = ChapterUpdateForm()
    if not form.validate_on_submit():
        return validation_error(form)

    if form.present("title") and form.title.data:
        chapter.title = form.title.data
    if form.present("content"):
        chapter.content = form.content.data or ""
    if form.present("order") and form.order.data is not None:
        chapter.order = form.order.data
    db.session.commit()
    return jsonify({"chapter": chapter.to_dict()})


@bp.route("/<int:book_id>/chapters/<int:chapter_id>", methods=["DELETE"])
@login_required
def delete_chapter(book_id: int, chapter_id: int):
    book = owned_book_or_404(book_id)
    chapter = _chapter_or_404(book, chapter_id)
    db.session.delete(chapter)
    db.session.commit()
    return jsonify({"deleted": chapter_id})
