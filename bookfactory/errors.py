"""JSON error responses shared by the API blueprints."""
from __future__ import annotations

from typing import Dict, List, Mapping, Optional

from flask import Flask, current_app, jsonify
from werkzeug.exceptions import HTTPException

from .extensions import db, login_manager


def error_response(message: str, status: int, *, fields: Optional[Mapping[str, List[str]]] = None):
    payload: Dict[str, object] = {"error": message}
    if fields:
        payload["fields"] = {name: list(messages) for name, messages in fields.items()}
    return jsonify(payload), status


def validation_error(form_or_fields) -> tuple:
    """Return a 400 response listing field errors from a form or a mapping."""

    if hasattr(form_or_fields, "field_errors"):
        fields = form_or_fields.field_errors()
    else:
        fields = form_or_fields
    return error_response("Invalid request", 400, fields=fields)


def not_found(thing: str = "Resource"):
    return error_response(f"{thing} not found", 404)


@login_manager.unauthorized_handler
def _unauthorized():
    return error_response("Unauthorized", 401)


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(HTTPException)
    def _http_error(exc: HTTPException):
        return error_response(exc.description or exc.name, exc.code or 500)

    @app.errorhandler(Exception)
    def _unexpected_error(exc: Exception):
        db.session.rollback()
        current_app.logger.exception("Unhandled error while processing request")
        return error_response("Internal server error", 500)
