"""Base form for JSON request bodies."""
from __future__ import annotations

from typing import Any, Optional

from flask import request
from flask_wtf import FlaskForm
from werkzeug.datastructures import ImmutableMultiDict


def strip_value(value: Any) -> Optional[Any]:
    """Coerce scalar JSON values to stripped strings, leaving ``None`` alone."""

    if value is None or isinstance(value, (dict, list, bool)):
        return value
    return str(value).strip()


class ApiForm(FlaskForm):
    """FlaskForm fed from ``request.get_json()``; bearer auth replaces CSRF."""

    class Meta:
        csrf = False

        def wrap_formdata(self, form, formdata):
            wrapped = super().wrap_formdata(form, formdata)
            if wrapped is None:
                return None
            # JSON nulls mean "not sent"; WTForms would otherwise see them as values.
            return ImmutableMultiDict(
                [(key, value) for key, value in wrapped.items(multi=True) if value is not None]
            )

    def present(self, field_name: str) -> bool:
        """True when the request body carried ``field_name``, even as ``null``."""

        payload = request.get_json(silent=True)
        if isinstance(payload, dict) and self[field_name].name in payload:
            return True
        return bool(self[field_name].raw_data)

    def field_errors(self) -> dict:
        """Errors keyed by the names used in the request body."""

        errors = {}
        for key, messages in self.errors.items():
            name = self[key].name if key in self._fields else "_form"
            errors[name] = list(messages)
        return errors
