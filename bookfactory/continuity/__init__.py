from flask import Blueprint

bp = Blueprint("continuity", __name__, url_prefix="/continuity")

from . import routes  # noqa: E402,F401
