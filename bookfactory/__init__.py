from __future__ import annotations

import logging

from flask import Flask

from .config import Config
from .extensions import db, login_manager, migrate
from .db_utils import ensure_database_schema


def create_app(config_class: type[Config] = Config) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config_class)
    app.json.sort_keys = False
    configure_logging(app)

    register_extensions(app)
    register_blueprints(app)

    with app.app_context():
        ensure_database_schema()

    return app


def configure_logging(app: Flask) -> None:
    level_name = str(app.config.get("LOG_LEVEL") or "INFO").upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.INFO
    app.logger.setLevel(level)
    logging.getLogger(__name__).setLevel(level)


def register_extensions(app: Flask) -> None:
    # Imported for the login_manager callbacks they register.
    from . import errors, models  # noqa: F401

    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)
    errors.register_error_handlers(app)


def register_blueprints(app: Flask) -> None:
    from .auth import bp as auth_bp
    from .books import bp as books_bp
    from .continuity import bp as continuity_bp

    app.register_blueprint(auth_bp)
    app.register_blueprint(books_bp)
    app.register_blueprint(continuity_bp)
