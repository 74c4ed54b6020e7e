"""Database helper utilities for ensuring schema consistency."""
from __future__ import annotations

from typing import Iterable, List, Set

from sqlalchemy import inspect, text
from sqlalchemy.exc import SQLAlchemyError

from .extensions import db


def _get_column_names(table_name: str) -> Set[str]:
    inspector = inspect(db.engine)
    return {column["name"] for column in inspector.get_columns(table_name)}


def _missing_column_statements(table) -> List[str]:
    existing = _get_column_names(table.name)
    statements = []
    for column in table.columns:
        if column.name in existing or column.primary_key:
            continue
        if not column.nullable and column.default is None:
            # Cannot be backfilled without a default; leave it to a migration.
            continue
        column_type = column.type.compile(dialect=db.engine.dialect)
        statements.append(f'ALTER TABLE {table.name} ADD COLUMN "{column.name}" {column_type}')
    return statements


def ensure_database_schema() -> None:
    """Ensure that essential schema updates are applied.

    Runs on every application start. Missing tables are created and nullable
    columns added to the models after a database was first created are
    appended with ``ALTER TABLE``. Anything more involved belongs in a
    Flask-Migrate revision.
    """

    try:
        inspector = inspect(db.engine)
        table_names: Iterable[str] = inspector.get_table_names()

        if "users" not in table_names:
            db.create_all()
            return

        # Import locally to avoid circular import issues during application setup.
        from .models import Book, Chapter, ConsistencyIssue, ScanStatus, StoryFact, TimelineEvent, User

        required_tables = {
            "users": User.__table__,
            "books": Book.__table__,
            "chapters": Chapter.__table__,
            "story_facts": StoryFact.__table__,
            "timeline_events": TimelineEvent.__table__,
            "consistency_issues": ConsistencyIssue.__table__,
            "scan_statuses": ScanStatus.__table__,
        }

        for table_name, table in required_tables.items():
            if table_name not in table_names:
                table.create(bind=db.engine)
                continue
            for statement in _missing_column_statements(table):
                with db.engine.begin() as connection:
                    connection.execute(text(statement))
    except SQLAlchemyError:
        # If we fail to introspect or modify the schema we re-raise the error so
        # that the application does not continue in a partially configured state.
        raise
