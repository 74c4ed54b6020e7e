"""Prepare a local checkout: write ``.env``, build the database and optionally mint a demo token."""
from __future__ import annotations

import argparse
import secrets
import shutil
import sys
from pathlib import Path
from typing import Dict, Optional

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from bookfactory import create_app
from bookfactory.extensions import db
from bookfactory.models import User
from bookfactory.services.llm import _get_text_generator

ENV_FILE = REPO_ROOT / ".env"
SECRET_NAMES = {"SECRET_KEY", "OPENAI_API_KEY"}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Write development settings to .env and create the continuity database."
    )
    parser.add_argument("--env-file", type=Path, default=ENV_FILE, help="Settings file to create or update.")
    parser.add_argument("--secret-key", help="Flask secret key. A random one is generated when .env has none.")
    parser.add_argument("--openai-api-key", help="Key for the language model provider.")
    parser.add_argument("--openai-base-url", help="Base URL of an OpenAI-compatible server.")
    parser.add_argument("--model", help="Model name used for consistency checks and scans.")
    parser.add_argument("--database-url", help="SQLAlchemy URL; SQLite under instance/ when omitted.")
    parser.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Application log level.")
    parser.add_argument("--skip-db", action="store_true", help="Write .env only.")
    parser.add_argument("--demo-email", help="Create this author if needed and print a fresh bearer token.")
    parser.add_argument("--demo-password", default="change-me-please", help="Password for a newly created demo author.")
    parser.add_argument(
        "--check-model",
        action="store_true",
        help="Build the language model client from the written settings and report which model it uses.",
    )
    return parser


def load_settings(path: Path) -> Dict[str, str]:
    settings: Dict[str, str] = {}
    if not path.exists():
        return settings
    for raw in path.read_text(encoding="utf-8").splitlines():
        line = raw.strip()
        if line.startswith("#") or "=" not in line:
            continue
        name, _, value = line.partition("=")
        settings[name.strip()] = value.strip()
    return settings


def merge_settings(current: Dict[str, str], args: argparse.Namespace) -> Dict[str, str]:
    merged = dict(current)
    merged.setdefault("FLASK_APP", "bookfactory:create_app")
    requested = {
        "SECRET_KEY": args.secret_key,
        "OPENAI_API_KEY": args.openai_api_key,
        "OPENAI_BASE_URL": args.openai_base_url,
        "CONTINUITY_MODEL": args.model,
        "DATABASE_URL": args.database_url,
        "LOG_LEVEL": args.log_level,
    }
    merged.update({name: value for name, value in requested.items() if value})
    if not merged.get("SECRET_KEY"):
        merged["SECRET_KEY"] = secrets.token_hex(32)
    return merged


def save_settings(path: Path, settings: Dict[str, str]) -> None:
    if path.exists():
        backup = path.with_name(path.name + ".bak")
        shutil.copy(path, backup)
        print(f"Previous settings kept in {backup.name}.")
    body = "\n".join(f"{name}={value}" for name, value in settings.items())
    path.write_text(body + "\n", encoding="utf-8")
    print(f"Settings written to {path}.")


def prepare_database(demo_email: Optional[str], demo_password: str, *, check_model: bool) -> None:
    # create_app reads .env at import time, so settings written above apply on the next run only.
    app = create_app()
    with app.app_context():
        db.create_all()
        print(f"Database ready at {app.config['SQLALCHEMY_DATABASE_URI']}.")

        if demo_email:
            email = demo_email.strip().lower()
            author = User.query.filter_by(email=email).first()
            if author is None:
                author = User(email=email, display_name="Demo Author")
                author.set_password(demo_password)
                db.session.add(author)
            token = author.issue_token()
            db.session.commit()
            print(f"Bearer token for {email}: {token}")

        if check_model:
            generator = _get_text_generator()
            if generator is None:
                print("No language model configured; consistency checks will report degraded results.")
            else:
                model, key = generator.signature()
                print(f"Language model client ready: {model} (key {key}).")


def _masked(name: str, value: str) -> str:
    if name in SECRET_NAMES and value:
        return value[:4] + "..."
    return value


def main(argv: Optional[list] = None) -> None:
    args = build_parser().parse_args(argv)
    settings = merge_settings(load_settings(args.env_file), args)
    save_settings(args.env_file, settings)

    if args.skip_db:
        print("Skipping database setup.")
    else:
        prepare_database(args.demo_email, args.demo_password, check_model=args.check_model)

    print("\nCurrent settings:")
    for name in sorted(settings):
        print(f"  {name}={_masked(name, settings[name])}")


if __name__ == "__main__":
    main()
