import os
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent
# Must run before the Config class body reads os.environ.
load_dotenv(BASE_DIR / ".env")


def _default_sqlite_uri() -> str:
    instance_path = BASE_DIR / "instance"
    instance_path.mkdir(exist_ok=True)
    return f"sqlite:///{instance_path / 'bookfactory.db'}"


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


class Config:
    """Base configuration shared across environments."""

    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-change-me")
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL", _default_sqlite_uri())
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    OPENAI_API_KEY = os.environ.get("OPENAI_API_KEY")
    OPENAI_BASE_URL = os.environ.get("OPENAI_BASE_URL")
    CONTINUITY_MODEL = os.environ.get("CONTINUITY_MODEL", "gpt-4o-mini")
    PROMPT_CONFIG_PATH = os.environ.get("PROMPT_CONFIG_PATH")

    CONTINUITY_CHECK_MAX_TOKENS = _env_int("CONTINUITY_CHECK_MAX_TOKENS", 2000)
    CONTINUITY_SCAN_MAX_TOKENS = _env_int("CONTINUITY_SCAN_MAX_TOKENS", 4000)
    CONTINUITY_FACT_LIMIT = _env_int("CONTINUITY_FACT_LIMIT", 100)
    CONTINUITY_CONTENT_LIMIT = _env_int("CONTINUITY_CONTENT_LIMIT", 5000)
    CONTINUITY_CHAPTER_LIMIT = _env_int("CONTINUITY_CHAPTER_LIMIT", 15000)
    CONTINUITY_SCAN_CONTEXT_FACTS = _env_int("CONTINUITY_SCAN_CONTEXT_FACTS", 50)
    # Unknown resolution methods fall back to "resolved" unless strict.
    CONTINUITY_STRICT_RESOLUTION = _env_flag("CONTINUITY_STRICT_RESOLUTION")


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    OPENAI_API_KEY = None
    PROMPT_CONFIG_PATH = None
    CONTINUITY_STRICT_RESOLUTION = False
