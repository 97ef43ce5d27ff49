"""Runtime configuration for the workshop tracker (read from the environment)."""
import os
from typing import NamedTuple

from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Settings(NamedTuple):
    database_url: str
    jwt_secret: str
    token_ttl_seconds: int
    cors_origins: str
    log_level: str
    log_format: str
    seed_defaults: bool
    admin_password: str
    # "user" accounts with no explicit stage permissions see the stages
    # that currently hold orders
    stage_fallback_from_activity: bool


def load_settings() -> Settings:
    return Settings(
        database_url=os.getenv("DATABASE_URL", "sqlite:///./workshop.db"),
        jwt_secret=os.getenv("JWT_SECRET", "dev-secret"),
        token_ttl_seconds=int(os.getenv("TOKEN_TTL_SECONDS", str(60 * 60 * 24))),
        cors_origins=os.getenv("CORS_ORIGINS", "*"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        log_format=os.getenv("LOG_FORMAT", "readable"),
        seed_defaults=_flag("SEED_DEFAULTS", "true"),
        admin_password=os.getenv("ADMIN_PASSWORD", "admin123"),
        stage_fallback_from_activity=_flag("STAGE_FALLBACK_FROM_ACTIVITY", "true"),
    )


state = load_settings()


def get_settings() -> Settings:
    return state


def override_settings(**changes) -> Settings:
    """Replace individual settings at runtime (used by tests)."""
    global state
    state = state._replace(**changes)
    return state


def reset_settings() -> Settings:
    global state
    state = load_settings()
    return state
