"""Environment-driven settings and logging setup."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from dotenv import load_dotenv

LOG_FORMAT = "[%(levelname)s] %(message)s"

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


class ConfigError(ValueError):
    """Raised when an environment variable holds an unusable value."""


@dataclass(frozen=True, slots=True)
class Settings:
    database_url: str | None = None
    sqlite_path: Path | None = None
    echo_sql: bool = False
    schema_cache_ttl: float | None = None
    retry_attempts: int = 2
    default_user: str = "system"
    log_level: str = "INFO"

    @classmethod
    def from_env(
        cls,
        environ: Mapping[str, str] | None = None,
        *,
        dotenv_path: str | Path | None = None,
    ) -> "Settings":
        """Build settings from ``environ`` (defaults to ``os.environ`` after loading ``.env``)."""
        if environ is None:
            load_dotenv(dotenv_path)
            environ = os.environ

        database_url = environ.get("DATABASE_URL") or None
        sqlite_path = environ.get("ENTITY_STORE_SQLITE_PATH") or None
        if database_url and sqlite_path:
            raise ConfigError("Set either DATABASE_URL or ENTITY_STORE_SQLITE_PATH, not both.")

        ttl = _number(environ, "ENTITY_STORE_SCHEMA_CACHE_TTL", float, default=0.0)
        retries = _number(environ, "ENTITY_STORE_RETRY_ATTEMPTS", int, default=2)
        if ttl < 0:
            raise ConfigError("ENTITY_STORE_SCHEMA_CACHE_TTL must be >= 0.")
        if retries < 0:
            raise ConfigError("ENTITY_STORE_RETRY_ATTEMPTS must be >= 0.")

        level = environ.get("ENTITY_STORE_LOG_LEVEL", "INFO").strip().upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ConfigError(f"ENTITY_STORE_LOG_LEVEL has unknown level {level!r}.")

        return cls(
            database_url=database_url,
            sqlite_path=Path(sqlite_path) if sqlite_path else None,
            echo_sql=_flag(environ, "ENTITY_STORE_ECHO_SQL"),
            schema_cache_ttl=ttl or None,
            retry_attempts=retries,
            default_user=environ.get("ENTITY_STORE_DEFAULT_USER") or "system",
            log_level=level,
        )


def configure_logging(level: str | int = "INFO") -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT)


def _number(environ: Mapping[str, str], name: str, kind: type, *, default):
    raw = environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return kind(raw.strip())
    except ValueError:
        raise ConfigError(f"{name} must be a {kind.__name__}, got {raw!r}.") from None


def _flag(environ: Mapping[str, str], name: str) -> bool:
    raw = environ.get(name, "").strip().lower()
    if raw in _TRUE:
        return True
    if raw in _FALSE:
        return False
    raise ConfigError(f"{name} must be a boolean flag, got {raw!r}.")


__all__ = ["ConfigError", "LOG_FORMAT", "Settings", "configure_logging"]
