from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional

from domain.errors import ConfigError
from domain.role_bindings import RoleBindings


log = logging.getLogger(__name__)

DB_BACKENDS = ("sqlite", "postgres")

# Values replaced by the logging redaction filter.
SECRET_ENV_KEYS = ("DISCORD_TOKEN", "RIOT_API_KEY", "RIOT_API_KEY_TFT")


@dataclass(frozen=True)
class Settings:
    """Process configuration, read once from the environment at startup."""

    discord_token: str
    riot_api_key: str
    riot_api_key_tft: str
    guild_id: Optional[int] = None
    riot_region: str = "europe"
    riot_platform: str = "euw1"
    riot_timeout_seconds: float = 10.0
    db_backend: str = "sqlite"
    db_path: str = "lol_accounts.db"
    postgres_params: Dict[str, object] = field(default_factory=dict)
    role_bindings_path: Optional[str] = None
    verification_timeout_seconds: float = 300.0
    ddragon_version: str = "14.9.1"
    log_level: str = "INFO"
    log_dir: str = "logs"


def _require(env: Mapping[str, str], key: str) -> str:
    value = (env.get(key) or "").strip()
    if not value:
        raise ConfigError(f"{key} environment variable is not set.")
    return value


def _optional(env: Mapping[str, str], key: str, default: Optional[str] = None) -> Optional[str]:
    value = (env.get(key) or "").strip()
    return value or default


def _positive_float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = _optional(env, key)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigError(f"{key} must be a number, got {raw!r}") from None
    if value <= 0:
        raise ConfigError(f"{key} must be positive, got {raw!r}")
    return value


def _optional_int(env: Mapping[str, str], key: str) -> Optional[int]:
    raw = _optional(env, key)
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{key} must be an integer, got {raw!r}") from None


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Build `Settings` from `env` (defaults to `os.environ`).

    Call `dotenv.load_dotenv()` first to pick up a `.env` file. Raises
    `ConfigError` on missing required values or malformed numbers.
    """

    env = os.environ if env is None else env

    riot_api_key = _require(env, "RIOT_API_KEY")
    db_backend = (_optional(env, "DB_BACKEND", "sqlite") or "sqlite").lower()
    if db_backend not in DB_BACKENDS:
        raise ConfigError(f"DB_BACKEND must be one of {', '.join(DB_BACKENDS)}, got {db_backend!r}")

    postgres_params: Dict[str, object] = {}
    if db_backend == "postgres":
        postgres_params = {
            "host": _optional(env, "POSTGRES_HOST", "localhost"),
            "port": _optional_int(env, "POSTGRES_PORT") or 5432,
            "dbname": _require(env, "POSTGRES_DB"),
            "user": _require(env, "POSTGRES_USER"),
            "password": _optional(env, "POSTGRES_PASSWORD", ""),
        }

    log_level = (_optional(env, "LOG_LEVEL", "INFO") or "INFO").upper()
    if not isinstance(logging.getLevelName(log_level), int):
        raise ConfigError(f"LOG_LEVEL is not a logging level: {log_level!r}")

    return Settings(
        discord_token=_require(env, "DISCORD_TOKEN"),
        riot_api_key=riot_api_key,
        riot_api_key_tft=_optional(env, "RIOT_API_KEY_TFT", riot_api_key),
        guild_id=_optional_int(env, "GUILD_ID"),
        riot_region=_optional(env, "RIOT_REGION", "europe").lower(),
        riot_platform=_optional(env, "RIOT_PLATFORM", "euw1").lower(),
        riot_timeout_seconds=_positive_float(env, "RIOT_TIMEOUT_SECONDS", 10.0),
        db_backend=db_backend,
        db_path=_optional(env, "DB_PATH", "lol_accounts.db"),
        postgres_params=postgres_params,
        role_bindings_path=_optional(env, "ROLE_BINDINGS_PATH"),
        verification_timeout_seconds=_positive_float(env, "VERIFICATION_TIMEOUT_SECONDS", 300.0),
        ddragon_version=_optional(env, "DDRAGON_VERSION", "14.9.1"),
        log_level=log_level,
        log_dir=_optional(env, "LOG_DIR", "logs"),
    )


def load_role_bindings(path: Optional[str] = None) -> RoleBindings:
    """
    Load role bindings from a JSON file, or the built-in defaults when
    `path` is not given.
    """

    if not path:
        log.info("Using the built-in role bindings")
        return RoleBindings.default()

    try:
        with open(path, encoding="utf-8") as fh:
            raw = json.load(fh)
    except OSError as exc:
        raise ConfigError(f"Cannot read role bindings file {path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Role bindings file {path} is not valid JSON: {exc}") from exc

    bindings = RoleBindings.from_dict(raw)
    log.info(
        "Loaded %d role bindings for %d ladder(s) from %s",
        len(bindings.managed_role_ids),
        len(bindings.ladders()),
        path,
    )
    return bindings
