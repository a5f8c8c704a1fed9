from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path

from app.plughost.errors import ConfigurationError

logger = logging.getLogger(__name__)

ROOT = Path(__file__).resolve().parents[2]


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    log_level: str

    server_config_path: str
    packages_dir: str
    dependencies_dir: str


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        log_level=_getenv("LOG_LEVEL", "INFO").upper(),
        server_config_path=_getenv("PLUGHOST_CONFIG", str(ROOT / "server.config.json")),
        packages_dir=_getenv("PLUGHOST_PACKAGES_DIR", str(ROOT / "packages")),
        dependencies_dir=_getenv("PLUGHOST_DEPENDENCIES_DIR", str(ROOT / "site_modules")),
    )


def load_config() -> dict:
    s = load_settings()
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "LOG_LEVEL": s.log_level,
        "PLUGHOST_CONFIG": s.server_config_path,
        "PLUGHOST_PACKAGES_DIR": s.packages_dir,
        "PLUGHOST_DEPENDENCIES_DIR": s.dependencies_dir,
        "JSON_SORT_KEYS": False,
    }


def default_database_config() -> dict:
    return {
        "adapter": "mysql",
        "config": {
            "host": _getenv("DB_MYSQL_HOST", "localhost"),
            "port": _getenv("DB_MYSQL_PORT", "3306"),
            "user": _getenv("DB_MYSQL_USER", "root"),
            "password": _getenv("DB_MYSQL_PASSWORD", ""),
            "database": _getenv("DB_MYSQL_NAME", "plughost"),
        },
    }


# path -> (mtime_ns, parsed config)
_server_config_cache: dict[str, tuple[int, dict]] = {}


def load_server_config(path: str | os.PathLike[str] | None = None) -> dict:
    """
    Load the JSON server config (``{"database": {"adapter": ..., "config": {...}}}``).

    The parsed file is cached and re-read only when its mtime changes. A config
    without a ``database`` section gets the MySQL defaults from DB_MYSQL_* env vars.
    """
    p = Path(path or load_settings().server_config_path)
    try:
        mtime = p.stat().st_mtime_ns
    except OSError as e:
        raise ConfigurationError(f"Failed to load server config from {p}: {e}") from e

    cached = _server_config_cache.get(str(p))
    if cached and cached[0] == mtime:
        return cached[1]

    try:
        raw = json.loads(p.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Failed to load server config from {p}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Server config at {p} must be a JSON object.")

    if not raw.get("database"):
        logger.warning("Server config %s has no database section; using MySQL defaults from env", p)
        raw["database"] = default_database_config()

    logger.info("Loaded server config %s (adapter=%s)", p, raw["database"].get("adapter"))
    _server_config_cache[str(p)] = (mtime, raw)
    return raw


def database_section(server_config: dict) -> tuple[str, dict]:
    section = server_config.get("database") or {}
    adapter_name = (section.get("adapter") or "").strip().lower()
    if not adapter_name:
        raise ConfigurationError("No database adapter configured (database.adapter is empty).")
    return adapter_name, dict(section.get("config") or {})


DEFAULT_ALLOWED_ORIGINS = ("http://localhost:5173", "http://localhost:3000")


def allowed_origins(server_config: dict | None) -> list[str]:
    """Origins allowed to make credentialed cross-origin requests (``allowedOrigins``)."""
    origins = (server_config or {}).get("allowedOrigins")
    if origins is None:
        return list(DEFAULT_ALLOWED_ORIGINS)
    if isinstance(origins, str):
        origins = [origins]
    if not isinstance(origins, list):
        raise ConfigurationError("allowedOrigins must be a list of origin strings.")
    return [str(o).strip().rstrip("/") for o in origins if str(o).strip()]
