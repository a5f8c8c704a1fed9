from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from typing import Any

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import URL, Engine

from app.plughost.config import database_section
from app.plughost.errors import ConfigurationError

logger = logging.getLogger(__name__)

LEDGER_TABLE = "schema_migrations"

Row = dict[str, Any]

_LEDGER_DDL = {
    "mysql": f"""
        CREATE TABLE IF NOT EXISTS {LEDGER_TABLE} (
            id INT AUTO_INCREMENT PRIMARY KEY,
            migration_name VARCHAR(255) NOT NULL,
            batch INT NOT NULL,
            run_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            UNIQUE KEY unique_migration (migration_name)
        ) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4 COLLATE=utf8mb4_unicode_ci
    """,
    "postgresql": f"""
        CREATE TABLE IF NOT EXISTS {LEDGER_TABLE} (
            id SERIAL PRIMARY KEY,
            migration_name VARCHAR(255) NOT NULL UNIQUE,
            batch INTEGER NOT NULL,
            run_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
    """,
    "sqlite": f"""
        CREATE TABLE IF NOT EXISTS {LEDGER_TABLE} (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            migration_name VARCHAR(255) NOT NULL UNIQUE,
            batch INTEGER NOT NULL,
            run_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
    """,
}


class DatabaseHandle:
    """
    Uniform query contract over one live backend.

    Subclasses must implement ``execute`` (parameterized, named ``:binds``) and
    ``_close``. ``execute_raw`` degrades to ``execute`` without params for
    backends that have no raw/multi-statement channel.
    """

    name = "base"

    def __init__(self) -> None:
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def execute(self, statement: str, params: Mapping[str, Any] | None = None) -> list[Row]:
        raise NotImplementedError

    def execute_raw(self, statement: str) -> list[Row]:
        return self.execute(statement)

    def ping(self) -> bool:
        self.execute("SELECT 1 AS ok")
        return True

    def ledger_table_ddl(self) -> str:
        return _LEDGER_DDL["postgresql"]

    def is_missing_table(self, exc: BaseException) -> bool:
        orig = getattr(exc, "orig", None) or exc
        if getattr(orig, "pgcode", None) == "42P01":
            return True
        args = getattr(orig, "args", ())
        if args and args[0] == 1146:  # MySQL ER_NO_SUCH_TABLE
            return True
        msg = str(orig).lower()
        return "no such table" in msg or ("relation" in msg and "does not exist" in msg)

    def release(self) -> None:
        if self._released:
            return
        self._close()
        self._released = True
        logger.info("%s database handle released", self.name)

    def _close(self) -> None:
        raise NotImplementedError

    def _ensure_open(self) -> None:
        if self._released:
            raise RuntimeError(f"{self.name} database handle already released.")


def _rows(result) -> list[Row]:
    if not result.returns_rows:
        return []
    return [dict(r) for r in result.mappings().all()]


class EngineHandle(DatabaseHandle):
    def __init__(self, engine: Engine, *, name: str) -> None:
        super().__init__()
        self.engine = engine
        self.name = name

    def execute(self, statement: str, params: Mapping[str, Any] | None = None) -> list[Row]:
        self._ensure_open()
        with self.engine.begin() as conn:
            return _rows(conn.execute(text(statement), dict(params or {})))

    def execute_raw(self, statement: str) -> list[Row]:
        self._ensure_open()
        with self.engine.begin() as conn:
            # no_parameters: the driver must not apply %-style interpolation to raw text.
            return _rows(conn.exec_driver_sql(statement, execution_options={"no_parameters": True}))

    def ledger_table_ddl(self) -> str:
        return _LEDGER_DDL.get(self.engine.dialect.name, _LEDGER_DDL["postgresql"])

    def _close(self) -> None:
        self.engine.dispose()


class MySQLHandle(EngineHandle):
    def execute_raw(self, statement: str) -> list[Row]:
        # Multi-statement text: every result set must be drained before commit.
        self._ensure_open()
        conn = self.engine.raw_connection()
        try:
            cur = conn.cursor()
            cur.execute(statement)
            rows = [dict(zip([c[0] for c in cur.description], r)) for r in cur.fetchall()] if cur.description else []
            while cur.nextset():
                pass
            cur.close()
            conn.commit()
            return rows
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()


class SQLiteHandle(EngineHandle):
    def execute_raw(self, statement: str) -> list[Row]:
        self._ensure_open()
        conn = self.engine.raw_connection()
        try:
            conn.executescript(statement)
            conn.commit()
            return []
        finally:
            conn.close()


class SupabaseHandle(DatabaseHandle):
    """
    Managed REST store. Statements go through a SQL RPC function
    (default ``exec_sql(query text, params jsonb)``) that must exist in the project.
    """

    name = "supabase"

    def __init__(self, client, *, rpc_function: str = "exec_sql") -> None:
        super().__init__()
        self.client = client
        self.rpc_function = rpc_function

    def execute(self, statement: str, params: Mapping[str, Any] | None = None) -> list[Row]:
        self._ensure_open()
        res = self.client.rpc(self.rpc_function, {"query": statement, "params": dict(params or {})}).execute()
        data = getattr(res, "data", None)
        if data is None:
            return []
        if isinstance(data, Mapping):
            return [dict(data)]
        if isinstance(data, list):
            return [dict(r) if isinstance(r, Mapping) else {"value": r} for r in data]
        return [{"value": data}]

    def table(self, name: str):
        """PostgREST query builder, e.g. ``handle.table("users").select("*").eq("id", 1)``."""
        self._ensure_open()
        return self.client.table(name)

    def is_missing_table(self, exc: BaseException) -> bool:
        if getattr(exc, "code", None) in ("42P01", "PGRST205"):
            return True
        return super().is_missing_table(exc)

    def _close(self) -> None:
        self.client = None


class DatabaseAdapter:
    """
    Builds a DatabaseHandle from ``database.config``.

    Environment values take precedence over the explicit config. ``init`` is
    idempotent: while the handle is live, the same handle is returned.
    """

    name = ""
    env_map: dict[str, str] = {}
    required: tuple[str, ...] = ()
    defaults: dict[str, Any] = {}

    def __init__(self) -> None:
        self._handle: DatabaseHandle | None = None

    def resolve_config(self, config: Mapping[str, Any] | None) -> dict[str, Any]:
        merged: dict[str, Any] = dict(self.defaults)
        merged.update({k: v for k, v in (config or {}).items() if v not in (None, "")})
        for field, env_name in self.env_map.items():
            value = (os.environ.get(env_name) or "").strip()
            if value:
                merged[field] = value
        missing = [f for f in self.required if not str(merged.get(f) or "").strip()]
        if missing:
            raise ConfigurationError(
                f"Missing critical {self.name} connection details: {', '.join(missing)} "
                f"(set them in database.config or via {', '.join(self.env_map[f] for f in missing if f in self.env_map)})."
            )
        return merged

    def init(self, config: Mapping[str, Any] | None = None) -> DatabaseHandle:
        if self._handle is not None and not self._handle.released:
            return self._handle
        resolved = self.resolve_config(config)
        logger.info("Initializing %s database adapter", self.name)
        self._handle = self._connect(resolved)
        logger.info("%s database adapter initialized", self.name)
        return self._handle

    def _connect(self, config: dict[str, Any]) -> DatabaseHandle:
        raise NotImplementedError


def _check_connection(engine: Engine, name: str) -> None:
    try:
        with engine.connect():
            pass
    except Exception:
        logger.error("Failed to open %s connection pool", name)
        engine.dispose()
        raise


def _log_checkouts(engine: Engine) -> None:
    @event.listens_for(engine, "checkout")
    def _receive_checkout(dbapi_connection, connection_record, connection_proxy):  # type: ignore[no-redef]
        logger.debug("DB connection checkout from pool")


class MySQLAdapter(DatabaseAdapter):
    name = "mysql"
    env_map = {
        "host": "DB_MYSQL_HOST",
        "port": "DB_MYSQL_PORT",
        "user": "DB_MYSQL_USER",
        "password": "DB_MYSQL_PASSWORD",
        "database": "DB_MYSQL_NAME",
        "connection_limit": "DB_MYSQL_POOL_LIMIT",
    }
    required = ("host", "user", "database")
    defaults = {"port": 3306, "connection_limit": 10}

    def _connect(self, config: dict[str, Any]) -> DatabaseHandle:
        from pymysql.constants import CLIENT

        url = URL.create(
            "mysql+pymysql",
            username=config["user"],
            password=config.get("password") or None,
            host=config["host"],
            port=int(config["port"]),
            database=config["database"],
        )
        engine = create_engine(
            url,
            future=True,
            pool_pre_ping=True,
            pool_recycle=1800,
            pool_size=int(config["connection_limit"]),
            max_overflow=0,
            connect_args={"client_flag": CLIENT.MULTI_STATEMENTS},
        )
        _log_checkouts(engine)
        _check_connection(engine, self.name)
        return MySQLHandle(engine, name=self.name)


class PostgresAdapter(DatabaseAdapter):
    name = "postgres"
    env_map = {
        "host": "DB_POSTGRES_HOST",
        "port": "DB_POSTGRES_PORT",
        "user": "DB_POSTGRES_USER",
        "password": "DB_POSTGRES_PASSWORD",
        "database": "DB_POSTGRES_NAME",
        "connection_limit": "DB_POSTGRES_POOL_LIMIT",
    }
    required = ("host", "user", "database")
    defaults = {"port": 5432, "connection_limit": 5}

    def _connect(self, config: dict[str, Any]) -> DatabaseHandle:
        url = URL.create(
            "postgresql+psycopg2",
            username=config["user"],
            password=config.get("password") or None,
            host=config["host"],
            port=int(config["port"]),
            database=config["database"],
        )
        engine = create_engine(
            url,
            future=True,
            pool_pre_ping=True,
            pool_recycle=1800,
            pool_size=int(config["connection_limit"]),
            max_overflow=10,
            pool_timeout=30,
        )
        _log_checkouts(engine)
        _check_connection(engine, self.name)
        return EngineHandle(engine, name=self.name)


class SQLiteAdapter(DatabaseAdapter):
    name = "sqlite"
    env_map = {"database": "DB_SQLITE_PATH"}
    required = ("database",)

    def _connect(self, config: dict[str, Any]) -> DatabaseHandle:
        engine = create_engine(URL.create("sqlite", database=str(config["database"])), future=True)
        _check_connection(engine, self.name)
        return SQLiteHandle(engine, name=self.name)


class SupabaseAdapter(DatabaseAdapter):
    name = "supabase"
    env_map = {"url": "SUPABASE_URL", "key": "SUPABASE_KEY"}
    required = ("url", "key")
    defaults = {"rpc_function": "exec_sql"}

    def _connect(self, config: dict[str, Any]) -> DatabaseHandle:
        from supabase import create_client

        client = create_client(config["url"], config["key"])
        return SupabaseHandle(client, rpc_function=config["rpc_function"])


ADAPTERS: dict[str, type[DatabaseAdapter]] = {
    MySQLAdapter.name: MySQLAdapter,
    PostgresAdapter.name: PostgresAdapter,
    SQLiteAdapter.name: SQLiteAdapter,
    SupabaseAdapter.name: SupabaseAdapter,
}


def adapter_for(name: str | None) -> DatabaseAdapter:
    key = (name or "").strip().lower()
    if not key:
        raise ConfigurationError("No database adapter configured (database.adapter is empty).")
    cls = ADAPTERS.get(key)
    if cls is None:
        raise ConfigurationError(f"Unknown database adapter '{key}'. Known adapters: {', '.join(sorted(ADAPTERS))}.")
    return cls()


def init_database(server_config: dict) -> DatabaseHandle:
    adapter_name, adapter_config = database_section(server_config)
    return adapter_for(adapter_name).init(adapter_config)


class MigrationDatabase:
    """What executable migrations receive as ``db``: the live handle's query operations."""

    def __init__(self, handle: DatabaseHandle) -> None:
        self._handle = handle

    @property
    def adapter_name(self) -> str:
        return self._handle.name

    def execute(self, statement: str, params: Mapping[str, Any] | None = None) -> list[Row]:
        return self._handle.execute(statement, params)

    def execute_raw(self, statement: str) -> list[Row]:
        return self._handle.execute_raw(statement)
