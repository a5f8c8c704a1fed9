"""
Batch-based migration ledger.

Migration artifacts live in ``<core>/migrations/<adapter>/`` and in every
discovered module's ``migrations/<adapter>/`` directory:

- ``NNNN-name.py``: executable, exposes ``up(db)`` and optionally ``down(db)``
  where ``db`` is a :class:`~app.plughost.db.MigrationDatabase`.
- ``NNNN-name.sql``: declarative, raw statement text, no reverse.

All artifacts are sorted by file name; that order is the apply order and its
reverse the rollback order. Applied names are recorded in ``schema_migrations``
with the batch number of the run that applied them.
"""

from __future__ import annotations

import enum
import importlib.util
import logging
import os
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from app.plughost.db import LEDGER_TABLE, DatabaseHandle, MigrationDatabase, Row
from app.plughost.discovery import ModuleDescriptor
from app.plughost.errors import DiscoveryWarning, ExecutionError, LoadError

logger = logging.getLogger(__name__)

BOOTSTRAP_MIGRATION = "0000-migrations-table"
MIGRATION_EXTENSIONS = (".py", ".sql")
CORE_MIGRATIONS_DIR = Path(__file__).resolve().parent / "migrations"

MigrationFunc = Callable[[MigrationDatabase], Any]


class RunState(enum.Enum):
    IDLE = "idle"
    DISCOVERING = "discovering"
    RESOLVING = "resolving"
    APPLYING = "applying"
    SELECTING_TARGETS = "selecting_targets"
    ROLLING_BACK = "rolling_back"
    COMPLETED = "completed"
    ABORTED = "aborted"


@dataclass(frozen=True)
class MigrationArtifact:
    name: str
    path: Path
    source: str  # "core" | "module:<name>"

    @property
    def stem(self) -> str:
        return Path(self.name).stem

    @property
    def executable(self) -> bool:
        return self.path.suffix == ".py"


@dataclass(frozen=True)
class LoadedMigration:
    artifact: MigrationArtifact
    up: MigrationFunc | None = None
    down: MigrationFunc | None = None
    sql: str | None = None

    def apply(self, db: MigrationDatabase) -> None:
        if self.sql is not None:
            db.execute_raw(self.sql)
        else:
            self.up(db)  # type: ignore[misc]


def _list_artifacts(directory: Path, source: str) -> list[MigrationArtifact]:
    if not directory.is_dir():
        return []
    return [
        MigrationArtifact(name=p.name, path=p, source=source)
        for p in directory.iterdir()
        if p.is_file() and p.suffix in MIGRATION_EXTENSIONS and not p.name.startswith("_")
    ]


def discover_all_migrations(
    adapter_name: str,
    modules: Iterable[ModuleDescriptor] = (),
    core_dir: str | os.PathLike[str] = CORE_MIGRATIONS_DIR,
) -> list[MigrationArtifact]:
    """Core plus per-module artifacts for ``adapter_name``, sorted ascending by name."""
    found = _list_artifacts(Path(core_dir) / adapter_name, "core")
    for module in modules:
        mdir = module.migrations_dir(adapter_name)
        if not mdir.is_dir():
            logger.debug("Module '%s' has no migrations for %s at %s", module.name, adapter_name, mdir)
            continue
        found.extend(_list_artifacts(mdir, f"module:{module.name}"))
    return sorted(found, key=lambda a: a.name)


def _first_by_name(artifacts: Iterable[MigrationArtifact]) -> dict[str, MigrationArtifact]:
    by_name: dict[str, MigrationArtifact] = {}
    for a in artifacts:
        if a.name in by_name:
            logger.warning(
                "%s: migration name %s from %s collides with %s; using the first",
                DiscoveryWarning.__name__,
                a.name,
                a.source,
                by_name[a.name].source,
            )
            continue
        by_name[a.name] = a
    return by_name


def load_migration(artifact: MigrationArtifact) -> LoadedMigration:
    """Resolve an artifact into callables/statement text, rejecting broken contracts early."""
    if not artifact.executable:
        try:
            return LoadedMigration(artifact=artifact, sql=artifact.path.read_text(encoding="utf-8"))
        except OSError as e:
            raise LoadError(f"Cannot read migration {artifact.name}: {e}", path=str(artifact.path)) from e

    module_name = re.sub(r"\W+", "_", f"plughost_migration_{artifact.source}_{artifact.stem}")
    spec = importlib.util.spec_from_file_location(module_name, artifact.path)
    if spec is None or spec.loader is None:
        raise LoadError(f"Cannot load migration {artifact.name}", path=str(artifact.path))
    module = importlib.util.module_from_spec(spec)
    try:
        spec.loader.exec_module(module)
    except Exception as e:
        raise LoadError(f"Failed to import migration {artifact.name}: {e}", path=str(artifact.path)) from e

    up = getattr(module, "up", None)
    if not callable(up):
        raise LoadError(f'Migration {artifact.name} does not define an "up" function', path=str(artifact.path))
    down = getattr(module, "down", None)
    if down is not None and not callable(down):
        raise LoadError(f'Migration {artifact.name} defines "down" but it is not callable', path=str(artifact.path))
    return LoadedMigration(artifact=artifact, up=up, down=down)


class MigrationLedger:
    """
    Applies and rolls back migrations against one live DatabaseHandle.

    The ledger never releases the handle; whoever created it does (see cli.py).
    Apply is not atomic across a batch: when an artifact fails, the ones before
    it in the same batch stay applied and recorded.
    """

    def __init__(
        self,
        handle: DatabaseHandle,
        *,
        adapter_name: str | None = None,
        modules: Iterable[ModuleDescriptor] = (),
        core_dir: str | os.PathLike[str] = CORE_MIGRATIONS_DIR,
    ) -> None:
        self.handle = handle
        self.db = MigrationDatabase(handle)
        self.adapter_name = adapter_name or handle.name
        self.modules = list(modules)
        self.core_dir = Path(core_dir)
        self.state = RunState.IDLE

    def discover(self) -> list[MigrationArtifact]:
        return discover_all_migrations(self.adapter_name, self.modules, self.core_dir)

    # ---------- Ledger table ----------
    def _select_entries(self, where: str = "", params: dict[str, Any] | None = None, limit: bool = False) -> list[Row]:
        sql = f"SELECT id, migration_name, batch FROM {LEDGER_TABLE} {where} ORDER BY id DESC"
        if limit:
            sql += " LIMIT :steps"
        return self.handle.execute(sql, params)

    def _record(self, name: str, batch: int) -> None:
        self.handle.execute(
            f"INSERT INTO {LEDGER_TABLE} (migration_name, batch) VALUES (:name, :batch)",
            {"name": name, "batch": batch},
        )

    def _forget(self, name: str) -> None:
        self.handle.execute(f"DELETE FROM {LEDGER_TABLE} WHERE migration_name = :name", {"name": name})

    def _bootstrap(self, artifacts: list[MigrationArtifact]) -> None:
        sentinel = next((a for a in artifacts if a.stem == BOOTSTRAP_MIGRATION), None)
        logger.info("Initializing migrations table...")
        loaded = load_migration(sentinel) if sentinel else None
        try:
            if loaded:
                loaded.apply(self.db)
            else:
                self.handle.execute_raw(self.handle.ledger_table_ddl())
            self._record(sentinel.name if sentinel else BOOTSTRAP_MIGRATION, 0)
        except Exception as e:
            raise ExecutionError(f"Failed to bootstrap {LEDGER_TABLE}: {e}", artifact_name=BOOTSTRAP_MIGRATION) from e

    def read_ledger(self, artifacts: list[MigrationArtifact] | None = None) -> list[Row]:
        """All ledger entries, newest first. Creates the ledger table on first use."""
        try:
            return self._select_entries()
        except Exception as e:
            if not self.handle.is_missing_table(e):
                raise ExecutionError(f"Cannot read {LEDGER_TABLE}: {e}") from e
        self._bootstrap(self.discover() if artifacts is None else artifacts)
        return self._select_entries()

    # ---------- Apply ----------
    def pending_migrations(self) -> list[MigrationArtifact]:
        artifacts = self.discover()
        applied = {r["migration_name"] for r in self.read_ledger(artifacts)}
        return [a for a in _first_by_name(artifacts).values() if a.name not in applied]

    def status(self) -> dict[str, list]:
        artifacts = self.discover()
        entries = self.read_ledger(artifacts)
        applied = {r["migration_name"] for r in entries}
        return {
            "applied": list(reversed(entries)),
            "pending": [a.name for a in _first_by_name(artifacts).values() if a.name not in applied],
        }

    def run_migrations(self) -> list[str]:
        """
        Apply every pending artifact in name order under one new batch number.

        Returns the names applied (empty when nothing is pending). Raises
        LoadError before anything runs if a pending artifact cannot be resolved,
        and ExecutionError naming the artifact that failed to apply.
        """
        try:
            self.state = RunState.DISCOVERING
            artifacts = self.discover()
            if not artifacts:
                logger.warning("No migration files found for adapter '%s'", self.adapter_name)
            entries = self.read_ledger(artifacts)
            applied = {r["migration_name"] for r in entries}
            pending = [a for a in _first_by_name(artifacts).values() if a.name not in applied]
            if not pending:
                logger.info("No pending migrations to run")
                self.state = RunState.COMPLETED
                return []

            self.state = RunState.RESOLVING
            loaded = [load_migration(a) for a in pending]
            batch = max((int(r["batch"]) for r in entries), default=0) + 1

            self.state = RunState.APPLYING
            done: list[str] = []
            for m in loaded:
                name = m.artifact.name
                logger.info("Running: %s (%s)", name, m.artifact.source)
                try:
                    m.apply(self.db)
                    self._record(name, batch)
                except Exception as e:
                    logger.error("Failed: %s; aborting migrations (%d not attempted)", name, len(loaded) - len(done) - 1)
                    raise ExecutionError(f"Migration {name} failed: {e}", artifact_name=name) from e
                done.append(name)
                logger.info("Success: %s", name)
        except Exception:
            self.state = RunState.ABORTED
            raise
        self.state = RunState.COMPLETED
        logger.info("All migrations completed successfully (batch %s, %d applied)", batch, len(done))
        return done

    # ---------- Rollback ----------
    def _select_targets(self, target: str | None, all_migrations: bool, steps: int) -> list[Row]:
        if target:
            candidates = {"t0": target, "t1": f"{target}.py", "t2": f"{target}.sql"}
            return self._select_entries("WHERE migration_name IN (:t0, :t1, :t2)", candidates)
        if all_migrations:
            return self._select_entries("WHERE batch > 0")
        if steps < 1:
            raise ValueError("steps must be a positive integer")
        return self._select_entries("WHERE batch > 0", {"steps": steps}, limit=True)

    def rollback_migrations(self, *, target: str | None = None, all_migrations: bool = False, steps: int = 1) -> list[str]:
        """
        Undo applied migrations, newest first.

        Exactly one mode applies, checked in this order: ``target`` (one name,
        with or without extension), ``all_migrations`` (everything except the ledger
        bootstrap entry), else the newest ``steps`` entries. Returns the names
        removed from the ledger.
        """
        try:
            self.state = RunState.DISCOVERING
            artifacts = self.discover()
            self.read_ledger(artifacts)
            by_name = _first_by_name(artifacts)

            self.state = RunState.SELECTING_TARGETS
            entries = self._select_targets(target, all_migrations, steps)
            if not entries:
                logger.info("No migrations to roll back")
                self.state = RunState.COMPLETED
                return []
            logger.info("Rolling back %d migration(s): %s", len(entries), ", ".join(r["migration_name"] for r in entries))

            plan: list[tuple[str, LoadedMigration | None]] = []
            for r in entries:
                name = r["migration_name"]
                artifact = by_name.get(name)
                if artifact is None:
                    logger.warning("Migration file not found for: %s; skipped", name)
                    plan.append((name, None))
                    continue
                plan.append((name, load_migration(artifact)))

            self.state = RunState.ROLLING_BACK
            done: list[str] = []
            for name, m in plan:
                if m is None:
                    continue
                logger.info("Rolling back: %s", name)
                try:
                    if m.sql is not None:
                        logger.warning("%s is a SQL migration with no reverse; removing ledger entry only", name)
                    elif m.down is None:
                        logger.warning("%s defines no down(); removing ledger entry only", name)
                    else:
                        m.down(self.db)
                    self._forget(name)
                except Exception as e:
                    logger.error("Failed to roll back: %s; aborting rollback", name)
                    raise ExecutionError(f"Rollback of {name} failed: {e}", artifact_name=name) from e
                done.append(name)
                logger.info("Rolled back: %s", name)
        except Exception:
            self.state = RunState.ABORTED
            raise
        self.state = RunState.COMPLETED
        logger.info("Rollback completed (%d removed)", len(done))
        return done
