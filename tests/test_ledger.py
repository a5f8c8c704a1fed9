"""
Tests for the migration ledger against a SQLite handle.

Tests cover:
- Batch numbering and apply order
- Idempotent re-runs
- Rollback by steps, --all and name
- Fail-fast apply with partial-batch semantics
- Early rejection of broken artifacts
"""
import pytest

from app.plughost.db import DatabaseHandle, SQLiteAdapter
from app.plughost.discovery import ModuleDescriptor
from app.plughost.errors import ExecutionError, LoadError
from app.plughost.ledger import (
    BOOTSTRAP_MIGRATION,
    MigrationLedger,
    RunState,
    discover_all_migrations,
)

A_PY = '''
def up(db):
    db.execute_raw("CREATE TABLE alpha (id INTEGER PRIMARY KEY, label TEXT)")


def down(db):
    db.execute_raw("DROP TABLE alpha")
'''

B_SQL = """
CREATE TABLE IF NOT EXISTS beta (id INTEGER PRIMARY KEY);
CREATE INDEX IF NOT EXISTS idx_beta_id ON beta (id);
"""

C_PY = '''
def up(db):
    db.execute("INSERT INTO alpha (label) VALUES (:label)", {"label": "c"})


def down(db):
    db.execute("DELETE FROM alpha WHERE label = :label", {"label": "c"})
'''


@pytest.fixture()
def handle(tmp_path, monkeypatch):
    monkeypatch.delenv("DB_SQLITE_PATH", raising=False)
    h = SQLiteAdapter().init({"database": str(tmp_path / "ledger.db")})
    yield h
    h.release()


@pytest.fixture()
def module(tmp_path):
    root = tmp_path / "packages" / "payments"
    (root / "migrations" / "sqlite").mkdir(parents=True)
    return ModuleDescriptor(name="payments", root_path=root)


def _add(module, name, body):
    (module.migrations_dir("sqlite") / name).write_text(body, encoding="utf-8")


def _seed_abc(module):
    _add(module, "0001-a.py", A_PY)
    _add(module, "0002-b.sql", B_SQL)
    _add(module, "0003-c.py", C_PY)


def _entries(handle):
    return handle.execute("SELECT migration_name, batch FROM schema_migrations ORDER BY id")


def _ledger(handle, module, **kwargs):
    return MigrationLedger(handle, modules=[module], **kwargs)


def _alpha_rows(handle):
    return handle.execute("SELECT COUNT(*) AS n FROM alpha")[0]["n"]


def test_apply_shares_one_batch_in_name_order(handle, module):
    _seed_abc(module)
    ledger = _ledger(handle, module)

    applied = ledger.run_migrations()

    assert applied == ["0001-a.py", "0002-b.sql", "0003-c.py"]
    assert _entries(handle) == [
        {"migration_name": "0000-migrations-table.sql", "batch": 0},
        {"migration_name": "0001-a.py", "batch": 1},
        {"migration_name": "0002-b.sql", "batch": 1},
        {"migration_name": "0003-c.py", "batch": 1},
    ]
    assert _alpha_rows(handle) == 1
    assert ledger.state is RunState.COMPLETED


def test_apply_is_idempotent(handle, module):
    _seed_abc(module)
    _ledger(handle, module).run_migrations()
    before = _entries(handle)

    ledger = _ledger(handle, module)
    assert ledger.pending_migrations() == []
    assert ledger.run_migrations() == []
    assert _entries(handle) == before


def test_new_artifacts_get_next_batch(handle, module):
    _seed_abc(module)
    _ledger(handle, module).run_migrations()
    _add(module, "0004-d.sql", "CREATE TABLE delta (id INTEGER);")

    assert _ledger(handle, module).run_migrations() == ["0004-d.sql"]
    assert _entries(handle)[-1] == {"migration_name": "0004-d.sql", "batch": 2}


def test_rollback_steps_removes_newest_first(handle, module):
    _seed_abc(module)
    _ledger(handle, module).run_migrations()

    removed = _ledger(handle, module).rollback_migrations(steps=2)

    assert removed == ["0003-c.py", "0002-b.sql"]
    assert [e["migration_name"] for e in _entries(handle)] == ["0000-migrations-table.sql", "0001-a.py"]
    # c's down() ran; b is SQL and has no reverse, so its table stays.
    assert _alpha_rows(handle) == 0
    assert handle.execute("SELECT COUNT(*) AS n FROM beta") == [{"n": 0}]


def test_rollback_default_is_one_step(handle, module):
    _seed_abc(module)
    _ledger(handle, module).run_migrations()
    assert _ledger(handle, module).rollback_migrations() == ["0003-c.py"]


def test_rollback_all_then_migrate_again(handle, module):
    _seed_abc(module)
    _ledger(handle, module).run_migrations()

    removed = _ledger(handle, module).rollback_migrations(all_migrations=True)

    assert removed == ["0003-c.py", "0002-b.sql", "0001-a.py"]
    assert _entries(handle) == [{"migration_name": "0000-migrations-table.sql", "batch": 0}]

    assert _ledger(handle, module).run_migrations() == ["0001-a.py", "0002-b.sql", "0003-c.py"]
    assert {e["batch"] for e in _entries(handle)[1:]} == {1}


def test_rollback_by_name_with_or_without_extension(handle, module):
    _seed_abc(module)
    _ledger(handle, module).run_migrations()

    assert _ledger(handle, module).rollback_migrations(target="0003-c") == ["0003-c.py"]
    assert _ledger(handle, module).rollback_migrations(target="0002-b.sql") == ["0002-b.sql"]
    assert [e["migration_name"] for e in _entries(handle)] == ["0000-migrations-table.sql", "0001-a.py"]


def test_rollback_past_the_end_reports_nothing(handle, module):
    _seed_abc(module)
    _ledger(handle, module).run_migrations()
    _ledger(handle, module).rollback_migrations(target="0003-c.py")

    ledger = _ledger(handle, module)
    assert ledger.rollback_migrations(target="0003-c.py") == []
    assert ledger.state is RunState.COMPLETED


def test_rollback_on_fresh_database_bootstraps_and_does_nothing(handle, module):
    assert _ledger(handle, module).rollback_migrations(steps=3) == []
    assert _entries(handle) == [{"migration_name": "0000-migrations-table.sql", "batch": 0}]


def test_rollback_skips_entries_whose_file_is_gone(handle, module, caplog):
    _seed_abc(module)
    _ledger(handle, module).run_migrations()
    (module.migrations_dir("sqlite") / "0003-c.py").unlink()

    assert _ledger(handle, module).rollback_migrations(steps=2) == ["0002-b.sql"]
    assert "0003-c.py" in [e["migration_name"] for e in _entries(handle)]
    assert "not found" in caplog.text


def test_failed_apply_keeps_earlier_artifacts_and_stops(handle, module):
    _add(module, "0001-a.py", A_PY)
    _add(module, "0002-b.sql", "CREATE TABLE broken (;")
    _add(module, "0003-c.py", C_PY)
    ledger = _ledger(handle, module)

    with pytest.raises(ExecutionError) as exc:
        ledger.run_migrations()

    assert exc.value.artifact_name == "0002-b.sql"
    assert ledger.state is RunState.ABORTED
    assert [e["migration_name"] for e in _entries(handle)] == ["0000-migrations-table.sql", "0001-a.py"]
    # 0003-c never ran: its insert would have added a row.
    assert _alpha_rows(handle) == 0


def test_failed_down_aborts_remaining_rollback(handle, module):
    _add(module, "0001-a.py", A_PY)
    _add(module, "0002-c.py", C_PY.replace('def down(db):\n    db.execute(', 'def down(db):\n    raise RuntimeError("nope")\n    db.execute('))
    _ledger(handle, module).run_migrations()

    with pytest.raises(ExecutionError) as exc:
        _ledger(handle, module).rollback_migrations(all_migrations=True)

    assert exc.value.artifact_name == "0002-c.py"
    assert [e["migration_name"] for e in _entries(handle)] == ["0000-migrations-table.sql", "0001-a.py", "0002-c.py"]


def test_artifact_without_up_is_rejected_before_anything_runs(handle, module):
    _add(module, "0001-a.py", A_PY)
    _add(module, "0002-bad.py", "def down(db):\n    pass\n")
    ledger = _ledger(handle, module)

    with pytest.raises(LoadError):
        ledger.run_migrations()

    assert ledger.state is RunState.ABORTED
    assert [e["migration_name"] for e in _entries(handle)] == ["0000-migrations-table.sql"]


def test_artifact_with_syntax_error_is_a_load_error(handle, module):
    _add(module, "0001-a.py", "def up(db)\n    pass\n")
    with pytest.raises(LoadError):
        _ledger(handle, module).run_migrations()


def test_migration_without_down_only_drops_ledger_entry(handle, module):
    _add(module, "0001-a.py", "def up(db):\n    db.execute_raw('CREATE TABLE keep (id INTEGER)')\n")
    _ledger(handle, module).run_migrations()

    assert _ledger(handle, module).rollback_migrations() == ["0001-a.py"]
    assert handle.execute("SELECT COUNT(*) AS n FROM keep") == [{"n": 0}]


def test_bootstrap_without_sentinel_file_uses_builtin_ddl(handle, module, tmp_path):
    _add(module, "0001-a.py", A_PY)
    ledger = _ledger(handle, module, core_dir=tmp_path / "empty-core")

    assert ledger.run_migrations() == ["0001-a.py"]
    assert _entries(handle)[0] == {"migration_name": BOOTSTRAP_MIGRATION, "batch": 0}


def test_unexpected_ledger_read_failure_is_fatal():
    class DownHandle(DatabaseHandle):
        name = "sqlite"

        def execute(self, statement, params=None):
            raise RuntimeError("connection reset by peer")

        def _close(self):
            pass

    ledger = MigrationLedger(DownHandle())
    with pytest.raises(ExecutionError):
        ledger.run_migrations()
    assert ledger.state is RunState.ABORTED


def test_status_lists_applied_and_pending(handle, module):
    _add(module, "0001-a.py", A_PY)
    _ledger(handle, module).run_migrations()
    _add(module, "0002-b.sql", B_SQL)

    report = _ledger(handle, module).status()

    assert [e["migration_name"] for e in report["applied"]] == ["0000-migrations-table.sql", "0001-a.py"]
    assert report["pending"] == ["0002-b.sql"]


def test_discovery_merges_core_and_modules_sorted(tmp_path, module):
    core = tmp_path / "core"
    (core / "sqlite").mkdir(parents=True)
    (core / "sqlite" / "0002-core.sql").write_text("SELECT 1;", encoding="utf-8")
    (core / "sqlite" / "README.md").write_text("not a migration", encoding="utf-8")
    (core / "mysql").mkdir()
    (core / "mysql" / "0001-mysql-only.sql").write_text("SELECT 1;", encoding="utf-8")
    _add(module, "0001-a.py", A_PY)
    _add(module, "0003-c.py", C_PY)

    found = discover_all_migrations("sqlite", [module], core)

    assert [(a.name, a.source) for a in found] == [
        ("0001-a.py", "module:payments"),
        ("0002-core.sql", "core"),
        ("0003-c.py", "module:payments"),
    ]


def test_name_collision_first_discovered_wins(handle, module, tmp_path):
    core = tmp_path / "core"
    (core / "sqlite").mkdir(parents=True)
    (core / "sqlite" / "0001-shared.sql").write_text("CREATE TABLE from_core (id INTEGER);", encoding="utf-8")
    _add(module, "0001-shared.sql", "CREATE TABLE from_module (id INTEGER);")

    assert _ledger(handle, module, core_dir=core).run_migrations() == ["0001-shared.sql"]
    assert handle.execute("SELECT COUNT(*) AS n FROM from_core") == [{"n": 0}]


def test_batch_number_is_taken_again_after_its_batch_is_rolled_back(handle, module):
    _add(module, "0001-a.py", A_PY)
    _ledger(handle, module).run_migrations()
    _add(module, "0002-b.sql", B_SQL)
    _ledger(handle, module).run_migrations()
    assert _entries(handle)[-1] == {"migration_name": "0002-b.sql", "batch": 2}

    _ledger(handle, module).rollback_migrations()
    _ledger(handle, module).run_migrations()

    assert _entries(handle)[-1] == {"migration_name": "0002-b.sql", "batch": 2}


def test_steps_larger_than_ledger_never_reach_the_bootstrap_entry(handle, module):
    _seed_abc(module)
    _ledger(handle, module).run_migrations()

    assert _ledger(handle, module).rollback_migrations(steps=10) == ["0003-c.py", "0002-b.sql", "0001-a.py"]
    assert _entries(handle) == [{"migration_name": "0000-migrations-table.sql", "batch": 0}]
