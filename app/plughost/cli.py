"""
Migration tool.

Usage:
  python scripts/migrate.py                       # run pending migrations
  python scripts/migrate.py migrate               # same
  python scripts/migrate.py rollback              # roll back the last migration
  python scripts/migrate.py rollback --steps=3    # roll back the last 3 migrations
  python scripts/migrate.py rollback --all        # roll back everything
  python scripts/migrate.py rollback 0002-sessions.sql
  python scripts/migrate.py status                # list applied and pending migrations
"""

from __future__ import annotations

import argparse
import logging
import sys
from collections.abc import Sequence

from dotenv import load_dotenv

from app.plughost.config import load_server_config, load_settings
from app.plughost.db import DatabaseHandle, init_database
from app.plughost.discovery import discover_modules
from app.plughost.errors import PlughostError
from app.plughost.ledger import CORE_MIGRATIONS_DIR, MigrationLedger

logger = logging.getLogger(__name__)


def _positive_int(value: str) -> int:
    try:
        n = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid step count: {value!r}")
    if n < 1:
        raise argparse.ArgumentTypeError("step count must be >= 1")
    return n


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="migrate", description="Apply or roll back database migrations.")
    parser.add_argument("--config", help="Path to the JSON server config (default: $PLUGHOST_CONFIG).")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("migrate", help="Run pending migrations (default).")

    rb = sub.add_parser("rollback", help="Roll back applied migrations.")
    mode = rb.add_mutually_exclusive_group()
    mode.add_argument("--all", action="store_true", dest="all_migrations", help="Roll back every migration.")
    mode.add_argument("--steps", type=_positive_int, default=None, help="Roll back the last N migrations (default 1).")
    rb.add_argument("target", nargs="?", help="Roll back one migration by name.")

    sub.add_parser("status", help="List applied and pending migrations.")
    return parser


def build_ledger(handle: DatabaseHandle, adapter_name: str | None = None, *, core_dir=CORE_MIGRATIONS_DIR) -> MigrationLedger:
    settings = load_settings()
    modules = discover_modules(settings.packages_dir, settings.dependencies_dir)
    return MigrationLedger(handle, adapter_name=adapter_name, modules=modules, core_dir=core_dir)


def run_command(args: argparse.Namespace, ledger: MigrationLedger) -> None:
    command = args.command or "migrate"
    if command == "rollback":
        if args.target and (args.all_migrations or args.steps is not None):
            raise PlughostError("Pass either a migration name, --all or --steps, not more than one.")
        ledger.rollback_migrations(target=args.target, all_migrations=args.all_migrations, steps=args.steps or 1)
    elif command == "status":
        report = ledger.status()
        for entry in report["applied"]:
            print(f"applied  batch={entry['batch']:<4} {entry['migration_name']}", flush=True)
        for name in report["pending"]:
            print(f"pending             {name}", flush=True)
    else:
        ledger.run_migrations()


def main(argv: Sequence[str] | None = None) -> int:
    load_dotenv()
    logging.basicConfig(level=load_settings().log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    args = build_parser().parse_args(argv)

    handle: DatabaseHandle | None = None
    try:
        server_config = load_server_config(args.config)
        adapter_name = (server_config["database"].get("adapter") or "").strip().lower()
        handle = init_database(server_config)
        ledger = build_ledger(handle, adapter_name)
        run_command(args, ledger)
    except (PlughostError, ValueError) as e:
        logger.error("%s", e)
        return 1
    except Exception:
        logger.exception("Unhandled error")
        return 1
    finally:
        if handle is not None:
            try:
                handle.release()
            except Exception:
                logger.exception("Error closing database connection")
    return 0


if __name__ == "__main__":
    sys.exit(main())
