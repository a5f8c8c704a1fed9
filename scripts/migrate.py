#!/usr/bin/env python3
"""
Apply or roll back database migrations (core + every discovered module).

Usage:
  python scripts/migrate.py [migrate]
  python scripts/migrate.py rollback [--all | --steps=N | NAME]
  python scripts/migrate.py status
"""

from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.plughost.cli import main  # noqa: E402


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
