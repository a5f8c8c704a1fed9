"""
Create a .env from .env.example when none exists yet.

Looks for an existing .env in the parent project root first, then in this
server directory. If neither exists, the example is copied into the parent
project root when that looks like a project (has a pyproject.toml), else here.

Usage:
  python scripts/init_env.py
"""

from __future__ import annotations

import shutil
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]


def init_env(server_dir: Path = ROOT) -> Path | None:
    example = server_dir / ".env.example"
    project_env = server_dir.parent / ".env"
    local_env = server_dir / ".env"

    if project_env.exists():
        print(f"Found .env in project root ({project_env}), no action needed", flush=True)
        return None
    if local_env.exists():
        print(f"Found .env in {server_dir}, no action needed", flush=True)
        return None
    if not example.exists():
        raise FileNotFoundError(f".env.example not found in {server_dir}")

    target = project_env if (server_dir.parent / "pyproject.toml").exists() else local_env
    shutil.copyfile(example, target)
    print(f"Copied .env.example to {target}", flush=True)
    return target


def main() -> None:
    try:
        init_env()
    except FileNotFoundError as e:
        print(f"ERROR: {e}", flush=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
