"""
Feature-module discovery.

A module is any directory carrying a ``plughost.json`` manifest with the
``plughost-module`` marker. Two roots are scanned: the local packages root and
the third-party dependencies root (where ``@scope`` directories hold one more
level of packages).
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path

from app.plughost.errors import DiscoveryWarning

logger = logging.getLogger(__name__)

MANIFEST_FILE = "plughost.json"
MODULE_MARKER = "plughost-module"
SCOPE_PREFIX = "@"

_FALSY_STRINGS = {"", "false", "0", "no", "off"}


@dataclass(frozen=True)
class ModuleDescriptor:
    name: str
    root_path: Path

    @property
    def routes_dir(self) -> Path:
        return self.root_path / "routes"

    def migrations_dir(self, adapter_name: str) -> Path:
        return self.root_path / "migrations" / adapter_name


def has_module_marker(manifest: dict) -> bool:
    """Absent, null, false, 0 or a falsy string mean "not a module"; anything else counts."""
    if MODULE_MARKER not in manifest:
        return False
    value = manifest[MODULE_MARKER]
    if value is None or value is False:
        return False
    if isinstance(value, (int, float)) and value == 0:
        return False
    if isinstance(value, str) and value.strip().lower() in _FALSY_STRINGS:
        return False
    return True


def _read_manifest(pkg_path: Path, label: str) -> dict | None:
    manifest_path = pkg_path / MANIFEST_FILE
    if not manifest_path.is_file():
        logger.debug("No %s found for %s at %s", MANIFEST_FILE, label, manifest_path)
        return None
    try:
        manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        logger.warning("%s: error parsing %s for %s at %s: %s", DiscoveryWarning.__name__, MANIFEST_FILE, label, manifest_path, e)
        return None
    if not isinstance(manifest, dict):
        logger.warning("%s: %s for %s at %s is not a JSON object", DiscoveryWarning.__name__, MANIFEST_FILE, label, manifest_path)
        return None
    return manifest


def _check_package(pkg_path: Path, label: str) -> ModuleDescriptor | None:
    manifest = _read_manifest(pkg_path, label)
    if manifest is None or not has_module_marker(manifest):
        return None
    name = str(manifest.get("name") or "").strip() or label
    return ModuleDescriptor(name=name, root_path=pkg_path)


def _children(root: Path) -> list[Path]:
    try:
        return sorted((p for p in root.iterdir() if p.is_dir()), key=lambda p: p.name)
    except OSError as e:
        logger.warning("%s: cannot list %s: %s", DiscoveryWarning.__name__, root, e)
        return []


def scan_packages_root(root: Path) -> list[ModuleDescriptor]:
    found: list[ModuleDescriptor] = []
    for pkg_path in _children(root):
        module = _check_package(pkg_path, pkg_path.name)
        if module:
            logger.info("Discovered local module: %s", module.name)
            found.append(module)
    return found


def scan_dependencies_root(root: Path) -> list[ModuleDescriptor]:
    found: list[ModuleDescriptor] = []
    for entry in _children(root):
        if entry.name.startswith(SCOPE_PREFIX):
            candidates = [(p, f"{entry.name}/{p.name}") for p in _children(entry)]
        else:
            candidates = [(entry, entry.name)]
        for pkg_path, label in candidates:
            module = _check_package(pkg_path, label)
            if module:
                logger.info("Discovered dependency module: %s", module.name)
                found.append(module)
    return found


def discover_modules(
    packages_root: str | os.PathLike[str],
    dependencies_root: str | os.PathLike[str],
) -> list[ModuleDescriptor]:
    """
    Scan both roots and return a fresh list of descriptors (never cached).

    If the same module name shows up in both roots, the first one seen (local
    packages first) wins and the later one is logged and dropped.
    """
    modules: list[ModuleDescriptor] = []
    seen: dict[str, Path] = {}
    for root, scan in ((Path(packages_root), scan_packages_root), (Path(dependencies_root), scan_dependencies_root)):
        logger.info("Scanning for modules in: %s", root)
        if not root.is_dir():
            logger.info("Module root not found: %s", root)
            continue
        for module in scan(root):
            if module.name in seen:
                logger.warning(
                    "%s: module '%s' at %s duplicates %s; keeping the first",
                    DiscoveryWarning.__name__,
                    module.name,
                    module.root_path,
                    seen[module.name],
                )
                continue
            seen[module.name] = module.root_path
            modules.append(module)
    return modules
