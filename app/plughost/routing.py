from __future__ import annotations

import importlib.util
import logging
import os
import re
import sys
from collections.abc import Iterable
from dataclasses import dataclass, replace
from pathlib import Path
from types import ModuleType

from flask import Blueprint, Flask

from app.plughost.discovery import ModuleDescriptor
from app.plughost.errors import DiscoveryWarning, LoadError

logger = logging.getLogger(__name__)

_ROUTE_SUFFIX = re.compile(r"[_-]?routes?$", re.IGNORECASE)
_NON_WORD = re.compile(r"\W+")


def mount_path_for(source_file: str | os.PathLike[str], base_path: str | None = None) -> str:
    """
    ``base_path`` wins when given; otherwise ``widget_routes.py`` / ``widgetRoutes.py`` -> ``/widget``.
    """
    if base_path:
        return base_path
    stem = Path(source_file).stem
    return "/" + _ROUTE_SUFFIX.sub("", stem).lower()


@dataclass(frozen=True)
class RouteUnit:
    source_file: Path
    mount_path: str
    blueprint: Blueprint
    registered_as: str | None = None

    @property
    def registration_name(self) -> str:
        prefix = self.mount_path.strip("/") or "root"
        return _NON_WORD.sub("_", f"{prefix}__{self.source_file.stem}")


def _unique_name(app: Flask, base: str) -> str:
    name, n = base, 1
    while name in app.blueprints:
        n += 1
        name = f"{base}_{n}"
    return name


def _drop_blueprint_rules(app: Flask, blueprint_name: str) -> None:
    """Rebuild ``app.url_map`` without the rules registered by ``blueprint_name``."""
    prefix = f"{blueprint_name}."
    old = app.url_map
    rules = []
    for rule in old.iter_rules():
        if (rule.endpoint or "").startswith(prefix):
            continue
        copy = rule.empty()
        # Flask-only attribute; empty() does not carry it.
        copy.provide_automatic_options = getattr(rule, "provide_automatic_options", False)
        rules.append(copy)
    app.url_map = app.url_map_class(
        rules,
        default_subdomain=old.default_subdomain,
        strict_slashes=old.strict_slashes,
        merge_slashes=old.merge_slashes,
        redirect_defaults=old.redirect_defaults,
        converters=old.converters,
        sort_parameters=old.sort_parameters,
        sort_key=old.sort_key,
        host_matching=old.host_matching,
    )


def _import_unit(path: Path, namespace: str) -> ModuleType:
    module_name = _NON_WORD.sub("_", f"plughost_routes_{namespace}_{path.stem}")
    spec = importlib.util.spec_from_file_location(module_name, path)
    if spec is None or spec.loader is None:
        raise LoadError(f"Cannot load route file {path}", path=str(path))
    module = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = module
    try:
        spec.loader.exec_module(module)
    except Exception as e:
        sys.modules.pop(module_name, None)
        logger.error("Failed to import route file '%s' at '%s'", path.name, path)
        raise LoadError(f"Failed to import route file {path}: {e}", path=str(path)) from e
    return module


def collect_route_units(directory: str | os.PathLike[str], base_path: str | None = None) -> list[RouteUnit]:
    """
    Import every public ``*.py`` file directly inside ``directory`` and keep the
    ones exposing a ``flask.Blueprint`` as ``bp``.

    Import failures raise LoadError; files without ``bp`` are logged and skipped.
    """
    directory = Path(directory)
    namespace = (base_path or "core").strip("/") or "root"
    units: list[RouteUnit] = []
    for path in sorted(directory.glob("*.py")):
        if path.name.startswith("_"):
            continue
        logger.debug("Importing route file: %s", path)
        module = _import_unit(path, namespace)
        bp = getattr(module, "bp", None)
        if not isinstance(bp, Blueprint):
            logger.warning("Route file '%s' at '%s' does not export a Blueprint as `bp`; skipped", path.name, path)
            continue
        units.append(RouteUnit(source_file=path, mount_path=mount_path_for(path, base_path), blueprint=bp))
    return units


def mount_routes(app: Flask, directory: str | os.PathLike[str], base_path: str | None = None) -> list[RouteUnit]:
    directory = Path(directory)
    if not directory.is_dir():
        app.logger.warning("%s: routes directory not found at %s", DiscoveryWarning.__name__, directory)
        return []

    app.logger.info("Loading routes from: %s", directory)
    units = collect_route_units(directory, base_path)
    mounted: list[RouteUnit] = app.extensions.setdefault("plughost_routes", [])
    registered: list[RouteUnit] = []
    for unit in units:
        clash = next((u for u in mounted if u.mount_path == unit.mount_path), None)
        if clash is not None:
            # Last registered wins: the earlier unit's rules are taken out of the URL map.
            app.logger.warning(
                "Mount path '%s' from %s is already used by %s; replacing it",
                unit.mount_path,
                unit.source_file,
                clash.source_file,
            )
            _drop_blueprint_rules(app, clash.registered_as or clash.registration_name)
            mounted.remove(clash)
        unit = replace(unit, registered_as=_unique_name(app, unit.registration_name))
        app.register_blueprint(unit.blueprint, url_prefix=unit.mount_path, name=unit.registered_as)
        mounted.append(unit)
        registered.append(unit)
        app.logger.info("Mounted route '%s' from '%s'", unit.mount_path, unit.source_file.name)
    return registered


def mount_module_routes(app: Flask, modules: Iterable[ModuleDescriptor]) -> None:
    for module in modules:
        if not module.routes_dir.is_dir():
            app.logger.warning(
                "%s: module '%s' at '%s' does not have a 'routes' directory",
                DiscoveryWarning.__name__,
                module.name,
                module.root_path,
            )
            continue
        app.logger.info("Loading routes for module '%s'", module.name)
        mount_routes(app, module.routes_dir, f"/{module.name}")
