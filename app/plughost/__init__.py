import logging
from pathlib import Path

from dotenv import load_dotenv
from flask import Flask
from flask_cors import CORS

from app.plughost.config import allowed_origins, load_config, load_server_config
from app.plughost.db import DatabaseHandle, init_database
from app.plughost.discovery import discover_modules
from app.plughost.routing import mount_module_routes, mount_routes

CORE_ROUTES_DIR = Path(__file__).resolve().parent / "routes"


def create_app(database: DatabaseHandle | None = None, server_config: dict | None = None) -> Flask:
    """
    Boot sequence: config, database handle, core routes, then routes of every
    discovered module under ``/<module name>``.

    Pass ``database`` to reuse an already-initialized handle (tests, scripts).
    """
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")

    if server_config is None and database is None:
        server_config = load_server_config(app.config["PLUGHOST_CONFIG"])
    if database is None:
        database = init_database(server_config)
    app.extensions["plughost_db"] = database
    app.logger.info("Database adapter initialized: %s", database.name)

    origins = allowed_origins(server_config)
    CORS(app, origins=origins, supports_credentials=True)
    app.logger.info("CORS allowed origins: %s", ", ".join(origins) or "(none)")

    @app.get("/")
    def _status():
        return {"status": "Plughost server is running"}

    mount_routes(app, CORE_ROUTES_DIR)

    modules = discover_modules(app.config["PLUGHOST_PACKAGES_DIR"], app.config["PLUGHOST_DEPENDENCIES_DIR"])
    app.extensions["plughost_modules"] = modules
    if modules:
        app.logger.info("Found %d module(s): %s", len(modules), ", ".join(m.name for m in modules))
        mount_module_routes(app, modules)
    else:
        app.logger.warning("No feature modules discovered")

    @app.errorhandler(404)
    def _err_404(e):  # type: ignore[no-redef]
        return {"error": "not found"}, 404

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        app.logger.exception("Unhandled 500")
        return {"error": "internal server error"}, 500

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")
    return app
