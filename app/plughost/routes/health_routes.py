from flask import Blueprint, current_app

bp = Blueprint("health", __name__)


@bp.get("")
def health():
    """Health check endpoint. Returns JSON."""
    return {"ok": True}


@bp.get("/db")
def health_db():
    handle = current_app.extensions.get("plughost_db")
    if handle is None or handle.released:
        return {"ok": False, "error": "database not initialized"}, 503
    try:
        handle.ping()
    except Exception as e:
        current_app.logger.exception("Database ping failed")
        return {"ok": False, "adapter": handle.name, "error": str(e)}, 503
    return {"ok": True, "adapter": handle.name}
