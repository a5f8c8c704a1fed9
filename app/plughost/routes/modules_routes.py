from flask import Blueprint, current_app

bp = Blueprint("modules", __name__)


@bp.get("")
def modules_index():
    """Discovered feature modules and every mounted route unit."""
    modules = current_app.extensions.get("plughost_modules") or []
    units = current_app.extensions.get("plughost_routes") or []
    return {
        "modules": [{"name": m.name, "path": str(m.root_path)} for m in modules],
        "routes": [{"mount_path": u.mount_path, "source": u.source_file.name} for u in units],
    }
