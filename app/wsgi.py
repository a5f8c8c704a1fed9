import atexit
import logging

from app.plughost import create_app
from app.plughost.config import load_settings

logging.basicConfig(level=load_settings().log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

app = create_app()
atexit.register(app.extensions["plughost_db"].release)
