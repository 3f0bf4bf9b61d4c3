import logging

from flask import Flask

from .config import load_config as _load_config_file
from .result import Result, ResultSet
from .target import Target

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def load_config(path: str = "") -> dict:
    _, config = _load_config_file(path)
    return config


def create_app(config_path: str = "", config: dict = None) -> Flask:
    app = Flask(__name__)
    app.config.update(config if config is not None else load_config(config_path))

    level_name = str((app.config.get("logging", {}) or {}).get("level", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT)
    app.logger.setLevel(level)

    from .routes import register_routes

    register_routes(app)
    return app
