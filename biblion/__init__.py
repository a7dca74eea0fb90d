"""
Flask application factory for Biblion.

The factory builds one LibraryService from the configuration (storage root,
legacy owners, backup retention, metadata settings) and exposes it to the
blueprints through ``app.extensions['biblion']``. The desktop shell and the
IPC bridge build the same service with ``build_library_service`` without
going through Flask.
"""

import logging
from typing import Any, Dict, Mapping, Optional

from flask import Flask

from config import Config

logger = logging.getLogger(__name__)


def load_config(overrides: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
    """Config class attributes as a dict, with ``overrides`` applied on top."""
    settings = {key: getattr(Config, key) for key in dir(Config) if key.isupper()}
    if overrides:
        settings.update(overrides)
    return settings


def configure_logging(level_name: Optional[str]) -> None:
    """Apply LOG_LEVEL to the root logger (default INFO)."""
    level = getattr(logging, str(level_name or 'INFO').upper(), logging.INFO)
    logging.getLogger().setLevel(level)


def build_library_service(overrides: Optional[Mapping[str, Any]] = None):
    from .services.library_service import LibraryService
    return LibraryService.from_config(load_config(overrides))


def create_app(overrides: Optional[Mapping[str, Any]] = None) -> Flask:
    app = Flask(__name__, static_folder=None, static_url_path=None)
    app.config.from_object(Config)
    if overrides:
        app.config.update(overrides)

    configure_logging(app.config.get('LOG_LEVEL'))
    app.logger.setLevel(logging.getLogger().level)

    from .services.library_service import LibraryService
    app.extensions['biblion'] = LibraryService.from_config(app.config)

    from .api import books_api
    app.register_blueprint(books_api)

    logger.info(f"[APP] storage root: {app.config['DATA_DIR']}")
    return app
