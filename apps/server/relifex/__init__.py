"""RELIFEX server entry point.

``create_app()`` wires settings, logging, the database, CORS, the ``/api``
blueprint and the ``flask`` CLI commands. Gunicorn loads it as
``relifex:create_app()``; tests pass their own ``Settings``.
"""

from pathlib import Path
from typing import Optional

from flask import Flask, jsonify
from flask_cors import CORS

from .config import Settings
from .db import db
from .logging_config import configure_logging


def create_app(settings: Optional[Settings] = None):
    """Build the Flask app.

    ``settings`` defaults to one read from the environment. Tables are
    created on startup unless ``create_tables`` is off.
    """
    settings = settings or Settings()
    configure_logging(settings.log_level)

    app = Flask(__name__)
    # Allow the web dashboard to call the API during development
    CORS(app, resources={r"/api/*": {"origins": "*"}})

    app.config.update(
        SETTINGS=settings,
        SQLALCHEMY_DATABASE_URI=settings.database_url,
        SQLALCHEMY_TRACK_MODIFICATIONS=False,
        SECRET_KEY=settings.secret_key,
        STORAGE_DIR=Path(settings.storage_dir),
        MAX_CONTENT_LENGTH=settings.max_upload_mb * 1024 * 1024,
    )

    db.init_app(app)

    if settings.create_tables:
        with app.app_context():
            from . import models  # noqa: F401 (register models)
            db.create_all()

    from .api import api_bp
    from .cli import register_cli

    app.register_blueprint(api_bp, url_prefix="/api")
    register_cli(app)

    @app.get("/health")
    def health():
        """Liveness check."""
        return jsonify({"status": "ok"})

    return app
