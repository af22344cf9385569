"""Flask app factory."""

from __future__ import annotations

from flask import Flask

from media_transcoder import bootstrap
from media_transcoder.config import load_runtime_config
from media_transcoder.routes.api_routes import api_bp
from media_transcoder.routes.web_routes import web_bp
from media_transcoder.services import transcode_service


def create_app() -> Flask:
    """Create and configure the Flask application."""
    app = Flask(__name__)

    runtime_config = load_runtime_config()
    transcode_service.configure_app(app, runtime_config)

    app.register_blueprint(web_bp)
    app.register_blueprint(api_bp)
    transcode_service.register_error_handlers(app)

    bootstrap.bootstrap_runtime()
    return app
