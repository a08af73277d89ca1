from collections.abc import Mapping

from flask import Flask, jsonify
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

from .config import Config
from .error_log import log_error, setup_logging
from .extensions import db
from .routes import bp
from .routes_admin import bp_admin


def create_app(config_object=None):
    app = Flask(__name__, instance_relative_config=True)

    app.config.from_object(Config)
    if isinstance(config_object, Mapping):
        app.config.from_mapping(config_object)
    elif config_object is not None:
        app.config.from_object(config_object)
    else:
        app.config.from_envvar("APP_SETTINGS", silent=True)

    setup_logging(app)

    db.init_app(app)

    CORS(app,
         origins=app.config["CORS_ORIGINS"].split(","),
         supports_credentials=True,
         allow_headers=["Content-Type", "Authorization"],
         methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"]
    )

    app.register_blueprint(bp)
    app.register_blueprint(bp_admin)

    @app.errorhandler(Exception)
    def handle_unexpected_error(exc):
        if isinstance(exc, HTTPException):
            return jsonify({"error": exc.name.lower().replace(" ", "_"), "message": exc.description}), exc.code
        db.session.rollback()
        log_error(exc, error_type="unknown")
        return jsonify({"error": "server_error", "message": "An unexpected error occurred."}), 500

    return app
