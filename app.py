# app.py

import logging
import os

from dotenv import load_dotenv
from flask import Flask, Response, current_app, jsonify
from flask_login import LoginManager
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy import event

# Load environment variables from .env file first
load_dotenv()

# Module imports after load_dotenv() - E402 is intentional
from config import DevelopmentConfig, ProductionConfig, TestingConfig  # noqa: E402
from config.monitoring import (  # noqa: E402
    DevelopmentMonitoringConfig,
    ProductionMonitoringConfig,
    TestingMonitoringConfig,
)
from config.validation import validate_and_exit  # noqa: E402
from chambers_app.importer import init_importer  # noqa: E402
from chambers_app.models import User, db  # noqa: E402
from chambers_app.models.base import SQLITE_IMMEDIATE_OPTION  # noqa: E402
from chambers_app.utils.logging_config import setup_logging  # noqa: E402

logger = logging.getLogger(__name__)

SQLITE_BUSY_TIMEOUT_MS = 30000

_CONFIGS = {
    "production": (ProductionConfig, ProductionMonitoringConfig),
    "testing": (TestingConfig, TestingMonitoringConfig),
    "development": (DevelopmentConfig, DevelopmentMonitoringConfig),
}


def _configure_sqlite_engine(engine, *, enable_foreign_keys: bool) -> None:
    """Apply concurrency pragmas and let SQLAlchemy own transaction boundaries.

    pysqlite issues its own BEGIN lazily and ignores SAVEPOINT semantics, so
    autocommit is switched off at the driver and BEGIN is emitted on
    SQLAlchemy's begin event instead. Connections carrying
    ``SQLITE_IMMEDIATE_OPTION`` take the write lock at BEGIN and queue on
    ``busy_timeout``; everything else stays deferred so readers never block.
    """

    if getattr(engine, "_sqlite_pragmas_configured", False):
        return

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):  # pragma: no cover - instrumentation
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS}")
        if enable_foreign_keys:
            cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(connection):  # pragma: no cover - instrumentation
        if connection.get_execution_options().get(SQLITE_IMMEDIATE_OPTION):
            connection.exec_driver_sql("BEGIN IMMEDIATE")
        else:
            connection.exec_driver_sql("BEGIN")

    engine._sqlite_pragmas_configured = True  # type: ignore[attr-defined]


def _register_metrics_endpoint(app: Flask) -> None:
    if not app.config.get("MONITORING_ENABLED", False):
        return
    endpoint = app.config.get("METRICS_ENDPOINT", "/metrics")

    @app.get(endpoint)
    def prometheus_metrics():
        return Response(generate_latest(), mimetype=CONTENT_TYPE_LATEST)


def create_app(config_overrides=None):
    flask_env = os.environ.get("FLASK_ENV", "development")

    # Validate environment variables (only in production)
    if flask_env == "production":
        validate_and_exit(flask_env)

    app = Flask(__name__)
    config_class, monitoring_class = _CONFIGS.get(flask_env, _CONFIGS["development"])
    app.config.from_object(config_class)
    app.config.from_object(monitoring_class)
    if config_overrides:
        app.config.update(config_overrides)

    # Initialize extensions
    db.init_app(app)
    login_manager = LoginManager()
    login_manager.init_app(app)
    app.extensions["login_manager"] = login_manager

    @login_manager.user_loader
    def load_user(user_id):
        try:
            return db.session.get(User, int(user_id))
        except (ValueError, TypeError):
            return None

    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify({"error": "Authentication required."}), 401

    setup_logging(app)

    with app.app_context():
        engine = db.engine
        if engine.url.drivername.startswith("sqlite"):
            _configure_sqlite_engine(engine, enable_foreign_keys=True)
        # Create the database tables only if not in testing mode
        if not app.config.get("TESTING", False):
            db.create_all()

    init_importer(app)
    _register_metrics_endpoint(app)

    @app.get("/health")
    def health():
        return jsonify({"status": "ok", "app": app.config.get("APP_NAME"), "version": app.config.get("APP_VERSION")})

    @app.errorhandler(404)
    def not_found_error(error):
        return jsonify({"error": "Not found."}), 404

    @app.errorhandler(500)
    def internal_error(error):
        db.session.rollback()
        current_app.logger.error("Unhandled server error: %s", error)
        return jsonify({"error": "Internal server error."}), 500

    return app


app = create_app()


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5000))
    app.run(host="0.0.0.0", port=port)
