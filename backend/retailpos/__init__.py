# backend/retailpos/__init__.py
import atexit
import logging

from flask import Flask, request

from .config import Config
from .events import EventBus
from .extensions import db, migrate
from .services.payment_service import build_gateway


def _configure_logging(app: Flask) -> None:
    level = getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO)
    app.logger.setLevel(level)
    logging.getLogger("retailpos").setLevel(level)
    if not logging.getLogger().handlers:
        logging.basicConfig(
            level=level,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )


def _engine_options(app: Flask) -> None:
    # Bound how long a writer waits for the SQLite write lock
    uri = app.config.get("SQLALCHEMY_DATABASE_URI", "")
    if uri.startswith("sqlite"):
        options = dict(app.config.get("SQLALCHEMY_ENGINE_OPTIONS") or {})
        connect_args = dict(options.get("connect_args") or {})
        connect_args.setdefault("timeout", float(app.config.get("LOCK_TIMEOUT_SECONDS", 5.0)))
        connect_args.setdefault("check_same_thread", False)
        options["connect_args"] = connect_args
        app.config["SQLALCHEMY_ENGINE_OPTIONS"] = options


def create_app(config_overrides: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)

    _configure_logging(app)
    _engine_options(app)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Per-app collaborators
    bus = EventBus(
        asynchronous=bool(app.config.get("EVENTS_ASYNC", True)),
        max_workers=int(app.config.get("EVENT_WORKERS", 2)),
    )
    app.extensions["retailpos.event_bus"] = bus
    app.extensions["retailpos.payment_gateway"] = build_gateway(app.config)
    atexit.register(bus.shutdown)

    # Register blueprints
    from .routes.system import system_bp
    from .routes.products import products_bp
    from .routes.sales import sales_bp
    from .routes.ledger import ledger_bp
    from .routes.inventory import inventory_bp
    from .routes.members import members_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(products_bp)
    app.register_blueprint(sales_bp)
    app.register_blueprint(ledger_bp)
    app.register_blueprint(inventory_bp)
    app.register_blueprint(members_bp)

    @app.after_request
    def add_cors_headers(response):
        origin = request.headers.get("Origin")
        allowed_origins = {
            "http://localhost:5173",
            "http://127.0.0.1:5173",
            "http://localhost:4173",
            "http://127.0.0.1:4173",
        }
        if origin in allowed_origins:
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Vary"] = "Origin"
            response.headers["Access-Control-Allow-Headers"] = "Authorization, Content-Type"
            response.headers["Access-Control-Allow-Methods"] = "GET,POST,OPTIONS"
        return response

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    app.logger.info("Retail POS app created (db=%s)", app.config["SQLALCHEMY_DATABASE_URI"].split("://", 1)[0])
    return app
