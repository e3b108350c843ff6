"""Flask application factory for the firewall unblock service."""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler

from flask import Flask, jsonify, request
from werkzeug.middleware.proxy_fix import ProxyFix

from .config import Config
from .exceptions import FirewallError, RateLimitExceeded
from .extensions import db, init_extensions

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _configure_logging(app: Flask) -> None:
    level = getattr(logging, str(app.config.get("LOG_LEVEL") or "INFO").upper(), logging.INFO)
    logging.basicConfig(format=LOG_FORMAT, level=level)
    logging.getLogger().setLevel(level)

    log_file = app.config.get("LOG_FILE")
    if log_file:
        handler = RotatingFileHandler(log_file, maxBytes=10 * 1024 * 1024, backupCount=5, encoding="utf-8")
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler.setLevel(level)
        logging.getLogger().addHandler(handler)


def _init_event_bus(app: Flask) -> None:
    from .events import EVENT_BUS_EXTENSION, EventBus
    from .simple_unblock.listeners import register_listeners

    bus = EventBus(on_error=db.session.rollback)
    register_listeners(bus)
    app.extensions[EVENT_BUS_EXTENSION] = bus


def _register_blueprints(app: Flask) -> None:
    """Register all API blueprints used by the project."""
    from .firewall.routes import bp as firewall_bp
    from .reports.routes import bp as reports_bp
    from .simple_unblock.routes import bp as simple_unblock_bp

    app.register_blueprint(firewall_bp, url_prefix="/api/firewall")
    app.register_blueprint(simple_unblock_bp, url_prefix="/api/simple-unblock")
    app.register_blueprint(reports_bp)


def _register_common_routes(app: Flask) -> None:
    @app.get("/health")
    def health():
        return ("", 204)


def _register_error_handlers(app: Flask) -> None:
    @app.errorhandler(FirewallError)
    def _firewall_error(exc: FirewallError):
        resp = jsonify(exc.to_dict())
        resp.status_code = exc.http_status
        if isinstance(exc, RateLimitExceeded):
            resp.headers["Retry-After"] = str(int(exc.retry_after))
        return resp

    @app.errorhandler(403)
    def _forbidden(_err):
        return jsonify(error="forbidden"), 403

    @app.errorhandler(404)
    def _not_found(_err):
        if request.path.startswith("/api/"):
            return jsonify(error="not_found"), 404
        return ("Not found", 404)


def _register_cli(app: Flask) -> None:
    from .commands import COMMANDS

    for command in COMMANDS:
        app.cli.add_command(command)


def _apply_proxy_fix(app: Flask) -> None:
    """Trust X-Forwarded-For only for the configured number of proxy hops."""
    hops = int(app.config.get("PROXY_FIX_X_FOR") or 0)
    if hops > 0:
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=hops, x_proto=hops)


def _apply_security_headers(app: Flask) -> None:
    @app.after_request
    def _set_headers(resp):
        resp.headers.setdefault("X-Content-Type-Options", "nosniff")
        resp.headers.setdefault("X-Frame-Options", "DENY")
        resp.headers.setdefault("Referrer-Policy", "same-origin")
        return resp


def create_app(config_class: type[Config] = Config) -> Flask:
    app = Flask(__name__)
    app.config.from_object(config_class)

    _configure_logging(app)
    init_extensions(app)
    _init_event_bus(app)

    with app.app_context():
        from . import models  # noqa: F401
        db.create_all()

    _register_blueprints(app)
    _register_common_routes(app)
    _register_error_handlers(app)
    _register_cli(app)
    _apply_security_headers(app)
    _apply_proxy_fix(app)
    return app
