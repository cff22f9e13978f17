import logging
import os
import uuid

from flask import Flask, g, jsonify
from werkzeug.middleware.proxy_fix import ProxyFix

from config import Config
from extensions import db, limiter, mail, migrate


class _RequestIdFilter(logging.Filter):
    def filter(self, record):
        try:
            record.request_id = getattr(g, "request_id", "-")
        except RuntimeError:
            # Outside a request (scheduler thread, CLI)
            record.request_id = "-"
        return True


def _configure_logging(app):
    level = getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] [%(request_id)s] %(message)s",
    )
    for handler in logging.getLogger().handlers:
        if not any(isinstance(f, _RequestIdFilter) for f in handler.filters):
            handler.addFilter(_RequestIdFilter())
    app.logger.setLevel(level)


def create_app(config_object=Config):
    app = Flask(__name__)
    app.config.from_object(config_object)
    _configure_logging(app)

    # Trust reverse proxy headers for scheme/host when enabled
    if app.config.get("TRUST_PROXY", True):
        app.wsgi_app = ProxyFix(app.wsgi_app, x_proto=1, x_host=1)

    db.init_app(app)
    migrate.init_app(app, db)
    mail.init_app(app)
    limiter.init_app(app)

    # Assign a per-request correlation id for tracing
    @app.before_request
    def _assign_request_id():
        g.request_id = uuid.uuid4().hex[:16]

    @app.after_request
    def _set_security_headers(resp):
        resp.headers.setdefault("X-Content-Type-Options", "nosniff")
        resp.headers.setdefault("X-Frame-Options", "SAMEORIGIN")
        resp.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        if app.config.get("SESSION_COOKIE_SECURE", False):
            resp.headers.setdefault("Strict-Transport-Security", "max-age=31536000; includeSubDomains")
        if getattr(g, "request_id", None):
            resp.headers.setdefault("X-Request-ID", g.request_id)
        return resp

    from routes.payment_routes import payment_bp
    from routes.reminder_routes import reminder_bp

    app.register_blueprint(payment_bp)
    app.register_blueprint(reminder_bp)

    @app.route("/health")
    def health():
        return jsonify({"status": "ok"})

    # The reloader imports the app twice; only start the scheduler in the serving process
    if app.config.get("ENABLE_SCHEDULER") and os.environ.get("WERKZEUG_RUN_MAIN", "true") == "true":
        from scheduler import start_scheduler

        app.extensions["reminder_scheduler"] = start_scheduler(app)

    return app


if __name__ == "__main__":
    create_app().run(debug=True)
