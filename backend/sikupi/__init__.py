import os
from pathlib import Path

import click
from flask import Flask, g, jsonify, request
from sqlalchemy import text
from werkzeug.exceptions import HTTPException

from sikupi.errors import OrderEngineError
from sikupi.extensions import db, migrate, cors
from sikupi import models  # noqa: F401  (register tables on the metadata)
from sikupi.integrations.payments.factory import payment_health
from sikupi.segments.segment_cart import cart_bp
from sikupi.segments.segment_notifications import notifications_bp
from sikupi.segments.segment_payment_webhooks import webhooks_bp
from sikupi.segments.segment_payments import payments_bp
from sikupi.segments.segment_products import products_bp
from sikupi.segments.segment_transactions import transactions_bp
from sikupi.services.factory import EXTENSION_KEY, build_order_services
from sikupi.utils.observability import init_sentry, install_request_observers


def _resolve_alembic_head() -> str:
    try:
        from alembic.config import Config
        from alembic.script import ScriptDirectory

        migrations_dir = Path(__file__).resolve().parents[1] / "migrations"
        cfg = Config(str(migrations_dir / "alembic.ini"))
        cfg.set_main_option("script_location", str(migrations_dir))
        script = ScriptDirectory.from_config(cfg)
        heads = script.get_heads()
        return heads[0] if heads else "unknown"
    except Exception:
        return "unknown"


def _env_int(name: str, default: int, *, minimum: int = 1, maximum: int = 100000) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        value = int(default)
    else:
        try:
            value = int(raw)
        except ValueError:
            value = int(default)
    if value < minimum:
        value = minimum
    if value > maximum:
        value = maximum
    return value


def _with_trace_id(payload: dict) -> dict:
    rid = (getattr(g, "request_id", "") or "").strip()
    if rid:
        payload["trace_id"] = rid
    return payload


def create_app():
    app = Flask(__name__)
    init_sentry(app)

    env = (os.getenv("SIKUPI_ENV", "dev") or "dev").strip().lower()

    # Production safety checks
    if env in ("prod", "production"):
        secret = (os.getenv("SECRET_KEY") or "").strip()
        if not secret or len(secret) < 16:
            raise RuntimeError("SECRET_KEY must be set and at least 16 chars in production")

    # Basic config
    app.config["SECRET_KEY"] = os.getenv("SECRET_KEY", "dev-secret")
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.config["SIKUPI_ENV"] = env
    app.config["PAYMENTS_PROVIDER"] = (os.getenv("PAYMENTS_PROVIDER") or "mock").strip().lower()
    if env in ("prod", "production") and app.config["PAYMENTS_PROVIDER"] == "mock":
        app.logger.warning("payments_mock_refused env=%s payment routes answer 503 until PAYMENTS_PROVIDER=midtrans", env)

    # Ensure instance dir exists for SQLite paths
    instance_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "instance"))
    os.makedirs(instance_dir, exist_ok=True)

    # Database config
    database_url = os.getenv("SQLALCHEMY_DATABASE_URI") or os.getenv("DATABASE_URL")
    if not database_url:
        if env in ("prod", "production"):
            raise RuntimeError("DATABASE_URL (or SQLALCHEMY_DATABASE_URI) must be set in production")
        database_url = f"sqlite:///{os.path.join(instance_dir, 'sikupi.db').replace(os.sep, '/')}"
    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)
    app.config["SQLALCHEMY_DATABASE_URI"] = database_url
    engine_options = {"pool_pre_ping": True}
    if not database_url.startswith("sqlite://"):
        engine_options.update(
            {
                "pool_reset_on_return": "rollback",
                "pool_recycle": _env_int("DB_POOL_RECYCLE_SECONDS", 1800, minimum=60, maximum=86400),
                "pool_size": _env_int("DB_POOL_SIZE", 10, minimum=1, maximum=200),
                "max_overflow": _env_int("DB_MAX_OVERFLOW", 20, minimum=0, maximum=500),
                "pool_timeout": _env_int("DB_POOL_TIMEOUT_SECONDS", 30, minimum=1, maximum=300),
            }
        )
        app.logger.info(
            "db_pooling_enabled pool_size=%s max_overflow=%s pool_timeout=%s pool_recycle=%s",
            engine_options["pool_size"],
            engine_options["max_overflow"],
            engine_options["pool_timeout"],
            engine_options["pool_recycle"],
        )
    app.config["SQLALCHEMY_ENGINE_OPTIONS"] = engine_options

    # CORS configuration
    cors_origins = (os.getenv("CORS_ORIGINS") or "").strip()
    if env in ("prod", "production"):
        origins = [o.strip() for o in cors_origins.split(",") if o.strip()]
    else:
        origins = ["*"] if not cors_origins else [o.strip() for o in cors_origins.split(",") if o.strip()]
    cors.init_app(app, resources={r"/api/*": {"origins": origins}})

    # Init extensions
    db.init_app(app)
    migrate.init_app(app, db)
    install_request_observers(app)
    app.extensions[EXTENSION_KEY] = build_order_services(config=app.config)

    if env not in ("prod", "production"):
        # Dev and test databases are created in place; production runs migrations.
        with app.app_context():
            db.create_all()

    @app.errorhandler(OrderEngineError)
    def _order_engine_error(error: OrderEngineError):
        db.session.rollback()
        if error.http_status >= 500:
            app.logger.warning("order_engine_error code=%s path=%s message=%s", error.code, request.path, error.message)
        return jsonify(_with_trace_id(error.to_dict())), int(error.http_status)

    @app.errorhandler(HTTPException)
    def _api_http_exception(error: HTTPException):
        # Keep API failures JSON-only for predictable client handling.
        if not request.path.startswith("/api/"):
            return error
        payload = {
            "ok": False,
            "error": error.name,
            "message": error.description or error.name,
            "status": int(error.code or 500),
        }
        return jsonify(_with_trace_id(payload)), int(error.code or 500)

    @app.errorhandler(Exception)
    def _api_unhandled_exception(error: Exception):
        app.logger.exception("unhandled_exception path=%s", request.path)
        db.session.rollback()
        payload = {
            "ok": False,
            "error": "InternalServerError",
            "message": "Internal server error",
            "status": 500,
        }
        return jsonify(_with_trace_id(payload)), 500

    # Register API routes
    app.register_blueprint(transactions_bp)
    app.register_blueprint(payments_bp)
    app.register_blueprint(webhooks_bp)
    app.register_blueprint(cart_bp)
    app.register_blueprint(products_bp)
    app.register_blueprint(notifications_bp)

    # Health check
    @app.get("/api/health")
    def health():
        db_state = "ok"
        db_error = None
        try:
            with db.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            db_state = "fail"
            db_error = str(e)[:300]
        payload = {
            "ok": db_state == "ok",
            "service": "sikupi-backend",
            "env": env,
            "db": db_state,
            "payments": payment_health(app.config),
            "alembic_head": _resolve_alembic_head(),
        }
        if db_error:
            payload["db_error"] = db_error
        return jsonify(payload), 200 if db_state == "ok" else 503

    @app.cli.command("sweep-stale-orders")
    @click.option("--hours", type=int, default=None, help="Cancel pending orders older than this many hours.")
    @click.option("--limit", type=int, default=100, show_default=True)
    def sweep_stale_orders_command(hours, limit):
        """Cancel pending transactions whose payment window has expired."""
        from sikupi.jobs.stale_order_runner import run_stale_pending_sweep

        result = run_stale_pending_sweep(max_age_hours=hours, limit=limit)
        if result.get("disabled"):
            click.echo("stale_sweep_disabled set STALE_PENDING_HOURS or pass --hours")
            return
        click.echo(
            f"stale_sweep_ok cancelled={len(result['cancelled'])} "
            f"skipped={len(result['skipped'])} errors={len(result['errors'])}"
        )
        if not result.get("ok"):
            raise click.ClickException("some cancellations failed")

    return app
