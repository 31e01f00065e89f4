import os

from flask import Flask, jsonify, request, g
from sqlalchemy import text
from werkzeug.exceptions import HTTPException

from bazaarlink.errors import DispatchError
from bazaarlink.extensions import db, cors
from bazaarlink.integrations.messaging.factory import messaging_health
from bazaarlink.integrations.push.factory import push_health
from bazaarlink.models import User
from bazaarlink.segments.segment_agents import agents_bp
from bazaarlink.segments.segment_dispatch import dispatch_bp
from bazaarlink.segments.segment_notifications import notifications_bp
from bazaarlink.segments.segment_payment_webhooks import webhooks_bp
from bazaarlink.utils.dispatch_settings import get_dispatch_settings
from bazaarlink.utils.jwt_utils import decode_token, get_bearer_token
from bazaarlink.utils.observability import init_sentry, install_request_observers


def _env_int(name: str, default: int, *, minimum: int = 1, maximum: int = 100000) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        value = int(default)
    else:
        try:
            value = int(raw)
        except Exception:
            value = int(default)
    if value < minimum:
        value = minimum
    if value > maximum:
        value = maximum
    return value


def _error_payload(error: str, message: str, status: int) -> dict:
    return _with_trace({"ok": False, "error": error, "message": message}, status)


def _with_trace(payload: dict, status: int) -> dict:
    payload["status"] = int(status)
    rid = (getattr(g, "request_id", "") or "").strip()
    if rid:
        payload["trace_id"] = rid
    return payload


def create_app(overrides: dict | None = None):
    app = Flask(__name__)
    init_sentry(app)

    env = (os.getenv("BAZAARLINK_ENV", "dev") or "dev").strip().lower()

    # Production safety checks
    if env in ("prod", "production"):
        secret = (os.getenv("SECRET_KEY") or "").strip()
        if not secret or len(secret) < 16:
            raise RuntimeError("SECRET_KEY must be set and at least 16 chars in production")
        if not (os.getenv("DATABASE_URL") or "").strip() and not (os.getenv("SQLALCHEMY_DATABASE_URI") or "").strip():
            raise RuntimeError("DATABASE_URL (or SQLALCHEMY_DATABASE_URI) must be set in production")

    app.config["SECRET_KEY"] = os.getenv("SECRET_KEY", "dev-secret")
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False

    instance_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "instance"))

    database_url = os.getenv("SQLALCHEMY_DATABASE_URI") or os.getenv("DATABASE_URL")
    if not database_url:
        os.makedirs(instance_dir, exist_ok=True)
        database_url = f"sqlite:///{os.path.join(instance_dir, 'bazaarlink.db').replace(os.sep, '/')}"
    app.config["SQLALCHEMY_DATABASE_URI"] = database_url
    app.config.update(overrides or {})

    database_url = str(app.config["SQLALCHEMY_DATABASE_URI"])
    if not database_url.startswith("sqlite"):
        engine_options = {
            "pool_pre_ping": True,
            "pool_reset_on_return": "rollback",
            "pool_recycle": _env_int("DB_POOL_RECYCLE_SECONDS", 1800, minimum=60, maximum=86400),
            "pool_size": _env_int("DB_POOL_SIZE", 10, minimum=1, maximum=200),
            "max_overflow": _env_int("DB_MAX_OVERFLOW", 20, minimum=0, maximum=500),
            "pool_timeout": _env_int("DB_POOL_TIMEOUT_SECONDS", 30, minimum=1, maximum=300),
        }
        app.config.setdefault("SQLALCHEMY_ENGINE_OPTIONS", engine_options)
        app.logger.info(
            "db_pooling_enabled pool_size=%s max_overflow=%s pool_timeout=%s",
            engine_options["pool_size"],
            engine_options["max_overflow"],
            engine_options["pool_timeout"],
        )

    cors_origins = (os.getenv("CORS_ORIGINS") or "").strip()
    if env in ("prod", "production"):
        origins = [o.strip() for o in cors_origins.split(",") if o.strip()]
    else:
        origins = ["*"] if not cors_origins else [o.strip() for o in cors_origins.split(",") if o.strip()]
    cors.init_app(app, resources={r"/api/*": {"origins": origins}})

    db.init_app(app)
    install_request_observers(app)
    with app.app_context():
        db.create_all()

    @app.errorhandler(DispatchError)
    def _api_dispatch_error(error: DispatchError):
        return jsonify(_with_trace(error.to_dict(), error.http_status)), int(error.http_status)

    @app.errorhandler(HTTPException)
    def _api_http_exception(error: HTTPException):
        # Keep API failures JSON-only for predictable client handling.
        if not request.path.startswith("/api/"):
            return error
        status = int(error.code or 500)
        return jsonify(_error_payload(error.name, error.description or error.name, status)), status

    @app.errorhandler(Exception)
    def _api_unhandled_exception(error: Exception):
        app.logger.exception("unhandled_exception path=%s", request.path)
        try:
            db.session.rollback()
        except Exception:
            pass
        return jsonify(_error_payload("InternalServerError", "Internal server error", 500)), 500

    @app.before_request
    def _capture_auth_context():
        g.auth_user_id = None
        g.auth_role = None
        token = get_bearer_token(request.headers.get("Authorization", ""))
        if not token:
            return
        payload = decode_token(token)
        if not payload:
            return
        try:
            uid = int(payload.get("sub"))
        except Exception:
            return
        user = db.session.get(User, uid)
        if user is None:
            return
        g.auth_user_id = uid
        g.auth_role = (user.role or "").strip().lower()

    app.register_blueprint(dispatch_bp)
    app.register_blueprint(agents_bp)
    app.register_blueprint(webhooks_bp)
    app.register_blueprint(notifications_bp)

    @app.get("/api/health")
    def health():
        db_state = "ok"
        db_error = None
        try:
            with db.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            db_state = "fail"
            msg = str(e)
            if msg:
                db_error = (msg[:300] + "...") if len(msg) > 300 else msg
        settings = get_dispatch_settings()
        payload = {
            "ok": True,
            "service": "bazaarlink-backend",
            "env": env,
            "db": db_state,
            "routing_provider": settings.routing_provider,
            "integrations": {
                "sms": messaging_health(settings),
                "push": push_health(settings),
            },
            "git_sha": (os.getenv("GIT_SHA") or "unknown").strip(),
        }
        if db_error:
            payload["db_error"] = db_error
        return jsonify(payload)

    return app
