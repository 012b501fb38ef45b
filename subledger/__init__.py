import os
from flask import Flask, jsonify

# Load .env only for local/dev. In prod, env vars come from the platform.
if os.getenv("APP_ENV", "development") != "production":
    from dotenv import load_dotenv
    load_dotenv(".env", override=False)


from .config import get_config
from .extensions import db, migrate, limiter
from .security import init_security
from .observability import init_logging, init_sentry
from .providers import init_providers


def create_app(config_overrides=None):
    app = Flask(__name__)

    # ---- Rate limiting storage ----
    app_env = (os.getenv("APP_ENV", "development") or "development").lower()
    use_redis = app_env in ("staging", "production")
    storage_uri = os.environ.get("REDIS_URL") if use_redis else "memory://"
    if use_redis and not storage_uri:
        # Hard fail in stage/prod so we never silently run without RL storage
        raise RuntimeError("REDIS_URL is required in staging/production for rate limiting")

    app.config["RATELIMIT_STORAGE_URI"] = storage_uri
    app.config.setdefault("RATELIMIT_HEADERS_ENABLED", True)

    # Config: clean, explicit, class-based
    app.config.from_object(get_config())
    if config_overrides:
        app.config.update(config_overrides)
    app.config.setdefault("APP_ENV", app_env)

    # --- Required env validation for prod-like envs (staging/production) ---
    def _require(name: str):
        val = os.getenv(name) or app.config.get(name)
        if not val:
            raise RuntimeError(f"Missing required environment variable: {name}")
        return val

    if app_env in ("staging", "production"):
        # Enforce hard requirements at startup (not at import time)
        _require("SECRET_KEY")
        _require("DATABASE_URL")
        default_provider = (app.config.get("DEFAULT_PROVIDER") or "stripe").lower()
        if default_provider == "stripe":
            _require("STRIPE_SECRET_KEY")
            _require("STRIPE_WEBHOOK_SECRET")
        elif default_provider == "paypal":
            _require("PAYPAL_CLIENT_ID")
            _require("PAYPAL_CLIENT_SECRET")
            _require("PAYPAL_WEBHOOK_ID")

    # --- Observability & Security ---
    init_logging(app)
    init_sentry(app)

    # Security headers only in staging/production
    if app_env in ("staging", "production"):
        init_security(app)

    # Init extensions
    db.init_app(app)
    migrate.init_app(app, db, directory="migrations")
    limiter.init_app(app)
    init_providers(app)

    # Blueprints (explicit, consistent prefixes)
    from .blueprints.api import bp as api_bp
    from .blueprints.webhooks import bp as webhooks_bp

    app.register_blueprint(api_bp, url_prefix="/api")
    app.register_blueprint(webhooks_bp, url_prefix="/webhooks")

    # Health
    @app.get("/healthz")
    @limiter.exempt
    def healthz():
        return {"status": "ok", "providers": app.extensions["billing_providers"].names()}, 200

    # Error handlers: the API speaks JSON only
    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"success": False, "message": "Not Found", "data": {}}), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return jsonify({"success": False, "message": "Method Not Allowed", "data": {}}), 405

    # 429 Too Many Requests with Retry-After
    @app.errorhandler(429)
    def too_many_requests(e):
        retry_after = getattr(e, "retry_after", None)
        headers = {}
        payload = {"success": False, "message": "rate_limited", "data": {}}
        if retry_after is not None:
            headers["Retry-After"] = str(int(retry_after))
            payload["data"]["retry_after"] = int(retry_after)
        return jsonify(payload), 429, headers

    @app.errorhandler(500)
    def server_error(e):
        return jsonify({"success": False, "message": "Internal Server Error", "data": {}}), 500

    # CLI commands (ops-grade utilities)
    from .cli import register_cli
    register_cli(app)

    configured = [p.name for p in app.extensions["billing_providers"] if p.is_configured()]
    if not configured:
        app.logger.warning("No billing provider credentials configured; provider calls will fail")

    return app
