# keyshop/main.py
import logging
import time

from flask import Flask, abort, g, jsonify, request, session
from werkzeug.exceptions import HTTPException

from keyshop.blueprints import catalog_bp, orders_bp, payments_bp
from keyshop.blueprints.common import cache_store
from keyshop.config import Config
from keyshop.database import Base, SessionLocal, close_db, engine, get_db
from keyshop.errors import AppError
from keyshop.g2a.client import get_g2a_client
from keyshop.g2a.errors import G2AError
from keyshop.models import User
from keyshop.observability import (
    configure_logging,
    ensure_request_id,
    get_metrics_snapshot,
    increment_counter,
    observe_latency,
)
from keyshop.observability.health import check_cache_health, check_database_health
from keyshop.services.cache_service import get_cache_store
from keyshop.services.catalog_sync_service import CatalogSyncScheduler

app = Flask(__name__)
Config.configure_app(app)
configure_logging(app)
app.register_blueprint(orders_bp)
app.register_blueprint(catalog_bp)
app.register_blueprint(payments_bp)

logger = logging.getLogger(__name__)


def init_database():
    """Initialize database tables"""
    try:
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables initialized successfully")
    except Exception as e:
        logger.exception("Error initializing database: %s", e)


init_database()

sync_scheduler = CatalogSyncScheduler(SessionLocal, get_g2a_client, get_cache_store)
if not Config.TESTING and Config.SYNC_SCHEDULE_INTERVAL_SECONDS > 0:
    sync_scheduler.start()


def is_admin_user() -> bool:
    user = getattr(g, "current_user", None)
    if user:
        return user.is_admin
    return False


@app.before_request
def before_request_logging():
    g.current_user = None
    if 'user_id' in session:
        db = get_db()
        g.current_user = db.query(User).filter_by(userID=session['user_id']).first()
    g.request_started_at = time.perf_counter()
    g.request_id = ensure_request_id()
    increment_counter(
        "http_requests_total",
        labels={
            "method": request.method,
            "endpoint": request.endpoint or request.path,
        },
    )


@app.after_request
def after_request_logging(response):
    response.headers[Config.REQUEST_ID_HEADER] = getattr(g, "request_id", "") or ""
    started = getattr(g, 'request_started_at', None)
    labels = {
        "method": request.method,
        "endpoint": request.endpoint or request.path,
        "status": str(response.status_code),
    }
    if started is not None:
        observe_latency("http_request_latency_ms", (time.perf_counter() - started) * 1000, labels=labels)
    if response.status_code >= 500:
        increment_counter("http_errors_total", labels=labels)
        logger.error("Request finished with error status %s", response.status_code)
    else:
        logger.info("Request finished", extra={"context": {"status_code": response.status_code}})
    return response


@app.teardown_appcontext
def teardown_db(exception):
    close_db(exception)


# ---------------------------------------------
# Error handlers
# ---------------------------------------------

@app.errorhandler(AppError)
def handle_app_error(error: AppError):
    if error.status_code >= 500:
        logger.error("Request failed: %s", error.message)
    return jsonify(error.to_dict()), error.status_code


@app.errorhandler(G2AError)
def handle_g2a_error(error: G2AError):
    logger.error(
        "Reseller API failure surfaced to client: %s",
        error.message,
        extra={"context": error.to_dict()},
    )
    return jsonify({"error": error.message, "code": error.code.value}), 502


@app.errorhandler(HTTPException)
def handle_http_error(error: HTTPException):
    return jsonify({"error": error.description}), error.code


# ---------------------------------------------
# Health and metrics
# ---------------------------------------------

@app.route('/health', methods=['GET'])
def health():
    db_status = check_database_health()
    cache_status = check_cache_health(cache_store())
    overall = "UP" if db_status.get("status") == "UP" else "DEGRADED"
    status_code = 200 if overall == "UP" else 503
    return jsonify({
        "status": overall,
        "components": {
            "database": db_status,
            "cache": cache_status,
        }
    }), status_code


@app.route('/admin/metrics', methods=['GET'])
def admin_metrics():
    if not is_admin_user():
        abort(403)
    return jsonify(get_metrics_snapshot())
