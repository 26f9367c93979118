"""
HTTP surface for the presentation shell.

The map front end posts the clicked coordinate to /api/point and polls
/api/result; everything else (tiles, polygons, the density circle) is
drawn client-side from the result payload.
"""

import logging
import os
import threading

from dotenv import load_dotenv
from flask import Flask, jsonify, request
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

from aggregation_pipeline import AggregationPipeline
from health_monitor import get_status
from models import SourceError
from settings import PipelineSettings

load_dotenv()

# ---------------------------------------------------------------------------
# Sentry error tracking, gated on SENTRY_DSN. Silent when unset (local dev)
# ---------------------------------------------------------------------------
_sentry_dsn = os.environ.get("SENTRY_DSN")
if _sentry_dsn:
    import sentry_sdk
    from sentry_sdk.integrations.flask import FlaskIntegration

    def _sentry_before_send(event, hint):
        """Demote expected source failures to breadcrumbs."""
        exc_info = hint.get("exc_info")
        if exc_info:
            exc_type, exc_value, _ = exc_info
            if exc_type is not None and issubclass(exc_type, SourceError):
                sentry_sdk.add_breadcrumb(
                    category=getattr(exc_value, "source", "source"),
                    message=str(exc_value),
                    level="warning",
                )
                return None
        return event

    sentry_sdk.init(
        dsn=_sentry_dsn,
        integrations=[FlaskIntegration()],
        traces_sample_rate=0.0,
        environment=os.environ.get("NR_ENVIRONMENT", "production"),
        before_send=_sentry_before_send,
    )

app = Flask(__name__)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Rate limiting: every point change costs three Overpass queries and one
# TomTom call.  In-memory storage is per-process.
# ---------------------------------------------------------------------------
RATE_LIMIT_DEFAULT = os.environ.get("RATE_LIMIT_DEFAULT", "120/minute")
RATE_LIMIT_POINT = os.environ.get("RATE_LIMIT_POINT", "30/minute")

limiter = Limiter(
    get_remote_address,
    app=app,
    default_limits=[RATE_LIMIT_DEFAULT],
    storage_uri="memory://",
)

_pipeline = None
_pipeline_lock = threading.Lock()


def get_pipeline() -> AggregationPipeline:
    """Lazily build the process-wide pipeline from the environment.

    The first build also loads NR_DEFAULT_POINT, when set.
    """
    global _pipeline
    if _pipeline is None:
        with _pipeline_lock:
            if _pipeline is None:
                settings = PipelineSettings.from_env()
                pipeline = AggregationPipeline(settings)
                if settings.default_point is not None:
                    pipeline.set_point_of_interest(*settings.default_point)
                _pipeline = pipeline
    return _pipeline


@app.route("/api/point", methods=["POST"])
@limiter.limit(RATE_LIMIT_POINT)
def set_point():
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        return jsonify({"error": "expected a JSON object with lat and lon"}), 400
    if "lat" not in payload or "lon" not in payload:
        return jsonify({"error": "lat and lon are required"}), 400

    pipeline = get_pipeline()
    try:
        pipeline.set_point_of_interest(payload["lat"], payload["lon"])
    except ValueError as e:
        return jsonify({"error": str(e)}), 400

    result = pipeline.current_result()
    return jsonify({
        "generation": result.generation,
        "point": result.point.to_dict() if result.point else None,
    }), 202


@app.route("/api/result")
def current_result():
    return jsonify(get_pipeline().current_result().to_dict())


@app.route("/api/trace")
def current_trace():
    trace = get_pipeline().current_trace()
    if trace is None:
        return jsonify({"error": "No point of interest yet"}), 404
    return jsonify(trace.full_trace_dict())


@app.route("/healthz")
def healthz():
    return jsonify({"status": "ok", "sources": get_status()})
