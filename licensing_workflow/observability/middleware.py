"""
Observability Middleware

Traces and logs every request to the administrative endpoints. Health checks
are logged at debug level so liveness polling does not drown scheduler runs.
"""

import time
import logging
from flask import Flask, request, g
from opentelemetry import trace
from opentelemetry.instrumentation.flask import FlaskInstrumentor

logger = logging.getLogger(__name__)

HEALTH_PATHS = frozenset({'/api/healthz'})


def add_observability_middleware(app: Flask):
    """Instrument the Flask app and log request completion with the trace id."""
    FlaskInstrumentor().instrument_app(app)

    @app.before_request
    def start_request_timer():
        g.start_time = time.time()
        span_context = trace.get_current_span().get_span_context()
        g.trace_id = format(span_context.trace_id, "032x") if span_context.is_valid else None

    @app.after_request
    def log_request(response):
        duration_ms = round((time.time() - g.get('start_time', time.time())) * 1000, 2)

        span = trace.get_current_span()
        if span.is_recording():
            span.set_attributes({
                "http.status_code": response.status_code,
                "http.duration_ms": duration_ms,
                "workflow.admin": request.path.startswith('/api/admin/')
            })

        level = logging.DEBUG if request.path in HEALTH_PATHS else logging.INFO
        logger.log(
            level,
            "HTTP request completed",
            extra={
                "extra_fields": {
                    "method": request.method,
                    "path": request.path,
                    "status_code": response.status_code,
                    "duration_ms": duration_ms,
                    "trace_id": g.get('trace_id')
                }
            }
        )

        if g.get('trace_id'):
            response.headers['X-Trace-Id'] = g.trace_id
        return response
