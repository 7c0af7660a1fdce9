"""
DEDE Licensing Workflow - Flask Application Entry Point

Wires the workflow core (store, notification dispatcher, clock, state
machines, deadline scheduler) and exposes the administrative endpoints.
"""

import atexit
import os
import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Optional

from flask import jsonify
from flask_openapi3 import OpenAPI, Info, Tag

from .domain.audit_reports import AuditVersionWorkflow
from .domain.requests import RequestStateMachine
from .middleware.error_handler import register_error_handlers
from .observability.config import setup_observability
from .observability.middleware import add_observability_middleware
from .routes.scheduler import deadlines_bp
from .services.notifications import LoggingNotificationSink, NotificationDispatcher
from .services.scheduler import DeadlineScheduler, SchedulerConfig
from .services.store import EntityStore, InMemoryEntityStore
from .utils.clock import Clock, SystemClock

logger = logging.getLogger(__name__)

info = Info(
    title="DEDE Licensing Workflow",
    version="1.0.0",
    description="Administrative API of the energy-facility license workflow core"
)

tags = [
    Tag(name="Deadlines", description="Deadline scheduler administration"),
    Tag(name="Health", description="System health and status")
]


def create_store() -> EntityStore:
    """Store backend selected by STORE_BACKEND (mongodb or memory)."""
    backend = os.getenv('STORE_BACKEND', 'mongodb').lower()
    if backend == 'memory':
        return InMemoryEntityStore()
    from .services.mongodb import MongoEntityStore
    store = MongoEntityStore()
    if os.getenv('MONGODB_CREATE_INDEXES', 'true').lower() == 'true':
        store.create_indexes()
    return store


def create_dispatcher() -> NotificationDispatcher:
    """Notification sink selected by NOTIFICATION_SINK (amqp or log)."""
    sink_name = os.getenv('NOTIFICATION_SINK', 'amqp').lower()
    if sink_name == 'amqp':
        from .services.amqp import AMQPNotificationSink, create_amqp_service
        amqp_service = create_amqp_service()
        amqp_service.setup_exchange()
        sink = AMQPNotificationSink(amqp_service)
    else:
        sink = LoggingNotificationSink()

    workers = int(os.getenv('NOTIFICATION_WORKERS', '4'))
    executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix='notify') if workers > 0 else None
    return NotificationDispatcher(sink, executor)


def create_app(
    store: Optional[EntityStore] = None,
    dispatcher: Optional[NotificationDispatcher] = None,
    clock: Optional[Clock] = None,
    scheduler_config: Optional[SchedulerConfig] = None,
    start_scheduler: Optional[bool] = None,
    configure_observability: bool = True,
) -> OpenAPI:
    """
    Build the Flask application and the workflow components it serves.

    Collaborators not passed in are created from the environment. The
    scheduler starts when start_scheduler is true, or when it is None and
    SCHEDULER_ENABLED is set.
    """
    if configure_observability:
        setup_observability()

    app = OpenAPI(__name__, info=info, tags=tags)
    add_observability_middleware(app)

    app.config['ENVIRONMENT'] = os.getenv('ENVIRONMENT', 'development')
    app.config['DEBUG'] = app.config['ENVIRONMENT'] == 'development'

    store = store if store is not None else create_store()
    if dispatcher is None:
        dispatcher = create_dispatcher()
        # Registered before the scheduler stop, so it runs after it
        atexit.register(dispatcher.shutdown)
    clock = clock if clock is not None else SystemClock()
    scheduler_config = scheduler_config or SchedulerConfig.from_env()

    # Make workflow components available to routes
    app.entity_store = store
    app.notification_dispatcher = dispatcher
    app.clock = clock
    app.request_machine = RequestStateMachine(store, dispatcher, clock)
    app.audit_workflow = AuditVersionWorkflow(store, dispatcher, clock)
    app.deadline_scheduler = DeadlineScheduler(store, dispatcher, clock, scheduler_config)

    register_error_handlers(app)
    app.register_api(deadlines_bp)

    @app.get('/api/healthz', tags=[tags[1]])
    def health_check():
        """Liveness with store health and scheduler state."""
        store_health = app.entity_store.health_check()
        healthy = store_health.get('status') == 'healthy'
        return jsonify({
            "status": "healthy" if healthy else "unhealthy",
            "service": "dede-licensing-workflow",
            "environment": app.config['ENVIRONMENT'],
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "store": store_health,
            "scheduler": app.deadline_scheduler.state.value
        }), 200 if healthy else 503

    if start_scheduler is None:
        start_scheduler = scheduler_config.enabled
    if start_scheduler:
        app.deadline_scheduler.start()
        atexit.register(app.deadline_scheduler.stop)

    logger.info(
        "Licensing workflow app created",
        extra={"extra_fields": {
            "store": type(store).__name__,
            "scheduler_running": app.deadline_scheduler.is_running()
        }}
    )
    return app


if __name__ == '__main__':
    # Development server
    application = create_app()
    application.run(
        host='0.0.0.0',
        port=int(os.getenv('PORT', 5000)),
        debug=application.config['DEBUG'],
        use_reloader=False
    )
