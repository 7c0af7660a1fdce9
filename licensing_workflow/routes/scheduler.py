# SPDX-License-Identifier: Apache-2.0

"""
Administrative endpoints for the deadline scheduler.

Manual scan triggering, lifecycle control and statistics. The scheduler is
built once by the app factory and reached through current_app.
"""

from flask import jsonify, current_app
from flask_openapi3 import APIBlueprint, Tag
from opentelemetry import trace
from pydantic import BaseModel, Field
import logging
from typing import Literal

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

deadlines_tag = Tag(name="Deadlines", description="Deadline scheduler administration")
deadlines_bp = APIBlueprint(
    'deadlines',
    __name__,
    url_prefix='/api/admin/deadlines',
    abp_tags=[deadlines_tag]
)


class RunScanQuery(BaseModel):
    """Which duty a manual run executes."""
    duty: Literal["all", "overdue", "reminders"] = Field(default="all", description="Duty to run")


@deadlines_bp.post('/run')
def run_deadline_scan(query: RunScanQuery):
    """
    Run the deadline scans once, outside the timers.

    Executes exactly the logic of a scheduled tick; safe to call while the
    timers are running.
    """
    scheduler = current_app.deadline_scheduler

    with tracer.start_as_current_span("admin.deadlines.run", attributes={"deadlines.duty": query.duty}):
        if query.duty == "overdue":
            results = {"overdue": scheduler.check_overdue()}
        elif query.duty == "reminders":
            results = {"reminders": scheduler.send_reminders()}
        else:
            results = scheduler.run_once()

    logger.info(
        "Manual deadline scan completed",
        extra={"extra_fields": {duty: result.acted for duty, result in results.items()}}
    )
    return jsonify({duty: result.to_dict() for duty, result in results.items()})


@deadlines_bp.get('/statistics')
def deadline_statistics():
    """Scheduler counters plus audit report distribution."""
    return jsonify({
        "scheduler": current_app.deadline_scheduler.statistics(),
        "audit_reports": current_app.audit_workflow.statistics(),
    })


@deadlines_bp.get('/status')
def deadline_status():
    """Scheduler lifecycle state and store health."""
    scheduler = current_app.deadline_scheduler
    return jsonify({
        "state": scheduler.state.value,
        "running": scheduler.is_running(),
        "store": current_app.entity_store.health_check(),
    })


@deadlines_bp.post('/start')
def start_scheduler():
    started = current_app.deadline_scheduler.start()
    return jsonify({"state": current_app.deadline_scheduler.state.value, "changed": started})


@deadlines_bp.post('/stop')
def stop_scheduler():
    stopped = current_app.deadline_scheduler.stop()
    return jsonify({"state": current_app.deadline_scheduler.state.value, "changed": stopped})
