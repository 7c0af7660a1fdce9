# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Error handling for the administrative HTTP surface.

Workflow errors are rendered as JSON problem documents carrying the error's
status code, type and whether the caller may retry.
"""

from flask import Flask, request, jsonify
from pydantic import ValidationError
from werkzeug.exceptions import HTTPException
from opentelemetry import trace
import logging

from ..domain.errors import WorkflowError

tracer = trace.get_tracer(__name__)
logger = logging.getLogger(__name__)


def problem(error_type: str, title: str, status: int, detail: str, **extra):
    """Build a problem document response."""
    body = {
        "type": error_type,
        "title": title,
        "status": status,
        "detail": detail,
        "instance": request.path,
    }
    body.update(extra)
    return jsonify(body), status


def register_error_handlers(app: Flask):
    """
    Register handlers for workflow errors and unexpected exceptions.

    Args:
        app: Flask application
    """

    @app.errorhandler(WorkflowError)
    def handle_workflow_error(error: WorkflowError):
        with tracer.start_as_current_span("error_handler.workflow_error") as span:
            span.set_attributes({
                "error.type": error.error_type,
                "error.status": error.status_code,
                "http.method": request.method,
                "http.path": request.path
            })

            logger.warning(
                f"Workflow error: {error.error_type}",
                extra={"extra_fields": {
                    "error_type": error.error_type,
                    "status_code": error.status_code,
                    "detail": error.message,
                    "path": request.path,
                    "method": request.method
                }}
            )

            body = error.to_dict()
            body.pop("type", None)
            body.pop("detail", None)
            return problem(
                error.error_type,
                type(error).__name__,
                error.status_code,
                error.message,
                **body
            )

    @app.errorhandler(ValidationError)
    def handle_validation_error(error: ValidationError):
        logger.warning(
            "Request validation failed",
            extra={"extra_fields": {"path": request.path, "errors": error.error_count()}}
        )
        return problem(
            "validation-error",
            "Validation Error",
            422,
            "Request validation failed",
            errors=[
                {"loc": list(e["loc"]), "msg": e["msg"]} for e in error.errors()
            ]
        )

    @app.errorhandler(HTTPException)
    def handle_http_exception(error: HTTPException):
        return problem(
            error.name.lower().replace(" ", "-"),
            error.name,
            error.code or 500,
            error.description or error.name
        )

    @app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception):
        with tracer.start_as_current_span("error_handler.unexpected_error") as span:
            span.record_exception(error)
            logger.error(
                f"Unexpected error: {error.__class__.__name__}",
                extra={"extra_fields": {
                    "error_class": error.__class__.__name__,
                    "error_message": str(error),
                    "path": request.path,
                    "method": request.method
                }},
                exc_info=True
            )

            # Don't expose internal error details in production
            detail = "An unexpected error occurred"
            if app.config.get('ENVIRONMENT') != 'production':
                detail = f"{error.__class__.__name__}: {error}"

            return problem("internal-server-error", "Internal Server Error", 500, detail)
