from __future__ import annotations

import logging
import os
from typing import Optional

from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException

from ..errors import (
    ChartingError,
    MissingScopeError,
    NotFoundError,
    PersistenceError,
    TemplateArchivedError,
    TemplateInUseError,
    ValidationError,
)
from ..services import ChartingServices, build_services
from .routes_charting import EXTENSION_KEY, register_charting_api

LOGGER = logging.getLogger(__name__)


def status_for(error: ChartingError) -> int:
    """HTTP status code for a charting error."""
    if isinstance(error, (TemplateArchivedError, TemplateInUseError)):
        return 409
    if isinstance(error, ValidationError):
        return 400
    if isinstance(error, NotFoundError):
        return 404
    if isinstance(error, MissingScopeError):
        return 422
    if isinstance(error, PersistenceError):
        return 503
    return 500


def create_app(services: Optional[ChartingServices] = None) -> Flask:
    logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO"))
    app = Flask(__name__)
    app.extensions[EXTENSION_KEY] = services or build_services()

    @app.errorhandler(ChartingError)
    def handle_charting_error(error: ChartingError):
        status = status_for(error)
        if status >= 500:
            LOGGER.error("%s: %s", error.code, error.message)
        return jsonify({"error": error.to_dict()}), status

    @app.errorhandler(HTTPException)
    def handle_http_error(error: HTTPException):
        code = (error.name or "error").upper().replace(" ", "_")
        return jsonify({"error": {"code": code, "message": error.description}}), error.code

    @app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception):
        LOGGER.exception("Unhandled error while serving request")
        return jsonify({"error": {"code": "INTERNAL_ERROR", "message": "An unexpected error occurred."}}), 500

    @app.get("/api/health")
    def api_health():
        return jsonify({"status": "ok"})

    register_charting_api(app)
    return app
