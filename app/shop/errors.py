from __future__ import annotations

from typing import Any

from flask import Flask, g, jsonify
from werkzeug.exceptions import HTTPException


class ApiError(Exception):
    """Error surfaced to API clients as the JSON error envelope."""

    status_code = 400

    def __init__(self, message: str, status_code: int | None = None, *, errors: list[str] | None = None, **extra: Any):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.errors = errors
        self.extra = extra


class NotFound(ApiError):
    status_code = 404


class Forbidden(ApiError):
    status_code = 403


class Unauthorized(ApiError):
    status_code = 401


def error_response(message: str, status_code: int, *, errors: list[str] | None = None, **extra: Any):
    body: dict[str, Any] = {"success": False, "error": message}
    if errors:
        body["errors"] = errors
    body.update(extra)
    return jsonify(body), status_code


def validation_failed(errors: list[str]):
    return error_response(errors[0], 400, errors=errors)


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(ApiError)
    def _api_error(e: ApiError):  # type: ignore[no-redef]
        return error_response(e.message, e.status_code, errors=e.errors, **e.extra)

    @app.errorhandler(HTTPException)
    def _http_error(e: HTTPException):  # type: ignore[no-redef]
        if e.code == 403:
            missing = getattr(g, "missing_permission", None)
            if missing:
                app.logger.warning("Forbidden: missing_permission=%s request_id=%s", missing, getattr(g, "request_id", None))
        if e.code == 413:
            return error_response("File too large.", 413)
        return error_response(e.description or e.name, e.code or 500)

    @app.errorhandler(Exception)
    def _unhandled(e: Exception):  # type: ignore[no-redef]
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        return error_response("Internal server error.", 500)
