"""
Error taxonomy shared by the engines and the API layer.

Services raise these; ``register_error_handlers`` maps them to
``{"error": "..."}`` responses once for the whole app.
"""
import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException

logger = logging.getLogger(__name__)


class WorkshopError(Exception):
    status_code = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(WorkshopError):
    """Missing or malformed input, or a business rule violated by the input."""

    status_code = 400


class AuthenticationError(WorkshopError):
    status_code = 401


class AuthorizationError(WorkshopError):
    status_code = 403


class NotFoundError(WorkshopError):
    status_code = 404

    def __init__(self, resource: str, resource_id=None):
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(f"{resource} not found")


class ConflictError(WorkshopError):
    """The operation clashes with existing data (referenced stage, duplicate key)."""

    status_code = 400


class StoreError(WorkshopError):
    """Persistence failure. The message given to callers is always generic."""

    status_code = 500

    def __init__(self, message: str = "Database error"):
        super().__init__(message)


def error_response(status_code: int, message: str, headers: dict | None = None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message}, headers=headers)


async def _workshop_error_handler(request: Request, exc: WorkshopError):
    if isinstance(exc, StoreError):
        logger.error("store failure on %s %s: %s", request.method, request.url.path, exc.message)
        return error_response(500, "Database error")
    if exc.status_code >= 400:
        logger.warning("%s %s rejected (%s): %s", request.method, request.url.path, exc.status_code, exc.message)
    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, AuthenticationError) else None
    return error_response(exc.status_code, exc.message, headers)


async def _request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if errors:
        first = errors[0]
        field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = first.get("msg", "Invalid request")
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        if field:
            message = f"{field}: {message}"
    else:
        message = "Invalid request"
    return error_response(400, message)


async def _http_exception_handler(request: Request, exc: HTTPException):
    return error_response(exc.status_code, str(exc.detail), getattr(exc, "headers", None))


async def _sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError):
    logger.exception("unhandled database error on %s %s", request.method, request.url.path, exc_info=exc)
    return error_response(500, "Database error")


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(WorkshopError, _workshop_error_handler)
    app.add_exception_handler(RequestValidationError, _request_validation_handler)
    app.add_exception_handler(HTTPException, _http_exception_handler)
    app.add_exception_handler(SQLAlchemyError, _sqlalchemy_error_handler)
