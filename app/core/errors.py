import logging
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.core.config import get_settings

logger = logging.getLogger(__name__)


class AppError(Exception):
    """Operational error: its message and status are safe to return to the caller."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    is_operational = True

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        errors: list[dict[str, Any]] | None = None,
    ):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.errors = errors


class ValidationError(AppError):
    status_code = status.HTTP_400_BAD_REQUEST


class AuthenticationError(AppError):
    status_code = status.HTTP_401_UNAUTHORIZED


class AuthorizationError(AppError):
    status_code = status.HTTP_403_FORBIDDEN


class NotFoundError(AppError):
    status_code = status.HTTP_404_NOT_FOUND


class ConflictError(AppError):
    status_code = status.HTTP_409_CONFLICT


def error_body(message: str, errors: list[dict[str, Any]] | None = None) -> dict:
    body: dict[str, Any] = {"success": False, "message": message}
    if errors:
        body["errors"] = errors
    return body


def _caller(request: Request) -> str:
    user = getattr(request.state, "user", None)
    return str(user.id) if user is not None else "anonymous"


def _log_context(request: Request, status_code: int) -> dict:
    return {
        "method": request.method,
        "url": str(request.url),
        "user": _caller(request),
        "status": status_code,
    }


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    context = _log_context(request, exc.status_code)
    logger.warning(
        "%s [%s %s user=%s status=%s]",
        exc.message,
        context["method"],
        context["url"],
        context["user"],
        context["status"],
    )
    return JSONResponse(status_code=exc.status_code, content=error_body(exc.message, exc.errors))


def _format_validation_errors(exc: RequestValidationError) -> list[dict[str, Any]]:
    formatted = []
    for err in exc.errors():
        location, *path = err.get("loc", ()) or ("body",)
        message = err.get("msg", "Invalid value")
        # pydantic prefixes messages raised from custom validators
        message = message.removeprefix("Value error, ")
        formatted.append(
            {
                "field": ".".join(str(part) for part in path) or str(location),
                "message": message,
                "location": str(location),
            }
        )
    return formatted


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = _format_validation_errors(exc)
    logger.warning(
        "Validation failed [%s %s user=%s]: %s",
        request.method,
        request.url.path,
        _caller(request),
        errors,
    )
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=error_body("Validation failed", errors),
    )


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if exc.status_code == status.HTTP_404_NOT_FOUND and exc.detail == "Not Found":
        message = f"Route not found: {request.method} {request.url.path}"
    else:
        message = str(exc.detail)
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(message),
        headers=getattr(exc, "headers", None),
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    context = _log_context(request, status.HTTP_500_INTERNAL_SERVER_ERROR)
    logger.error(
        "Unhandled error [%s %s user=%s status=%s]",
        context["method"],
        context["url"],
        context["user"],
        context["status"],
        exc_info=exc,
    )
    errors = None
    if get_settings().environment == "development":
        errors = [{"type": type(exc).__name__, "message": str(exc)}]
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error_body("Something went wrong!", errors),
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
