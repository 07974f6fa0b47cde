from __future__ import annotations

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from staffauth.api.schemas import Envelope, ErrorBody
from staffauth.logging import get_logger
from staffauth.service.errors import ServiceError
from staffauth.storage.errors import (
    ConstraintViolation,
    InvalidState,
    NotFound,
    TransientStorageError,
    ValidationFailure,
)

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    500: "server_error",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
) -> JSONResponse:
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(code=error_code, message=message, details=details)
    envelope = Envelope(status="error", error=error_body)
    return JSONResponse(status_code=status_code, content=envelope.model_dump())


def register_exception_handlers(app: FastAPI) -> None:
    """Install envelope-producing handlers for service and storage errors."""

    def _log_storage(event: str, request: Request, exc) -> None:
        logger.warning(
            event,
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        _log_storage("constraint_violation", request, exc)
        return _error_response(409, exc.message, exc.detail, code="conflict")

    @app.exception_handler(InvalidState)
    async def handle_invalid_state(request: Request, exc: InvalidState):
        _log_storage("invalid_state", request, exc)
        return _error_response(409, exc.message, exc.detail, code="conflict")

    @app.exception_handler(NotFound)
    async def handle_not_found(request: Request, exc: NotFound):
        _log_storage("record_not_found", request, exc)
        return _error_response(404, exc.message, exc.detail, code="not_found")

    @app.exception_handler(ValidationFailure)
    async def handle_validation_failure(request: Request, exc: ValidationFailure):
        _log_storage("validation_failure", request, exc)
        return _error_response(400, exc.message, exc.detail, code="validation_error")

    @app.exception_handler(TransientStorageError)
    async def handle_transient(request: Request, exc: TransientStorageError):
        logger.error(
            "storage_unavailable",
            path=request.url.path,
            method=request.method,
            message=exc.message,
        )
        return _error_response(503, "storage temporarily unavailable", code="server_error")

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        error_code = getattr(exc, "error_code", None)
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=error_code,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(exc.status_code, exc.message, exc.detail, code=error_code)

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        detail = exc.detail if isinstance(exc.detail, dict) else {"detail": exc.detail}
        message = str(detail.get("detail", "http error"))
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return _error_response(exc.status_code, message, detail)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return _error_response(500, "internal server error", code="server_error")
