from __future__ import annotations

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from shelfkeeper.api.schemas import Envelope, ErrorBody
from shelfkeeper.config import get_settings
from shelfkeeper.logging import get_correlation_id, get_logger
from shelfkeeper.service.errors import ServerError, ServiceError
from shelfkeeper.storage.errors import ConstraintViolation, StorageError

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    429: "rate_limited",
    500: "server_error",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
    headers: dict | None = None,
) -> JSONResponse:
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(code=error_code, message=message, details=details)
    envelope = Envelope(status="error", error=error_body)
    request_id = get_correlation_id()
    if request_id:
        envelope.request_id = request_id
    return JSONResponse(status_code=status_code, content=envelope.model_dump(), headers=headers)


def _server_error_details(reference: str) -> dict | None:
    # The reference is the only diagnostic that ever leaves the process
    if get_settings().development_mode:
        return {"reference": reference}
    return None


def register_exception_handlers(app: FastAPI) -> None:
    """Render every failure in the standard error envelope."""

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(409, "resource already exists", code="conflict")

    @app.exception_handler(StorageError)
    async def handle_storage_error(request: Request, exc: StorageError):
        err = ServerError()
        logger.error(
            "storage_error",
            path=request.url.path,
            method=request.method,
            reference=err.reference,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(
            500, err.message, _server_error_details(err.reference), code=err.error_code
        )

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
            reference=getattr(exc, "reference", None),
        )
        if isinstance(exc, ServerError):
            return _error_response(
                exc.status_code,
                exc.message,
                _server_error_details(exc.reference),
                code=exc.error_code,
            )
        headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == 401 else None
        return _error_response(
            exc.status_code, exc.message, exc.detail or None, code=exc.error_code, headers=headers
        )

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        # Envelope-shaped detail from routes._http_error
        if isinstance(exc.detail, dict) and isinstance(exc.detail.get("error"), dict):
            error_obj = exc.detail["error"]
            message = error_obj.get("message", "http error")
            code = error_obj.get("code")
            log_fn = logger.error if exc.status_code >= 500 else logger.warning
            log_fn(
                "http_client_error" if exc.status_code < 500 else "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                error_code=code,
                message=message,
            )
            return _error_response(
                exc.status_code, message, error_obj.get("details"), code=code, headers=exc.headers
            )
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        return _error_response(exc.status_code, message, headers=exc.headers)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        err = ServerError()
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            reference=err.reference,
        )
        return _error_response(
            500, "internal server error", _server_error_details(err.reference), code="server_error"
        )
