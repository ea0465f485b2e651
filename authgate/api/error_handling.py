from __future__ import annotations

from typing import Mapping, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from authgate.api.schemas import GraphQLError, GraphQLErrorExtensions, GraphQLResponse
from authgate.logging import get_logger
from authgate.service.errors import ServiceError
from authgate.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "BAD_USER_INPUT",
    401: "UNAUTHENTICATED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "BAD_USER_INPUT",
    500: "INTERNAL_SERVER_ERROR",
}


def error_response(
    message: str,
    code: str,
    *,
    status_code: int = 200,
    headers: Optional[Mapping[str, str]] = None,
) -> JSONResponse:
    """GraphQL-style error envelope. Operation errors travel with HTTP 200."""
    body = GraphQLResponse(
        data=None,
        errors=[GraphQLError(message=message, extensions=GraphQLErrorExtensions(code=code))],
    )
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(),
        headers=dict(headers or {}),
    )


def service_error_response(
    request: Request, exc: ServiceError, headers: Optional[Mapping[str, str]] = None
) -> JSONResponse:
    log_fn = logger.error if exc.status_code >= 500 else logger.warning
    log_fn(
        "service_error",
        path=request.url.path,
        method=request.method,
        status_code=exc.status_code,
        error_code=exc.error_code,
        message=exc.message,
        detail=exc.detail,
    )
    message = exc.message if exc.status_code < 500 else "Internal server error."
    return error_response(message, exc.error_code, headers=headers)


def register_exception_handlers(app: FastAPI) -> None:
    """Install handlers that turn errors into the GraphQL error envelope."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        return service_error_response(request, exc)

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return error_response(exc.message, "CONFLICT")

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        logger.warning(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            errors=len(exc.errors()),
        )
        return error_response("Malformed request body.", "BAD_USER_INPUT", status_code=400)

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
            )
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        return error_response(
            message,
            _STATUS_TO_CODE.get(exc.status_code, "INTERNAL_SERVER_ERROR"),
            status_code=exc.status_code,
            headers=exc.headers,
        )

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
        )
        return error_response(
            "Internal server error.", "INTERNAL_SERVER_ERROR", status_code=500
        )
