from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from fastapi import APIRouter, BackgroundTasks, Header, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError

from authgate.api.error_handling import error_response, service_error_response
from authgate.api.schemas import ChangePasswordData, GraphQLRequest, RecaptchaConfigResponse
from authgate.logging import get_logger
from authgate.service.credentials import AuthResult, AuthSuccess
from authgate.service.errors import (
    AuthenticationError,
    NotFoundError,
    ServerError,
    ServiceError,
    ValidationError,
)
from authgate.service.gateway import AuthAttemptContext, OperationKind
from authgate.service.lockout import GENERIC_FAILURE_MESSAGE
from authgate.service.runtime import Runtime, get_runtime

logger = get_logger(__name__)

router = APIRouter()

FieldResult = Tuple[str, Any]
Resolver = Callable[
    [Runtime, AuthAttemptContext, GraphQLRequest, Request, BackgroundTasks],
    Awaitable[FieldResult],
]

_SECRET_KEYS = ("secret", "password")


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else ""


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _string_var(variables: Dict[str, Any], *keys: str) -> str:
    for key in keys:
        value = variables.get(key)
        if isinstance(value, str):
            return value
    return ""


async def _resolve_login(
    runtime: Runtime,
    ctx: AuthAttemptContext,
    body: GraphQLRequest,
    request: Request,
    background: BackgroundTasks,
) -> FieldResult:
    secret = _string_var(body.variables, *_SECRET_KEYS)

    async def authenticate() -> AuthResult:
        try:
            return await runtime.verifier.verify_credential(ctx.identity or "", secret)
        except asyncio.TimeoutError as exc:
            raise ServerError("Authentication is temporarily unavailable.") from exc

    result = await runtime.gateway.run(ctx, authenticate)
    if isinstance(result, AuthSuccess):
        return "authenticateUserWithPassword", {
            "__typename": "UserAuthenticationWithPasswordSuccess",
            "sessionToken": result.session_token,
            "item": result.item,
        }
    return "authenticateUserWithPassword", {
        "__typename": "UserAuthenticationWithPasswordFailure",
        "message": GENERIC_FAILURE_MESSAGE,
    }


async def _resolve_request_reset(
    runtime: Runtime,
    ctx: AuthAttemptContext,
    body: GraphQLRequest,
    request: Request,
    background: BackgroundTasks,
) -> FieldResult:
    async def request_reset() -> bool:
        return await runtime.password_reset.request_reset(
            ctx.identity or "", schedule=background.add_task
        )

    return "sendUserPasswordResetLink", await runtime.gateway.run(ctx, request_reset)


async def _resolve_validate_reset(
    runtime: Runtime,
    ctx: AuthAttemptContext,
    body: GraphQLRequest,
    request: Request,
    background: BackgroundTasks,
) -> FieldResult:
    identity = _string_var(body.variables, "email", "identity")
    token = _string_var(body.variables, "token")
    outcome = await runtime.gateway.run(
        ctx, lambda: runtime.password_reset.validate(identity, token)
    )
    return "validateUserPasswordResetToken", outcome.as_payload() if outcome else None


async def _resolve_redeem_reset(
    runtime: Runtime,
    ctx: AuthAttemptContext,
    body: GraphQLRequest,
    request: Request,
    background: BackgroundTasks,
) -> FieldResult:
    variables = body.variables
    identity = _string_var(variables, "email", "identity")
    token = _string_var(variables, "token")
    password = _string_var(variables, "password")
    outcome = await runtime.gateway.run(
        ctx, lambda: runtime.password_reset.redeem(identity, token, password)
    )
    return "redeemUserPasswordResetToken", outcome.as_payload() if outcome else None


async def _resolve_change_password(
    runtime: Runtime,
    ctx: AuthAttemptContext,
    body: GraphQLRequest,
    request: Request,
    background: BackgroundTasks,
) -> FieldResult:
    field_name = "changeMyPassword"
    record_id = runtime.sessions.resolve(_bearer_token(request.headers.get("authorization")))
    if record_id is None:
        return field_name, {"success": False, "message": "Please sign in again and retry."}
    raw = body.variables.get("data", body.variables)
    try:
        data = ChangePasswordData.model_validate(raw if isinstance(raw, dict) else {})
    except PydanticValidationError:
        return field_name, {"success": False, "message": "Please enter a new password."}

    async def change() -> Dict[str, Any]:
        try:
            await runtime.credentials.change_password(
                record_id, data.password, data.confirmPassword
            )
        except (ValidationError, AuthenticationError, NotFoundError) as exc:
            logger.info("change_password_rejected", error_code=exc.error_code)
            return {"success": False, "message": exc.message}
        return {"success": True, "message": "Password updated."}

    return field_name, await runtime.gateway.run(ctx, change)


_RESOLVERS: Dict[OperationKind, Resolver] = {
    OperationKind.LOGIN: _resolve_login,
    OperationKind.REQUEST_RESET: _resolve_request_reset,
    OperationKind.VALIDATE_RESET: _resolve_validate_reset,
    OperationKind.REDEEM_RESET: _resolve_redeem_reset,
    OperationKind.CHANGE_PASSWORD: _resolve_change_password,
}


@router.post("/api/graphql", tags=["graphql"])
async def graphql(
    body: GraphQLRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    x_recaptcha_token: Optional[str] = Header(default=None),
):
    """Dispatch an authentication operation through the gateway pipeline."""
    runtime = get_runtime()
    ctx = AuthAttemptContext.build(
        operation_name=body.operationName,
        query=body.query,
        variables=body.variables,
        header_token=x_recaptcha_token,
        body_token=body.recaptchaToken,
        client_ip=_client_ip(request),
    )
    resolver = _RESOLVERS.get(ctx.kind)
    if resolver is None:
        logger.info("graphql_operation_not_supported", operation_name=body.operationName)
        return error_response(
            "Operation is not handled by this service.", "OPERATION_NOT_SUPPORTED"
        )
    try:
        field_name, value = await resolver(runtime, ctx, body, request, background_tasks)
    except ServiceError as exc:
        return service_error_response(request, exc, headers=ctx.headers)
    return JSONResponse(
        content={"data": {field_name: value}}, headers=ctx.headers, background=background_tasks
    )


@router.get("/v1/recaptcha/config", response_model=RecaptchaConfigResponse, tags=["recaptcha"])
async def recaptcha_config():
    return get_runtime().bot.public_config()

