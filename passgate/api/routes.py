from __future__ import annotations

import json
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from pydantic import ValidationError as PydanticValidationError

from passgate.api.gateway import ActionRegistry, CallContext, GatewayAuthInterceptor
from passgate.api.schemas import (
    CredentialParams,
    EmptyParams,
    Envelope,
    QrSessionParams,
    RefreshTokenParams,
    ResolveTokenParams,
    UpdatePasswordParams,
    VerifyCodeParams,
    validation_failure,
)
from passgate.logging import get_correlation_id, get_logger
from passgate.service.errors import UnauthorizedError
from passgate.service.results import ActionResult
from passgate.service.runtime import Runtime
from passgate.service.tokens import ResolutionStatus

logger = get_logger(__name__)

registry = ActionRegistry()
router = APIRouter(prefix="/api")


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def get_gateway(request: Request) -> GatewayAuthInterceptor:
    return request.app.state.gateway


# credential actions


@registry.action("verifyCode", params=VerifyCodeParams)
async def verify_code(
    runtime: Runtime, ctx: CallContext, params: VerifyCodeParams
) -> ActionResult:
    return await runtime.codes.issue(params.email, params.purpose, client_ip=ctx.client.ip)


@registry.action("register", params=CredentialParams)
async def register(runtime: Runtime, ctx: CallContext, params: CredentialParams) -> ActionResult:
    return await runtime.credentials.register(params.email, params.code, params.password_blob)


@registry.action("login", params=CredentialParams)
async def login(runtime: Runtime, ctx: CallContext, params: CredentialParams) -> ActionResult:
    return await runtime.credentials.login(params.email, params.code, params.password_blob)


@registry.action("forgetPassword", params=CredentialParams)
async def forget_password(
    runtime: Runtime, ctx: CallContext, params: CredentialParams
) -> ActionResult:
    return await runtime.credentials.forget_password(
        params.email, params.code, params.password_blob
    )


@registry.action("updatePassword", params=UpdatePasswordParams, auth=True)
async def update_password(
    runtime: Runtime, ctx: CallContext, params: UpdatePasswordParams
) -> ActionResult:
    return await runtime.credentials.update_password(
        ctx.identity, params.code, params.password_blob
    )


@registry.action("logout", auth=True)
async def logout(runtime: Runtime, ctx: CallContext, params: EmptyParams) -> ActionResult:
    return await runtime.credentials.logout(
        ctx.identity, access_token=ctx.access_token, refresh_token=ctx.refresh_token
    )


# token actions


@registry.action("refreshToken", params=RefreshTokenParams)
async def refresh_token(
    runtime: Runtime, ctx: CallContext, params: RefreshTokenParams
) -> ActionResult:
    # Authenticates by the refresh token itself, so an expired access token
    # does not block it.
    token = params.refresh_token or ctx.refresh_token
    if not token:
        return validation_failure("refresh token is required")
    resolution = await runtime.tokens.refresh(token)
    # TOKEN_EXPIRED tells clients to refresh, so a dead refresh token is a
    # plain 401 that sends them back to login.
    if resolution.status is ResolutionStatus.EXPIRED:
        raise UnauthorizedError("refresh token has expired; log in again")
    if not resolution.ok:
        raise UnauthorizedError("refresh token is not valid")
    pair = resolution.pair
    return ActionResult.success(pair.to_content(), message="token refreshed", issued=pair)


@registry.action("resolveToken", params=ResolveTokenParams)
async def resolve_token(
    runtime: Runtime, ctx: CallContext, params: ResolveTokenParams
) -> ActionResult:
    resolution = await runtime.tokens.resolve(params.token)
    content: dict[str, Any] = {
        "valid": resolution.ok,
        "isExpired": resolution.status is ResolutionStatus.EXPIRED,
    }
    if resolution.identity:
        content["userId"] = resolution.identity.user_id
        content["expiresAt"] = resolution.identity.expires_at
    return ActionResult.success(content)


# QR login actions


@registry.action("qrcode.getKey")
async def qr_get_key(runtime: Runtime, ctx: CallContext, params: EmptyParams) -> ActionResult:
    return await runtime.qr.create_session(ctx.client)


@registry.action("qrcode.status", params=QrSessionParams)
async def qr_status(runtime: Runtime, ctx: CallContext, params: QrSessionParams) -> ActionResult:
    return await runtime.qr.poll_status(params.session_id, ctx.client)


@registry.action("qrcode.scan", params=QrSessionParams, auth=True)
async def qr_scan(runtime: Runtime, ctx: CallContext, params: QrSessionParams) -> ActionResult:
    return await runtime.qr.scan(params.session_id, ctx.device, ctx.user_id)


@registry.action("qrcode.confirm", params=QrSessionParams, auth=True)
async def qr_confirm(runtime: Runtime, ctx: CallContext, params: QrSessionParams) -> ActionResult:
    return await runtime.qr.confirm(params.session_id, ctx.device, ctx.user_id)


@registry.action("qrcode.cancel", params=QrSessionParams, auth=True)
async def qr_cancel(runtime: Runtime, ctx: CallContext, params: QrSessionParams) -> ActionResult:
    return await runtime.qr.cancel(params.session_id, ctx.device, ctx.user_id)


# dispatch


async def _read_params(request: Request) -> Any:
    raw = await request.body()
    if not raw.strip():
        return {}
    try:
        return json.loads(raw)
    except ValueError:
        return None


def _describe_validation_error(exc: PydanticValidationError) -> str:
    first = exc.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ())) or "params"
    return f"{location}: {first.get('msg', 'invalid value')}"


@router.post(
    "/{service}/{version}/{action}",
    response_model=Envelope,
    tags=["actions"],
)
async def dispatch(
    service: str,
    version: str,
    action: str,
    request: Request,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
    gateway: GatewayAuthInterceptor = Depends(get_gateway),
) -> Envelope:
    spec = registry.lookup(service, version, action)
    if spec is None:
        raise HTTPException(status_code=404, detail=f"unknown action {service}.{version}.{action}")

    ctx = await gateway.before_call(request, spec)

    body = await _read_params(request)
    if not isinstance(body, dict):
        result = validation_failure("request body must be a JSON object")
    else:
        try:
            params = spec.params_model.model_validate(body)
        except PydanticValidationError as exc:
            result = validation_failure(_describe_validation_error(exc))
        else:
            result = await spec.handler(runtime, ctx, params)

    gateway.after_call(response, result)
    response.status_code = result.status
    if not result.ok:
        logger.info(
            "action_rejected",
            action=spec.qualified_name,
            result_code=result.code.value,
            status_code=result.status,
        )
    return Envelope.from_result(result, request_id=get_correlation_id())
