from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterator, Optional, Tuple, Type

from fastapi import Request, Response

from passgate.api.schemas import ActionParams, EmptyParams
from passgate.logging import get_logger
from passgate.service.errors import (
    IpBlockedError,
    RateLimitedError,
    ServiceError,
    TokenExpiredError,
    UnauthorizedError,
    UserNotLoggedInError,
)
from passgate.service.qrcode import ClientFingerprint, DeviceFingerprint
from passgate.service.results import ActionResult
from passgate.service.tokens import Identity, ResolutionStatus, TokenPair, TokenService
from passgate.storage.cache import Cache

logger = get_logger(__name__)

ACCESS_COOKIE = "ACCESS_TOKEN"
REFRESH_COOKIE = "REFRESH_TOKEN"
DEVICE_ID_HEADER = "X-Device-Id"
DEVICE_TYPE_HEADER = "X-Device-Type"


def blocklist_key(ip: str) -> str:
    return f"ip_blocklist:{ip}"


@dataclass
class CallContext:
    """Per-request state handed to action handlers."""

    client: ClientFingerprint
    device: DeviceFingerprint
    identity: Optional[Identity] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None

    @property
    def user_id(self) -> Optional[str]:
        return self.identity.user_id if self.identity else None


Handler = Callable[[Any, CallContext, Any], Awaitable[ActionResult]]


@dataclass(frozen=True)
class ActionSpec:
    service: str
    version: str
    name: str
    handler: Handler
    params_model: Type[ActionParams] = EmptyParams
    auth: bool = False

    @property
    def qualified_name(self) -> str:
        return f"{self.service}.{self.version}.{self.name}"


class ActionRegistry:
    """Maps ``(service, version, action)`` to a handler and its metadata."""

    def __init__(self) -> None:
        self._actions: Dict[Tuple[str, str, str], ActionSpec] = {}

    def register(self, spec: ActionSpec) -> ActionSpec:
        key = (spec.service, spec.version, spec.name)
        if key in self._actions:
            raise ValueError(f"action {spec.qualified_name} registered twice")
        self._actions[key] = spec
        return spec

    def action(
        self,
        name: str,
        *,
        params: Type[ActionParams] = EmptyParams,
        auth: bool = False,
        service: str = "auth",
        version: str = "v1",
    ) -> Callable[[Handler], Handler]:
        def decorator(handler: Handler) -> Handler:
            self.register(
                ActionSpec(
                    service=service,
                    version=version,
                    name=name,
                    handler=handler,
                    params_model=params,
                    auth=auth,
                )
            )
            return handler

        return decorator

    def lookup(self, service: str, version: str, name: str) -> Optional[ActionSpec]:
        return self._actions.get((service, version, name))

    def __iter__(self) -> Iterator[ActionSpec]:
        return iter(self._actions.values())


class GatewayAuthInterceptor:
    """Authorization in front of every routed action.

    ``before_call`` enforces the action's ``auth`` flag and attaches the
    caller's identity; ``after_call`` turns an issued token pair into the
    session cookie pair or clears it on logout; ``on_error`` feeds rate-limit
    failures into the IP blocklist.
    """

    def __init__(
        self,
        tokens: TokenService,
        cache: Cache,
        *,
        cookie_secure: bool = True,
        blocklist_enabled: bool = False,
        blocklist_ttl_seconds: int = 3600,
    ) -> None:
        self.tokens = tokens
        self.cache = cache
        self.cookie_secure = cookie_secure
        self.blocklist_enabled = blocklist_enabled
        self.blocklist_ttl_seconds = blocklist_ttl_seconds

    @staticmethod
    def client_fingerprint(request: Request) -> ClientFingerprint:
        return ClientFingerprint(
            ip=request.client.host if request.client else None,
            user_agent=request.headers.get("User-Agent", ""),
        )

    @staticmethod
    def device_fingerprint(request: Request) -> DeviceFingerprint:
        return DeviceFingerprint(
            device_id=request.headers.get(DEVICE_ID_HEADER, "").strip(),
            device_type=request.headers.get(DEVICE_TYPE_HEADER, "").strip(),
        )

    @staticmethod
    def extract_token(request: Request) -> Optional[str]:
        """Cookie first, then ``Authorization: Bearer``."""
        cookie_token = request.cookies.get(ACCESS_COOKIE)
        if cookie_token:
            return cookie_token
        authorization = request.headers.get("Authorization")
        if not authorization:
            return None
        scheme, _, credentials = authorization.partition(" ")
        if scheme.lower() != "bearer" or not credentials.strip():
            return None
        return credentials.strip()

    async def before_call(self, request: Request, spec: ActionSpec) -> CallContext:
        client = self.client_fingerprint(request)
        if self.blocklist_enabled and client.ip:
            if await self.cache.exists(blocklist_key(client.ip)):
                raise IpBlockedError("too many requests from this address")

        ctx = CallContext(
            client=client,
            device=self.device_fingerprint(request),
            access_token=self.extract_token(request),
            refresh_token=request.cookies.get(REFRESH_COOKIE),
        )
        if not spec.auth:
            return ctx

        if not ctx.access_token:
            raise UserNotLoggedInError("user is not logged in")
        resolution = await self.tokens.resolve(ctx.access_token)
        if resolution.status is ResolutionStatus.EXPIRED:
            raise TokenExpiredError("access token has expired; refresh it")
        if not resolution.ok:
            logger.warning(
                "gateway_token_rejected", action=spec.qualified_name, client_ip=client.ip
            )
            raise UnauthorizedError("access token is not valid")
        ctx.identity = resolution.identity
        return ctx

    def after_call(self, response: Response, result: ActionResult) -> None:
        if result.issued is not None:
            self.set_session_cookies(response, result.issued)
        elif result.clear_cookies:
            self.clear_session_cookies(response)

    def set_session_cookies(self, response: Response, pair: TokenPair) -> None:
        response.set_cookie(
            ACCESS_COOKIE,
            pair.access_token,
            max_age=pair.access_ttl,
            httponly=True,
            secure=self.cookie_secure,
            samesite="strict",
            path="/",
        )
        response.set_cookie(
            REFRESH_COOKIE,
            pair.refresh_token,
            max_age=pair.refresh_ttl,
            httponly=True,
            secure=self.cookie_secure,
            samesite="strict",
            path="/",
        )

    def clear_session_cookies(self, response: Response) -> None:
        for name in (ACCESS_COOKIE, REFRESH_COOKIE):
            response.delete_cookie(
                name,
                path="/",
                httponly=True,
                secure=self.cookie_secure,
                samesite="strict",
            )

    async def on_error(self, request: Request, exc: ServiceError) -> None:
        if not isinstance(exc, RateLimitedError) or isinstance(exc, IpBlockedError):
            return
        ip = request.client.host if request.client else None
        logger.warning("ip_rate_limited", client_ip=ip, path=request.url.path)
        if self.blocklist_enabled and ip:
            await self.cache.set(blocklist_key(ip), "rate_limited", self.blocklist_ttl_seconds)
