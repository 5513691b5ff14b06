from __future__ import annotations

from typing import Iterable, List, NoReturn, Optional, Type

from fastapi import Depends, Header, Request

from authcore.logging import get_logger, set_correlation_id
from authcore.service.auth import AuthContext
from authcore.service.errors import (
    AuthenticationFailure,
    AuthorizationFailure,
    AuthRequired,
    PermissionDenied,
    RoleDenied,
)
from authcore.service.runtime import get_runtime
from authcore.storage.models import EventType, Severity

logger = get_logger(__name__)

ADMIN_ROLE = "admin"


def client_ip(request: Request) -> Optional[str]:
    """Address of the caller as seen by the nearest trusted proxy.

    Each trusted proxy appends the peer it received the request from, so the
    client is ``trusted_proxy_hops`` entries from the right of
    ``X-Forwarded-For``. Anything further left is client supplied.
    """
    hops = get_runtime().settings.trusted_proxy_hops
    forwarded = request.headers.get("X-Forwarded-For")
    if hops and forwarded:
        entries = [e.strip() for e in forwarded.split(",") if e.strip()]
        if entries:
            return entries[-min(hops, len(entries))]
    return request.client.host if request.client else None


def _extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def authenticate(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> AuthContext:
    set_correlation_id(request.headers.get("X-Request-ID"))
    token = _extract_bearer(authorization)
    if not token:
        raise AuthRequired("Authentication required")
    return await get_runtime().auth.authenticate(token)


async def optional_authenticate(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> Optional[AuthContext]:
    """Like ``authenticate`` but yields None instead of rejecting the request."""
    if not _extract_bearer(authorization):
        return None
    try:
        return await authenticate(request, authorization)
    except AuthenticationFailure as exc:
        logger.info("optional_auth_ignored", error_code=exc.error_code)
        return None


async def require_two_factor(
    request: Request,
    ctx: AuthContext = Depends(authenticate),
    two_factor_token: Optional[str] = Header(None, alias="X-Two-Factor-Token"),
    backup_code: Optional[str] = Header(None, alias="X-Backup-Code"),
) -> AuthContext:
    await get_runtime().auth.verify_second_factor(
        ctx.user_id,
        two_factor_token,
        backup_code,
        ip_addr=client_ip(request),
        user_agent=request.headers.get("User-Agent"),
    )
    return ctx


async def _deny(
    request: Request,
    ctx: AuthContext,
    error_cls: Type[AuthorizationFailure],
    message: str,
    required: List[str],
) -> NoReturn:
    await get_runtime().auditor.log(
        EventType.PERMISSION_DENIED,
        Severity.MEDIUM,
        user_id=ctx.user_id,
        ip_addr=client_ip(request),
        user_agent=request.headers.get("User-Agent"),
        metadata={
            "path": request.url.path,
            "method": request.method,
            "required": required,
            "check": error_cls.error_code,
        },
    )
    raise error_cls(message, detail={"required": required})


def require_permission(permission: str):
    async def dependency(request: Request, ctx: AuthContext = Depends(authenticate)) -> AuthContext:
        if not get_runtime().permissions.has(ctx.principal, permission):
            await _deny(request, ctx, PermissionDenied, "Insufficient permissions", [permission])
        return ctx

    return dependency


def require_any_permission(permissions: Iterable[str]):
    required = list(permissions)

    async def dependency(request: Request, ctx: AuthContext = Depends(authenticate)) -> AuthContext:
        if not get_runtime().permissions.has_any(ctx.principal, required):
            await _deny(request, ctx, PermissionDenied, "Insufficient permissions", required)
        return ctx

    return dependency


def require_all_permissions(permissions: Iterable[str]):
    required = list(permissions)

    async def dependency(request: Request, ctx: AuthContext = Depends(authenticate)) -> AuthContext:
        if not get_runtime().permissions.has_all(ctx.principal, required):
            await _deny(request, ctx, PermissionDenied, "Insufficient permissions", required)
        return ctx

    return dependency


def require_role(role: str):
    async def dependency(request: Request, ctx: AuthContext = Depends(authenticate)) -> AuthContext:
        if not get_runtime().permissions.has_role(ctx.principal, role):
            await _deny(request, ctx, RoleDenied, "Insufficient role", [role])
        return ctx

    return dependency


def require_any_role(roles: Iterable[str]):
    required = list(roles)

    async def dependency(request: Request, ctx: AuthContext = Depends(authenticate)) -> AuthContext:
        if not get_runtime().permissions.has_any_role(ctx.principal, required):
            await _deny(request, ctx, RoleDenied, "Insufficient role", required)
        return ctx

    return dependency


def require_self_or_admin(param: str = "user_id"):
    """Allow the user named by the ``param`` path parameter, or any admin."""

    async def dependency(request: Request, ctx: AuthContext = Depends(authenticate)) -> AuthContext:
        target = request.path_params.get(param)
        if target == ctx.user_id or get_runtime().permissions.has_role(ctx.principal, ADMIN_ROLE):
            return ctx
        await _deny(request, ctx, PermissionDenied, "Access denied", [f"self:{param}", ADMIN_ROLE])

    return dependency


def auth_rate_limit(endpoint_class: str = "default"):
    """Per-client-IP limit using the configured rule for ``endpoint_class``."""

    async def dependency(request: Request) -> None:
        runtime = get_runtime()
        max_attempts, window_minutes = runtime.settings.rate_limit_rule(endpoint_class)
        key = f"{endpoint_class}:{client_ip(request) or 'unknown'}"
        await runtime.rate_limiter.enforce(key, max_attempts, window_minutes)

    return dependency
