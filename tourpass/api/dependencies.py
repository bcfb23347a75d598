from __future__ import annotations

from typing import Callable, Optional

from fastapi import Depends, Header, Request

from tourpass.api.error_handling import http_error
from tourpass.service.gateway import GatewayFailure, Identity
from tourpass.service.runtime import get_runtime


def client_ip(request: Request) -> Optional[str]:
    """Address used for per-client rate limits and token audit metadata.

    ``X-Forwarded-For`` is only read when the direct peer is a configured
    trusted proxy; the hops are then walked right to left, skipping other
    trusted proxies, so a client cannot pick its own address.
    """
    peer = request.client.host if request.client else None
    trusted = get_runtime().settings.trusted_proxies
    if not peer or peer not in trusted:
        return peer
    forwarded = request.headers.get("x-forwarded-for")
    if not forwarded:
        return peer
    hops = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
    for hop in reversed(hops):
        if hop not in trusted:
            return hop
    return peer


def _gateway_error(failure: GatewayFailure):
    code = "forbidden" if failure.status_code == 403 else "unauthorized"
    headers = {"WWW-Authenticate": "Bearer"} if failure.status_code == 401 else None
    return http_error(
        code,
        failure.message,
        status_code=failure.status_code,
        details={"reason": failure.value},
        headers=headers,
    )


async def require_auth(
    request: Request, authorization: Optional[str] = Header(None)
) -> Identity:
    runtime = get_runtime()
    result = runtime.gateway.authenticate(authorization)
    if isinstance(result, GatewayFailure):
        raise _gateway_error(result)
    request.state.identity = result
    return result


async def optional_auth(
    request: Request, authorization: Optional[str] = Header(None)
) -> Optional[Identity]:
    runtime = get_runtime()
    identity = runtime.gateway.authenticate_optional(authorization)
    request.state.identity = identity
    return identity


def require_role(*roles: str) -> Callable:
    """Dependency factory: authenticated identity whose role is in ``roles``."""
    allowed = frozenset(roles)

    async def _require_role(identity: Identity = Depends(require_auth)) -> Identity:
        result = get_runtime().gateway.authorize(identity, allowed)
        if isinstance(result, GatewayFailure):
            raise _gateway_error(result)
        return result

    return _require_role
