"""Authentication dependencies for the HTTP layer."""

from typing import Optional

from fastapi import Header, Query, Request

from orchestrator.exceptions import InvalidTokenError
from orchestrator.security import Principal
from orchestrator.service_locator import get_runtime

BEARER_PREFIX = "Bearer "


def _principal_from_header(authorization: Optional[str]) -> Principal:
    if not authorization:
        raise InvalidTokenError("Missing authorization header")
    if not authorization.startswith(BEARER_PREFIX):
        raise InvalidTokenError("Invalid authorization header format")
    token = authorization[len(BEARER_PREFIX):].strip()
    if not token:
        raise InvalidTokenError("Missing access token")
    return get_runtime().token_manager.verify(token)


async def get_current_principal(request: Request, authorization: Optional[str] = Header(default=None)) -> Principal:
    """
    FastAPI dependency to validate a bearer JWT and extract the caller.

    Args:
        authorization: Authorization header value (format: "Bearer <jwt>")

    Returns:
        Principal of the authenticated caller

    Raises:
        InvalidTokenError: Malformed, expired, revoked or badly signed token
    """
    principal = _principal_from_header(authorization)
    request.state.user_id = principal.user_id
    return principal


async def get_rate_limited_principal(
    request: Request, authorization: Optional[str] = Header(default=None)
) -> Principal:
    """Like `get_current_principal`, but also counts the request against the caller's rate limit."""
    principal = await get_current_principal(request, authorization)
    get_runtime().rate_limiter.check(principal.user_id, action=request.url.path)
    return principal


async def get_download_principal(
    request: Request,
    file_id: str,
    authorization: Optional[str] = Header(default=None),
    user: Optional[str] = Query(default=None),
    expires: Optional[int] = Query(default=None),
    signature: Optional[str] = Query(default=None),
) -> Principal:
    """
    Accept either a bearer token or a signed download link
    (`user`, `expires` and `signature` query parameters).
    """
    if authorization:
        return await get_current_principal(request, authorization)
    if user is None or expires is None or signature is None:
        raise InvalidTokenError("Missing bearer token or download signature")
    principal = get_runtime().download_signer.verify(file_id, user, expires, signature)
    request.state.user_id = principal.user_id
    return principal
