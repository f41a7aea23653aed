"""Authentication middleware for JWT and internal service token validation.

Tokens are issued by the auth service; this service only validates them.
The token subject is the ledger account id.
"""

import secrets
from collections.abc import Awaitable, Callable

import structlog
from fastapi import HTTPException, Request, Response
from jose import JWTError, jwt
from starlette.middleware.base import BaseHTTPMiddleware

from credits_service.config import settings

logger = structlog.get_logger()

COOKIE_ACCESS_TOKEN = "access_token"  # noqa: S105


def _create_error_response(
    request: Request, content: str, status_code: int, media_type: str = "application/json"
) -> Response:
    """Create an error response with CORS headers.

    This ensures 401/403 responses include CORS headers so the browser
    can properly read the response instead of blocking it.
    """
    response = Response(content=content, status_code=status_code, media_type=media_type)

    origin = request.headers.get("origin")
    if origin and origin in settings.CORS_ORIGINS:
        response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Access-Control-Allow-Credentials"] = "true"
        response.headers["Access-Control-Allow-Headers"] = (
            "Authorization, Content-Type, Accept, Origin, X-Requested-With, X-Request-ID"
        )

    return response


# Paths that don't require authentication
# Use tuples: (path, is_prefix) where is_prefix=True allows subpaths
PUBLIC_PATHS: list[tuple[str, bool]] = [
    ("/health", False),
    ("/metrics", False),
    ("/api/credits/packages", False),  # Public catalog
    ("/api/webhooks", True),  # Stripe webhooks (signature verified)
]

INTERNAL_TOKEN_PATHS: list[tuple[str, bool]] = [
    ("/api/admin", True),
]

# Workflow engine reports usage with the service token and an explicit account id
INTERNAL_OR_USER_PATHS: list[tuple[str, bool]] = [
    ("/api/credits/usage/track", False),
]


def _matches(request_path: str, paths: list[tuple[str, bool]]) -> bool:
    """Match exactly, or by prefix with a proper path boundary."""
    for path, is_prefix in paths:
        if is_prefix:
            if request_path == path or request_path.startswith((path + "/", path + "?")):
                return True
        elif request_path == path:
            return True
    return False


def _is_public_path(request_path: str) -> bool:
    return _matches(request_path, PUBLIC_PATHS)


def _is_internal_token_path(request_path: str) -> bool:
    return _matches(request_path, INTERNAL_TOKEN_PATHS)


def _is_internal_or_user_path(request_path: str) -> bool:
    return _matches(request_path, INTERNAL_OR_USER_PATHS)


def _verify_internal_service_token(request: Request) -> bool:
    """Validate internal service token from headers."""
    expected_token = settings.INTERNAL_SERVICE_TOKEN
    if not expected_token:
        logger.error(
            "INTERNAL_SERVICE_TOKEN not configured - rejecting service request",
            environment=settings.ENVIRONMENT,
        )
        return False

    header_token = request.headers.get("X-Internal-Service-Token")
    if header_token and secrets.compare_digest(header_token, expected_token):
        return True

    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header[7:]
        if secrets.compare_digest(token, expected_token):
            return True

    return False


class AuthMiddleware(BaseHTTPMiddleware):
    """JWT authentication middleware."""

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        """Process request and validate the caller's credentials."""
        # Skip auth for CORS preflight requests
        if request.method == "OPTIONS":
            return await call_next(request)

        path = request.url.path

        if _is_public_path(path):
            return await call_next(request)

        if _is_internal_token_path(path):
            if not _verify_internal_service_token(request):
                return _create_error_response(request, '{"detail": "Invalid service token"}', 401)
            request.state.internal_service = True
            return await call_next(request)

        # Allow internal token OR user JWT for shared endpoints
        if _is_internal_or_user_path(path) and _verify_internal_service_token(request):
            request.state.internal_service = True
            return await call_next(request)

        # Prefer httpOnly cookie, fall back to Authorization header
        token = request.cookies.get(COOKIE_ACCESS_TOKEN)
        if not token:
            auth_header = request.headers.get("Authorization")
            if auth_header and auth_header.startswith("Bearer "):
                parts = auth_header.split(" ")
                if len(parts) == 2:
                    token = parts[1]

        if not token:
            return _create_error_response(request, '{"detail": "Authentication required"}', 401)

        try:
            payload = jwt.decode(
                token,
                settings.JWT_SECRET_KEY,
                algorithms=[settings.JWT_ALGORITHM],
            )
        except JWTError as e:
            logger.warning("JWT validation failed", error=str(e))
            return _create_error_response(request, '{"detail": "Invalid or expired token"}', 401)

        account_id = payload.get("sub")
        if not account_id:
            logger.warning("JWT payload missing account ID")
            return _create_error_response(
                request, '{"detail": "Invalid token - missing account ID"}', 401
            )

        request.state.user_id = str(account_id)
        request.state.internal_service = False
        return await call_next(request)


def get_current_user_id(request: Request) -> str:
    """Get the authenticated account id from request state.

    Raises:
        HTTPException: If the request is not authenticated as a user
    """
    user_id = getattr(request.state, "user_id", None)
    if not user_id:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return str(user_id)


def is_internal_service(request: Request) -> bool:
    """True when the request authenticated with the internal service token."""
    return bool(getattr(request.state, "internal_service", False))
