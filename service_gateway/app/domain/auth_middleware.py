"""
Authentication middleware for Gateway.

Resolves the optional caller principal before any route dependency runs.
Requests without a valid bearer token continue anonymously; routes that need
an identity declare it through ``require_roles``.
"""

from typing import Callable, Optional

from fastapi import Request

from shared.errors import AuthenticationError, AuthorizationError
from shared.logging import get_logger, set_user_context
from ..adapters.auth_client import AuthClient
from ..auth.principal import Principal, get_principal


class AuthMiddleware:
    """Authentication middleware for Gateway."""

    def __init__(self, auth_client: AuthClient):
        self.auth_client = auth_client
        self.logger = get_logger("gateway.auth_middleware")

    async def authenticate_request(self, request: Request) -> Optional[Principal]:
        """Attach the caller principal to ``request.state`` when the token verifies."""
        request.state.principal = None

        auth_header = request.headers.get("Authorization")
        if not auth_header:
            return None

        if not auth_header.startswith("Bearer "):
            self.logger.debug("Ignoring non-bearer authorization header")
            return None

        token = auth_header[7:].strip()
        if not token:
            return None

        try:
            auth_result = await self.auth_client.verify_token(token)
        except AuthenticationError as e:
            self.logger.warning("Token verification unavailable, continuing anonymously", error=e.message)
            return None

        if not auth_result.get("valid"):
            return None

        principal = Principal.from_user_info(auth_result.get("user_info") or {})
        if principal is None:
            self.logger.warning("Verified token carried no user id")
            return None

        request.state.principal = principal
        set_user_context(principal.id)
        self.logger.debug("Request authenticated", user_id=principal.id, role=principal.role)
        return principal


def require_roles(*roles: str) -> Callable[[Request], Principal]:
    """FastAPI dependency factory rejecting callers without one of ``roles``."""
    allowed = {role.upper() for role in roles}

    def _dependency(request: Request) -> Principal:
        principal = get_principal(request)
        if principal is None:
            raise AuthenticationError("Authentication required")
        if not principal.role or principal.role.upper() not in allowed:
            raise AuthorizationError(
                "Insufficient role",
                details={"required": sorted(allowed)}
            )
        return principal

    return _dependency
