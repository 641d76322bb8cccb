"""
Identity provider client for Gateway.
"""

import httpx
from typing import Dict, Any, Optional

from shared.logging import get_logger
from shared.errors import AuthenticationError


class AuthClient:
    """Client for verifying bearer tokens with the identity provider."""

    def __init__(self, auth_service_url: str, timeout: float = 5.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.auth_service_url = auth_service_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport
        self.logger = get_logger("gateway.auth_client")

    async def verify_token(self, token: str) -> Dict[str, Any]:
        """Verify a bearer token.

        Returns the provider's verification payload, ``{"valid": bool,
        "user_info": {...}}``. Raises ``AuthenticationError`` when the provider
        cannot be reached or answers with an unexpected status or payload.
        """
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(
                    f"{self.auth_service_url}/auth/verify",
                    json={"token": token}
                )
        except httpx.HTTPError as e:
            self.logger.error("Auth service HTTP error", error=str(e))
            raise AuthenticationError(
                "Auth service unavailable",
                details={"http_error": str(e)}
            ) from e

        if response.status_code != 200:
            raise AuthenticationError(
                f"Auth service error: {response.status_code}",
                details={"status_code": response.status_code}
            )

        try:
            result = response.json()
        except ValueError as e:
            self.logger.error("Auth service returned invalid JSON", error=str(e))
            raise AuthenticationError(
                "Auth service returned an invalid response",
                details={"error": "invalid_json"}
            ) from e

        if not isinstance(result, dict) or not isinstance(result.get("user_info") or {}, dict):
            self.logger.error("Auth service returned an unexpected payload",
                              payload_type=type(result).__name__)
            raise AuthenticationError(
                "Auth service returned an invalid response",
                details={"error": "unexpected_payload"}
            )

        if not result.get("valid"):
            self.logger.warning("Token validation failed", error=result.get("error"))
        return result
