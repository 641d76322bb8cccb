"""
Content API client for Gateway.

Forwards rate-limited API traffic to the song/chords content service.
"""

from typing import Iterable, List, Optional, Tuple

import httpx

from shared.logging import get_logger
from shared.errors import ExternalServiceError

# Headers that must not be copied between hops
HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
    "host",
    "content-length",
    "content-encoding",
})


def _forwardable(headers: Iterable[Tuple[str, str]]) -> List[Tuple[str, str]]:
    # Repeated headers such as Set-Cookie stay separate pairs
    return [(name, value) for name, value in headers if name.lower() not in HOP_BY_HOP_HEADERS]


class UpstreamClient:
    """Client for the content service sitting behind the gateway."""

    def __init__(self, upstream_url: str, timeout: float = 10.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = upstream_url.rstrip("/")
        self.logger = get_logger("gateway.upstream_client")
        self._client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=transport)

    async def close(self) -> None:
        await self._client.aclose()

    async def forward(
        self,
        method: str,
        path: str,
        *,
        query: str = "",
        headers: Optional[Iterable[Tuple[str, str]]] = None,
        body: bytes = b"",
    ) -> Tuple[int, bytes, List[Tuple[str, str]]]:
        """Send one request upstream and return ``(status, body, header pairs)``."""
        url = f"{path}?{query}" if query else path
        try:
            response = await self._client.request(
                method,
                url,
                headers=_forwardable(headers or ()),
                content=body or None,
            )
        except httpx.HTTPError as e:
            self.logger.error("Content service HTTP error", method=method, path=path, error=str(e))
            raise ExternalServiceError(
                "content",
                "Content service unavailable",
                details={"http_error": str(e)}
            ) from e

        if response.status_code >= 500:
            self.logger.warning("Content service error response", method=method, path=path,
                                status_code=response.status_code)
        return response.status_code, response.content, _forwardable(response.headers.multi_items())
