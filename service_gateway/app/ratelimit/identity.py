"""
Rate limit subject and tier resolution.
"""

from typing import Optional

from fastapi import Request

from ..auth.principal import Principal, get_principal
from .policy import Tier

UNKNOWN_ADDRESS = "unknown"


def resolve_subject(request: Request, trusted_proxy_header: Optional[str] = "X-Forwarded-For") -> str:
    """Return ``user:<id>`` for authenticated callers, else ``ip:<address>``.

    The user id always wins over any address so a user keeps one budget
    across networks. Never raises.
    """
    principal = get_principal(request)
    if principal is not None and principal.id:
        return f"user:{principal.id}"

    return f"ip:{client_address(request, trusted_proxy_header)}"


def client_address(request: Request, trusted_proxy_header: Optional[str] = "X-Forwarded-For") -> str:
    """Extract the caller IP from the trusted proxy header or the socket."""
    if trusted_proxy_header:
        forwarded = request.headers.get(trusted_proxy_header)
        if isinstance(forwarded, str) and forwarded.strip():
            first = forwarded.split(",")[0].strip()
            if first:
                return first

    client = getattr(request, "client", None)
    host = getattr(client, "host", None) if client else None
    if isinstance(host, str) and host:
        return host

    return UNKNOWN_ADDRESS


def resolve_tier(principal: Optional[Principal]) -> Tier:
    """Map the caller to exactly one tier; admin roles beat subscriptions."""
    if principal is None:
        return Tier.ANONYMOUS

    if principal.is_admin:
        return Tier.ADMIN

    subscription = (principal.subscription_type or "").upper()
    if subscription == "PREMIUM":
        return Tier.PREMIUM
    if subscription == "PRO":
        return Tier.BASIC
    return Tier.FREE
