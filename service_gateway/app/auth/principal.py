"""
Authenticated principal attached to gateway requests.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import Request

ADMIN_ROLES = frozenset({"ADMIN", "SUPER_ADMIN"})


@dataclass(frozen=True)
class Principal:
    """Caller identity as reported by the identity provider."""

    id: str
    role: Optional[str] = None
    subscription_type: Optional[str] = None
    email: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return bool(self.role) and self.role.upper() in ADMIN_ROLES

    @classmethod
    def from_user_info(cls, user_info: Dict[str, Any]) -> Optional["Principal"]:
        """Build a principal from the identity provider's ``user_info`` payload.

        Returns None when the payload carries no usable user id.
        """
        user_id = user_info.get("user_id") or user_info.get("id")
        if user_id is None or str(user_id) == "":
            return None
        return cls(
            id=str(user_id),
            role=user_info.get("role"),
            subscription_type=user_info.get("subscription_type") or user_info.get("subscriptionType"),
            email=user_info.get("email"),
        )


def get_principal(request: Request) -> Optional[Principal]:
    """Return the principal set by the auth middleware, if any."""
    principal = getattr(request.state, "principal", None)
    return principal if isinstance(principal, Principal) else None
