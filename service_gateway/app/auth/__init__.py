"""
Authentication helpers for the Gateway service.
"""

from .principal import ADMIN_ROLES, Principal, get_principal

__all__ = [
    "ADMIN_ROLES",
    "Principal",
    "get_principal",
]
