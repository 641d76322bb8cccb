"""
Domain utilities for the Gateway Service.

Includes cross-cutting middleware and request processing helpers that do
not belong to adapters or transport-specific layers.
"""

from .auth_middleware import AuthMiddleware, require_roles

__all__ = [
    "AuthMiddleware",
    "require_roles",
]
