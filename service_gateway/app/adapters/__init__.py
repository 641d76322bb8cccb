"""
Adapters package for the Gateway Service.

Contains HTTP client wrappers for the gateway's dependencies (identity
provider, content service). These adapters encapsulate:

- Base URLs and request shapes
- Error handling that maps to shared errors

Keep adapters thin and side-effect free outside of explicit calls.
"""

from .auth_client import AuthClient
from .upstream_client import UpstreamClient

__all__ = [
    "AuthClient",
    "UpstreamClient",
]
