"""
Request-level rate limit enforcement for the Gateway.
"""

from typing import Iterable, Optional

from fastapi import Request, Response

from shared.errors import RateLimitError, StoreUnavailableError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..auth.principal import get_principal
from . import engine
from .engine import Decision
from .identity import resolve_subject, resolve_tier
from .policy import RateLimitPolicy
from .store import CounterStore


class RateLimitGuard:
    """FastAPI dependency applying the limiter engine to every request.

    Allowed requests get the rate limit headers on their response; rejected
    ones raise ``RateLimitError`` for the service exception handler. Any
    other failure is logged and the request proceeds unlimited.
    """

    def __init__(
        self,
        store: CounterStore,
        policy: RateLimitPolicy,
        *,
        trusted_proxy_header: Optional[str] = "X-Forwarded-For",
        exempt_paths: Iterable[str] = (),
        enabled: bool = True,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.store = store
        self.policy = policy
        self.trusted_proxy_header = trusted_proxy_header
        self.exempt_paths = tuple(exempt_paths)
        self.enabled = enabled
        self.metrics = metrics
        self.logger = get_logger("gateway.rate_limit_guard")

    def is_exempt(self, path: str) -> bool:
        return any(path == exempt or path.startswith(exempt.rstrip("/") + "/") for exempt in self.exempt_paths)

    async def check_request(self, request: Request) -> Optional[Decision]:
        """Evaluate ``request``; None means limiting was skipped or failed open."""
        if not self.enabled:
            return None

        path = request.url.path
        if self.is_exempt(path):
            return None

        tier = None
        category = None
        try:
            subject = resolve_subject(request, self.trusted_proxy_header)
            tier = resolve_tier(get_principal(request))
            category = self.policy.resolve_category(path)
            decision = await engine.evaluate(self.store, self.policy, subject, tier, category)
        except RateLimitError:
            self._record(tier, category, "rejected")
            raise
        except StoreUnavailableError as e:
            self.logger.error("Rate limit store unavailable, skipping limits", operation=e.operation, error=e.message)
            self._record_failure()
            return None
        except Exception as e:
            self.logger.error("Error in rate limit guard, skipping limits", error=str(e), exc_info=True)
            self._record_failure()
            return None

        self._record(tier, category, "allowed")
        return decision

    async def __call__(self, request: Request, response: Response) -> None:
        decision = await self.check_request(request)
        if decision is not None:
            response.headers.update(decision.headers())

    def _record(self, tier, category, outcome: str) -> None:
        if self.metrics is not None and tier is not None:
            self.metrics.record_rate_limit_decision(tier.value, category, outcome)

    def _record_failure(self) -> None:
        if self.metrics is not None:
            self.metrics.record_rate_limit_failure()
