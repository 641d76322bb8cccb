"""
API Gateway service for the Songbook API.
"""

from typing import Dict, Optional

from fastapi import Depends, Query, Request, Response

from shared.base_service import BaseService
from shared.config import ServiceConfig, get_config
from shared.errors import ExternalServiceError
from .adapters.auth_client import AuthClient
from .adapters.upstream_client import UpstreamClient
from .auth.principal import ADMIN_ROLES, Principal, get_principal
from .domain.auth_middleware import AuthMiddleware, require_roles
from .ratelimit import engine
from .ratelimit.guard import RateLimitGuard
from .ratelimit.identity import resolve_subject, resolve_tier
from .ratelimit.policy import load_policy
from .ratelimit.store import CounterStore, InMemoryCounterStore, RedisCounterStore

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE"]


class GatewayService(BaseService):
    """API Gateway service implementation."""

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        *,
        store: Optional[CounterStore] = None,
        auth_client: Optional[AuthClient] = None,
        upstream_client: Optional[UpstreamClient] = None,
    ):
        super().__init__("gateway", 8000, config or get_config("gateway", 8000))

        self.policy = load_policy(self.config.rate_limits_file)
        self.store = store or self._create_store()
        self.auth_client = auth_client or AuthClient(
            self.config.auth_service_url,
            timeout=self.config.auth_timeout_seconds,
        )
        self.auth_middleware = AuthMiddleware(self.auth_client)
        self.upstream_client = upstream_client
        if self.upstream_client is None and self.config.upstream_url:
            self.upstream_client = UpstreamClient(
                self.config.upstream_url,
                timeout=self.config.upstream_timeout_seconds,
            )

        self.rate_limit_guard = RateLimitGuard(
            self.store,
            self.policy,
            trusted_proxy_header=self.config.trusted_proxy_header,
            exempt_paths=self.config.rate_limit_exempt_paths,
            enabled=self.config.rate_limit_enabled,
            metrics=self.metrics,
        )

        self._setup_gateway_routes()

        # Expose service instance via app state for introspection/testing
        self.app.state.gateway_service = self

        self.logger.info(
            "Gateway configured",
            rate_limit_enabled=self.config.rate_limit_enabled,
            rate_limit_store=self.config.rate_limit_store,
            upstream=bool(self.upstream_client),
        )

    async def _shutdown(self):
        await self.store.close()
        if self.upstream_client is not None:
            await self.upstream_client.close()

    def _create_store(self) -> CounterStore:
        if self.config.rate_limit_store == "memory":
            return InMemoryCounterStore()
        return RedisCounterStore(self.config.redis_url, timeout_seconds=self.config.redis_timeout_seconds)

    def _setup_middleware(self):
        """Authenticate before rate limiting; registered innermost."""

        @self.app.middleware("http")
        async def authenticate(request: Request, call_next):
            await self.auth_middleware.authenticate_request(request)
            return await call_next(request)

        super()._setup_middleware()

    async def _check_dependencies(self) -> Dict[str, str]:
        name = "redis" if isinstance(self.store, RedisCounterStore) else "store"
        healthy = await self.store.ping()
        return {name: "ok" if healthy else "error"}

    def _setup_gateway_routes(self):
        """Set up gateway-specific routes."""
        rate_limited = [Depends(self.rate_limit_guard)]

        @self.app.get("/ping")
        async def ping():
            return {"status": "ok"}

        @self.app.get("/api/rate-limit/status", dependencies=rate_limited)
        async def rate_limit_status(
            request: Request,
            path: str = Query("/api", description="API path whose budget to report."),
        ):
            """Report the caller's budget for ``path`` without consuming it."""
            subject = resolve_subject(request, self.config.trusted_proxy_header)
            tier = resolve_tier(get_principal(request))
            category = self.policy.resolve_category(path)
            status = await engine.peek(self.store, self.policy, subject, tier, category)
            return {
                "tier": status.tier.value,
                "category": status.category,
                "limit": status.limit,
                "used": status.used,
                "remaining": status.remaining,
                "reset_in_seconds": status.reset,
                "blocked": status.blocked,
            }

        @self.app.delete("/api/admin/rate-limits", dependencies=rate_limited)
        async def reset_rate_limit(
            subject: str = Query(..., min_length=1, description="Subject key, e.g. user:42 or ip:10.0.0.1"),
            path: str = Query("/api", description="API path whose category to reset."),
            admin: Principal = Depends(require_roles(*ADMIN_ROLES)),
        ):
            """Clear a subject's counter and block marker for one category."""
            category = self.policy.resolve_category(path)
            removed = await engine.reset(self.store, subject, category)
            self.logger.info("Rate limit reset by admin", admin_id=admin.id, category=category)
            return {"subject": subject, "category": category, "removed": removed}

        @self.app.api_route("/api/{path:path}", methods=PROXY_METHODS, dependencies=rate_limited)
        async def proxy(path: str, request: Request, response: Response):
            """Forward rate-limited traffic to the content service."""
            if self.upstream_client is None:
                raise ExternalServiceError("content", "No content service configured")

            status_code, body, headers = await self.upstream_client.forward(
                request.method,
                request.url.path,
                query=request.url.query,
                headers=request.headers.items(),
                body=await request.body(),
            )
            proxied = Response(content=body, status_code=status_code)
            for name, value in headers:
                proxied.headers.append(name, value)
            for name, value in response.headers.items():
                if name.lower().startswith("x-ratelimit-"):
                    proxied.headers[name] = value
            return proxied


def create_app():
    """Create FastAPI app instance."""
    return GatewayService().app


def main():
    """Run the gateway with configuration from the environment."""
    GatewayService().run()


if __name__ == "__main__":
    main()
