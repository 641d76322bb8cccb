"""
Limiter engine for the Gateway.

Evaluates one request against a fixed counting window per
(subject, endpoint category) pair, with an optional block marker that
outlives the window once a subject goes over budget:

    OPEN --(over budget, block_seconds > 0)--> BLOCKED --(block TTL)--> OPEN

Tiers with ``block_seconds == 0`` never enter BLOCKED; they are rejected for
the rest of the current window only.
"""

from dataclasses import dataclass

from shared.errors import RateLimitError
from shared.logging import get_logger
from .policy import RateLimitPolicy, Tier
from .store import CounterStore

KEY_PREFIX = "ratelimit"
BLOCKED_VALUE = "blocked"

# Share of the budget above which allowed requests are logged
HIGH_USAGE_RATIO = 0.8

logger = get_logger("gateway.ratelimit.engine")


@dataclass(frozen=True)
class Decision:
    """Outcome of an allowed request, used to shape the response headers."""

    subject: str
    tier: Tier
    category: str
    limit: int
    remaining: int
    reset: int

    def headers(self) -> dict:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset),
        }


@dataclass(frozen=True)
class LimitStatus:
    """Read-only view of a subject's budget for one category."""

    category: str
    tier: Tier
    limit: int
    used: int
    remaining: int
    reset: int
    blocked: bool


def counter_key(subject: str, category: str) -> str:
    return f"{KEY_PREFIX}:{subject}:{category}"


def block_key(subject: str, category: str) -> str:
    return f"{KEY_PREFIX}:blocked:{subject}:{category}"


def _positive_ttl(ttl: int, fallback: int) -> int:
    # Store reports -1/-2 when the key has no expiry or vanished
    return ttl if ttl > 0 else fallback


async def evaluate(
    store: CounterStore,
    policy: RateLimitPolicy,
    subject: str,
    tier: Tier,
    category: str,
) -> Decision:
    """Count one request and decide whether it may proceed.

    Returns a ``Decision`` when allowed; raises ``RateLimitError`` when the
    subject is blocked or over budget. Store errors propagate to the caller,
    which decides the failure policy.
    """
    quota = policy.quota_for(tier)
    adjusted_points = policy.adjusted_points(tier, category)
    key = counter_key(subject, category)
    blocked_key = block_key(subject, category)

    if await store.exists(blocked_key):
        block_ttl = _positive_ttl(await store.ttl(blocked_key), quota.block_seconds or quota.window_seconds)
        logger.warning(
            "Rate limit exceeded, subject blocked",
            tier=tier.value,
            category=category,
            retry_after=block_ttl,
        )
        raise RateLimitError(
            limit=adjusted_points,
            remaining=0,
            reset=block_ttl,
            retry_after=block_ttl,
            blocked=True,
        )

    count = await store.increment(key, quota.window_seconds)
    remaining = max(0, adjusted_points - count)
    reset = _positive_ttl(await store.ttl(key), quota.window_seconds)

    if count > adjusted_points:
        if quota.block_seconds > 0:
            await store.set(blocked_key, BLOCKED_VALUE, quota.block_seconds)

        logger.warning(
            "Rate limit exceeded",
            tier=tier.value,
            category=category,
            count=count,
            limit=adjusted_points,
            block_seconds=quota.block_seconds,
        )
        raise RateLimitError(
            limit=adjusted_points,
            remaining=remaining,
            reset=reset,
            retry_after=reset,
            blocked=quota.block_seconds > 0,
        )

    if count > adjusted_points * HIGH_USAGE_RATIO:
        logger.debug(
            "High rate limit usage",
            tier=tier.value,
            category=category,
            count=count,
            limit=adjusted_points,
        )

    return Decision(
        subject=subject,
        tier=tier,
        category=category,
        limit=adjusted_points,
        remaining=remaining,
        reset=reset,
    )


async def peek(
    store: CounterStore,
    policy: RateLimitPolicy,
    subject: str,
    tier: Tier,
    category: str,
) -> LimitStatus:
    """Report the current budget without consuming any of it."""
    quota = policy.quota_for(tier)
    adjusted_points = policy.adjusted_points(tier, category)
    blocked_key = block_key(subject, category)

    if await store.exists(blocked_key):
        block_ttl = _positive_ttl(await store.ttl(blocked_key), quota.block_seconds or quota.window_seconds)
        used = int(await store.get(counter_key(subject, category)) or 0)
        return LimitStatus(
            category=category,
            tier=tier,
            limit=adjusted_points,
            used=used,
            remaining=0,
            reset=block_ttl,
            blocked=True,
        )

    key = counter_key(subject, category)
    used = int(await store.get(key) or 0)
    reset = _positive_ttl(await store.ttl(key), quota.window_seconds)
    return LimitStatus(
        category=category,
        tier=tier,
        limit=adjusted_points,
        used=used,
        remaining=max(0, adjusted_points - used),
        reset=reset,
        blocked=False,
    )


async def reset(store: CounterStore, subject: str, category: str) -> int:
    """Drop the counter and block marker for one subject and category."""
    removed = await store.delete(counter_key(subject, category), block_key(subject, category))
    logger.info("Rate limit reset", subject=subject, category=category, removed=removed)
    return removed
