"""
Rate limiting package for the Gateway.

Holds the tiered window limiter: policy tables, subject/tier resolution,
counter stores and the request guard enforcing per-subject budgets with
block escalation.
"""

from .engine import Decision, LimitStatus, evaluate, peek, reset
from .guard import RateLimitGuard
from .identity import resolve_subject, resolve_tier
from .policy import Quota, RateLimitPolicy, Tier, build_policy, load_policy
from .store import CounterStore, InMemoryCounterStore, RedisCounterStore

__all__ = [
    "CounterStore",
    "Decision",
    "InMemoryCounterStore",
    "LimitStatus",
    "Quota",
    "RateLimitGuard",
    "RateLimitPolicy",
    "RedisCounterStore",
    "Tier",
    "build_policy",
    "evaluate",
    "load_policy",
    "peek",
    "reset",
    "resolve_subject",
    "resolve_tier",
]
