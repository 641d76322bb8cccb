"""
Rate limit policy tables for the Gateway.

Maps subscription/role tiers to quotas and request path prefixes to
sensitivity multipliers. Policies are immutable once built; a YAML file can
override the defaults at startup.
"""

import math
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Dict, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from shared.errors import ConfigurationError


class Tier(str, Enum):
    """Rate limit tier derived from authentication state and subscription."""

    ANONYMOUS = "anonymous"
    FREE = "free"
    BASIC = "basic"
    PREMIUM = "premium"
    ADMIN = "admin"


@dataclass(frozen=True)
class Quota:
    """Point budget per window, with an optional block penalty."""

    points: int
    window_seconds: int
    block_seconds: int = 0


DEFAULT_CATEGORY = "/api"

DEFAULT_TIER_QUOTAS: Mapping[Tier, Quota] = MappingProxyType({
    Tier.ANONYMOUS: Quota(points=30, window_seconds=60, block_seconds=60),
    Tier.FREE: Quota(points=60, window_seconds=60, block_seconds=30),
    Tier.BASIC: Quota(points=120, window_seconds=60, block_seconds=0),
    Tier.PREMIUM: Quota(points=240, window_seconds=60, block_seconds=0),
    Tier.ADMIN: Quota(points=1000, window_seconds=60, block_seconds=0),
})

# Multipliers applied to a tier's points for paths under each prefix
DEFAULT_ENDPOINT_SENSITIVITY: Mapping[str, float] = MappingProxyType({
    "/api/auth": 0.5,
    "/api/songs": 1.0,
    "/api/artists": 1.0,
    "/api/comments": 0.7,
    "/api/admin": 0.3,
    "/api/chord-diagrams": 2.0,
})


@dataclass(frozen=True)
class RateLimitPolicy:
    """Immutable tier and endpoint tables consulted by the limiter engine."""

    tier_quotas: Mapping[Tier, Quota] = field(default_factory=lambda: DEFAULT_TIER_QUOTAS)
    endpoint_sensitivity: Mapping[str, float] = field(default_factory=lambda: DEFAULT_ENDPOINT_SENSITIVITY)
    default_category: str = DEFAULT_CATEGORY
    _prefixes: tuple = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        missing = [tier.value for tier in Tier if tier not in self.tier_quotas]
        if missing:
            raise ConfigurationError(
                "Rate limit policy is missing tiers",
                details={"missing": missing}
            )
        object.__setattr__(self, "tier_quotas", MappingProxyType(dict(self.tier_quotas)))
        object.__setattr__(self, "endpoint_sensitivity", MappingProxyType(dict(self.endpoint_sensitivity)))
        # Longest first so the first match is the most specific one
        object.__setattr__(
            self,
            "_prefixes",
            tuple(sorted(self.endpoint_sensitivity, key=len, reverse=True)),
        )

    def quota_for(self, tier: Tier) -> Quota:
        return self.tier_quotas[tier]

    def resolve_category(self, path: str) -> str:
        """Return the longest configured prefix matching ``path``."""
        for prefix in self._prefixes:
            if path.startswith(prefix):
                return prefix
        return self.default_category

    def sensitivity(self, category: str) -> float:
        return self.endpoint_sensitivity.get(category, 1.0)

    def adjusted_points(self, tier: Tier, category: str) -> int:
        quota = self.quota_for(tier)
        return max(1, math.floor(quota.points * self.sensitivity(category)))


class _QuotaOverride(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    points: int = Field(ge=1)
    duration: int = Field(ge=1)
    block_duration: int = Field(default=0, ge=0, alias="blockDuration")


class _PolicyFile(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    tiers: Dict[Tier, _QuotaOverride] = Field(default_factory=dict)
    endpoints: Dict[str, float] = Field(default_factory=dict)
    default_category: Optional[str] = Field(default=None, alias="defaultCategory")


def build_policy(overrides: Optional[dict] = None) -> RateLimitPolicy:
    """Merge ``overrides`` (same shape as the YAML file) onto the defaults."""
    if not overrides:
        return RateLimitPolicy()

    try:
        parsed = _PolicyFile.model_validate(overrides)
    except ValidationError as e:
        raise ConfigurationError(
            "Invalid rate limit policy",
            details={"errors": e.errors(include_url=False)}
        ) from e

    for prefix, value in parsed.endpoints.items():
        if not prefix.startswith("/") or value <= 0:
            raise ConfigurationError(
                "Invalid endpoint sensitivity",
                details={"prefix": prefix, "sensitivity": value}
            )

    quotas = dict(DEFAULT_TIER_QUOTAS)
    for tier, override in parsed.tiers.items():
        quotas[tier] = Quota(
            points=override.points,
            window_seconds=override.duration,
            block_seconds=override.block_duration,
        )

    sensitivity = dict(DEFAULT_ENDPOINT_SENSITIVITY)
    sensitivity.update(parsed.endpoints)

    return RateLimitPolicy(
        tier_quotas=quotas,
        endpoint_sensitivity=sensitivity,
        default_category=parsed.default_category or DEFAULT_CATEGORY,
    )


def load_policy(path: Optional[str]) -> RateLimitPolicy:
    """Load the policy from a YAML file, or the defaults when no file is set."""
    if not path:
        return RateLimitPolicy()

    policy_path = Path(path)
    try:
        with policy_path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(
            f"Cannot read rate limit policy file {policy_path}",
            details={"error": str(e)}
        ) from e

    if not isinstance(data, dict):
        raise ConfigurationError(
            "Rate limit policy file must contain a mapping",
            details={"path": str(policy_path)}
        )
    return build_policy(data)
