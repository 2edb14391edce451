"""Risk-to-tier routing and tier-to-model resolution."""

from __future__ import annotations

from collections.abc import Mapping
from typing import assert_never

from .errors import InvalidRequestError
from .models import PreferredTier, RiskLevel, Tier

DEFAULT_TIER_MODELS: dict[Tier, str] = {
    Tier.CHEAP: "gpt-3.5-turbo",
    Tier.MID: "gpt-4",
    Tier.HIGH: "gpt-4-turbo",
}


def route(risk: RiskLevel) -> Tier:
    match risk:
        case RiskLevel.LOW:
            return Tier.CHEAP
        case RiskLevel.MEDIUM:
            return Tier.MID
        case RiskLevel.HIGH:
            return Tier.HIGH
        case _:
            assert_never(risk)


def resolve_tier(risk: RiskLevel, preferred: PreferredTier | str = PreferredTier.AUTO) -> Tier:
    """Apply a caller's tier preference on top of the routed tier.

    A preference only overrides the tier; the risk level (and therefore the
    execution policy) always comes from the classifier.
    """
    try:
        preference = PreferredTier(preferred)
    except ValueError as exc:
        allowed = ", ".join(item.value for item in PreferredTier)
        raise InvalidRequestError(
            f"Unknown preferred tier {preferred!r}; expected one of: {allowed}"
        ) from exc
    if preference is PreferredTier.AUTO:
        return route(risk)
    return Tier(preference.value)


def model_for(tier: Tier, models: Mapping[Tier, str] | None = None) -> str:
    """Resolve a tier to a backend model id; overrides fall back to the defaults."""
    if models and tier in models:
        return models[tier]
    return DEFAULT_TIER_MODELS[tier]
