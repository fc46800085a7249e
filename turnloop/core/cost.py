"""Token Pricing — default cost function mapping usage counters to dollars.

Invariants:
    - Cost is never negative
    - Thinking tokens are billed at the output rate
    - Extended tier applies when a single request's input exceeds 200K tokens
"""

from dataclasses import dataclass

from turnloop.core.turn_types import Usage

EXTENDED_CONTEXT_THRESHOLD = 200_000


@dataclass(frozen=True)
class PricingTier:
    """USD per million tokens."""
    input_per_mtok: float
    output_per_mtok: float


STANDARD_TIER = PricingTier(input_per_mtok=3.0, output_per_mtok=15.0)
EXTENDED_TIER = PricingTier(input_per_mtok=6.0, output_per_mtok=22.5)


@dataclass(frozen=True)
class TokenPricing:
    """Callable cost function: TokenPricing()(usage) -> USD."""
    standard: PricingTier = STANDARD_TIER
    extended: PricingTier = EXTENDED_TIER
    extended_threshold: int = EXTENDED_CONTEXT_THRESHOLD

    def tier_for(self, usage: Usage) -> PricingTier:
        if usage.input_tokens > self.extended_threshold:
            return self.extended
        return self.standard

    def __call__(self, usage: Usage) -> float:
        tier = self.tier_for(usage)
        cost = (
            usage.input_tokens * tier.input_per_mtok
            + (usage.output_tokens + usage.thinking_tokens) * tier.output_per_mtok
        ) / 1_000_000
        return max(0.0, cost)
