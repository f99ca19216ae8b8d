"""
Pricing calculations and rate management.

Resolves per-million-token prices for a provider/model pair from user
overrides and the built-in table, and turns usage rows into cost rows.
"""

from dataclasses import dataclass
from typing import List, Optional, Sequence

from llm_meter.config.loader import PricingOverride
from llm_meter.storage.models import CURRENCY_USD, CostRecord, UsageRecord

TOKENS_PER_UNIT = 1_000_000


@dataclass(frozen=True)
class ModelPricing:
    """Per-million-token pricing for models matching a pattern."""
    provider: str
    model_pattern: str  # Substring matched against the model name
    input_per_1m: float
    output_per_1m: float

    def matches(self, provider: str, model: str) -> bool:
        return _matches(self.provider, self.model_pattern, provider, model)


# Declaration order matters: resolution is first-match-wins.
BUILT_IN_PRICING: List[ModelPricing] = [
    ModelPricing("openai", "gpt-4o", input_per_1m=5.0, output_per_1m=15.0),
    ModelPricing("openai", "gpt-4o-mini", input_per_1m=0.15, output_per_1m=0.60),
    ModelPricing("anthropic", "claude-3-5-sonnet", input_per_1m=3.0, output_per_1m=15.0),
    ModelPricing("anthropic", "claude-3-5-haiku", input_per_1m=0.80, output_per_1m=4.0),
]


def _matches(entry_provider: str, pattern: str, provider: str, model: str) -> bool:
    return entry_provider.lower() == provider.lower() and pattern in model


def resolve_pricing(
    provider: str,
    model: str,
    overrides: Sequence[PricingOverride] = (),
) -> Optional[ModelPricing]:
    """Resolve pricing for a model.

    User overrides are searched before the built-in table. A candidate
    matches when its provider equals ``provider`` (case-insensitive) and its
    pattern is a substring of ``model``; the first match wins.

    Args:
        provider: Provider name
        model: Model name as reported upstream
        overrides: User pricing overrides from configuration

    Returns:
        ModelPricing, or None when the cost of this model is unknown.
        Callers must never treat None as zero cost.
    """
    for override in overrides:
        if _matches(override.provider, override.model_pattern, provider, model):
            return ModelPricing(
                provider=provider,
                model_pattern=override.model_pattern,
                input_per_1m=override.input_per_1m,
                output_per_1m=override.output_per_1m,
            )

    for pricing in BUILT_IN_PRICING:
        if pricing.matches(provider, model):
            return pricing
    return None


def cost_for_usage(usage: UsageRecord, pricing: ModelPricing) -> CostRecord:
    """Calculate the cost of one usage row.

    Cached tokens are not billed separately.

    Args:
        usage: Usage row
        pricing: Resolved pricing for the row's model

    Returns:
        CostRecord with the same provider, model and timestamp
    """
    input_cost = (usage.input_tokens / TOKENS_PER_UNIT) * pricing.input_per_1m
    output_cost = (usage.output_tokens / TOKENS_PER_UNIT) * pricing.output_per_1m
    return CostRecord(
        provider=usage.provider,
        model=usage.model,
        input_cost=input_cost,
        output_cost=output_cost,
        total_cost=input_cost + output_cost,
        currency=CURRENCY_USD,
        timestamp=usage.timestamp,
    )
