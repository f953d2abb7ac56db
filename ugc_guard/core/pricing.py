"""
Pricing calculations and rate management.

Handles cost computations for the configured generation providers.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_UP
from typing import Dict, Iterable

from .token_counter import TokenUsage

ONE_MILLION = Decimal("1000000")
# Costs are tracked to the micro-dollar
COST_QUANTUM = Decimal("0.000001")


@dataclass(frozen=True)
class ProviderPricing:
    """Per-token pricing for a specific provider."""
    cost_per_million_input: Decimal
    cost_per_million_output: Decimal


@dataclass(frozen=True)
class PricingTable:
    """Pricing table for the configured providers."""
    prices: Dict[str, ProviderPricing]

    def get_pricing(self, provider_id: str) -> ProviderPricing:
        """Get pricing for a specific provider.

        Args:
            provider_id: Provider identifier

        Returns:
            ProviderPricing for the provider

        Raises:
            ValueError: If provider is not priced
        """
        if provider_id not in self.prices:
            raise ValueError(f"Unsupported provider: {provider_id}")
        return self.prices[provider_id]

    @classmethod
    def from_providers(cls, providers: Iterable) -> "PricingTable":
        """Build a pricing table from provider settings."""
        return cls({
            p.id: ProviderPricing(
                cost_per_million_input=Decimal(str(p.cost_per_million_input)),
                cost_per_million_output=Decimal(str(p.cost_per_million_output)),
            )
            for p in providers
        })


def calculate_cost(
    pricing: ProviderPricing,
    input_tokens: int,
    output_tokens: int,
) -> float:
    """Calculate cost linearly from per-million rates, rounding UP.

    Args:
        pricing: Rates for the provider
        input_tokens: Prompt tokens
        output_tokens: Completion tokens

    Returns:
        Cost in dollars rounded up to the micro-dollar
    """
    input_cost = (Decimal(input_tokens) / ONE_MILLION) * pricing.cost_per_million_input
    output_cost = (Decimal(output_tokens) / ONE_MILLION) * pricing.cost_per_million_output
    total_cost = input_cost + output_cost
    return float(total_cost.quantize(COST_QUANTUM, rounding=ROUND_UP))


def calculate_usage_cost(pricing: ProviderPricing, usage: TokenUsage) -> float:
    """Calculate cost for a recorded TokenUsage."""
    return calculate_cost(pricing, usage.input_tokens, usage.output_tokens)
