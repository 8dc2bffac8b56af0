"""
Pricing calculations and rate management.

Handles cost computations, in cents, for the models the firm uses.
"""

from dataclasses import dataclass
from typing import Dict
from decimal import Decimal, ROUND_UP

from .token_counter import TokenUsage

# Smallest unit the ledger keeps: one ten-thousandth of a cent
COST_QUANTUM = Decimal("0.0001")


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing for a specific model, in cents."""
    input_cents_per_1k: Decimal
    output_cents_per_1k: Decimal


@dataclass(frozen=True)
class PricingTable:
    """Fixed pricing table for supported models."""
    prices: Dict[str, ModelPricing]

    def get_pricing(self, model: str) -> ModelPricing:
        """Get pricing for a specific model.

        Args:
            model: Model identifier

        Returns:
            ModelPricing for the model

        Raises:
            ValueError: If model is not supported
        """
        if model not in self.prices:
            raise ValueError(f"Unsupported model: {model}")
        return self.prices[model]

    def supports(self, model: str) -> bool:
        return model in self.prices


# Fixed pricing table - no dynamic fetching, no defaults
PRICING_TABLE = PricingTable({
    "gpt-4o": ModelPricing(
        input_cents_per_1k=Decimal("0.25"),
        output_cents_per_1k=Decimal("1.00")
    ),
    "gpt-4o-mini": ModelPricing(
        input_cents_per_1k=Decimal("0.015"),
        output_cents_per_1k=Decimal("0.06")
    ),
    "gpt-4": ModelPricing(
        input_cents_per_1k=Decimal("3.00"),
        output_cents_per_1k=Decimal("6.00")
    ),
    "claude-3-5-sonnet": ModelPricing(
        input_cents_per_1k=Decimal("0.30"),
        output_cents_per_1k=Decimal("1.50")
    ),
    "claude-3-5-haiku": ModelPricing(
        input_cents_per_1k=Decimal("0.08"),
        output_cents_per_1k=Decimal("0.40")
    ),
    "claude-3-opus": ModelPricing(
        input_cents_per_1k=Decimal("1.50"),
        output_cents_per_1k=Decimal("7.50")
    )
})


def calculate_cost_cents(model: str, usage: TokenUsage) -> float:
    """Calculate total cost in cents for model usage with conservative rounding.

    Args:
        model: Model identifier
        usage: Token usage data

    Returns:
        Total cost in cents rounded UP to COST_QUANTUM

    Raises:
        ValueError: If model is not supported
    """
    pricing = PRICING_TABLE.get_pricing(model)

    input_cost = (Decimal(usage.input_tokens) / Decimal("1000")) * pricing.input_cents_per_1k
    output_cost = (Decimal(usage.output_tokens) / Decimal("1000")) * pricing.output_cents_per_1k

    # Always round UP so the ledger never under-reports spend
    total_cost = input_cost + output_cost
    return float(total_cost.quantize(COST_QUANTUM, rounding=ROUND_UP))
