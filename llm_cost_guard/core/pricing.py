"""
Pricing calculations and rate management.

Maps model identifiers to per-million-token prices and computes call costs.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Mapping, Optional


class UnknownModelError(ValueError):
    """Raised when a model has no entry in the effective pricing catalog."""

    def __init__(self, model: str):
        super().__init__(f"No pricing entry found for model: {model}")
        self.model = model


@dataclass(frozen=True)
class ModelPricing:
    """Per-million-token pricing for a specific model."""
    input_per_million_usd: float
    output_per_million_usd: float

    def __post_init__(self):
        """Validate prices are not negative."""
        if self.input_per_million_usd < 0:
            raise ValueError("input_per_million_usd cannot be negative")
        if self.output_per_million_usd < 0:
            raise ValueError("output_per_million_usd cannot be negative")


PricingCatalog = Mapping[str, ModelPricing]


@dataclass(frozen=True)
class PricingTable:
    """Pricing catalog for supported models."""
    prices: Dict[str, ModelPricing]

    def get_pricing(self, model: str) -> ModelPricing:
        """Get pricing for a specific model.

        Args:
            model: Model identifier

        Returns:
            ModelPricing for the model

        Raises:
            UnknownModelError: If model is not in the catalog
        """
        if model not in self.prices:
            raise UnknownModelError(model)
        return self.prices[model]

    def with_overrides(self, overlay: Optional[PricingCatalog]) -> "PricingTable":
        """Return a new table where overlay entries replace built-ins per model."""
        merged = dict(self.prices)
        merged.update(overlay or {})
        return PricingTable(merged)

    def __contains__(self, model: str) -> bool:
        return model in self.prices


def _price(input_usd: float, output_usd: float) -> ModelPricing:
    return ModelPricing(input_per_million_usd=input_usd, output_per_million_usd=output_usd)


# USD per one million tokens
BUILT_IN_PRICING: Dict[str, ModelPricing] = {
    "gpt-4o": _price(2.5, 10),
    "gpt-4o-mini": _price(0.15, 0.6),
    "gpt-4-turbo": _price(10, 30),
    "gpt-3.5-turbo": _price(0.5, 1.5),
    "gpt-4.1": _price(2, 8),
    "gpt-4.1-mini": _price(0.8, 3.2),
    "gpt-4.1-nano": _price(0.2, 0.8),
    "gpt-5": _price(1.25, 10),
    "gpt-5-mini": _price(0.25, 2),
    "o1": _price(15, 60),
    "o1-mini": _price(1.1, 4.4),
    "o3-mini": _price(1.1, 4.4),
    "claude-opus-4-20250918": _price(15, 75),
    "claude-sonnet-4-20250514": _price(3, 15),
    "claude-3-haiku": _price(0.25, 1.25),
    "claude-3.5-sonnet": _price(3, 15),
    "claude-3-5-sonnet-20241022": _price(3, 15),
    "claude-3.5-haiku": _price(0.8, 4),
    "claude-3-5-haiku-20241022": _price(0.8, 4),
    "claude-opus-4-6": _price(5, 25),
    "claude-sonnet-4-6": _price(3, 15),
    "gemini-1.5-pro": _price(3.5, 10.5),
    "gemini-1.5-flash": _price(0.35, 1.05),
    "gemini-2.0-flash": _price(0.1, 0.4),
    "gemini-2.5-pro": _price(1.25, 10),
    "gemini-2.5-flash": _price(0.3, 2.5),
    "gemini-2.5-flash-lite": _price(0.1, 0.4),
    "deepseek-chat": _price(0.27, 1.1),
    "deepseek-reasoner": _price(0.55, 2.19),
    "minimax-m2.5": _price(0.5, 1.8),
}

PRICING_TABLE = PricingTable(BUILT_IN_PRICING)

_ONE_MILLION = Decimal("1000000")


def get_model_pricing(model: str, pricing: Optional[PricingCatalog] = None) -> Optional[ModelPricing]:
    """Look up a model's pricing, returning None when it is not listed."""
    catalog = BUILT_IN_PRICING if pricing is None else pricing
    return catalog.get(model)


def calculate_cost(
    model: str,
    input_tokens: int,
    output_tokens: int,
    pricing: Optional[PricingCatalog] = None,
) -> Optional[float]:
    """Calculate the USD cost of one call.

    Cost is ``input/1e6 * input_price + output/1e6 * output_price``, summed in
    Decimal and converted to float once at the end.

    Args:
        model: Model identifier
        input_tokens: Prompt/input token count
        output_tokens: Completion/output token count
        pricing: Catalog to price against (defaults to built-in pricing)

    Returns:
        Cost in USD, or None if the model is not in the catalog
    """
    model_pricing = get_model_pricing(model, pricing)
    if model_pricing is None:
        return None

    input_cost = (Decimal(input_tokens) / _ONE_MILLION) * Decimal(str(model_pricing.input_per_million_usd))
    output_cost = (Decimal(output_tokens) / _ONE_MILLION) * Decimal(str(model_pricing.output_per_million_usd))

    return float(input_cost + output_cost)
