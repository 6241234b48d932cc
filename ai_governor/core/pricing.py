"""
Pricing calculations and rate management.

Maps model identifiers to per-1K-token prices and converts token usage
into a cost breakdown. Unknown models are billed at a conservative default
rate, never for free.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_UP
from pathlib import Path
from typing import Dict, Optional

import yaml

from .errors import ConfigurationError
from .token_counter import TokenUsage

logger = logging.getLogger(__name__)

COST_PRECISION = Decimal("0.000001")
DEFAULT_CURRENCY = "USD"


@dataclass(frozen=True)
class ModelPricing:
    """Per-1K-token pricing for a specific model."""
    model: str
    input_price_per_thousand: Decimal
    output_price_per_thousand: Decimal

    def __post_init__(self):
        if self.input_price_per_thousand < 0:
            raise ValueError(f"input price for {self.model} cannot be negative")
        if self.output_price_per_thousand < 0:
            raise ValueError(f"output price for {self.model} cannot be negative")


# Applied to any model missing from the catalog
DEFAULT_PRICING = ModelPricing(
    model="default",
    input_price_per_thousand=Decimal("0.001"),
    output_price_per_thousand=Decimal("0.002"),
)


@dataclass(frozen=True)
class CostBreakdown:
    """Cost of one request, split by direction."""
    input_cost: Decimal
    output_cost: Decimal
    total_cost: Decimal
    currency: str = DEFAULT_CURRENCY

    def __post_init__(self):
        if self.input_cost < 0 or self.output_cost < 0:
            raise ValueError("costs cannot be negative")
        if self.total_cost != self.input_cost + self.output_cost:
            raise ValueError("total_cost must equal input_cost + output_cost")

    @classmethod
    def zero(cls) -> "CostBreakdown":
        return cls(Decimal("0"), Decimal("0"), Decimal("0"))

    def to_dict(self) -> dict:
        return {
            "input_cost": str(self.input_cost),
            "output_cost": str(self.output_cost),
            "total_cost": str(self.total_cost),
            "currency": self.currency,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CostBreakdown":
        return cls(
            input_cost=Decimal(data["input_cost"]),
            output_cost=Decimal(data["output_cost"]),
            total_cost=Decimal(data["total_cost"]),
            currency=data.get("currency", DEFAULT_CURRENCY),
        )


@dataclass(frozen=True)
class PricingCatalog:
    """Read-only pricing table for supported models."""
    prices: Dict[str, ModelPricing]
    default: ModelPricing = DEFAULT_PRICING

    def get_pricing(self, model: str) -> Optional[ModelPricing]:
        """Return the catalog entry for `model`, or None if it is not listed."""
        return self.prices.get(model)

    def resolve(self, model: str) -> ModelPricing:
        """Return pricing for `model`, falling back to the default rate.

        A missing entry is logged at WARNING so it is never silently cheap.
        """
        pricing = self.prices.get(model)
        if pricing is None:
            logger.warning(
                "Unknown model %r for cost calculation; using default rate "
                "($%s in / $%s out per 1K tokens)",
                model,
                self.default.input_price_per_thousand,
                self.default.output_price_per_thousand,
            )
            return self.default
        return pricing

    def __contains__(self, model: str) -> bool:
        return model in self.prices


def _entry(model: str, input_price: str, output_price: str) -> ModelPricing:
    return ModelPricing(model, Decimal(input_price), Decimal(output_price))


PRICING_CATALOG = PricingCatalog({
    entry.model: entry for entry in (
        # Anthropic
        _entry("claude-sonnet-4-5-20250929", "0.003", "0.015"),
        _entry("claude-3-5-sonnet-20241022", "0.003", "0.015"),
        _entry("claude-3-5-haiku-20241022", "0.0008", "0.004"),
        _entry("claude-3-opus-20240229", "0.015", "0.075"),
        _entry("claude-3-haiku-20240307", "0.00025", "0.00125"),
        # OpenAI chat
        _entry("gpt-4o", "0.0025", "0.01"),
        _entry("gpt-4o-mini", "0.00015", "0.0006"),
        _entry("gpt-4", "0.03", "0.06"),
        _entry("gpt-3.5-turbo", "0.0005", "0.0015"),
        # OpenAI embeddings
        _entry("text-embedding-3-small", "0.00002", "0"),
        _entry("text-embedding-3-large", "0.00013", "0"),
        _entry("text-embedding-ada-002", "0.0001", "0"),
    )
})


def calculate_cost(model: str, usage: TokenUsage,
                   catalog: PricingCatalog = PRICING_CATALOG) -> CostBreakdown:
    """Calculate the cost of `usage` on `model`.

    Each direction is rounded UP to six decimal places, so the breakdown
    never understates spend and `total_cost == input_cost + output_cost`.

    Args:
        model: Model identifier
        usage: Token usage data
        catalog: Pricing catalog to read rates from

    Returns:
        CostBreakdown in USD
    """
    pricing = catalog.resolve(model)

    thousand = Decimal("1000")
    input_cost = (Decimal(usage.input_tokens) / thousand) * pricing.input_price_per_thousand
    output_cost = (Decimal(usage.output_tokens) / thousand) * pricing.output_price_per_thousand

    input_cost = input_cost.quantize(COST_PRECISION, rounding=ROUND_UP)
    output_cost = output_cost.quantize(COST_PRECISION, rounding=ROUND_UP)

    return CostBreakdown(
        input_cost=input_cost,
        output_cost=output_cost,
        total_cost=input_cost + output_cost,
    )


def load_pricing_catalog(path: str) -> PricingCatalog:
    """Load a pricing catalog from YAML.

    Expected layout::

        models:
          gpt-4o-mini: {input: 0.00015, output: 0.0006}
        default: {input: 0.001, output: 0.002}

    Raises:
        FileNotFoundError: If the file doesn't exist
        ConfigurationError: If an entry is malformed or the default rate is zero
    """
    catalog_path = Path(path)
    if not catalog_path.exists():
        raise FileNotFoundError(f"Pricing catalog not found: {path}")

    with open(catalog_path, 'r', encoding='utf-8') as f:
        raw = yaml.safe_load(f) or {}

    models = raw.get("models")
    if not isinstance(models, dict) or not models:
        raise ConfigurationError("Pricing catalog must define a non-empty 'models' mapping")

    prices = {model: _parse_rate(model, rate) for model, rate in models.items()}

    default = DEFAULT_PRICING
    if "default" in raw:
        default = _parse_rate("default", raw["default"])
        if default.input_price_per_thousand == 0 and default.output_price_per_thousand == 0:
            raise ConfigurationError("Default pricing cannot be zero")

    return PricingCatalog(prices=prices, default=default)


def _parse_rate(model: str, rate) -> ModelPricing:
    if not isinstance(rate, dict) or "input" not in rate or "output" not in rate:
        raise ConfigurationError(f"Pricing for {model} must define 'input' and 'output'")
    try:
        return ModelPricing(
            model=model,
            input_price_per_thousand=Decimal(str(rate["input"])),
            output_price_per_thousand=Decimal(str(rate["output"])),
        )
    except (ArithmeticError, ValueError) as e:
        raise ConfigurationError(f"Invalid pricing for {model}: {e}") from e
