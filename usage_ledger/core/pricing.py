"""
Pricing calculations and rate management.

Tiered token pricing for LLM usage: ordinary input, output, prompt-cache
reads (cheap tier) and prompt-cache writes (premium tier), all quoted in
USD per million tokens.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Optional

from .token_counter import TokenUsage

ONE_MILLION = Decimal("1000000")
COST_QUANTUM = Decimal("0.000001")  # 6 fractional digits
PREFIX_MATCH_LENGTH = 15
ZERO = Decimal("0")


class UnknownModelPricingError(ValueError):
    """Raised when a model has no configured price.

    Assigning a zero cost would silently corrupt the ledger, so callers are
    expected to let this propagate and retry once pricing is configured.
    """

    def __init__(self, model: str):
        super().__init__(f"Unsupported model: {model}")
        self.model = model


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing for a specific model (USD per 1M tokens)."""
    input_per_million: Decimal
    output_per_million: Decimal
    cache_read_per_million: Decimal = ZERO
    cache_write_per_million: Decimal = ZERO

    def __post_init__(self):
        """Validate rates are non-negative."""
        for name in ("input_per_million", "output_per_million",
                     "cache_read_per_million", "cache_write_per_million"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} cannot be negative")


@dataclass(frozen=True)
class CostBreakdown:
    """Cost split by billing tier."""
    input_cost: Decimal = ZERO
    output_cost: Decimal = ZERO
    cache_read_cost: Decimal = ZERO
    cache_write_cost: Decimal = ZERO

    @property
    def total(self) -> Decimal:
        return self.input_cost + self.output_cost + self.cache_read_cost + self.cache_write_cost

    def __add__(self, other: "CostBreakdown") -> "CostBreakdown":
        return CostBreakdown(
            input_cost=self.input_cost + other.input_cost,
            output_cost=self.output_cost + other.output_cost,
            cache_read_cost=self.cache_read_cost + other.cache_read_cost,
            cache_write_cost=self.cache_write_cost + other.cache_write_cost,
        )


@dataclass(frozen=True)
class PricingTable:
    """Pricing table keyed by model identifier."""
    prices: Dict[str, ModelPricing]

    def find_pricing(self, model: str) -> Optional[ModelPricing]:
        """Look up pricing by exact name, then by prefix.

        The prefix fallback compares the first 15 characters of each
        configured key, so dated releases such as
        ``claude-sonnet-4-20250601`` resolve to ``claude-sonnet-4-20250514``.
        """
        if model in self.prices:
            return self.prices[model]
        for key, pricing in self.prices.items():
            if model.startswith(key[:PREFIX_MATCH_LENGTH]):
                return pricing
        return None

    def get_pricing(self, model: str) -> ModelPricing:
        """Get pricing for a specific model.

        Args:
            model: Model identifier

        Returns:
            ModelPricing for the model

        Raises:
            UnknownModelPricingError: If model is not supported
        """
        pricing = self.find_pricing(model)
        if pricing is None:
            raise UnknownModelPricingError(model)
        return pricing


# Built-in table, used when no pricing section is configured
DEFAULT_PRICING_TABLE = PricingTable({
    "claude-sonnet-4-20250514": ModelPricing(
        input_per_million=Decimal("3.00"),
        output_per_million=Decimal("15.00"),
        cache_read_per_million=Decimal("0.30"),
        cache_write_per_million=Decimal("3.75"),
    ),
    "claude-opus-4-20250514": ModelPricing(
        input_per_million=Decimal("15.00"),
        output_per_million=Decimal("75.00"),
        cache_read_per_million=Decimal("1.50"),
        cache_write_per_million=Decimal("18.75"),
    ),
    "claude-3-5-haiku-20241022": ModelPricing(
        input_per_million=Decimal("0.80"),
        output_per_million=Decimal("4.00"),
        cache_read_per_million=Decimal("0.08"),
        cache_write_per_million=Decimal("1.00"),
    ),
})


def _token_cost(tokens: int, per_million: Decimal) -> Decimal:
    if tokens <= 0:
        return ZERO
    return (Decimal(tokens) * per_million / ONE_MILLION).quantize(COST_QUANTUM, rounding=ROUND_HALF_UP)


class CostCalculator:
    """Stateless cost calculator over a pricing table.

    A ``None`` model (error events that never resolved a model) always
    costs zero. Any other unresolved model raises
    :class:`UnknownModelPricingError`.
    """

    def __init__(self, table: PricingTable = DEFAULT_PRICING_TABLE):
        self.table = table

    def breakdown(self, model: Optional[str], usage: TokenUsage) -> CostBreakdown:
        """Split the cost of one call by billing tier."""
        if model is None:
            return CostBreakdown()
        pricing = self.table.get_pricing(model)
        return CostBreakdown(
            input_cost=_token_cost(usage.input_tokens, pricing.input_per_million),
            output_cost=_token_cost(usage.output_tokens, pricing.output_per_million),
            cache_read_cost=_token_cost(usage.cache_read_tokens, pricing.cache_read_per_million),
            cache_write_cost=_token_cost(usage.cache_creation_tokens, pricing.cache_write_per_million),
        )

    def cost(self, model: Optional[str], usage: TokenUsage) -> Decimal:
        """Calculate total cost of one call, 6 decimal places, half-up."""
        return self.breakdown(model, usage).total

    def cache_savings(self, model: Optional[str], usage: TokenUsage) -> Decimal:
        """What cache reads saved compared to paying the ordinary input rate."""
        if model is None or usage.cache_read_tokens <= 0:
            return ZERO
        pricing = self.table.get_pricing(model)
        full_cost = _token_cost(usage.cache_read_tokens, pricing.input_per_million)
        cached_cost = _token_cost(usage.cache_read_tokens, pricing.cache_read_per_million)
        return full_cost - cached_cost
