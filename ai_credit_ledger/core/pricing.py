"""
Pricing calculations and rate management.

Converts provider prices into credits for chat and image operations. Prices
come from a pricing oracle; a model the oracle cannot price is never guessed.
All credit amounts are rounded UP.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_UP
from typing import TYPE_CHECKING, Dict, Optional, Protocol, Tuple

from .token_counter import TokenUsage

if TYPE_CHECKING:
    from ai_credit_ledger.config.loader import (
        ChatConfig,
        CreditConfig,
        ImageConfig,
    )

TOKENS_PER_MILLION = Decimal("1000000")


@dataclass(frozen=True)
class ModelPrice:
    """Provider price for one model, in USD."""
    prompt_per_million: Optional[Decimal] = None  # Per 1M input tokens
    completion_per_million: Optional[Decimal] = None  # Per 1M output tokens
    per_image: Optional[Decimal] = None  # Per generated image

    @property
    def is_chat_priced(self) -> bool:
        return (self.prompt_per_million is not None
                and self.completion_per_million is not None)

    @property
    def is_image_priced(self) -> bool:
        return self.per_image is not None and self.per_image > 0

    @property
    def is_free(self) -> bool:
        """True for chat models whose prompt and completion are both free."""
        return (self.is_chat_priced
                and self.prompt_per_million == 0
                and self.completion_per_million == 0)


class PricingOracle(Protocol):
    """Source of model prices. Returns None for unpriced models."""

    def price(self, model_id: str) -> Optional[ModelPrice]:
        ...


@dataclass(frozen=True)
class PricingTable:
    """Fixed pricing table, usually loaded from configuration."""
    prices: Dict[str, ModelPrice]

    def price(self, model_id: str) -> Optional[ModelPrice]:
        return self.prices.get(model_id)


@dataclass(frozen=True)
class Estimate:
    """Credits to reserve and the provider cost they stand for."""
    credits: int
    cost_usd: float


def usd_to_credits(cost_usd: Decimal, credits: "CreditConfig", minimum: int = 0) -> int:
    """Convert a provider cost to credits, premium included, rounded UP.

    Args:
        cost_usd: Provider cost in USD
        credits: Credit unit and premium configuration
        minimum: Lower bound on the result

    Returns:
        Number of credits
    """
    with_premium = cost_usd * credits.premium_multiplier
    amount = (with_premium / credits.credit_usd).quantize(Decimal("1"), rounding=ROUND_UP)
    return max(minimum, int(amount))


# --- chat -------------------------------------------------------------------

def chat_cost_usd(usage: TokenUsage, price: ModelPrice) -> Decimal:
    """Provider cost of a chat request (no premium).

    Raises:
        ValueError: If the price has no token rates
    """
    if not price.is_chat_priced:
        raise ValueError("Model price has no token rates")
    return (
        Decimal(usage.input_tokens) * price.prompt_per_million
        + Decimal(usage.output_tokens) * price.completion_per_million
    ) / TOKENS_PER_MILLION


def chat_credits(
    usage: TokenUsage,
    price: ModelPrice,
    credits: "CreditConfig",
    chat: "ChatConfig"
) -> int:
    """Credits charged for a chat request (minimum ``chat.minimum_credits``)."""
    return usd_to_credits(chat_cost_usd(usage, price), credits, minimum=chat.minimum_credits)


def estimate_chat_reservation(
    price: ModelPrice,
    credits: "CreditConfig",
    chat: "ChatConfig"
) -> Estimate:
    """Upfront reservation for a chat stream.

    Output length is unknown before generation, so the estimate is sized from
    a conservative token bound and capped at ``chat.max_reserve_credits``.
    """
    usage = TokenUsage(
        input_tokens=chat.estimated_input_tokens,
        output_tokens=chat.estimated_output_tokens,
    )
    amount = min(chat_credits(usage, price, credits, chat), chat.max_reserve_credits)
    return Estimate(credits=amount, cost_usd=float(chat_cost_usd(usage, price)))


# --- image ------------------------------------------------------------------

def supports_resolution(model_id: str, image: "ImageConfig") -> bool:
    """Whether the model honours a user-selected resolution.

    Only models listed here pay the resolution multiplier; charging it for a
    model that ignores the setting would bill users for nothing.
    """
    model = model_id.lower()
    return any(model.startswith(prefix.lower()) for prefix in image.resolution_supported_prefixes)


def resolution_multiplier(resolution: str, model_id: str, image: "ImageConfig") -> Decimal:
    """Cost multiplier for a resolution, 1 for models without resolution support.

    Raises:
        ValueError: If the resolution is unknown
    """
    if resolution not in image.resolution_multipliers:
        valid = sorted(image.resolution_multipliers)
        raise ValueError(f"Invalid resolution '{resolution}', must be one of: {valid}")
    if not supports_resolution(model_id, image):
        return Decimal("1")
    return image.resolution_multipliers[resolution]


def image_credits(price: ModelPrice, credits: "CreditConfig") -> int:
    """Nominal credits for one image at the oracle's price (minimum 1)."""
    if not price.is_image_priced:
        raise ValueError("Model price has no image rate")
    return usd_to_credits(price.per_image, credits, minimum=1)


def nominal_image_estimate(
    price: ModelPrice,
    resolution: str,
    model_id: str,
    credits: "CreditConfig",
    image: "ImageConfig"
) -> Estimate:
    """Oracle-derived estimate, used as fallback when no usage is reported."""
    multiplier = resolution_multiplier(resolution, model_id, image)
    amount = (Decimal(image_credits(price, credits)) * multiplier).quantize(
        Decimal("1"), rounding=ROUND_UP
    )
    return Estimate(credits=int(amount), cost_usd=float(price.per_image * multiplier))


def conservative_image_estimate(
    price: ModelPrice,
    resolution: str,
    model_id: str,
    credits: "CreditConfig",
    image: "ImageConfig"
) -> Estimate:
    """Worst-case reservation for an image generation.

    Image providers' nominal prices under-report often enough that the
    reservation is inflated by ``image.conservative_multiplier`` so that
    settlement never runs short. The cost counted against the daily-spend
    gate stays at the nominal price.
    """
    multiplier = resolution_multiplier(resolution, model_id, image)
    base = usd_to_credits(price.per_image * image.conservative_multiplier, credits, minimum=1)
    amount = (Decimal(base) * multiplier).quantize(Decimal("1"), rounding=ROUND_UP)
    return Estimate(credits=int(amount), cost_usd=float(price.per_image * multiplier))


def credits_from_actual_usage(
    actual_usd: Optional[float],
    fallback_credits: int,
    credits: "CreditConfig"
) -> Tuple[int, bool]:
    """Credits for a finished generation from the provider-reported cost.

    Returns:
        ``(credits, used_actual)``; ``used_actual`` is False when no positive
        cost was reported and ``fallback_credits`` was used instead.
    """
    if actual_usd is None or actual_usd <= 0:
        return fallback_credits, False
    return usd_to_credits(Decimal(str(actual_usd)), credits, minimum=1), True
