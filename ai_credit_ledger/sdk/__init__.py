"""
SDK for AI Credit Ledger.

Provider adapters and a pricing oracle over OpenRouter's OpenAI-compatible API.
"""

from .openrouter_client import (
    OpenRouterChatProvider,
    OpenRouterImageProvider,
    OpenRouterPricingOracle,
    OpenRouterScenePlanner,
)

__all__ = [
    "OpenRouterChatProvider",
    "OpenRouterImageProvider",
    "OpenRouterPricingOracle",
    "OpenRouterScenePlanner",
]
