"""
Token counting and usage tracking.

Manages token counts reported by chat providers.
"""

from dataclasses import dataclass
from typing import Any, Optional


@dataclass(frozen=True)
class TokenUsage:
    """Token usage data for cost calculation.

    Contains exact token counts as reported by the provider, or the
    conservative bound used to size a reservation.
    """
    input_tokens: int
    output_tokens: int

    def __post_init__(self):
        if self.input_tokens < 0 or self.output_tokens < 0:
            raise ValueError("token counts must be >= 0")

    @property
    def total_tokens(self) -> int:
        """Total tokens used (input + output)."""
        return self.input_tokens + self.output_tokens

    @classmethod
    def from_provider(cls, usage: Any) -> Optional["TokenUsage"]:
        """Build from an OpenAI-style ``usage`` object, if one was reported."""
        if usage is None:
            return None
        prompt_tokens = getattr(usage, "prompt_tokens", None)
        completion_tokens = getattr(usage, "completion_tokens", None)
        if prompt_tokens is None or completion_tokens is None:
            return None
        return cls(input_tokens=prompt_tokens, output_tokens=completion_tokens)
