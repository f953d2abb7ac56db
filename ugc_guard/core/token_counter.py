"""
Token counting and usage tracking.

Holds the token counts a provider reports (or that are assumed for it).
"""

from dataclasses import dataclass

# Assumed when a provider does not report usage
FALLBACK_INPUT_TOKENS = 1000


@dataclass(frozen=True)
class TokenUsage:
    """Token usage for one generation attempt."""
    input_tokens: int
    output_tokens: int
    estimated_cost: float = 0.0

    @property
    def total_tokens(self) -> int:
        """Total tokens used (input + output)."""
        return self.input_tokens + self.output_tokens

    @classmethod
    def failed_attempt(cls, estimated_cost: float = 0.0) -> "TokenUsage":
        """Conservative usage for an attempt that failed without reporting usage."""
        return cls(
            input_tokens=FALLBACK_INPUT_TOKENS,
            output_tokens=0,
            estimated_cost=estimated_cost,
        )
