"""
Token counting and usage tracking.

Prompt-caching aware token arithmetic shared by pricing and aggregation.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class TokenUsage:
    """Token usage data for cost calculation.

    ``input_tokens`` already excludes tokens served from the prompt cache,
    so it is the billable ordinary input, not the total input.
    """
    input_tokens: int
    output_tokens: int
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0

    def __post_init__(self):
        """Validate token counts are non-negative."""
        for name in ("input_tokens", "output_tokens",
                     "cache_creation_tokens", "cache_read_tokens"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} cannot be negative")

    @property
    def total_input_tokens(self) -> int:
        """Total input (ordinary + cache creation + cache read)."""
        return self.input_tokens + self.cache_creation_tokens + self.cache_read_tokens

    @property
    def total_tokens(self) -> int:
        """Total tokens used (total input + output)."""
        return self.total_input_tokens + self.output_tokens
