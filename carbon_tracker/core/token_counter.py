"""
Token counting and usage tracking.

Holds the four token counts a model-generated turn reports.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class TokenCounts:
    """Token counts for one request or an aggregate of requests.

    Cache tokens are reported separately from fresh input tokens; all four
    count towards energy.
    """
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        """Total tokens used (input + output + cache creation + cache read)."""
        return (
            self.input_tokens
            + self.output_tokens
            + self.cache_creation_tokens
            + self.cache_read_tokens
        )

    def __add__(self, other: "TokenCounts") -> "TokenCounts":
        return TokenCounts(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            cache_creation_tokens=self.cache_creation_tokens + other.cache_creation_tokens,
            cache_read_tokens=self.cache_read_tokens + other.cache_read_tokens,
        )
