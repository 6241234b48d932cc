"""
Token counting and usage tracking.

Normalized token usage shared by every vendor, plus the best-effort
estimator used when a vendor never reports usage.
"""

import math
from dataclasses import dataclass, field
from typing import Optional

# Rough average for English text across both vendors' tokenizers
CHARS_PER_TOKEN = 4


@dataclass(frozen=True)
class TokenUsage:
    """Token usage data for cost calculation.

    `total_tokens` is derived from the two counts; passing an explicit value
    that disagrees with them is rejected. `estimated` marks counts produced
    by `estimate_tokens` rather than reported by the vendor.
    """
    input_tokens: int
    output_tokens: int
    total_tokens: Optional[int] = field(default=None)
    estimated: bool = False

    def __post_init__(self):
        if self.input_tokens < 0:
            raise ValueError("input_tokens cannot be negative")
        if self.output_tokens < 0:
            raise ValueError("output_tokens cannot be negative")
        expected = self.input_tokens + self.output_tokens
        if self.total_tokens is None:
            object.__setattr__(self, "total_tokens", expected)
        elif self.total_tokens != expected:
            raise ValueError(
                f"total_tokens ({self.total_tokens}) must equal "
                f"input_tokens + output_tokens ({expected})"
            )

    @classmethod
    def zero(cls) -> "TokenUsage":
        return cls(input_tokens=0, output_tokens=0)

    def to_dict(self) -> dict:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
            "estimated": self.estimated,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TokenUsage":
        return cls(
            input_tokens=int(data.get("input_tokens", 0)),
            output_tokens=int(data.get("output_tokens", 0)),
            estimated=bool(data.get("estimated", False)),
        )


def estimate_tokens(text: str) -> int:
    """Approximate token count for `text` (about 4 characters per token)."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_usage(prompt: str, completion: str, system_prompt: Optional[str] = None) -> TokenUsage:
    """Build an `estimated=True` usage from prompt and completion text."""
    input_tokens = estimate_tokens(prompt) + estimate_tokens(system_prompt or "")
    return TokenUsage(
        input_tokens=input_tokens,
        output_tokens=estimate_tokens(completion),
        estimated=True,
    )
