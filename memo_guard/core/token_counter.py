"""
Token counting and usage tracking.

Parses actual usage from provider responses and estimates the cost of a
request before it is sent.
"""

import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

CHARS_PER_TOKEN = 4
PER_MESSAGE_OVERHEAD = 5


@dataclass(frozen=True)
class TokenUsage:
    """Token usage reported by the provider."""
    prompt_tokens: int
    completion_tokens: int
    reported_total: Optional[int] = None

    @property
    def total_tokens(self) -> int:
        """Provider's total when reported, else prompt + completion."""
        if self.reported_total:
            return self.reported_total
        return self.prompt_tokens + self.completion_tokens

    @classmethod
    def from_response(cls, body: Any) -> "TokenUsage":
        """Read the ``usage`` object of an OpenAI-compatible response body.

        Missing or malformed fields count as zero.
        """
        usage = body.get("usage") if isinstance(body, dict) else None
        if not isinstance(usage, dict):
            return cls(prompt_tokens=0, completion_tokens=0)
        return cls(
            prompt_tokens=_as_int(usage.get("prompt_tokens")),
            completion_tokens=_as_int(usage.get("completion_tokens")),
            reported_total=_as_int(usage.get("total_tokens"))
        )


def _as_int(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return max(0, int(value))


def estimate_prompt_tokens(messages: List[Dict[str, str]]) -> int:
    """Rough prompt size: one token per four characters plus a per-message overhead."""
    total_chars = sum(len(message.get("content") or "") for message in messages)
    return math.ceil(total_chars / CHARS_PER_TOKEN) + PER_MESSAGE_OVERHEAD * len(messages)


def estimate_request_tokens(messages: List[Dict[str, str]], max_tokens: int) -> int:
    """Upper estimate of a request's cost: prompt estimate plus completion cap."""
    return estimate_prompt_tokens(messages) + max_tokens


def clamp_max_tokens(requested: Optional[int], hard_cap: int, default: int) -> int:
    """Apply the hard cap to the caller's completion-token request.

    Missing or non-positive requests fall back to ``default``.
    """
    if requested is None or isinstance(requested, bool) or requested <= 0:
        return default
    return min(int(requested), hard_cap)
