"""
tools/output_limiter.py — Output size limiting

The normalizer hands long text (summaries, fact values, raw payload dumps)
to an OutputLimiter. Truncation is always explicit: the cut text ends with a
marker stating how much was dropped.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable


@runtime_checkable
class OutputLimiter(Protocol):
    def limit(self, text: str, max_chars: int) -> str:
        ...


class TruncatingOutputLimiter:
    """Keeps the head of the text and appends a truncation marker."""

    def limit(self, text: str, max_chars: int) -> str:
        if max_chars <= 0 or len(text) <= max_chars:
            return text
        omitted = len(text) - max_chars
        return f"{text[:max_chars]} [truncated: {omitted} of {len(text)} chars omitted]"
