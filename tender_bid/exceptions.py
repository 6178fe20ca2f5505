"""
exceptions.py -- Failure taxonomy for the bid pipeline.

Only whole-pipeline failures are exceptions. Per-item problems (no catalog
match, stock shortfall, unpriced line) are recorded as risk entries so a
partially-resolvable bid still comes back priced.

Each class also derives from the builtin the CLI already catches
(RuntimeError for service failures, ValueError for bad data), so
callers that don't care about the distinction don't have to import us.
"""

from __future__ import annotations

from typing import Optional


class TenderBidError(Exception):
    """Base class for every pipeline failure."""


class ExtractionExhausted(TenderBidError, RuntimeError):
    """Every credential failed on every retry attempt."""

    def __init__(self, attempts: int, last_error: Optional[BaseException]):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Structured extraction failed after {attempts} attempts: {last_error}"
        )


class NoJsonFound(TenderBidError, ValueError):
    """Model output has no '{' ... '}' span at all."""


class MalformedOutput(TenderBidError, ValueError):
    """Recovered text still doesn't parse. ``context`` is the text around
    the parser's error offset."""

    def __init__(self, message: str, context: str = "", position: int = 0):
        self.context = context
        self.position = position
        super().__init__(f"{message} | near: {context!r}")


class InvalidRecord(TenderBidError, ValueError):
    """The normalizer was handed something that isn't a JSON object."""
