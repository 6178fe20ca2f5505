"""
credentials.py -- Round-robin API key pool for the inference backends.

The free tiers we run on rate-limit per key, so the extractor spreads
load across several keys and moves to the next one whenever a call
fails. The cursor lives on the pool object, not in module state, so two
pipelines (or two API requests) can each own a pool without stepping on
each other. The lock makes a shared pool safe too.
"""

from __future__ import annotations

import logging
import threading
from typing import List, Sequence

from tender_bid.config import env_list

logger = logging.getLogger(__name__)


class CredentialPool:
    """
    Ordered, non-empty list of credentials with a rotating cursor.

    Usage:
        pool = CredentialPool(["key-a", "key-b"])
        key = pool.next()       # current key, cursor unchanged
        pool.mark_failed()      # advance to the following key (wraps)
    """

    def __init__(self, credentials: Sequence[str]):
        cleaned = [c for c in credentials if c]
        if not cleaned:
            raise ValueError("CredentialPool needs at least one credential")
        self._credentials: List[str] = cleaned
        self._cursor = 0
        self._lock = threading.Lock()

    @classmethod
    def from_env(cls, name: str, fallback: str = "") -> "CredentialPool":
        """Build from a comma-separated env var, e.g. GEMINI_API_KEYS."""
        keys = env_list(name, fallback)
        if not keys:
            raise ValueError(
                f"No credentials found. Set {name}"
                + (f" or {fallback}" if fallback else "")
                + " in the environment."
            )
        return cls(keys)

    def __len__(self) -> int:
        return len(self._credentials)

    @property
    def cursor(self) -> int:
        return self._cursor

    def next(self) -> str:
        """Credential the next attempt should use."""
        with self._lock:
            return self._credentials[self._cursor]

    def mark_failed(self) -> None:
        """Rotate past the current credential."""
        with self._lock:
            failed = self._cursor
            self._cursor = (self._cursor + 1) % len(self._credentials)
            logger.warning(
                "Credential #%d failed; rotating to #%d of %d.",
                failed + 1, self._cursor + 1, len(self._credentials),
            )
