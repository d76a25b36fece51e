#!/usr/bin/env python3
"""
Resource Budget for the ingestion loop.

Three independent ceilings bound how much repository content one run pulls
in before analysis:

- wall-clock duration since the run started
- number of blobs fetched
- cumulative estimated token cost of the gathered files

The ceilings are fixed when the budget is built from configuration.  All
predicates are pure; the mutable counters live in ``BudgetState``, which is
owned by exactly one ingestion loop.

Token counts are an approximation (characters / ``chars_per_token``,
rounded up), not a tokenizer.  Treat them as an estimate only.
"""

from __future__ import annotations

import logging
import math
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

# Defaults; override through configuration
DEFAULT_MAX_DURATION_SECONDS = 540.0
DEFAULT_MAX_ITEMS = 500
DEFAULT_TOKEN_LIMIT = 200_000
DEFAULT_CHARS_PER_TOKEN = 4

# Reasons reported when a ceiling trips
LIMIT_WALL_CLOCK = "wall_clock"
LIMIT_COUNT = "count"
LIMIT_TOKENS = "tokens"

PRIORITY_1_PATTERNS = [
    "auth", "session", "login", "password", "token", "secret",
    "credential", "api/", "routes/", "middleware/", "webhook",
    "payment", "stripe", ".env", "config", "security",
]

PRIORITY_2_PATTERNS = [
    re.compile(r"(?:^|/)index\.[^/]+$"),
    re.compile(r"(?:^|/)app\.[^/]+$"),
    re.compile(r"(?:^|/)main\.[^/]+$"),
    re.compile(r"(?:^|/)server\.[^/]+$"),
    re.compile(r"(?:^|/)handler\.[^/]+$"),
]


@dataclass
class BudgetState:
    """Mutable counters for one ingestion loop."""

    start_time: float = field(default_factory=time.monotonic)
    items_processed: int = 0
    tokens_consumed: int = 0

    def record(self, tokens: int) -> None:
        self.items_processed += 1
        self.tokens_consumed += tokens


@dataclass(frozen=True)
class ResourceBudget:
    """Fixed ceilings for the ingestion loop."""

    max_duration_seconds: float = DEFAULT_MAX_DURATION_SECONDS
    max_items: int = DEFAULT_MAX_ITEMS
    max_tokens: int = DEFAULT_TOKEN_LIMIT
    chars_per_token: int = DEFAULT_CHARS_PER_TOKEN

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "ResourceBudget":
        return cls(
            max_duration_seconds=float(
                config.get("max_duration_seconds", DEFAULT_MAX_DURATION_SECONDS)
            ),
            max_items=int(config.get("max_blob_fetches", DEFAULT_MAX_ITEMS)),
            max_tokens=int(config.get("token_limit", DEFAULT_TOKEN_LIMIT)),
            chars_per_token=int(config.get("chars_per_token", DEFAULT_CHARS_PER_TOKEN)),
        )

    def is_over_wall_clock(self, start_time: float, now: float) -> bool:
        """True once ``now - start_time`` reaches the ceiling (inclusive)."""
        return now - start_time >= self.max_duration_seconds

    def is_over_count(self, items_processed: int) -> bool:
        return items_processed >= self.max_items

    def is_over_tokens(self, tokens_consumed: int, estimated_next: int) -> bool:
        return tokens_consumed + estimated_next > self.max_tokens

    def estimate_tokens(self, content: str) -> int:
        """Approximate token cost of *content*; not an exact tokenizer."""
        return math.ceil(len(content) / self.chars_per_token)

    def exhausted_before_fetch(self, state: BudgetState, now: float) -> Optional[str]:
        """Check the pre-fetch ceilings in order; return the one that tripped."""
        if self.is_over_wall_clock(state.start_time, now):
            return LIMIT_WALL_CLOCK
        if self.is_over_count(state.items_processed):
            return LIMIT_COUNT
        return None


def file_priority(path: str) -> int:
    """Rank a path for ingestion order: 1 security-sensitive, 2 entry point, 3 other."""
    lower = path.lower()
    for pattern in PRIORITY_1_PATTERNS:
        if pattern in lower:
            return 1
    for pattern in PRIORITY_2_PATTERNS:
        if pattern.search(path):
            return 2
    return 3


__all__ = [
    "DEFAULT_MAX_DURATION_SECONDS",
    "DEFAULT_MAX_ITEMS",
    "DEFAULT_TOKEN_LIMIT",
    "DEFAULT_CHARS_PER_TOKEN",
    "LIMIT_WALL_CLOCK",
    "LIMIT_COUNT",
    "LIMIT_TOKENS",
    "BudgetState",
    "ResourceBudget",
    "file_priority",
]
