from __future__ import annotations

import threading
from dataclasses import dataclass

from loguru import logger

# USD per million tokens: (prompt, completion). Matched by model-name prefix.
_PRICES: dict[str, tuple[float, float]] = {
    "claude-opus": (15.0, 75.0),
    "claude-sonnet": (3.0, 15.0),
    "claude-haiku": (0.8, 4.0),
    "gpt-4o-mini": (0.15, 0.6),
    "gpt-4o": (2.5, 10.0),
    "gpt-4.1-mini": (0.4, 1.6),
    "gpt-4.1": (2.0, 8.0),
}

_DEFAULT_PRICE = (3.0, 15.0)


@dataclass(frozen=True)
class UsageSnapshot:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    request_count: int = 0
    estimated_cost: float = 0.0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def __add__(self, other: UsageSnapshot) -> UsageSnapshot:
        return UsageSnapshot(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            request_count=self.request_count + other.request_count,
            estimated_cost=self.estimated_cost + other.estimated_cost,
        )


def estimate_cost(model: str, prompt_tokens: int, completion_tokens: int) -> float:
    # OpenRouter-style ids carry a vendor prefix ("anthropic/claude-...").
    name = model.rsplit("/", 1)[-1].lower()
    prompt_price, completion_price = _DEFAULT_PRICE
    for prefix in sorted(_PRICES, key=len, reverse=True):
        if name.startswith(prefix):
            prompt_price, completion_price = _PRICES[prefix]
            break
    return (prompt_tokens * prompt_price + completion_tokens * completion_price) / 1_000_000


def request_usage(model: str, prompt_tokens: int | None, completion_tokens: int | None) -> UsageSnapshot:
    """Build the delta for a single provider request."""
    prompt = int(prompt_tokens or 0)
    completion = int(completion_tokens or 0)
    return UsageSnapshot(
        prompt_tokens=prompt,
        completion_tokens=completion,
        request_count=1,
        estimated_cost=estimate_cost(model, prompt, completion),
    )


def format_usage(snapshot: UsageSnapshot) -> str:
    return (
        f"{snapshot.prompt_tokens:,} prompt + {snapshot.completion_tokens:,} completion tokens "
        f"across {snapshot.request_count} request(s), ~${snapshot.estimated_cost:.4f}"
    )


class UsageLedger:
    """Running token and cost totals shared by every concurrent request.

    Updates are serialized under a lock held only for the addition, so readers
    always see a snapshot that reflects whole deltas.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._total = UsageSnapshot()

    def record(self, delta: UsageSnapshot) -> None:
        clamped = UsageSnapshot(
            prompt_tokens=max(0, delta.prompt_tokens),
            completion_tokens=max(0, delta.completion_tokens),
            request_count=max(0, delta.request_count),
            estimated_cost=max(0.0, delta.estimated_cost),
        )
        if clamped != delta:
            logger.warning(f"Clamping negative usage delta to zero: {delta}")
        with self._lock:
            self._total = self._total + clamped

    def read(self) -> UsageSnapshot:
        with self._lock:
            return self._total
