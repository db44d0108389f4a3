"""Model fallback: lateral retry across an ordered list of substitute models.

    result = await invoke_with_fallback("gemini-2.5-pro", TEXT_MODEL_FALLBACKS, op)

Candidates are `[preferred] + table[preferred]`. Each is tried once, in
order; the first success wins. A failed candidate is never retried.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

TEXT_MODEL_FALLBACKS: dict[str, list[str]] = {
    "gemini-2.5-pro": ["gemini-2.5-flash"],
    "gemini-3-pro-preview": ["gemini-2.5-flash"],
    "gemini-2.5-flash": ["gemini-flash-lite-latest"],
}

IMAGE_MODEL_FALLBACKS: dict[str, list[str]] = {
    "gemini-2.5-flash-image-preview": ["gemini-2.5-flash-image"],
}


class BackendExhaustedError(RuntimeError):
    """Every model in a fallback chain failed.

    `attempts` lists (model, error) pairs in the order tried; `last_error`
    is the final underlying failure, or a synthetic error when there were
    no candidates at all.
    """

    def __init__(self, preferred_model: str, attempts: Sequence[tuple[str, Exception]]) -> None:
        self.preferred_model = preferred_model
        self.attempts = list(attempts)
        if self.attempts:
            self.last_error: Exception = self.attempts[-1][1]
            tried = ", ".join(m for m, _ in self.attempts)
            msg = f"All models failed for {preferred_model or '<none>'} (tried {tried}): {self.last_error}"
        else:
            self.last_error = RuntimeError("no candidates succeeded")
            msg = f"No candidate models for {preferred_model or '<none>'}: no candidates succeeded"
        super().__init__(msg)


def candidate_models(preferred_model: str, fallback_table: Mapping[str, Sequence[str]]) -> list[str]:
    """Return the ordered models to try for `preferred_model`."""
    candidates = [preferred_model] if preferred_model else []
    candidates.extend(fallback_table.get(preferred_model, []))
    return candidates


async def invoke_with_fallback(
    preferred_model: str,
    fallback_table: Mapping[str, Sequence[str]],
    operation: Callable[[str], Awaitable[T]],
) -> T:
    """Run `operation(model)` for each candidate until one succeeds.

    Raises BackendExhaustedError (chained to the last failure) when every
    candidate fails. Cancellation (asyncio.CancelledError) is not a failure
    and propagates immediately.
    """
    attempts: list[tuple[str, Exception]] = []
    for model in candidate_models(preferred_model, fallback_table):
        try:
            return await operation(model)
        except Exception as e:
            attempts.append((model, e))
            logger.warning("Model %s failed, trying next fallback: %s", model, e)

    error = BackendExhaustedError(preferred_model, attempts)
    raise error from error.last_error
