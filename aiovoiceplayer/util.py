"""Utility functions for aiovoiceplayer."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, NamedTuple, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Strategy(NamedTuple):
    """One named attempt in an ordered fallback chain."""

    name: str
    """Name used in logs and in the failure summary."""
    run: Callable[[], Awaitable[Any]]
    """Coroutine factory; returns the result or raises on failure."""


class StrategiesExhaustedError(Exception):
    """Every strategy in a chain failed."""

    def __init__(self, failures: list[tuple[str, Exception]]) -> None:
        """Record the failure of each attempted strategy, in order."""
        self.failures = failures
        summary = "; ".join(f"{name}: {err}" for name, err in failures) or "no strategies"
        super().__init__(f"All strategies failed ({summary})")

    @property
    def last_error(self) -> Exception | None:
        """Return the error raised by the last strategy."""
        return self.failures[-1][1] if self.failures else None


async def first_success(strategies: Sequence[Strategy]) -> T:
    """
    Run strategies in order and return the first successful result.

    Raises:
        StrategiesExhaustedError: If every strategy raised (or none was given).
    """
    failures: list[tuple[str, Exception]] = []
    for strategy in strategies:
        try:
            result: T = await strategy.run()
        except Exception as err:  # noqa: BLE001
            logger.debug("Strategy '%s' failed: %s", strategy.name, err)
            failures.append((strategy.name, err))
            continue
        if failures:
            logger.debug("Strategy '%s' succeeded after %d failure(s)", strategy.name, len(failures))
        return result
    raise StrategiesExhaustedError(failures)
