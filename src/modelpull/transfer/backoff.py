"""
Backoff strategies and retry driver for remote transfers.

Strategies are lazy, possibly infinite iterators of delays in milliseconds.
Callers bound them with ``take(n)``; the retry driver stops retrying once the
strategy is exhausted.

- FixedInterval: constant delay
- ExponentialBackoff: base, base^2, base^3 ... (times factor)
- FibonacciBackoff: base, base, 2*base, 3*base, 5*base ... (times factor)
- Jitter helpers: randomized scaling, optional seeded RNG for deterministic tests
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import random
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, TypeVar

from modelpull.errors import is_retryable

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable, Iterator

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Largest representable delay; every step saturates here instead of overflowing.
MAX_DELAY_MS = 2**64 - 1


def _saturating_mul(a: int, b: int) -> int:
    return min(a * b, MAX_DELAY_MS)


def _saturating_add(a: int, b: int) -> int:
    return min(a + b, MAX_DELAY_MS)


class _Strategy:
    """Iterator mixin shared by all strategies."""

    def __iter__(self) -> Iterator[int]:
        return self

    def __next__(self) -> int:
        raise NotImplementedError

    def take(self, n: int) -> Iterator[int]:
        """Bound the strategy to at most ``n`` delays."""
        return itertools.islice(self, n)


@dataclass
class FixedInterval(_Strategy):
    """Always yields the same delay."""

    delay_ms: int

    @classmethod
    def from_millis(cls, millis: int) -> FixedInterval:
        return cls(delay_ms=millis)

    def __next__(self) -> int:
        return self.delay_ms


@dataclass
class ExponentialBackoff(_Strategy):
    """
    Exponential delays: each step yields ``current * factor`` then multiplies
    ``current`` by ``base``.

    Once a computed delay exceeds ``max_delay_ms`` the strategy yields
    ``max_delay_ms`` for that step and every step after it.
    """

    base: int
    factor: int = 1
    max_delay_ms: int | None = None
    _current: int = field(default=0, init=False, repr=False)

    def __post_init__(self) -> None:
        self._current = self.base

    @classmethod
    def from_millis(cls, base: int) -> ExponentialBackoff:
        return cls(base=base)

    def with_factor(self, factor: int) -> ExponentialBackoff:
        self.factor = factor
        return self

    def with_max_delay(self, max_delay_ms: int) -> ExponentialBackoff:
        self.max_delay_ms = max_delay_ms
        return self

    def __next__(self) -> int:
        delay = _saturating_mul(self._current, self.factor)
        if self.max_delay_ms is not None and delay > self.max_delay_ms:
            return self.max_delay_ms
        self._current = _saturating_mul(self._current, self.base)
        return delay


@dataclass
class FibonacciBackoff(_Strategy):
    """
    Fibonacci delays: ``base, base, 2*base, 3*base, 5*base, ...`` times factor.

    Same ``max_delay_ms`` clamp rule as ExponentialBackoff.
    """

    base: int
    factor: int = 1
    max_delay_ms: int | None = None
    _current: int = field(default=0, init=False, repr=False)
    _next: int = field(default=0, init=False, repr=False)

    def __post_init__(self) -> None:
        self._current = self.base
        self._next = self.base

    @classmethod
    def from_millis(cls, base: int) -> FibonacciBackoff:
        return cls(base=base)

    def with_factor(self, factor: int) -> FibonacciBackoff:
        self.factor = factor
        return self

    def with_max_delay(self, max_delay_ms: int) -> FibonacciBackoff:
        self.max_delay_ms = max_delay_ms
        return self

    def __next__(self) -> int:
        delay = _saturating_mul(self._current, self.factor)
        if self.max_delay_ms is not None and delay > self.max_delay_ms:
            return self.max_delay_ms
        self._current, self._next = self._next, _saturating_add(self._current, self._next)
        return delay


def jitter(delay_ms: int, *, rng: random.Random | None = None) -> int:
    """
    Scale a delay by a uniform random factor in [0, 1).

    Args:
        delay_ms: Delay to scale.
        rng: Optional seeded Random instance for deterministic jitter.

    Returns:
        Jittered delay in milliseconds.
    """
    sample = rng.random() if rng is not None else random.random()
    return int(delay_ms * sample)


def jitter_range(
    low: float,
    high: float,
    *,
    rng: random.Random | None = None,
) -> Callable[[int], int]:
    """
    Build a jitter function scaling delays by a uniform factor in [low, high).

    Args:
        low: Lower bound of the scaling factor.
        high: Upper bound of the scaling factor.
        rng: Optional seeded Random instance for deterministic jitter.

    Returns:
        Function mapping a delay to its jittered value.
    """
    if high < low:
        msg = f"jitter_range requires low <= high, got {low} > {high}"
        raise ValueError(msg)

    def apply(delay_ms: int) -> int:
        sample = rng.random() if rng is not None else random.random()
        return int(delay_ms * (low + (high - low) * sample))

    return apply


def with_jitter(
    strategy: Iterable[int],
    jitter_fn: Callable[[int], int] = jitter,
) -> Iterator[int]:
    """Apply ``jitter_fn`` to every delay of a strategy."""
    return (jitter_fn(delay) for delay in strategy)


async def sleep_ms(delay_ms: int) -> None:
    await asyncio.sleep(delay_ms / 1000)


async def with_retry(
    strategy: Iterable[int],
    action: Callable[[], Awaitable[T]],
    *,
    sleep: Callable[[int], Awaitable[None]] = sleep_ms,
) -> T:
    """
    Run ``action`` until it succeeds or the strategy is exhausted.

    Args:
        strategy: Delays (ms) to wait between attempts.
        action: Parameterless callable returning an awaitable result.
        sleep: Sleep coroutine taking milliseconds (injectable for tests).

    Returns:
        The first successful result.

    Raises:
        Exception: The last failure once no further delay is available.
    """
    return await with_retry_if(strategy, action, lambda _exc: True, sleep=sleep)


async def with_retry_if(
    strategy: Iterable[int],
    action: Callable[[], Awaitable[T]],
    predicate: Callable[[Exception], bool],
    *,
    sleep: Callable[[int], Awaitable[None]] = sleep_ms,
) -> T:
    """
    Like ``with_retry`` but only retries while ``predicate(error)`` is true.

    A false predicate re-raises immediately without consuming a delay.

    Args:
        strategy: Delays (ms) to wait between attempts.
        action: Parameterless callable returning an awaitable result.
        predicate: Decides whether a failure is worth retrying.
        sleep: Sleep coroutine taking milliseconds (injectable for tests).

    Returns:
        The first successful result.

    Raises:
        Exception: The failure that stopped the retry loop.
    """
    delays = iter(strategy)
    attempt = 0
    while True:
        attempt += 1
        try:
            return await action()
        except Exception as e:
            if not predicate(e):
                logger.warning(
                    "Attempt failed with non-retryable error",
                    extra={"attempt": attempt, "error": repr(e)},
                )
                raise
            delay_ms = next(delays, None)
            if delay_ms is None:
                logger.warning(
                    "Attempt failed, retries exhausted",
                    extra={"attempt": attempt, "error": repr(e)},
                )
                raise
            logger.warning(
                "Attempt failed, retrying",
                extra={"attempt": attempt, "delay_ms": delay_ms, "error": repr(e)},
            )
            await sleep(delay_ms)


async def with_retry_on_transient(
    strategy: Iterable[int],
    action: Callable[[], Awaitable[T]],
    *,
    sleep: Callable[[int], Awaitable[None]] = sleep_ms,
) -> T:
    """Retry only network and timeout failures; everything else is fatal."""
    return await with_retry_if(strategy, action, is_retryable, sleep=sleep)
