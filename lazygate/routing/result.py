"""
Discovery outcomes and the ordered-fallback combinator.

A discovery strategy never raises for an expected miss; it returns one of
Matched / NoMatch / TransientFailure and the caller decides what to do
next based on the variant.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import List, Optional, Tuple, Union

from lazygate.logging_config import logger
from lazygate.models import ModelRoute


@dataclass(frozen=True)
class Matched:
    route: ModelRoute


@dataclass(frozen=True)
class NoMatch:
    reason: str


@dataclass(frozen=True)
class TransientFailure:
    detail: str


DiscoveryOutcome = Union[Matched, NoMatch, TransientFailure]
Strategy = Callable[[], Awaitable[DiscoveryOutcome]]


@dataclass
class FallbackResult:
    """
    Result of running strategies in order: the winning strategy (if any)
    and the outcome of every strategy that was attempted.
    """

    winner: Optional[str] = None
    route: Optional[ModelRoute] = None
    attempts: List[Tuple[str, DiscoveryOutcome]] = field(default_factory=list)

    @property
    def attempted(self) -> List[str]:
        return [name for name, _ in self.attempts]

    @property
    def succeeded(self) -> bool:
        return self.route is not None


async def try_in_order(strategies: Iterable[Tuple[str, Strategy]]) -> FallbackResult:
    """
    Run named strategies one after another and stop at the first Matched.

    An exception escaping a strategy is recorded as a TransientFailure
    for that strategy; iteration continues with the next one.
    """
    result = FallbackResult()
    for name, strategy in strategies:
        try:
            outcome = await strategy()
        except Exception as exc:
            logger.exception("Discovery strategy %s raised unexpectedly", name)
            outcome = TransientFailure(f"{type(exc).__name__}: {exc}")

        result.attempts.append((name, outcome))
        if isinstance(outcome, Matched):
            result.winner = name
            result.route = outcome.route
            return result
        if isinstance(outcome, TransientFailure):
            logger.warning("Discovery via %s failed: %s", name, outcome.detail)
        else:
            logger.info("Discovery via %s found no match: %s", name, outcome.reason)
    return result


__all__ = [
    "DiscoveryOutcome",
    "FallbackResult",
    "Matched",
    "NoMatch",
    "Strategy",
    "TransientFailure",
    "try_in_order",
]
