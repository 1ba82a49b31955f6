"""Best-of-N attempts over a noisy extraction step.

Runs an ordered list of attempts one after another, keeps the best-scoring
result, and stops early once a score reaches the confidence threshold. An
attempt that raises, returns nothing, or exceeds its time budget is skipped.
Progress of the individual attempts is folded into one 0..1 value for the
whole list.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Generic, List, Optional, Sequence, TypeVar

logger = logging.getLogger("idverify.ocr")

T = TypeVar("T")

ProgressCallback = Callable[[float], None]


@dataclass
class Attempt(Generic[T]):
    """One named strategy; ``run`` receives a 0..1 progress callback."""
    name: str
    run: Callable[[ProgressCallback], Awaitable[Optional[T]]]


@dataclass
class BestOfResult(Generic[T]):
    best: Optional[T] = None
    best_score: float = 0
    best_attempt: Optional[str] = None
    tried: List[str] = field(default_factory=list)
    failures: List[str] = field(default_factory=list)
    stopped_early: bool = False


class _ProgressFold:
    """Maps per-attempt progress into the [i/N, (i+1)/N) slot of the whole run."""

    def __init__(self, total: int, callback: Optional[ProgressCallback]):
        self.total = max(1, total)
        self.callback = callback
        self.reported = 0.0

    def emit(self, value: float) -> None:
        value = min(1.0, max(self.reported, value))
        self.reported = value
        if self.callback is not None:
            self.callback(value)

    def for_attempt(self, index: int) -> ProgressCallback:
        def report(fraction: float) -> None:
            fraction = min(1.0, max(0.0, fraction or 0.0))
            # stay strictly inside this attempt's slot until it finishes
            self.emit((index + min(fraction, 0.999)) / self.total)
        return report


async def best_of(
    attempts: Sequence[Attempt[T]],
    score: Callable[[T], float],
    threshold: Optional[float] = None,
    timeout: Optional[float] = None,
    on_progress: Optional[ProgressCallback] = None,
) -> BestOfResult[T]:
    """Fold *attempts* into the best-scoring result.

    A result replaces the current best only when it scores strictly higher,
    so a zero-score result never displaces "nothing found".
    """
    outcome: BestOfResult[T] = BestOfResult()
    progress = _ProgressFold(len(attempts), on_progress)

    for index, attempt in enumerate(attempts):
        outcome.tried.append(attempt.name)
        logger.info("Trying %s (%d/%d)", attempt.name, index + 1, len(attempts))

        try:
            coro = attempt.run(progress.for_attempt(index))
            if timeout:
                result = await asyncio.wait_for(coro, timeout)
            else:
                result = await coro
        except asyncio.TimeoutError:
            logger.warning("%s exceeded %.1fs, skipping", attempt.name, timeout)
            outcome.failures.append(attempt.name)
            continue
        except Exception:
            logger.warning("%s failed, skipping", attempt.name, exc_info=True)
            outcome.failures.append(attempt.name)
            continue
        finally:
            progress.emit((index + 1) / progress.total)

        if result is None:
            logger.warning("%s produced no result", attempt.name)
            outcome.failures.append(attempt.name)
            continue

        value = score(result)
        logger.info("%s score: %s", attempt.name, value)
        if value > outcome.best_score:
            outcome.best = result
            outcome.best_score = value
            outcome.best_attempt = attempt.name
            logger.info("New best result from %s", attempt.name)

        if threshold is not None and value >= threshold:
            logger.info("Score %s reached %s, stopping early", value, threshold)
            outcome.stopped_early = index < len(attempts) - 1
            break

    progress.emit(1.0)
    return outcome
