"""Ordered fallback chains as declarative strategy lists."""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, List, Optional, Sequence, Tuple, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class Strategy(Generic[T]):
    """One named way of producing a result."""
    name: str
    run: Callable[[], Awaitable[T]]
    timeout: Optional[float] = None


@dataclass
class StrategyResult(Generic[T]):
    """Winning strategy and the errors of those tried before it."""
    name: str
    value: T
    failures: List[Tuple[str, Exception]]


class AllStrategiesFailed(Exception):
    """Every strategy in the chain failed."""

    def __init__(self, failures: List[Tuple[str, Exception]]):
        self.failures = failures
        summary = "; ".join(f"{name}: {error}" for name, error in failures)
        super().__init__(f"All strategies failed ({summary})" if failures else "No strategies to run")

    @property
    def last_error(self) -> Optional[Exception]:
        return self.failures[-1][1] if self.failures else None


async def run_strategies(
    strategies: Sequence[Strategy],
    on_failure: Optional[Callable[[str, Exception], Any]] = None,
) -> StrategyResult:
    """
    Evaluate strategies in order and return the first success.

    Each strategy is bounded by its own timeout. A timeout counts as a
    failure of that strategy only.

    Args:
        strategies: Ordered strategies
        on_failure: Optional callback(name, error), may be async

    Raises:
        AllStrategiesFailed: carrying every (name, error) pair
    """
    failures: List[Tuple[str, Exception]] = []

    for strategy in strategies:
        try:
            if strategy.timeout is not None:
                value = await asyncio.wait_for(strategy.run(), timeout=strategy.timeout)
            else:
                value = await strategy.run()
        except asyncio.TimeoutError:
            error: Exception = TimeoutError(f"{strategy.name} timed out after {strategy.timeout:.0f}s")
        except Exception as e:
            error = e
        else:
            if failures:
                logger.info(f"Strategy '{strategy.name}' succeeded after {len(failures)} failure(s)")
            return StrategyResult(name=strategy.name, value=value, failures=failures)

        logger.warning(f"Strategy '{strategy.name}' failed: {error}")
        failures.append((strategy.name, error))
        if on_failure is not None:
            outcome = on_failure(strategy.name, error)
            if asyncio.iscoroutine(outcome):
                await outcome

    raise AllStrategiesFailed(failures)
