"""Database execution strategies with exponential back-off + jitter.

An execution strategy runs *one logical database operation* and decides
whether a failure is worth repeating.  Cloud databases get
:class:`RetryingExecutionStrategy` (the server-side retry policy); local
databases get :class:`NonRetryingExecutionStrategy`, which simply calls
through.

Usage
-----

```python
strategy = RetryingExecutionStrategy(max_retry_count=6)
strategy.execute(lambda: command.upgrade(cfg, "head"))
```
"""

from __future__ import annotations

import random
import time
from abc import ABC
from abc import abstractmethod
from typing import Callable
from typing import Iterable
from typing import Optional
from typing import TypeVar

from sqlalchemy.exc import DBAPIError

from infracore.utils.log import get_logger

_T = TypeVar("_T")

# Error numbers SQL Server / Azure SQL reports for conditions that clear up on
# their own (throttling, failover, database waking up).
SQL_TRANSIENT_ERROR_NUMBERS = frozenset(
    {
        -2,  # timeout
        20,
        64,
        233,
        1205,  # deadlock victim
        10053,
        10054,
        10060,
        10928,
        10929,
        40143,
        40197,
        40501,
        40540,
        40613,
        40615,
        49918,
        49919,
        49920,
        4060,
        4221,
    }
)


def _error_numbers(exc: BaseException) -> Iterable[int]:
    orig = getattr(exc, "orig", None)
    for candidate in (orig, exc):
        if candidate is None:
            continue
        for arg in getattr(candidate, "args", ()):
            if isinstance(arg, int):
                yield arg
            elif isinstance(arg, str):
                # pyodbc packs "[SQLSTATE] ... (40613)" into the message
                for number in SQL_TRANSIENT_ERROR_NUMBERS:
                    if f"({number})" in arg:
                        yield number


def is_transient_sql_error(exc: BaseException) -> bool:  # noqa: D401 – helper
    """Return *True* if *exc* is a database error known to be transient."""

    if isinstance(exc, DBAPIError):
        if exc.connection_invalidated:
            return True
        return any(number in SQL_TRANSIENT_ERROR_NUMBERS for number in _error_numbers(exc))
    return False


class ExecutionStrategy(ABC):
    """Runs a single logical operation against the database."""

    retries_on_failure = False

    @abstractmethod
    def execute(self, operation: Callable[[], _T]) -> _T:
        """Run *operation* and return its result."""


class NonRetryingExecutionStrategy(ExecutionStrategy):
    def execute(self, operation: Callable[[], _T]) -> _T:
        return operation()


class RetryingExecutionStrategy(ExecutionStrategy):
    """Retry transient database failures with capped exponential back-off.

    Parameters
    ----------
    max_retry_count:
        Retries *after* the first attempt. ``0`` disables retry.
    base_delay:
        Initial sleep in seconds (doubles on every retry).
    max_delay:
        Upper bound for back-off sleep.
    jitter:
        0-1.0 – percentage of random noise added/subtracted from delay.
    retriable:
        Callback deciding if *exc* is worth another attempt. Defaults to
        :func:`is_transient_sql_error`.
    """

    retries_on_failure = True

    def __init__(
        self,
        *,
        max_retry_count: int = 6,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        jitter: float = 0.25,
        retriable: Optional[Callable[[BaseException], bool]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.max_retry_count = max_retry_count
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self.retriable = retriable or is_transient_sql_error
        self._sleep = sleep

    def execute(self, operation: Callable[[], _T]) -> _T:
        logger = get_logger(component="execution-strategy")
        attempt = 1
        delay = self.base_delay

        while True:
            try:
                return operation()
            except Exception as exc:
                if attempt > self.max_retry_count or not self.retriable(exc):
                    if attempt > 1:
                        logger.warning("retry_exhausted", attempts=attempt, error=str(exc))
                    raise

                sleep_for = min(delay * (1 + random.uniform(-self.jitter, self.jitter)), self.max_delay)
                logger.debug(
                    "retry",
                    attempt=attempt,
                    max_retry_count=self.max_retry_count,
                    sleep=sleep_for,
                    error=str(exc),
                )
                self._sleep(sleep_for)

                attempt += 1
                delay = min(delay * 2, self.max_delay)


__all__ = [
    "ExecutionStrategy",
    "NonRetryingExecutionStrategy",
    "RetryingExecutionStrategy",
    "SQL_TRANSIENT_ERROR_NUMBERS",
    "is_transient_sql_error",
]
