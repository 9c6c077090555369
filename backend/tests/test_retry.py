"""Tests for the database execution strategies."""

import pytest
from sqlalchemy.exc import OperationalError

from infracore.utils.retry import ExecutionStrategy
from infracore.utils.retry import NonRetryingExecutionStrategy
from infracore.utils.retry import RetryingExecutionStrategy
from infracore.utils.retry import is_transient_sql_error


def _sql_error(number, message="database unavailable"):
    return OperationalError("SELECT 1", {}, Exception(number, message))


class Flaky:
    def __init__(self, *errors):
        self.errors = list(errors)
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return "done"


def test_transient_numbers_are_recognised():
    assert is_transient_sql_error(_sql_error(40613))
    assert is_transient_sql_error(_sql_error("HYT00", "Login timeout expired (40501)"))
    assert not is_transient_sql_error(_sql_error(2714, "There is already an object named 'users'"))
    assert not is_transient_sql_error(RuntimeError("40613"))


def test_retries_transient_errors_with_backoff(recording_sleep):
    operation = Flaky(_sql_error(40613), _sql_error(40197))
    strategy = RetryingExecutionStrategy(jitter=0.0, sleep=recording_sleep)

    assert strategy.execute(operation) == "done"
    assert operation.calls == 3
    assert recording_sleep.calls == [1.0, 2.0]


def test_delay_is_capped(recording_sleep):
    operation = Flaky(*[_sql_error(40613) for _ in range(4)])
    strategy = RetryingExecutionStrategy(base_delay=10.0, max_delay=15.0, jitter=0.0, sleep=recording_sleep)

    strategy.execute(operation)

    assert recording_sleep.calls == [10.0, 15.0, 15.0, 15.0]


def test_gives_up_after_max_retry_count(recording_sleep):
    operation = Flaky(*[_sql_error(40613) for _ in range(10)])
    strategy = RetryingExecutionStrategy(max_retry_count=2, jitter=0.0, sleep=recording_sleep)

    with pytest.raises(OperationalError):
        strategy.execute(operation)

    assert operation.calls == 3
    assert len(recording_sleep.calls) == 2


def test_non_transient_errors_are_raised_immediately(recording_sleep):
    operation = Flaky(_sql_error(2714))
    strategy = RetryingExecutionStrategy(sleep=recording_sleep)

    with pytest.raises(OperationalError):
        strategy.execute(operation)

    assert operation.calls == 1
    assert recording_sleep.calls == []


def test_non_retrying_strategy_calls_once():
    operation = Flaky(_sql_error(40613))

    with pytest.raises(OperationalError):
        NonRetryingExecutionStrategy().execute(operation)

    assert operation.calls == 1


def test_execution_strategy_requires_execute():
    with pytest.raises(TypeError):
        ExecutionStrategy()

    class Incomplete(ExecutionStrategy):
        pass

    with pytest.raises(TypeError):
        Incomplete()
