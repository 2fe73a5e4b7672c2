from unittest.mock import Mock, call

import pytest

from cardprotocol.blockchain.upgrade.retry import RetryingExecutor, nonce_increased
from cardprotocol.protocol.types.common import ExecutionReverted, TransientRPCError


class Flaky:
    """Fails transiently ``failures`` times, then returns ``result``."""

    def __init__(self, failures, result="ok", error=TransientRPCError):
        self.failures = failures
        self.result = result
        self.error = error
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error(f"failure {self.calls}")
        return self.result


def test_transient_errors_are_retried():
    operation = Flaky(failures=2)
    executor = RetryingExecutor(max_attempts=3)

    assert executor.run(operation) == "ok"
    assert operation.calls == 3


def test_last_transient_error_propagates():
    operation = Flaky(failures=5)
    executor = RetryingExecutor(max_attempts=3)

    with pytest.raises(TransientRPCError, match="failure 3"):
        executor.run(operation)
    assert operation.calls == 3


def test_other_errors_propagate_immediately():
    operation = Flaky(failures=1, error=ExecutionReverted)
    executor = RetryingExecutor(max_attempts=5)

    with pytest.raises(ExecutionReverted):
        executor.run(operation)
    assert operation.calls == 1


def test_per_call_attempt_override():
    operation = Flaky(failures=3)
    executor = RetryingExecutor(max_attempts=2)

    assert executor.run(operation, max_attempts=4) == "ok"
    assert operation.calls == 4


def test_backoff_grows_linearly():
    sleep = Mock()
    executor = RetryingExecutor(max_attempts=4, backoff=0.5, sleep=sleep)

    executor.run(Flaky(failures=3))

    assert sleep.call_args_list == [call(0.5), call(1.0), call(1.5)]


def test_no_sleep_without_backoff():
    sleep = Mock()
    RetryingExecutor(max_attempts=3, sleep=sleep).run(Flaky(failures=2))
    sleep.assert_not_called()


def test_custom_transient_errors():
    executor = RetryingExecutor(max_attempts=2, transient=(ConnectionError,))
    operation = Flaky(failures=1, error=ConnectionError)

    assert executor.run(operation) == "ok"


def test_invalid_attempt_bound():
    with pytest.raises(ValueError):
        RetryingExecutor(max_attempts=0)


def test_run_and_wait_polls_condition():
    checks = []

    def condition():
        checks.append(True)
        return len(checks) >= 3

    executor = RetryingExecutor(max_attempts=5)
    assert executor.run_and_wait(lambda: 42, condition) == 42
    assert len(checks) == 3


def test_run_and_wait_gives_up():
    executor = RetryingExecutor(max_attempts=2)

    with pytest.raises(TransientRPCError, match="post-condition"):
        executor.run_and_wait(lambda: None, lambda: False, description="setup")


def test_nonce_increased(chain, owner):
    condition = nonce_increased(chain, owner)
    assert not condition()

    chain.deploy(owner, "ProxyAdmin")
    assert condition()


def test_default_bound_allows_five_attempts():
    operation = Flaky(failures=4)

    assert RetryingExecutor().run(operation) == "ok"
    assert operation.calls == 5


def test_default_bound_surfaces_fifth_failure():
    operation = Flaky(failures=5)

    with pytest.raises(TransientRPCError, match="failure 5"):
        RetryingExecutor().run(operation)
    assert operation.calls == 5
