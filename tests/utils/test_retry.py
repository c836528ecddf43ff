import pytest

from seadeploy.errors import OperationCancelled, TransportError
from seadeploy.utils.execution import ExecutionContext
from seadeploy.utils.retry import RetryError, retry


def test_retry_succeeds_after_transient_failures():
    calls = []

    @retry(retries=3, delay=0, retry_on=(OSError,))
    def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise OSError("reset")
        return "ok"

    assert flaky() == "ok"
    assert len(calls) == 3


def test_retry_gives_up_with_cause():
    seen = []

    @retry(retries=2, delay=0, retry_on=(OSError,), on_retry=lambda attempt, exc: seen.append(attempt))
    def dead():
        raise OSError("refused")

    with pytest.raises(RetryError) as ei:
        dead()
    assert isinstance(ei.value, TransportError)
    assert isinstance(ei.value.cause, OSError)
    assert seen == [1, 2]


def test_retry_does_not_catch_other_errors():
    @retry(retries=5, delay=0, retry_on=(OSError,))
    def wrong():
        raise ValueError("bug")

    with pytest.raises(ValueError):
        wrong()


def test_execution_context_sleep_wakes_on_cancel():
    ctx = ExecutionContext()
    ctx.sleep(0)
    ctx.cancel()
    assert ctx.cancelled
    with pytest.raises(OperationCancelled):
        ctx.sleep(10)
    with pytest.raises(OperationCancelled):
        ctx.check()
