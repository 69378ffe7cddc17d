"""Tests for backoff computation and the retry executor."""
import pytest

from fakes import RecordingSleep
from handoff_relay.errors import ErrorKind, HandoffError
from handoff_relay.retry import RetryConfig, RetryExecutor, RetryableOperation, compute_delay


def _no_jitter(lo, hi):
    return 0.0


class Flaky:
    """Raises ``errors`` in order, then returns ``result``."""

    def __init__(self, errors, result="ok"):
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


def _transient(message="upstream unavailable"):
    return HandoffError(ErrorKind.TRANSIENT_INFRA, message)


def test_compute_delay_doubles_per_attempt():
    config = RetryConfig(base_delay=1.0, max_delay=30.0)
    assert [compute_delay(n, config, _no_jitter) for n in (1, 2, 3)] == [1.0, 2.0, 4.0]


def test_compute_delay_is_capped():
    config = RetryConfig(base_delay=1.0, max_delay=30.0)
    assert compute_delay(10, config, _no_jitter) == 30.0
    assert compute_delay(10, config, lambda lo, hi: hi) == 30.0


def test_compute_delay_jitter_bounds():
    config = RetryConfig(base_delay=1.0, max_delay=30.0, jitter=0.25)
    assert compute_delay(1, config, lambda lo, hi: lo) == pytest.approx(0.75)
    assert compute_delay(1, config, lambda lo, hi: hi) == pytest.approx(1.25)


def test_succeeds_after_transient_failures():
    sleep = RecordingSleep()
    successes = []
    executor = RetryExecutor(RetryConfig(max_attempts=3), sleep=sleep, rand=_no_jitter)
    flaky = Flaky([_transient(), _transient()])

    result = executor.with_retry(RetryableOperation(execute=flaky, on_success=successes.append, name="deliver"))

    assert result == "ok"
    assert flaky.calls == 3
    assert sleep.delays == [1.0, 2.0]
    assert successes == ["ok"]


def test_exhaustion_raises_and_calls_final_hook_once():
    sleep = RecordingSleep()
    failures = []
    executor = RetryExecutor(RetryConfig(max_attempts=3), sleep=sleep, rand=_no_jitter)
    flaky = Flaky([_transient("a"), _transient("b"), _transient("c")])

    with pytest.raises(HandoffError) as info:
        executor.with_retry(
            RetryableOperation(
                execute=flaky,
                on_final_failure=lambda err, attempts: failures.append((str(err), attempts)),
            )
        )

    assert info.value.kind is ErrorKind.RETRY_EXHAUSTED
    assert info.value.details["attempts"] == 3
    assert info.value.details["last_error"] == "c"
    assert isinstance(info.value.__cause__, HandoffError)
    assert failures == [("c", 3)]
    assert sleep.delays == [1.0, 2.0]


def test_non_retryable_error_is_not_retried():
    sleep = RecordingSleep()
    failures = []
    executor = RetryExecutor(RetryConfig(max_attempts=5), sleep=sleep, rand=_no_jitter)
    flaky = Flaky([HandoffError(ErrorKind.VALIDATION, "bad payload")])

    with pytest.raises(HandoffError) as info:
        executor.with_retry(RetryableOperation(execute=flaky, on_final_failure=lambda e, n: failures.append(n)))

    assert info.value.kind is ErrorKind.RETRY_EXHAUSTED
    assert flaky.calls == 1
    assert sleep.delays == []
    assert failures == [1]


def test_unexpected_exceptions_are_retried():
    sleep = RecordingSleep()
    executor = RetryExecutor(RetryConfig(max_attempts=2), sleep=sleep, rand=_no_jitter)
    flaky = Flaky([RuntimeError("socket reset")], result=42)
    assert executor.with_retry(RetryableOperation(execute=flaky)) == 42
    assert sleep.delays == [1.0]


def test_per_call_config_overrides_default():
    sleep = RecordingSleep()
    executor = RetryExecutor(RetryConfig(max_attempts=5), sleep=sleep, rand=_no_jitter)
    flaky = Flaky([_transient()] * 5)
    with pytest.raises(HandoffError):
        executor.with_retry(RetryableOperation(execute=flaky), RetryConfig(max_attempts=2, base_delay=0.5))
    assert flaky.calls == 2
    assert sleep.delays == [0.5]


@pytest.mark.parametrize("jitter_pick", ["lo", "hi", "mid"])
def test_delays_never_exceed_cap_and_total_grows(jitter_pick):
    config = RetryConfig(max_attempts=8, base_delay=1.0, max_delay=10.0, jitter=0.25)
    picks = {"lo": lambda lo, hi: lo, "hi": lambda lo, hi: hi, "mid": lambda lo, hi: (lo + hi) / 2}
    sleep = RecordingSleep()
    executor = RetryExecutor(config, sleep=sleep, rand=picks[jitter_pick])

    with pytest.raises(HandoffError):
        executor.with_retry(RetryableOperation(execute=Flaky([_transient()] * 8)))

    assert len(sleep.delays) == 7
    assert all(0 <= d <= config.max_delay for d in sleep.delays)
    totals = [sum(sleep.delays[: i + 1]) for i in range(len(sleep.delays))]
    assert totals == sorted(totals)


def test_max_attempts_floor_is_one():
    executor = RetryExecutor(RetryConfig(max_attempts=0), sleep=RecordingSleep(), rand=_no_jitter)
    flaky = Flaky([], result="done")
    assert executor.with_retry(RetryableOperation(execute=flaky)) == "done"
    assert flaky.calls == 1
