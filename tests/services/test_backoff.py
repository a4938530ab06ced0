import random

import httpx
import pytest

from app.config import Settings
from app.services import backoff as backoff_module
from app.services.backoff import BackoffExecutor, BackoffPolicy, backoff_schedule, is_retryable
from app.services.errors import UpstreamError
from tests.helpers.fakes import RecordingSleep
from tests.helpers.metrics_stub import StubMetrics


def _status_error(status_code: int) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "https://api.example.com/v2/thing")
    response = httpx.Response(status_code, request=request)
    return httpx.HTTPStatusError(f"HTTP {status_code}", request=request, response=response)


class FlakyOperation:
    def __init__(self, errors: list[Exception], result: str = "ok") -> None:
        self._errors = list(errors)
        self._result = result
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self._errors:
            raise self._errors.pop(0)
        return self._result


@pytest.mark.asyncio
async def test_always_500_retries_max_retries_times_then_raises_original(monkeypatch):
    stub = StubMetrics()
    monkeypatch.setattr(backoff_module, "metrics", stub)
    sleep = RecordingSleep()
    final_error = UpstreamError("boom 4", status_code=500)
    operation = FlakyOperation(
        [
            UpstreamError("boom 1", status_code=500),
            UpstreamError("boom 2", status_code=500),
            UpstreamError("boom 3", status_code=500),
            final_error,
        ]
    )
    executor = BackoffExecutor(BackoffPolicy(max_retries=3), sleep=sleep, rng=random.Random(7))

    with pytest.raises(UpstreamError) as excinfo:
        await executor.execute(operation, label="test")

    assert excinfo.value is final_error
    assert operation.calls == 4
    assert len(sleep.delays) == 3
    for delay, expected in zip(sleep.delays, [1.0, 2.0, 4.0]):
        assert expected * 0.8 <= delay <= expected * 1.2
    assert stub.total("backoff.retry") == 3


@pytest.mark.asyncio
async def test_recovers_after_transient_failures():
    sleep = RecordingSleep()
    operation = FlakyOperation([httpx.ConnectError("reset"), _status_error(429)], result="done")
    executor = BackoffExecutor(BackoffPolicy(max_retries=3), sleep=sleep)

    assert await executor.execute(operation) == "done"
    assert operation.calls == 3
    assert len(sleep.delays) == 2


@pytest.mark.asyncio
async def test_permanent_client_error_is_not_retried():
    sleep = RecordingSleep()
    operation = FlakyOperation([UpstreamError("bad request", status_code=400)])
    executor = BackoffExecutor(sleep=sleep)

    with pytest.raises(UpstreamError):
        await executor.execute(operation)
    assert operation.calls == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_unrelated_exceptions_propagate_immediately():
    operation = FlakyOperation([ValueError("bad json")])
    executor = BackoffExecutor(sleep=RecordingSleep())

    with pytest.raises(ValueError):
        await executor.execute(operation)
    assert operation.calls == 1


@pytest.mark.asyncio
async def test_zero_retries_makes_a_single_attempt():
    operation = FlakyOperation([UpstreamError("down", status_code=503)])
    executor = BackoffExecutor(BackoffPolicy(max_retries=0), sleep=RecordingSleep())

    with pytest.raises(UpstreamError):
        await executor.execute(operation)
    assert operation.calls == 1


def test_schedule_caps_at_max_delay_without_jitter():
    policy = BackoffPolicy(max_retries=6, initial_delay=1.0, max_delay=10.0, multiplier=2.0, jitter=0.0)

    delays = [delay for _, delay in backoff_schedule(policy)]

    assert delays == [1.0, 2.0, 4.0, 8.0, 10.0, 10.0]


def test_schedule_jitter_stays_within_twenty_percent():
    policy = BackoffPolicy(max_retries=5)
    rng = random.Random(1234)

    for _ in range(50):
        for retry_number, delay in backoff_schedule(policy, rng=rng):
            base = policy.base_delay(retry_number - 1)
            assert base * 0.8 <= delay <= base * 1.2


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (httpx.ReadTimeout("slow"), True),
        (_status_error(500), True),
        (_status_error(503), True),
        (_status_error(429), True),
        (_status_error(404), False),
        (_status_error(401), False),
        (UpstreamError("network"), True),
        (UpstreamError("conflict", status_code=409), False),
        (RuntimeError("other"), False),
    ],
)
def test_is_retryable_classification(error, expected):
    assert is_retryable(error) is expected


def test_policy_from_settings_honours_overrides():
    config = Settings(backoff_max_retries=5, backoff_initial_delay_seconds=0.5, backoff_jitter=0.1)

    policy = BackoffPolicy.from_settings(config, max_retries=2)

    assert policy.max_retries == 2
    assert policy.initial_delay == 0.5
    assert policy.jitter == 0.1


def test_policy_rejects_invalid_jitter():
    with pytest.raises(ValueError):
        BackoffPolicy(jitter=1.5)
