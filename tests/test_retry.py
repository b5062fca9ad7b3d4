import asyncio
import random

import httpx
import pytest

from usmle_trivia.backend.base import (
    AlreadyCompletedError,
    ApplicationError,
    AuthError,
    BackendNetworkError,
    BackendTimeoutError,
    NotFoundError,
    RateLimitError,
)
from usmle_trivia.core.retry import (
    DEFAULT_RETRY_CONFIGS,
    ErrorClass,
    OperationCancelledError,
    OperationFailedError,
    RetryConfig,
    RetryPolicy,
    classify,
    get_retry_config,
)

from conftest import fast_retry_policy


class Script:
    """Callable that raises the given errors in order, then returns `result`."""

    def __init__(self, *errors, result="ok"):
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


def _status_error(status_code: int) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "http://backend.test/rest/v1/questions")
    response = httpx.Response(status_code, request=request)
    return httpx.HTTPStatusError("error", request=request, response=response)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

def test_default_configs():
    assert get_retry_config(ErrorClass.NETWORK) == RetryConfig(2, 1000, 10000)
    assert get_retry_config(ErrorClass.TIMEOUT) == RetryConfig(2, 2000, 8000)
    assert get_retry_config(ErrorClass.RATE_LIMIT) == RetryConfig(3, 5000, 30000)
    assert get_retry_config(ErrorClass.APPLICATION) == RetryConfig(0, 0, 0)
    assert set(DEFAULT_RETRY_CONFIGS) == set(ErrorClass)


def test_delay_doubles_and_is_capped():
    config = get_retry_config(ErrorClass.NETWORK)
    assert [config.delay_ms(n) for n in range(5)] == [1000, 2000, 4000, 8000, 10000]

    timeout = get_retry_config(ErrorClass.TIMEOUT)
    assert timeout.delay_ms(0) == 2000
    assert timeout.delay_ms(3) == 8000


def test_jitter_stays_within_bound():
    policy = RetryPolicy(jitter_ms=500, rng=random.Random(7))
    config = get_retry_config(ErrorClass.NETWORK)
    for _ in range(50):
        delay = policy.delay_seconds(config, 0)
        assert 1.0 <= delay <= 1.5


def test_zero_jitter_is_exact():
    policy = RetryPolicy(jitter_ms=0)
    assert policy.delay_seconds(get_retry_config(ErrorClass.RATE_LIMIT), 1) == 10.0


def test_config_overrides_merge_over_defaults():
    policy = RetryPolicy(configs={ErrorClass.NETWORK: RetryConfig(5, 10, 20)})
    assert policy.config_for(ErrorClass.NETWORK).max_retries == 5
    assert policy.config_for(ErrorClass.TIMEOUT) == get_retry_config(ErrorClass.TIMEOUT)


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

@pytest.mark.parametrize(
    "error, expected",
    [
        (BackendNetworkError("reset"), ErrorClass.NETWORK),
        (BackendTimeoutError("slow"), ErrorClass.TIMEOUT),
        (RateLimitError("slow down"), ErrorClass.RATE_LIMIT),
        (ApplicationError("constraint"), ErrorClass.APPLICATION),
        (AuthError("expired"), ErrorClass.APPLICATION),
        (NotFoundError("missing"), ErrorClass.APPLICATION),
        (AlreadyCompletedError("done"), ErrorClass.APPLICATION),
        (httpx.ConnectError("refused"), ErrorClass.NETWORK),
        (httpx.ReadTimeout("read"), ErrorClass.TIMEOUT),
        (_status_error(429), ErrorClass.RATE_LIMIT),
        (_status_error(504), ErrorClass.TIMEOUT),
        (_status_error(503), ErrorClass.NETWORK),
        (asyncio.TimeoutError(), ErrorClass.TIMEOUT),
        (ConnectionResetError("peer"), ErrorClass.NETWORK),
        (Exception("TypeError: Failed to fetch"), ErrorClass.NETWORK),
        (Exception("request timed out"), ErrorClass.TIMEOUT),
        (Exception("429 Too Many Requests"), ErrorClass.RATE_LIMIT),
        (ValueError("malformed row"), ErrorClass.APPLICATION),
    ],
)
def test_classify(error, expected):
    assert classify(error) == expected


def test_classify_status_attribute():
    class GatewayError(Exception):
        status_code = 502

    class ThrottledError(Exception):
        status = 429

    assert classify(GatewayError("bad gateway")) == ErrorClass.NETWORK
    assert classify(ThrottledError("throttled")) == ErrorClass.RATE_LIMIT


def test_application_errors_never_retry_even_with_transient_wording():
    # Typed errors win over message hints
    assert classify(ApplicationError("connection string invalid")) == ErrorClass.APPLICATION


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------

def test_success_after_transient_failures():
    operation = Script(BackendNetworkError("reset"), BackendTimeoutError("slow"), result=42)
    result = asyncio.run(fast_retry_policy().execute(operation, operation_name="fetch"))
    assert result == 42
    assert operation.calls == 3


def test_application_error_fails_on_first_attempt():
    operation = Script(ApplicationError("check constraint"))
    with pytest.raises(OperationFailedError) as exc_info:
        asyncio.run(fast_retry_policy().execute(operation, operation_name="create_session"))

    error = exc_info.value
    assert operation.calls == 1
    assert error.attempts == 1
    assert error.error_class == ErrorClass.APPLICATION
    assert error.operation == "create_session"
    assert isinstance(error.last_error, ApplicationError)


def test_network_budget_is_three_attempts():
    operation = Script(*[BackendNetworkError("down")] * 5)
    with pytest.raises(OperationFailedError) as exc_info:
        asyncio.run(fast_retry_policy().execute(operation))
    assert operation.calls == 3
    assert exc_info.value.attempts == 3
    assert exc_info.value.error_class == ErrorClass.NETWORK


def test_rate_limit_budget_is_four_attempts():
    operation = Script(*[RateLimitError("429")] * 10)
    with pytest.raises(OperationFailedError) as exc_info:
        asyncio.run(fast_retry_policy().execute(operation))
    assert operation.calls == 4
    assert exc_info.value.error_class == ErrorClass.RATE_LIMIT


def test_budget_follows_class_of_latest_failure():
    # Two timeouts use the timeout budget, then an application error ends it at once
    operation = Script(
        BackendTimeoutError("slow"), BackendTimeoutError("slow"), ApplicationError("bad row")
    )
    with pytest.raises(OperationFailedError) as exc_info:
        asyncio.run(fast_retry_policy().execute(operation))
    assert operation.calls == 3
    assert exc_info.value.error_class == ErrorClass.APPLICATION


def test_cancel_before_first_attempt():
    async def run():
        event = asyncio.Event()
        event.set()
        operation = Script()
        with pytest.raises(OperationCancelledError) as exc_info:
            await fast_retry_policy().execute(operation, cancel_event=event)
        return operation, exc_info.value

    operation, error = asyncio.run(run())
    assert operation.calls == 0
    assert error.attempts == 0


def test_cancel_interrupts_backoff_wait():
    async def run():
        event = asyncio.Event()
        operation = Script(*[BackendNetworkError("down")] * 3)
        # Real one-second backoff; cancellation must cut it short
        policy = RetryPolicy(jitter_ms=0)
        asyncio.get_running_loop().call_later(0.05, event.set)
        started = asyncio.get_running_loop().time()
        with pytest.raises(OperationCancelledError):
            await policy.execute(operation, operation_name="fetch", cancel_event=event)
        return operation, asyncio.get_running_loop().time() - started

    operation, elapsed = asyncio.run(run())
    assert operation.calls == 1
    assert elapsed < 0.9


def test_nested_retry_errors_pass_through():
    inner = OperationFailedError("inner", 3, ErrorClass.NETWORK, BackendNetworkError("down"))
    operation = Script(inner)
    with pytest.raises(OperationFailedError) as exc_info:
        asyncio.run(fast_retry_policy().execute(operation, operation_name="outer"))
    assert exc_info.value is inner
    assert operation.calls == 1
