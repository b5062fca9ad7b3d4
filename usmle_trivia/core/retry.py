"""
Retry / Backoff Policy

Decides, per error, whether and how to retry a backend call.

Every failure is reduced to one ErrorClass by `classify()`. Each class
has a RetryConfig; `RetryPolicy.execute()` retries with exponential
backoff plus random jitter until the budget for the failure's class
runs out, then raises OperationFailedError with the attempt count.

Usage:
    policy = RetryPolicy()
    session = await policy.execute(
        lambda: backend.create_session(draft),
        operation_name="create_session",
        cancel_event=cancel_event,
    )
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional, TypeVar

import httpx

from usmle_trivia.backend.base import (
    AlreadyCompletedError,
    ApplicationError,
    AuthError,
    BackendNetworkError,
    BackendTimeoutError,
    NotFoundError,
    RateLimitError,
)
from usmle_trivia.core.config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ErrorClass(str, Enum):
    NETWORK = "network"
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    APPLICATION = "application"


@dataclass(frozen=True)
class RetryConfig:
    max_retries: int
    base_delay_ms: int
    max_delay_ms: int

    def delay_ms(self, attempt: int) -> int:
        """Backoff before retry number `attempt` (0-based), without jitter."""
        return min(self.base_delay_ms * (2 ** attempt), self.max_delay_ms)


DEFAULT_RETRY_CONFIGS: Dict[ErrorClass, RetryConfig] = {
    ErrorClass.NETWORK: RetryConfig(max_retries=2, base_delay_ms=1000, max_delay_ms=10000),
    ErrorClass.TIMEOUT: RetryConfig(max_retries=2, base_delay_ms=2000, max_delay_ms=8000),
    ErrorClass.RATE_LIMIT: RetryConfig(max_retries=3, base_delay_ms=5000, max_delay_ms=30000),
    ErrorClass.APPLICATION: RetryConfig(max_retries=0, base_delay_ms=0, max_delay_ms=0),
}

_NETWORK_HINTS = ("network", "fetch failed", "connection", "failed to fetch")
_TIMEOUT_HINTS = ("timeout", "timed out", "aborted")
_RATE_LIMIT_HINTS = ("rate limit", "too many requests")


# ============================================================
# Errors
# ============================================================

class RetryError(Exception):
    """Base exception for retry-governed operations."""
    pass


class OperationFailedError(RetryError):
    """
    The operation failed and no retries remain.

    Attributes:
        operation: Name of the wrapped operation
        attempts: How many times it ran
        error_class: Class of the last failure
        last_error: The last exception raised by the operation
    """

    def __init__(
        self,
        operation: str,
        attempts: int,
        error_class: ErrorClass,
        last_error: BaseException,
    ):
        super().__init__(
            f"{operation} failed after {attempts} attempt(s) "
            f"({error_class.value}): {last_error}"
        )
        self.operation = operation
        self.attempts = attempts
        self.error_class = error_class
        self.last_error = last_error


class OperationCancelledError(RetryError):
    """The cancellation event was set before the next attempt."""

    def __init__(self, operation: str, attempts: int):
        super().__init__(f"{operation} cancelled after {attempts} attempt(s)")
        self.operation = operation
        self.attempts = attempts


# ============================================================
# Classification
# ============================================================

def _classify_status(status_code: int) -> Optional[ErrorClass]:
    if status_code == 429:
        return ErrorClass.RATE_LIMIT
    if status_code in (408, 504):
        return ErrorClass.TIMEOUT
    if status_code in (502, 503):
        return ErrorClass.NETWORK
    return None


def classify(error: BaseException) -> ErrorClass:
    """
    Reduce any exception to an ErrorClass.

    Order: typed backend errors, httpx / builtin exception types, HTTP
    status codes, then message text. Anything unmatched is APPLICATION.
    """
    if isinstance(error, OperationFailedError):
        return error.error_class

    # Typed errors from the adapter
    if isinstance(error, RateLimitError):
        return ErrorClass.RATE_LIMIT
    if isinstance(error, BackendTimeoutError):
        return ErrorClass.TIMEOUT
    if isinstance(error, BackendNetworkError):
        return ErrorClass.NETWORK
    if isinstance(error, (ApplicationError, AuthError, NotFoundError, AlreadyCompletedError)):
        return ErrorClass.APPLICATION

    # Raw transport errors
    if isinstance(error, httpx.TimeoutException):
        return ErrorClass.TIMEOUT
    if isinstance(error, httpx.TransportError):
        return ErrorClass.NETWORK
    if isinstance(error, httpx.HTTPStatusError):
        by_status = _classify_status(error.response.status_code)
        if by_status:
            return by_status
    if isinstance(error, (TimeoutError, asyncio.TimeoutError)):
        return ErrorClass.TIMEOUT
    if isinstance(error, ConnectionError):
        return ErrorClass.NETWORK

    status_code = getattr(error, "status_code", None) or getattr(error, "status", None)
    if isinstance(status_code, int):
        by_status = _classify_status(status_code)
        if by_status:
            return by_status

    message = str(error).lower()
    if any(hint in message for hint in _NETWORK_HINTS):
        return ErrorClass.NETWORK
    if any(hint in message for hint in _TIMEOUT_HINTS):
        return ErrorClass.TIMEOUT
    if any(hint in message for hint in _RATE_LIMIT_HINTS):
        return ErrorClass.RATE_LIMIT

    return ErrorClass.APPLICATION


def get_retry_config(error_class: ErrorClass) -> RetryConfig:
    return DEFAULT_RETRY_CONFIGS[error_class]


# ============================================================
# Runner
# ============================================================

class RetryPolicy:
    """
    Runs a coroutine factory with classification-driven retries.

    Stateless between calls, so one instance can be shared by every
    session manager in the process.
    """

    def __init__(
        self,
        configs: Optional[Dict[ErrorClass, RetryConfig]] = None,
        jitter_ms: Optional[int] = None,
        rng: Optional[random.Random] = None,
    ):
        """
        Args:
            configs: Per-class overrides, merged over DEFAULT_RETRY_CONFIGS
            jitter_ms: Upper bound of the uniform jitter (settings.RETRY_JITTER_MS)
            rng: Random source for jitter
        """
        self.configs = dict(DEFAULT_RETRY_CONFIGS)
        if configs:
            self.configs.update(configs)
        self.jitter_ms = settings.RETRY_JITTER_MS if jitter_ms is None else jitter_ms
        self.rng = rng or random.Random()

    def config_for(self, error_class: ErrorClass) -> RetryConfig:
        return self.configs[error_class]

    def delay_seconds(self, config: RetryConfig, attempt: int) -> float:
        jitter = self.rng.uniform(0, self.jitter_ms) if self.jitter_ms else 0
        return (config.delay_ms(attempt) + jitter) / 1000

    async def _wait(
        self,
        seconds: float,
        cancel_event: Optional[asyncio.Event],
        operation_name: str,
        attempts: int,
    ) -> None:
        if cancel_event is None:
            if seconds > 0:
                await asyncio.sleep(seconds)
            return

        if cancel_event.is_set():
            raise OperationCancelledError(operation_name, attempts)
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        raise OperationCancelledError(operation_name, attempts)

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        operation_name: str = "operation",
        cancel_event: Optional[asyncio.Event] = None,
    ) -> T:
        """
        Run `operation` until it succeeds or its retry budget is spent.

        Args:
            operation: Zero-argument callable returning a fresh awaitable
            operation_name: Used in logs and errors
            cancel_event: Once set, pending waits abort and no further
                attempt is made

        Raises:
            OperationFailedError: Budget for the failure's class exhausted
            OperationCancelledError: cancel_event was set
        """
        attempt = 0
        while True:
            if cancel_event is not None and cancel_event.is_set():
                raise OperationCancelledError(operation_name, attempt)

            try:
                return await operation()
            except RetryError:
                raise
            except Exception as e:
                error_class = classify(e)
                config = self.config_for(error_class)
                attempts = attempt + 1

                if attempt >= config.max_retries:
                    if config.max_retries:
                        logger.error(
                            f"{operation_name} failed after {attempts} attempts "
                            f"({error_class.value}): {e}"
                        )
                    raise OperationFailedError(operation_name, attempts, error_class, e) from e

                delay = self.delay_seconds(config, attempt)
                logger.warning(
                    f"{operation_name} attempt {attempts} failed ({error_class.value}): {e}. "
                    f"Retrying in {delay:.2f}s"
                )
                await self._wait(delay, cancel_event, operation_name, attempts)
                attempt += 1


__all__ = [
    "ErrorClass",
    "RetryConfig",
    "DEFAULT_RETRY_CONFIGS",
    "RetryError",
    "OperationFailedError",
    "OperationCancelledError",
    "RetryPolicy",
    "classify",
    "get_retry_config",
]
