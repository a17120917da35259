"""
Bounded retries for calls to the metering service.

Every usage event carries an idempotency key, so repeating a submission after
a transient failure never bills twice. ``call_with_retry`` wraps tenacity and
returns a ``CallResult`` instead of raising, which lets callers tell an
exhausted retry budget apart from a success or a non-retryable rejection.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from metering.errors import MeteringError, MeteringTransientError
from metering.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class CallResult(Generic[T]):
    """Outcome of a retried call."""

    ok: bool
    value: T | None = None
    error: str | None = None
    attempts: int = 0
    exhausted: bool = False

    @classmethod
    def success(cls, value: T, attempts: int) -> "CallResult[T]":
        return cls(ok=True, value=value, attempts=attempts)

    @classmethod
    def failure(cls, error: BaseException, attempts: int, exhausted: bool) -> "CallResult[T]":
        return cls(ok=False, error=str(error) or type(error).__name__, attempts=attempts, exhausted=exhausted)


async def call_with_retry(
    func: Callable[..., Awaitable[T]],
    *args,
    max_attempts: int = 3,
    delay_seconds: float = 1.0,
    retry_on: tuple[type[BaseException], ...] = (MeteringTransientError,),
    give_up_on: tuple[type[BaseException], ...] = (MeteringError,),
    **kwargs,
) -> CallResult[T]:
    """
    Await ``func(*args, **kwargs)`` up to ``max_attempts`` times.

    Exceptions in ``retry_on`` are retried after a fixed delay. Exceptions in
    ``give_up_on`` end the call immediately with a failed result. Anything
    else propagates to the caller unchanged.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    attempts = 0
    retrying = AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_fixed(delay_seconds),
        retry=retry_if_exception_type(retry_on),
        reraise=False,
    )
    try:
        async for attempt in retrying:
            with attempt:
                attempts = attempt.retry_state.attempt_number
                if attempts > 1:
                    logger.debug("retrying_call", func=getattr(func, "__name__", "call"), attempt=attempts)
                value = await func(*args, **kwargs)
    except RetryError as e:
        last = e.last_attempt.exception()
        logger.warning("retries_exhausted", attempts=attempts, error=str(last))
        return CallResult.failure(last, attempts=attempts, exhausted=True)
    except (*retry_on, *give_up_on) as e:
        return CallResult.failure(e, attempts=attempts, exhausted=False)

    return CallResult.success(value, attempts=attempts)
