"""
Retry Executor

Wraps awaitable operations with exponential backoff and jitter. The only
suspension between attempts is ``asyncio.sleep`` so a retrying event never
holds up other deliveries being processed concurrently.
"""
import asyncio
import math
import random
import socket
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, TypeVar

import httpx
import stripe

from app.core.exceptions import ErrorCategory
from app.core.logging import get_logger, log_error, serialize_error

logger = get_logger(__name__)

T = TypeVar("T")

JITTER_RATIO = 0.25
MIN_DELAY_MS = 100

TRANSIENT_NETWORK_ERRORS = (
    "ECONNRESET",
    "ENOTFOUND",
    "ECONNREFUSED",
    "ETIMEDOUT",
    "EAI_AGAIN",
    "NETWORK_ERROR",
    "RATE_LIMITED",
)


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to try and how long to wait in between"""

    max_attempts: int
    base_delay_ms: int
    max_delay_ms: int
    exponential_base: float = 2
    retryable_errors: tuple[str, ...] = field(default=TRANSIENT_NETWORK_ERRORS)


DEFAULT_RETRY_POLICY = RetryPolicy(
    max_attempts=3,
    base_delay_ms=1000,
    max_delay_ms=30000,
)

# A ledger lookup should give up fast: a false negative is acceptable
IDEMPOTENCY_RETRY_POLICY = RetryPolicy(
    max_attempts=2,
    base_delay_ms=500,
    max_delay_ms=2000,
    retryable_errors=("ECONNRESET", "ETIMEDOUT"),
)

# Version races are expected when several checkouts complete together
INVENTORY_RETRY_POLICY = RetryPolicy(
    max_attempts=5,
    base_delay_ms=500,
    max_delay_ms=8000,
    retryable_errors=TRANSIENT_NETWORK_ERRORS + ("version_conflict", "stripe_api_error"),
)

CUSTOMER_DATA_RETRY_POLICY = RetryPolicy(
    max_attempts=3,
    base_delay_ms=1000,
    max_delay_ms=5000,
    retryable_errors=TRANSIENT_NETWORK_ERRORS + ("version_conflict", "stripe_api_error"),
)


def error_identifiers(error: BaseException) -> set[str]:
    """Collect every identifier a retry policy may match an error by."""
    identifiers = {type(error).__name__}

    for attr in ("retry_code", "code"):
        value = getattr(error, attr, None)
        if isinstance(value, str) and value:
            identifiers.add(value)

    if isinstance(error, ConnectionResetError):
        identifiers.add("ECONNRESET")
    if isinstance(error, ConnectionRefusedError):
        identifiers.add("ECONNREFUSED")
    if isinstance(error, (TimeoutError, asyncio.TimeoutError, httpx.TimeoutException)):
        identifiers.add("ETIMEDOUT")
    if isinstance(error, socket.gaierror):
        identifiers.add("EAI_AGAIN")
        identifiers.add("ENOTFOUND")
    if isinstance(error, (httpx.NetworkError, stripe.APIConnectionError)):
        identifiers.add("NETWORK_ERROR")
    if isinstance(error, stripe.RateLimitError):
        identifiers.add("RATE_LIMITED")
    elif isinstance(error, stripe.APIError):
        identifiers.add("stripe_api_error")

    return identifiers


def is_retryable(error: BaseException, policy: RetryPolicy) -> bool:
    """True when any policy matcher names the error or appears in its message"""
    identifiers = error_identifiers(error)
    message = str(error)
    return any(
        matcher in identifiers or matcher in message
        for matcher in policy.retryable_errors
    )


def calculate_delay_ms(
    attempt: int,
    policy: RetryPolicy,
    rand: Callable[[], float] = random.random,
) -> int:
    """
    Delay before the attempt following ``attempt`` (1-based).

        delay = min(base * exponential_base ** (attempt - 1), max)

    then jittered by +/-25% and floored at 100ms. Large attempt numbers are
    capped without computing the power.
    """
    exponent = max(attempt - 1, 0)

    if policy.base_delay_ms <= 0 or policy.max_delay_ms <= 0:
        delay = 0.0
    elif policy.base_delay_ms >= policy.max_delay_ms or policy.exponential_base <= 1:
        delay = float(min(policy.base_delay_ms, policy.max_delay_ms))
    else:
        # base * b**n >= max  <=>  n >= log_b(max / base)
        threshold = math.log(policy.max_delay_ms / policy.base_delay_ms, policy.exponential_base)
        if exponent >= threshold:
            delay = float(policy.max_delay_ms)
        else:
            delay = min(
                policy.base_delay_ms * policy.exponential_base ** exponent,
                float(policy.max_delay_ms),
            )

    jitter = delay * JITTER_RATIO * (rand() * 2 - 1)
    return max(MIN_DELAY_MS, int(delay + jitter))


async def _sleep_ms(delay_ms: int) -> None:
    await asyncio.sleep(delay_ms / 1000)


async def execute_with_retry(
    operation: Callable[[], Awaitable[T]],
    operation_name: str,
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    context: dict[str, Any] | None = None,
) -> T:
    """
    Run ``operation`` until it succeeds, raises something non-retryable, or
    the policy runs out of attempts. The last error is re-raised.
    """
    context = context or {}
    start = time.perf_counter()

    for attempt in range(1, policy.max_attempts + 1):
        attempt_start = time.perf_counter()
        logger.debug(
            f"Executing {operation_name}",
            extra_data={
                "operation": operation_name,
                "attempt": attempt,
                "max_attempts": policy.max_attempts,
                **context,
            },
        )

        try:
            result = await operation()
        except Exception as e:
            elapsed_ms = int((time.perf_counter() - start) * 1000)
            retryable = is_retryable(e, policy)
            last_attempt = attempt >= policy.max_attempts

            logger.warning(
                f"{operation_name} failed on attempt {attempt}",
                extra_data={
                    "operation": operation_name,
                    "attempt": attempt,
                    "max_attempts": policy.max_attempts,
                    "retryable": retryable,
                    "elapsed_ms": elapsed_ms,
                    "error": serialize_error(e),
                    **context,
                },
            )

            if not retryable or last_attempt:
                log_error(
                    logger,
                    ErrorCategory.WEBHOOK_PROCESSING,
                    f"{operation_name} failed after {attempt} attempts",
                    e,
                    {
                        "operation": operation_name,
                        "attempts": attempt,
                        "retryable": retryable,
                        "total_duration_ms": elapsed_ms,
                        **context,
                    },
                )
                raise

            delay_ms = calculate_delay_ms(attempt, policy)
            logger.info(
                f"Retrying {operation_name} in {delay_ms}ms",
                extra_data={
                    "operation": operation_name,
                    "next_attempt": attempt + 1,
                    "delay_ms": delay_ms,
                    **context,
                },
            )
            await _sleep_ms(delay_ms)
            continue

        if attempt > 1:
            logger.info(
                f"{operation_name} succeeded after {attempt} attempts",
                extra_data={
                    "operation": operation_name,
                    "attempts": attempt,
                    "attempt_duration_ms": int((time.perf_counter() - attempt_start) * 1000),
                    "total_duration_ms": int((time.perf_counter() - start) * 1000),
                    **context,
                },
            )
        return result

    # max_attempts < 1
    raise ValueError(f"Retry policy for {operation_name} allows no attempts")


@dataclass
class NonCriticalResult(Generic[T]):
    """Outcome of a side write that must never abort the main flow"""

    ok: bool
    value: T | None = None
    error: BaseException | None = None


async def attempt_non_critical(
    operation_name: str,
    operation: Callable[[], Awaitable[T]],
    category: ErrorCategory = ErrorCategory.DATABASE,
    context: dict[str, Any] | None = None,
) -> NonCriticalResult[T]:
    """Run a best-effort operation: failures are logged and returned, never raised"""
    try:
        value = await operation()
    except Exception as e:
        log_error(
            logger,
            category,
            f"Non-blocking operation {operation_name} failed",
            e,
            {"operation": operation_name, "non_blocking": True, **(context or {})},
        )
        return NonCriticalResult(ok=False, error=e)
    return NonCriticalResult(ok=True, value=value)
