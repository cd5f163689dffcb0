"""
Retry helpers for the Graph transport.

Graph throttles with 429 and occasionally answers 5xx during service
incidents; both are retried here with exponential backoff. Connector
operations never retry on their own, the transport does it per request.
"""

import time
import logging
from typing import Any, Callable, Dict, Optional, Sequence, Tuple, Type

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = (408, 429, 502, 503, 504)

# Throttled or unavailable: Graph rejected the request without processing it
UNPROCESSED_STATUS_CODES = (429, 503)

TRANSIENT_MESSAGES = (
    'timed out',
    'timeout',
    'connection reset',
    'connection refused',
    'connection aborted',
    'network is unreachable',
    'temporary failure',
)

RetryCallback = Callable[[int, Exception], None]


def retry_call(
    func: Callable,
    args: Sequence[Any] = (),
    kwargs: Optional[Dict[str, Any]] = None,
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 1.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    should_retry: Optional[Callable[[Exception], bool]] = None,
    on_retry: Optional[RetryCallback] = None
) -> Any:
    """
    Call func until it succeeds or attempts run out.

    Args:
        func: Callable to invoke
        args: Positional arguments passed to func
        kwargs: Keyword arguments passed to func
        max_attempts: Total number of calls, the first one included
        delay: Seconds to wait before the first retry
        backoff: Factor applied to the wait after every retry
        exceptions: Exception types that may be retried; others propagate at once
        should_retry: Predicate deciding whether a caught exception is transient
        on_retry: Called with (attempt, exception) before each wait

    Returns:
        Whatever func returns

    Raises:
        The exception from the final attempt, or the first non-retryable one
    """
    kwargs = kwargs or {}
    wait = delay
    attempt = 1

    while True:
        try:
            result = func(*args, **kwargs)
        except exceptions as e:
            retryable = should_retry(e) if should_retry is not None else True
            if not retryable or attempt >= max_attempts:
                raise

            logger.debug(f"Attempt {attempt}/{max_attempts} raised {type(e).__name__}: {e}; "
                         f"waiting {wait:.1f}s")
            _notify(on_retry, attempt, e)
            time.sleep(wait)
            wait *= backoff
            attempt += 1
            continue

        if attempt > 1:
            logger.info(f"Call succeeded after {attempt} attempts")
        return result


def _notify(on_retry: Optional[RetryCallback], attempt: int, error: Exception):
    if on_retry is None:
        return
    try:
        on_retry(attempt, error)
    except Exception as callback_error:
        logger.warning(f"Ignoring failed retry callback: {callback_error}")


def retry_settings(error_handling: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Map the error_handling configuration section onto retry_call keywords.

    max_retries counts retries after the first call, so max_attempts is one more.
    """
    error_handling = error_handling or {}
    return {
        'max_attempts': int(error_handling.get('max_retries', 3)) + 1,
        'delay': float(error_handling.get('retry_wait_seconds', 2)),
        'backoff': float(error_handling.get('retry_backoff', 2.0)),
    }


def is_retryable_error(exception: Exception) -> bool:
    """True for throttling, server-side failures and transport hiccups."""
    if isinstance(exception, (ConnectionError, TimeoutError)):
        return True

    status_code = getattr(exception, 'status_code', None)
    if status_code is not None:
        return status_code in RETRYABLE_STATUS_CODES or status_code >= 500

    message = str(exception).lower()
    return any(fragment in message for fragment in TRANSIENT_MESSAGES)


def is_replayable_error(exception: Exception) -> bool:
    """
    Retry predicate for non-idempotent requests such as POST.

    Only failures where Graph certainly did not act on the request qualify:
    the connection broke before the request was written, or Graph refused it
    with a status in UNPROCESSED_STATUS_CODES. A timeout or 5xx after the
    request went out is not replayed, since Graph may already have created the
    object.
    """
    if not getattr(exception, 'request_sent', True):
        return True
    return getattr(exception, 'status_code', None) in UNPROCESSED_STATUS_CODES


def create_retry_callback(operation_name: str) -> RetryCallback:
    """Build an on_retry callback that logs a warning naming the operation."""
    def log_retry(attempt: int, exception: Exception):
        logger.warning(f"{operation_name} failed on attempt {attempt} "
                       f"({type(exception).__name__}: {exception}), retrying")

    return log_retry
