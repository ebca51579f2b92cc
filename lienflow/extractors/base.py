"""
Tenacity retry policies shared by the extraction session and the sinks.

``ui_retrying`` is the single bounded-retry wrapper every UI transition of
the extraction session goes through: a small fixed number of attempts with a
random, human-looking pause in between. ``create_retry_decorator`` covers
network delivery (sinks), where exponential backoff with jitter fits better.
"""

from collections.abc import Callable

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    before_log,
    retry,
    retry_if_exception,
    retry_if_exception_type,
    stop_after_attempt,
    stop_after_delay,
    wait_random,
    wait_random_exponential,
)

from lienflow.utils.exceptions import UIActionError
from lienflow.utils.logging import get_logger

logger = get_logger(__name__)


def _log_retry(retry_state: RetryCallState) -> None:
    failure = retry_state.outcome.exception() if retry_state.outcome else None
    action = getattr(retry_state.fn, "__name__", None) or repr(retry_state.fn)
    logger.info(
        "retry_scheduled",
        action=action,
        attempt=retry_state.attempt_number,
        wait_s=round(retry_state.next_action.sleep, 2) if retry_state.next_action else None,
        error=str(failure) if failure else None,
    )


def create_retry_decorator(
    max_attempts: int = 3,
    max_delay: float = 60,
    min_wait: float = 1,
    max_wait: float = 10,
    retry_exceptions: tuple[type[Exception], ...] = (ConnectionError,),
    retry_when: Callable[[BaseException], bool] | None = None,
):
    """
    Retry decorator for sink deliveries.

    Stops at whichever comes first of ``max_attempts`` tries or ``max_delay``
    seconds; waits are exponential with jitter. ``retry_when``, if given,
    replaces the exception-type check with a predicate.

    Example:
        >>> @create_retry_decorator(max_attempts=5, max_delay=30)
        ... async def append_rows():
        ...     pass
    """
    return retry(
        stop=(stop_after_attempt(max_attempts) | stop_after_delay(max_delay)),
        wait=wait_random_exponential(multiplier=1, min=min_wait, max=max_wait),
        retry=(
            retry_if_exception(retry_when)
            if retry_when is not None
            else retry_if_exception_type(retry_exceptions)
        ),
        before_sleep=_log_retry,
        before=before_log(logger, log_level=10),
        reraise=True,
    )


def ui_retrying(
    attempts: int = 2,
    min_delay_ms: int = 800,
    max_delay_ms: int = 1800,
) -> AsyncRetrying:
    """
    Bounded retry for one UI action.

    Only ``UIActionError`` (control not visible, click intercepted, wait
    timed out) is retried; the last one is re-raised once the budget is spent.

    Example:
        >>> retrying = ui_retrying(attempts=2)
        >>> await retrying.copy()(driver.click, "role=button:View History")
    """
    low = max(min_delay_ms, 0) / 1000
    high = max(max_delay_ms, min_delay_ms, 0) / 1000
    return AsyncRetrying(
        stop=stop_after_attempt(attempts),
        wait=wait_random(min=low, max=high),
        retry=retry_if_exception_type(UIActionError),
        before_sleep=_log_retry,
        reraise=True,
    )
