"""Deadline-bounded retries on top of tenacity.

Allocator calls are retried at a fixed interval until a wall-clock
deadline, never by attempt count, so every retry loop is bounded by the
same session deadlines as the poll loops.

Example:
    from skyfleet.retry import on_not_found, retry_until

    retry_until(
        lambda: ec2.create_tags(Resources=[request_id], Tags=tags),
        clock=clock,
        deadline=expiration,
        interval=5,
        on=on_not_found,
    )
"""

from __future__ import annotations

from collections.abc import Callable

from loguru import logger
from tenacity import RetryCallState, Retrying, retry_if_exception, wait_fixed

from skyfleet.clock import Clock
from skyfleet.errors import classify, error_code, is_not_found

log = logger.bind(component="retry")

# Type for the retry predicate
type RetryPredicate = Callable[[BaseException], bool]


def retry_until[T](
    fn: Callable[[], T],
    *,
    clock: Clock,
    deadline: float,
    interval: float,
    on: RetryPredicate,
    cancellable: bool = True,
) -> T:
    """Call ``fn`` until it succeeds, retrying failures matching ``on``.

    Failures that do not match ``on`` are raised immediately. When the
    deadline passes the last matching failure is raised as-is, so callers
    only ever see provider exceptions, never ``tenacity.RetryError``.

    Args:
        fn: Zero-argument call to attempt.
        clock: Source of time and sleeping.
        deadline: Epoch seconds after which no further attempt is made.
        interval: Fixed pause between attempts.
        on: Predicate selecting retryable failures.
        cancellable: Whether the pauses honour the clock's cancellation.
    """

    def past_deadline(state: RetryCallState) -> bool:
        return clock.now() >= deadline

    def before_sleep(state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome else None
        log.debug(
            "Attempt {n} failed with {err}, retrying in {s}s",
            n=state.attempt_number, err=exc, s=interval,
        )

    retrying = Retrying(
        stop=past_deadline,
        wait=wait_fixed(interval),
        retry=retry_if_exception(on),
        sleep=lambda s: clock.sleep(s, cancellable=cancellable),
        before_sleep=before_sleep,
        reraise=True,
    )
    return retrying(fn)


# =============================================================================
# Common Predicates
# =============================================================================


def on_not_found(e: BaseException) -> bool:
    """Retry while the target is not yet visible to the API."""
    return is_not_found(e)


def not_unrecoverable(e: BaseException) -> bool:
    """Retry anything the classifier considers transient."""
    return classify(e).transient


def on_error_code(*codes: str) -> RetryPredicate:
    """Create a predicate that retries on specific AWS error codes."""

    def predicate(e: BaseException) -> bool:
        return error_code(e) in codes

    return predicate


# =============================================================================
# Combining Predicates
# =============================================================================


def any_of(*predicates: RetryPredicate) -> RetryPredicate:
    """Combine predicates with OR logic (retry if ANY predicate matches).

    Example:
        retry_until(fn, ..., on=any_of(not_unrecoverable, on_error_code("ValidationError")))
    """

    def combined(e: BaseException) -> bool:
        return any(p(e) for p in predicates)

    return combined
