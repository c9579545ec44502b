"""Bounded polling and retry built on tenacity."""

from collections.abc import Callable
from typing import Any

from tenacity import (
    RetryError,
    Retrying,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
    stop_after_delay,
    wait_exponential,
)

from kina.config import PollPolicy

__all__ = ["RetryError", "poll_until", "retrying"]


def _stop(policy: PollPolicy):
    stop = stop_after_delay(policy.timeout)
    if policy.attempts is not None:
        stop = stop | stop_after_attempt(policy.attempts)
    return stop


def retrying(policy: PollPolicy, retry_on: tuple[type[BaseException], ...]) -> Retrying:
    """Retry on the given exception types, re-raising the last one when exhausted."""
    return Retrying(
        stop=_stop(policy),
        wait=wait_exponential(multiplier=policy.initial_wait, max=policy.max_wait),
        retry=retry_if_exception_type(retry_on),
        reraise=True,
    )


def poll_until(
    check: Callable[[], Any],
    policy: PollPolicy,
    retry_on: tuple[type[BaseException], ...] = (),
) -> Any:
    """Call ``check`` until it returns a truthy value.

    Exceptions listed in ``retry_on`` are treated as transient. Anything else
    propagates immediately.

    Returns:
        The first truthy value returned by ``check``.

    Raises:
        RetryError: If the policy is exhausted first.
    """
    retry = retry_if_result(lambda result: not result)
    if retry_on:
        retry = retry | retry_if_exception_type(retry_on)

    controller = Retrying(
        stop=_stop(policy),
        wait=wait_exponential(multiplier=policy.initial_wait, max=policy.max_wait),
        retry=retry,
    )
    return controller(check)
