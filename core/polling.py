"""
core/polling.py -- Poll-until-done loop with a hard deadline.

Both hypervisor waits (task completion, container start) share this shape:

    check -> done?      return the check's value
          -> not yet    sleep `interval`, check again
          -> transient  log, sleep `retry_delay`, check again
          -> terminal   let the exception propagate
    deadline reached    raise timeout_error(...)

Sleeps are clamped to the time left before the deadline, so the loop gives
up exactly at `timeout` seconds -- never earlier, never a full interval late.

`clock` and `sleep` are injectable so tests drive the loop with a fake clock
instead of waiting in real time.
"""

import logging
import time
from typing import Callable, Optional, TypeVar

T = TypeVar("T")

logger = logging.getLogger("cardinal.polling")


def poll_until(
    check: Callable[[], Optional[T]],
    *,
    interval: float,
    timeout: float,
    timeout_error: Callable[[str], Exception],
    transient: tuple[type[BaseException], ...] = (),
    retry_delay: float = 5.0,
    description: str = "operation",
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call check() until it returns a non-None value or the deadline passes.

    Args:
        check:         Zero-arg callable. None means "not done yet"; any other
                       value ends the loop and is returned.
        interval:      Seconds between checks after a "not done" answer.
        timeout:       Total seconds before giving up.
        timeout_error: Factory for the exception raised at the deadline. It
                       receives a human-readable message.
        transient:     Exception types that are logged and retried after
                       retry_delay. Everything else propagates immediately.
        retry_delay:   Seconds to wait after a transient error.
        description:   Used in log lines and the timeout message.
    """
    start = clock()
    deadline = start + timeout
    attempts = 0

    while clock() < deadline:
        attempts += 1
        try:
            result = check()
        except transient as e:
            logger.warning("Error while polling %s (attempt %d): %s", description, attempts, e)
            delay = retry_delay
        else:
            if result is not None:
                return result
            delay = interval

        remaining = deadline - clock()
        if remaining <= 0:
            break
        sleep(min(delay, remaining))

    raise timeout_error(f"{description} did not complete within {timeout:g}s ({attempts} polls)")
