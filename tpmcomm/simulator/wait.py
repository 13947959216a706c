"""
Synchronous waiting on top of the callback-driven I/O layer.

wait_until() is the only place a simulator connection ever blocks: it pumps
the I/O layer's dowork() until a completion condition holds, an error
condition holds, or the timeout expires. Conditions are plain callables that
read flags the I/O callbacks set (usually on a PendingOperation).
"""

import logging
import time
from typing import Callable

from ..clock import TickCounter, elapsed_ms
from ..errors import TpmIOError, TpmTimeoutError
from ..xio import AsyncIO, IOOpenResult, IOSendResult

logger = logging.getLogger(__name__)

# Sleep between pump iterations that made no progress (seconds)
DEFAULT_POLL_INTERVAL = 0.001


class PendingOperation:
    """Completion/error flags for one in-flight send or open."""

    def __init__(self, name: str = "operation"):
        self.name = name
        self.done = False
        self.failed = False

    def on_send_complete(self, result: IOSendResult) -> None:
        if result == IOSendResult.OK:
            self.done = True
        else:
            self.failed = True

    def on_open_complete(self, result: IOOpenResult) -> None:
        if result == IOOpenResult.OK:
            self.done = True
        else:
            self.failed = True

    def on_io_error(self) -> None:
        self.failed = True

    def __repr__(self):
        return f"PendingOperation({self.name!r}, done={self.done}, failed={self.failed})"


def wait_until(
    io: AsyncIO,
    ticks: TickCounter,
    is_done: Callable[[], bool],
    is_failed: Callable[[], bool],
    timeout: int,
    operation: str = "operation",
    poll_interval: float = DEFAULT_POLL_INTERVAL,
) -> None:
    """Pump ``io`` until ``is_done()`` is true.

    Elapsed time is measured in whole seconds of tick-counter time, so a
    timeout of N fails once at least N seconds have passed.

    Args:
        io: I/O handle whose dowork() drives the callbacks
        ticks: Tick source used to measure elapsed time
        is_done: Completion condition
        is_failed: Error condition; checked before the first pump, so an
            already-errored connection fails without touching the socket
        timeout: Seconds to wait (must be positive)
        operation: Name used in log and exception messages
        poll_interval: Seconds to sleep between pumps (0 spins)

    Raises:
        ValueError: If timeout is not positive
        TpmIOError: If ``is_failed()`` becomes true first
        TpmTimeoutError: If the timeout expires first
    """
    if timeout <= 0:
        raise ValueError(f"timeout must be positive, got {timeout!r}")
    if is_failed():
        raise TpmIOError(f"{operation} failed: connection is in error state")

    start = ticks.current_ms()
    while True:
        io.dowork()
        if is_done():
            return
        if is_failed():
            logger.error("Failure: %s reported an I/O error", operation)
            raise TpmIOError(f"{operation} failed: I/O error")
        if elapsed_ms(start, ticks.current_ms()) // 1000 >= timeout:
            logger.error("Failure: %s timed out after %ds", operation, timeout)
            raise TpmTimeoutError(timeout, operation)
        if poll_interval > 0:
            time.sleep(poll_interval)
