"""
Blocking framed reads and writes over a callback-driven I/O handle.

FrameChannel is the receive/transmit half of a simulator connection. It
registers itself as the I/O handle's receive and error sink, collects
delivered bytes in a ReceiveBuffer, and offers blocking primitives
(read_exact, read_u32, send_exact, send_u32) built on wait_until().

All integers on the wire are 4-byte big-endian unless noted.
"""

import logging
import struct
from typing import Callable, Optional

from ..clock import TickCounter
from ..errors import TpmAllocationError, TpmIOError, TpmSendError
from ..xio import AsyncIO
from .buffer import ReceiveBuffer
from .wait import DEFAULT_POLL_INTERVAL, PendingOperation, wait_until

logger = logging.getLogger(__name__)

_U32 = struct.Struct(">I")
_U8 = struct.Struct(">B")


class FrameChannel:
    """Synchronous framing on top of an AsyncIO handle.

    The channel carries the connection's error flag. It is set by the I/O
    layer's error callback, by a failed buffer allocation, or explicitly via
    mark_errored(); once set, every later wait fails immediately.
    """

    def __init__(
        self,
        io: AsyncIO,
        ticks: TickCounter,
        timeout: int,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ):
        self._io = io
        self._ticks = ticks
        self._timeout = timeout
        self._poll_interval = poll_interval
        self.buffer = ReceiveBuffer()
        self.bytes_arrived = False
        self.errored = False

    @property
    def timeout(self) -> int:
        return self._timeout

    # ------------------------------------------------------------------
    # I/O callbacks
    # ------------------------------------------------------------------

    def on_bytes_received(self, data: bytes) -> None:
        try:
            self.buffer.append(data)
        except TpmAllocationError as e:
            logger.error("Failure: adding bytes to buffer: %s", e)
            self.errored = True
            return
        self.bytes_arrived = True

    def on_io_error(self) -> None:
        logger.warning("I/O layer reported an error; marking connection errored")
        self.errored = True

    def mark_errored(self) -> None:
        self.errored = True

    # ------------------------------------------------------------------
    # Blocking primitives
    # ------------------------------------------------------------------

    def wait(self, is_done: Callable[[], bool], operation: str, is_failed: Optional[Callable[[], bool]] = None):
        """wait_until() with this channel's I/O handle, ticks, timeout and error flag."""
        if is_failed is None:

            def failed():
                return self.errored

        else:

            def failed():
                return self.errored or is_failed()

        wait_until(self._io, self._ticks, is_done, failed, self._timeout, operation, self._poll_interval)

    def read_exact(self, n: int, what: str = "bytes") -> bytes:
        """Block until n bytes are buffered, then consume and return them."""
        if n < 0:
            raise ValueError(f"cannot read a negative byte count: {n}")
        while self.buffer.available() < n:
            self.wait(lambda: self.bytes_arrived, f"reading {what}")
            self.bytes_arrived = False
        return self.buffer.consume(n)

    def read_u32(self, what: str = "word") -> int:
        return _U32.unpack(self.read_exact(_U32.size, what))[0]

    def send_exact(self, data: bytes, what: str = "bytes") -> None:
        """Hand data to the I/O layer and block until it reports the send complete."""
        if len(data) == 0:
            return
        if self.errored:
            raise TpmIOError(f"sending {what} failed: connection is in error state")

        pending = PendingOperation(f"sending {what}")
        try:
            self._io.send(data, pending.on_send_complete)
        except TpmSendError:
            logger.error("Failure sending %s", what)
            raise

        try:
            self.wait(lambda: pending.done, pending.name, is_failed=lambda: pending.failed)
        except TpmIOError as e:
            if pending.failed:
                raise TpmSendError(f"sending {what} failed") from e
            raise

    def send_u32(self, value: int, what: str = "word") -> None:
        self.send_exact(_U32.pack(value), what)

    def send_u8(self, value: int, what: str = "byte") -> None:
        self.send_exact(_U8.pack(value), what)

    def __repr__(self):
        return f"FrameChannel(buffered={self.buffer.available()}, errored={self.errored})"
