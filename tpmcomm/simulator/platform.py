"""
Power sequencing over the simulator's platform-control port.

Before the command port accepts TPM commands the simulator has to be
powered on and its NV memory enabled. Both signals go over a separate,
short-lived socket to the platform port (command port + 1 by default):

    C:[1]  -> S:[ack=0]     power on
    C:[11] -> S:[ack=0]     NV on

The platform socket is always closed and destroyed before run() returns,
whether it succeeded or not.
"""

import logging
import struct
from enum import Enum
from typing import Callable

from ..clock import TickCounter
from ..errors import TpmAckError, TpmCommError, TpmConnectError, TpmIOError, TpmSendError, TpmTimeoutError
from ..types import SimulatorCommand
from ..xio import AsyncIO
from .wait import DEFAULT_POLL_INTERVAL, PendingOperation, wait_until

logger = logging.getLogger(__name__)

IOFactory = Callable[[str, int], AsyncIO]

_ACK = struct.Struct(">I")


class PowerState(Enum):
    CONNECT = "connect"
    SEND_POWER_ON = "send_power_on"
    WAIT_POWER_ON_ACK = "wait_power_on_ack"
    SEND_NV_ON = "send_nv_on"
    WAIT_NV_ON_ACK = "wait_nv_on_ack"
    CLOSE_PLATFORM_SOCKET = "close_platform_socket"
    DONE = "done"
    FAILED = "failed"


class _AckCapture:
    """One-shot receive capture for platform acks.

    Kept apart from the command connection's receive buffer. Collects bytes
    until a full ack word is available; take_ack() consumes it and re-arms.
    """

    def __init__(self):
        self._data = bytearray()
        self.received = False
        self.failed = False

    def on_bytes_received(self, data: bytes) -> None:
        self._data.extend(data)
        self.received = len(self._data) >= _ACK.size

    def on_io_error(self) -> None:
        self.failed = True

    def take_ack(self) -> int:
        value = _ACK.unpack_from(self._data)[0]
        del self._data[: _ACK.size]
        self.received = len(self._data) >= _ACK.size
        return value


class PowerSequencer:
    """Powers on the simulator and enables NV over the platform port."""

    def __init__(
        self,
        io_factory: IOFactory,
        host: str,
        port: int,
        ticks: TickCounter,
        timeout: int,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ):
        self._io_factory = io_factory
        self._host = host
        self._port = port
        self._ticks = ticks
        self._timeout = timeout
        self._poll_interval = poll_interval
        self.state = PowerState.CONNECT

    @property
    def target(self) -> str:
        return f"{self._host}:{self._port}"

    def run(self) -> None:
        """Run the power-on sequence.

        Raises:
            TpmConnectError: If the platform port cannot be opened
            TpmTransportError: If a signal cannot be sent, an ack does not
                arrive in time, or an ack is not zero
        """
        self.state = PowerState.CONNECT
        io = self._io_factory(self._host, self._port)
        capture = _AckCapture()
        try:
            self._open(io, capture)
            self._signal(io, capture, SimulatorCommand.SIGNAL_POWER_ON, PowerState.SEND_POWER_ON)
            self._signal(io, capture, SimulatorCommand.SIGNAL_NV_ON, PowerState.SEND_NV_ON)
        except TpmCommError:
            self.state = PowerState.FAILED
            raise
        finally:
            self._close(io)

        self.state = PowerState.DONE
        logger.debug("Simulator powered on via %s", self.target)

    def _open(self, io: AsyncIO, capture: _AckCapture):
        opened = PendingOperation(f"opening platform port {self.target}")
        io.open(opened.on_open_complete, capture.on_bytes_received, capture.on_io_error)
        try:
            self._wait(io, lambda: opened.done, lambda: opened.failed or capture.failed, opened.name)
        except (TpmIOError, TpmTimeoutError) as e:
            logger.error("Failure: connecting to tpm simulator platform interface %s", self.target)
            raise TpmConnectError(self.target, "platform port did not open") from e

    def _signal(self, io: AsyncIO, capture: _AckCapture, command: SimulatorCommand, send_state: PowerState):
        self.state = send_state
        name = command.name.lower()

        sent = PendingOperation(f"sending {name}")
        io.send(_ACK.pack(command), sent.on_send_complete)
        try:
            self._wait(io, lambda: sent.done, lambda: sent.failed or capture.failed, sent.name)
        except TpmIOError as e:
            logger.error("Failure sending %s to platform port", name)
            raise TpmSendError(f"sending {name} to {self.target} failed") from e

        self.state = (
            PowerState.WAIT_POWER_ON_ACK if command == SimulatorCommand.SIGNAL_POWER_ON else PowerState.WAIT_NV_ON_ACK
        )
        self._wait(io, lambda: capture.received, lambda: capture.failed, f"waiting for {name} ack")
        ack = capture.take_ack()
        if ack != 0:
            logger.error("Failure: %s ack from simulator is %#x", name, ack)
            raise TpmAckError(ack, name)

    def _wait(self, io, is_done, is_failed, operation):
        wait_until(io, self._ticks, is_done, is_failed, self._timeout, operation, self._poll_interval)

    def _close(self, io: AsyncIO):
        if self.state != PowerState.FAILED:
            self.state = PowerState.CLOSE_PLATFORM_SOCKET
        try:
            io.close()
            io.dowork()
        except TpmCommError as e:
            logger.debug("Error closing platform socket %s: %s", self.target, e)
        finally:
            io.destroy()
