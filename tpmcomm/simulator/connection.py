"""
Synchronous connection to a TPM simulator.

Protocol (all integers 4-byte big-endian unless noted):
1. Open the command port (default 2321)
2. Handshake:  C:[15][clientVersion=1] -> S:[serverVersion][tpmInfo][ack=0]
3. Power on via the platform port (see platform.py)
4. Commands:   C:[8][locality: 1 byte][cmdLen][cmdBytes] -> S:[respLen][respBytes][ack=0]
5. Teardown:   C:[20], no response awaited

Everything runs on the caller's thread. The only place a call blocks is
wait_until(), which pumps the I/O handle until the expected callback fires.
One operation may be in flight at a time; callers sharing a connection
across threads must serialize access themselves.

Example:
    with SimulatorConnection("127.0.0.1") as conn:
        response = conn.submit(command_bytes)
"""

import logging
from enum import Enum
from typing import Callable, Optional

from ..clock import TickCounter
from ..errors import (
    TpmAckError,
    TpmCommError,
    TpmConnectError,
    TpmIOError,
    TpmResponseTooLargeError,
    TpmTimeoutError,
    TpmTransportError,
    TpmVersionMismatchError,
)
from ..types import (
    CLIENT_PROTOCOL_VERSION,
    DEFAULT_LOCALITY,
    DEFAULT_MAX_RESPONSE,
    DEFAULT_SIM_HOST,
    DEFAULT_SIM_PORT,
    DEFAULT_TIMEOUT,
    SimulatorCommand,
    SimulatorConfig,
    response_view,
)
from ..xio import AsyncIO, SocketIO
from .channel import FrameChannel
from .platform import PowerSequencer
from .wait import DEFAULT_POLL_INTERVAL, PendingOperation

logger = logging.getLogger(__name__)

IOFactory = Callable[[str, int], AsyncIO]


class HandshakeState(Enum):
    IDLE = "idle"
    VERSION_SENT = "version_sent"
    VERSION_ACK_WAITING = "version_ack_waiting"
    INFO_WAITING = "info_waiting"
    ACK_WAITING = "ack_waiting"
    DONE = "done"
    FAILED = "failed"


class SimulatorConnection:
    """
    Command-port connection to a TPM simulator.

    connect() performs the whole establishment sequence: open the command
    port, negotiate the protocol version, power the simulator on over the
    platform port. If any step fails, everything allocated so far is
    released and the connection is left unconnected.

    A transport failure during submit() marks the connection errored; every
    later call then fails fast with TpmIOError until the connection is closed
    and a new one created.
    """

    def __init__(
        self,
        host: str = DEFAULT_SIM_HOST,
        port: int = DEFAULT_SIM_PORT,
        platform_port: Optional[int] = None,
        timeout: int = DEFAULT_TIMEOUT,
        *,
        io_factory: IOFactory = SocketIO,
        tick_counter: Optional[TickCounter] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ):
        """
        Initialize a simulator connection (does not connect).

        Args:
            host: Simulator host (default: 127.0.0.1)
            port: Command port (default: 2321)
            platform_port: Platform-control port (default: port + 1)
            timeout: Seconds to wait for each I/O step (default: 20, must be positive)
            io_factory: Callable creating an AsyncIO for (host, port)
            tick_counter: Tick source (default: a new TickCounter per connect)
            poll_interval: Seconds to sleep between unproductive pump iterations
        """
        self._config = SimulatorConfig(host=host, port=port, platform_port=platform_port, timeout=timeout)
        self._io_factory = io_factory
        self._tick_counter = tick_counter
        self._poll_interval = poll_interval

        self._io: Optional[AsyncIO] = None
        self._ticks: Optional[TickCounter] = None
        self._channel: Optional[FrameChannel] = None

        self._connected = False
        self._disposed = False
        self._tpm_info: Optional[int] = None
        self._handshake_state = HandshakeState.IDLE

    @classmethod
    def from_config(cls, config: SimulatorConfig, **kwargs) -> "SimulatorConnection":
        return cls(
            host=config.host,
            port=config.port,
            platform_port=config.platform_port,
            timeout=config.timeout,
            **kwargs,
        )

    @property
    def config(self) -> SimulatorConfig:
        return self._config

    @property
    def host(self) -> str:
        return self._config.host

    @property
    def port(self) -> int:
        return self._config.port

    @property
    def platform_port(self) -> int:
        return self._config.resolved_platform_port

    @property
    def timeout(self) -> int:
        return self._config.timeout

    @property
    def connected(self) -> bool:
        """Check if the connection is established and not closed."""
        return self._connected and not self._disposed

    @property
    def errored(self) -> bool:
        """True once a transport failure has poisoned this connection."""
        return self._channel.errored if self._channel else False

    @property
    def tpm_info(self) -> Optional[int]:
        """Opaque TPM info word reported by the simulator during the handshake."""
        return self._tpm_info

    @property
    def handshake_state(self) -> HandshakeState:
        return self._handshake_state

    @property
    def _target(self) -> str:
        return f"{self._config.host}:{self._config.port}"

    # ------------------------------------------------------------------
    # Establishment
    # ------------------------------------------------------------------

    def connect(self):
        """
        Open, handshake and power on the simulator.

        Raises:
            TpmConnectError: If a port cannot be opened, or the connection was closed
            TpmVersionMismatchError: If the simulator speaks another protocol version
            TpmTransportError: If any other establishment step fails
        """
        if self._disposed:
            raise TpmConnectError(self._target, "connection closed")
        if self._connected:
            raise TpmConnectError(self._target, "already connected")

        self._ticks = self._tick_counter if self._tick_counter is not None else TickCounter()
        self._io = self._io_factory(self._config.host, self._config.port)
        self._channel = FrameChannel(self._io, self._ticks, self._config.timeout, self._poll_interval)

        try:
            self._open()
            self._handshake()
            PowerSequencer(
                self._io_factory,
                self._config.host,
                self._config.resolved_platform_port,
                self._ticks,
                self._config.timeout,
                self._poll_interval,
            ).run()
        except BaseException:
            logger.error("Failure: connecting to tpm simulator at %s", self._target)
            self._release()
            raise

        logger.info(
            "Connected to TPM simulator %s (platform port %d)", self._target, self._config.resolved_platform_port
        )

    def _open(self):
        assert self._io is not None and self._channel is not None
        opened = PendingOperation(f"opening {self._target}")
        self._io.open(opened.on_open_complete, self._channel.on_bytes_received, self._channel.on_io_error)
        try:
            self._channel.wait(lambda: opened.done, opened.name, is_failed=lambda: opened.failed)
        except (TpmIOError, TpmTimeoutError) as e:
            raise TpmConnectError(self._target, "command port did not open") from e
        self._connected = True

    def _handshake(self):
        assert self._channel is not None
        channel = self._channel
        self._handshake_state = HandshakeState.IDLE
        try:
            channel.send_u32(SimulatorCommand.HANDSHAKE, "handshake request")
            channel.send_u32(CLIENT_PROTOCOL_VERSION, "client version")
            self._handshake_state = HandshakeState.VERSION_SENT

            self._handshake_state = HandshakeState.VERSION_ACK_WAITING
            server_version = channel.read_u32("server version")
            if server_version != CLIENT_PROTOCOL_VERSION:
                logger.error(
                    "Failure client and server version does not match (client=%d, server=%d)",
                    CLIENT_PROTOCOL_VERSION,
                    server_version,
                )
                raise TpmVersionMismatchError(CLIENT_PROTOCOL_VERSION, server_version)

            self._handshake_state = HandshakeState.INFO_WAITING
            self._tpm_info = channel.read_u32("tpm info")

            self._handshake_state = HandshakeState.ACK_WAITING
            ack = channel.read_u32("handshake ack")
            if ack != 0:
                logger.error("Failure ack word from simulator handshake is invalid: %#x", ack)
                raise TpmAckError(ack, "handshake")
        except TpmCommError:
            self._handshake_state = HandshakeState.FAILED
            raise

        self._handshake_state = HandshakeState.DONE
        logger.debug("Simulator handshake complete (version=%d, tpm_info=%#x)", server_version, self._tpm_info)

    # ------------------------------------------------------------------
    # Command submission
    # ------------------------------------------------------------------

    def submit_into(self, command: bytes, response) -> int:
        """
        Send a TPM command and read the response into a caller-supplied buffer.

        Args:
            command: Marshaled TPM command bytes
            response: Writable buffer; its length is the response capacity

        Returns:
            Number of response bytes written to the start of ``response``.
            The rest of the buffer is untouched. On failure the buffer
            contents are undefined.

        Raises:
            ValueError: If command or response is None
            TypeError: If response is not a writable buffer
            TpmResponseTooLargeError: If the response does not fit (nothing is written)
            TpmTransportError: If any step of the exchange fails
        """
        view = response_view(command, response)
        capacity = view.nbytes

        if not self.connected or self._channel is None:
            raise TpmIOError(f"not connected to simulator at {self._target}")
        channel = self._channel

        try:
            channel.send_u32(SimulatorCommand.SEND_COMMAND, "send-command opcode")
            channel.send_u8(DEFAULT_LOCALITY, "locality")
            channel.send_u32(len(command), "command length")
            channel.send_exact(command, "command")

            length = channel.read_u32("response length")
            if length > capacity:
                logger.error(
                    "Bytes read are greater then bytes expected len_bytes:%d expected: %d", length, capacity
                )
                raise TpmResponseTooLargeError(length, capacity)

            view[:length] = channel.read_exact(length, "response")

            ack = channel.read_u32("response ack")
            if ack != 0:
                logger.error("Failure reading tpm ack: %#x", ack)
                raise TpmAckError(ack, "command")
        except TpmTransportError:
            channel.mark_errored()
            raise

        logger.debug("Submitted %d-byte command, received %d-byte response", len(command), length)
        return length

    def submit(self, command: bytes, max_response: int = DEFAULT_MAX_RESPONSE) -> bytes:
        """Send a TPM command and return its response (at most ``max_response`` bytes)."""
        buf = bytearray(max_response)
        length = self.submit_into(command, buf)
        return bytes(buf[:length])

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def close(self):
        """End the simulator session and release the socket. Safe to call twice."""
        if self._disposed:
            return
        self._disposed = True

        if self._connected and self._channel is not None:
            try:
                self._channel.send_u32(SimulatorCommand.SESSION_END, "session end")
            except TpmCommError as e:
                logger.debug("Session end not delivered to %s: %s", self._target, e)

        self._release()
        logger.info("Closed TPM simulator connection %s", self._target)

    def _release(self):
        """Close and destroy the socket, drop buffered bytes and the tick source."""
        io, self._io = self._io, None
        if io is not None:
            try:
                io.close()
            except Exception as e:
                logger.debug("Error closing simulator socket: %s", e)
            finally:
                io.destroy()
        if self._channel is not None:
            self._channel.buffer.clear()
        self._channel = None
        self._ticks = None
        self._connected = False

    def __enter__(self):
        if not self._connected:
            self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __repr__(self):
        state = "connected" if self.connected else "closed" if self._disposed else "unconnected"
        return f"SimulatorConnection({self._target}, {state})"


def connect(
    host: str = DEFAULT_SIM_HOST,
    port: int = DEFAULT_SIM_PORT,
    platform_port: Optional[int] = None,
    timeout: int = DEFAULT_TIMEOUT,
    **kwargs,
) -> SimulatorConnection:
    """Create a SimulatorConnection and establish it."""
    conn = SimulatorConnection(host, port, platform_port, timeout, **kwargs)
    conn.connect()
    return conn
