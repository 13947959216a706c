"""
Emulator backend - TPM simulator reached over TCP.
"""

import logging
from typing import Optional

from tpmcomm.backends import TpmBackend
from tpmcomm.simulator import SimulatorConnection
from tpmcomm.types import DEFAULT_SIM_HOST, DEFAULT_SIM_PORT, DEFAULT_TIMEOUT, BackendKind

logger = logging.getLogger(__name__)


class EmulatorBackend(TpmBackend):
    """
    Backend for a software TPM simulator.

    Creating the backend establishes the connection: handshake and power-on
    both happen in the constructor, and a failure there raises without
    leaving anything open.

    Usage:
        with EmulatorBackend("127.0.0.1", 2321) as tpm:
            response = tpm.submit(command)
    """

    def __init__(
        self,
        host: str = DEFAULT_SIM_HOST,
        port: int = DEFAULT_SIM_PORT,
        platform_port: Optional[int] = None,
        timeout: int = DEFAULT_TIMEOUT,
        **connection_kwargs,
    ):
        """
        Connect to a TPM simulator.

        Args:
            host: Simulator host (default: 127.0.0.1)
            port: Command port (default: 2321)
            platform_port: Platform port (default: port + 1)
            timeout: Seconds per I/O wait (default: 20)
            **connection_kwargs: Passed to SimulatorConnection (io_factory, tick_counter, poll_interval)

        Raises:
            TpmConnectError: If the simulator cannot be reached
            TpmTransportError: If the handshake or power-on fails
        """
        self._conn = SimulatorConnection(host, port, platform_port, timeout, **connection_kwargs)
        self._conn.connect()

    @property
    def kind(self) -> BackendKind:
        return BackendKind.EMULATOR

    @property
    def connection(self) -> SimulatorConnection:
        return self._conn

    @property
    def tpm_info(self) -> Optional[int]:
        return self._conn.tpm_info

    def submit_into(self, command: bytes, response) -> int:
        return self._conn.submit_into(command, response)

    def close(self) -> None:
        self._conn.close()

    def __repr__(self):
        return f"EmulatorBackend({self._conn.host}:{self._conn.port})"
