"""
Core data types - backend kinds, simulator opcodes, simulator configuration.
"""

from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Optional

# Simulator network defaults
DEFAULT_SIM_HOST = "127.0.0.1"
DEFAULT_SIM_PORT = 2321
DEFAULT_TIMEOUT = 20  # seconds

# Protocol version spoken by this client during the handshake
CLIENT_PROTOCOL_VERSION = 1

# Locality sent with every command (TPM privilege context)
DEFAULT_LOCALITY = 0

# Smallest well-formed TPM response: tag(2) + size(4) + response code(4)
MIN_TPM_RESPONSE_LENGTH = 10

# Default response capacity for submit() when the caller does not supply a buffer
DEFAULT_MAX_RESPONSE = 4096


class BackendKind(Enum):
    """Which environment a backend talks to."""

    EMULATOR = "emulator"
    OS_DEVICE = "os-device"
    OS_RESOURCE_MANAGER = "os-resource-manager"


class SimulatorCommand(IntEnum):
    """Opcodes understood by the TPM simulator.

    Sent as 4-byte big-endian words. POWER_ON and NV_ON go to the platform
    port, everything else to the command port. POWER_OFF, NV_OFF and STOP are
    never sent by the client; the fake simulator accepts them.
    """

    SIGNAL_POWER_ON = 1
    SIGNAL_POWER_OFF = 2
    SEND_COMMAND = 8
    SIGNAL_NV_ON = 11
    SIGNAL_NV_OFF = 12
    HANDSHAKE = 15
    SESSION_END = 20
    STOP = 21


@dataclass(frozen=True)
class SimulatorConfig:
    """Where the simulator listens and how long to wait for it.

    ``platform_port`` defaults to ``port + 1``.
    """

    host: str = DEFAULT_SIM_HOST
    port: int = DEFAULT_SIM_PORT
    platform_port: Optional[int] = None
    timeout: int = DEFAULT_TIMEOUT

    def __post_init__(self):
        if self.timeout <= 0:
            raise ValueError(f"timeout must be a positive number of seconds, got {self.timeout!r}")
        if not 0 < self.port < 65536:
            raise ValueError(f"invalid simulator port: {self.port!r}")
        if self.platform_port is not None and not 0 < self.platform_port < 65536:
            raise ValueError(f"invalid platform port: {self.platform_port!r}")

    @property
    def resolved_platform_port(self) -> int:
        return self.platform_port if self.platform_port is not None else self.port + 1


def response_view(command, response) -> memoryview:
    """Validate submit() arguments and return a writable byte view of the response buffer.

    Raises:
        ValueError: If command or response is None
        TypeError: If response is not a writable buffer
    """
    if command is None:
        raise ValueError("command must not be None")
    if response is None:
        raise ValueError("response buffer must not be None")
    view = memoryview(response).cast("B")
    if view.readonly:
        raise TypeError("response buffer must be writable")
    return view
