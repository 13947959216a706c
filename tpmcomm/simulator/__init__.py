"""
tpmcomm.simulator - transport to a software TPM simulator.

The simulator listens on two ports: the command port (default 2321) carries
the handshake, TPM commands and session end; the platform port (command port
+ 1) is used once at startup to power the simulator on and enable NV.

Example:
    from tpmcomm.simulator import SimulatorConnection

    with SimulatorConnection("127.0.0.1", 2321) as conn:
        response = conn.submit(command_bytes)
"""

from .buffer import ReceiveBuffer
from .channel import FrameChannel
from .connection import HandshakeState, SimulatorConnection, connect
from .platform import PowerSequencer, PowerState
from .wait import DEFAULT_POLL_INTERVAL, PendingOperation, wait_until

__all__ = [
    "DEFAULT_POLL_INTERVAL",
    "FrameChannel",
    "HandshakeState",
    "PendingOperation",
    "PowerSequencer",
    "PowerState",
    "ReceiveBuffer",
    "SimulatorConnection",
    "connect",
    "wait_until",
]
