"""
Exceptions raised by tpmcomm transports.

Every failure surfaces synchronously at the call that detected it. Anything
that goes wrong while exchanging bytes with a TPM derives from
TpmTransportError, so callers that only care whether a command made it
through can catch that one class.
"""

from typing import Optional


class TpmCommError(Exception):
    """Base class for all tpmcomm errors."""


class TpmAllocationError(TpmCommError):
    """Raised when buffer storage for received bytes cannot be allocated."""

    def __init__(self, requested: int):
        self.requested = requested
        super().__init__(f"unable to allocate {requested} bytes for receive buffer")


class TpmConnectError(TpmCommError):
    """Raised when a transport cannot be opened.

    Attributes:
        target: Human-readable description of what we tried to open
            (``host:port`` or a device path).
    """

    def __init__(self, target: str, message: Optional[str] = None):
        self.target = target
        if message:
            super().__init__(f"{target}: {message}")
        else:
            super().__init__(f"unable to connect to {target}")

    def __repr__(self) -> str:
        return f"TpmConnectError(target={self.target!r})"


class TpmTransportError(TpmCommError):
    """A command/response exchange with the TPM failed."""


class TpmSendError(TpmTransportError):
    """Raised when bytes could not be handed to or written by the I/O layer."""


class TpmTimeoutError(TpmTransportError):
    """Raised when a synchronous wait runs out of time.

    Timing out only stops the wait; the underlying socket operation is not
    cancelled.
    """

    def __init__(self, timeout: int, operation: str = "operation"):
        self.timeout = timeout
        self.operation = operation
        super().__init__(f"{operation} timed out after {timeout}s")

    def __repr__(self) -> str:
        return f"TpmTimeoutError(timeout={self.timeout}, operation={self.operation!r})"


class TpmIOError(TpmTransportError):
    """Raised for errors reported by the async I/O layer, or when waiting on an errored connection."""


class TpmProtocolError(TpmTransportError):
    """The peer answered with something the protocol does not allow."""


class TpmVersionMismatchError(TpmProtocolError):
    """Raised when the simulator speaks a different protocol version."""

    def __init__(self, client_version: int, server_version: int):
        self.client_version = client_version
        self.server_version = server_version
        super().__init__(f"simulator protocol version {server_version} does not match client version {client_version}")

    def __repr__(self) -> str:
        return f"TpmVersionMismatchError(client_version={self.client_version}, server_version={self.server_version})"


class TpmAckError(TpmProtocolError):
    """Raised when a trailing ack word is not zero."""

    def __init__(self, ack: int, stage: str = "command"):
        self.ack = ack
        self.stage = stage
        super().__init__(f"{stage} ack {ack:#010x} (expected 0)")

    def __repr__(self) -> str:
        return f"TpmAckError(ack={self.ack:#x}, stage={self.stage!r})"


class TpmResponseTooLargeError(TpmTransportError):
    """Raised when the reported response length exceeds the caller's buffer.

    Nothing is copied into the caller's buffer; the response is not truncated.
    """

    def __init__(self, reported: int, capacity: int):
        self.reported = reported
        self.capacity = capacity
        super().__init__(f"response of {reported} bytes exceeds buffer capacity of {capacity} bytes")

    def __repr__(self) -> str:
        return f"TpmResponseTooLargeError(reported={self.reported}, capacity={self.capacity})"
