"""
Backend abstract base class.

Every way of reaching a TPM - the network simulator, the kernel character
device, the OS resource manager - offers the same small capability set:
create (the constructor), submit, kind, close. Which variant is used is
decided once, at configuration time, by tpmcomm.create().
"""

from abc import ABC, abstractmethod

from tpmcomm.types import DEFAULT_MAX_RESPONSE, BackendKind


class TpmBackend(ABC):
    """
    Abstract base class for TPM transports.

    Lifecycle:
        - Use as context manager (recommended): `with tpmcomm.create() as tpm: ...`
        - Or call close() when done

    Thread Safety:
        None. One submission may be in flight per backend; serialize access
        externally when sharing a backend between threads.
    """

    @property
    @abstractmethod
    def kind(self) -> BackendKind:
        """Which environment this backend talks to."""

    @abstractmethod
    def submit_into(self, command: bytes, response) -> int:
        """
        Send a command and write the response into a caller-supplied buffer.

        Args:
            command: Marshaled TPM command
            response: Writable buffer; its length is the response capacity

        Returns:
            Number of response bytes written to the start of ``response``

        Raises:
            ValueError: If command or response is None
            TpmResponseTooLargeError: If the response does not fit
            TpmTransportError: If the exchange fails
        """

    def submit(self, command: bytes, max_response: int = DEFAULT_MAX_RESPONSE) -> bytes:
        """Send a command and return the response bytes."""
        buf = bytearray(max_response)
        length = self.submit_into(command, buf)
        return bytes(buf[:length])

    @abstractmethod
    def close(self) -> None:
        """Release the underlying transport. Safe to call more than once."""

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


__all__ = ["TpmBackend"]
