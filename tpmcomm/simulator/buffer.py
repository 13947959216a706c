"""
FIFO byte buffer for data delivered by the I/O layer.

Bytes are appended at the tail by receive callbacks and consumed from the
front by readers. Payloads exchanged with a TPM are small, so a plain
bytearray is enough; there is no ring buffer.
"""

from ..errors import TpmAllocationError


class ReceiveBuffer:
    """Growable FIFO of received bytes."""

    def __init__(self):
        self._data = bytearray()

    def append(self, data: bytes) -> None:
        """Append bytes at the tail.

        Raises:
            TpmAllocationError: If the buffer cannot grow. Bytes already
                buffered are left untouched.
        """
        try:
            self._data.extend(data)
        except MemoryError as e:
            raise TpmAllocationError(len(self._data) + len(data)) from e

    def available(self) -> int:
        return len(self._data)

    def peek(self, n: int) -> bytes:
        """Return the first n bytes without consuming them."""
        return bytes(self._data[:n])

    def consume(self, n: int) -> bytes:
        """Remove and return exactly the first n bytes."""
        if n < 0:
            raise ValueError(f"cannot consume a negative byte count: {n}")
        if n > len(self._data):
            raise ValueError(f"cannot consume {n} bytes, only {len(self._data)} buffered")
        if n == len(self._data):
            chunk = bytes(self._data)
            self._data = bytearray()
            return chunk
        chunk = bytes(self._data[:n])
        del self._data[:n]
        return chunk

    def clear(self) -> None:
        self._data = bytearray()

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self):
        return f"ReceiveBuffer({len(self._data)} bytes)"
