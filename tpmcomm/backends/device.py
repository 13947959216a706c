"""
OS device backend - TPM character device (Linux /dev/tpm0, /dev/tpmrm0).

The kernel driver accepts one complete command per write() and returns the
complete response from the next read() on the same descriptor.
"""

import errno
import logging
import os
from typing import Optional

from tpmcomm.backends import TpmBackend
from tpmcomm.errors import TpmConnectError, TpmIOError, TpmSendError
from tpmcomm.types import MIN_TPM_RESPONSE_LENGTH, BackendKind, response_view

logger = logging.getLogger(__name__)

DEFAULT_DEVICE_PATH = "/dev/tpm0"
RESOURCE_MANAGER_DEVICE_PATH = "/dev/tpmrm0"


class DeviceBackend(TpmBackend):
    """
    Backend for a TPM character device.

    The device is opened in the constructor and held until close(). The same
    class serves the kernel resource manager (/dev/tpmrm0), reported as
    BackendKind.OS_RESOURCE_MANAGER.
    """

    def __init__(self, path: str = DEFAULT_DEVICE_PATH, kind: BackendKind = BackendKind.OS_DEVICE):
        """
        Open a TPM device.

        Args:
            path: Device path (default: /dev/tpm0)
            kind: Reported backend kind (OS_DEVICE or OS_RESOURCE_MANAGER)

        Raises:
            TpmConnectError: If the device cannot be opened
        """
        if kind == BackendKind.EMULATOR:
            raise ValueError("DeviceBackend cannot report kind EMULATOR")
        self._path = path
        self._kind = kind
        self._fd: Optional[int] = None
        try:
            self._fd = os.open(path, os.O_RDWR)
        except OSError as e:
            logger.error("Failure: opening TPM device %s: %d:%s", path, e.errno, e.strerror)
            raise TpmConnectError(path, e.strerror or str(e)) from e
        logger.debug("Opened TPM device %s", path)

    @property
    def kind(self) -> BackendKind:
        return self._kind

    @property
    def path(self) -> str:
        return self._path

    def submit_into(self, command: bytes, response) -> int:
        view = response_view(command, response)
        if self._fd is None:
            raise TpmIOError(f"TPM device {self._path} is closed")

        try:
            written = os.write(self._fd, command)
        except OSError as e:
            logger.error("Failure writing data to tpm: %d:%s", e.errno, e.strerror)
            raise TpmSendError(f"writing to {self._path} failed: {e.strerror}") from e
        if written != len(command):
            logger.error("Failure writing data to tpm: wrote %d of %d bytes", written, len(command))
            raise TpmSendError(f"short write to {self._path}: {written} of {len(command)} bytes")

        try:
            data = os.read(self._fd, view.nbytes)
        except OSError as e:
            logger.error("Failure reading data from tpm: %d:%s", e.errno, e.strerror)
            if e.errno == errno.EMSGSIZE:
                raise TpmIOError(f"response from {self._path} does not fit in {view.nbytes} bytes") from e
            raise TpmIOError(f"reading from {self._path} failed: {e.strerror}") from e

        if len(data) < MIN_TPM_RESPONSE_LENGTH:
            logger.error("Failure reading data from tpm: len: %d", len(data))
            raise TpmIOError(f"short response from {self._path}: {len(data)} bytes")

        view[: len(data)] = data
        return len(data)

    def close(self) -> None:
        fd, self._fd = self._fd, None
        if fd is not None:
            try:
                os.close(fd)
            except OSError as e:
                logger.debug("Error closing %s: %s", self._path, e)

    def __repr__(self):
        state = "open" if self._fd is not None else "closed"
        return f"DeviceBackend({self._path!r}, {self._kind.value}, {state})"
