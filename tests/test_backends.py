"""Tests for tpmcomm.backends - OS device and TBS backends."""

import ctypes
import errno
import socket
from unittest import mock

import pytest

from tpmcomm.backends.device import DeviceBackend
from tpmcomm.backends.tbs import TBS_E_INSUFFICIENT_BUFFER, TbsBackend
from tpmcomm.errors import TpmConnectError, TpmIOError, TpmResponseTooLargeError, TpmSendError
from tpmcomm.types import BackendKind

COMMAND = bytes.fromhex("80010000000c0000017b0008")
RESPONSE = bytes.fromhex("80010000001400000000" "0008" "0102030405060708")


# =============================================================================
# DeviceBackend
# =============================================================================


@pytest.fixture
def device_pair():
    """(backend, tpm_side) where the backend's descriptor is one end of a socketpair."""
    ours, tpm_side = socket.socketpair()
    fd = ours.detach()
    with mock.patch("tpmcomm.backends.device.os.open", return_value=fd) as mock_open:
        backend = DeviceBackend("/dev/tpm0")
    mock_open.assert_called_once()
    yield backend, tpm_side
    backend.close()
    tpm_side.close()


class TestDeviceBackend:
    def test_submit(self, device_pair):
        backend, tpm_side = device_pair
        tpm_side.sendall(RESPONSE)
        buf = bytearray(64)

        n = backend.submit_into(COMMAND, buf)

        assert n == len(RESPONSE)
        assert bytes(buf[:n]) == RESPONSE
        assert tpm_side.recv(64) == COMMAND

    def test_kind(self, device_pair):
        backend, _ = device_pair
        assert backend.kind == BackendKind.OS_DEVICE
        assert backend.path == "/dev/tpm0"

    def test_short_response(self, device_pair):
        backend, tpm_side = device_pair
        tpm_side.sendall(b"\x80\x01\x00")
        with pytest.raises(TpmIOError, match="short response"):
            backend.submit(COMMAND)

    def test_write_error(self, device_pair):
        backend, _ = device_pair
        with mock.patch("tpmcomm.backends.device.os.write", side_effect=OSError(errno.EIO, "Input/output error")):
            with pytest.raises(TpmSendError, match="Input/output error"):
                backend.submit(COMMAND)

    def test_short_write(self, device_pair):
        backend, _ = device_pair
        with mock.patch("tpmcomm.backends.device.os.write", return_value=3):
            with pytest.raises(TpmSendError, match="short write"):
                backend.submit(COMMAND)

    def test_response_does_not_fit(self, device_pair):
        backend, _ = device_pair
        with mock.patch("tpmcomm.backends.device.os.write", return_value=len(COMMAND)):
            with mock.patch(
                "tpmcomm.backends.device.os.read", side_effect=OSError(errno.EMSGSIZE, "Message too long")
            ):
                with pytest.raises(TpmIOError, match="does not fit"):
                    backend.submit_into(COMMAND, bytearray(8))

    def test_closed(self, device_pair):
        backend, _ = device_pair
        backend.close()
        backend.close()
        with pytest.raises(TpmIOError, match="closed"):
            backend.submit(COMMAND)

    def test_none_command(self, device_pair):
        backend, _ = device_pair
        with pytest.raises(ValueError):
            backend.submit_into(None, bytearray(8))

    def test_missing_device(self, tmp_path):
        path = str(tmp_path / "tpm0")
        with pytest.raises(TpmConnectError) as exc_info:
            DeviceBackend(path)
        assert exc_info.value.target == path

    def test_resource_manager_kind(self):
        ours, tpm_side = socket.socketpair()
        with mock.patch("tpmcomm.backends.device.os.open", return_value=ours.detach()):
            backend = DeviceBackend("/dev/tpmrm0", BackendKind.OS_RESOURCE_MANAGER)
        try:
            assert backend.kind == BackendKind.OS_RESOURCE_MANAGER
        finally:
            backend.close()
            tpm_side.close()

    def test_emulator_kind_rejected(self):
        with pytest.raises(ValueError):
            DeviceBackend("/dev/tpm0", BackendKind.EMULATOR)


# =============================================================================
# TbsBackend
# =============================================================================


class FakeTbs:
    """Stands in for tbs.dll; ctypes pointers are dereferenced like the real API would."""

    def __init__(self, tpm_version=2, create_rc=0, response=RESPONSE, submit_rc=0):
        self.tpm_version = tpm_version
        self.create_rc = create_rc
        self.response = response
        self.submit_rc = submit_rc
        self.commands = []
        self.closed = []

    def Tbsi_Context_Create(self, params, context):
        assert params.contents.version == 2
        context.contents.value = 0x1234
        return self.create_rc

    def Tbsi_GetDeviceInfo(self, size, info):
        assert size == 16
        info.contents.tpmVersion = self.tpm_version
        return 0

    def Tbsip_Submit_Command(self, context, locality, priority, cmd, cmd_len, result, result_len):
        assert context.value == 0x1234
        assert (locality, priority) == (0, 200)
        self.commands.append(bytes(cmd[:cmd_len]))
        if self.submit_rc:
            return self.submit_rc
        if len(self.response) > result_len.contents.value:
            result_len.contents.value = len(self.response)
            return TBS_E_INSUFFICIENT_BUFFER
        ctypes.memmove(result, self.response, len(self.response))
        result_len.contents.value = len(self.response)
        return 0

    def Tbsip_Context_Close(self, context):
        self.closed.append(context.value)
        return 0


class TestTbsBackend:
    def test_submit(self):
        lib = FakeTbs()
        with TbsBackend(library=lib) as tpm:
            assert tpm.kind == BackendKind.OS_RESOURCE_MANAGER
            assert tpm.submit(COMMAND) == RESPONSE
        assert lib.commands == [COMMAND]
        assert lib.closed == [0x1234]

    def test_insufficient_buffer(self):
        tpm = TbsBackend(library=FakeTbs())
        with pytest.raises(TpmResponseTooLargeError) as exc_info:
            tpm.submit_into(COMMAND, bytearray(8))
        assert exc_info.value.reported == len(RESPONSE)
        assert exc_info.value.capacity == 8

    def test_submit_failure(self):
        tpm = TbsBackend(library=FakeTbs(submit_rc=0x80284001))
        with pytest.raises(TpmIOError, match="0x80284001"):
            tpm.submit(COMMAND)

    def test_context_create_failure(self):
        lib = FakeTbs(create_rc=0x8028400F)
        with pytest.raises(TpmConnectError, match="Tbsi_Context_Create"):
            TbsBackend(library=lib)
        assert lib.closed == []

    def test_tpm12_rejected(self):
        lib = FakeTbs(tpm_version=1)
        with pytest.raises(TpmConnectError, match="requires 2.0"):
            TbsBackend(library=lib)
        assert lib.closed == [0x1234]

    def test_close_twice(self):
        lib = FakeTbs()
        tpm = TbsBackend(library=lib)
        tpm.close()
        tpm.close()
        assert lib.closed == [0x1234]
        with pytest.raises(TpmIOError):
            tpm.submit(COMMAND)

    def test_unavailable_off_windows(self):
        with mock.patch("tpmcomm.backends.tbs.sys.platform", "linux"):
            with pytest.raises(TpmConnectError, match="only available on Windows"):
                TbsBackend()
