"""
OS resource-manager backend - Windows TPM Base Services (tbs.dll).

Only TPM 2.0 devices are accepted. Commands are submitted at locality 0
with normal priority.
"""

import ctypes
import logging
import sys
from typing import Any, Optional

from tpmcomm.backends import TpmBackend
from tpmcomm.errors import TpmConnectError, TpmIOError, TpmResponseTooLargeError
from tpmcomm.types import BackendKind, response_view

logger = logging.getLogger(__name__)

TBS_SUCCESS = 0
TBS_E_INSUFFICIENT_BUFFER = 0x80284005
TBS_CONTEXT_VERSION_TWO = 2
TBS_COMMAND_LOCALITY_ZERO = 0
TBS_COMMAND_PRIORITY_NORMAL = 200
TPM_VERSION_20 = 2

# TBS_CONTEXT_PARAMS2 bitfield: requestRaw(bit 0), includeTpm12(bit 1), includeTpm20(bit 2)
_INCLUDE_TPM20 = 1 << 2

_TBS_HCONTEXT = ctypes.c_void_p


class _TbsContextParams2(ctypes.Structure):
    _fields_ = [("version", ctypes.c_uint32), ("flags", ctypes.c_uint32)]


class _TpmDeviceInfo(ctypes.Structure):
    _fields_ = [
        ("structVersion", ctypes.c_uint32),
        ("tpmVersion", ctypes.c_uint32),
        ("tpmInterfaceType", ctypes.c_uint32),
        ("tpmImpRevision", ctypes.c_uint32),
    ]


def _load_tbs() -> Any:
    """Load tbs.dll and declare the functions we call."""
    if sys.platform != "win32":
        raise TpmConnectError("tbs", "TPM Base Services are only available on Windows")
    try:
        lib = ctypes.WinDLL("tbs")  # type: ignore[attr-defined]
    except OSError as e:
        raise TpmConnectError("tbs", f"unable to load tbs.dll: {e}") from e

    lib.Tbsi_Context_Create.argtypes = [ctypes.POINTER(_TbsContextParams2), ctypes.POINTER(_TBS_HCONTEXT)]
    lib.Tbsi_Context_Create.restype = ctypes.c_uint32
    lib.Tbsi_GetDeviceInfo.argtypes = [ctypes.c_uint32, ctypes.POINTER(_TpmDeviceInfo)]
    lib.Tbsi_GetDeviceInfo.restype = ctypes.c_uint32
    lib.Tbsip_Submit_Command.argtypes = [
        _TBS_HCONTEXT,
        ctypes.c_uint32,
        ctypes.c_uint32,
        ctypes.POINTER(ctypes.c_ubyte),
        ctypes.c_uint32,
        ctypes.POINTER(ctypes.c_ubyte),
        ctypes.POINTER(ctypes.c_uint32),
    ]
    lib.Tbsip_Submit_Command.restype = ctypes.c_uint32
    lib.Tbsip_Context_Close.argtypes = [_TBS_HCONTEXT]
    lib.Tbsip_Context_Close.restype = ctypes.c_uint32
    return lib


class TbsBackend(TpmBackend):
    """
    Backend for the Windows TPM Base Services resource manager.

    Args:
        library: Pre-loaded tbs library object (default: load tbs.dll)

    Raises:
        TpmConnectError: If TBS is unavailable, a context cannot be created,
            or the device is not a TPM 2.0
    """

    def __init__(self, library: Optional[Any] = None):
        self._lib = library if library is not None else _load_tbs()
        self._context: Optional[_TBS_HCONTEXT] = None

        params = _TbsContextParams2(version=TBS_CONTEXT_VERSION_TWO, flags=_INCLUDE_TPM20)
        context = _TBS_HCONTEXT()
        rc = self._lib.Tbsi_Context_Create(ctypes.pointer(params), ctypes.pointer(context))
        if rc != TBS_SUCCESS:
            logger.error("Failure: Tbsi_Context_Create %#x", rc)
            raise TpmConnectError("tbs", f"Tbsi_Context_Create failed: {rc:#x}")
        self._context = context

        info = _TpmDeviceInfo(structVersion=1)
        rc = self._lib.Tbsi_GetDeviceInfo(ctypes.sizeof(info), ctypes.pointer(info))
        if rc != TBS_SUCCESS:
            logger.error("Failure getting device tpm information %#x", rc)
            self.close()
            raise TpmConnectError("tbs", f"Tbsi_GetDeviceInfo failed: {rc:#x}")
        if info.tpmVersion != TPM_VERSION_20:
            logger.error("Failure Invalid tpm version specified. Requires 2.0.")
            self.close()
            raise TpmConnectError("tbs", f"TPM version {info.tpmVersion} is not supported, requires 2.0")

    @property
    def kind(self) -> BackendKind:
        return BackendKind.OS_RESOURCE_MANAGER

    def submit_into(self, command: bytes, response) -> int:
        view = response_view(command, response)
        if self._context is None:
            raise TpmIOError("TBS context is closed")

        capacity = view.nbytes
        cmd_buf = (ctypes.c_ubyte * len(command)).from_buffer_copy(command)
        result_buf = (ctypes.c_ubyte * capacity)()
        result_len = ctypes.c_uint32(capacity)

        rc = self._lib.Tbsip_Submit_Command(
            self._context,
            TBS_COMMAND_LOCALITY_ZERO,
            TBS_COMMAND_PRIORITY_NORMAL,
            cmd_buf,
            len(command),
            result_buf,
            ctypes.pointer(result_len),
        )
        if rc == TBS_E_INSUFFICIENT_BUFFER:
            raise TpmResponseTooLargeError(result_len.value, capacity)
        if rc != TBS_SUCCESS:
            logger.error("Failure sending command to tpm %#x", rc)
            raise TpmIOError(f"Tbsip_Submit_Command failed: {rc:#x}")

        length = result_len.value
        view[:length] = bytes(result_buf[:length])
        return length

    def close(self) -> None:
        context, self._context = self._context, None
        if context is not None:
            rc = self._lib.Tbsip_Context_Close(context)
            if rc != TBS_SUCCESS:
                logger.debug("Tbsip_Context_Close returned %#x", rc)

    def __repr__(self):
        state = "open" if self._context is not None else "closed"
        return f"TbsBackend({state})"
