"""
tpmcomm - send command buffers to a TPM and receive its responses.

Quick start:
    import tpmcomm

    with tpmcomm.create() as tpm:           # backend from TPMCOMM_BACKEND, default emulator
        response = tpm.submit(command)

    with tpmcomm.emulator("127.0.0.1", port=2321) as tpm:
        length = tpm.submit_into(command, buffer)

Backends:
    emulator()          - TPM simulator over TCP (command port + platform port)
    device()            - TPM character device (/dev/tpm0)
    resource_manager()  - OS resource manager (TBS on Windows, /dev/tpmrm0 elsewhere)
"""

import logging
import os
import sys
import threading
from typing import Optional, Union

from tpmcomm.backends import TpmBackend
from tpmcomm.errors import (
    TpmAckError,
    TpmAllocationError,
    TpmCommError,
    TpmConnectError,
    TpmIOError,
    TpmProtocolError,
    TpmResponseTooLargeError,
    TpmSendError,
    TpmTimeoutError,
    TpmTransportError,
    TpmVersionMismatchError,
)
from tpmcomm.types import (
    DEFAULT_SIM_HOST,
    DEFAULT_SIM_PORT,
    DEFAULT_TIMEOUT,
    BackendKind,
    SimulatorCommand,
    SimulatorConfig,
)

__version__ = "0.1.0"

logger = logging.getLogger(__name__)


# ─────────────────────────────────────────────────────────────────────────────
# Environment Variables (read at import)
# ─────────────────────────────────────────────────────────────────────────────


def _get_env_int(name: str, default: Optional[int] = None) -> Optional[int]:
    """Get environment variable as int."""
    val = os.environ.get(name)
    if val is None:
        return default
    try:
        return int(val)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be an integer, got {val!r}")


def _get_env_kind(name: str) -> Optional[BackendKind]:
    """Get environment variable as BackendKind (accepts value or alias)."""
    val = os.environ.get(name)
    if val is None:
        return None
    try:
        return parse_kind(val)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be one of {_KIND_CHOICES}, got {val!r}")


_KIND_ALIASES = {
    "emulator": BackendKind.EMULATOR,
    "simulator": BackendKind.EMULATOR,
    "os-device": BackendKind.OS_DEVICE,
    "device": BackendKind.OS_DEVICE,
    "os-resource-manager": BackendKind.OS_RESOURCE_MANAGER,
    "resource-manager": BackendKind.OS_RESOURCE_MANAGER,
    "rm": BackendKind.OS_RESOURCE_MANAGER,
}
_KIND_CHOICES = ", ".join(sorted(_KIND_ALIASES))


def parse_kind(value: Union[str, BackendKind]) -> BackendKind:
    """Resolve a backend name ("emulator", "device", "rm", ...) to a BackendKind."""
    if isinstance(value, BackendKind):
        return value
    try:
        return _KIND_ALIASES[value.strip().lower()]
    except KeyError:
        raise ValueError(f"Unknown backend {value!r}, expected one of {_KIND_CHOICES}") from None


_env_backend = _get_env_kind("TPMCOMM_BACKEND")
_env_sim_host = os.environ.get("TPMCOMM_SIM_HOST")
_env_sim_port = _get_env_int("TPMCOMM_SIM_PORT")
_env_sim_platform_port = _get_env_int("TPMCOMM_SIM_PLATFORM_PORT")
_env_timeout = _get_env_int("TPMCOMM_TIMEOUT")
_env_device = os.environ.get("TPMCOMM_DEVICE")


# ─────────────────────────────────────────────────────────────────────────────
# Configuration
# ─────────────────────────────────────────────────────────────────────────────

_config_lock = threading.Lock()

# User-configured settings (set via configure())
_config_backend: Optional[BackendKind] = None
_config_sim_host: Optional[str] = None
_config_sim_port: Optional[int] = None
_config_sim_platform_port: Optional[int] = None
_config_timeout: Optional[int] = None
_config_device: Optional[str] = None


def configure(
    backend: Optional[Union[str, BackendKind]] = None,
    host: Optional[str] = None,
    port: Optional[int] = None,
    platform_port: Optional[int] = None,
    timeout: Optional[int] = None,
    device_path: Optional[str] = None,
) -> None:
    """Change the defaults used by create(), emulator() and device().

    Only the arguments that are given are changed. Explicit arguments to the
    factory functions still win over these defaults.

    Args:
        backend: Backend kind for create() (default: from TPMCOMM_BACKEND or emulator)
        host: Simulator host (default: from TPMCOMM_SIM_HOST or 127.0.0.1)
        port: Simulator command port (default: from TPMCOMM_SIM_PORT or 2321)
        platform_port: Simulator platform port (default: from TPMCOMM_SIM_PLATFORM_PORT or port + 1)
        timeout: Seconds per I/O wait (default: from TPMCOMM_TIMEOUT or 20)
        device_path: TPM device path (default: from TPMCOMM_DEVICE or /dev/tpm0)

    Raises:
        ValueError: If backend is unknown or timeout is not positive
    """
    global _config_backend, _config_sim_host, _config_sim_port, _config_sim_platform_port
    global _config_timeout, _config_device

    with _config_lock:
        if backend is not None:
            _config_backend = parse_kind(backend)
        if host is not None:
            _config_sim_host = host
        if port is not None:
            _config_sim_port = port
        if platform_port is not None:
            _config_sim_platform_port = platform_port
        if timeout is not None:
            if timeout <= 0:
                raise ValueError(f"timeout must be positive, got {timeout!r}")
            _config_timeout = timeout
        if device_path is not None:
            _config_device = device_path


def reset_configuration() -> None:
    """Forget everything set by configure()."""
    global _config_backend, _config_sim_host, _config_sim_port, _config_sim_platform_port
    global _config_timeout, _config_device

    with _config_lock:
        _config_backend = None
        _config_sim_host = None
        _config_sim_port = None
        _config_sim_platform_port = None
        _config_timeout = None
        _config_device = None


def _first(*values):
    for v in values:
        if v is not None:
            return v
    return None


def simulator_config(
    host: Optional[str] = None,
    port: Optional[int] = None,
    platform_port: Optional[int] = None,
    timeout: Optional[int] = None,
) -> SimulatorConfig:
    """Resolve simulator settings: explicit argument, then configure(), then environment, then default."""
    with _config_lock:
        return SimulatorConfig(
            host=_first(host, _config_sim_host, _env_sim_host, DEFAULT_SIM_HOST),
            port=_first(port, _config_sim_port, _env_sim_port, DEFAULT_SIM_PORT),
            platform_port=_first(platform_port, _config_sim_platform_port, _env_sim_platform_port),
            timeout=_first(timeout, _config_timeout, _env_timeout, DEFAULT_TIMEOUT),
        )


# ─────────────────────────────────────────────────────────────────────────────
# Backend Factories
# ─────────────────────────────────────────────────────────────────────────────


def emulator(
    host: Optional[str] = None,
    port: Optional[int] = None,
    platform_port: Optional[int] = None,
    timeout: Optional[int] = None,
    **connection_kwargs,
) -> TpmBackend:
    """Connect to a TPM simulator and return an EmulatorBackend.

    Raises:
        TpmConnectError: If the simulator cannot be reached
        TpmTransportError: If the handshake or power-on fails
    """
    from tpmcomm.backends.emulator import EmulatorBackend

    config = simulator_config(host, port, platform_port, timeout)
    return EmulatorBackend(config.host, config.port, config.platform_port, config.timeout, **connection_kwargs)


def device(path: Optional[str] = None) -> TpmBackend:
    """Open a TPM character device and return a DeviceBackend."""
    from tpmcomm.backends.device import DEFAULT_DEVICE_PATH, DeviceBackend

    with _config_lock:
        resolved = _first(path, _config_device, _env_device, DEFAULT_DEVICE_PATH)
    return DeviceBackend(resolved, BackendKind.OS_DEVICE)


def resource_manager(path: Optional[str] = None) -> TpmBackend:
    """Open the OS TPM resource manager.

    On Windows this is TPM Base Services; elsewhere the kernel resource
    manager device (/dev/tpmrm0, or ``path``).
    """
    if sys.platform == "win32":
        from tpmcomm.backends.tbs import TbsBackend

        return TbsBackend()

    from tpmcomm.backends.device import RESOURCE_MANAGER_DEVICE_PATH, DeviceBackend

    return DeviceBackend(path or RESOURCE_MANAGER_DEVICE_PATH, BackendKind.OS_RESOURCE_MANAGER)


def resolve_kind(kind: Optional[Union[str, BackendKind]] = None) -> BackendKind:
    """Backend kind to use: explicit argument, then configure(), then TPMCOMM_BACKEND, then emulator."""
    with _config_lock:
        return parse_kind(_first(kind, _config_backend, _env_backend, BackendKind.EMULATOR))


def create(kind: Optional[Union[str, BackendKind]] = None, **kwargs) -> TpmBackend:
    """Create a backend of the kind chosen by resolve_kind().

    Keyword arguments are passed to the matching factory: host/port/
    platform_port/timeout for the emulator, path for the OS backends.
    """
    resolved = resolve_kind(kind)
    logger.debug("Creating %s backend", resolved.value)

    if resolved == BackendKind.EMULATOR:
        return emulator(**kwargs)
    if resolved == BackendKind.OS_DEVICE:
        return device(**kwargs)
    return resource_manager(**kwargs)


__all__ = [
    "__version__",
    # Factories and configuration
    "configure",
    "reset_configuration",
    "create",
    "emulator",
    "device",
    "resource_manager",
    "parse_kind",
    "resolve_kind",
    "simulator_config",
    # Types
    "TpmBackend",
    "BackendKind",
    "SimulatorCommand",
    "SimulatorConfig",
    # Errors
    "TpmCommError",
    "TpmAllocationError",
    "TpmConnectError",
    "TpmTransportError",
    "TpmSendError",
    "TpmTimeoutError",
    "TpmIOError",
    "TpmProtocolError",
    "TpmVersionMismatchError",
    "TpmAckError",
    "TpmResponseTooLargeError",
]
