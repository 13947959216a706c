"""
Configuration for real/integration tests.

These tests require a running TPM 2.0 simulator (e.g. the Microsoft/IBM
reference simulator) listening on its command and platform ports:
- command:  TPMCOMM_SIM_HOST:TPMCOMM_SIM_PORT (default 127.0.0.1:2321)
- platform: command port + 1

Run these tests explicitly:
    pytest tests/real/ -v -s
"""

import os
import socket

import pytest

SIM_HOST = os.environ.get("TPMCOMM_SIM_HOST", "127.0.0.1")
SIM_PORT = int(os.environ.get("TPMCOMM_SIM_PORT", "2321"))


def simulator_available() -> bool:
    """Check if a TPM simulator is reachable."""
    try:
        sock = socket.create_connection((SIM_HOST, SIM_PORT), timeout=2.0)
        sock.close()
        return True
    except (socket.timeout, ConnectionRefusedError, OSError, socket.gaierror):
        return False


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers",
        "real: marks tests that require a running TPM simulator",
    )


def pytest_collection_modifyitems(config, items):
    """Add 'real' marker to all tests in this directory."""
    available = None
    for item in items:
        if "tests/real" in str(item.fspath) or "tests\\real" in str(item.fspath):
            item.add_marker(pytest.mark.real)
            if available is None:
                available = simulator_available()
            if not available:
                item.add_marker(pytest.mark.skip(reason=f"TPM simulator not reachable at {SIM_HOST}:{SIM_PORT}"))


@pytest.fixture
def simulator_address():
    return SIM_HOST, SIM_PORT


@pytest.fixture
def simulator():
    """An EmulatorBackend connected to the real simulator."""
    import tpmcomm

    backend = tpmcomm.emulator(SIM_HOST, SIM_PORT)
    yield backend
    backend.close()
