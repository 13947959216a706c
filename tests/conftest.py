"""
Shared pytest fixtures for tpmcomm unit tests.
"""

import pytest

import tpmcomm
from tpmcomm.testing import FakeSimulator
from tests.fakes import FakeTicks, simulator_ios


@pytest.fixture(autouse=True)
def _reset_configuration():
    """configure() is process-wide; start and end every test with defaults."""
    tpmcomm.reset_configuration()
    yield
    tpmcomm.reset_configuration()


@pytest.fixture
def ticks():
    return FakeTicks()


@pytest.fixture
def healthy_ios():
    """(factory, command_io, platform_io) for a simulator that accepts everything."""
    return simulator_ios()


@pytest.fixture
def fake_sim():
    """A running FakeSimulator on OS-assigned loopback ports."""
    with FakeSimulator() as sim:
        yield sim


@pytest.fixture
def sim_backend(fake_sim):
    """An EmulatorBackend connected to fake_sim."""
    backend = tpmcomm.emulator(port=fake_sim.port, platform_port=fake_sim.platform_port, timeout=5)
    yield backend
    backend.close()
