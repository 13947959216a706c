"""End-to-end tests: the full client stack against tpmcomm.testing.FakeSimulator."""

import pytest

import tpmcomm
from tpmcomm.errors import (
    TpmAckError,
    TpmConnectError,
    TpmIOError,
    TpmResponseTooLargeError,
    TpmTransportError,
    TpmVersionMismatchError,
)
from tpmcomm.testing import FakeSimulator

GET_RANDOM = bytes.fromhex("80010000000c0000017b0008")
GET_RANDOM_RESPONSE = bytes.fromhex("80010000001400000000" "0008" "1122334455667788")


def _emulator(sim, **kwargs):
    return tpmcomm.emulator(port=sim.port, platform_port=sim.platform_port, timeout=5, **kwargs)


class TestEmulatorOverSockets:
    def test_submit_round_trip(self, fake_sim, sim_backend):
        assert sim_backend.kind == tpmcomm.BackendKind.EMULATOR
        assert sim_backend.submit(b"\xaa\xbb") == b"\xaa\xbb"
        assert fake_sim.commands == [b"\xaa\xbb"]
        assert fake_sim.localities == [0]

    def test_handshake_and_power_sequence_seen_by_simulator(self, fake_sim, sim_backend):
        assert fake_sim.handshakes == [1]
        assert fake_sim.platform_signals == [1, 11]

    def test_responder(self):
        with FakeSimulator(responder=lambda cmd: GET_RANDOM_RESPONSE) as sim:
            with _emulator(sim) as tpm:
                buf = bytearray(64)
                n = tpm.submit_into(GET_RANDOM, buf)
            assert bytes(buf[:n]) == GET_RANDOM_RESPONSE
            assert sim.commands == [GET_RANDOM]

    def test_fragmented_replies(self):
        with FakeSimulator(fragment=True, tpm_info=7) as sim:
            with _emulator(sim) as tpm:
                assert tpm.tpm_info == 7
                assert tpm.submit(bytes(range(20))) == bytes(range(20))

    def test_many_commands(self, fake_sim, sim_backend):
        for i in range(10):
            assert sim_backend.submit(bytes([i]) * (i + 1)) == bytes([i]) * (i + 1)
        assert len(fake_sim.commands) == 10

    def test_close_ends_session(self, fake_sim):
        backend = _emulator(fake_sim)
        backend.close()
        assert fake_sim.session_ended.wait(2.0)


class TestEmulatorFailuresOverSockets:
    def test_version_mismatch(self):
        with FakeSimulator(server_version=2) as sim:
            with pytest.raises(TpmVersionMismatchError):
                _emulator(sim)
            assert sim.platform_signals == []

    def test_power_on_rejected(self):
        with FakeSimulator(power_on_ack=1) as sim:
            with pytest.raises(TpmAckError):
                _emulator(sim)
            assert sim.platform_signals == [1]

    def test_response_too_large(self):
        with FakeSimulator(responder=lambda cmd: bytes(32)) as sim:
            with _emulator(sim) as tpm:
                buf = bytearray(16)
                with pytest.raises(TpmResponseTooLargeError):
                    tpm.submit_into(b"\x01", buf)
                assert buf == bytearray(16)
                with pytest.raises(TpmIOError):
                    tpm.submit(b"\x02")

    def test_nothing_listening(self):
        with FakeSimulator() as sim:
            port = sim.port
        with pytest.raises(TpmConnectError):
            tpmcomm.emulator(port=port, timeout=2)

    def test_simulator_stops_mid_session(self):
        sim = FakeSimulator(responder=lambda cmd: b"")
        sim.start()
        backend = _emulator(sim)
        try:
            # STOP makes the fake drop the command connection
            backend.connection._channel.send_u32(tpmcomm.SimulatorCommand.STOP)
            with pytest.raises(TpmTransportError):
                backend.submit(b"\x01")
        finally:
            backend.close()
            sim.stop()
