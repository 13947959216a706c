"""Tests for tpmcomm.cli - tpm-submit and shared CLI helpers."""

import contextlib
import io
from types import SimpleNamespace
from unittest import mock

import pytest

import tpmcomm
from tpmcomm.errors import TpmConnectError, TpmResponseTooLargeError


class TestParseHex:
    @pytest.mark.parametrize(
        "text,expected",
        [
            ("aabb", b"\xaa\xbb"),
            ("0xAABB", b"\xaa\xbb"),
            ("aa bb\ncc", b"\xaa\xbb\xcc"),
            ("aa:bb", b"\xaa\xbb"),
            ("", b""),
        ],
    )
    def test_valid(self, text, expected):
        from tpmcomm.cli._common import parse_hex

        assert parse_hex(text) == expected

    @pytest.mark.parametrize("text", ["abc", "zz"])
    def test_invalid(self, text):
        from tpmcomm.cli._common import parse_hex

        with pytest.raises(ValueError, match="Invalid hex"):
            parse_hex(text)


class TestMakeBackend:
    def _args(self, **overrides):
        values = dict(backend=None, host=None, port=None, platform_port=None, timeout=None, device_path=None)
        values.update(overrides)
        return SimpleNamespace(**values)

    @mock.patch("tpmcomm.create")
    def test_emulator_flags(self, mock_create):
        from tpmcomm.cli._common import make_backend

        make_backend(self._args(backend="emulator", host="sim", port=2400, timeout=3))
        mock_create.assert_called_once_with(tpmcomm.BackendKind.EMULATOR, host="sim", port=2400, timeout=3)

    @mock.patch("tpmcomm.create")
    def test_device_path(self, mock_create):
        from tpmcomm.cli._common import make_backend

        make_backend(self._args(backend="device", device_path="/dev/tpm1", host="ignored"))
        mock_create.assert_called_once_with(tpmcomm.BackendKind.OS_DEVICE, path="/dev/tpm1")

    @mock.patch("tpmcomm.create")
    def test_default_kind_from_configuration(self, mock_create):
        from tpmcomm.cli._common import make_backend

        tpmcomm.configure(backend="rm")
        make_backend(self._args())
        mock_create.assert_called_once_with(tpmcomm.BackendKind.OS_RESOURCE_MANAGER)


def _run(argv):
    from tpmcomm.cli.submit import main

    out, err = io.StringIO(), io.StringIO()
    with contextlib.redirect_stdout(out), contextlib.redirect_stderr(err):
        rc = main(argv)
    return rc, out.getvalue(), err.getvalue()


class TestSubmitMocked:
    @mock.patch("tpmcomm.cli.submit.make_backend")
    def test_prints_response_hex(self, mock_mb):
        backend = mock.MagicMock()
        backend.submit.return_value = b"\x80\x01\x00"
        mock_mb.return_value = backend

        rc, out, _ = _run(["80 01 00 00 00 0c", "--max-response", "128"])

        assert rc == 0
        assert out.strip() == "800100"
        backend.submit.assert_called_once_with(bytes.fromhex("80010000000c"), 128)
        backend.close.assert_called_once()

    @mock.patch("tpmcomm.cli.submit.make_backend")
    def test_transport_error(self, mock_mb):
        backend = mock.MagicMock()
        backend.submit.side_effect = TpmResponseTooLargeError(32, 16)
        mock_mb.return_value = backend

        rc, _, err = _run(["aabb"])

        assert rc == 1
        assert "exceeds buffer capacity" in err
        backend.close.assert_called_once()

    @mock.patch("tpmcomm.cli.submit.make_backend")
    def test_connect_error(self, mock_mb):
        mock_mb.side_effect = TpmConnectError("127.0.0.1:2321")
        rc, _, err = _run(["aabb"])
        assert rc == 1
        assert "Connection error" in err

    @mock.patch("tpmcomm.cli.submit.make_backend")
    def test_bad_hex(self, mock_mb):
        rc, _, err = _run(["xyz"])
        assert rc == 2
        assert "Invalid hex" in err
        mock_mb.assert_not_called()

    @mock.patch("tpmcomm.cli.submit.make_backend")
    def test_bad_max_response(self, mock_mb):
        rc, _, _ = _run(["aabb", "--max-response", "0"])
        assert rc == 2
        mock_mb.assert_not_called()

    def test_bad_backend_choice_exits_2(self):
        with pytest.raises(SystemExit) as exc_info:
            _run(["aabb", "-b", "serial"])
        assert exc_info.value.code == 2


class TestSubmitAgainstFakeSimulator:
    def test_round_trip(self, fake_sim):
        rc, out, _ = _run(
            ["-b", "emulator", "-P", str(fake_sim.port), "--platform-port", str(fake_sim.platform_port), "c0ffee"]
        )
        assert rc == 0
        assert out.strip() == "c0ffee"
        assert fake_sim.commands == [b"\xc0\xff\xee"]
