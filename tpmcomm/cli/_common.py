"""Shared CLI infrastructure for tpm-submit."""

import argparse
import logging
from typing import Any

import tpmcomm

# Exit codes
EXIT_OK = 0
EXIT_TRANSPORT_ERROR = 1
EXIT_USAGE_ERROR = 2

_BACKEND_CHOICES = ("emulator", "device", "rm")


def base_parser(description: str) -> argparse.ArgumentParser:
    """Create ArgumentParser with the connection flags shared by all CLI tools."""
    parser = argparse.ArgumentParser(description=description)
    parser.add_argument("-b", "--backend", choices=_BACKEND_CHOICES, default=None, help="backend type")
    parser.add_argument("-H", "--host", default=None, help="simulator host")
    parser.add_argument("-P", "--port", type=int, default=None, help="simulator command port")
    parser.add_argument("--platform-port", type=int, default=None, help="simulator platform port (default: port + 1)")
    parser.add_argument("--device", dest="device_path", default=None, help="TPM device path")
    parser.add_argument("--timeout", type=int, default=None, help="seconds per I/O wait (default: 20)")
    parser.add_argument("-v", "--verbose", action="store_true", help="verbose output")
    return parser


def setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def make_backend(args) -> tpmcomm.TpmBackend:
    """Create backend via tpmcomm factory functions based on parsed args."""
    kind = tpmcomm.resolve_kind(args.backend)

    kwargs: dict[str, Any] = {}
    if kind == tpmcomm.BackendKind.EMULATOR:
        for name in ("host", "port", "platform_port", "timeout"):
            value = getattr(args, name, None)
            if value is not None:
                kwargs[name] = value
    elif args.device_path is not None:
        kwargs["path"] = args.device_path
    return tpmcomm.create(kind, **kwargs)


def parse_hex(s: str) -> bytes:
    """Parse a hex string, ignoring whitespace, colons and an optional 0x prefix."""
    cleaned = "".join(s.split()).replace(":", "")
    if cleaned.lower().startswith("0x"):
        cleaned = cleaned[2:]
    try:
        return bytes.fromhex(cleaned)
    except ValueError:
        raise ValueError(f"Invalid hex string: {s!r}") from None
