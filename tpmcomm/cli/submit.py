"""tpm-submit -- Send a raw TPM command and print the response."""

import sys
from typing import Optional

from tpmcomm.cli._common import (
    EXIT_OK,
    EXIT_TRANSPORT_ERROR,
    EXIT_USAGE_ERROR,
    base_parser,
    make_backend,
    parse_hex,
    setup_logging,
)
from tpmcomm.errors import TpmCommError
from tpmcomm.types import DEFAULT_MAX_RESPONSE


def main(argv: Optional[list[str]] = None) -> int:
    parser = base_parser("Send a marshaled TPM command and print the response as hex")
    parser.add_argument("command", metavar="HEX", help="command bytes as hex (e.g. 80010000000c00000144 0000)")
    parser.add_argument(
        "--max-response",
        type=int,
        default=DEFAULT_MAX_RESPONSE,
        help=f"response buffer size in bytes (default: {DEFAULT_MAX_RESPONSE})",
    )
    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    try:
        command = parse_hex(args.command)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_USAGE_ERROR
    if args.max_response <= 0:
        print(f"Error: --max-response must be positive, got {args.max_response}", file=sys.stderr)
        return EXIT_USAGE_ERROR
    if args.timeout is not None and args.timeout <= 0:
        print(f"Error: --timeout must be positive, got {args.timeout}", file=sys.stderr)
        return EXIT_USAGE_ERROR

    try:
        backend = make_backend(args)
    except KeyboardInterrupt:
        return 130
    except TpmCommError as e:
        print(f"Connection error: {e}", file=sys.stderr)
        return EXIT_TRANSPORT_ERROR
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_USAGE_ERROR

    try:
        response = backend.submit(command, args.max_response)
    except KeyboardInterrupt:
        return 130
    except TpmCommError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_TRANSPORT_ERROR
    finally:
        backend.close()

    print(response.hex())
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
