"""
Testing utilities - FakeSimulator, an in-process TPM simulator for tests.

FakeSimulator speaks the simulator's command-port and platform-port
protocols over real loopback sockets, so the whole client stack (SocketIO,
wait loop, framing, handshake, power-on) can be exercised without a real
simulator. It knows nothing about TPM commands: a responder callable maps
each command to the response bytes to send back (echo by default).

Usage:
    with FakeSimulator(responder=lambda cmd: b"\\x80\\x01" + bytes(8)) as sim:
        with tpmcomm.emulator(port=sim.port, platform_port=sim.platform_port) as tpm:
            tpm.submit(command)
        assert sim.commands == [command]
"""

import logging
import socket
import socketserver
import struct
import threading
import time
from typing import Callable, Optional

from tpmcomm.types import CLIENT_PROTOCOL_VERSION, SimulatorCommand

logger = logging.getLogger(__name__)

_U32 = struct.Struct(">I")

Responder = Callable[[bytes], bytes]


def _echo(command: bytes) -> bytes:
    return command


def _recv_exact(sock: socket.socket, n: int) -> Optional[bytes]:
    """Read exactly n bytes, or None if the peer closed first."""
    buf = bytearray()
    while len(buf) < n:
        chunk = sock.recv(n - len(buf))
        if not chunk:
            return None
        buf.extend(chunk)
    return bytes(buf)


def _recv_u32(sock: socket.socket) -> Optional[int]:
    data = _recv_exact(sock, 4)
    return None if data is None else _U32.unpack(data)[0]


class _ThreadedTCPServer(socketserver.ThreadingMixIn, socketserver.TCPServer):
    daemon_threads = True
    allow_reuse_address = True


class FakeSimulator:
    """
    Fake TPM simulator listening on a command port and a platform port.

    Args:
        host: Interface to listen on
        port: Command port (0 = OS-assigned)
        platform_port: Platform port (0 = OS-assigned)
        server_version: Protocol version reported in the handshake
        tpm_info: TPM info word reported in the handshake
        handshake_ack: Ack word ending the handshake
        responder: Maps a received command to its response bytes
        response_ack: Ack word following every response
        reported_length: If set, response length reported instead of the real one
        power_on_ack: Ack word for SIGNAL_POWER_ON
        nv_on_ack: Ack word for SIGNAL_NV_ON
        fragment: Send every reply one byte at a time
        response_delay: Seconds to sleep before answering a command

    Recorded state (read after the client is done):
        commands: Command bytes received, in order
        localities: Locality byte sent with each command
        platform_signals: Opcodes received on the platform port, in order
        handshakes: Client versions received in handshakes
        session_ended: Event set when SESSION_END arrives
    """

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 0,
        platform_port: int = 0,
        *,
        server_version: int = CLIENT_PROTOCOL_VERSION,
        tpm_info: int = 0,
        handshake_ack: int = 0,
        responder: Responder = _echo,
        response_ack: int = 0,
        reported_length: Optional[int] = None,
        power_on_ack: int = 0,
        nv_on_ack: int = 0,
        fragment: bool = False,
        response_delay: float = 0.0,
    ):
        self.host = host
        self.server_version = server_version
        self.tpm_info = tpm_info
        self.handshake_ack = handshake_ack
        self.responder = responder
        self.response_ack = response_ack
        self.reported_length = reported_length
        self.power_on_ack = power_on_ack
        self.nv_on_ack = nv_on_ack
        self.fragment = fragment
        self.response_delay = response_delay

        self._lock = threading.Lock()
        self.commands: list[bytes] = []
        self.localities: list[int] = []
        self.platform_signals: list[int] = []
        self.handshakes: list[int] = []
        self.session_ended = threading.Event()

        self._requested_port = port
        self._requested_platform_port = platform_port
        self._command_server: Optional[_ThreadedTCPServer] = None
        self._platform_server: Optional[_ThreadedTCPServer] = None
        self._threads: list[threading.Thread] = []

    @property
    def port(self) -> int:
        assert self._command_server is not None, "simulator not started"
        return self._command_server.server_address[1]

    @property
    def platform_port(self) -> int:
        assert self._platform_server is not None, "simulator not started"
        return self._platform_server.server_address[1]

    @property
    def running(self) -> bool:
        return self._command_server is not None

    def start(self) -> "FakeSimulator":
        sim = self

        class CommandHandler(socketserver.BaseRequestHandler):
            def handle(self):
                sim._serve_command(self.request)

        class PlatformHandler(socketserver.BaseRequestHandler):
            def handle(self):
                sim._serve_platform(self.request)

        self._command_server = _ThreadedTCPServer((self.host, self._requested_port), CommandHandler)
        self._platform_server = _ThreadedTCPServer((self.host, self._requested_platform_port), PlatformHandler)
        for name, server in (("command", self._command_server), ("platform", self._platform_server)):
            thread = threading.Thread(target=server.serve_forever, name=f"fake-tpm-sim-{name}", daemon=True)
            thread.start()
            self._threads.append(thread)

        logger.info("Fake TPM simulator listening on %s:%d (platform %d)", self.host, self.port, self.platform_port)
        return self

    def stop(self) -> None:
        for server in (self._command_server, self._platform_server):
            if server is not None:
                server.shutdown()
                server.server_close()
        for thread in self._threads:
            thread.join(timeout=3.0)
        self._threads = []
        self._command_server = None
        self._platform_server = None

    # ------------------------------------------------------------------
    # Protocol handlers (run on server threads)
    # ------------------------------------------------------------------

    def _send(self, sock: socket.socket, data: bytes):
        if self.fragment:
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
            for i in range(len(data)):
                sock.sendall(data[i : i + 1])
        else:
            sock.sendall(data)

    def _serve_command(self, sock: socket.socket):
        try:
            while True:
                opcode = _recv_u32(sock)
                if opcode is None:
                    return

                if opcode == SimulatorCommand.HANDSHAKE:
                    client_version = _recv_u32(sock)
                    if client_version is None:
                        return
                    with self._lock:
                        self.handshakes.append(client_version)
                    self._send(sock, _U32.pack(self.server_version) + _U32.pack(self.tpm_info))
                    self._send(sock, _U32.pack(self.handshake_ack))

                elif opcode == SimulatorCommand.SEND_COMMAND:
                    header = _recv_exact(sock, 5)
                    if header is None:
                        return
                    locality = header[0]
                    length = _U32.unpack(header[1:])[0]
                    command = _recv_exact(sock, length) if length else b""
                    if command is None:
                        return
                    with self._lock:
                        self.localities.append(locality)
                        self.commands.append(command)
                    if self.response_delay:
                        time.sleep(self.response_delay)
                    response = self.responder(command)
                    reported = self.reported_length if self.reported_length is not None else len(response)
                    self._send(sock, _U32.pack(reported) + response + _U32.pack(self.response_ack))

                elif opcode == SimulatorCommand.SESSION_END:
                    self.session_ended.set()
                    return

                elif opcode == SimulatorCommand.STOP:
                    return

                else:
                    logger.warning("Fake simulator: unknown command-port opcode %d", opcode)
                    return
        except OSError as e:
            logger.debug("Fake simulator command connection ended: %s", e)

    def _serve_platform(self, sock: socket.socket):
        try:
            while True:
                opcode = _recv_u32(sock)
                if opcode is None:
                    return
                with self._lock:
                    self.platform_signals.append(opcode)
                if opcode == SimulatorCommand.SIGNAL_POWER_ON:
                    ack = self.power_on_ack
                elif opcode == SimulatorCommand.SIGNAL_NV_ON:
                    ack = self.nv_on_ack
                else:
                    ack = 0
                self._send(sock, _U32.pack(ack))
        except OSError as e:
            logger.debug("Fake simulator platform connection ended: %s", e)

    def __enter__(self):
        if not self.running:
            self.start()
        return self

    def __exit__(self, *exc):
        self.stop()

    def __repr__(self):
        if not self.running:
            return "FakeSimulator(stopped)"
        return f"FakeSimulator({self.host}:{self.port}, platform {self.platform_port})"


__all__ = ["FakeSimulator"]
