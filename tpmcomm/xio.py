"""
Callback-driven I/O abstraction and its socket implementation.

AsyncIO is the interface the simulator transport is written against: open()
and send() only *start* operations, and their outcomes are reported through
callbacks that fire from inside dowork(). Nothing happens between dowork()
calls, so a single thread that pumps dowork() in a loop sees every callback
on its own stack and needs no locking.

SocketIO implements the interface over a non-blocking TCP socket, using
select() to find out when a pending connect has finished.

Example:
    io = SocketIO("127.0.0.1", 2321)
    io.open(on_open, on_bytes, on_error)
    while not opened:
        io.dowork()
"""

import errno
import logging
import select
import socket
from abc import ABC, abstractmethod
from collections import deque
from enum import Enum
from typing import Callable, Optional

from .errors import TpmConnectError, TpmSendError

logger = logging.getLogger(__name__)

RECV_CHUNK_SIZE = 4096

# connect_ex() results that mean "in progress" rather than "failed"
_CONNECT_PENDING = {0, errno.EINPROGRESS, errno.EWOULDBLOCK, errno.EALREADY, 10035}  # 10035 = WSAEWOULDBLOCK


class IOOpenResult(Enum):
    OK = "ok"
    ERROR = "error"
    CANCELLED = "cancelled"


class IOSendResult(Enum):
    OK = "ok"
    ERROR = "error"
    CANCELLED = "cancelled"


OpenCompleteCallback = Callable[[IOOpenResult], None]
BytesReceivedCallback = Callable[[bytes], None]
IOErrorCallback = Callable[[], None]
SendCompleteCallback = Callable[[IOSendResult], None]
CloseCompleteCallback = Callable[[], None]


class AsyncIO(ABC):
    """Non-blocking, callback-driven byte stream."""

    @abstractmethod
    def open(
        self,
        on_open_complete: OpenCompleteCallback,
        on_bytes_received: BytesReceivedCallback,
        on_io_error: IOErrorCallback,
    ) -> None:
        """Start opening the stream.

        Raises:
            TpmConnectError: If the open could not even be started.
        """

    @abstractmethod
    def send(self, data: bytes, on_send_complete: SendCompleteCallback) -> None:
        """Queue bytes for sending.

        Raises:
            TpmSendError: If the bytes could not be queued.
        """

    @abstractmethod
    def dowork(self) -> None:
        """Make whatever progress is possible without blocking and fire callbacks."""

    @abstractmethod
    def close(self, on_close_complete: Optional[CloseCompleteCallback] = None) -> None:
        """Close the stream. Pending sends complete with CANCELLED."""

    def destroy(self) -> None:
        """Release the handle. Safe to call more than once."""
        self.close()


class _State(Enum):
    NOT_OPEN = "not_open"
    OPENING = "opening"
    OPEN = "open"
    ERROR = "error"
    CLOSED = "closed"


class SocketIO(AsyncIO):
    """AsyncIO over a non-blocking TCP client socket."""

    def __init__(self, host: str, port: int):
        self._host = host
        self._port = port
        self._socket: Optional[socket.socket] = None
        self._state = _State.NOT_OPEN
        self._pending: deque[tuple[memoryview, SendCompleteCallback]] = deque()

        self._on_open_complete: Optional[OpenCompleteCallback] = None
        self._on_bytes_received: Optional[BytesReceivedCallback] = None
        self._on_io_error: Optional[IOErrorCallback] = None

    @property
    def host(self) -> str:
        return self._host

    @property
    def port(self) -> int:
        return self._port

    @property
    def is_open(self) -> bool:
        return self._state == _State.OPEN

    def open(self, on_open_complete, on_bytes_received, on_io_error) -> None:
        if self._state != _State.NOT_OPEN:
            raise TpmConnectError(self._target, f"cannot open socket in state {self._state.value}")

        try:
            infos = socket.getaddrinfo(self._host, self._port, type=socket.SOCK_STREAM)
        except OSError as e:
            raise TpmConnectError(self._target, f"address lookup failed: {e}") from e
        family, socktype, proto, _, addr = infos[0]

        try:
            sock = socket.socket(family, socktype, proto)
        except OSError as e:
            raise TpmConnectError(self._target, f"socket creation failed: {e}") from e

        try:
            sock.setblocking(False)
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
            rc = sock.connect_ex(addr)
        except OSError as e:
            sock.close()
            raise TpmConnectError(self._target, str(e)) from e

        if rc not in _CONNECT_PENDING:
            sock.close()
            raise TpmConnectError(self._target, errno.errorcode.get(rc, str(rc)))

        self._socket = sock
        self._on_open_complete = on_open_complete
        self._on_bytes_received = on_bytes_received
        self._on_io_error = on_io_error
        self._state = _State.OPENING
        logger.debug("Opening socket to %s", self._target)

    def send(self, data: bytes, on_send_complete: SendCompleteCallback) -> None:
        if self._state not in (_State.OPENING, _State.OPEN):
            raise TpmSendError(f"cannot send on {self._target}: socket is {self._state.value}")
        self._pending.append((memoryview(bytes(data)), on_send_complete))

    def dowork(self) -> None:
        if self._state == _State.OPENING:
            self._poll_connect()
        if self._state == _State.OPEN:
            self._flush_sends()
        if self._state == _State.OPEN:
            self._drain_receive()

    def close(self, on_close_complete: Optional[CloseCompleteCallback] = None) -> None:
        sock, self._socket = self._socket, None
        if sock is not None:
            try:
                sock.close()
            except OSError as e:
                logger.debug("Error closing socket to %s: %s", self._target, e)
        self._cancel_pending(IOSendResult.CANCELLED)
        if self._state != _State.NOT_OPEN:
            self._state = _State.CLOSED
        if on_close_complete is not None:
            on_close_complete()

    def destroy(self) -> None:
        self.close()
        self._on_open_complete = None
        self._on_bytes_received = None
        self._on_io_error = None

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @property
    def _target(self) -> str:
        return f"{self._host}:{self._port}"

    def _poll_connect(self):
        assert self._socket is not None
        try:
            _, writable, failed = select.select([], [self._socket], [self._socket], 0)
        except (OSError, ValueError) as e:
            self._open_failed(str(e))
            return
        if not writable and not failed:
            return

        err = self._socket.getsockopt(socket.SOL_SOCKET, socket.SO_ERROR)
        if err != 0 or failed:
            self._open_failed(errno.errorcode.get(err, str(err)))
            return

        self._state = _State.OPEN
        logger.debug("Socket to %s open", self._target)
        self._notify(self._on_open_complete, IOOpenResult.OK)

    def _open_failed(self, reason: str):
        logger.error("Failure: connecting to %s (%s)", self._target, reason)
        self._state = _State.ERROR
        self._cancel_pending(IOSendResult.ERROR)
        self._notify(self._on_open_complete, IOOpenResult.ERROR)

    def _flush_sends(self):
        assert self._socket is not None
        while self._pending:
            view, callback = self._pending[0]
            if len(view) > 0:
                try:
                    sent = self._socket.send(view)
                except BlockingIOError:
                    return
                except OSError as e:
                    self._io_failed(f"send failed: {e}")
                    return
                view = view[sent:]
                if len(view) > 0:
                    self._pending[0] = (view, callback)
                    return
            self._pending.popleft()
            self._notify(callback, IOSendResult.OK)

    def _drain_receive(self):
        while self._socket is not None:
            try:
                chunk = self._socket.recv(RECV_CHUNK_SIZE)
            except BlockingIOError:
                return
            except OSError as e:
                self._io_failed(f"recv failed: {e}")
                return
            if not chunk:
                self._io_failed("connection closed by peer")
                return
            self._notify(self._on_bytes_received, chunk)

    def _io_failed(self, reason: str):
        logger.warning("Socket error on %s: %s", self._target, reason)
        self._state = _State.ERROR
        self._cancel_pending(IOSendResult.ERROR)
        if self._on_io_error is not None:
            try:
                self._on_io_error()
            except Exception as e:
                logger.warning(f"I/O error handler exception: {e}")

    def _cancel_pending(self, result: IOSendResult):
        pending, self._pending = self._pending, deque()
        for _, callback in pending:
            self._notify(callback, result)

    @staticmethod
    def _notify(callback, arg):
        if callback is None:
            return
        try:
            callback(arg)
        except Exception as e:
            logger.warning(f"I/O callback exception: {e}")

    def __repr__(self):
        return f"SocketIO({self._target}, {self._state.value})"
