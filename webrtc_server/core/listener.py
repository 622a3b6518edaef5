"""
Bound TCP endpoint with its own accept thread.
"""

import errno
import logging
import socket
import threading
from enum import Enum
from typing import Callable, Optional

from ..errors import ListenerBindError, ListenerTransientWait

logger = logging.getLogger(__name__)

# accept() failures that clear up on their own
TRANSIENT_ACCEPT_ERRORS = {
    errno.EMFILE,
    errno.ENFILE,
    errno.ENOBUFS,
    errno.ENOMEM,
    errno.ECONNABORTED,
    errno.EPROTO,
    errno.EPERM,
}

BACKLOG = 128


class ListenerState(Enum):
    READY = "ready"
    WAITING = "waiting"
    FAILED = "failed"
    CANCELLED = "cancelled"


ConnectionCallback = Callable[[socket.socket, tuple], None]
StateCallback = Callable[["Listener", ListenerState, Optional[Exception]], None]


class Listener:
    """Accepts TCP connections on a background thread.

    State updates are reported through ``on_state`` from the accept thread:
    READY once bound, WAITING for recoverable accept errors, then exactly one
    of FAILED or CANCELLED when the thread finishes.
    """

    def __init__(
        self,
        host: str,
        port: int,
        on_connection: ConnectionCallback,
        on_state: StateCallback,
        reuse_address: bool = True,
        keepalive: bool = True,
        poll_interval: float = 0.25,
    ):
        self.host = host
        self.requested_port = port
        self.on_connection = on_connection
        self.on_state = on_state
        self.reuse_address = reuse_address
        self.keepalive = keepalive
        self.poll_interval = poll_interval

        self.port: Optional[int] = None  # Actual bound port, known once READY
        self._cancelled = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self):
        """Bind and begin accepting on a new thread."""
        self._thread = threading.Thread(target=self._run, name=f"listener-{self.requested_port}", daemon=True)
        self._thread.start()

    def cancel(self):
        """Ask the accept thread to stop. CANCELLED is reported once it has."""
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def join(self, timeout: Optional[float] = None):
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)

    @property
    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _bind(self) -> socket.socket:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            if self.reuse_address:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self.host, self.requested_port))
            sock.listen(BACKLOG)
        except OSError as e:
            sock.close()
            raise ListenerBindError(
                f"Could not bind {self.host}:{self.requested_port}: {e.strerror or e}", self.requested_port
            ) from e
        # Poll so cancel() is noticed without closing the socket under accept()
        sock.settimeout(self.poll_interval)
        return sock

    def _run(self):
        try:
            sock = self._bind()
        except ListenerBindError as e:
            logger.debug(f"Bind failed: {e}")
            self.on_state(self, ListenerState.FAILED, e)
            return

        self.port = sock.getsockname()[1]
        failure: Optional[Exception] = None
        try:
            self.on_state(self, ListenerState.READY, None)
            failure = self._accept_loop(sock)
        finally:
            sock.close()

        if failure is not None:
            self.on_state(self, ListenerState.FAILED, failure)
        else:
            self.on_state(self, ListenerState.CANCELLED, None)

    def _accept_loop(self, sock: socket.socket) -> Optional[Exception]:
        while not self._cancelled.is_set():
            try:
                conn, address = sock.accept()
            except socket.timeout:
                continue
            except OSError as e:
                if self._cancelled.is_set():
                    break
                if e.errno in TRANSIENT_ACCEPT_ERRORS:
                    self.on_state(self, ListenerState.WAITING, ListenerTransientWait(str(e)))
                    self._cancelled.wait(self.poll_interval)
                    continue
                return e

            if self._cancelled.is_set():
                conn.close()
                break
            if self.keepalive:
                try:
                    conn.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
                except OSError as e:
                    logger.debug(f"Could not enable keepalive: {e}")
            self.on_connection(conn, address)
        return None
