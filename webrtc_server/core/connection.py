"""
Per-connection protocol handling.

Each accepted socket is owned by one ``Connection`` running on its own thread:
TLS handshake, a single read, a fixed response, close.
"""

import codecs
import logging
import socket
import ssl
import threading
from enum import Enum
from typing import Dict, Optional

from ..errors import ConnectionFailure, ConnectionOtherError, HandshakeError
from .document import StaticDocument
from .events import EventHub

logger = logging.getLogger(__name__)

REQUEST_LINE_PREVIEW = 40
LOGGED_METHODS = ("GET", "POST")


class ConnectionPhase(Enum):
    OPENED = "opened"
    RECEIVING = "receiving"
    RESPONDING = "responding"
    CLOSED = "closed"


def build_response(document: StaticDocument) -> bytes:
    """The one response this server ever sends."""
    head = (
        "HTTP/1.1 200 OK\r\n"
        "Content-Type: text/html; charset=utf-8\r\n"
        f"Content-Length: {document.content_length}\r\n"
        "Connection: close\r\n"
        "Access-Control-Allow-Origin: *\r\n"
        "\r\n"
    )
    return head.encode("ascii") + document.body


def request_line(text: str) -> str:
    """First line of a request, up to the first CRLF."""
    return text.split("\r\n", 1)[0]


def format_peer(address) -> str:
    """Render an accept() address as host:port, or "unknown"."""
    try:
        host, port = address[0], address[1]
    except (TypeError, IndexError):
        return "unknown"
    if not host:
        return "unknown"
    return f"{host}:{port}"


class Connection:
    """A single accepted client socket and its protocol state machine."""

    def __init__(
        self,
        connection_id: int,
        sock: socket.socket,
        peer: str,
        ssl_context: ssl.SSLContext,
        document: StaticDocument,
        events: EventHub,
        idle_timeout: float = 10.0,
        receive_max_bytes: int = 65536,
    ):
        self.connection_id = connection_id
        self.peer = peer
        self.ssl_context = ssl_context
        self.document = document
        self.events = events
        self.idle_timeout = idle_timeout
        self.receive_max_bytes = receive_max_bytes

        self.phase = ConnectionPhase.OPENED
        self.cancelled = False
        self.request: Optional[str] = None
        self._sock = sock
        self._lock = threading.Lock()

    @property
    def closed(self) -> bool:
        return self.phase is ConnectionPhase.CLOSED

    def run(self) -> Optional[ConnectionFailure]:
        """Drive the connection to CLOSED and return the failure that ended it, if any."""
        try:
            if self._receive() is not None:
                self._respond()
            return None
        except HandshakeError as e:
            # Browsers probing an untrusted self-signed certificate
            logger.debug(f"[{self.connection_id}] TLS failure from {self.peer}: {e}")
            return e
        except ConnectionOtherError as e:
            if self.cancelled:
                logger.debug(f"[{self.connection_id}] Cancelled: {e}")
            else:
                self.events.warning(f"⚠️ [{self.connection_id}] Connection failed: {e}")
            return e
        finally:
            self.close()

    def cancel(self):
        """Abort the connection from another thread.

        Only the descriptor is shut down, which wakes any blocked handshake,
        read or write; the owning thread then closes the socket itself.
        """
        with self._lock:
            self.cancelled = True
            if self.phase is ConnectionPhase.CLOSED:
                return
            sock = self._sock
        try:
            # Bypass SSLSocket.shutdown, which tears down TLS state the owner may be using
            socket.socket.shutdown(sock, socket.SHUT_RDWR)
        except OSError:
            pass

    def close(self):
        """Release the socket. Safe to call more than once."""
        with self._lock:
            if self.phase is ConnectionPhase.CLOSED:
                return
            self.phase = ConnectionPhase.CLOSED
            sock = self._sock
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        sock.close()

    def _enter(self, phase: ConnectionPhase):
        with self._lock:
            if self.cancelled or self.phase is ConnectionPhase.CLOSED:
                raise ConnectionOtherError("connection closed", self.connection_id)
            self.phase = phase

    def _handshake(self) -> ssl.SSLSocket:
        with self._lock:
            if self.cancelled or self.phase is ConnectionPhase.CLOSED:
                raise ConnectionOtherError("connection closed", self.connection_id)
            raw = self._sock
            raw.settimeout(self.idle_timeout)
            try:
                tls = self.ssl_context.wrap_socket(raw, server_side=True, do_handshake_on_connect=False)
            except OSError as e:
                raise ConnectionOtherError(f"could not set up TLS: {e}", self.connection_id) from e
            self._sock = tls

        try:
            tls.do_handshake()
        except ssl.SSLError as e:
            raise HandshakeError(str(e), self.connection_id) from e
        except socket.timeout as e:
            raise ConnectionOtherError(
                f"no TLS handshake within {self.idle_timeout:g}s", self.connection_id
            ) from e
        except OSError as e:
            raise ConnectionOtherError(f"handshake aborted: {e}", self.connection_id) from e
        return tls

    def _receive(self) -> Optional[str]:
        self._enter(ConnectionPhase.RECEIVING)
        tls = self._handshake()
        self.events.connection(f"🔗 [{self.connection_id}] Connected: {self.peer}")

        try:
            data = tls.recv(self.receive_max_bytes)
        except ssl.SSLError as e:
            raise HandshakeError(str(e), self.connection_id) from e
        except socket.timeout as e:
            raise ConnectionOtherError(f"no request within {self.idle_timeout:g}s", self.connection_id) from e
        except OSError as e:
            raise ConnectionOtherError(f"receive failed: {e}", self.connection_id) from e

        if not data:
            # Peer finished without sending anything
            logger.debug(f"[{self.connection_id}] Closed by peer before sending a request")
            return None

        # A multi-byte character may be cut at the read boundary; only invalid bytes are an error
        decoder = codecs.getincrementaldecoder("utf-8")()
        try:
            text = decoder.decode(data, final=False)
        except UnicodeDecodeError as e:
            raise ConnectionOtherError(f"request is not valid UTF-8: {e.reason}", self.connection_id) from e

        self.request = text
        line = request_line(text)
        if line.startswith(LOGGED_METHODS):
            self.events.info(f"📥 [{self.connection_id}] {line[:REQUEST_LINE_PREVIEW]}")
        return text

    def _respond(self):
        self._enter(ConnectionPhase.RESPONDING)
        try:
            self._sock.sendall(build_response(self.document))
        except ssl.SSLError as e:
            raise HandshakeError(str(e), self.connection_id) from e
        except OSError as e:
            raise ConnectionOtherError(f"send failed: {e}", self.connection_id) from e
        self.events.success(f"📤 [{self.connection_id}] Responded")


class ConnectionSupervisor:
    """Bounded set of in-flight connections, one thread each."""

    def __init__(self, max_connections: int = 64):
        self.max_connections = max_connections
        self.accepted = 0
        self._active: Dict[int, Connection] = {}
        self._condition = threading.Condition()

    @property
    def active_count(self) -> int:
        with self._condition:
            return len(self._active)

    def submit(self, connection: Connection) -> bool:
        """Start a handler thread for the connection, or return False if at capacity."""
        with self._condition:
            if len(self._active) >= self.max_connections:
                return False
            self._active[connection.connection_id] = connection
            self.accepted += 1

        thread = threading.Thread(
            target=self._run, args=(connection,), name=f"connection-{connection.connection_id}", daemon=True
        )
        thread.start()
        return True

    def _run(self, connection: Connection):
        try:
            connection.run()
        finally:
            with self._condition:
                self._active.pop(connection.connection_id, None)
                self._condition.notify_all()

    def cancel_all(self) -> int:
        """Cancel every in-flight connection and return how many there were."""
        with self._condition:
            connections = list(self._active.values())
        for connection in connections:
            connection.cancel()
        return len(connections)

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no connection is in flight."""
        with self._condition:
            return self._condition.wait_for(lambda: not self._active, timeout=timeout)
