"""
Server controller: owns the listener lifecycle and the published server state.
"""

import functools
import itertools
import logging
import socket
import ssl
import threading
from typing import Callable, Iterator, Optional

from ..config import ServerConfig
from ..config import config as global_config
from ..errors import ConfigError, IdentityError
from .connection import Connection, ConnectionSupervisor, format_peer
from .document import StaticDocument, load_document
from .events import EventCallback, EventHub, ServerPhase, ServerState, StateCallback
from .identity import load_identity
from .listener import Listener, ListenerState
from .network import AddressResolver, build_server_url

logger = logging.getLogger(__name__)

# Bound on how long start() waits for a stopping listener thread
LISTENER_JOIN_TIMEOUT = 5.0


class ServerController:
    """Single-listener HTTPS server serving one static document.

    ``start()`` and ``stop()`` are the only operations; everything else is
    observed through ``subscribe_state`` / ``subscribe_events``.
    """

    def __init__(
        self,
        config: Optional[ServerConfig] = None,
        events: Optional[EventHub] = None,
        resolver: Optional[AddressResolver] = None,
        document: Optional[StaticDocument] = None,
    ):
        self.config = config or global_config
        self.events = events or EventHub()
        self.resolver = resolver or AddressResolver(self.config.wifi_interface)
        self.url = ""

        self._lifecycle = threading.RLock()
        self._condition = threading.Condition()
        self._state = ServerState.stopped()
        self._listener: Optional[Listener] = None
        self._supervisor: Optional[ConnectionSupervisor] = None

        self.document = document or self._load_document()
        self.events.info("📱 Server initialized")
        self.events.info("💡 Call start() to begin serving")

    # --- observation -------------------------------------------------------

    @property
    def state(self) -> ServerState:
        with self._condition:
            return self._state

    @property
    def supervisor(self) -> Optional[ConnectionSupervisor]:
        return self._supervisor

    @property
    def port(self) -> Optional[int]:
        listener = self._listener
        return listener.port if listener else None

    def subscribe_state(self, callback: StateCallback) -> Callable[[], None]:
        return self.events.subscribe_state(callback)

    def subscribe_events(self, callback: EventCallback) -> Callable[[], None]:
        return self.events.subscribe_events(callback)

    def wait_for_state(self, predicate: Callable[[ServerState], bool], timeout: Optional[float] = None) -> bool:
        """Block until the state satisfies predicate; False on timeout."""
        with self._condition:
            return self._condition.wait_for(lambda: predicate(self._state), timeout=timeout)

    def wait_until_running(self, timeout: Optional[float] = None) -> bool:
        """Wait for start() to settle; True only if the server is running."""
        self.wait_for_state(lambda s: s.phase is not ServerPhase.STARTING, timeout)
        return self.state.is_running

    # --- lifecycle ---------------------------------------------------------

    def start(self):
        """Load the identity and begin listening. The outcome is published asynchronously."""
        with self._lifecycle:
            self._release_stopped_listener()
            with self._condition:
                running = self._listener is not None or self._state.phase in (
                    ServerPhase.RUNNING,
                    ServerPhase.STARTING,
                )
                if not running:
                    self._set_state_locked(ServerState.starting())
            if running:
                self.events.warning("⚠️ Server is already running")
                return
            self.events.publish_state(ServerState.starting())

            self.events.info("🚀 Starting server...")
            try:
                identity = load_identity(self.config.get_absolute_bundle_path(), self.config.passphrase)
                ssl_context = identity.server_context(self.config.min_tls_version)
            except IdentityError as e:
                self._fail(f"Could not load certificate: {e}")
                return
            except (ConfigError, ssl.SSLError) as e:
                self._fail(f"Could not configure TLS: {e}")
                return
            self.events.success("🔐 Certificate loaded")

            supervisor = ConnectionSupervisor(self.config.max_connections)
            listener = Listener(
                self.config.host_ip,
                self.config.https_port,
                # Fresh counter per run: ids start at 1 again after a restart
                on_connection=functools.partial(self._on_new_connection, ssl_context, supervisor, itertools.count(1)),
                on_state=self._on_listener_state,
                reuse_address=self.config.reuse_address,
                keepalive=self.config.keepalive,
                poll_interval=self.config.accept_poll_interval,
            )

            with self._condition:
                self._listener = listener
                self._supervisor = supervisor
            listener.start()

    def stop(self):
        """Cancel the listener and in-flight connections. STOPPED is published once the listener confirms."""
        with self._lifecycle:
            with self._condition:
                listener = self._listener
                active = (
                    listener is not None
                    and not listener.cancelled
                    and self._state.phase in (ServerPhase.RUNNING, ServerPhase.STARTING)
                )
                if active:
                    self.url = ""
                    listener.cancel()
                    supervisor = self._supervisor
            if not active:
                self.events.warning("⚠️ Server is not running")
                return

            self.events.info("🛑 Stopping server...")
            if supervisor is not None:
                cancelled = supervisor.cancel_all()
                if cancelled:
                    self.events.info(f"Closed {cancelled} in-flight connection(s)")

    # --- internals ---------------------------------------------------------

    def _release_stopped_listener(self):
        """Wait for a listener cancelled by stop() to report CANCELLED."""
        with self._condition:
            listener = self._listener
        if listener is None or not listener.cancelled:
            return

        listener.join(LISTENER_JOIN_TIMEOUT)
        with self._condition:
            stale = self._listener is listener
            if stale:
                self._listener = None
                self.url = ""
        if stale:
            logger.warning(f"Listener on port {listener.port} did not stop within {LISTENER_JOIN_TIMEOUT}s")
            self._set_state(ServerState.stopped())

    def _load_document(self) -> StaticDocument:
        path = self.config.get_absolute_document_path()
        document = load_document(path)
        if document.is_fallback:
            self.events.warning(f"⚠️ {path.name} not found, serving a placeholder page")
        else:
            self.events.success(f"✅ {path.name} loaded ({document.content_length} bytes)")
        return document

    def _set_state_locked(self, state: ServerState):
        self._state = state
        self._condition.notify_all()

    def _set_state(self, state: ServerState):
        with self._condition:
            self._set_state_locked(state)
        self.events.publish_state(state)

    def _fail(self, reason: str):
        # Events first: anyone woken by FAILED already sees the error
        self.events.error(f"❌ {reason}")
        self._set_state(ServerState.failed(reason))

    def _on_listener_state(self, listener: Listener, state: ListenerState, error: Optional[Exception]):
        with self._condition:
            current = listener is self._listener
        if not current:
            logger.debug(f"Ignoring {state.value} from a replaced listener")
            return

        if state is ListenerState.READY:
            self._on_listener_ready(listener)
        elif state is ListenerState.WAITING:
            self.events.warning(f"⏳ Waiting: {error}")
        elif state is ListenerState.FAILED:
            with self._condition:
                self._listener = None
                self.url = ""
                supervisor = self._supervisor
            if supervisor is not None:
                supervisor.cancel_all()
            self._fail(f"Server error: {error}")
        elif state is ListenerState.CANCELLED:
            with self._condition:
                self._listener = None
                self.url = ""
            self.events.info("🛑 Server stopped")
            self._set_state(ServerState.stopped())

    def _on_listener_ready(self, listener: Listener):
        if listener.cancelled:
            logger.debug("Listener cancelled before it became ready")
            return
        ip = self.resolver.resolve_local_address()
        url = build_server_url(ip, listener.port)
        if listener.cancelled:
            logger.debug("Listener cancelled while resolving the local address")
            return

        self.events.success("✅ Server started")
        if ip is None:
            self.events.warning("⚠️ Could not determine the WiFi IP address, check the network connection")
        self.events.info(f"🌐 Address: {url}")

        running = ServerState.running(url)
        with self._condition:
            # stop() cancels under this lock, so a cancelled listener never advertises its URL
            if listener.cancelled:
                return
            self.url = url
            self._set_state_locked(running)
        self.events.publish_state(running)

    def _on_new_connection(
        self,
        ssl_context: ssl.SSLContext,
        supervisor: ConnectionSupervisor,
        ids: Iterator[int],
        sock: socket.socket,
        address,
    ):
        # Runs on the accept thread, the only writer of this run's id counter
        connection = Connection(
            next(ids),
            sock,
            format_peer(address),
            ssl_context,
            self.document,
            self.events,
            idle_timeout=self.config.idle_timeout,
            receive_max_bytes=self.config.receive_max_bytes,
        )
        if not supervisor.submit(connection):
            self.events.warning(
                f"⚠️ [{connection.connection_id}] Too many connections "
                f"({supervisor.max_connections}), closing {connection.peer}"
            )
            connection.close()
