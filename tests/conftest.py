import collections
import socket
import ssl
import threading
import time

import pytest

from webrtc_server.config import ServerConfig
from webrtc_server.core.document import StaticDocument
from webrtc_server.core.events import EventKind
from webrtc_server.core.identity import load_identity
from webrtc_server.core.network import AddressResolver
from webrtc_server.utils import generate_identity_bundle

PASSPHRASE = "123456"

Addr = collections.namedtuple("Addr", "family address netmask broadcast ptp")
Stats = collections.namedtuple("Stats", "isup")


@pytest.fixture(scope="session")
def bundle_path(tmp_path_factory):
    return generate_identity_bundle(tmp_path_factory.mktemp("identity") / "server.p12", PASSPHRASE)


@pytest.fixture(scope="session")
def server_context(bundle_path):
    return load_identity(bundle_path, PASSPHRASE).server_context()


@pytest.fixture
def document():
    # Non-ASCII on purpose: Content-Length counts bytes, not characters
    return StaticDocument.from_text("<!DOCTYPE html><html><body><h1>Héllo 🌐</h1></body></html>")


def fake_resolver(interfaces=None, down=()):
    """Resolver over a fixed interface table, e.g. {"en0": "192.168.1.23"}."""
    interfaces = interfaces or {}
    addresses = {name: [Addr(socket.AF_INET, ip, "255.255.255.0", None, None)] for name, ip in interfaces.items()}
    stats = {name: Stats(name not in down) for name in interfaces}
    return AddressResolver("en0", list_addresses=lambda: addresses, list_stats=lambda: stats)


@pytest.fixture
def make_config(bundle_path, tmp_path):
    def _make(**overrides):
        values = dict(
            host_ip="127.0.0.1",
            https_port=0,
            identity_bundle=str(bundle_path),
            passphrase=PASSPHRASE,
            document_path=str(tmp_path / "missing.html"),
            accept_poll_interval=0.05,
            idle_timeout=2.0,
        )
        values.update(overrides)
        return ServerConfig(**values)

    return _make


class EventRecorder:
    """Collects events from any thread."""

    def __init__(self):
        self.events = []
        self._lock = threading.Lock()

    def __call__(self, event):
        with self._lock:
            self.events.append(event)

    def messages(self, kind=None):
        with self._lock:
            return [e.message for e in self.events if kind is None or e.kind is kind]

    def warnings(self):
        return self.messages(EventKind.WARNING)

    def clear(self):
        with self._lock:
            self.events.clear()

    def wait_for(self, predicate, timeout=5.0):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate(self):
                return True
            time.sleep(0.01)
        return predicate(self)


@pytest.fixture
def recorder():
    return EventRecorder()


def client_context(max_version=None):
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    if max_version is not None:
        context.maximum_version = max_version
    return context


def read_all(sock):
    chunks = []
    while True:
        try:
            chunk = sock.recv(65536)
        except (ConnectionResetError, ssl.SSLError):
            break
        if not chunk:
            break
        chunks.append(chunk)
    return b"".join(chunks)


def https_request(port, payload=b"GET / HTTP/1.1\r\nHost: localhost\r\n\r\n", timeout=5.0):
    """Send one request over TLS and return everything the server sent back."""
    with socket.create_connection(("127.0.0.1", port), timeout=timeout) as raw:
        with client_context().wrap_socket(raw, server_hostname="localhost") as tls:
            tls.sendall(payload)
            return read_all(tls)
