import re
import socket
import threading

import pytest

from webrtc_server.core.connection import build_response
from webrtc_server.core.events import EventHub, EventKind, ServerPhase
from webrtc_server.core import server as server_module
from webrtc_server.core.server import ServerController
from webrtc_server.utils import generate_identity_bundle

from .conftest import client_context, fake_resolver, https_request, read_all

CONNECTED = re.compile(r"🔗 \[(\d+)\]")


def is_phase(phase):
    return lambda state: state.phase is phase


@pytest.fixture
def make_server(make_config, recorder, document):
    servers = []

    def _make(resolver=None, with_document=True, **overrides):
        hub = EventHub()
        hub.subscribe_events(recorder)
        server = ServerController(
            make_config(**overrides),
            events=hub,
            resolver=resolver or fake_resolver({"en0": "192.168.1.23"}),
            document=document if with_document else None,
        )
        servers.append(server)
        return server

    yield _make

    for server in servers:
        if server.state.phase in (ServerPhase.RUNNING, ServerPhase.STARTING):
            server.stop()
            server.wait_for_state(is_phase(ServerPhase.STOPPED), timeout=5.0)


def connection_ids(recorder):
    return [int(CONNECTED.match(m).group(1)) for m in recorder.messages(EventKind.CONNECTION)]


def test_start_serves_document(make_server, document):
    server = make_server()
    server.start()

    assert server.wait_until_running(timeout=5.0)
    assert server.state.url == f"https://192.168.1.23:{server.port}/"
    assert server.url == server.state.url
    assert https_request(server.port) == build_response(document)


def test_any_request_gets_the_document(make_server, document):
    server = make_server()
    server.start()
    assert server.wait_until_running(timeout=5.0)

    for payload in (b"POST /upload HTTP/1.1\r\n\r\n", b"DELETE /x HTTP/1.0\r\n\r\n", b"hello"):
        assert https_request(server.port, payload) == build_response(document)


def test_state_transitions(make_server):
    server = make_server()
    states = []
    server.subscribe_state(states.append)

    server.start()
    assert server.wait_until_running(timeout=5.0)
    server.stop()
    assert server.wait_for_state(is_phase(ServerPhase.STOPPED), timeout=5.0)

    assert [s.phase for s in states] == [ServerPhase.STARTING, ServerPhase.RUNNING, ServerPhase.STOPPED]
    assert server.url == ""


def test_start_while_running_is_noop(make_server, recorder):
    server = make_server()
    server.start()
    assert server.wait_until_running(timeout=5.0)
    state, port, supervisor = server.state, server.port, server.supervisor

    recorder.clear()
    server.start()

    assert server.state == state
    assert server.port == port
    assert server.supervisor is supervisor
    assert recorder.warnings() == ["⚠️ Server is already running"]
    assert len(recorder.events) == 1


def test_stop_while_stopped_is_noop(make_server, recorder):
    server = make_server()
    recorder.clear()
    server.stop()

    assert server.state.phase is ServerPhase.STOPPED
    assert recorder.warnings() == ["⚠️ Server is not running"]
    assert len(recorder.events) == 1


def test_restart(make_server, recorder, document):
    server = make_server()
    server.start()
    assert server.wait_until_running(timeout=5.0)
    https_request(server.port)

    server.stop()
    assert server.wait_for_state(is_phase(ServerPhase.STOPPED), timeout=5.0)

    server.start()
    assert server.wait_until_running(timeout=5.0)
    assert server.state.url.startswith("https://192.168.1.23:")
    assert https_request(server.port) == build_response(document)
    # The counter starts over on every run
    assert connection_ids(recorder) == [1, 1]


def test_start_right_after_stop(make_server, recorder, document):
    server = make_server()
    states = []
    server.subscribe_state(states.append)
    server.start()
    assert server.wait_until_running(timeout=5.0)

    server.stop()
    server.start()

    assert server.wait_until_running(timeout=5.0)
    assert "⚠️ Server is already running" not in recorder.warnings()
    assert [s.phase for s in states] == [
        ServerPhase.STARTING,
        ServerPhase.RUNNING,
        ServerPhase.STOPPED,
        ServerPhase.STARTING,
        ServerPhase.RUNNING,
    ]
    assert https_request(server.port) == build_response(document)


class BlockingResolver:
    """Holds the listener's READY handling until released."""

    def __init__(self):
        self.entered = threading.Event()
        self.release = threading.Event()

    def resolve_local_address(self):
        self.entered.set()
        self.release.wait(5.0)
        return "192.168.1.23"


def test_stop_before_ready_never_advertises_url(make_server, recorder):
    resolver = BlockingResolver()
    server = make_server(resolver=resolver)
    states = []
    server.subscribe_state(states.append)

    server.start()
    assert resolver.entered.wait(5.0)
    server.stop()
    resolver.release.set()

    assert server.wait_for_state(is_phase(ServerPhase.STOPPED), timeout=5.0)
    assert [s.phase for s in states] == [ServerPhase.STARTING, ServerPhase.STOPPED]
    assert server.url == ""
    assert not any("Server started" in m for m in recorder.messages(EventKind.SUCCESS))
    assert not any("Address" in m for m in recorder.messages(EventKind.INFO))


def test_stop_during_identity_load(make_server, recorder, monkeypatch):
    loading = threading.Event()
    release = threading.Event()
    load_identity = server_module.load_identity

    def slow_load_identity(*args):
        loading.set()
        release.wait(5.0)
        return load_identity(*args)

    monkeypatch.setattr(server_module, "load_identity", slow_load_identity)
    server = make_server()

    starter = threading.Thread(target=server.start)
    starter.start()
    assert loading.wait(5.0)
    stopper = threading.Thread(target=server.stop)
    stopper.start()
    release.set()
    starter.join(5.0)
    stopper.join(5.0)

    assert server.wait_for_state(is_phase(ServerPhase.STOPPED), timeout=5.0)
    assert "⚠️ Server is not running" not in recorder.warnings()
    assert server.port is None


def test_state_observers_see_events_first(make_server, recorder):
    server = make_server(resolver=fake_resolver({"lo0": "127.0.0.1"}))
    seen = {}
    server.subscribe_state(lambda state: seen.setdefault(state.phase, recorder.warnings()))
    recorder.clear()

    server.start()

    assert server.wait_until_running(timeout=5.0)
    assert recorder.wait_for(lambda r: ServerPhase.RUNNING in seen)
    assert len(seen[ServerPhase.RUNNING]) == 1
    assert "WiFi" in seen[ServerPhase.RUNNING][0]


def test_wrong_passphrase_fails(make_server, recorder):
    server = make_server(passphrase="654321")
    states = []
    server.subscribe_state(states.append)

    server.start()

    assert not server.wait_until_running(timeout=5.0)
    assert server.state.phase is ServerPhase.FAILED
    assert "certificate" in server.state.reason
    assert ServerPhase.RUNNING not in [s.phase for s in states]
    assert server.port is None
    assert len(recorder.messages(EventKind.ERROR)) == 1


def test_missing_bundle_fails(make_server, tmp_path):
    server = make_server(identity_bundle=str(tmp_path / "nope.p12"))
    server.start()

    assert server.state.phase is ServerPhase.FAILED
    # Failed is not a running listener, stop() stays a no-op
    server.stop()
    assert server.state.phase is ServerPhase.FAILED


def test_start_after_failure(make_server, tmp_path, bundle_path):
    server = make_server(identity_bundle=str(tmp_path / "nope.p12"))
    server.start()
    assert server.state.phase is ServerPhase.FAILED

    server.config.identity_bundle = str(bundle_path)
    server.start()
    assert server.wait_until_running(timeout=5.0)


def test_bind_failure(make_server, recorder):
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as blocker:
        blocker.bind(("127.0.0.1", 0))
        blocker.listen(1)
        server = make_server(https_port=blocker.getsockname()[1])

        server.start()
        assert server.wait_for_state(is_phase(ServerPhase.FAILED), timeout=5.0)

    assert "Could not bind" in server.state.reason
    assert recorder.messages(EventKind.ERROR)[-1].startswith("❌ Server error")


def test_no_wifi_interface_falls_back_to_localhost(make_server, recorder):
    server = make_server(resolver=fake_resolver({"lo0": "127.0.0.1"}))
    recorder.clear()

    server.start()

    assert server.wait_until_running(timeout=5.0)
    assert server.state.url == f"https://localhost:{server.port}/"
    assert len(recorder.warnings()) == 1
    assert "WiFi" in recorder.warnings()[0]


def test_concurrent_connections_are_all_served(make_server, document):
    server = make_server()
    server.start()
    assert server.wait_until_running(timeout=5.0)

    barrier = threading.Barrier(5)
    responses = []

    def client():
        barrier.wait()
        responses.append(https_request(server.port))

    threads = [threading.Thread(target=client) for _ in range(5)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(10.0)

    assert responses == [build_response(document)] * 5
    assert server.supervisor.wait_idle(timeout=5.0)
    assert server.supervisor.accepted == 5


def test_concurrent_connection_ids_are_distinct(make_server, recorder):
    server = make_server()
    server.start()
    assert server.wait_until_running(timeout=5.0)

    threads = [threading.Thread(target=https_request, args=(server.port,)) for _ in range(5)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(10.0)

    assert sorted(connection_ids(recorder)) == [1, 2, 3, 4, 5]


def test_tls_error_is_not_reported(make_server, recorder):
    server = make_server()
    server.start()
    assert server.wait_until_running(timeout=5.0)
    recorder.clear()

    with socket.create_connection(("127.0.0.1", server.port), timeout=5.0) as raw:
        raw.sendall(b"GET / HTTP/1.1\r\nHost: localhost\r\n\r\n")
        read_all(raw)

    assert server.supervisor.wait_idle(timeout=5.0)
    assert server.supervisor.accepted == 1
    assert recorder.warnings() == []


def test_other_error_is_reported_once(make_server, recorder):
    server = make_server()
    server.start()
    assert server.wait_until_running(timeout=5.0)
    recorder.clear()

    with socket.create_connection(("127.0.0.1", server.port), timeout=5.0) as raw:
        with client_context().wrap_socket(raw, server_hostname="localhost") as tls:
            tls.sendall(b"\xff\xfe\xfd\xfc")
            assert read_all(tls) == b""

    assert server.supervisor.wait_idle(timeout=5.0)
    warnings = recorder.warnings()
    assert len(warnings) == 1
    assert "[1]" in warnings[0]


def test_connection_cap_and_stop_cancels_in_flight(make_server, recorder):
    server = make_server(max_connections=1, idle_timeout=30.0)
    server.start()
    assert server.wait_until_running(timeout=5.0)
    recorder.clear()

    idle = socket.create_connection(("127.0.0.1", server.port), timeout=5.0)
    assert recorder.wait_for(lambda r: server.supervisor.active_count == 1)

    with socket.create_connection(("127.0.0.1", server.port), timeout=5.0) as rejected:
        assert read_all(rejected) == b""
    assert recorder.wait_for(lambda r: any("Too many connections" in m for m in r.warnings()))
    assert "[2]" in recorder.warnings()[0]

    supervisor = server.supervisor
    server.stop()
    # The idle connection would otherwise hold on for 30s
    assert supervisor.wait_idle(timeout=5.0)
    assert server.wait_for_state(is_phase(ServerPhase.STOPPED), timeout=5.0)
    assert len(recorder.warnings()) == 1
    idle.close()


def test_fallback_document_is_served(make_server, recorder):
    server = make_server(with_document=False)
    assert server.document.is_fallback
    assert any("not found" in m for m in recorder.warnings())

    server.start()
    assert server.wait_until_running(timeout=5.0)
    assert https_request(server.port) == build_response(server.document)


def test_document_loaded_from_disk(make_server, recorder, tmp_path):
    page = tmp_path / "webRTC.html"
    page.write_text("<html><script>new RTCPeerConnection()</script></html>", encoding="utf-8")
    server = make_server(with_document=False, document_path=str(page))

    assert not server.document.is_fallback
    assert server.document.body == page.read_bytes()
    assert any("webRTC.html loaded" in m for m in recorder.messages(EventKind.SUCCESS))


def test_passphrase_is_configurable(make_server, tmp_path):
    bundle = generate_identity_bundle(tmp_path / "other.p12", "correct horse")
    server = make_server(identity_bundle=str(bundle), passphrase="correct horse")
    server.start()
    assert server.wait_until_running(timeout=5.0)
    assert server.state.url == f"https://192.168.1.23:{server.port}/"
