from .connection import Connection, ConnectionPhase, ConnectionSupervisor, build_response
from .document import StaticDocument, load_document
from .events import EventHub, EventKind, EventLog, ServerEvent, ServerPhase, ServerState
from .identity import TLSIdentity, load_identity
from .listener import Listener, ListenerState
from .network import AddressResolver, build_server_url
from .server import ServerController
