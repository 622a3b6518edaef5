"""
WebRTC HTTPS server - serves one static page over TLS so browsers on the
local network get a secure context.
"""

from .config import ServerConfig, load_config
from .core.events import EventKind, EventLog, ServerEvent, ServerPhase, ServerState
from .core.server import ServerController

__version__ = "0.1.0"
__all__ = [
    "ServerController",
    "ServerConfig",
    "ServerState",
    "ServerPhase",
    "ServerEvent",
    "EventKind",
    "EventLog",
    "load_config",
]
