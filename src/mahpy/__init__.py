"""Asynchronous client SDK for mirai-api-http bot-control servers."""

from .adapters import (
    Adapter,
    AdapterHandle,
    AdapterState,
    PollingAdapter,
    WebhookAdapter,
)
from .core.config import (
    DispatcherConfig,
    LogConfig,
    MahConfig,
    PollingConfig,
    ServerConfig,
    WebhookConfig,
    load_config,
)
from .core.exceptions import (
    AdapterStartError,
    AuthError,
    ConfigError,
    DecodeError,
    DispatcherClosed,
    MahError,
    PermanentError,
    ProtocolError,
    RemoteError,
    SessionClosed,
    TransientError,
    TransportError,
)
from .dispatcher import DispatchResult, Dispatcher, HandlerRegistration
from .events import Event, EventKind, Unknown, decode, make_chain
from .session import Session, SessionState, about, authenticate, bot_list
from .transport import TransportClient

__version__ = "0.1.0"

__all__ = [
    "Adapter",
    "AdapterHandle",
    "AdapterStartError",
    "AdapterState",
    "AuthError",
    "ConfigError",
    "DecodeError",
    "DispatchResult",
    "Dispatcher",
    "DispatcherClosed",
    "DispatcherConfig",
    "Event",
    "EventKind",
    "HandlerRegistration",
    "LogConfig",
    "MahConfig",
    "MahError",
    "PermanentError",
    "PollingAdapter",
    "PollingConfig",
    "ProtocolError",
    "RemoteError",
    "ServerConfig",
    "Session",
    "SessionClosed",
    "SessionState",
    "TransientError",
    "TransportClient",
    "TransportError",
    "Unknown",
    "WebhookAdapter",
    "WebhookConfig",
    "__version__",
    "about",
    "authenticate",
    "bot_list",
    "decode",
    "load_config",
    "make_chain",
]
