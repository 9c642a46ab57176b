from .base import Adapter, AdapterHandle, AdapterState
from .polling import PollingAdapter
from .webhook import WebhookAdapter

__all__ = [
    "Adapter",
    "AdapterHandle",
    "AdapterState",
    "PollingAdapter",
    "WebhookAdapter",
]
