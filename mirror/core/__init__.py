"""mirror.core

Core primitives: config, storage, the event contract, the projection.

Providers and loops depend on this package; it depends on nothing above it.
"""

from .config import Config
from .database import Database
from .events import Chain, EventType
from .exceptions import MirrorError
from .models import ChainEvent, SyncCheckpoint

__all__ = [
    "Chain",
    "ChainEvent",
    "Config",
    "Database",
    "EventType",
    "MirrorError",
    "SyncCheckpoint",
]
