"""Services for coordinating lookups."""

from .coalescer import InFlightCoalescer
from .rate_limiter import RateLimiter
from .lookup import TieredLookupCoordinator
from .persistence import CachePersistence, FileStore, MemoryStore, PersistentStore
from .visibility import (
    DomBridge,
    ElementState,
    Renderer,
    VisibilityObserver,
    VisibilityScheduler,
)

__all__ = [
    "InFlightCoalescer",
    "RateLimiter",
    "TieredLookupCoordinator",
    "CachePersistence",
    "FileStore",
    "MemoryStore",
    "PersistentStore",
    "DomBridge",
    "ElementState",
    "Renderer",
    "VisibilityObserver",
    "VisibilityScheduler",
]
