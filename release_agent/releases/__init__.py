"""Release store and the lifecycle operations performed against it.

The store records every revision of every release and serializes operations
per release name. The engine renders, labels and records releases and is the
only component that mutates the store.
"""

from .engine import AgentInfo, ReleaseEngine
from .in_memory import InMemoryReleaseStore
from .store import ReleaseStore, StoredRelease

__all__ = [
    "AgentInfo",
    "ReleaseEngine",
    "ReleaseStore",
    "InMemoryReleaseStore",
    "StoredRelease",
]
