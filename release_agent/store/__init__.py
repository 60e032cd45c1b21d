"""
The store module holds the custom resources that describe desired releases.

- Uses NamedResource as the key for all objects.
- Tracks which resource definitions exist, so a deleted resource can be told
  apart from a deleted resource type.
- Notifies listeners of added, updated and deleted resources, which is how the
  controller is triggered.
"""

from .store import Store, StoreEvent
from .in_memory import InMemoryStore

__all__ = [
    "Store",
    "StoreEvent",
    "InMemoryStore",
]
