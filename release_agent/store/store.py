"""Store module for the custom resources describing desired releases."""

from abc import ABC, abstractmethod
from collections.abc import Callable
from enum import Enum
from typing import Any

from release_agent.manifest import NamedResource, ReleaseSpec

__all__ = [
    "Store",
    "StoreEvent",
    "Listener",
]


class StoreEvent(str, Enum):
    """Enum for store events."""

    OBJECT_ADDED = "object_added"
    OBJECT_UPDATED = "object_updated"
    OBJECT_DELETED = "object_deleted"


Listener = Callable[[NamedResource, ReleaseSpec], None]


class Store(ABC):
    """Abstract base class for the custom resource store with listener support.

    The store stands in for the watch on the custom resource kind: every
    create, update and delete notifies the listeners registered for the
    matching event.
    """

    @abstractmethod
    def add_object(self, obj: ReleaseSpec) -> None:
        """Add or replace a custom resource.

        Fires OBJECT_ADDED for a new resource and OBJECT_UPDATED when an
        existing resource changed. Re-adding an identical resource fires nothing.
        """

    def add_document(self, doc: dict[str, Any]) -> ReleaseSpec:
        """Parse an AgentRelease object, as read from the cluster, and add it.

        Raises InputException when the object is not a valid AgentRelease.
        """
        obj = ReleaseSpec.parse_doc(doc)
        self.add_object(obj)
        return obj

    @abstractmethod
    def get_object(self, resource_id: NamedResource) -> ReleaseSpec:
        """Retrieve a custom resource, raising ObjectNotFoundError if absent."""

    @abstractmethod
    def delete_object(self, resource_id: NamedResource) -> None:
        """Remove a custom resource and fire OBJECT_DELETED if it existed."""

    @abstractmethod
    def list_objects(self, namespace: str | None = None) -> list[ReleaseSpec]:
        """List all custom resources, optionally filtered by namespace."""

    @abstractmethod
    def add_definition(self, kind: str) -> None:
        """Register the resource definition of a custom resource kind."""

    @abstractmethod
    def remove_definition(self, kind: str) -> None:
        """Remove a resource definition, as when the whole type is deleted."""

    @abstractmethod
    def has_definition(self, kind: str) -> bool:
        """Return True if the resource definition of the kind exists."""

    @abstractmethod
    def add_listener(
        self,
        event: StoreEvent,
        callback: Listener,
        flush: bool = False,
    ) -> Callable[[], None]:
        """Register a callback for a store event.

        With `flush`, the callback is invoked for every existing object right
        away, which only applies to OBJECT_ADDED. Returns a callable that
        removes the listener.
        """
