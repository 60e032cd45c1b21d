"""Module for in memory custom resource store."""

from collections import defaultdict
from collections.abc import Callable
import logging
from typing import DefaultDict

from release_agent.exceptions import ObjectNotFoundError
from release_agent.manifest import NamedResource, ReleaseSpec

from .store import Listener, Store, StoreEvent


_LOGGER = logging.getLogger(__name__)


def _resource_id(obj: ReleaseSpec) -> NamedResource:
    return NamedResource(obj.kind, obj.namespace, obj.name)


class InMemoryStore(Store):
    """In-memory implementation of the Store interface.

    Stores custom resources keyed by NamedResource along with the set of
    registered resource definitions.
    """

    def __init__(self) -> None:
        """Initialize the InMemoryStore."""
        self._objects: dict[NamedResource, ReleaseSpec] = {}
        self._definitions: set[str] = set()
        self._listeners: DefaultDict[StoreEvent, list[Listener]] = defaultdict(list)

    def add_object(self, obj: ReleaseSpec) -> None:
        """Add or replace a custom resource."""
        if not self.has_definition(obj.kind):
            raise ValueError(f"No resource definition registered for {obj.kind}")
        resource_id = _resource_id(obj)
        event = StoreEvent.OBJECT_ADDED
        if (existing := self._objects.get(resource_id)) is not None:
            if existing.to_dict() == obj.to_dict():
                _LOGGER.debug(
                    "Object %s already exists in store, skipping", resource_id
                )
                return
            _LOGGER.debug("Updating existing object %s in store", resource_id)
            event = StoreEvent.OBJECT_UPDATED
        else:
            _LOGGER.debug("Adding object %s to store", resource_id)
        self._objects[resource_id] = obj
        self._fire_event(event, resource_id, obj)

    def get_object(self, resource_id: NamedResource) -> ReleaseSpec:
        """Retrieve a custom resource by resource identity."""
        if (obj := self._objects.get(resource_id)) is None:
            raise ObjectNotFoundError(f"Object {resource_id} not found")
        return obj

    def delete_object(self, resource_id: NamedResource) -> None:
        """Remove a custom resource."""
        if (obj := self._objects.pop(resource_id, None)) is None:
            _LOGGER.debug("Object %s not in store, nothing to delete", resource_id)
            return
        _LOGGER.debug("Deleted object %s from store", resource_id)
        self._fire_event(StoreEvent.OBJECT_DELETED, resource_id, obj)

    def list_objects(self, namespace: str | None = None) -> list[ReleaseSpec]:
        """List all custom resources, optionally filtered by namespace."""
        if namespace is None:
            return list(self._objects.values())
        return [obj for obj in self._objects.values() if obj.namespace == namespace]

    def add_definition(self, kind: str) -> None:
        self._definitions.add(kind)

    def remove_definition(self, kind: str) -> None:
        """Remove a resource definition along with every resource of its kind."""
        self._definitions.discard(kind)
        for resource_id in [rid for rid in self._objects if rid.kind == kind]:
            self.delete_object(resource_id)

    def has_definition(self, kind: str) -> bool:
        return kind in self._definitions

    def add_listener(
        self,
        event: StoreEvent,
        callback: Listener,
        flush: bool = False,
    ) -> Callable[[], None]:
        """Register a callback for a store event."""

        def remove() -> None:
            if callback in self._listeners[event]:
                self._listeners[event].remove(callback)

        self._listeners[event].append(callback)

        if flush and event == StoreEvent.OBJECT_ADDED:
            _LOGGER.debug("Flushing objects for event type %s", event)
            for resource_id, obj in list(self._objects.items()):
                callback(resource_id, obj)

        return remove

    def _fire_event(
        self, event: StoreEvent, resource_id: NamedResource, obj: ReleaseSpec
    ) -> None:
        for cb in list(self._listeners[event]):
            try:
                cb(resource_id, obj)
            except Exception:
                _LOGGER.exception("Store listener callback failed for event %s", event)
