"""AgentRelease controller implementation.

The controller compares the desired state of each AgentRelease custom resource
with the release recorded by the release engine and emits the packet that
converges them. It never mutates a release itself: install, upgrade and delete
are emitted as commands, and sync outcomes as responses.

Each pass derives a `ReleaseState` from scratch:

    Absent     resource and release are both gone, nothing to do
    Deleted    resource is gone but the release exists, emit a delete command
    Missing    resource has no commit annotation, fail without a packet
    New        release does not exist, emit an install command
    Unchanged  chart name, chart version and values match, report synced
    Drifted    release differs, emit an upgrade command

A release found in another namespace than the resource declares is reported
as failed, and the pass then continues with the comparison.
"""

import asyncio
from collections import defaultdict
from dataclasses import dataclass
from enum import StrEnum
import logging
from typing import DefaultDict

from release_agent.channel import PacketChannel
from release_agent.config import ControllerConfig
from release_agent.exceptions import (
    AgentException,
    InputException,
    ObjectNotFoundError,
    ReconcileException,
    ReleaseNotFoundError,
)
from release_agent.manifest import (
    GetReleaseContentRequest,
    NamedResource,
    Release,
    ReleaseSpec,
)
from release_agent.packet import (
    Packet,
    delete_command,
    install_command,
    sync_failed_response,
    synced_response,
    upgrade_command,
)
from release_agent.releases import ReleaseEngine
from release_agent.store import Store, StoreEvent
from release_agent.task import get_task_service

__all__ = [
    "ReleaseController",
    "ReleaseState",
    "ReconcileResult",
]

_LOGGER = logging.getLogger(__name__)

QUERY_FAILED_MESSAGE = "release query failed, check execution backend"
FOREIGN_NAMESPACE_MESSAGE = "release already in other namespace"


class ReleaseState(StrEnum):
    """State of a release derived during one reconciliation pass."""

    ABSENT = "Absent"
    DELETED = "Deleted"
    MISSING = "Missing"
    NEW = "New"
    UNCHANGED = "Unchanged"
    DRIFTED = "Drifted"
    FOREIGN = "Foreign"


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of a reconciliation pass."""

    state: ReleaseState

    foreign: bool = False
    """True when the release was found in another namespace."""


def _unchanged(spec: ReleaseSpec, release: Release) -> bool:
    # Values are compared as raw text, so reformatting counts as drift
    return (
        spec.chart_name == release.chart_name
        and spec.chart_version == release.chart_version
        and spec.values == release.config
    )


class ReleaseController:
    """Controller reconciling AgentRelease resources.

    The controller listens to the custom resource store and reconciles a
    resource after every add, update or delete. Passes for the same resource
    are serialized, and a pass that fails with a transient error is requeued
    with an exponential backoff.
    """

    def __init__(
        self,
        store: Store,
        engine: ReleaseEngine,
        channel: PacketChannel,
        config: ControllerConfig | None = None,
    ) -> None:
        """Initialize the controller and start listening to the store."""
        self.store = store
        self._engine = engine
        self._channel = channel
        self._config = config or ControllerConfig()
        self._task_service = get_task_service()
        self._locks: DefaultDict[NamedResource, asyncio.Lock] = defaultdict(
            asyncio.Lock
        )
        self._queued: set[NamedResource] = set()
        self._tasks: set[asyncio.Task[None]] = set()
        self._results: dict[NamedResource, ReconcileResult] = {}
        self._remove_listeners = [
            self.store.add_listener(StoreEvent.OBJECT_ADDED, self._listener, flush=True),
            self.store.add_listener(StoreEvent.OBJECT_UPDATED, self._listener),
            self.store.add_listener(StoreEvent.OBJECT_DELETED, self._listener),
        ]

    def _listener(self, resource_id: NamedResource, obj: ReleaseSpec) -> None:
        """Event listener queueing a reconciliation of the resource."""
        if resource_id in self._queued:
            _LOGGER.debug("Reconcile of %s already queued", resource_id)
            return
        self._queued.add(resource_id)
        task = self._task_service.create_task(
            self._process(resource_id), name=f"reconcile {resource_id}"
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def result(self, resource_id: NamedResource) -> ReconcileResult | None:
        """Return the outcome of the last successful pass for a resource."""
        return self._results.get(resource_id)

    async def close(self) -> None:
        """Stop listening and cancel in-flight reconciliations."""
        for remove in self._remove_listeners:
            remove()
        for task in list(self._tasks):
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _process(self, resource_id: NamedResource) -> None:
        lock = self._locks[resource_id]
        try:
            async with lock:
                # Events arriving from here on queue a new pass
                self._queued.discard(resource_id)
                await self._reconcile_with_retries(resource_id)
        finally:
            # A queued pass still needs the lock
            if resource_id not in self._queued and not lock.locked():
                self._locks.pop(resource_id, None)

    async def _reconcile_with_retries(self, resource_id: NamedResource) -> None:
        for attempt in range(self._config.max_retries + 1):
            try:
                result = await self.reconcile(resource_id)
            except InputException as err:
                _LOGGER.error("Unable to reconcile %s: %s", resource_id, err)
                self._results[resource_id] = ReconcileResult(ReleaseState.MISSING)
                return
            except AgentException as err:
                if attempt == self._config.max_retries:
                    _LOGGER.error(
                        "Giving up on %s after %d attempts: %s",
                        resource_id,
                        attempt + 1,
                        err,
                    )
                    return
                delay = self._config.requeue_delay * 2**attempt
                _LOGGER.warning(
                    "Reconcile of %s failed, requeue in %.1fs: %s",
                    resource_id,
                    delay,
                    err,
                )
                await asyncio.sleep(delay)
            else:
                self._results[resource_id] = result
                return

    async def _send_command(self, packet: Packet | None, resource_id: NamedResource) -> None:
        if packet is None:
            _LOGGER.error("Command for %s could not be encoded, not sent", resource_id)
            return
        await self._channel.send_command(packet)

    async def reconcile(self, resource_id: NamedResource) -> ReconcileResult:
        """Run one reconciliation pass for a resource."""
        _LOGGER.info("Reconciling %s", resource_id)
        try:
            spec = self.store.get_object(resource_id)
        except ObjectNotFoundError:
            return await self._reconcile_deleted(resource_id)

        if spec.commit is None:
            raise InputException(f"{resource_id} has no commit annotation")

        try:
            release = await self._engine.get_release(
                GetReleaseContentRequest(release_name=spec.name)
            )
        except ReleaseNotFoundError:
            _LOGGER.info("Release %s install", spec.name)
            await self._send_command(install_command(spec), resource_id)
            return ReconcileResult(ReleaseState.NEW)
        except AgentException as err:
            await self._channel.send_response(
                sync_failed_response(spec, QUERY_FAILED_MESSAGE)
            )
            raise ReconcileException(f"get release {spec.name}: {err}") from err

        foreign = False
        if release.namespace != spec.namespace:
            _LOGGER.error(
                "Release %s is %s, in namespace %s not %s",
                release.name,
                ReleaseState.FOREIGN,
                release.namespace,
                spec.namespace,
            )
            await self._channel.send_response(
                sync_failed_response(spec, FOREIGN_NAMESPACE_MESSAGE)
            )
            foreign = True

        if _unchanged(spec, release):
            _LOGGER.info("Release %s chart, version and values unchanged", release.name)
            await self._channel.send_response(synced_response(spec))
            return ReconcileResult(ReleaseState.UNCHANGED, foreign=foreign)

        _LOGGER.info("Release %s upgrade", release.name)
        await self._send_command(upgrade_command(spec), resource_id)
        return ReconcileResult(ReleaseState.DRIFTED, foreign=foreign)

    async def _reconcile_deleted(self, resource_id: NamedResource) -> ReconcileResult:
        if not self.store.has_definition(resource_id.kind):
            _LOGGER.warning("Resource definition for %s no longer exists", resource_id.kind)
            return ReconcileResult(ReleaseState.ABSENT)
        try:
            await self._engine.get_release(
                GetReleaseContentRequest(release_name=resource_id.name)
            )
        except ReleaseNotFoundError:
            _LOGGER.debug("Release %s already absent", resource_id.name)
            return ReconcileResult(ReleaseState.ABSENT)
        except AgentException as err:
            _LOGGER.warning(
                "Unable to query release %s, deleting anyway: %s", resource_id.name, err
            )
        _LOGGER.info("Release %s delete", resource_id.name)
        await self._send_command(
            delete_command(resource_id.namespace or "", resource_id.name), resource_id
        )
        return ReconcileResult(ReleaseState.DELETED)
