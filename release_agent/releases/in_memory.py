"""Module for an in memory release store."""

import asyncio
from collections import defaultdict
from dataclasses import replace
import logging
from typing import DefaultDict

from release_agent.chart import Chart
from release_agent.exceptions import ReleaseConflictError, ReleaseNotFoundError
from release_agent.manifest import ReleaseHook, ReleaseStatus

from .store import ReleaseStore, StoredRelease

_LOGGER = logging.getLogger(__name__)


def _manifest(chart: Chart, hooks: list[ReleaseHook]) -> str:
    """Join the templates that are not hooks, which come last."""
    count = len(chart.templates) - len(hooks)
    return "".join(template.data for template in chart.templates[: max(count, 0)])


class InMemoryReleaseStore(ReleaseStore):
    """In-memory implementation of the ReleaseStore interface.

    Keeps the full revision history of each release keyed by release name.
    """

    def __init__(self) -> None:
        """Initialize the InMemoryReleaseStore."""
        self._history: dict[str, list[StoredRelease]] = {}
        self._locks: DefaultDict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def _latest(self, name: str) -> StoredRelease:
        if not (history := self._history.get(name)):
            raise ReleaseNotFoundError(name)
        return history[-1]

    async def get(self, name: str, version: int = 0) -> StoredRelease:
        if version == 0:
            return self._latest(name)
        for revision in self._history.get(name, []):
            if revision.version == version:
                return revision
        raise ReleaseNotFoundError(name)

    async def list_releases(self, namespace: str | None = None) -> list[StoredRelease]:
        return [
            history[-1]
            for history in self._history.values()
            if history and (namespace is None or history[-1].namespace == namespace)
        ]

    async def install(
        self,
        name: str,
        namespace: str,
        chart: Chart,
        values: str,
        hooks: list[ReleaseHook],
    ) -> StoredRelease:
        async with self._locks[name]:
            if name in self._history:
                raise ReleaseConflictError(name)
            release = StoredRelease(
                name=name,
                namespace=namespace,
                version=1,
                status=ReleaseStatus.DEPLOYED,
                chart=chart.metadata,
                config=values,
                manifest=_manifest(chart, hooks),
                hooks=list(hooks),
            )
            self._history[name] = [release]
            _LOGGER.debug("Installed release %s/%s", namespace, name)
            return release

    async def update(
        self,
        name: str,
        namespace: str,
        chart: Chart,
        values: str,
        hooks: list[ReleaseHook],
    ) -> StoredRelease:
        async with self._locks[name]:
            current = self._latest(name)
            release = StoredRelease(
                name=name,
                namespace=current.namespace,
                version=current.version + 1,
                status=ReleaseStatus.DEPLOYED,
                chart=chart.metadata,
                config=values,
                manifest=_manifest(chart, hooks),
                hooks=list(hooks),
            )
            self._supersede(name, release)
            _LOGGER.debug("Updated release %s to revision %d", name, release.version)
            return release

    async def rollback(self, name: str, version: int) -> StoredRelease:
        async with self._locks[name]:
            current = self._latest(name)
            target = await self.get(name, version)
            release = replace(
                target,
                version=current.version + 1,
                status=ReleaseStatus.DEPLOYED,
                hooks=list(target.hooks),
            )
            self._supersede(name, release)
            _LOGGER.debug(
                "Rolled back release %s to revision %d as %d",
                name,
                version,
                release.version,
            )
            return release

    async def delete(self, name: str) -> StoredRelease:
        async with self._locks[name]:
            current = self._latest(name)
            del self._history[name]
            _LOGGER.debug("Purged release %s", name)
            return replace(current, status=ReleaseStatus.DELETED)

    def _supersede(self, name: str, release: StoredRelease) -> None:
        history = self._history[name]
        history[-1] = replace(history[-1], status=ReleaseStatus.SUPERSEDED)
        history.append(release)
