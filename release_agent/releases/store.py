"""Release store holding every revision of every release."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from release_agent.chart import Chart, ChartMetadata
from release_agent.manifest import ReleaseHook, ReleaseStatus

__all__ = [
    "StoredRelease",
    "ReleaseStore",
]


@dataclass
class StoredRelease:
    """A release revision as recorded by the store."""

    name: str
    namespace: str
    version: int
    status: ReleaseStatus
    chart: ChartMetadata
    config: str = ""
    """Raw values the revision was installed with."""

    manifest: str = ""
    hooks: list[ReleaseHook] = field(default_factory=list)


class ReleaseStore(ABC):
    """Records release revisions.

    Operations against the same release name are serialized by the store.
    Every operation raises `ReleaseNotFoundError` when the release, or the
    requested revision, does not exist and `StoreException` on a backend
    failure.
    """

    @abstractmethod
    async def get(self, name: str, version: int = 0) -> StoredRelease:
        """Return a revision of the release, the latest when version is 0."""

    @abstractmethod
    async def list_releases(self, namespace: str | None = None) -> list[StoredRelease]:
        """Return the latest revision of every release, optionally in a namespace."""

    @abstractmethod
    async def install(
        self,
        name: str,
        namespace: str,
        chart: Chart,
        values: str,
        hooks: list[ReleaseHook],
    ) -> StoredRelease:
        """Record revision 1 of a new release.

        The chart templates hold the rendered steady state manifests followed by
        one template per hook. Raises `ReleaseConflictError` if the name is taken.
        """

    @abstractmethod
    async def update(
        self,
        name: str,
        namespace: str,
        chart: Chart,
        values: str,
        hooks: list[ReleaseHook],
    ) -> StoredRelease:
        """Record the next revision of a release, superseding the current one.

        Raises `ReleaseUpdateError` carrying the partially updated revision if
        the update was only partially applied.
        """

    @abstractmethod
    async def rollback(self, name: str, version: int) -> StoredRelease:
        """Record a new revision with the content of an earlier one."""

    @abstractmethod
    async def delete(self, name: str) -> StoredRelease:
        """Purge every revision of a release, returning the last one."""
