"""Tests for the in memory release store."""

import asyncio

import pytest

from release_agent.chart import Chart, ChartFile, ChartMetadata
from release_agent.exceptions import ReleaseConflictError, ReleaseNotFoundError
from release_agent.manifest import ReleaseHook, ReleaseStatus
from release_agent.releases import InMemoryReleaseStore

HOOK = ReleaseHook(name="migrate", kind="pre-install", manifest="kind: Job\n")


def _chart(version: str = "1.0.0", hooks: bool = False) -> Chart:
    templates = [ChartFile(name="templates/app.yaml", data="kind: Service\n")]
    if hooks:
        templates.append(ChartFile(name="templates/hook1.yaml", data="kind: Job\n"))
    return Chart(
        metadata=ChartMetadata(name="web", version=version), templates=templates
    )


@pytest.fixture(name="store")
def mock_store() -> InMemoryReleaseStore:
    return InMemoryReleaseStore()


async def test_install_and_get(store: InMemoryReleaseStore) -> None:
    """Test installing a release records revision 1 without hook templates."""
    release = await store.install("app", "proj", _chart(hooks=True), "a: 1", [HOOK])
    assert release.version == 1
    assert release.status == ReleaseStatus.DEPLOYED
    assert release.manifest == "kind: Service\n"
    assert release.hooks == [HOOK]
    assert release.config == "a: 1"
    assert await store.get("app") == release
    assert await store.get("app", 1) == release


async def test_install_conflict(store: InMemoryReleaseStore) -> None:
    """Test that a release name can only be installed once."""
    await store.install("app", "proj", _chart(), "", [])
    with pytest.raises(ReleaseConflictError, match="app"):
        await store.install("app", "other", _chart(), "", [])


async def test_concurrent_install(store: InMemoryReleaseStore) -> None:
    """Test that only one of two concurrent installs of a name succeeds."""
    results = await asyncio.gather(
        store.install("app", "proj", _chart(), "", []),
        store.install("app", "proj", _chart(), "", []),
        return_exceptions=True,
    )
    assert sum(isinstance(result, ReleaseConflictError) for result in results) == 1


async def test_get_missing(store: InMemoryReleaseStore) -> None:
    """Test looking up a release or revision that does not exist."""
    with pytest.raises(ReleaseNotFoundError, match="'app' not found"):
        await store.get("app")
    await store.install("app", "proj", _chart(), "", [])
    with pytest.raises(ReleaseNotFoundError):
        await store.get("app", 2)


async def test_update_supersedes(store: InMemoryReleaseStore) -> None:
    """Test that revisions increase and earlier revisions are superseded."""
    await store.install("app", "proj", _chart(), "a: 1", [])
    second = await store.update("app", "proj", _chart("2.0.0"), "a: 2", [])
    assert second.version == 2
    assert second.chart.version == "2.0.0"
    assert (await store.get("app", 1)).status == ReleaseStatus.SUPERSEDED
    assert (await store.get("app")).status == ReleaseStatus.DEPLOYED


async def test_update_missing(store: InMemoryReleaseStore) -> None:
    """Test updating a release that does not exist."""
    with pytest.raises(ReleaseNotFoundError):
        await store.update("app", "proj", _chart(), "", [])


async def test_rollback(store: InMemoryReleaseStore) -> None:
    """Test that a rollback records a new revision with earlier content."""
    await store.install("app", "proj", _chart(), "a: 1", [])
    await store.update("app", "proj", _chart("2.0.0"), "a: 2", [])
    rolled_back = await store.rollback("app", 1)
    assert rolled_back.version == 3
    assert rolled_back.config == "a: 1"
    assert rolled_back.chart.version == "1.0.0"
    assert (await store.get("app", 2)).status == ReleaseStatus.SUPERSEDED
    with pytest.raises(ReleaseNotFoundError):
        await store.rollback("app", 7)


async def test_delete(store: InMemoryReleaseStore) -> None:
    """Test purging every revision of a release."""
    await store.install("app", "proj", _chart(), "", [])
    await store.update("app", "proj", _chart(), "", [])
    deleted = await store.delete("app")
    assert deleted.status == ReleaseStatus.DELETED
    assert deleted.version == 2
    with pytest.raises(ReleaseNotFoundError):
        await store.get("app")
    with pytest.raises(ReleaseNotFoundError):
        await store.delete("app")
    # The name can be reused after a purge
    assert (await store.install("app", "proj", _chart(), "", [])).version == 1


async def test_list_releases(store: InMemoryReleaseStore) -> None:
    """Test listing the latest revision of releases by namespace."""
    await store.install("app", "proj", _chart(), "", [])
    await store.install("db", "data", _chart(), "", [])
    await store.update("app", "proj", _chart(), "", [])
    releases = await store.list_releases()
    assert sorted((r.name, r.version) for r in releases) == [("app", 2), ("db", 1)]
    assert [r.name for r in await store.list_releases("data")] == ["db"]
    assert await store.list_releases("missing") == []
