"""Tests for the AgentRelease controller."""

import json
from typing import Any

import pytest

from release_agent.channel import PacketChannel
from release_agent.config import ControllerConfig
from release_agent.controller import ReconcileResult, ReleaseController, ReleaseState
from release_agent.controller.controller import (
    FOREIGN_NAMESPACE_MESSAGE,
    QUERY_FAILED_MESSAGE,
)
from release_agent.exceptions import StoreException
from release_agent.manifest import (
    COMMIT_ANNOTATION,
    InstallReleaseRequest,
    NamedResource,
    ReleaseSpec,
)
from release_agent.packet import Packet, PacketType
from release_agent.releases import ReleaseEngine
from release_agent.store import InMemoryStore
from release_agent.task import task_service_context

KIND = "AgentRelease"
RESOURCE_ID = NamedResource(KIND, "proj", "app")
CONFIG = ControllerConfig(max_retries=1, requeue_delay=0.001)


def _spec(values: str = "replicas: 2\n", commit: str | None = "abc123") -> ReleaseSpec:
    return ReleaseSpec(
        name="app",
        namespace="proj",
        repo_url="https://charts.example.com",
        chart_name="web",
        chart_version="1.0.0",
        values=values,
        annotations={COMMIT_ANNOTATION: commit} if commit else {},
    )


@pytest.fixture(name="store")
def mock_store() -> InMemoryStore:
    store = InMemoryStore()
    store.add_definition(KIND)
    return store


async def _install(engine: ReleaseEngine, spec: ReleaseSpec, namespace: str = "proj") -> None:
    request = InstallReleaseRequest.from_spec(spec)
    request.namespace = namespace
    await engine.install_release(request)


async def _reconcile(
    store: InMemoryStore,
    engine: ReleaseEngine,
    channel: PacketChannel,
    *specs: ReleaseSpec,
) -> ReleaseController:
    """Add the resources and wait for the controller to settle."""
    with task_service_context() as task_service:
        controller = ReleaseController(store, engine, channel, CONFIG)
        for spec in specs:
            store.add_object(spec)
        await task_service.block_till_done()
    return controller


async def test_new_release(
    store: InMemoryStore, engine: ReleaseEngine, channel: PacketChannel
) -> None:
    """Test that a resource without a release emits an install command."""
    controller = await _reconcile(store, engine, channel, _spec())
    assert controller.result(RESOURCE_ID) == ReconcileResult(ReleaseState.NEW)
    commands = channel.pending_commands()
    assert len(commands) == 1
    assert commands[0].key == "env:proj.release:app"
    assert commands[0].type == PacketType.RELEASE_PRE_INSTALL
    payload = json.loads(commands[0].payload)
    assert payload["chartName"] == "web"
    assert payload["commit"] == "abc123"
    assert channel.pending_responses() == []
    await controller.close()


async def test_unchanged_release(
    store: InMemoryStore, engine: ReleaseEngine, channel: PacketChannel
) -> None:
    """Test that a matching release is reported as synced."""
    await _install(engine, _spec())
    controller = await _reconcile(store, engine, channel, _spec())
    assert controller.result(RESOURCE_ID) == ReconcileResult(ReleaseState.UNCHANGED)
    assert channel.pending_commands() == []
    assert channel.pending_responses() == [
        Packet(key="env:proj.release:app.commit:abc123", type=PacketType.RELEASE_SYNCED)
    ]
    await controller.close()


async def test_drifted_release(
    store: InMemoryStore, engine: ReleaseEngine, channel: PacketChannel
) -> None:
    """Test that changed values emit an upgrade command."""
    await _install(engine, _spec())
    controller = await _reconcile(store, engine, channel, _spec(values="replicas: 3\n"))
    assert controller.result(RESOURCE_ID) == ReconcileResult(ReleaseState.DRIFTED)
    commands = channel.pending_commands()
    assert [command.type for command in commands] == [PacketType.RELEASE_PRE_UPGRADE]
    assert json.loads(commands[0].payload)["values"] == "replicas: 3\n"
    assert channel.pending_responses() == []
    await controller.close()


async def test_reformatted_values_are_drift(
    store: InMemoryStore, engine: ReleaseEngine, channel: PacketChannel
) -> None:
    """Test that values are compared as text."""
    await _install(engine, _spec(values="replicas: 2\n"))
    controller = await _reconcile(
        store, engine, channel, _spec(values="replicas:   2\n")
    )
    assert controller.result(RESOURCE_ID) == ReconcileResult(ReleaseState.DRIFTED)
    await controller.close()


async def test_missing_commit(
    store: InMemoryStore, engine: ReleaseEngine, channel: PacketChannel
) -> None:
    """Test that a resource without a commit emits nothing."""
    controller = await _reconcile(store, engine, channel, _spec(commit=None))
    assert controller.result(RESOURCE_ID) == ReconcileResult(ReleaseState.MISSING)
    assert channel.pending_commands() == []
    assert channel.pending_responses() == []
    await controller.close()


async def test_foreign_namespace(
    store: InMemoryStore, engine: ReleaseEngine, channel: PacketChannel
) -> None:
    """Test that a release in another namespace is reported as failed."""
    await _install(engine, _spec(), namespace="other")
    controller = await _reconcile(store, engine, channel, _spec())
    assert controller.result(RESOURCE_ID) == ReconcileResult(
        ReleaseState.UNCHANGED, foreign=True
    )
    key = "env:proj.release:app.commit:abc123"
    assert channel.pending_responses() == [
        Packet(
            key=key,
            type=PacketType.RELEASE_SYNCED_FAILED,
            payload=FOREIGN_NAMESPACE_MESSAGE,
        ),
        Packet(key=key, type=PacketType.RELEASE_SYNCED),
    ]
    assert channel.pending_commands() == []
    await controller.close()


async def test_deleted_resource(
    store: InMemoryStore, engine: ReleaseEngine, channel: PacketChannel
) -> None:
    """Test that deleting a resource emits a delete command."""
    await _install(engine, _spec())
    with task_service_context() as task_service:
        controller = ReleaseController(store, engine, channel, CONFIG)
        store.add_object(_spec())
        await task_service.block_till_done()
        channel.pending_responses()

        store.delete_object(RESOURCE_ID)
        await task_service.block_till_done()

    assert controller.result(RESOURCE_ID) == ReconcileResult(ReleaseState.DELETED)
    commands = channel.pending_commands()
    assert len(commands) == 1
    assert commands[0].key == "env:proj.release:app"
    assert commands[0].type == PacketType.RELEASE_DELETE
    assert json.loads(commands[0].payload) == {
        "releaseName": "app",
        "namespace": "proj",
    }
    await controller.close()


async def test_deleted_resource_without_release(
    store: InMemoryStore, engine: ReleaseEngine, channel: PacketChannel
) -> None:
    """Test that a resource and release that are both gone need nothing."""
    controller = await _reconcile(store, engine, channel)
    result = await controller.reconcile(NamedResource(KIND, "proj", "ghost"))
    assert result == ReconcileResult(ReleaseState.ABSENT)
    assert channel.pending_commands() == []
    await controller.close()


async def test_definition_removed(
    store: InMemoryStore, engine: ReleaseEngine, channel: PacketChannel
) -> None:
    """Test that removing the resource definition deletes nothing."""
    await _install(engine, _spec())
    with task_service_context() as task_service:
        controller = ReleaseController(store, engine, channel, CONFIG)
        store.add_object(_spec())
        await task_service.block_till_done()
        store.remove_definition(KIND)
        await task_service.block_till_done()

    assert controller.result(RESOURCE_ID) == ReconcileResult(ReleaseState.ABSENT)
    assert channel.pending_commands() == []
    await controller.close()


async def test_query_failure_requeued(
    store: InMemoryStore,
    engine: ReleaseEngine,
    channel: PacketChannel,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Test that a failed release query reports the failure and retries."""
    calls: list[Any] = []

    async def get_release(request: Any) -> Any:
        calls.append(request)
        raise StoreException("backend unavailable")

    monkeypatch.setattr(engine, "get_release", get_release)
    controller = await _reconcile(store, engine, channel, _spec())
    assert len(calls) == CONFIG.max_retries + 1
    assert controller.result(RESOURCE_ID) is None
    responses = channel.pending_responses()
    assert [packet.payload for packet in responses] == [QUERY_FAILED_MESSAGE] * 2
    assert all(
        packet.type == PacketType.RELEASE_SYNCED_FAILED for packet in responses
    )
    assert channel.pending_commands() == []
    await controller.close()


async def test_existing_resources_flushed(
    store: InMemoryStore, engine: ReleaseEngine, channel: PacketChannel
) -> None:
    """Test that resources added before the controller started are reconciled."""
    store.add_object(_spec())
    controller = await _reconcile(store, engine, channel)
    assert controller.result(RESOURCE_ID) == ReconcileResult(ReleaseState.NEW)
    assert len(channel.pending_commands()) == 1
    await controller.close()


async def test_events_coalesced(
    store: InMemoryStore, engine: ReleaseEngine, channel: PacketChannel
) -> None:
    """Test that events queued before a pass starts produce a single pass."""
    controller = await _reconcile(
        store,
        engine,
        channel,
        _spec(values="replicas: 2\n"),
        _spec(values="replicas: 4\n"),
    )
    commands = channel.pending_commands()
    assert len(commands) == 1
    assert json.loads(commands[0].payload)["values"] == "replicas: 4\n"
    await controller.close()


async def test_finished_passes_released(
    store: InMemoryStore, engine: ReleaseEngine, channel: PacketChannel
) -> None:
    """Test that finished passes leave no tasks or locks behind."""
    with task_service_context() as task_service:
        controller = ReleaseController(store, engine, channel, CONFIG)
        for replicas in range(20):
            store.add_object(_spec(values=f"replicas: {replicas}\n"))
            await task_service.block_till_done()
            assert len(channel.pending_commands()) == 1

    assert controller._tasks == set()
    assert controller._locks == {}
    await controller.close()
