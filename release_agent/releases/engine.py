"""Release lifecycle operations executed on behalf of the reconciler.

The `ReleaseEngine` loads charts, renders and labels them and records the
result in a `ReleaseStore`. Every store and cluster call is bound by the
configured timeout, and a timeout is reported as a `StoreException` or
`KubeException`, never as a missing release.

Install and upgrade follow the same sequence:

1. Fetch the chart from the chart source.
2. Render it with templating expressions scrubbed from the values.
3. Label every rendered document and restore the scrubbed expressions. An
   upgrade of the agent's own chart skips the labels.
4. Replace the chart templates with the labeled documents, with dependencies
   cleared, and record the release in the store.

A failed install is purged again so that no half installed release is left
behind.
"""

import asyncio
from collections.abc import Awaitable, Iterable
from dataclasses import dataclass
from functools import partial
import json
import logging
from typing import Any, TypeVar

from release_agent.chart import Chart, ChartSource
from release_agent.config import AgentConfig
from release_agent.context import trace_context
from release_agent.exceptions import (
    AgentException,
    InputException,
    KubeException,
    PartialFailureError,
    ReleaseConflictError,
    ReleaseNotFoundError,
    ReleaseUpdateError,
    ReleaseUpgradeError,
    StoreException,
)
from release_agent.kube import Capabilities, KubeClient
from release_agent.manifest import (
    CertManagerInfo,
    DeleteReleaseRequest,
    GetReleaseContentRequest,
    InstallReleaseRequest,
    OldEnv,
    Release,
    ReleaseHook,
    ReleaseResource,
    RollbackReleaseRequest,
    StartReleaseRequest,
    StartReleaseResponse,
    StopReleaseRequest,
    StopReleaseResponse,
    TestReleaseRequest,
    TestReleaseResponse,
    UpgradeInfo,
    UpgradeReleaseRequest,
)
from release_agent.render import (
    Labeler,
    ReleaseTemplates,
    RenderOptions,
    Renderer,
    render_release_templates,
)
from release_agent.values import parse_values

from .store import ReleaseStore, StoredRelease

__all__ = [
    "ReleaseEngine",
    "AgentInfo",
]

_LOGGER = logging.getLogger(__name__)

_T = TypeVar("_T")


@dataclass
class AgentInfo:
    """Result of scanning the releases for agent deployments."""

    upgrade_info: UpgradeInfo
    cert_manager: CertManagerInfo | None = None


def _to_release(stored: StoredRelease, commit: str | None = None) -> Release:
    return Release(
        name=stored.name,
        namespace=stored.namespace,
        revision=stored.version,
        status=stored.status,
        chart_name=stored.chart.name,
        chart_version=stored.chart.version,
        config=stored.config,
        manifest=stored.manifest,
        hooks=list(stored.hooks),
        commit=commit,
    )


def _env_info(values: str) -> tuple[str, int]:
    """Return the connect url and environment id of an agent deployment."""
    config = parse_values(values).get("config")
    if not isinstance(config, dict):
        raise InputException("config error")
    connect = config.get("connect")
    env_id = config.get("envId")
    return (
        connect if isinstance(connect, str) else "",
        env_id if isinstance(env_id, int) else 0,
    )


def _pod_id(pod: dict[str, Any]) -> str:
    metadata = pod.get("metadata") or {}
    return str(metadata.get("uid") or metadata.get("name") or json.dumps(pod))


class ReleaseEngine:
    """Executes release lifecycle operations."""

    def __init__(
        self,
        config: AgentConfig,
        store: ReleaseStore,
        kube: KubeClient,
        charts: ChartSource,
        renderer: Renderer,
    ) -> None:
        """Initialize ReleaseEngine."""
        self._config = config
        self._store = store
        self._kube = kube
        self._charts = charts
        self._renderer = renderer

    async def _store_call(self, call: Awaitable[_T], operation: str) -> _T:
        """Await a store call, converting a timeout into a StoreException."""
        try:
            async with asyncio.timeout(self._config.timeout):
                with trace_context(f"Store {operation}"):
                    return await call
        except TimeoutError as err:
            raise StoreException(
                f"{operation} timed out after {self._config.timeout}s"
            ) from err

    async def _kube_call(self, call: Awaitable[_T], operation: str) -> _T:
        """Await a cluster call, converting a timeout into a KubeException."""
        try:
            async with asyncio.timeout(self._config.timeout):
                return await call
        except TimeoutError as err:
            raise KubeException(
                f"{operation} timed out after {self._config.timeout}s"
            ) from err

    async def _get_stored(self, name: str, version: int = 0) -> StoredRelease:
        return await self._store_call(self._store.get(name, version), f"get {name}")

    async def _exists(self, name: str) -> bool:
        try:
            await self._get_stored(name)
        except ReleaseNotFoundError:
            return False
        return True

    async def _load_chart(self, request: InstallReleaseRequest) -> Chart:
        with trace_context(f"Chart {request.chart_name}"):
            return await self._charts.get_chart(
                request.repo_url, request.chart_name, request.chart_version
            )

    async def _capabilities(self) -> Capabilities:
        return await self._kube_call(self._kube.capabilities(), "discovery")

    async def _render_hooks(
        self, request: InstallReleaseRequest, options: RenderOptions
    ) -> list[ReleaseHook]:
        chart = await self._load_chart(request)
        rendered = await render_release_templates(
            self._renderer,
            chart,
            request.values,
            options,
            await self._capabilities(),
            None,
        )
        return rendered.hooks

    async def _render_templates(
        self,
        chart: Chart,
        request: InstallReleaseRequest,
        options: RenderOptions,
        label: bool = True,
    ) -> ReleaseTemplates:
        labeler: Labeler | None = None
        if label and isinstance(request, TestReleaseRequest):
            labeler = partial(
                self._kube.label_test_objects,
                options.namespace,
                request.image_pull_secrets,
                release_name=request.release_name,
                chart_name=request.chart_name,
                chart_version=request.chart_version,
                test_label=request.label,
            )
        elif label:
            labeler = partial(
                self._kube.label_objects,
                options.namespace,
                request.image_pull_secrets,
                release_name=request.release_name,
                chart_name=request.chart_name,
                chart_version=request.chart_version,
            )
        return await render_release_templates(
            self._renderer,
            chart,
            request.values,
            options,
            await self._capabilities(),
            labeler,
        )

    async def _resources(self, namespace: str, manifest: str) -> list[ReleaseResource]:
        """Look up the live objects of a manifest with their related pods."""
        infos = await self._kube_call(
            self._kube.build_unstructured(namespace, manifest), "build resources"
        )
        pods: dict[str, list[dict[str, Any]]] = {}
        for info in infos:
            pods = await self._kube_call(
                self._kube.get_select_relation_pod(info, pods), "related pods"
            )
        resources = []
        for info in infos:
            seen: set[str] = set()
            related = []
            for pod in pods.get(f"{info.kind}/{info.name}", []):
                if (pod_id := _pod_id(pod)) not in seen:
                    seen.add(pod_id)
                    related.append(json.dumps(pod))
            resources.append(
                ReleaseResource(
                    group=info.group,
                    version=info.version,
                    kind=info.kind,
                    name=info.name,
                    resource_version=info.resource_version,
                    object=json.dumps(info.object),
                    pods=related,
                )
            )
        return resources

    async def _decorate(self, release: Release) -> Release:
        release.resources = await self._resources(release.namespace, release.manifest)
        return release

    async def _purge_partial(self, name: str, err: AgentException) -> None:
        """Purge a release after a failed install, keeping both errors visible."""
        _LOGGER.warning("Install of %s failed, purging partial release: %s", name, err)
        try:
            await self._store_call(self._store.delete(name), f"delete {name}")
        except ReleaseNotFoundError:
            _LOGGER.debug("Nothing to purge for release %s", name)
        except AgentException as cleanup_err:
            raise PartialFailureError(
                f"install release {name}: {err}; purge failed: {cleanup_err}"
            ) from err

    async def list_releases(self, namespace: str | None = None) -> list[Release]:
        """Return the releases in scope.

        A store failure is logged and an empty list returned, so callers must
        not assume every release is present.
        """
        try:
            stored = await self._store_call(
                self._store.list_releases(namespace), "list releases"
            )
        except StoreException as err:
            _LOGGER.error("Unable to list releases in %s: %s", namespace or "*", err)
            return []
        return [_to_release(release) for release in stored]

    async def pre_install_release(
        self, request: InstallReleaseRequest
    ) -> list[ReleaseHook]:
        """Render a new release and return its hooks without installing it."""
        if await self._exists(request.release_name):
            raise ReleaseConflictError(request.release_name)
        return await self._render_hooks(
            request, RenderOptions(request.release_name, request.namespace)
        )

    async def install_release(self, request: InstallReleaseRequest) -> Release:
        """Install a new release at revision 1."""
        return await self._install(request, request.namespace)

    async def _install(self, request: InstallReleaseRequest, namespace: str) -> Release:
        name = request.release_name
        if await self._exists(name):
            raise ReleaseConflictError(name)
        chart = await self._load_chart(request)
        rendered = await self._render_templates(
            chart, request, RenderOptions(name, namespace)
        )
        install_chart = chart.with_templates(rendered.templates, chart.values)
        try:
            stored = await self._store_call(
                self._store.install(
                    name, namespace, install_chart, request.values, rendered.hooks
                ),
                f"install {name}",
            )
        except ReleaseConflictError:
            raise
        except AgentException as err:
            await self._purge_partial(name, err)
            raise
        _LOGGER.info("Installed release %s/%s", namespace, name)
        return await self._decorate(_to_release(stored, request.commit))

    async def pre_upgrade_release(
        self, request: UpgradeReleaseRequest
    ) -> list[ReleaseHook]:
        """Render the next revision of a release and return its hooks."""
        try:
            current = await self._get_stored(request.release_name)
        except ReleaseNotFoundError:
            return await self.pre_install_release(request.to_install())
        return await self._render_hooks(
            request,
            RenderOptions(
                request.release_name,
                request.namespace,
                revision=current.version + 1,
                is_install=False,
            ),
        )

    async def upgrade_release(self, request: UpgradeReleaseRequest) -> Release:
        """Upgrade a release to the requested chart and values.

        The release is installed when it does not exist. On a partially
        applied update the raised `ReleaseUpgradeError` carries the partially
        upgraded release.
        """
        name = request.release_name
        try:
            current = await self._get_stored(name)
        except ReleaseNotFoundError:
            return await self.install_release(request.to_install())
        chart = await self._load_chart(request)
        label = chart.name != self._config.agent_chart_name
        if not label:
            _LOGGER.info("Upgrading agent chart %s without labels", chart.name)
        rendered = await self._render_templates(
            chart,
            request,
            RenderOptions(
                name,
                request.namespace,
                revision=current.version + 1,
                is_install=False,
            ),
            label=label,
        )
        upgrade_chart = chart.with_templates(rendered.templates, chart.values)
        try:
            stored = await self._store_call(
                self._store.update(
                    name,
                    request.namespace,
                    upgrade_chart,
                    request.values,
                    rendered.hooks,
                ),
                f"update {name}",
            )
        except ReleaseUpdateError as err:
            partial_release = None
            if err.release is not None:
                partial_release = await self._decorate(_to_release(err.release))
            raise ReleaseUpgradeError(
                f"update release {name}: {err}", release=partial_release
            ) from err
        _LOGGER.info("Upgraded release %s to revision %d", name, stored.version)
        return await self._decorate(_to_release(stored, request.commit))

    async def rollback_release(self, request: RollbackReleaseRequest) -> Release:
        """Roll a release back to an earlier revision."""
        stored = await self._store_call(
            self._store.rollback(request.release_name, request.version),
            f"rollback {request.release_name}",
        )
        return await self._decorate(_to_release(stored))

    async def delete_release(self, request: DeleteReleaseRequest) -> Release:
        """Purge every revision of a release."""
        stored = await self._store_call(
            self._store.delete(request.release_name),
            f"delete {request.release_name}",
        )
        return await self._decorate(_to_release(stored))

    async def start_release(self, request: StartReleaseRequest) -> StartReleaseResponse:
        """Scale the workloads of a release back up."""
        stored = await self._get_stored(request.release_name)
        await self._kube_call(
            self._kube.start_resources(request.namespace, stored.manifest),
            f"start {request.release_name}",
        )
        return StartReleaseResponse(release_name=request.release_name)

    async def stop_release(self, request: StopReleaseRequest) -> StopReleaseResponse:
        """Scale the workloads of a release down."""
        stored = await self._get_stored(request.release_name)
        await self._kube_call(
            self._kube.stop_resources(request.namespace, stored.manifest),
            f"stop {request.release_name}",
        )
        return StopReleaseResponse(release_name=request.release_name)

    async def get_release_content(self, request: GetReleaseContentRequest) -> Release:
        """Return a release revision with its live resources."""
        stored = await self._get_stored(request.release_name, request.version)
        return await self._decorate(_to_release(stored))

    async def get_release(self, request: GetReleaseContentRequest) -> Release:
        """Return a release revision without looking up live resources."""
        return _to_release(
            await self._get_stored(request.release_name, request.version)
        )

    async def execute_test(self, request: TestReleaseRequest) -> TestReleaseResponse:
        """Install a release into the test namespace with the test label."""
        await self._install(request, self._config.test_namespace)
        return TestReleaseResponse(release_name=request.release_name)

    async def list_agent(
        self, connect_url: str, tracked_namespaces: Iterable[str] = ()
    ) -> AgentInfo:
        """Find legacy agent deployments and the certificate manager release.

        Legacy agents connected to `connect_url` in an existing namespace that
        is not tracked locally are stopped and recorded so their environments
        can be migrated.
        """
        tracked = set(tracked_namespaces)
        stored = await self._store_call(self._store.list_releases(), "list releases")
        info = AgentInfo(upgrade_info=UpgradeInfo())
        for release in stored:
            if release.chart.name == self._config.cert_manager_chart_name:
                info.cert_manager = CertManagerInfo(
                    release_name=release.name,
                    namespace=release.namespace,
                    version=release.chart.version,
                )
                continue
            if release.chart.name != self._config.legacy_agent_chart_name:
                continue
            if release.namespace in tracked:
                continue
            if not await self._kube_call(
                self._kube.namespace_exists(release.namespace), "get namespace"
            ):
                continue
            try:
                connect, env_id = _env_info(release.config)
            except InputException as err:
                _LOGGER.info("Skipping agent release %s: %s", release.name, err)
                continue
            if connect not in connect_url:
                continue
            try:
                await self.stop_release(
                    StopReleaseRequest(
                        release_name=release.name, namespace=release.namespace
                    )
                )
            except AgentException as err:
                _LOGGER.warning("Stopping old agent %s failed: %s", release.name, err)
            else:
                _LOGGER.info("Stopped old agent %s", release.name)
            info.upgrade_info.envs.append(
                OldEnv(env_id=env_id, namespace=release.namespace)
            )
        return info

    async def delete_namespace_releases(self, namespace: str) -> None:
        """Purge every release in a namespace.

        Each release is purged independently; failures are collected and
        raised together once every release was attempted.
        """
        stored = await self._store_call(
            self._store.list_releases(namespace), f"list releases in {namespace}"
        )
        failures = []
        for release in stored:
            try:
                await self._store_call(
                    self._store.delete(release.name), f"delete {release.name}"
                )
            except ReleaseNotFoundError:
                continue
            except AgentException as err:
                _LOGGER.error("Unable to delete release %s: %s", release.name, err)
                failures.append(f"{release.name}: {err}")
        if failures:
            raise StoreException(
                f"Failed to delete releases in {namespace}: {'; '.join(failures)}"
            )
