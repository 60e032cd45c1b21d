"""Library for rendering a chart into ordered manifests and hooks.

Rendering itself is delegated to a `TemplateEngine`, which evaluates the chart
templates and returns the content of every rendered file. `HelmTemplateEngine`
does this with `helm template`. The `Renderer` then splits the files into
documents, separates hooks from the steady state manifests and orders both:

- Manifests follow a fixed kind install order, keeping input order on ties.
- Hooks follow their first lifecycle phase, then their weight ascending,
  keeping input order on ties.

`render_release_templates` runs the whole pipeline used before handing a chart
to the release store: templating expressions in values are replaced by a
marker, the chart is rendered, every document is labeled and the original
expressions are restored in the labeled output.
"""

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
import logging
from pathlib import Path
import tempfile
from typing import Any

import aiofiles
import yaml

from . import command
from .chart import Chart, ChartFile
from .config import HelmConfig
from .context import trace_context
from .exceptions import HelmException, RenderException
from .kube import Capabilities
from .manifest import HookEvent, ReleaseHook
from .values import (
    parse_values,
    remove_template_values,
    restore_placeholders,
    template_placeholders,
)

__all__ = [
    "RenderOptions",
    "RenderResult",
    "TemplateEngine",
    "HelmTemplateEngine",
    "Renderer",
    "ReleaseTemplates",
    "render_release_templates",
]

_LOGGER = logging.getLogger(__name__)

NOTES_FILE_SUFFIX = "NOTES.txt"
HOOK_ANNOTATION = "helm.sh/hook"
HOOK_WEIGHT_ANNOTATION = "helm.sh/hook-weight"
SOURCE_PREFIX = "# Source: "

INSTALL_ORDER = [
    "Namespace",
    "ResourceQuota",
    "LimitRange",
    "PodSecurityPolicy",
    "PodDisruptionBudget",
    "Secret",
    "ConfigMap",
    "StorageClass",
    "PersistentVolume",
    "PersistentVolumeClaim",
    "ServiceAccount",
    "CustomResourceDefinition",
    "ClusterRole",
    "ClusterRoleList",
    "ClusterRoleBinding",
    "ClusterRoleBindingList",
    "Role",
    "RoleList",
    "RoleBinding",
    "RoleBindingList",
    "Service",
    "DaemonSet",
    "Pod",
    "ReplicationController",
    "ReplicaSet",
    "Deployment",
    "HorizontalPodAutoscaler",
    "StatefulSet",
    "Job",
    "CronJob",
    "Ingress",
    "APIService",
]
_KIND_ORDER = {kind: index for index, kind in enumerate(INSTALL_ORDER)}
_HOOK_ORDER = {event.value: index for index, event in enumerate(HookEvent)}


@dataclass(frozen=True)
class RenderOptions:
    """Release the chart is rendered for."""

    release_name: str
    namespace: str
    revision: int = 1
    is_install: bool = True


@dataclass
class Document:
    """A single rendered document."""

    source: str
    content: str
    api_version: str
    kind: str
    metadata: dict[str, Any]

    @property
    def annotations(self) -> dict[str, Any]:
        return self.metadata.get("annotations") or {}


@dataclass
class RenderResult:
    """Ordered output of a render."""

    manifests: list[Document] = field(default_factory=list)
    hooks: list[ReleaseHook] = field(default_factory=list)

    @property
    def manifest(self) -> str:
        """The steady state manifests concatenated in install order."""
        return "".join(
            f"\n---\n{SOURCE_PREFIX}{doc.source}\n{doc.content}"
            for doc in self.manifests
        )


class TemplateEngine(ABC):
    """Evaluates the templates of a chart."""

    @abstractmethod
    async def render(
        self,
        chart: Chart,
        values: dict[str, Any],
        options: RenderOptions,
        capabilities: Capabilities,
    ) -> dict[str, str]:
        """Return the rendered content of each template, keyed by source path."""


def split_sources(output: str) -> dict[str, str]:
    """Split `helm template` output into files keyed by their source comment."""
    files: dict[str, str] = {}
    for chunk in output.split("\n---\n"):
        chunk = chunk.removeprefix("---\n")
        if not chunk.startswith(SOURCE_PREFIX):
            continue
        source, _, content = chunk.partition("\n")
        source = source.removeprefix(SOURCE_PREFIX).strip()
        if source in files:
            files[source] = f"{files[source]}\n---\n{content}"
        else:
            files[source] = content
    return files


class HelmTemplateEngine(TemplateEngine):
    """Renders charts with `helm template`."""

    def __init__(self, config: HelmConfig) -> None:
        """Initialize HelmTemplateEngine."""
        self._config = config

    async def render(
        self,
        chart: Chart,
        values: dict[str, Any],
        options: RenderOptions,
        capabilities: Capabilities,
    ) -> dict[str, str]:
        with tempfile.TemporaryDirectory() as tmp_dir:
            chart_path = Path(tmp_dir) / chart.name
            await chart.write(chart_path)
            values_path = Path(tmp_dir) / f"{options.release_name}-values.yaml"
            async with aiofiles.open(values_path, mode="w") as values_file:
                await values_file.write(yaml.dump(values, sort_keys=False))
            args = [
                self._config.helm_bin,
                "template",
                options.release_name,
                str(chart_path),
                "--namespace",
                options.namespace,
                "--values",
                str(values_path),
            ]
            if not options.is_install:
                args.append("--is-upgrade")
            if capabilities.kube_version:
                args.extend(["--kube-version", capabilities.kube_version])
            for api_version in sorted(capabilities.api_versions):
                args.extend(["--api-versions", api_version])
            output = await command.run(command.Command(args, exc=HelmException))
        return split_sources(output)


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge two dictionaries the way chart values are coalesced."""
    result = base.copy()
    for key, override_value in override.items():
        base_value = result.get(key)
        if isinstance(base_value, dict) and isinstance(override_value, dict):
            result[key] = _deep_merge(base_value, override_value)
        else:
            result[key] = override_value
    return result


def _parse_documents(files: dict[str, str]) -> list[Document]:
    docs: list[Document] = []
    for source, content in files.items():
        if source.endswith(NOTES_FILE_SUFFIX):
            continue
        for chunk in content.split("\n---"):
            chunk = chunk.removeprefix("---").strip("\n")
            if not chunk.strip():
                continue
            try:
                head = yaml.load(chunk, Loader=yaml.SafeLoader)
            except yaml.YAMLError as err:
                raise RenderException(f"YAML parse error on {source}: {err}") from err
            if head is None:
                continue
            if not isinstance(head, dict) or not head.get("kind"):
                raise RenderException(f"Document in {source} is not an object: {chunk}")
            docs.append(
                Document(
                    source=source,
                    content=chunk + "\n",
                    api_version=head.get("apiVersion", ""),
                    kind=head["kind"],
                    metadata=head.get("metadata") or {},
                )
            )
    return docs


def _hook_weight(doc: Document) -> int:
    weight = doc.annotations.get(HOOK_WEIGHT_ANNOTATION)
    if weight is None:
        return 0
    try:
        return int(weight)
    except (TypeError, ValueError):
        _LOGGER.warning("Invalid hook weight %r on %s, using 0", weight, doc.source)
        return 0


def _to_hook(doc: Document, release_name: str) -> ReleaseHook:
    events = [
        event.strip()
        for event in str(doc.annotations[HOOK_ANNOTATION]).split(",")
        if event.strip()
    ]
    known = [event for event in events if event in _HOOK_ORDER]
    for event in set(events) - set(known):
        _LOGGER.warning("Unknown hook event %s on %s", event, doc.source)
    return ReleaseHook(
        name=doc.metadata.get("name", ""),
        kind=known[0] if known else (events[0] if events else ""),
        manifest=doc.content,
        weight=_hook_weight(doc),
        events=known,
        release_name=release_name,
    )


def _hook_phase(hook: ReleaseHook) -> int:
    return min((_HOOK_ORDER[event] for event in hook.events), default=len(_HOOK_ORDER))


def sort_manifests(
    files: dict[str, str], capabilities: Capabilities, release_name: str
) -> RenderResult:
    """Split rendered files into ordered manifests and hooks."""
    result = RenderResult()
    for doc in _parse_documents(files):
        if not capabilities.supports(doc.api_version):
            raise RenderException(
                f"apiVersion {doc.api_version!r} in {doc.source} is not available"
            )
        if HOOK_ANNOTATION in doc.annotations:
            result.hooks.append(_to_hook(doc, release_name))
        else:
            result.manifests.append(doc)
    # sorted() is stable, so ties keep their input order
    result.manifests = sorted(
        result.manifests, key=lambda doc: _KIND_ORDER.get(doc.kind, len(_KIND_ORDER))
    )
    result.hooks = sorted(result.hooks, key=lambda hook: (_hook_phase(hook), hook.weight))
    return result


class Renderer:
    """Renders charts into ordered manifests and hooks."""

    def __init__(self, engine: TemplateEngine) -> None:
        """Initialize Renderer."""
        self._engine = engine

    async def render(
        self,
        chart: Chart,
        values: str,
        options: RenderOptions,
        capabilities: Capabilities,
    ) -> RenderResult:
        """Render the chart with the raw values merged over its defaults."""
        render_values = _deep_merge(parse_values(chart.values), parse_values(values))
        with trace_context(f"Render {options.release_name}"):
            files = await self._engine.render(
                chart, render_values, options, capabilities
            )
        result = sort_manifests(files, capabilities, options.release_name)
        _LOGGER.debug(
            "Chart %s rendered %d manifests and %d hooks",
            chart.name,
            len(result.manifests),
            len(result.hooks),
        )
        return result


Labeler = Callable[[str], Awaitable[str]]


@dataclass
class ReleaseTemplates:
    """Labeled templates that replace the templates of a chart."""

    templates: list[ChartFile]
    """The steady state template first, then one template per hook."""

    hooks: list[ReleaseHook]
    """Hooks in hook order, holding their labeled manifests."""


async def render_release_templates(
    renderer: Renderer,
    chart: Chart,
    values: str,
    options: RenderOptions,
    capabilities: Capabilities,
    labeler: Labeler | None,
) -> ReleaseTemplates:
    """Render, label and restore the templates that replace the chart's own.

    The first template holds the steady state manifests and is named after the
    release, followed by one template per hook in hook order. Without a
    `labeler` the documents are restored unlabeled.
    """
    placeholders = template_placeholders(chart.config_map_sources())
    scrubbed = chart.with_values(remove_template_values(chart.values))
    result = await renderer.render(
        scrubbed, remove_template_values(values), options, capabilities
    )
    documents = [result.manifest] + [hook.manifest for hook in result.hooks]
    templates: list[ChartFile] = []
    with trace_context(f"Label {options.release_name}"):
        for index, document in enumerate(documents):
            labeled = await labeler(document) if labeler else document
            restored = restore_placeholders(labeled, placeholders)
            if index == 0:
                name = f"templates/{options.release_name}.yaml"
            else:
                name = f"templates/hook{index}.yaml"
            templates.append(ChartFile(name=name, data=restored))
    hooks = [
        replace(hook, manifest=template.data)
        for hook, template in zip(result.hooks, templates[1:])
    ]
    return ReleaseTemplates(templates=templates, hooks=hooks)
