"""Cluster operations used by the release engine.

The `KubeClient` interface covers label injection, live resource lookups,
starting and stopping workloads, API discovery and namespace lookups.
`KubectlClient` implements it with `kubectl`. Label injection itself is the
pure function `label_manifest`, which does not need a cluster.
"""

from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass, field
import json
import logging
from typing import Any

import yaml

from . import command
from .config import HelmConfig
from .exceptions import KubeException, LabelException
from .manifest import (
    CHART_NAME_LABEL,
    CHART_VERSION_LABEL,
    ImagePullSecret,
    RELEASE_LABEL,
    TEST_LABEL,
)

__all__ = [
    "Capabilities",
    "ResourceInfo",
    "KubeClient",
    "KubectlClient",
    "label_manifest",
]

_LOGGER = logging.getLogger(__name__)

# Kinds whose pod template lives at spec.template
POD_TEMPLATE_KINDS = {
    "Deployment",
    "StatefulSet",
    "DaemonSet",
    "ReplicaSet",
    "ReplicationController",
    "Job",
}
CRON_JOB_KIND = "CronJob"
POD_KIND = "Pod"
SCALABLE_KINDS = {"Deployment", "StatefulSet", "ReplicaSet"}


@dataclass(frozen=True)
class Capabilities:
    """What the cluster offers to chart templates."""

    kube_version: str | None = None
    api_versions: frozenset[str] = frozenset()

    def supports(self, api_version: str) -> bool:
        """Return True if the api version is served, or discovery is unknown."""
        if not self.api_versions:
            return True
        return api_version in self.api_versions


@dataclass
class ResourceInfo:
    """A live object built from a release manifest."""

    group: str
    version: str
    kind: str
    name: str
    namespace: str | None = None
    resource_version: str = ""
    object: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_object(cls, obj: dict[str, Any]) -> "ResourceInfo":
        """Build a ResourceInfo from a serialized kubernetes object."""
        group, _, version = obj.get("apiVersion", "").rpartition("/")
        metadata = obj.get("metadata") or {}
        return cls(
            group=group,
            version=version,
            kind=obj.get("kind", ""),
            name=metadata.get("name", ""),
            namespace=metadata.get("namespace"),
            resource_version=metadata.get("resourceVersion", ""),
            object=obj,
        )


class _ManifestDumper(yaml.SafeDumper):
    """Dumper keeping multi-line strings as block scalars."""


def _str_presenter(dumper: yaml.SafeDumper, data: str) -> yaml.Node:
    return dumper.represent_scalar(
        "tag:yaml.org,2002:str", data, style="|" if data.count("\n") > 0 else None
    )


_ManifestDumper.add_representer(str, _str_presenter)


def _pod_template(doc: dict[str, Any]) -> dict[str, Any] | None:
    """Return the pod template of a workload, if any."""
    kind = doc.get("kind")
    spec = doc.get("spec")
    if not isinstance(spec, dict):
        return None
    if kind in POD_TEMPLATE_KINDS:
        template = spec.get("template")
    elif kind == CRON_JOB_KIND:
        template = (spec.get("jobTemplate") or {}).get("spec", {}).get("template")
    else:
        return None
    return template if isinstance(template, dict) else None


def _add_image_pull_secrets(
    pod_spec: dict[str, Any], image_pull_secrets: Iterable[ImagePullSecret]
) -> None:
    existing = pod_spec.setdefault("imagePullSecrets", [])
    names = {ref.get("name") for ref in existing if isinstance(ref, dict)}
    for secret in image_pull_secrets:
        if secret.name not in names:
            existing.append({"name": secret.name})
            names.add(secret.name)
    if not existing:
        del pod_spec["imagePullSecrets"]


def _label_doc(
    doc: dict[str, Any],
    labels: dict[str, str],
    image_pull_secrets: list[ImagePullSecret],
) -> None:
    metadata = doc.setdefault("metadata", {})
    if not isinstance(metadata, dict):
        raise LabelException(f"Invalid metadata in {doc.get('kind')} object")
    if metadata.get("labels") is None:
        metadata["labels"] = {}
    metadata["labels"].update(labels)

    if (template := _pod_template(doc)) is not None:
        template_metadata = template.setdefault("metadata", {})
        if template_metadata.get("labels") is None:
            template_metadata["labels"] = {}
        template_metadata["labels"][RELEASE_LABEL] = labels[RELEASE_LABEL]
        if isinstance(pod_spec := template.get("spec"), dict):
            _add_image_pull_secrets(pod_spec, image_pull_secrets)
    elif doc.get("kind") == POD_KIND and isinstance(pod_spec := doc.get("spec"), dict):
        _add_image_pull_secrets(pod_spec, image_pull_secrets)


def label_manifest(
    manifest: str,
    labels: dict[str, str],
    image_pull_secrets: list[ImagePullSecret] | None = None,
) -> str:
    """Add labels to every object of a multi-document manifest.

    Workload pod templates also receive the release label and the image pull
    secrets. Content other than labels and pull secrets is kept, though the
    document is re-serialized.
    """
    if RELEASE_LABEL not in labels:
        raise LabelException(f"Labels must include {RELEASE_LABEL}")
    try:
        docs = [doc for doc in yaml.load_all(manifest, Loader=yaml.SafeLoader) if doc]
    except yaml.YAMLError as err:
        raise LabelException(f"label objects: {err}") from err
    for doc in docs:
        if not isinstance(doc, dict):
            raise LabelException(f"label objects: expected an object, found {doc!r}")
        _label_doc(doc, labels, image_pull_secrets or [])
    if not docs:
        return ""
    return yaml.dump_all(
        docs, Dumper=_ManifestDumper, sort_keys=False, explicit_start=True
    )


def release_labels(release_name: str, chart_name: str, chart_version: str) -> dict[str, str]:
    """Labels identifying the release that owns an object."""
    return {
        RELEASE_LABEL: release_name,
        CHART_NAME_LABEL: chart_name,
        CHART_VERSION_LABEL: chart_version,
    }


class KubeClient(ABC):
    """Operations the release engine performs against the cluster."""

    @abstractmethod
    async def label_objects(
        self,
        namespace: str,
        image_pull_secrets: list[ImagePullSecret],
        manifest: str,
        release_name: str,
        chart_name: str,
        chart_version: str,
    ) -> str:
        """Return the manifest with release labels and pull secrets injected."""

    @abstractmethod
    async def label_test_objects(
        self,
        namespace: str,
        image_pull_secrets: list[ImagePullSecret],
        manifest: str,
        release_name: str,
        chart_name: str,
        chart_version: str,
        test_label: str,
    ) -> str:
        """Like label_objects, with the test label added to every object."""

    @abstractmethod
    async def build_unstructured(
        self, namespace: str, manifest: str
    ) -> list[ResourceInfo]:
        """Return the live objects of the manifest that exist in the cluster."""

    @abstractmethod
    async def get_select_relation_pod(
        self, info: ResourceInfo, pods: dict[str, list[dict[str, Any]]]
    ) -> dict[str, list[dict[str, Any]]]:
        """Add the pods selected by a workload to `pods`, keyed by workload."""

    @abstractmethod
    async def stop_resources(self, namespace: str, manifest: str) -> None:
        """Scale the workloads of the manifest down."""

    @abstractmethod
    async def start_resources(self, namespace: str, manifest: str) -> None:
        """Scale the workloads of the manifest back up."""

    @abstractmethod
    async def capabilities(self) -> Capabilities:
        """Return the cluster version and api versions from discovery."""

    @abstractmethod
    async def namespace_exists(self, namespace: str) -> bool:
        """Return True if the namespace exists."""


class LabelingKubeClient(KubeClient, ABC):
    """KubeClient that injects labels with `label_manifest`."""

    async def label_objects(
        self,
        namespace: str,
        image_pull_secrets: list[ImagePullSecret],
        manifest: str,
        release_name: str,
        chart_name: str,
        chart_version: str,
    ) -> str:
        labels = release_labels(release_name, chart_name, chart_version)
        return label_manifest(manifest, labels, image_pull_secrets)

    async def label_test_objects(
        self,
        namespace: str,
        image_pull_secrets: list[ImagePullSecret],
        manifest: str,
        release_name: str,
        chart_name: str,
        chart_version: str,
        test_label: str,
    ) -> str:
        labels = release_labels(release_name, chart_name, chart_version)
        labels[TEST_LABEL] = test_label
        return label_manifest(manifest, labels, image_pull_secrets)


def _scalable_objects(manifest: str) -> list[dict[str, Any]]:
    try:
        docs = list(yaml.load_all(manifest, Loader=yaml.SafeLoader))
    except yaml.YAMLError as err:
        raise KubeException(f"Invalid release manifest: {err}") from err
    return [
        doc
        for doc in docs
        if isinstance(doc, dict)
        and doc.get("kind") in SCALABLE_KINDS
        and (doc.get("metadata") or {}).get("name")
    ]


class KubectlClient(LabelingKubeClient):
    """KubeClient implemented with the kubectl command line."""

    def __init__(self, config: HelmConfig) -> None:
        """Initialize KubectlClient."""
        self._config = config

    async def _kubectl(self, args: list[str], stdin: str | None = None) -> str:
        cmd = command.Command([self._config.kubectl_bin, *args], exc=KubeException)
        return await command.run(cmd, stdin=stdin)

    async def build_unstructured(
        self, namespace: str, manifest: str
    ) -> list[ResourceInfo]:
        if not manifest.strip():
            return []
        out = await self._kubectl(
            ["get", "-n", namespace, "-f", "-", "-o", "json", "--ignore-not-found"],
            stdin=manifest,
        )
        if not out.strip():
            return []
        try:
            doc = json.loads(out)
        except ValueError as err:
            raise KubeException(f"Invalid kubectl output: {err}") from err
        items = doc.get("items", []) if doc.get("kind") == "List" else [doc]
        return [ResourceInfo.from_object(item) for item in items]

    async def get_select_relation_pod(
        self, info: ResourceInfo, pods: dict[str, list[dict[str, Any]]]
    ) -> dict[str, list[dict[str, Any]]]:
        selector = ((info.object.get("spec") or {}).get("selector") or {}).get(
            "matchLabels"
        )
        if info.kind not in POD_TEMPLATE_KINDS or not selector:
            return pods
        label_selector = ",".join(f"{k}={v}" for k, v in sorted(selector.items()))
        out = await self._kubectl(
            ["get", "pods", "-n", info.namespace or "", "-l", label_selector, "-o", "json"]
        )
        try:
            items = json.loads(out).get("items", [])
        except ValueError as err:
            raise KubeException(f"Invalid kubectl output: {err}") from err
        pods[f"{info.kind}/{info.name}"] = items
        return pods

    async def stop_resources(self, namespace: str, manifest: str) -> None:
        for obj in _scalable_objects(manifest):
            name = obj["metadata"]["name"]
            _LOGGER.info("Stopping %s %s/%s", obj["kind"], namespace, name)
            await self._kubectl(
                ["scale", "-n", namespace, obj["kind"].lower(), name, "--replicas=0"]
            )

    async def start_resources(self, namespace: str, manifest: str) -> None:
        for obj in _scalable_objects(manifest):
            name = obj["metadata"]["name"]
            replicas = (obj.get("spec") or {}).get("replicas", 1)
            _LOGGER.info(
                "Starting %s %s/%s with %s replicas", obj["kind"], namespace, name, replicas
            )
            await self._kubectl(
                [
                    "scale",
                    "-n",
                    namespace,
                    obj["kind"].lower(),
                    name,
                    f"--replicas={replicas}",
                ]
            )

    async def capabilities(self) -> Capabilities:
        try:
            version = json.loads(await self._kubectl(["version", "-o", "json"]))
        except ValueError as err:
            raise KubeException(f"Invalid kubectl version output: {err}") from err
        api_versions = await self._kubectl(["api-versions"])
        return Capabilities(
            kube_version=(version.get("serverVersion") or {}).get("gitVersion"),
            api_versions=frozenset(
                line.strip() for line in api_versions.splitlines() if line.strip()
            ),
        )

    async def namespace_exists(self, namespace: str) -> bool:
        out = await self._kubectl(
            ["get", "namespace", namespace, "-o", "name", "--ignore-not-found"]
        )
        return bool(out.strip())
