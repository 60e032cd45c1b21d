"""Representation of desired and actual release state.

The desired state of a release is a `ReleaseSpec` custom resource owned by the
upstream control plane. The actual state is a `Release` snapshot produced by
the release engine from the release store, decorated with hooks and live
resources. Request and response bodies carried in packet payloads are also
defined here so that their serialized form is shared by every component.
"""

from dataclasses import dataclass, field
from enum import StrEnum
import logging
from typing import Any, ClassVar

from mashumaro import DataClassDictMixin, field_options
from mashumaro.config import BaseConfig

from .exceptions import InputException

__all__ = [
    "NamedResource",
    "ReleaseSpec",
    "Release",
    "ReleaseHook",
    "ReleaseResource",
    "ReleaseStatus",
    "HookEvent",
    "InstallReleaseRequest",
    "UpgradeReleaseRequest",
]

_LOGGER = logging.getLogger(__name__)


# Match a prefix of apiVersion to ensure we have the right type of object.
RELEASE_SPEC_DOMAIN = "release-agent.io"
RELEASE_SPEC_KIND = "AgentRelease"

RELEASE_LABEL = "release-agent.io/release"
CHART_NAME_LABEL = "release-agent.io/chart-name"
CHART_VERSION_LABEL = "release-agent.io/chart-version"
TEST_LABEL = "release-agent.io/test"
COMMIT_ANNOTATION = "release-agent.io/commit"


@dataclass
class BaseManifest(DataClassDictMixin):
    """Base class for all serialized objects."""

    class Config(BaseConfig):
        omit_none = True
        serialize_by_alias = True


@dataclass(frozen=True, order=True)
class NamedResource:
    """Identifier for a kubernetes resource."""

    kind: str
    namespace: str | None
    name: str

    @property
    def namespaced_name(self) -> str:
        if self.namespace:
            return f"{self.namespace}/{self.name}"
        return self.name

    def __str__(self) -> str:
        """Return the kind and namespaced name concatenated as an id."""
        return f"{self.kind}/{self.namespaced_name}"


@dataclass
class ImagePullSecret(BaseManifest):
    """A reference to a docker registry secret."""

    name: str


@dataclass
class ReleaseSpec(BaseManifest):
    """A desired release, read from an AgentRelease custom resource."""

    kind: ClassVar[str] = RELEASE_SPEC_KIND

    name: str
    """The release name, equal to the custom resource name."""

    namespace: str
    """The namespace the release is installed into."""

    repo_url: str = field(metadata=field_options(alias="repoURL"), default="")
    """Url of the chart repository."""

    chart_name: str = field(metadata=field_options(alias="chartName"), default="")
    """Name of the chart in the repository."""

    chart_version: str = field(
        metadata=field_options(alias="chartVersion"), default=""
    )
    """Version of the chart."""

    values: str = ""
    """Raw values text, compared byte for byte with the release config."""

    image_pull_secrets: list[ImagePullSecret] = field(
        metadata=field_options(alias="imagePullSecrets"), default_factory=list
    )
    """Registry secrets spliced into every pod spec."""

    annotations: dict[str, str] = field(default_factory=dict)
    """Annotations of the custom resource."""

    @property
    def commit(self) -> str | None:
        """The commit of the desired state that produced this resource."""
        return self.annotations.get(COMMIT_ANNOTATION) or None

    @property
    def namespaced_name(self) -> str:
        return f"{self.namespace}/{self.name}"

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "ReleaseSpec":
        """Parse a ReleaseSpec from a custom resource object."""
        if not (api_version := doc.get("apiVersion")):
            raise InputException(f"Invalid object missing apiVersion: {doc}")
        if not api_version.startswith(RELEASE_SPEC_DOMAIN):
            raise InputException(
                f"Invalid object expected '{RELEASE_SPEC_DOMAIN}': {doc}"
            )
        if doc.get("kind") != cls.kind:
            raise InputException(f"Invalid object expected kind '{cls.kind}': {doc}")
        if not (metadata := doc.get("metadata")):
            raise InputException(f"Invalid {cls} missing metadata: {doc}")
        if not (name := metadata.get("name")):
            raise InputException(f"Invalid {cls} missing metadata.name: {doc}")
        if not (namespace := metadata.get("namespace")):
            raise InputException(f"Invalid {cls} missing metadata.namespace: {doc}")
        if not (spec := doc.get("spec")):
            raise InputException(f"Invalid {cls} missing spec: {doc}")
        if not (chart_name := spec.get("chartName")):
            raise InputException(f"Invalid {cls} missing spec.chartName: {doc}")
        return cls(
            name=name,
            namespace=namespace,
            repo_url=spec.get("repoURL", ""),
            chart_name=chart_name,
            chart_version=spec.get("chartVersion", ""),
            values=spec.get("values") or "",
            image_pull_secrets=[
                ImagePullSecret(name=ref["name"])
                for ref in spec.get("imagePullSecrets") or []
                if ref.get("name")
            ],
            annotations=dict(metadata.get("annotations") or {}),
        )


class ReleaseStatus(StrEnum):
    """Status code of a release revision."""

    UNKNOWN = "UNKNOWN"
    DEPLOYED = "DEPLOYED"
    DELETED = "DELETED"
    SUPERSEDED = "SUPERSEDED"
    FAILED = "FAILED"
    DELETING = "DELETING"
    PENDING_INSTALL = "PENDING_INSTALL"
    PENDING_UPGRADE = "PENDING_UPGRADE"
    PENDING_ROLLBACK = "PENDING_ROLLBACK"


class HookEvent(StrEnum):
    """Lifecycle phase a hook runs in, in phase order."""

    PRE_INSTALL = "pre-install"
    POST_INSTALL = "post-install"
    PRE_DELETE = "pre-delete"
    POST_DELETE = "post-delete"
    PRE_UPGRADE = "pre-upgrade"
    POST_UPGRADE = "post-upgrade"
    PRE_ROLLBACK = "pre-rollback"
    POST_ROLLBACK = "post-rollback"
    RELEASE_TEST_SUCCESS = "test-success"
    RELEASE_TEST_FAILURE = "test-failure"


@dataclass
class ReleaseHook(BaseManifest):
    """A manifest that runs at a lifecycle phase of a release."""

    name: str
    """Name of the hook object."""

    kind: str = ""
    """The first lifecycle phase the hook runs in."""

    manifest: str = ""
    """The rendered hook document."""

    weight: int = 0
    """Ordering within a phase, ascending."""

    events: list[str] = field(default_factory=list)
    """Every lifecycle phase the hook runs in."""

    release_name: str = field(metadata=field_options(alias="releaseName"), default="")
    """The release the hook belongs to."""


@dataclass
class ReleaseResource(BaseManifest):
    """A live cluster object belonging to a release."""

    group: str
    version: str
    kind: str
    name: str
    resource_version: str = field(
        metadata=field_options(alias="resourceVersion"), default=""
    )
    object: str = ""
    """The serialized live object."""

    pods: list[str] = field(default_factory=list)
    """Serialized pods selected by a workload object."""


@dataclass
class Release(BaseManifest):
    """A snapshot of a release revision."""

    name: str
    namespace: str
    revision: int
    status: ReleaseStatus
    chart_name: str = field(metadata=field_options(alias="chartName"))
    chart_version: str = field(metadata=field_options(alias="chartVersion"))
    config: str = ""
    """The raw values the revision was installed with."""

    manifest: str = ""
    hooks: list[ReleaseHook] = field(default_factory=list)
    resources: list[ReleaseResource] = field(default_factory=list)
    commit: str | None = None


@dataclass
class ReleaseHooks(BaseManifest):
    """The hooks rendered ahead of an install or upgrade."""

    release_name: str = field(metadata=field_options(alias="releaseName"))
    hooks: list[ReleaseHook] = field(default_factory=list)


@dataclass
class InstallReleaseRequest(BaseManifest):
    """Request to install a new release."""

    release_name: str = field(metadata=field_options(alias="releaseName"))
    chart_name: str = field(metadata=field_options(alias="chartName"))
    chart_version: str = field(metadata=field_options(alias="chartVersion"))
    namespace: str
    repo_url: str = field(metadata=field_options(alias="repoURL"), default="")
    values: str = ""
    commit: str | None = None
    image_pull_secrets: list[ImagePullSecret] = field(
        metadata=field_options(alias="imagePullSecrets"), default_factory=list
    )

    @classmethod
    def from_spec(cls, spec: ReleaseSpec) -> "InstallReleaseRequest":
        """Build the request that installs the desired release."""
        return cls(
            release_name=spec.name,
            chart_name=spec.chart_name,
            chart_version=spec.chart_version,
            namespace=spec.namespace,
            repo_url=spec.repo_url,
            values=spec.values,
            commit=spec.commit,
            image_pull_secrets=list(spec.image_pull_secrets),
        )


@dataclass
class UpgradeReleaseRequest(InstallReleaseRequest):
    """Request to upgrade a release, installing it when absent."""

    def to_install(self) -> InstallReleaseRequest:
        """Return the equivalent install request."""
        return InstallReleaseRequest.from_dict(self.to_dict())


@dataclass
class TestReleaseRequest(InstallReleaseRequest):
    """Request to install a release into the test namespace."""

    __test__ = False

    label: str = ""
    """Value of the test label stamped on every object."""


@dataclass
class TestReleaseResponse(BaseManifest):
    """Acknowledgement of a test release."""

    __test__ = False

    release_name: str = field(metadata=field_options(alias="releaseName"))


@dataclass
class RollbackReleaseRequest(BaseManifest):
    """Request to roll a release back to an earlier revision."""

    release_name: str = field(metadata=field_options(alias="releaseName"))
    version: int


@dataclass
class DeleteReleaseRequest(BaseManifest):
    """Request to purge every revision of a release."""

    release_name: str = field(metadata=field_options(alias="releaseName"))
    namespace: str | None = None


@dataclass
class StartReleaseRequest(BaseManifest):
    """Request to scale the workloads of a release back up."""

    release_name: str = field(metadata=field_options(alias="releaseName"))
    namespace: str


@dataclass
class StopReleaseRequest(BaseManifest):
    """Request to scale the workloads of a release down."""

    release_name: str = field(metadata=field_options(alias="releaseName"))
    namespace: str


@dataclass
class StartReleaseResponse(BaseManifest):
    release_name: str = field(metadata=field_options(alias="releaseName"))


@dataclass
class StopReleaseResponse(BaseManifest):
    release_name: str = field(metadata=field_options(alias="releaseName"))


@dataclass
class GetReleaseContentRequest(BaseManifest):
    """Request to inspect a release, the latest revision when version is 0."""

    release_name: str = field(metadata=field_options(alias="releaseName"))
    version: int = 0


@dataclass
class OldEnv(BaseManifest):
    """An environment served by a legacy agent deployment."""

    env_id: int = field(metadata=field_options(alias="envId"))
    namespace: str


@dataclass
class UpgradeInfo(BaseManifest):
    """Legacy agent deployments found during an agent upgrade."""

    envs: list[OldEnv] = field(default_factory=list)


@dataclass
class CertManagerInfo(BaseManifest):
    """The certificate manager release installed in the cluster."""

    release_name: str = field(metadata=field_options(alias="releaseName"))
    namespace: str
    version: str
