"""Test fixtures shared by the release agent tests.

The fakes implement the template engine, cluster and chart source interfaces
so that no helm binary or cluster is needed. `FakeTemplateEngine` understands
a small subset of the template language: `.Values` lookups, `.Release.Name`,
`.Release.Namespace`, `.Release.Revision` and the `indent N` and `quote` pipes.
"""

import re
from typing import Any

import pytest

from release_agent.chart import Chart, ChartFile, ChartMetadata, ChartSource
from release_agent.config import AgentConfig, ChannelConfig
from release_agent.exceptions import ChartException
from release_agent.kube import Capabilities, LabelingKubeClient, ResourceInfo
from release_agent.manifest import ImagePullSecret
from release_agent.channel import PacketChannel
from release_agent.releases import InMemoryReleaseStore, ReleaseEngine
from release_agent.render import RenderOptions, Renderer, TemplateEngine

EXPRESSION = re.compile(r"\{\{-?\s*(.+?)\s*-?\}\}")

CONFIG_MAP_TEMPLATE = """apiVersion: v1
kind: ConfigMap
metadata:
  name: {{ .Release.Name }}-config
data:
  app.conf: |
{{ .Values.config | indent 4 }}
"""

DEPLOYMENT_TEMPLATE = """apiVersion: apps/v1
kind: Deployment
metadata:
  name: {{ .Release.Name }}
spec:
  replicas: {{ .Values.replicas }}
  selector:
    matchLabels:
      app: {{ .Release.Name }}
  template:
    metadata:
      labels:
        app: {{ .Release.Name }}
    spec:
      containers:
      - name: web
        image: nginx
"""

SERVICE_TEMPLATE = """apiVersion: v1
kind: Service
metadata:
  name: {{ .Release.Name }}
spec:
  ports:
  - port: 80
"""

HOOK_TEMPLATE = """apiVersion: batch/v1
kind: Job
metadata:
  name: {{ .Release.Name }}-migrate
  annotations:
    helm.sh/hook: pre-install,pre-upgrade
    helm.sh/hook-weight: "5"
spec:
  template:
    spec:
      restartPolicy: Never
      containers:
      - name: migrate
        image: migrate
"""

CHART_VALUES = """replicas: 1
config: |
  server={{ .Cluster.Host }}
"""


class FakeTemplateEngine(TemplateEngine):
    """Renders chart templates with a minimal expression evaluator."""

    def __init__(self) -> None:
        self.calls: list[tuple[RenderOptions, dict[str, Any]]] = []

    async def render(
        self,
        chart: Chart,
        values: dict[str, Any],
        options: RenderOptions,
        capabilities: Capabilities,
    ) -> dict[str, str]:
        self.calls.append((options, values))
        files: dict[str, str] = {}
        self._render_chart(chart, values, options, chart.name, files)
        return files

    def _render_chart(
        self,
        chart: Chart,
        values: dict[str, Any],
        options: RenderOptions,
        prefix: str,
        files: dict[str, str],
    ) -> None:
        for template in chart.templates:
            basename = template.name.rsplit("/", 1)[-1]
            if basename.startswith("_"):
                continue
            files[f"{prefix}/{template.name}"] = EXPRESSION.sub(
                lambda match: self._evaluate(match.group(1), values, options),
                template.data,
            )
        for dependency in chart.dependencies:
            self._render_chart(
                dependency,
                values.get(dependency.name) or {},
                options,
                f"{prefix}/charts/{dependency.name}",
                files,
            )

    def _evaluate(
        self, expression: str, values: dict[str, Any], options: RenderOptions
    ) -> str:
        path, *pipes = [part.strip() for part in expression.split("|")]
        if path == ".Release.Name":
            result = options.release_name
        elif path == ".Release.Namespace":
            result = options.namespace
        elif path == ".Release.Revision":
            result = str(options.revision)
        elif path.startswith(".Values."):
            value: Any = values
            for key in path.removeprefix(".Values.").split("."):
                value = value.get(key) if isinstance(value, dict) else None
            result = "" if value is None else str(value)
        else:
            raise ValueError(f"Unsupported expression {expression}")
        for pipe in pipes:
            name, *args = pipe.split()
            if name == "indent":
                pad = " " * int(args[0])
                result = "\n".join(pad + line for line in result.rstrip("\n").split("\n"))
            elif name == "quote":
                result = f'"{result}"'
        return result


class FakeKubeClient(LabelingKubeClient):
    """Cluster fake recording calls and returning canned resources."""

    def __init__(self) -> None:
        self.resources: dict[str, list[ResourceInfo]] = {}
        self.pods: dict[str, list[dict[str, Any]]] = {}
        self.namespaces: set[str] = set()
        self.started: list[tuple[str, str]] = []
        self.stopped: list[tuple[str, str]] = []
        self.labeled: list[str] = []
        self.capabilities_result = Capabilities()

    async def label_objects(
        self,
        namespace: str,
        image_pull_secrets: list[ImagePullSecret],
        manifest: str,
        release_name: str,
        chart_name: str,
        chart_version: str,
    ) -> str:
        self.labeled.append(manifest)
        return await super().label_objects(
            namespace,
            image_pull_secrets,
            manifest,
            release_name,
            chart_name,
            chart_version,
        )

    async def build_unstructured(
        self, namespace: str, manifest: str
    ) -> list[ResourceInfo]:
        return list(self.resources.get(namespace, []))

    async def get_select_relation_pod(
        self, info: ResourceInfo, pods: dict[str, list[dict[str, Any]]]
    ) -> dict[str, list[dict[str, Any]]]:
        key = f"{info.kind}/{info.name}"
        if key in self.pods:
            pods.setdefault(key, []).extend(self.pods[key])
        return pods

    async def stop_resources(self, namespace: str, manifest: str) -> None:
        self.stopped.append((namespace, manifest))

    async def start_resources(self, namespace: str, manifest: str) -> None:
        self.started.append((namespace, manifest))

    async def capabilities(self) -> Capabilities:
        return self.capabilities_result

    async def namespace_exists(self, namespace: str) -> bool:
        return namespace in self.namespaces


class FakeChartSource(ChartSource):
    """Chart source serving charts registered by name and version."""

    def __init__(self) -> None:
        self.charts: dict[tuple[str, str], Chart] = {}

    def add(self, chart: Chart) -> None:
        self.charts[(chart.metadata.name, chart.metadata.version)] = chart

    async def get_chart(self, repo_url: str, name: str, version: str) -> Chart:
        if (chart := self.charts.get((name, version))) is None:
            raise ChartException(f"load chart: {name}-{version} not found in {repo_url}")
        return chart


def make_chart(
    name: str = "web",
    version: str = "1.0.0",
    values: str = CHART_VALUES,
    hooks: bool = True,
) -> Chart:
    templates = [
        ChartFile(name="templates/deployment.yaml", data=DEPLOYMENT_TEMPLATE),
        ChartFile(name="templates/configmap.yaml", data=CONFIG_MAP_TEMPLATE),
        ChartFile(name="templates/service.yaml", data=SERVICE_TEMPLATE),
        ChartFile(name="templates/NOTES.txt", data="Installed {{ .Release.Name }}\n"),
        ChartFile(name="templates/_helpers.tpl", data="{{/* helpers */}}\n"),
    ]
    if hooks:
        templates.append(ChartFile(name="templates/job.yaml", data=HOOK_TEMPLATE))
    return Chart(
        metadata=ChartMetadata(name=name, version=version),
        values=values,
        templates=templates,
    )


@pytest.fixture(name="template_engine")
def mock_template_engine() -> FakeTemplateEngine:
    return FakeTemplateEngine()


@pytest.fixture(name="kube")
def mock_kube() -> FakeKubeClient:
    return FakeKubeClient()


@pytest.fixture(name="charts")
def mock_charts() -> FakeChartSource:
    source = FakeChartSource()
    source.add(make_chart())
    source.add(make_chart(version="2.0.0"))
    return source


@pytest.fixture(name="release_store")
def mock_release_store() -> InMemoryReleaseStore:
    return InMemoryReleaseStore()


@pytest.fixture(name="agent_config")
def mock_agent_config() -> AgentConfig:
    return AgentConfig(timeout=5.0)


@pytest.fixture(name="engine")
def mock_engine(
    agent_config: AgentConfig,
    release_store: InMemoryReleaseStore,
    kube: FakeKubeClient,
    charts: FakeChartSource,
    template_engine: FakeTemplateEngine,
) -> ReleaseEngine:
    return ReleaseEngine(
        agent_config, release_store, kube, charts, Renderer(template_engine)
    )


@pytest.fixture(name="channel")
def mock_channel() -> PacketChannel:
    return PacketChannel(ChannelConfig(command_queue_size=10, response_queue_size=10))


@pytest.fixture(name="chart_factory")
def mock_chart_factory() -> Any:
    return make_chart
