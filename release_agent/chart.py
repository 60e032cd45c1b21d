"""Library for fetching and loading packaged charts.

A `Chart` is loaded from an unpacked chart directory:

```python
from release_agent.chart import load_chart

chart = await load_chart(Path("/tmp/charts/web"))
print(chart.metadata.name, chart.metadata.version)
```

Charts are fetched from a chart repository with `helm pull`, which is wrapped
by `HelmChartSource`:

```python
source = HelmChartSource(HelmConfig(cache_dir=Path("/var/cache/charts")))
chart = await source.get_chart("https://charts.example.com", "web", "1.0.0")
```
"""

from abc import ABC, abstractmethod
import asyncio
from dataclasses import dataclass, field, replace
import logging
from pathlib import Path
import tempfile

import aiofiles
from aiofiles.ospath import exists, isdir
import aiofiles.os
import yaml

from . import command
from .config import HelmConfig
from .exceptions import ChartException, HelmException

__all__ = [
    "Chart",
    "ChartMetadata",
    "ChartFile",
    "ChartSource",
    "HelmChartSource",
    "load_chart",
]

_LOGGER = logging.getLogger(__name__)

CHART_FILE = "Chart.yaml"
VALUES_FILE = "values.yaml"
TEMPLATES_DIR = "templates"
CHARTS_DIR = "charts"
CONFIG_MAP_KIND = "ConfigMap"
DOCUMENT_SEPARATOR = "---\n"


@dataclass(frozen=True)
class ChartMetadata:
    """Contents of Chart.yaml that the agent relies on."""

    name: str
    version: str
    api_version: str = "v2"
    app_version: str | None = None
    description: str | None = None

    def to_yaml(self) -> str:
        doc = {
            "apiVersion": self.api_version,
            "name": self.name,
            "version": self.version,
        }
        if self.app_version:
            doc["appVersion"] = self.app_version
        if self.description:
            doc["description"] = self.description
        return yaml.dump(doc, sort_keys=False)


@dataclass(frozen=True)
class ChartFile:
    """A file of the chart, named relative to the chart root."""

    name: str
    data: str


@dataclass(frozen=True, kw_only=True)
class Chart:
    """A chart with its templates, default values and dependencies."""

    metadata: ChartMetadata

    values: str = ""
    """Raw default values text."""

    templates: list[ChartFile] = field(default_factory=list)

    files: list[ChartFile] = field(default_factory=list)
    """Other files, such as the NOTES or helper files."""

    dependencies: list["Chart"] = field(default_factory=list)

    @property
    def name(self) -> str:
        return self.metadata.name

    def config_map_sources(self) -> list[str]:
        """Return every ConfigMap template document, dependencies included."""
        results: list[str] = []
        for template in self.templates:
            if CONFIG_MAP_KIND not in template.data:
                continue
            if DOCUMENT_SEPARATOR not in template.data:
                results.append(template.data)
                continue
            results.extend(
                doc
                for doc in template.data.split(DOCUMENT_SEPARATOR)
                if CONFIG_MAP_KIND in doc
            )
        for dependency in self.dependencies:
            results.extend(dependency.config_map_sources())
        return results

    def with_templates(self, templates: list[ChartFile], values: str) -> "Chart":
        """Return a copy holding only the given templates and no dependencies."""
        return replace(self, templates=templates, values=values, dependencies=[])

    def with_values(self, values: str) -> "Chart":
        return replace(self, values=values)

    async def write(self, path: Path) -> None:
        """Write the chart to an unpacked chart directory."""
        await aiofiles.os.makedirs(path, exist_ok=True)
        await _write_file(path / CHART_FILE, self.metadata.to_yaml())
        await _write_file(path / VALUES_FILE, self.values)
        for chart_file in [*self.templates, *self.files]:
            await _write_file(path / chart_file.name, chart_file.data)
        for dependency in self.dependencies:
            await dependency.write(path / CHARTS_DIR / dependency.name)


async def _write_file(path: Path, content: str) -> None:
    await aiofiles.os.makedirs(path.parent, exist_ok=True)
    async with aiofiles.open(path, mode="w") as out:
        await out.write(content)


async def _read_file(path: Path) -> str:
    async with aiofiles.open(path, mode="r") as f:
        return await f.read()


async def _walk(path: Path) -> list[Path]:
    """Return all files below the directory in a stable order."""
    results: list[Path] = []
    for entry in sorted(await aiofiles.os.listdir(path)):
        child = path / entry
        if await isdir(child):
            results.extend(await _walk(child))
        else:
            results.append(child)
    return results


async def load_chart(path: Path) -> Chart:
    """Load an unpacked chart directory."""
    chart_yaml = path / CHART_FILE
    if not await exists(chart_yaml):
        raise ChartException(f"Chart directory {path} is missing {CHART_FILE}")
    try:
        doc = yaml.load(await _read_file(chart_yaml), Loader=yaml.SafeLoader)
    except yaml.YAMLError as err:
        raise ChartException(f"Invalid {chart_yaml}: {err}") from err
    if not isinstance(doc, dict) or not doc.get("name") or not doc.get("version"):
        raise ChartException(f"Invalid {chart_yaml}: missing name or version")
    metadata = ChartMetadata(
        name=doc["name"],
        version=str(doc["version"]),
        api_version=doc.get("apiVersion", "v2"),
        app_version=doc.get("appVersion"),
        description=doc.get("description"),
    )

    values = ""
    if await exists(path / VALUES_FILE):
        values = await _read_file(path / VALUES_FILE)

    templates: list[ChartFile] = []
    if await isdir(path / TEMPLATES_DIR):
        for file_path in await _walk(path / TEMPLATES_DIR):
            templates.append(
                ChartFile(
                    name=str(file_path.relative_to(path)),
                    data=await _read_file(file_path),
                )
            )

    dependencies: list[Chart] = []
    if await isdir(path / CHARTS_DIR):
        for entry in sorted(await aiofiles.os.listdir(path / CHARTS_DIR)):
            if await isdir(path / CHARTS_DIR / entry):
                dependencies.append(await load_chart(path / CHARTS_DIR / entry))
            else:
                _LOGGER.debug("Skipping packaged dependency %s of %s", entry, path)

    return Chart(
        metadata=metadata,
        values=values,
        templates=templates,
        dependencies=dependencies,
    )


class ChartSource(ABC):
    """Fetches charts from a chart repository."""

    @abstractmethod
    async def get_chart(self, repo_url: str, name: str, version: str) -> Chart:
        """Fetch and load the chart, raising ChartException on failure."""


class HelmChartSource(ChartSource):
    """Fetches charts with `helm pull` into a local cache directory."""

    def __init__(self, config: HelmConfig) -> None:
        """Initialize HelmChartSource."""
        self._config = config
        self._locks: dict[Path, asyncio.Lock] = {}

    def _cache_dir(self) -> Path:
        if self._config.cache_dir:
            return self._config.cache_dir
        return Path(tempfile.gettempdir()) / "release-agent" / "charts"

    async def get_chart(self, repo_url: str, name: str, version: str) -> Chart:
        """Fetch and load the chart, pulling it when it is not cached."""
        chart_dir = self._cache_dir() / _cache_name(repo_url) / name / version
        lock = self._locks.setdefault(chart_dir, asyncio.Lock())
        async with lock:
            if not await exists(chart_dir / name / CHART_FILE):
                await aiofiles.os.makedirs(chart_dir, exist_ok=True)
                args = [
                    self._config.helm_bin,
                    "pull",
                    name,
                    "--repo",
                    repo_url,
                    "--untar",
                    "--untardir",
                    str(chart_dir),
                ]
                if version:
                    args.extend(["--version", version])
                try:
                    await command.run(command.Command(args, exc=HelmException))
                except HelmException as err:
                    raise ChartException(f"load chart: {err}") from err
        return await load_chart(chart_dir / name)


def _cache_name(repo_url: str) -> str:
    """Return a directory name for a repository url."""
    return "".join(c if c.isalnum() or c in "-." else "_" for c in repo_url)
