"""Tests for the release-agent command line tool."""

from pathlib import Path

import pytest
import yaml

from release_agent import command
from release_agent.tool.release_agent import _make_parser, main

CHART_YAML = "apiVersion: v2\nname: web\nversion: 1.0.0\n"

VALUES = """config: |
  server={{ .Cluster.Host }}
"""

CONFIG_MAP_TEMPLATE = """apiVersion: v1
kind: ConfigMap
metadata:
  name: {{ .Release.Name }}-config
data:
  app.conf: |
{{ .Values.config | indent 4 }}
"""


@pytest.fixture(name="chart_dir")
def mock_chart_dir(tmp_path: Path) -> Path:
    chart_dir = tmp_path / "web"
    (chart_dir / "templates").mkdir(parents=True)
    (chart_dir / "Chart.yaml").write_text(CHART_YAML)
    (chart_dir / "values.yaml").write_text(VALUES)
    (chart_dir / "templates" / "configmap.yaml").write_text(CONFIG_MAP_TEMPLATE)
    return chart_dir


@pytest.fixture(autouse=True)
def mock_helm(monkeypatch: pytest.MonkeyPatch) -> list[list[str]]:
    """Stand in for `helm template`, rendering the ConfigMap template."""
    calls: list[list[str]] = []

    async def fake_run(cmd: command.Command, stdin: str | None = None) -> str:
        calls.append(cmd.cmd)
        values_file = Path(cmd.cmd[cmd.cmd.index("--values") + 1])
        values = yaml.safe_load(values_file.read_text())
        return (
            "---\n# Source: web/templates/configmap.yaml\n"
            "apiVersion: v1\nkind: ConfigMap\nmetadata:\n"
            f"  name: {cmd.cmd[2]}-config\n"
            f"data:\n  app.conf: |\n    {values['config']}\n"
        )

    monkeypatch.setattr(command, "run", fake_run)
    return calls


def test_parser() -> None:
    """Test parsing the render command."""
    args = _make_parser().parse_args(
        [
            "render",
            "--chart",
            "charts/web",
            "--release",
            "app",
            "--namespace",
            "proj",
            "--api-versions",
            "v1, apps/v1",
            "--image-pull-secret",
            "registry",
            "--image-pull-secret",
            "mirror",
        ]
    )
    assert args.chart == Path("charts/web")
    assert args.values is None
    assert args.api_versions == ["v1", "apps/v1"]
    assert args.image_pull_secret == ["registry", "mirror"]
    assert args.helm_bin == "helm"


def test_render(chart_dir: Path, tmp_path: Path, mock_helm: list[list[str]]) -> None:
    """Test rendering a chart with its templating expressions preserved."""
    output = tmp_path / "out.yaml"
    main(
        [
            "render",
            "--chart",
            str(chart_dir),
            "--release",
            "app",
            "--namespace",
            "proj",
            "--image-pull-secret",
            "registry",
            "--output-file",
            str(output),
        ]
    )
    result = output.read_text()
    assert result.startswith("# Source: templates/app.yaml\n")
    assert "  app.conf: |\n{{ .Values.config | indent 4 }}\n" in result
    assert "release-agent.io/release: app" in result
    assert "release-agent.io/chart-version: 1.0.0" in result
    assert mock_helm[0][:3] == ["helm", "template", "app"]


def test_render_values_file(
    chart_dir: Path, tmp_path: Path, mock_helm: list[list[str]]
) -> None:
    """Test that a values file is merged over the chart defaults."""
    values = tmp_path / "values.yaml"
    values.write_text("config: plain\n")
    output = tmp_path / "out.yaml"
    main(
        [
            "render",
            "--chart",
            str(chart_dir),
            "--values",
            str(values),
            "--release",
            "app",
            "--namespace",
            "proj",
            "--output-file",
            str(output),
        ]
    )
    assert "app.conf: |\n    plain\n" in output.read_text()


def test_render_error(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    """Test that agent errors exit with a message."""
    with pytest.raises(SystemExit) as exc_info:
        main(
            [
                "render",
                "--chart",
                str(tmp_path / "missing"),
                "--release",
                "app",
                "--namespace",
                "proj",
            ]
        )
    assert exc_info.value.code == 1
    assert "release-agent error:" in capsys.readouterr().err
