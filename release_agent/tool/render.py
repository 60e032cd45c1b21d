"""Release agent render action."""

from argparse import ArgumentParser, _SubParsersAction as SubParsersAction
import logging
import pathlib
from typing import cast

import aiofiles

from release_agent.chart import load_chart
from release_agent.config import HelmConfig
from release_agent.kube import Capabilities, label_manifest, release_labels
from release_agent.manifest import ImagePullSecret
from release_agent.render import (
    HelmTemplateEngine,
    RenderOptions,
    Renderer,
    render_release_templates,
)

_LOGGER = logging.getLogger(__name__)


class RenderAction:
    """Release agent render action."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "render",
                help="Render, label and restore a local chart",
                description="""Render a chart directory the way the agent does
                    before installing a release: templating expressions in values
                    are preserved and every object is labeled with the release.""",
            ),
        )
        args.add_argument(
            "--chart", type=pathlib.Path, required=True, help="Path to the chart"
        )
        args.add_argument(
            "--values", type=pathlib.Path, help="Path to a values file for the release"
        )
        args.add_argument("--release", required=True, help="Name of the release")
        args.add_argument("--namespace", required=True, help="Release namespace")
        args.add_argument("--kube-version", help="Kubernetes version to render for")
        args.add_argument(
            "--api-versions",
            type=lambda value: [v.strip() for v in value.split(",") if v.strip()],
            default=[],
            help="Comma separated api versions offered by the cluster",
        )
        args.add_argument(
            "--image-pull-secret",
            action="append",
            default=[],
            help="Image pull secret added to every pod spec",
        )
        args.add_argument("--helm-bin", default="helm", help="Path to the helm binary")
        args.add_argument(
            "--output-file",
            type=str,
            default="/dev/stdout",
            help="Output file for the results of the command",
        )
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        chart: pathlib.Path,
        values: pathlib.Path | None,
        release: str,
        namespace: str,
        kube_version: str | None,
        api_versions: list[str],
        image_pull_secret: list[str],
        helm_bin: str,
        output_file: str,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        loaded = await load_chart(chart)
        values_text = ""
        if values:
            async with aiofiles.open(values, mode="r") as f:
                values_text = await f.read()
        labels = release_labels(release, loaded.name, loaded.metadata.version)
        secrets = [ImagePullSecret(name=name) for name in image_pull_secret]

        async def labeler(manifest: str) -> str:
            return label_manifest(manifest, labels, secrets)

        rendered = await render_release_templates(
            Renderer(HelmTemplateEngine(HelmConfig(helm_bin=helm_bin))),
            loaded,
            values_text,
            RenderOptions(release_name=release, namespace=namespace),
            Capabilities(kube_version=kube_version, api_versions=frozenset(api_versions)),
            labeler,
        )
        _LOGGER.debug("Rendered %d templates", len(rendered.templates))
        with open(output_file, "w") as file:
            for template in rendered.templates:
                print(f"# Source: {template.name}", file=file)
                print(template.data, file=file)
