"""Command line tool for the release agent."""

import argparse
import asyncio
import logging
import sys
import traceback

from release_agent.exceptions import AgentException
from . import render

_LOGGER = logging.getLogger(__name__)


def _make_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Command line utility for the release agent.",
    )
    parser.add_argument(
        "--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
    )

    subparsers = parser.add_subparsers(dest="command", help="Command", required=True)

    render.RenderAction.register(subparsers)
    return parser


def main(argv: list[str] | None = None) -> None:
    """Release agent command line tool main entry point."""
    parser = _make_parser()
    args = parser.parse_args(argv)

    if args.log_level:
        logging.basicConfig(level=args.log_level)

    action = args.cls()
    try:
        asyncio.run(action.run(**vars(args)))
    except AgentException as err:
        if args.log_level == "DEBUG":
            traceback.print_exc(file=sys.stderr)
        print("release-agent error: ", err, file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
