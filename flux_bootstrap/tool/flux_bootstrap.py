"""Command line tool for bootstrapping Flux into a git repository and a cluster."""

import argparse
import asyncio
import logging
import sys
import traceback

from flux_bootstrap.exceptions import FluxBootstrapException
from . import lifecycle, render

_LOGGER = logging.getLogger(__name__)


def _make_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Command line utility for bootstrapping Flux.",
    )
    parser.add_argument(
        "--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
    )

    subparsers = parser.add_subparsers(dest="command", help="Command", required=True)

    render.RenderAction.register(subparsers)
    lifecycle.CreateAction.register(subparsers)
    lifecycle.RefreshAction.register(subparsers)
    lifecycle.UpdateAction.register(subparsers)
    lifecycle.DeleteAction.register(subparsers)
    lifecycle.ImportAction.register(subparsers)
    return parser


def main(argv: list[str] | None = None) -> None:
    """Flux-bootstrap command line tool main entry point."""
    parser = _make_parser()
    args = parser.parse_args(argv)

    if args.log_level:
        logging.basicConfig(level=args.log_level)

    action = args.cls()
    try:
        asyncio.run(action.run(**vars(args)))
    except FluxBootstrapException as err:
        if args.log_level == "DEBUG":
            traceback.print_exc(file=sys.stderr)
        print("flux-bootstrap error: ", err, file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
