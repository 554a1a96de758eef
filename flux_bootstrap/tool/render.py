"""Flux-bootstrap render action."""

from argparse import ArgumentParser, _SubParsersAction as SubParsersAction
import logging
import pathlib
from typing import cast

import aiofiles

from flux_bootstrap.manifestgen import FluxCliGenerator, build_file_set

from .common import add_config_flag, read_config

_LOGGER = logging.getLogger(__name__)


class RenderAction:
    """Flux-bootstrap render action."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "render",
                help="Render the repository manifests without changing anything",
                description="""Print the files that would be committed to the
                    repository for a configuration.""",
            ),
        )
        add_config_flag(args)
        args.add_argument(
            "--output-dir",
            type=pathlib.Path,
            default=None,
            help="Write the files below this directory instead of printing them",
        )
        args.add_argument(
            "--flux-bin",
            type=str,
            default="flux",
            help="Path to the flux command line used to render the install manifest",
        )
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        config: pathlib.Path,
        output_dir: pathlib.Path | None,
        flux_bin: str,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        configuration = await read_config(config)
        files = await build_file_set(configuration, FluxCliGenerator(flux_bin))
        for path, content in sorted(files.items()):
            if output_dir is None:
                print(f"# {path}")
                print(content, end="" if content.endswith("\n") else "\n")
                continue
            target = output_dir / path
            target.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(str(target), mode="w") as output_file:
                await output_file.write(content)
            _LOGGER.info("Wrote %s", target)
