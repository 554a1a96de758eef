"""Flux-bootstrap lifecycle actions: create, refresh, update, delete and import."""

from argparse import ArgumentParser, _SubParsersAction as SubParsersAction
import logging
import pathlib
from typing import cast

from flux_bootstrap.service import (
    CreateRequest,
    DeleteRequest,
    ImportRequest,
    ReadRequest,
    UpdateRequest,
)

from .common import (
    add_cluster_flags,
    add_config_flag,
    add_state_flag,
    configure,
    read_config,
    read_state,
    report,
    write_state,
)

_LOGGER = logging.getLogger(__name__)


def _add_parser(
    subparsers: SubParsersAction, name: str, summary: str  # type: ignore[type-arg]
) -> ArgumentParser:
    args = cast(
        ArgumentParser, subparsers.add_parser(name, help=summary, description=summary)
    )
    add_state_flag(args)
    add_cluster_flags(args)
    return args


class CreateAction:
    """Flux-bootstrap create action."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = _add_parser(
            subparsers, "create", "Commit the Flux manifests and install Flux"
        )
        add_config_flag(args)
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        config: pathlib.Path,
        state: pathlib.Path,
        **kwargs,
    ) -> None:
        """Async Action implementation."""
        service = configure(**kwargs)
        response = await service.create(
            CreateRequest(await read_config(config), kwargs.get("timeout"))
        )
        report(response)
        await write_state(state, response.state)


class RefreshAction:
    """Flux-bootstrap refresh action."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = _add_parser(
            subparsers,
            "refresh",
            "Read the repository files and the health of Flux into the state",
        )
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        state: pathlib.Path,
        **kwargs,
    ) -> None:
        """Async Action implementation."""
        service = configure(**kwargs)
        response = await service.read(
            ReadRequest(await read_state(state), kwargs.get("timeout"))
        )
        report(response)
        await write_state(state, response.state)


class UpdateAction:
    """Flux-bootstrap update action."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = _add_parser(
            subparsers,
            "update",
            "Converge the repository and the cluster to a new configuration",
        )
        add_config_flag(args)
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        config: pathlib.Path,
        state: pathlib.Path,
        **kwargs,
    ) -> None:
        """Async Action implementation."""
        service = configure(**kwargs)
        response = await service.update(
            UpdateRequest(
                await read_state(state),
                await read_config(config),
                kwargs.get("timeout"),
            )
        )
        report(response)
        await write_state(state, response.state)


class DeleteAction:
    """Flux-bootstrap delete action."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = _add_parser(
            subparsers, "delete", "Uninstall Flux and remove its manifests"
        )
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        state: pathlib.Path,
        **kwargs,
    ) -> None:
        """Async Action implementation."""
        service = configure(**kwargs)
        response = await service.delete(
            DeleteRequest(await read_state(state), kwargs.get("timeout"))
        )
        await write_state(state, None)
        report(response)


class ImportAction:
    """Flux-bootstrap import action."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = _add_parser(
            subparsers, "import", "Create the state of an existing installation"
        )
        args.add_argument(
            "--namespace",
            type=str,
            default="flux-system",
            help="Namespace that Flux is installed in",
        )
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        namespace: str,
        state: pathlib.Path,
        **kwargs,
    ) -> None:
        """Async Action implementation."""
        service = configure(**kwargs)
        response = await service.import_state(
            ImportRequest(namespace, kwargs.get("timeout"))
        )
        report(response)
        await write_state(state, response.state)
