"""Flags and file handling shared by the flux-bootstrap actions."""

from argparse import ArgumentParser
import logging
import pathlib
import sys
from typing import Any

import aiofiles

from flux_bootstrap.bootstrap import BootstrapState, Diagnostic
from flux_bootstrap.config import Configuration
from flux_bootstrap.exceptions import ConfigurationException, FluxBootstrapException
from flux_bootstrap.service import BootstrapService, ConfigureRequest, Response

_LOGGER = logging.getLogger(__name__)


def add_config_flag(args: ArgumentParser) -> None:
    """Add the flag for the configuration file."""
    args.add_argument(
        "--config",
        type=pathlib.Path,
        required=True,
        help="YAML file with the bootstrap configuration",
    )


def add_state_flag(args: ArgumentParser) -> None:
    """Add the flag for the state file."""
    args.add_argument(
        "--state",
        type=pathlib.Path,
        default=pathlib.Path("flux-bootstrap.state.yaml"),
        help="YAML file that the bootstrap state is read from and written to",
    )


def add_cluster_flags(args: ArgumentParser) -> None:
    """Add flags for connecting to the cluster."""
    args.add_argument(
        "--kubeconfig",
        type=str,
        default=None,
        help="Path to the kubeconfig file, the default loading rules otherwise",
    )
    args.add_argument(
        "--context",
        type=str,
        default=None,
        help="Name of the kubeconfig context to use",
    )
    args.add_argument(
        "--flux-bin",
        type=str,
        default="flux",
        help="Path to the flux command line used to render the install manifest",
    )
    args.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Seconds the operation may take, overriding the configured timeout",
    )


async def read_config(path: pathlib.Path) -> Configuration:
    """Read a configuration file."""
    try:
        async with aiofiles.open(str(path)) as config_file:
            content = await config_file.read()
    except OSError as err:
        raise ConfigurationException(f"Unable to read {path}: {err}") from err
    return Configuration.parse_yaml(content)


async def read_state(path: pathlib.Path) -> BootstrapState:
    """Read a state file."""
    try:
        async with aiofiles.open(str(path)) as state_file:
            content = await state_file.read()
    except OSError as err:
        raise FluxBootstrapException(f"Unable to read state {path}: {err}") from err
    return BootstrapState.parse_yaml(content)


async def write_state(path: pathlib.Path, state: BootstrapState | None) -> None:
    """Write the state file, or remove it when there is no state."""
    if state is None:
        path.unlink(missing_ok=True)
        return
    async with aiofiles.open(str(path), mode="w") as state_file:
        await state_file.write(state.yaml())


def configure(**kwargs: Any) -> BootstrapService:
    """Create a service connected to the cluster from the command line flags."""
    service = BootstrapService()
    response = service.configure(
        ConfigureRequest(
            kubeconfig=kwargs.get("kubeconfig"),
            context=kwargs.get("context"),
            flux_bin=kwargs.get("flux_bin") or "flux",
        )
    )
    report(response)
    return service


def print_diagnostics(diagnostics: list[Diagnostic]) -> None:
    for diagnostic in diagnostics:
        print(str(diagnostic), file=sys.stderr)


def report(response: Response) -> None:
    """Print the diagnostics, raising if any of them is an error."""
    print_diagnostics(response.diagnostics)
    if response.has_errors:
        raise FluxBootstrapException("operation failed")
