"""Generation of the manifests committed to the repository.

The expected file set always holds three files rooted at
`<path>/<namespace>/`:

- `gotk-components.yaml` with the toolkit controllers and CRDs
- `gotk-sync.yaml` with the GitRepository and Kustomization
- `kustomization.yaml` listing the two above, or a user supplied override

The same configuration always produces byte-identical files.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
import logging

import yaml

from .command import Command, run
from .config import Configuration, InstallOptions, SyncOptions, render_config
from .context import trace_context
from .exceptions import CommandException, RenderException
from .manifest import (
    GitRepository,
    Kustomization,
    KUSTOMIZE_API_VERSION,
    KUSTOMIZE_KIND,
    SYNC_HEADER,
    dump_documents,
)

__all__ = [
    "ManifestPaths",
    "InstallGenerator",
    "FluxCliGenerator",
    "render_sync_manifest",
    "render_kustomization",
    "build_file_set",
    "placeholder_file_set",
]

_LOGGER = logging.getLogger(__name__)

COMPONENTS_FILE = "gotk-components.yaml"
SYNC_FILE = "gotk-sync.yaml"
KUSTOMIZATION_FILE = "kustomization.yaml"

FileSet = dict[str, str]


@dataclass(frozen=True)
class ManifestPaths:
    """Repository relative paths of the generated files."""

    install: str
    sync: str
    kustomization: str

    @classmethod
    def from_config(cls, config: Configuration) -> "ManifestPaths":
        base = config.target_path
        return cls(
            install=f"{base}/{COMPONENTS_FILE}",
            sync=f"{base}/{SYNC_FILE}",
            kustomization=f"{base}/{KUSTOMIZATION_FILE}",
        )

    def all(self) -> list[str]:
        return [self.install, self.sync, self.kustomization]


class InstallGenerator(ABC):
    """Renders the manifest that installs the toolkit controllers."""

    @abstractmethod
    async def generate(self, options: InstallOptions) -> str:
        """Return the install manifest for the options."""


class FluxCliGenerator(InstallGenerator):
    """Render the install manifest with `flux install --export`."""

    def __init__(self, flux_bin: str = "flux") -> None:
        self._flux_bin = flux_bin

    def command(self, options: InstallOptions) -> Command:
        args = [
            self._flux_bin,
            "install",
            "--export",
            f"--version={options.version}",
            f"--namespace={options.namespace}",
            f"--components={','.join(options.components)}",
            f"--registry={options.registry}",
            f"--watch-all-namespaces={str(options.watch_all_namespaces).lower()}",
            f"--network-policy={str(options.network_policy).lower()}",
            f"--log-level={options.log_level}",
            f"--cluster-domain={options.cluster_domain}",
        ]
        if options.components_extra:
            args.append(f"--components-extra={','.join(options.components_extra)}")
        if options.image_pull_secret:
            args.append(f"--image-pull-secret={options.image_pull_secret}")
        if options.toleration_keys:
            args.append(f"--toleration-keys={','.join(options.toleration_keys)}")
        return Command(args)

    async def generate(self, options: InstallOptions) -> str:
        out = await run(self.command(options))
        return out.decode("utf-8")


def render_sync_manifest(options: SyncOptions) -> str:
    """Render the GitRepository and Kustomization that sync the repository."""
    source = GitRepository(
        name=options.name,
        namespace=options.namespace,
        url=options.url,
        branch=options.branch,
        interval=options.interval,
        secret_name=options.secret_name,
        recurse_submodules=options.recurse_submodules,
    )
    sync = Kustomization(
        name=options.name,
        namespace=options.namespace,
        path=options.target_path,
        source_name=options.name,
    )
    return dump_documents([source.to_doc(), sync.to_doc()], header=SYNC_HEADER)


def render_kustomization(resources: list[str] | None = None) -> str:
    """Render the kustomize file that lists the generated manifests."""
    doc = {
        "apiVersion": KUSTOMIZE_API_VERSION,
        "kind": KUSTOMIZE_KIND,
        "resources": resources or [COMPONENTS_FILE, SYNC_FILE],
    }
    return yaml.safe_dump(doc, sort_keys=True, default_flow_style=False)


async def build_file_set(
    config: Configuration,
    generator: InstallGenerator,
    validate_credentials: bool = True,
) -> FileSet:
    """Compute the expected repository files for the configuration."""
    with trace_context("Render manifests"):
        install_options, sync_options = render_config(config, validate_credentials)
        paths = ManifestPaths.from_config(config)
        try:
            install = await generator.generate(install_options)
        except CommandException as err:
            raise RenderException(
                f"Failed to generate install manifest: {err}"
            ) from err
        if not install.strip():
            raise RenderException("Install manifest generator returned no content")
        kustomization = config.kustomization_override or render_kustomization()
        files = {
            paths.install: install,
            paths.sync: render_sync_manifest(sync_options),
            paths.kustomization: kustomization,
        }
        _LOGGER.debug("Rendered %s files under %s", len(files), config.target_path)
        return files


def placeholder_file_set(config: Configuration) -> FileSet:
    """Files committed ahead of the manifests when the kustomization is overridden.

    The override is written next to empty install and sync manifests so it can
    be applied before Flux takes over the repository.
    """
    if not config.kustomization_override:
        raise RenderException("No kustomization override is configured")
    paths = ManifestPaths.from_config(config)
    return {
        paths.install: "",
        paths.sync: "",
        paths.kustomization: config.kustomization_override,
    }
