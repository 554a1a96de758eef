"""Lifecycle of a Flux installation bootstrapped from a git repository.

The `BootstrapReconciler` drives the manifest generator, the repository
synchronizer and the cluster installer through the create, read, update,
delete and import operations. Each operation runs under its own time budget.
The persisted `BootstrapState` records the repository files last confirmed
written so that later operations can detect removed or drifted files.

Example usage:
```
reconciler = BootstrapReconciler(KubernetesCluster.from_kubeconfig())
result = await reconciler.create(config)
state = result.state
```
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
import logging
from typing import TypeVar

from mashumaro import DataClassDictMixin
from mashumaro.codecs.yaml import yaml_decode, yaml_encode
from mashumaro.config import BaseConfig

from .cluster import Cluster
from .config import Configuration, GitConfig, check_immutable
from .context import deadline_context, trace_context
from .exceptions import (
    ConfigurationException,
    ImportException,
    OperationTimeoutError,
    RepositoryException,
    TeardownException,
)
from .health import check_ready
from .importer import reconstruct_configuration
from .installer import POLL_INTERVAL, install, uninstall
from .manifestgen import (
    FluxCliGenerator,
    InstallGenerator,
    ManifestPaths,
    build_file_set,
    placeholder_file_set,
)
from .repository import (
    GitRepositoryClient,
    Repository,
    commit_intent,
    synchronize,
    write_files,
)
from .retry import Backoff
from .secret import source_secret

__all__ = [
    "BootstrapReconciler",
    "BootstrapState",
    "OperationResult",
    "Diagnostic",
    "Severity",
    "Phase",
]

_LOGGER = logging.getLogger(__name__)

OVERRIDE_MESSAGE = "Add kustomize override"
CREATE_MESSAGE = "Add Flux {version} manifests"
UPDATE_MESSAGE = "Update Flux"
UNINSTALL_MESSAGE = "Uninstall Flux"

T = TypeVar("T")


class Phase(StrEnum):
    """Lifecycle phase of the installation managed by a reconciler."""

    ABSENT = "Absent"
    CREATING = "Creating"
    PRESENT = "Present"
    REFRESHING = "Refreshing"
    IMPORTING = "Importing"
    UPDATING = "Updating"
    DELETING = "Deleting"


class Severity(StrEnum):
    """Severity of a diagnostic."""

    WARNING = "warning"
    ERROR = "error"


@dataclass
class Diagnostic(DataClassDictMixin):
    """A message reported to the caller of an operation."""

    severity: Severity
    summary: str
    detail: str | None = None

    class Config(BaseConfig):
        omit_none = True

    def __str__(self) -> str:
        if self.detail:
            return f"{self.severity}: {self.summary}: {self.detail}"
        return f"{self.severity}: {self.summary}"


@dataclass
class BootstrapState(DataClassDictMixin):
    """Persisted state of a bootstrapped installation."""

    id: str
    """Identifier of the installation, the namespace."""

    namespace: str
    """Namespace that Flux is installed in."""

    repository_files: dict[str, str] = field(default_factory=dict)
    """Repository path to content of the files last written."""

    configuration: Configuration | None = None
    """Configuration the installation was last reconciled with."""

    class Config(BaseConfig):
        omit_none = True

    @classmethod
    def parse_yaml(cls, content: str) -> "BootstrapState":
        """Parse a serialized state."""
        return yaml_decode(content, cls)

    def yaml(self) -> str:
        """Return a YAML string representation of the state."""
        return yaml_encode(self, self.__class__)  # type: ignore[return-value]


@dataclass
class OperationResult:
    """The new state and the diagnostics of an operation."""

    state: BootstrapState | None
    """The state to persist, None when the installation was removed."""

    diagnostics: list[Diagnostic] = field(default_factory=list)


def _configuration(state: BootstrapState) -> Configuration:
    if state.configuration is None:
        raise ConfigurationException(
            f"State of {state.id} does not contain a configuration"
        )
    return state.configuration


class BootstrapReconciler:
    """Reconciles a Flux installation between a git repository and a cluster."""

    def __init__(
        self,
        cluster: Cluster,
        repository_factory: Callable[[GitConfig], Repository] = GitRepositoryClient,
        generator: InstallGenerator | None = None,
        poll_interval: float = POLL_INTERVAL,
        backoff: Backoff | None = None,
    ) -> None:
        """Initialize the reconciler with its cluster and repository clients."""
        self._cluster = cluster
        self._repository_factory = repository_factory
        self._generator = generator or FluxCliGenerator()
        self._poll_interval = poll_interval
        self._backoff = backoff
        self.phase = Phase.ABSENT

    async def _run(
        self, name: str, phase: Phase, timeout: float, func: Callable[[], Awaitable[T]]
    ) -> T:
        previous = self.phase
        self.phase = phase
        with trace_context(name), deadline_context(timeout):
            try:
                return await asyncio.wait_for(func(), timeout)
            except asyncio.TimeoutError as err:
                raise OperationTimeoutError(
                    f"{name} did not complete within {timeout:0.0f}s"
                ) from err
            finally:
                if self.phase == phase:
                    self.phase = previous

    async def _install(self, config: Configuration, files: dict[str, str]) -> None:
        paths = ManifestPaths.from_config(config)
        await install(
            self._cluster,
            files[paths.install],
            files[paths.sync],
            source_secret(config),
            poll_interval=self._poll_interval,
        )

    async def create(
        self, config: Configuration, timeout: float | None = None
    ) -> OperationResult:
        """Commit the manifests to the repository and install Flux."""

        async def _create() -> OperationResult:
            files = await build_file_set(config, self._generator)
            paths = ManifestPaths.from_config(config)
            repository = self._repository_factory(config.git)
            async with repository.clone() as working_copy:
                previous: dict[str, str] = {}
                if config.kustomization_override:
                    previous = await write_files(
                        working_copy,
                        {},
                        placeholder_file_set(config),
                        commit_intent(config, OVERRIDE_MESSAGE),
                        self._backoff,
                    )
                message = CREATE_MESSAGE.format(version=config.version)
                await write_files(
                    working_copy,
                    previous,
                    files,
                    commit_intent(config, message),
                    self._backoff,
                )
                await self._install(config, files)
                recorded = {}
                for path in paths.all():
                    if (content := await working_copy.read(path)) is None:
                        raise RepositoryException(f"Committed file {path} is missing")
                    recorded[path] = content
            self.phase = Phase.PRESENT
            _LOGGER.info("Bootstrapped Flux in namespace %s", config.namespace)
            return OperationResult(
                BootstrapState(
                    id=config.namespace,
                    namespace=config.namespace,
                    repository_files=recorded,
                    configuration=config,
                )
            )

        return await self._run(
            "Create", Phase.CREATING, timeout or config.timeouts.create, _create
        )

    async def read(
        self, state: BootstrapState, timeout: float | None = None
    ) -> OperationResult:
        """Refresh the recorded files and mark the sync manifest stale if unhealthy."""
        config = _configuration(state)

        async def _read() -> OperationResult:
            files: dict[str, str] = {}
            repository = self._repository_factory(config.git)
            async with repository.clone() as working_copy:
                for path in state.repository_files:
                    if (content := await working_copy.read(path)) is None:
                        _LOGGER.debug("Recorded file %s no longer exists", path)
                        continue
                    files[path] = content
            diagnostics = []
            report = await check_ready(self._cluster, state.namespace)
            if not report.ready:
                sync_path = ManifestPaths.from_config(config).sync
                if sync_path in files:
                    files[sync_path] = ""
                diagnostics.append(
                    Diagnostic(
                        Severity.WARNING,
                        "Flux is not ready, the sync manifest will be redeployed",
                        report.message,
                    )
                )
            self.phase = Phase.PRESENT
            return OperationResult(
                BootstrapState(
                    id=state.id,
                    namespace=state.namespace,
                    repository_files=files,
                    configuration=config,
                ),
                diagnostics,
            )

        return await self._run(
            "Refresh", Phase.REFRESHING, timeout or config.timeouts.read, _read
        )

    async def update(
        self,
        state: BootstrapState,
        config: Configuration,
        timeout: float | None = None,
    ) -> OperationResult:
        """Converge the repository and the cluster to a new configuration."""
        check_immutable(_configuration(state), config)

        async def _update() -> OperationResult:
            files = await build_file_set(config, self._generator)
            recorded = await synchronize(
                self._repository_factory(config.git),
                state.repository_files,
                files,
                commit_intent(config, UPDATE_MESSAGE),
                self._backoff,
            )
            await self._install(config, files)
            self.phase = Phase.PRESENT
            return OperationResult(
                BootstrapState(
                    id=state.id,
                    namespace=config.namespace,
                    repository_files=recorded,
                    configuration=config,
                )
            )

        return await self._run(
            "Update", Phase.UPDATING, timeout or config.timeouts.update, _update
        )

    async def delete(
        self, state: BootstrapState, timeout: float | None = None
    ) -> OperationResult:
        """Uninstall Flux and remove its manifests from the repository."""
        config = _configuration(state)

        async def _delete() -> OperationResult:
            diagnostics = []
            teardown_error: TeardownException | None = None
            try:
                await uninstall(self._cluster, state.namespace, config.keep_namespace)
            except TeardownException as err:
                teardown_error = err
            if config.delete_git_manifests:
                try:
                    await synchronize(
                        self._repository_factory(config.git),
                        state.repository_files,
                        {},
                        commit_intent(config, UNINSTALL_MESSAGE),
                        self._backoff,
                    )
                except RepositoryException as err:
                    _LOGGER.warning("Unable to remove manifests: %s", err)
                    diagnostics.append(
                        Diagnostic(
                            Severity.WARNING,
                            "Unable to remove the Flux manifests from the repository",
                            str(err),
                        )
                    )
            self.phase = Phase.ABSENT
            if teardown_error:
                teardown_error.diagnostics.extend(diagnostics)
                raise teardown_error
            return OperationResult(None, diagnostics)

        return await self._run(
            "Delete", Phase.DELETING, timeout or config.timeouts.delete, _delete
        )

    async def import_state(
        self, namespace: str, timeout: float | None = None
    ) -> OperationResult:
        """Build a state from an existing installation without changing it."""

        async def _import() -> OperationResult:
            report = await check_ready(self._cluster, namespace)
            if not report.ready:
                raise ImportException(
                    f"Flux in namespace {namespace} is not ready: {report.message}"
                )
            config = await reconstruct_configuration(self._cluster, namespace)
            files = await build_file_set(
                config, self._generator, validate_credentials=False
            )
            self.phase = Phase.PRESENT
            return OperationResult(
                BootstrapState(
                    id=namespace,
                    namespace=namespace,
                    repository_files=files,
                    configuration=config,
                ),
                [
                    Diagnostic(
                        Severity.WARNING,
                        "Git credentials and commit signing settings are not imported",
                    )
                ],
            )

        timeout = timeout or Configuration().timeouts.read
        return await self._run("Import", Phase.IMPORTING, timeout, _import)
