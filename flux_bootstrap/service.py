"""Request and response facade over the bootstrap reconciler.

Hosts such as the command line tool or an infrastructure orchestrator call
the `BootstrapService` with typed requests. Every failure is returned as an
error diagnostic instead of an exception.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
import logging

from .bootstrap import (
    BootstrapReconciler,
    BootstrapState,
    Diagnostic,
    OperationResult,
    Severity,
)
from .cluster import Cluster, KubernetesCluster
from .config import Configuration
from .exceptions import FluxBootstrapException
from .manifestgen import FluxCliGenerator, InstallGenerator

__all__ = [
    "BootstrapService",
    "ConfigureRequest",
    "CreateRequest",
    "ReadRequest",
    "UpdateRequest",
    "DeleteRequest",
    "ImportRequest",
    "Response",
]

_LOGGER = logging.getLogger(__name__)


@dataclass
class ConfigureRequest:
    """Connection settings for the cluster."""

    kubeconfig: str | None = None
    context: str | None = None
    flux_bin: str = "flux"


@dataclass
class CreateRequest:
    config: Configuration
    timeout: float | None = None


@dataclass
class ReadRequest:
    state: BootstrapState
    timeout: float | None = None


@dataclass
class UpdateRequest:
    state: BootstrapState
    config: Configuration
    timeout: float | None = None


@dataclass
class DeleteRequest:
    state: BootstrapState
    timeout: float | None = None


@dataclass
class ImportRequest:
    namespace: str
    timeout: float | None = None


@dataclass
class Response:
    """The state to persist and the diagnostics to show."""

    state: BootstrapState | None = None
    diagnostics: list[Diagnostic] = field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return any(d.severity == Severity.ERROR for d in self.diagnostics)


class BootstrapService:
    """Serves lifecycle requests with a configured reconciler."""

    def __init__(self, reconciler: BootstrapReconciler | None = None) -> None:
        self._reconciler = reconciler

    def configure(
        self,
        request: ConfigureRequest,
        cluster: Cluster | None = None,
        generator: InstallGenerator | None = None,
    ) -> Response:
        """Create the reconciler from the connection settings."""
        try:
            cluster = cluster or KubernetesCluster.from_kubeconfig(
                request.kubeconfig, request.context
            )
        except FluxBootstrapException as err:
            return Response(diagnostics=[_error("Unable to configure", err)])
        self._reconciler = BootstrapReconciler(
            cluster, generator=generator or FluxCliGenerator(request.flux_bin)
        )
        return Response()

    @property
    def reconciler(self) -> BootstrapReconciler:
        if self._reconciler is None:
            raise FluxBootstrapException("Service has not been configured")
        return self._reconciler

    async def _handle(
        self,
        summary: str,
        operation: Callable[[], Awaitable[OperationResult]],
        state: BootstrapState | None,
    ) -> Response:
        try:
            result = await operation()
        except FluxBootstrapException as err:
            _LOGGER.debug("%s failed: %s", summary, err)
            return Response(state, [*err.diagnostics, _error(summary, err)])
        return Response(result.state, result.diagnostics)

    async def create(self, request: CreateRequest) -> Response:
        return await self._handle(
            "Unable to bootstrap Flux",
            lambda: self.reconciler.create(request.config, request.timeout),
            None,
        )

    async def read(self, request: ReadRequest) -> Response:
        return await self._handle(
            "Unable to refresh Flux",
            lambda: self.reconciler.read(request.state, request.timeout),
            request.state,
        )

    async def update(self, request: UpdateRequest) -> Response:
        return await self._handle(
            "Unable to update Flux",
            lambda: self.reconciler.update(
                request.state, request.config, request.timeout
            ),
            request.state,
        )

    async def delete(self, request: DeleteRequest) -> Response:
        # The state is dropped even when the teardown was incomplete
        return await self._handle(
            "Unable to uninstall Flux",
            lambda: self.reconciler.delete(request.state, request.timeout),
            None,
        )

    async def import_state(self, request: ImportRequest) -> Response:
        return await self._handle(
            "Unable to import Flux",
            lambda: self.reconciler.import_state(request.namespace, request.timeout),
            None,
        )


def _error(summary: str, err: Exception) -> Diagnostic:
    return Diagnostic(Severity.ERROR, summary, str(err))
