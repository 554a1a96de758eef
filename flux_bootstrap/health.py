"""Health checks of a Flux installation."""

from dataclasses import dataclass
import logging

from .cluster import Cluster
from .manifest import (
    DEPLOYMENT_KIND,
    FLUXTOMIZE_API_VERSION,
    GIT_REPOSITORY,
    GIT_REPOSITORY_API_VERSION,
    KUSTOMIZE_KIND,
    PART_OF_SELECTOR,
    NamedResource,
)

__all__ = [
    "HealthReport",
    "check_ready",
]

_LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class HealthReport:
    """Result of a readiness check."""

    ready: bool
    """True when both the source and the sync are ready."""

    message: str | None = None
    """Describes the first object that is not ready."""


async def check_ready(cluster: Cluster, namespace: str) -> HealthReport:
    """Check that the cluster is reachable and the Flux sync is ready.

    API failures raise a ClusterException. Unready objects are reported in
    the returned HealthReport.
    """
    deployments = await cluster.list(
        "apps/v1", DEPLOYMENT_KIND, namespace, PART_OF_SELECTOR
    )
    _LOGGER.debug("Found %s Flux deployments in %s", len(deployments), namespace)
    for api_version, kind in (
        (GIT_REPOSITORY_API_VERSION, GIT_REPOSITORY),
        (FLUXTOMIZE_API_VERSION, KUSTOMIZE_KIND),
    ):
        ref = NamedResource(kind, namespace, namespace)
        status = await cluster.poll_condition(api_version, kind, namespace, namespace)
        if not status.ready:
            _LOGGER.info("%s is not ready: %s", ref, status)
            return HealthReport(False, f"{ref} is not ready: {status}")
    return HealthReport(True)
