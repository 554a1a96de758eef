"""Reconstruct the configuration of an existing Flux installation."""

import logging
from typing import Any
from urllib.parse import urlparse

from .cluster import Cluster
from .config import (
    DEFAULT_AUTHOR_NAME,
    DEFAULT_CLUSTER_DOMAIN,
    DEFAULT_COMPONENTS,
    EXTRA_COMPONENTS,
    Configuration,
    GitConfig,
)
from .exceptions import ImportException
from .manifest import (
    DEPLOYMENT_KIND,
    FLUXTOMIZE_API_VERSION,
    GIT_REPOSITORY,
    GIT_REPOSITORY_API_VERSION,
    KUSTOMIZE_KIND,
    NETWORK_POLICY_KIND,
    VERSION_LABEL,
    GitRepository,
    Kustomization,
)

__all__ = [
    "reconstruct_configuration",
]

_LOGGER = logging.getLogger(__name__)

KUSTOMIZE_CONTROLLER = "kustomize-controller"
MANAGER_CONTAINER = "manager"
WEBHOOK_NETWORK_POLICY = "allow-webhooks"


def _args(container: dict[str, Any]) -> dict[str, str]:
    """Parse `--name=value` container arguments."""
    result = {}
    for arg in container.get("args") or []:
        name, _, value = arg.partition("=")
        result[name.lstrip("-")] = value
    return result


def _cluster_domain(events_addr: str | None) -> str:
    if not events_addr:
        return DEFAULT_CLUSTER_DOMAIN
    host = (urlparse(events_addr).hostname or "").rstrip(".")
    labels = host.split(".")
    if len(labels) < 2:
        return DEFAULT_CLUSTER_DOMAIN
    return ".".join(labels[-2:])


def _manager(deployment: dict[str, Any]) -> tuple[dict[str, Any], dict[str, Any]]:
    template = (deployment.get("spec") or {}).get("template") or {}
    pod_spec = template.get("spec") or {}
    for container in pod_spec.get("containers") or []:
        if container.get("name") == MANAGER_CONTAINER:
            return pod_spec, container
    raise ImportException(
        f"Deployment {KUSTOMIZE_CONTROLLER} has no '{MANAGER_CONTAINER}' container"
    )


async def reconstruct_configuration(cluster: Cluster, namespace: str) -> Configuration:
    """Read back a best-effort configuration from the cluster objects.

    Credentials, the commit author email and the GPG settings are not stored
    in the cluster and are left unset.
    """
    deployments = {
        (d.get("metadata") or {}).get("name"): d
        for d in await cluster.list("apps/v1", DEPLOYMENT_KIND, namespace)
    }
    if not (controller := deployments.get(KUSTOMIZE_CONTROLLER)):
        raise ImportException(
            f"Deployment {KUSTOMIZE_CONTROLLER} not found in namespace {namespace}"
        )
    pod_spec, container = _manager(controller)
    args = _args(container)
    labels = (controller.get("metadata") or {}).get("labels") or {}

    if not (source_doc := await cluster.get(
        GIT_REPOSITORY_API_VERSION, GIT_REPOSITORY, namespace, namespace
    )):
        raise ImportException(f"GitRepository {namespace}/{namespace} not found")
    if not (sync_doc := await cluster.get(
        FLUXTOMIZE_API_VERSION, KUSTOMIZE_KIND, namespace, namespace
    )):
        raise ImportException(f"Kustomization {namespace}/{namespace} not found")
    source = GitRepository.parse_doc(source_doc)
    sync = Kustomization.parse_doc(sync_doc)

    network_policy = await cluster.get(
        "networking.k8s.io/v1", NETWORK_POLICY_KIND, WEBHOOK_NETWORK_POLICY, namespace
    )
    pull_secrets = pod_spec.get("imagePullSecrets") or []
    config = Configuration(
        git=GitConfig(
            url=source.url,
            author_name=DEFAULT_AUTHOR_NAME,
        ),
        namespace=namespace,
        path=sync.repository_path,
        components=[c for c in DEFAULT_COMPONENTS if c in deployments],
        components_extra=[c for c in EXTRA_COMPONENTS if c in deployments],
        network_policy=network_policy is not None,
        watch_all_namespaces=args.get("watch-all-namespaces", "true") == "true",
        cluster_domain=_cluster_domain(args.get("events-addr")),
        toleration_keys=sorted(
            t["key"] for t in pod_spec.get("tolerations") or [] if t.get("key")
        ),
        recurse_submodules=source.recurse_submodules,
    )
    if version := labels.get(VERSION_LABEL):
        config.version = version
    if image := container.get("image"):
        config.registry = image.rsplit("/", 1)[0]
    if pull_secrets:
        config.image_pull_secret = pull_secrets[0].get("name")
    if log_level := args.get("log-level"):
        config.log_level = log_level
    if source.branch:
        config.git.branch = source.branch
    if source.interval:
        config.interval = source.interval
    if source.secret_name and source.secret_name != namespace:
        config.secret_name = source.secret_name
    _LOGGER.info("Imported Flux %s from namespace %s", config.version, namespace)
    return config
