"""Install and uninstall Flux on a cluster.

Installation applies the rendered manifests in dependency order and waits
for the GitRepository and Kustomization to become ready. Uninstalling removes
the controllers, releases every Flux object from its finalizers, then deletes
the custom resource definitions and the namespace.
"""

from collections.abc import Awaitable
from dataclasses import dataclass
import asyncio
import logging
from typing import Any

from .cluster import Cluster
from .context import deadline_context, remaining, trace_context
from .exceptions import ClusterException, ReadinessTimeoutError, TeardownException
from .manifest import (
    CRD_API_VERSION,
    CRD_KIND,
    NAMESPACE_KIND,
    PART_OF_SELECTOR,
    NamedResource,
    parse_documents,
)
from .status import READY_CONDITION

__all__ = [
    "install",
    "uninstall",
    "wait_ready",
]

_LOGGER = logging.getLogger(__name__)

POLL_INTERVAL = 2.0
READY_TIMEOUT = 600.0
ESTABLISHED_CONDITION = "Established"


@dataclass(frozen=True)
class ApiKind:
    """A kind served at a specific api version."""

    api_version: str
    kind: str
    namespaced: bool = True


WORKLOAD_KINDS = [
    ApiKind("apps/v1", "Deployment"),
    ApiKind("v1", "Service"),
    ApiKind("networking.k8s.io/v1", "NetworkPolicy"),
    ApiKind("v1", "ServiceAccount"),
    ApiKind("rbac.authorization.k8s.io/v1", "ClusterRole", namespaced=False),
    ApiKind("rbac.authorization.k8s.io/v1", "ClusterRoleBinding", namespaced=False),
]

FLUX_KINDS = [
    ApiKind("source.toolkit.fluxcd.io/v1", "GitRepository"),
    ApiKind("source.toolkit.fluxcd.io/v1", "HelmRepository"),
    ApiKind("source.toolkit.fluxcd.io/v1", "HelmChart"),
    ApiKind("source.toolkit.fluxcd.io/v1beta2", "Bucket"),
    ApiKind("source.toolkit.fluxcd.io/v1beta2", "OCIRepository"),
    ApiKind("kustomize.toolkit.fluxcd.io/v1", "Kustomization"),
    ApiKind("helm.toolkit.fluxcd.io/v2", "HelmRelease"),
    ApiKind("notification.toolkit.fluxcd.io/v1beta3", "Alert"),
    ApiKind("notification.toolkit.fluxcd.io/v1beta3", "Provider"),
    ApiKind("notification.toolkit.fluxcd.io/v1", "Receiver"),
    ApiKind("image.toolkit.fluxcd.io/v1beta2", "ImageRepository"),
    ApiKind("image.toolkit.fluxcd.io/v1beta2", "ImagePolicy"),
    ApiKind("image.toolkit.fluxcd.io/v1beta2", "ImageUpdateAutomation"),
]


def _ref(doc: dict[str, Any]) -> NamedResource:
    return NamedResource.from_doc(doc)


async def wait_ready(
    cluster: Cluster,
    doc: dict[str, Any],
    condition_type: str = READY_CONDITION,
    poll_interval: float = POLL_INTERVAL,
    timeout: float = READY_TIMEOUT,
) -> None:
    """Poll an object until its condition is true or the time runs out."""
    ref = _ref(doc)
    with deadline_context(timeout):
        while True:
            status = await cluster.poll_condition(
                doc["apiVersion"], ref.kind, ref.name, ref.namespace, condition_type
            )
            if status.ready:
                _LOGGER.info("%s is %s", ref, condition_type)
                return
            _LOGGER.debug("Waiting for %s: %s", ref, status)
            left = remaining()
            if left is not None and left < poll_interval:
                raise ReadinessTimeoutError(str(ref), status.message)
            await asyncio.sleep(poll_interval)


async def install(
    cluster: Cluster,
    install_manifest: str,
    sync_manifest: str,
    secret: dict[str, Any] | None = None,
    poll_interval: float = POLL_INTERVAL,
    timeout: float = READY_TIMEOUT,
) -> None:
    """Apply the Flux manifests and wait for the sync to become ready.

    Applying the same manifests again leaves the cluster unchanged.
    """
    with trace_context("Install"):
        docs = parse_documents(install_manifest)
        namespaces = [d for d in docs if d.get("kind") == NAMESPACE_KIND]
        crds = [d for d in docs if d.get("kind") == CRD_KIND]
        others = [d for d in docs if d.get("kind") not in (NAMESPACE_KIND, CRD_KIND)]
        sync_docs = parse_documents(sync_manifest)

        _LOGGER.info(
            "Applying %s namespaces, %s CRDs and %s objects",
            len(namespaces),
            len(crds),
            len(others),
        )
        await cluster.apply(namespaces)
        await cluster.apply(crds)
        for crd in crds:
            await wait_ready(
                cluster, crd, ESTABLISHED_CONDITION, poll_interval, timeout
            )
        await cluster.apply(others)
        if secret is not None:
            await cluster.apply([secret])
        await cluster.apply(sync_docs)
        for doc in sync_docs:
            await wait_ready(cluster, doc, READY_CONDITION, poll_interval, timeout)


async def _collect(errors: list[str], description: str, step: Awaitable[None]) -> None:
    try:
        await step
    except ClusterException as err:
        _LOGGER.error("Failed to %s: %s", description, err)
        errors.append(f"{description}: {err}")


async def _delete_labelled(
    cluster: Cluster, errors: list[str], api_kind: ApiKind, namespace: str | None
) -> None:
    objs = await cluster.list(
        api_kind.api_version, api_kind.kind, namespace, PART_OF_SELECTOR
    )
    for obj in objs:
        ref = _ref(obj)
        await _collect(
            errors,
            f"delete {ref}",
            _delete(cluster, api_kind.api_version, ref),
        )


async def _delete(cluster: Cluster, api_version: str, ref: NamedResource) -> None:
    if not await cluster.delete(api_version, ref.kind, ref.name, ref.namespace):
        _LOGGER.debug("%s was already deleted", ref)


async def _strip_finalizers(
    cluster: Cluster, errors: list[str], api_kind: ApiKind
) -> None:
    for obj in await cluster.list(api_kind.api_version, api_kind.kind):
        if not (obj.get("metadata") or {}).get("finalizers"):
            continue
        ref = _ref(obj)
        await _collect(
            errors,
            f"remove finalizers from {ref}",
            cluster.remove_finalizers(
                api_kind.api_version, ref.kind, ref.name, ref.namespace
            ),
        )


async def uninstall(
    cluster: Cluster, namespace: str, keep_namespace: bool = False
) -> None:
    """Remove Flux from the cluster.

    Every step runs even when an earlier one failed. The failures are raised
    together as a TeardownException afterwards.
    """
    errors: list[str] = []
    with trace_context("Uninstall"):
        for api_kind in WORKLOAD_KINDS:
            await _collect(
                errors,
                f"delete {api_kind.kind} objects",
                _delete_labelled(
                    cluster,
                    errors,
                    api_kind,
                    namespace if api_kind.namespaced else None,
                ),
            )
        for api_kind in FLUX_KINDS:
            await _collect(
                errors,
                f"remove finalizers from {api_kind.kind} objects",
                _strip_finalizers(cluster, errors, api_kind),
            )
        await _collect(
            errors,
            "delete custom resource definitions",
            _delete_labelled(
                cluster, errors, ApiKind(CRD_API_VERSION, CRD_KIND, False), None
            ),
        )
        if keep_namespace:
            _LOGGER.info("Keeping namespace %s", namespace)
        else:
            await _collect(
                errors,
                f"delete namespace {namespace}",
                _delete(cluster, "v1", NamedResource(NAMESPACE_KIND, None, namespace)),
            )
    if errors:
        raise TeardownException(errors)
    _LOGGER.info("Uninstalled Flux from namespace %s", namespace)
