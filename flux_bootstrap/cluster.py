"""Access to the kubernetes API of the cluster that Flux is installed in.

The `Cluster` interface is the small set of calls the installer and health
monitor need. `KubernetesCluster` implements it with the dynamic client of
the official kubernetes library using server-side apply.
"""

from abc import ABC, abstractmethod
import asyncio
import logging
from typing import Any

from kubernetes import config as kube_config
from kubernetes.client import ApiClient
from kubernetes.client.exceptions import ApiException
from kubernetes.config.config_exception import ConfigException
from kubernetes.dynamic import DynamicClient
from kubernetes.dynamic.exceptions import NotFoundError, ResourceNotFoundError
from urllib3.exceptions import HTTPError

from .exceptions import ClusterException
from .manifest import NamedResource
from .status import READY_CONDITION, StatusInfo, status_from_conditions

__all__ = [
    "Cluster",
    "KubernetesCluster",
    "FIELD_MANAGER",
]

_LOGGER = logging.getLogger(__name__)

FIELD_MANAGER = "flux"


class Cluster(ABC):
    """Interface to the kubernetes API."""

    @abstractmethod
    async def apply(self, objects: list[dict[str, Any]]) -> None:
        """Server-side apply the objects in order, owned by the field manager."""

    @abstractmethod
    async def get(
        self, api_version: str, kind: str, name: str, namespace: str | None = None
    ) -> dict[str, Any] | None:
        """Return an object or None when it does not exist."""

    @abstractmethod
    async def list(
        self,
        api_version: str,
        kind: str,
        namespace: str | None = None,
        label_selector: str | None = None,
    ) -> list[dict[str, Any]]:
        """List objects, in all namespaces when no namespace is given."""

    @abstractmethod
    async def delete(
        self, api_version: str, kind: str, name: str, namespace: str | None = None
    ) -> bool:
        """Delete an object, returning False when it was already absent."""

    @abstractmethod
    async def remove_finalizers(
        self, api_version: str, kind: str, name: str, namespace: str | None = None
    ) -> None:
        """Clear the finalizers of an object so it can be deleted."""

    async def poll_condition(
        self,
        api_version: str,
        kind: str,
        name: str,
        namespace: str | None = None,
        condition_type: str = READY_CONDITION,
    ) -> StatusInfo:
        """Return the status of a condition of an object."""
        obj = await self.get(api_version, kind, name, namespace)
        return status_from_conditions(obj, condition_type)


def _reason(err: Exception) -> str:
    if isinstance(err, ApiException):
        return f"{err.status} {err.reason}"
    return str(err)


class KubernetesCluster(Cluster):
    """Cluster implementation using the kubernetes dynamic client."""

    def __init__(
        self, api_client: ApiClient, field_manager: str = FIELD_MANAGER
    ) -> None:
        self._api_client = api_client
        self._field_manager = field_manager
        self._client: DynamicClient | None = None

    @classmethod
    def from_kubeconfig(
        cls, config_file: str | None = None, context: str | None = None
    ) -> "KubernetesCluster":
        """Create a client from a kubeconfig file or the in-cluster config."""
        try:
            if config_file is None and context is None:
                try:
                    kube_config.load_incluster_config()
                    return cls(ApiClient())
                except ConfigException:
                    _LOGGER.debug("Not running in a cluster, using kubeconfig")
            return cls(
                kube_config.new_client_from_config(
                    config_file=config_file, context=context
                )
            )
        except ConfigException as err:
            raise ClusterException(f"Unable to load kubeconfig: {err}") from err

    def _dynamic(self) -> DynamicClient:
        if self._client is None:
            self._client = DynamicClient(self._api_client)
        return self._client

    def _resource(self, api_version: str, kind: str) -> Any:
        client = self._dynamic()
        try:
            return client.resources.get(api_version=api_version, kind=kind)
        except ResourceNotFoundError:
            # Custom resource definitions may have been applied since discovery
            client.resources.invalidate_cache()
            return client.resources.get(api_version=api_version, kind=kind)

    async def _call(
        self, action: str, ref: NamedResource | str, func: Any, *args: Any
    ) -> Any:
        try:
            return await asyncio.to_thread(func, *args)
        except (ApiException, HTTPError, ResourceNotFoundError) as err:
            raise ClusterException(f"Failed to {action} {ref}: {_reason(err)}") from err

    def _apply_one(self, obj: dict[str, Any]) -> None:
        metadata = obj.get("metadata") or {}
        resource = self._resource(obj["apiVersion"], obj["kind"])
        self._dynamic().server_side_apply(
            resource,
            body=obj,
            name=metadata.get("name"),
            namespace=metadata.get("namespace") if resource.namespaced else None,
            field_manager=self._field_manager,
            force_conflicts=True,
        )

    async def apply(self, objects: list[dict[str, Any]]) -> None:
        for obj in objects:
            ref = NamedResource.from_doc(obj)
            _LOGGER.debug("Applying %s", ref)
            await self._call("apply", ref, self._apply_one, obj)

    def _get(
        self, api_version: str, kind: str, name: str, namespace: str | None
    ) -> dict[str, Any] | None:
        try:
            resource = self._resource(api_version, kind)
        except ResourceNotFoundError:
            return None
        try:
            obj = self._dynamic().get(resource, name=name, namespace=namespace)
        except NotFoundError:
            return None
        return obj.to_dict()

    async def get(
        self, api_version: str, kind: str, name: str, namespace: str | None = None
    ) -> dict[str, Any] | None:
        ref = NamedResource(kind, namespace, name)
        return await self._call(
            "get", ref, self._get, api_version, kind, name, namespace
        )

    def _list(
        self,
        api_version: str,
        kind: str,
        namespace: str | None,
        label_selector: str | None,
    ) -> list[dict[str, Any]]:
        try:
            resource = self._resource(api_version, kind)
        except ResourceNotFoundError:
            _LOGGER.debug("Kind %s/%s is not served by the cluster", api_version, kind)
            return []
        result = self._dynamic().get(
            resource, namespace=namespace, label_selector=label_selector
        )
        return list(result.to_dict().get("items") or [])

    async def list(
        self,
        api_version: str,
        kind: str,
        namespace: str | None = None,
        label_selector: str | None = None,
    ) -> list[dict[str, Any]]:
        return await self._call(
            "list",
            f"{kind} in {namespace or 'all namespaces'}",
            self._list,
            api_version,
            kind,
            namespace,
            label_selector,
        )

    def _delete(
        self, api_version: str, kind: str, name: str, namespace: str | None
    ) -> bool:
        try:
            resource = self._resource(api_version, kind)
        except ResourceNotFoundError:
            return False
        try:
            self._dynamic().delete(resource, name=name, namespace=namespace)
        except NotFoundError:
            return False
        return True

    async def delete(
        self, api_version: str, kind: str, name: str, namespace: str | None = None
    ) -> bool:
        ref = NamedResource(kind, namespace, name)
        _LOGGER.debug("Deleting %s", ref)
        return await self._call(
            "delete", ref, self._delete, api_version, kind, name, namespace
        )

    def _remove_finalizers(
        self, api_version: str, kind: str, name: str, namespace: str | None
    ) -> None:
        resource = self._resource(api_version, kind)
        try:
            self._dynamic().patch(
                resource,
                body={"metadata": {"finalizers": None}},
                name=name,
                namespace=namespace,
                content_type="application/merge-patch+json",
            )
        except NotFoundError:
            _LOGGER.debug("%s/%s already removed", kind, name)

    async def remove_finalizers(
        self, api_version: str, kind: str, name: str, namespace: str | None = None
    ) -> None:
        ref = NamedResource(kind, namespace, name)
        await self._call(
            "remove finalizers from",
            ref,
            self._remove_finalizers,
            api_version,
            kind,
            name,
            namespace,
        )
