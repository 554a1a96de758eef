"""Representation of the Flux objects managed by the bootstrap process.

These objects are rendered into the sync manifest committed to the repository
and parsed back from the cluster when an existing installation is imported.
"""

from dataclasses import dataclass
import logging
from typing import Any, ClassVar

import yaml

from .exceptions import RenderException

__all__ = [
    "NamedResource",
    "GitRepository",
    "Kustomization",
    "parse_documents",
    "dump_documents",
]

_LOGGER = logging.getLogger(__name__)


# Objects are matched on the api group only so newer versions still parse
SOURCE_DOMAIN = "source.toolkit.fluxcd.io"
FLUXTOMIZE_DOMAIN = "kustomize.toolkit.fluxcd.io"
KUSTOMIZE_DOMAIN = "kustomize.config.k8s.io"

GIT_REPOSITORY_API_VERSION = f"{SOURCE_DOMAIN}/v1"
FLUXTOMIZE_API_VERSION = f"{FLUXTOMIZE_DOMAIN}/v1"
KUSTOMIZE_API_VERSION = f"{KUSTOMIZE_DOMAIN}/v1beta1"
CRD_API_VERSION = "apiextensions.k8s.io/v1"

GIT_REPOSITORY = "GitRepository"
KUSTOMIZE_KIND = "Kustomization"
CRD_KIND = "CustomResourceDefinition"
NAMESPACE_KIND = "Namespace"
SECRET_KIND = "Secret"
DEPLOYMENT_KIND = "Deployment"
NETWORK_POLICY_KIND = "NetworkPolicy"

PART_OF_LABEL = "app.kubernetes.io/part-of"
VERSION_LABEL = "app.kubernetes.io/version"
PART_OF_SELECTOR = f"{PART_OF_LABEL}=flux"

SYNC_HEADER = "# This manifest was generated by flux. DO NOT EDIT.\n"
FLUXTOMIZE_INTERVAL = "10m0s"


def _check_version(doc: dict[str, Any], version: str) -> None:
    """Assert that the resource has the specified version."""
    if not (api_version := doc.get("apiVersion")):
        raise RenderException(f"Invalid object missing apiVersion: {doc}")
    if not api_version.startswith(version):
        raise RenderException(f"Invalid object expected '{version}': {doc}")


@dataclass(frozen=True, order=True)
class NamedResource:
    """Identifier for a kubernetes resource."""

    kind: str
    namespace: str | None
    name: str

    @classmethod
    def from_doc(cls, doc: dict[str, Any]) -> "NamedResource":
        metadata = doc.get("metadata") or {}
        return cls(
            doc.get("kind", ""), metadata.get("namespace"), metadata.get("name", "")
        )

    @property
    def namespaced_name(self) -> str:
        if self.namespace:
            return f"{self.namespace}/{self.name}"
        return self.name

    def __str__(self) -> str:
        """Return the kind and namespaced name concatenated as an id."""
        return f"{self.kind}/{self.namespaced_name}"


@dataclass
class GitRepository:
    """GitRepository is the source of the Flux installation itself."""

    kind: ClassVar[str] = GIT_REPOSITORY
    """The kind of the object."""

    name: str
    """The name of the GitRepository."""

    namespace: str
    """The namespace of owning the GitRepository."""

    url: str
    """The URL to the repository."""

    branch: str | None = None
    """The Git branch to checkout."""

    interval: str | None = None
    """Interval at which the repository is fetched."""

    secret_name: str | None = None
    """Name of the secret holding the git credentials."""

    recurse_submodules: bool = False
    """Whether submodules are cloned."""

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "GitRepository":
        """Parse a GitRepository from a kubernetes resource."""
        _check_version(doc, SOURCE_DOMAIN)
        if not (metadata := doc.get("metadata")):
            raise RenderException(f"Invalid {cls} missing metadata: {doc}")
        if not (name := metadata.get("name")):
            raise RenderException(f"Invalid {cls} missing metadata.name: {doc}")
        if not (namespace := metadata.get("namespace")):
            raise RenderException(f"Invalid {cls} missing metadata.namespace: {doc}")
        if not (spec := doc.get("spec")):
            raise RenderException(f"Invalid {cls} missing spec: {doc}")
        if not (url := spec.get("url")):
            raise RenderException(f"Invalid {cls} missing spec.url: {doc}")
        return cls(
            name=name,
            namespace=namespace,
            url=url,
            branch=(spec.get("ref") or {}).get("branch"),
            interval=spec.get("interval"),
            secret_name=(spec.get("secretRef") or {}).get("name"),
            recurse_submodules=bool(spec.get("recurseSubmodules", False)),
        )

    def to_doc(self) -> dict[str, Any]:
        """Return the kubernetes resource for this GitRepository."""
        spec: dict[str, Any] = {"url": self.url}
        if self.interval:
            spec["interval"] = self.interval
        if self.branch:
            spec["ref"] = {"branch": self.branch}
        if self.secret_name:
            spec["secretRef"] = {"name": self.secret_name}
        if self.recurse_submodules:
            spec["recurseSubmodules"] = True
        return {
            "apiVersion": GIT_REPOSITORY_API_VERSION,
            "kind": GIT_REPOSITORY,
            "metadata": {"name": self.name, "namespace": self.namespace},
            "spec": spec,
        }


@dataclass
class Kustomization:
    """A flux Kustomization that applies the repository path to the cluster."""

    kind: ClassVar[str] = KUSTOMIZE_KIND
    """The kind of the object."""

    name: str
    """The name of the kustomization."""

    namespace: str
    """The namespace of the kustomization."""

    path: str
    """The repository path, relative to the source root."""

    interval: str = FLUXTOMIZE_INTERVAL
    """Interval at which the path is applied."""

    prune: bool = True
    """Garbage collect objects removed from the repository."""

    source_kind: str = GIT_REPOSITORY
    """The sourceRef kind that provides this Kustomization."""

    source_name: str | None = None
    """The name of the sourceRef that provides this Kustomization."""

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "Kustomization":
        """Parse a flux Kustomization from a kubernetes resource."""
        _check_version(doc, FLUXTOMIZE_DOMAIN)
        if not (metadata := doc.get("metadata")):
            raise RenderException(f"Invalid {cls} missing metadata: {doc}")
        if not (name := metadata.get("name")):
            raise RenderException(f"Invalid {cls} missing metadata.name: {doc}")
        if not (namespace := metadata.get("namespace")):
            raise RenderException(f"Invalid {cls} missing metadata.namespace: {doc}")
        spec = doc.get("spec") or {}
        source_ref = spec.get("sourceRef") or {}
        return cls(
            name=name,
            namespace=namespace,
            path=spec.get("path") or "",
            interval=spec.get("interval") or FLUXTOMIZE_INTERVAL,
            prune=bool(spec.get("prune", False)),
            source_kind=source_ref.get("kind") or GIT_REPOSITORY,
            source_name=source_ref.get("name"),
        )

    @property
    def repository_path(self) -> str:
        """The path with any leading `./` removed."""
        return self.path.removeprefix("./")

    def to_doc(self) -> dict[str, Any]:
        """Return the kubernetes resource for this Kustomization."""
        return {
            "apiVersion": FLUXTOMIZE_API_VERSION,
            "kind": KUSTOMIZE_KIND,
            "metadata": {"name": self.name, "namespace": self.namespace},
            "spec": {
                "interval": self.interval,
                "path": "./" + self.repository_path,
                "prune": self.prune,
                "sourceRef": {
                    "kind": self.source_kind,
                    "name": self.source_name or self.name,
                },
            },
        }


def parse_documents(content: str) -> list[dict[str, Any]]:
    """Parse a multi-document YAML manifest, skipping empty documents."""
    try:
        docs = list(yaml.safe_load_all(content))
    except yaml.YAMLError as err:
        raise RenderException(f"Manifest failed to parse as yaml: {err}") from err
    result = []
    for doc in docs:
        if doc is None:
            continue
        if not isinstance(doc, dict):
            raise RenderException(f"Manifest document was not a dictionary: {doc}")
        result.append(doc)
    return result


def dump_documents(docs: list[dict[str, Any]], header: str = "") -> str:
    """Serialize objects as a multi-document YAML manifest."""
    return header + "".join(
        "---\n" + yaml.safe_dump(doc, sort_keys=True, default_flow_style=False)
        for doc in docs
    )
