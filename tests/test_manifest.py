"""Tests for manifest library."""

import pytest

from flux_bootstrap.exceptions import RenderException
from flux_bootstrap.manifest import (
    GitRepository,
    Kustomization,
    NamedResource,
    dump_documents,
    parse_documents,
)

SYNC = """---
apiVersion: source.toolkit.fluxcd.io/v1
kind: GitRepository
metadata:
  name: flux-system
  namespace: flux-system
spec:
  interval: 1m0s
  recurseSubmodules: true
  ref:
    branch: main
  secretRef:
    name: flux-system
  url: ssh://git@github.com/example/fleet.git
---
apiVersion: kustomize.toolkit.fluxcd.io/v1
kind: Kustomization
metadata:
  name: flux-system
  namespace: flux-system
spec:
  interval: 10m0s
  path: ./clusters/prod
  prune: true
  sourceRef:
    kind: GitRepository
    name: flux-system
"""


def test_parse_sync() -> None:
    """Test parsing the sync manifest objects."""
    source_doc, sync_doc = parse_documents(SYNC)
    source = GitRepository.parse_doc(source_doc)
    assert source.url == "ssh://git@github.com/example/fleet.git"
    assert source.branch == "main"
    assert source.interval == "1m0s"
    assert source.secret_name == "flux-system"
    assert source.recurse_submodules

    sync = Kustomization.parse_doc(sync_doc)
    assert sync.path == "./clusters/prod"
    assert sync.repository_path == "clusters/prod"
    assert sync.prune
    assert sync.source_name == "flux-system"


def test_to_doc_matches_parsed() -> None:
    """Test the documents are rendered back unchanged."""
    source_doc, sync_doc = parse_documents(SYNC)
    docs = [
        GitRepository.parse_doc(source_doc).to_doc(),
        Kustomization.parse_doc(sync_doc).to_doc(),
    ]
    assert dump_documents(docs) == SYNC


def test_parse_wrong_kind() -> None:
    """Test an object of another api group is rejected."""
    with pytest.raises(RenderException, match="expected 'source.toolkit.fluxcd.io'"):
        GitRepository.parse_doc({"apiVersion": "v1", "kind": "ConfigMap"})


def test_parse_missing_url() -> None:
    """Test a GitRepository without a url."""
    doc = {
        "apiVersion": "source.toolkit.fluxcd.io/v1",
        "kind": "GitRepository",
        "metadata": {"name": "flux-system", "namespace": "flux-system"},
        "spec": {"interval": "1m"},
    }
    with pytest.raises(RenderException, match="spec.url"):
        GitRepository.parse_doc(doc)


def test_parse_documents_invalid() -> None:
    """Test documents that are not mappings are rejected."""
    with pytest.raises(RenderException, match="not a dictionary"):
        parse_documents("---\n- a\n- b\n")
    with pytest.raises(RenderException, match="failed to parse"):
        parse_documents("key: [unterminated\n")


def test_named_resource() -> None:
    """Test resource identifiers."""
    doc = {"kind": "Namespace", "metadata": {"name": "flux-system"}}
    assert str(NamedResource.from_doc(doc)) == "Namespace/flux-system"
    assert str(NamedResource("Deployment", "flux-system", "source-controller")) == (
        "Deployment/flux-system/source-controller"
    )
