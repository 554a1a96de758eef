"""Test fixtures for flux-bootstrap."""

from collections.abc import AsyncGenerator, Generator, Iterable
from contextlib import asynccontextmanager
import copy
from pathlib import Path
import tempfile
from typing import Any

import git
import pytest
import yaml

from flux_bootstrap.cluster import Cluster
from flux_bootstrap.config import Configuration, GitConfig, InstallOptions
from flux_bootstrap.exceptions import ClusterException
from flux_bootstrap.manifest import NamedResource, PART_OF_LABEL
from flux_bootstrap.manifestgen import InstallGenerator
from flux_bootstrap.repository import CommitIntent, Repository, WorkingCopy
from flux_bootstrap.retry import Backoff

FAST_BACKOFF = Backoff(initial=0.01, maximum=0.01)


def _matches(obj: dict[str, Any], label_selector: str | None) -> bool:
    if not label_selector:
        return True
    labels = (obj.get("metadata") or {}).get("labels") or {}
    for term in label_selector.split(","):
        key, _, value = term.partition("=")
        if labels.get(key) != value:
            return False
    return True


class FakeCluster(Cluster):
    """In-memory cluster that records every call in order."""

    def __init__(self, auto_ready: bool = True) -> None:
        self.objects: dict[NamedResource, dict[str, Any]] = {}
        self.calls: list[tuple[str, str]] = []
        self.auto_ready = auto_ready
        self.failures: set[tuple[str, str]] = set()

    def fail(self, action: str, kind: str) -> None:
        """Make every `action` call for `kind` raise a ClusterException."""
        self.failures.add((action, kind))

    def _check(self, action: str, kind: str) -> None:
        if (action, kind) in self.failures:
            raise ClusterException(f"Failed to {action} {kind}: 500 Internal error")

    def add(self, obj: dict[str, Any]) -> None:
        self.objects[NamedResource.from_doc(obj)] = copy.deepcopy(obj)

    def set_condition(
        self,
        kind: str,
        namespace: str | None,
        name: str,
        status: str,
        message: str | None = None,
        condition_type: str = "Ready",
    ) -> None:
        obj = self.objects[NamedResource(kind, namespace, name)]
        obj["status"] = {
            "conditions": [
                {"type": condition_type, "status": status, "message": message}
            ]
        }

    async def apply(self, objects: list[dict[str, Any]]) -> None:
        for obj in objects:
            ref = NamedResource.from_doc(obj)
            self._check("apply", ref.kind)
            self.calls.append(("apply", str(ref)))
            applied = copy.deepcopy(obj)
            if self.auto_ready:
                applied["status"] = {
                    "conditions": [
                        {"type": "Ready", "status": "True", "message": "ok"},
                        {"type": "Established", "status": "True"},
                    ]
                }
            elif ref in self.objects and "status" in self.objects[ref]:
                applied["status"] = self.objects[ref]["status"]
            self.objects[ref] = applied

    async def get(
        self, api_version: str, kind: str, name: str, namespace: str | None = None
    ) -> dict[str, Any] | None:
        self._check("get", kind)
        obj = self.objects.get(NamedResource(kind, namespace, name))
        return copy.deepcopy(obj) if obj is not None else None

    async def list(
        self,
        api_version: str,
        kind: str,
        namespace: str | None = None,
        label_selector: str | None = None,
    ) -> list[dict[str, Any]]:
        self._check("list", kind)
        return [
            copy.deepcopy(obj)
            for ref, obj in sorted(self.objects.items())
            if ref.kind == kind
            and (namespace is None or ref.namespace == namespace)
            and _matches(obj, label_selector)
        ]

    async def delete(
        self, api_version: str, kind: str, name: str, namespace: str | None = None
    ) -> bool:
        ref = NamedResource(kind, namespace, name)
        self._check("delete", kind)
        self.calls.append(("delete", str(ref)))
        return self.objects.pop(ref, None) is not None

    async def remove_finalizers(
        self, api_version: str, kind: str, name: str, namespace: str | None = None
    ) -> None:
        ref = NamedResource(kind, namespace, name)
        self._check("remove_finalizers", kind)
        self.calls.append(("remove_finalizers", str(ref)))
        if obj := self.objects.get(ref):
            obj["metadata"].pop("finalizers", None)

    def kinds(self) -> set[str]:
        return {ref.kind for ref in self.objects}


def _labels(options: InstallOptions, name: str) -> dict[str, str]:
    return {
        PART_OF_LABEL: "flux",
        "app.kubernetes.io/instance": options.namespace,
        "app.kubernetes.io/version": options.version,
        "app.kubernetes.io/component": name,
    }


def render_install(options: InstallOptions) -> str:
    """Render a small install manifest resembling `flux install --export`."""
    ns = options.namespace
    docs: list[dict[str, Any]] = [
        {
            "apiVersion": "v1",
            "kind": "Namespace",
            "metadata": {"name": ns, "labels": _labels(options, "namespace")},
        },
        {
            "apiVersion": "apiextensions.k8s.io/v1",
            "kind": "CustomResourceDefinition",
            "metadata": {
                "name": "gitrepositories.source.toolkit.fluxcd.io",
                "labels": _labels(options, "source-controller"),
            },
        },
        {
            "apiVersion": "apiextensions.k8s.io/v1",
            "kind": "CustomResourceDefinition",
            "metadata": {
                "name": "kustomizations.kustomize.toolkit.fluxcd.io",
                "labels": _labels(options, "kustomize-controller"),
            },
        },
    ]
    if options.network_policy:
        docs.append(
            {
                "apiVersion": "networking.k8s.io/v1",
                "kind": "NetworkPolicy",
                "metadata": {
                    "name": "allow-webhooks",
                    "namespace": ns,
                    "labels": _labels(options, "network-policy"),
                },
            }
        )
    for component in sorted(options.components + options.components_extra):
        args = [
            f"--watch-all-namespaces={str(options.watch_all_namespaces).lower()}",
            f"--log-level={options.log_level}",
            "--events-addr=http://notification-controller."
            f"{ns}.svc.{options.cluster_domain}./",
        ]
        pod_spec: dict[str, Any] = {
            "containers": [
                {
                    "name": "manager",
                    "image": f"{options.registry}/{component}:v1.0.0",
                    "args": args,
                }
            ],
        }
        if options.toleration_keys:
            pod_spec["tolerations"] = [
                {"key": key, "operator": "Exists"} for key in options.toleration_keys
            ]
        if options.image_pull_secret:
            pod_spec["imagePullSecrets"] = [{"name": options.image_pull_secret}]
        docs.append(
            {
                "apiVersion": "apps/v1",
                "kind": "Deployment",
                "metadata": {
                    "name": component,
                    "namespace": ns,
                    "labels": _labels(options, component),
                },
                "spec": {"template": {"spec": pod_spec}},
            }
        )
    return "".join("---\n" + yaml.safe_dump(doc, sort_keys=True) for doc in docs)


class FakeGenerator(InstallGenerator):
    """Install generator that does not need the flux binary."""

    def __init__(self) -> None:
        self.calls: list[InstallOptions] = []

    async def generate(self, options: InstallOptions) -> str:
        self.calls.append(options)
        return render_install(options)


class FakeWorkingCopy(WorkingCopy):
    """Working copy held in memory that records commits and pushes."""

    def __init__(
        self,
        files: dict[str, str] | None = None,
        push_errors: Iterable[Exception] = (),
    ) -> None:
        self.files = dict(files or {})
        self.commits: list[str] = []
        self.pushes = 0
        self.rebases = 0
        self.push_errors = list(push_errors)

    async def read(self, path: str) -> str | None:
        return self.files.get(path)

    async def commit(
        self,
        intent: CommitIntent,
        writes: dict[str, str],
        deletes: Iterable[str],
        allow_empty: bool = False,
    ) -> bool:
        before = dict(self.files)
        for path in deletes:
            self.files.pop(path, None)
        self.files.update(writes)
        if self.files == before and not allow_empty:
            return False
        self.commits.append(intent.full_message)
        return True

    async def push(self) -> None:
        self.pushes += 1
        if self.push_errors:
            raise self.push_errors.pop(0)

    async def rebase(self) -> None:
        self.rebases += 1


class FakeRepository(Repository):
    """Repository whose clones all share one in-memory working copy."""

    def __init__(self, working_copy: FakeWorkingCopy | None = None) -> None:
        self.working_copy = working_copy or FakeWorkingCopy()

    @asynccontextmanager
    async def clone(self) -> AsyncGenerator[WorkingCopy, None]:
        yield self.working_copy


@pytest.fixture
def cluster() -> FakeCluster:
    """Create an in-memory cluster."""
    return FakeCluster()


@pytest.fixture
def generator() -> FakeGenerator:
    """Create an install generator that does not call flux."""
    return FakeGenerator()


@pytest.fixture(name="tmp_dir")
def tmp_dir_fixture() -> Generator[Path, None, None]:
    """Create a temporary directory for test resources."""
    with tempfile.TemporaryDirectory() as td:
        yield Path(td)


@pytest.fixture(name="remote_repo_dir")
def remote_repo_dir_fixture(tmp_dir: Path) -> Path:
    """Create an empty bare repository acting as the remote."""
    path = tmp_dir / "remote.git"
    repo = git.Repo.init(path, bare=True)
    repo.git.symbolic_ref("HEAD", "refs/heads/main")
    return path


@pytest.fixture(name="git_config")
def git_config_fixture(remote_repo_dir: Path) -> GitConfig:
    """Create a git configuration pointing at the local remote."""
    return GitConfig(url=f"file://{remote_repo_dir}", author_email="flux@example.com")


@pytest.fixture(name="config")
def config_fixture(git_config: GitConfig) -> Configuration:
    """Create a configuration using the local remote."""
    return Configuration(git=git_config)


def remote_files(remote_repo_dir: Path, branch: str = "main") -> dict[str, str]:
    """Return the files at the head of a branch of the remote."""
    repo = git.Repo(remote_repo_dir)
    return {
        blob.path: blob.data_stream.read().decode("utf-8")
        for blob in repo.commit(branch).tree.traverse()
        if blob.type == "blob"
    }


def remote_messages(remote_repo_dir: Path, branch: str = "main") -> list[str]:
    """Return the commit messages of a branch, newest first."""
    repo = git.Repo(remote_repo_dir)
    return [str(c.message).strip() for c in repo.iter_commits(branch)]
