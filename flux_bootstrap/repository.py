"""Synchronization of the generated manifests into a git repository.

A `Repository` hands out ephemeral `WorkingCopy` clones. `synchronize` writes
the desired files into a clone, removes files that are no longer generated,
commits and pushes, retrying pushes that were rejected or hit a transient
network failure.
"""

from abc import ABC, abstractmethod
import asyncio
from collections.abc import AsyncGenerator, Iterable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass, replace
from io import BytesIO
import logging
import os
from pathlib import Path, PurePosixPath
import re
from shutil import rmtree
import tempfile
from urllib.parse import quote, urlparse, urlunparse

import aiofiles
import git
from gitdb import IStream
from slugify import slugify

from .config import Configuration, GitConfig
from .context import trace_context
from .exceptions import (
    PushRejectedException,
    RepositoryException,
    RetryableRepositoryException,
)
from .gpg import CommitSigner, embed_signature
from .retry import Backoff, retry

__all__ = [
    "CommitIntent",
    "WorkingCopy",
    "Repository",
    "GitRepositoryClient",
    "synchronize",
    "write_files",
]

_LOGGER = logging.getLogger(__name__)

FileSet = dict[str, str]

REDEPLOY_MESSAGE = "Redeploy Flux"

_REJECTED = re.compile(
    r"\[rejected\]|\[remote rejected\]|non-fast-forward|fetch first|"
    r"failed to update ref|cannot lock ref|stale info",
    re.IGNORECASE,
)
_TRANSIENT = re.compile(
    r"could not resolve host|connection (reset|refused|timed out)|timed out|"
    r"early eof|the remote end hung up unexpectedly|rpc failed|"
    r"temporary failure|service unavailable|502|503|504",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class CommitIntent:
    """The author, message and optional signer of a commit."""

    author_name: str
    author_email: str | None
    message: str
    signer: CommitSigner | None = None
    appendix: str | None = None

    @classmethod
    def from_config(cls, config: GitConfig, message: str) -> "CommitIntent":
        signer = None
        if config.gpg_key_ring:
            signer = CommitSigner(
                key_ring=config.gpg_key_ring,
                passphrase=config.gpg_passphrase,
                key_id=config.gpg_key_id,
            )
        return cls(
            author_name=config.author_name,
            author_email=config.author_email,
            message=message,
            signer=signer,
            appendix=config.commit_message_appendix,
        )

    @property
    def full_message(self) -> str:
        if self.appendix:
            return f"{self.message}\n\n{self.appendix}"
        return self.message


class WorkingCopy(ABC):
    """A local clone of the configured branch."""

    @abstractmethod
    async def read(self, path: str) -> str | None:
        """Return the content of a file, or None when it does not exist."""

    @abstractmethod
    async def commit(
        self,
        intent: CommitIntent,
        writes: FileSet,
        deletes: Iterable[str],
        allow_empty: bool = False,
    ) -> bool:
        """Write and remove files and commit, returning False if nothing changed."""

    @abstractmethod
    async def push(self) -> None:
        """Push the branch, raising RetryableRepositoryException when retryable."""

    @abstractmethod
    async def rebase(self) -> None:
        """Rebase local commits onto the current remote branch."""


class Repository(ABC):
    """A remote repository that can be cloned."""

    @abstractmethod
    def clone(self) -> AbstractAsyncContextManager[WorkingCopy]:
        """Clone the branch into an ephemeral working copy."""


def _check_path(path: str) -> PurePosixPath:
    rel = PurePosixPath(path)
    if rel.is_absolute() or ".." in rel.parts or not rel.parts:
        raise RepositoryException(f"Refusing to write outside the repository: {path}")
    return rel


def _classify(
    action: str, err: git.GitCommandError, redact: list[str]
) -> RepositoryException:
    """Translate a git failure into a retryable or terminal exception."""
    detail = f"{err.stderr or ''} {err.stdout or ''}".strip() or str(err)
    for secret in redact:
        detail = detail.replace(secret, "***")
    message = f"Failed to {action}: {detail}"
    if _REJECTED.search(detail):
        return PushRejectedException(message)
    if _TRANSIENT.search(detail):
        return RetryableRepositoryException(message)
    return RepositoryException(message)


class GitWorkingCopy(WorkingCopy):
    """WorkingCopy backed by a GitPython repository."""

    def __init__(
        self, repo: git.Repo, branch: str, redact: list[str] | None = None
    ) -> None:
        self._repo = repo
        self._branch = branch
        self._redact = redact or []
        self._identity: dict[str, str] = {}

    @property
    def root(self) -> Path:
        return Path(self._repo.working_tree_dir)  # type: ignore[arg-type]

    async def read(self, path: str) -> str | None:
        full_path = self.root / _check_path(path)
        if not full_path.exists():
            return None
        async with aiofiles.open(full_path, mode="r", newline="") as f:
            return await f.read()

    async def _write(self, path: str, content: str) -> None:
        full_path = self.root / _check_path(path)
        full_path.parent.mkdir(parents=True, exist_ok=True)
        async with aiofiles.open(full_path, mode="w", newline="") as f:
            await f.write(content)

    def _stage_and_commit(self, intent: CommitIntent, allow_empty: bool) -> bool:
        repo = self._repo
        env = {
            "GIT_AUTHOR_NAME": intent.author_name,
            "GIT_AUTHOR_EMAIL": intent.author_email or "",
            "GIT_COMMITTER_NAME": intent.author_name,
            "GIT_COMMITTER_EMAIL": intent.author_email or "",
        }
        args = ["--no-verify", "--no-gpg-sign", "-m", intent.full_message]
        if allow_empty:
            args.append("--allow-empty")
        try:
            repo.git.add("--all")
            if not repo.git.status("--porcelain") and not allow_empty:
                return False
            self._identity = env
            repo.git.commit(*args, env={**os.environ, **env})
        except git.GitCommandError as err:
            raise _classify("commit", err, self._redact) from err
        _LOGGER.info(
            "Created commit %s: %s", repo.head.commit.hexsha[:8], intent.message
        )
        return True

    def _replace_head(self, raw: bytes) -> str:
        istream = self._repo.odb.store(
            IStream(git.Commit.type, len(raw), BytesIO(raw))
        )
        self._repo.git.update_ref("HEAD", istream.hexsha)
        return istream.hexsha

    async def _sign_head(self, signer: CommitSigner) -> None:
        head = self._repo.head.commit
        raw = self._repo.odb.stream(head.binsha).read()
        signature = await signer.sign(raw)
        hexsha = await asyncio.to_thread(
            self._replace_head, embed_signature(raw, signature)
        )
        _LOGGER.debug("Signed commit %s", hexsha[:8])

    async def commit(
        self,
        intent: CommitIntent,
        writes: FileSet,
        deletes: Iterable[str],
        allow_empty: bool = False,
    ) -> bool:
        for path in deletes:
            full_path = self.root / _check_path(path)
            if not full_path.exists():
                _LOGGER.debug("File %s already removed", path)
                continue
            full_path.unlink()
        for path, content in writes.items():
            await self._write(path, content)
        if not await asyncio.to_thread(self._stage_and_commit, intent, allow_empty):
            _LOGGER.debug("No changes to commit")
            return False
        if intent.signer:
            await self._sign_head(intent.signer)
        return True

    async def push(self) -> None:
        try:
            await asyncio.to_thread(
                self._repo.git.push, "origin", f"HEAD:refs/heads/{self._branch}"
            )
        except git.GitCommandError as err:
            raise _classify("push", err, self._redact) from err
        _LOGGER.info("Pushed branch %s", self._branch)

    def _pull_rebase(self) -> None:
        try:
            self._repo.git.pull(
                "--rebase",
                "origin",
                self._branch,
                env={**os.environ, **self._identity},
            )
        except git.GitCommandError as err:
            error = _classify("rebase", err, self._redact)
            if isinstance(error, RetryableRepositoryException) and not isinstance(
                error, PushRejectedException
            ):
                raise error from err
            if (Path(self._repo.git_dir) / "rebase-merge").exists() or (
                Path(self._repo.git_dir) / "rebase-apply"
            ).exists():
                self._repo.git.rebase("--abort")
            raise RepositoryException(
                f"Failed to rebase onto remote branch {self._branch}: {error}"
            ) from err

    async def rebase(self) -> None:
        _LOGGER.debug("Rebasing onto origin/%s", self._branch)
        await asyncio.to_thread(self._pull_rebase)


def _auth(config: GitConfig, auth_dir: Path) -> tuple[str, dict[str, str], list[str]]:
    """Return the clone url, git environment and secrets to redact."""
    env: dict[str, str] = {"GIT_TERMINAL_PROMPT": "0"}
    redact: list[str] = []
    url = config.url
    parsed = urlparse(url)
    if parsed.scheme in ("http", "https") and config.http:
        if config.http.password:
            netloc = (
                f"{quote(config.http.username, safe='')}:"
                f"{quote(config.http.password, safe='')}@{parsed.hostname}"
            )
            if parsed.port:
                netloc += f":{parsed.port}"
            url = urlunparse(parsed._replace(netloc=netloc))
            redact.extend(
                [config.http.password, quote(config.http.password, safe="")]
            )
        if config.http.certificate_authority:
            ca_file = auth_dir / "ca.crt"
            ca_file.write_text(config.http.certificate_authority)
            env["GIT_SSL_CAINFO"] = str(ca_file)
    elif parsed.scheme == "ssh" and config.ssh and config.ssh.private_key:
        if config.ssh.password:
            raise RepositoryException(
                "Cloning with a passphrase protected ssh key is not supported"
            )
        key_file = auth_dir / "identity"
        key_file.write_text(config.ssh.private_key)
        key_file.chmod(0o600)
        ssh = ["ssh", "-i", str(key_file), "-o", "IdentitiesOnly=yes"]
        if config.ssh.known_hosts:
            hosts_file = auth_dir / "known_hosts"
            hosts_file.write_text(config.ssh.known_hosts)
            ssh.extend(
                [
                    "-o",
                    f"UserKnownHostsFile={hosts_file}",
                    "-o",
                    "StrictHostKeyChecking=yes",
                ]
            )
        else:
            ssh.extend(["-o", "StrictHostKeyChecking=accept-new"])
        if not parsed.username:
            ssh.extend(["-l", config.ssh.username])
        env["GIT_SSH_COMMAND"] = " ".join(ssh)
    return url, env, redact


def _clone(
    url: str, branch: str, path: Path, env: dict[str, str], redact: list[str]
) -> git.Repo:
    try:
        repo = git.Repo.clone_from(url, path, env=env)
        repo.git.update_environment(**env)
        if repo.git.ls_remote("--heads", "origin", branch):
            repo.git.checkout("-B", branch, f"origin/{branch}")
        elif repo.head.is_valid():
            _LOGGER.info("Creating branch %s", branch)
            repo.git.checkout("-b", branch)
        else:
            _LOGGER.info("Repository is empty, creating branch %s", branch)
            repo.git.symbolic_ref("HEAD", f"refs/heads/{branch}")
    except git.GitCommandError as err:
        raise _classify("clone repository", err, redact) from err
    return repo


def _slugify_url(url: str) -> str:
    path = urlparse(url).path.removesuffix(".git")
    return slugify(path.split("/")[-1] or "repository", max_length=40, separator="-")


class GitRepositoryClient(Repository):
    """Repository implementation using the git command line through GitPython."""

    def __init__(self, config: GitConfig) -> None:
        self._config = config

    @asynccontextmanager
    async def clone(self) -> AsyncGenerator[WorkingCopy, None]:
        tmp_dir = Path(
            tempfile.mkdtemp(prefix=f"flux-bootstrap-{_slugify_url(self._config.url)}-")
        )
        try:
            auth_dir = tmp_dir / "auth"
            auth_dir.mkdir(mode=0o700)
            url, env, redact = _auth(self._config, auth_dir)
            with trace_context(f"Clone {self._config.branch}"):
                repo = await asyncio.to_thread(
                    _clone, url, self._config.branch, tmp_dir / "repo", env, redact
                )
            try:
                yield GitWorkingCopy(repo, self._config.branch, redact)
            finally:
                repo.close()
        finally:
            await asyncio.to_thread(rmtree, tmp_dir, True)


async def push_with_retry(
    working_copy: WorkingCopy, backoff: Backoff | None = None
) -> None:
    """Push, rebasing onto the remote after a rejection."""

    async def _attempt() -> None:
        try:
            await working_copy.push()
        except PushRejectedException:
            await working_copy.rebase()
            raise

    await retry(_attempt, retry_on=(RetryableRepositoryException,), backoff=backoff)


async def _verify(working_copy: WorkingCopy, desired: FileSet) -> None:
    for path, content in desired.items():
        if (actual := await working_copy.read(path)) != content:
            raise RepositoryException(
                f"Repository content of {path} does not match the generated manifest"
                + (" (missing)" if actual is None else "")
            )


async def write_files(
    working_copy: WorkingCopy,
    previous: FileSet,
    desired: FileSet,
    intent: CommitIntent,
    backoff: Backoff | None = None,
) -> FileSet:
    """Converge a working copy from the previous to the desired file set."""
    to_remove = sorted(set(previous) - set(desired))
    stale = sorted(
        path for path, content in desired.items()
        if path in previous and previous[path] != content
    )
    committed = await working_copy.commit(intent, desired, to_remove)
    if not committed and stale:
        _LOGGER.info("Repository is current but %s is stale, redeploying", stale[0])
        committed = await working_copy.commit(
            replace(intent, message=REDEPLOY_MESSAGE), {}, [], allow_empty=True
        )
    if committed:
        await push_with_retry(working_copy, backoff)
    else:
        _LOGGER.debug("Repository already matches, skipping push")
    await _verify(working_copy, desired)
    return dict(desired)


async def synchronize(
    repository: Repository,
    previous: FileSet,
    desired: FileSet,
    intent: CommitIntent,
    backoff: Backoff | None = None,
) -> FileSet:
    """Clone, commit and push so the repository holds exactly the desired files."""
    with trace_context("Synchronize repository"):
        async with repository.clone() as working_copy:
            return await write_files(working_copy, previous, desired, intent, backoff)


def commit_intent(config: Configuration, message: str) -> CommitIntent:
    """Commit intent for the repository of a configuration."""
    return CommitIntent.from_config(config.git, message)
