"""Tests for synchronizing files into a git repository."""

from pathlib import Path

import git
import pytest

from flux_bootstrap.config import GitConfig
from flux_bootstrap.exceptions import (
    PushRejectedException,
    RepositoryException,
    RetryableRepositoryException,
)
from flux_bootstrap.repository import (
    CommitIntent,
    GitRepositoryClient,
    push_with_retry,
    synchronize,
    write_files,
)

from conftest import (
    FAST_BACKOFF,
    FakeRepository,
    FakeWorkingCopy,
    remote_files,
    remote_messages,
)

INTENT = CommitIntent(
    author_name="Flux", author_email="flux@example.com", message="Update Flux"
)

FILES = {
    "flux-system/gotk-components.yaml": "components\n",
    "flux-system/gotk-sync.yaml": "sync\n",
    "flux-system/kustomization.yaml": "kustomization\n",
}


def test_commit_message_appendix() -> None:
    """Test the appendix is separated by a blank line."""
    intent = CommitIntent("Flux", None, "Update Flux", appendix="[ci skip]")
    assert intent.full_message == "Update Flux\n\n[ci skip]"
    assert INTENT.full_message == "Update Flux"


def test_commit_intent_from_config() -> None:
    """Test a signer is only created with a key ring."""
    config = GitConfig(url="https://example.com/repo.git")
    assert CommitIntent.from_config(config, "msg").signer is None
    config.gpg_key_ring = "KEYRING"
    config.gpg_key_id = "0xdeadbeefdeadbeef"
    intent = CommitIntent.from_config(config, "msg")
    assert intent.signer
    assert intent.signer.key_id == "0xdeadbeefdeadbeef"


async def test_write_files_initial() -> None:
    """Test writing files into an empty repository commits and pushes once."""
    working_copy = FakeWorkingCopy()
    result = await write_files(working_copy, {}, FILES, INTENT, FAST_BACKOFF)
    assert result == FILES
    assert working_copy.files == FILES
    assert working_copy.commits == ["Update Flux"]
    assert working_copy.pushes == 1


async def test_write_files_unchanged_skips_push() -> None:
    """Test an in-sync repository is not committed or pushed."""
    working_copy = FakeWorkingCopy(FILES)
    result = await write_files(working_copy, FILES, FILES, INTENT, FAST_BACKOFF)
    assert result == FILES
    assert working_copy.commits == []
    assert working_copy.pushes == 0


async def test_write_files_removes_previous_paths() -> None:
    """Test files that are no longer generated are deleted."""
    desired = {f"custom/{path}": content for path, content in FILES.items()}
    working_copy = FakeWorkingCopy({**FILES, "README.md": "readme\n"})
    await write_files(working_copy, FILES, desired, INTENT, FAST_BACKOFF)
    assert working_copy.files == {**desired, "README.md": "readme\n"}
    assert working_copy.pushes == 1


async def test_write_files_stale_content_redeploys() -> None:
    """Test a stale recorded file forces a commit even if the tree is current."""
    working_copy = FakeWorkingCopy(FILES)
    previous = {**FILES, "flux-system/gotk-sync.yaml": ""}
    await write_files(working_copy, previous, FILES, INTENT, FAST_BACKOFF)
    assert working_copy.commits == ["Redeploy Flux"]
    assert working_copy.pushes == 1


async def test_push_retries_rejection() -> None:
    """Test a rejected push is rebased and retried."""
    working_copy = FakeWorkingCopy(
        push_errors=[
            PushRejectedException("rejected"),
            RetryableRepositoryException("Could not resolve host"),
        ]
    )
    await write_files(working_copy, {}, FILES, INTENT, FAST_BACKOFF)
    assert working_copy.pushes == 3
    assert working_copy.rebases == 1


async def test_push_terminal_error() -> None:
    """Test an authentication failure is not retried."""
    working_copy = FakeWorkingCopy(
        push_errors=[RepositoryException("Authentication failed")]
    )
    with pytest.raises(RepositoryException, match="Authentication failed"):
        await write_files(working_copy, {}, FILES, INTENT, FAST_BACKOFF)
    assert working_copy.pushes == 1


async def test_push_retry_exhausted() -> None:
    """Test the last error is raised once the attempts are used up."""
    working_copy = FakeWorkingCopy(
        push_errors=[RetryableRepositoryException(f"timed out {i}") for i in range(10)]
    )
    with pytest.raises(RetryableRepositoryException, match="timed out 4"):
        await push_with_retry(working_copy, FAST_BACKOFF)
    assert working_copy.pushes == 5


async def test_synchronize_fake_repository() -> None:
    """Test synchronize clones the repository and returns the desired files."""
    repository = FakeRepository()
    assert await synchronize(repository, {}, FILES, INTENT, FAST_BACKOFF) == FILES
    assert repository.working_copy.pushes == 1


async def test_git_synchronize(remote_repo_dir: Path, git_config: GitConfig) -> None:
    """Test synchronizing into an empty remote creates the branch."""
    client = GitRepositoryClient(git_config)
    result = await synchronize(client, {}, FILES, INTENT, FAST_BACKOFF)
    assert result == FILES
    assert remote_files(remote_repo_dir) == FILES
    assert remote_messages(remote_repo_dir) == ["Update Flux"]

    commit = git.Repo(remote_repo_dir).commit("main")
    assert commit.author.name == "Flux"
    assert commit.author.email == "flux@example.com"

    # Nothing changed so no new commit is created
    await synchronize(client, FILES, FILES, INTENT, FAST_BACKOFF)
    assert remote_messages(remote_repo_dir) == ["Update Flux"]

    desired = {"clusters/flux-system/kustomization.yaml": "new\n"}
    await synchronize(
        client,
        FILES,
        desired,
        CommitIntent("Flux", None, "Uninstall Flux"),
        FAST_BACKOFF,
    )
    assert remote_files(remote_repo_dir) == desired
    assert remote_messages(remote_repo_dir) == ["Uninstall Flux", "Update Flux"]


async def test_git_clone_missing_file(git_config: GitConfig) -> None:
    """Test reading a file that does not exist."""
    client = GitRepositoryClient(git_config)
    await synchronize(client, {}, FILES, INTENT, FAST_BACKOFF)
    async with client.clone() as working_copy:
        assert await working_copy.read("flux-system/gotk-sync.yaml") == "sync\n"
        assert await working_copy.read("flux-system/missing.yaml") is None
        with pytest.raises(RepositoryException, match="outside the repository"):
            await working_copy.read("../escape.yaml")


async def test_git_push_rejected_then_rebased(
    tmp_dir: Path, remote_repo_dir: Path, git_config: GitConfig
) -> None:
    """Test a push racing with another writer is rebased and retried."""
    client = GitRepositoryClient(git_config)
    await synchronize(client, {}, FILES, INTENT, FAST_BACKOFF)

    async with client.clone() as working_copy:
        assert await working_copy.commit(
            INTENT, {"flux-system/gotk-sync.yaml": "sync v2\n"}, []
        )

        other = git.Repo.clone_from(git_config.url, tmp_dir / "other")
        other.config_writer().set_value("user", "name", "myusername").release()
        other.config_writer().set_value("user", "email", "myemail").release()
        (tmp_dir / "other" / "README.md").write_text("readme\n")
        other.git.add(".")
        other.git.commit(m="Add readme")
        other.git.push("origin", "HEAD:refs/heads/main")

        await push_with_retry(working_copy, FAST_BACKOFF)

    files = remote_files(remote_repo_dir)
    assert files["README.md"] == "readme\n"
    assert files["flux-system/gotk-sync.yaml"] == "sync v2\n"


async def test_git_clone_unreachable(tmp_dir: Path) -> None:
    """Test cloning a repository that does not exist fails."""
    client = GitRepositoryClient(GitConfig(url=f"file://{tmp_dir}/missing.git"))
    with pytest.raises(RepositoryException, match="clone repository"):
        async with client.clone():
            pass


async def test_git_working_copy_removed(git_config: GitConfig) -> None:
    """Test the working copy is deleted after use, even on failure."""
    client = GitRepositoryClient(git_config)
    with pytest.raises(RuntimeError):
        async with client.clone() as working_copy:
            root = working_copy.root  # type: ignore[attr-defined]
            assert root.exists()
            raise RuntimeError("boom")
    assert not root.exists()
