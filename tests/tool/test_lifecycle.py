"""Tests for the flux-bootstrap lifecycle commands."""

from collections.abc import Generator
from pathlib import Path
from unittest.mock import patch

import pytest

from flux_bootstrap.bootstrap import BootstrapReconciler, BootstrapState
from flux_bootstrap.config import Configuration
from flux_bootstrap.service import BootstrapService
from flux_bootstrap.tool.flux_bootstrap import main

from conftest import FAST_BACKOFF, FakeCluster, FakeGenerator, remote_files


@pytest.fixture(autouse=True)
def service_fixture(cluster: FakeCluster) -> Generator[BootstrapService, None, None]:
    """Connect the commands to the in-memory cluster."""
    service = BootstrapService(
        BootstrapReconciler(
            cluster,
            generator=FakeGenerator(),
            poll_interval=0.01,
            backoff=FAST_BACKOFF,
        )
    )
    with patch(
        "flux_bootstrap.tool.lifecycle.configure", side_effect=lambda **_: service
    ):
        yield service


@pytest.fixture(name="config_file")
def config_file_fixture(tmp_dir: Path, config: Configuration) -> Path:
    path = tmp_dir / "config.yaml"
    path.write_text(config.yaml())
    return path


def test_lifecycle(
    tmp_dir: Path,
    config_file: Path,
    remote_repo_dir: Path,
    cluster: FakeCluster,
) -> None:
    """Test creating, refreshing and deleting an installation."""
    state_file = tmp_dir / "state.yaml"
    main(["create", "--config", str(config_file), "--state", str(state_file)])
    state = BootstrapState.parse_yaml(state_file.read_text())
    assert state.repository_files == remote_files(remote_repo_dir)

    main(["refresh", "--state", str(state_file)])
    assert BootstrapState.parse_yaml(state_file.read_text()) == state

    main(["delete", "--state", str(state_file)])
    assert not state_file.exists()
    assert remote_files(remote_repo_dir) == {}
    assert "Deployment" not in cluster.kinds()


def test_update_immutable(
    tmp_dir: Path,
    config_file: Path,
    config: Configuration,
    capsys: pytest.CaptureFixture[str],
) -> None:
    """Test a failed update reports the error and keeps the state."""
    state_file = tmp_dir / "state.yaml"
    main(["create", "--config", str(config_file), "--state", str(state_file)])
    before = state_file.read_text()

    config.namespace = "gitops"
    config_file.write_text(config.yaml())
    with pytest.raises(SystemExit) as exc_info:
        main(["update", "--config", str(config_file), "--state", str(state_file)])
    assert exc_info.value.code == 1
    assert "requires the resource to be recreated" in capsys.readouterr().err
    assert state_file.read_text() == before


def test_import(tmp_dir: Path, config_file: Path) -> None:
    """Test importing writes a state for an existing installation."""
    main(["create", "--config", str(config_file), "--state", str(tmp_dir / "a.yaml")])
    state_file = tmp_dir / "imported.yaml"
    main(["import", "--namespace", "flux-system", "--state", str(state_file)])
    state = BootstrapState.parse_yaml(state_file.read_text())
    assert state.namespace == "flux-system"
    assert state.configuration
    assert state.configuration.git.author_email is None
