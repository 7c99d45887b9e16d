"""Shared fixtures: an isolated project tree and a fast Config."""

import sys
from pathlib import Path

import pytest

from sitectl.config import Config


@pytest.fixture(autouse=True)
def isolated_data_dir(tmp_path, monkeypatch):
    data_dir = tmp_path / "data"
    monkeypatch.setenv("SITECTL_DATA_DIR", str(data_dir))
    return data_dir


@pytest.fixture
def project(tmp_path) -> Path:
    root = tmp_path / "site"
    (root / "jekyll-site").mkdir(parents=True)
    (root / "vapor-server").mkdir()
    (root / "docker").mkdir()
    return root


@pytest.fixture
def cfg(project, tmp_path) -> Config:
    return Config(
        project_root=project,
        data_dir=tmp_path / "data",
        monitor_interval=0.5,
        stop_timeout=2,
        kill_timeout=2,
        default_grace_period=0.3,
        health_interval=2,
        health_max_attempts=30,
        health_timeout=5,
        deploy_settle_delay=0,
    )


def python_command(code: str) -> list[str]:
    """Argv running a snippet in a fresh interpreter."""
    return [sys.executable, "-c", code]
