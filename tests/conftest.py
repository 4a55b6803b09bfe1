"""Pytest fixtures for agent-stream tests."""

import pytest

from stream_backend.infra.config import Config


@pytest.fixture(autouse=True)
def isolated_log(tmp_path, monkeypatch):
    """Keep log lines out of the user's home directory."""
    monkeypatch.setattr(Config, "LOG_PATH", str(tmp_path / "cli.log"))
    monkeypatch.setattr(Config, "DEBUG", True)
    return tmp_path / "cli.log"
