"""Shared fixtures: isolated NANOBOT_HOME, workspace, registry and store."""

import pytest

from agent.memory import MemoryManager
from agent.session_store import SessionStore
from tools.registry import ToolRegistry


@pytest.fixture(autouse=True)
def nanobot_home(tmp_path, monkeypatch):
    """Keep every test away from the real ~/.nanobot."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("NANOBOT_HOME", str(home))
    monkeypatch.setattr("cron.jobs.CRON_DIR", home / "cron")
    monkeypatch.setattr("cron.jobs.JOBS_FILE", home / "cron" / "jobs.json")
    monkeypatch.setattr("cron.jobs.OUTPUT_DIR", home / "cron" / "output")
    monkeypatch.setattr("gateway.hooks.HOOKS_DIR", home / "hooks")
    return home


@pytest.fixture()
def workspace(tmp_path):
    ws = tmp_path / "workspace"
    ws.mkdir()
    return ws


@pytest.fixture()
def registry():
    return ToolRegistry(default_timeout=5.0)


@pytest.fixture()
def store(workspace):
    return SessionStore(workspace)


@pytest.fixture()
def memory(workspace):
    return MemoryManager(workspace)
