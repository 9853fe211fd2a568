"""Shared pytest fixtures for roost tests."""

import subprocess

import pytest

from roost.core.store import SessionStore


@pytest.fixture
def roost_home(tmp_path, monkeypatch):
    """Point ROOST_HOME at a temporary directory.

    Also clears the hook environment so a parent roost session does not leak
    into tests.
    """
    home = tmp_path / "roost-home"
    home.mkdir()
    monkeypatch.setenv("ROOST_HOME", str(home))
    monkeypatch.delenv("ROOST_SESSION_NAME", raising=False)
    monkeypatch.delenv("ROOST_EXECUTION_ID", raising=False)
    monkeypatch.delenv("ROOST_DEBUG", raising=False)
    return home


@pytest.fixture
def store(roost_home):
    """A SessionStore over $ROOST_HOME/state.db."""
    s = SessionStore.for_home(roost_home)
    yield s
    s.close()


@pytest.fixture
def tmux_socket(monkeypatch):
    """Run tmux commands against an isolated server.

    Without socket isolation, tests could kill the developer's real sessions.
    """
    socket = "roost-test"
    monkeypatch.setenv("ROOST_TMUX_SOCKET", socket)
    subprocess.run(["tmux", "-L", socket, "kill-server"], capture_output=True)
    yield socket
    subprocess.run(["tmux", "-L", socket, "kill-server"], capture_output=True)
