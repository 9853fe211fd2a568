"""Helpers shared by roost tests."""

import shutil
import subprocess

import pytest

from roost.core.session import Session


def tmux_works() -> bool:
    """Check if tmux can actually start a server and create sessions.

    CI environments may have tmux installed but not be able to run it
    (no PTY, etc.), so installation alone is not enough.
    """
    if shutil.which("tmux") is None:
        return False
    test_socket = "roost-tmux-check"
    result = subprocess.run(
        ["tmux", "-L", test_socket, "new-session", "-d", "-s", "check"],
        capture_output=True,
        text=True,
    )
    if result.returncode != 0:
        return False
    subprocess.run(["tmux", "-L", test_socket, "kill-server"], capture_output=True)
    return True


# Skip markers for tests that shell out
requires_tmux = pytest.mark.skipif(
    not tmux_works(),
    reason="tmux not available or cannot start sessions in this environment",
)
requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


def make_session(name: str, **kwargs) -> Session:
    """Build a session with a display name defaulting to its name."""
    kwargs.setdefault("display_name", name)
    return Session(name=name, **kwargs)
