"""tmux wrapper for roost.

Each roost session runs in a tmux session of the same name. The core only
needs to end those sessions (before moving their worktrees), so this module
stays small.
"""

import logging
import os
import subprocess

logger = logging.getLogger(__name__)

# Socket name for tmux isolation (used for testing)
# Set ROOST_TMUX_SOCKET to use a separate tmux server
TMUX_SOCKET_ENV = "ROOST_TMUX_SOCKET"


def _tmux_cmd(args: list[str]) -> list[str]:
    """Build a tmux command, optionally with a custom socket.

    If ROOST_TMUX_SOCKET is set, adds -L <socket> to use an isolated server.
    """
    socket = os.environ.get(TMUX_SOCKET_ENV)
    if socket:
        return ["tmux", "-L", socket] + args
    return ["tmux"] + args


def _target(name: str) -> str:
    # "=" disables tmux's prefix matching on session names.
    return f"={name}"


class TmuxError(Exception):
    """Raised when a tmux command fails."""

    pass


def is_installed() -> bool:
    """Check if tmux is installed on the system."""
    try:
        result = subprocess.run(_tmux_cmd(["-V"]), capture_output=True)
    except FileNotFoundError:
        return False
    return result.returncode == 0


def has_session(name: str) -> bool:
    """Check if a tmux session exists.

    Args:
        name: Session name to check.

    Returns:
        True if session exists, False otherwise.
    """
    result = subprocess.run(
        _tmux_cmd(["has-session", "-t", _target(name)]),
        capture_output=True,
    )
    return result.returncode == 0


def kill_session(name: str) -> None:
    """Kill a tmux session.

    Args:
        name: Session name to kill.

    Raises:
        TmuxError: If tmux command fails.
    """
    result = subprocess.run(
        _tmux_cmd(["kill-session", "-t", _target(name)]),
        capture_output=True,
        text=True,
    )
    if result.returncode != 0:
        raise TmuxError(f"Failed to kill session {name}: {result.stderr.strip()}")


class TmuxTerminator:
    """Ends the tmux session backing a roost session.

    A session that is not running is not an error.
    """

    def kill_session(self, name: str) -> None:
        if not has_session(name):
            logger.debug("tmux session %s not running", name)
            return
        kill_session(name)
        logger.info("Killed tmux session %s", name)
