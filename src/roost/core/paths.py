"""Storage root resolution for roost.

A storage root (``ROOST_HOME``) holds one state database plus the checkouts
its sessions reference:

    $ROOST_HOME/state.db
    $ROOST_HOME/settings.json
    $ROOST_HOME/worktrees/<owner>/<repo>/.main
    $ROOST_HOME/worktrees/<owner>/<repo>/<session>
"""

import os
from pathlib import Path

HOME_ENV = "ROOST_HOME"
DB_FILENAME = "state.db"
MAIN_REPO_DIR = ".main"


def expand_path(path: str | Path) -> Path:
    """Expand a leading ``~`` to the user's home directory."""
    return Path(path).expanduser()


def get_roost_home() -> Path:
    """Get the storage root from ROOST_HOME, defaulting to ~/.roost."""
    if env_home := os.environ.get(HOME_ENV):
        return expand_path(env_home)
    return Path.home() / ".roost"


def get_db_path_for(home: str | Path) -> Path:
    """Get the state database path inside a given storage root."""
    return expand_path(home) / DB_FILENAME


def get_db_path() -> Path:
    return get_db_path_for(get_roost_home())


def get_worktree_path() -> Path:
    return get_roost_home() / "worktrees"


def get_settings_path() -> Path:
    return get_roost_home() / "settings.json"


def get_log_dir() -> Path:
    return get_roost_home() / "logs"
