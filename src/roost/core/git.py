"""git helpers used when relocating checkouts.

Only two git operations matter to the persistence core: reading a checkout's
origin URL (to tell whether two checkouts are the same repository) and
repairing worktree links after their directories moved.
"""

import logging
import subprocess
from collections.abc import Sequence
from pathlib import Path

logger = logging.getLogger(__name__)


class GitError(Exception):
    """Raised when a git command fails."""

    pass


def normalize_remote_url(url: str) -> str:
    """Reduce a remote URL to a comparable ``host/owner/repo`` form.

    Handles the common spellings of the same remote:

        https://github.com/Owner/Repo.git -> github.com/owner/repo
        ssh://git@github.com/owner/repo   -> github.com/owner/repo
        git@github.com:owner/repo.git     -> github.com/owner/repo
    """
    url = url.strip()
    url = url.removesuffix("/").removesuffix(".git").removesuffix("/")
    url = url.lower()

    for scheme in ("https://", "http://"):
        if url.startswith(scheme):
            url = url[len(scheme):]
            break

    if url.startswith("ssh://"):
        url = url[len("ssh://"):]
        if "@" in url:
            url = url.split("@", 1)[1]
    elif "@" in url and ":" in url:
        # scp-style: user@host:owner/repo
        host_path = url.split("@", 1)[1]
        url = host_path.replace(":", "/", 1)

    return url


def is_same_repo(url_a: str, url_b: str) -> bool:
    """Check whether two remote URLs name the same repository."""
    return normalize_remote_url(url_a) == normalize_remote_url(url_b)


def get_remote_url(path: str | Path) -> str:
    """Get the origin URL of a checkout, or "" if it has none."""
    try:
        result = subprocess.run(
            ["git", "-C", str(path), "remote", "get-url", "origin"],
            capture_output=True,
            text=True,
            check=True,
        )
    except (subprocess.CalledProcessError, FileNotFoundError):
        return ""
    return result.stdout.strip()


def repair_worktrees(main_repo_path: str | Path, worktree_paths: Sequence[str | Path]) -> None:
    """Re-link moved worktrees with their main checkout.

    Runs ``git worktree repair`` from the main checkout, which must already
    be at its new location.

    Raises:
        GitError: If git exits non-zero.
    """
    if not worktree_paths:
        logger.debug("No worktrees to repair")
        return

    logger.info(
        "Repairing %d worktree reference(s) from %s", len(worktree_paths), main_repo_path
    )
    args = ["git", "-C", str(main_repo_path), "worktree", "repair"]
    args += [str(path) for path in worktree_paths]
    try:
        result = subprocess.run(args, capture_output=True, text=True)
    except FileNotFoundError as e:
        raise GitError("git is not installed") from e
    if result.returncode != 0:
        output = (result.stderr or result.stdout).strip()
        raise GitError(f"git worktree repair failed: {output}")


class GitClient:
    """Remote inspection and worktree repair backed by the git CLI."""

    def get_remote_url(self, path: str | Path) -> str:
        return get_remote_url(path)

    def repair_worktrees(
        self, main_repo_path: str | Path, worktree_paths: Sequence[str | Path]
    ) -> None:
        repair_worktrees(main_repo_path, worktree_paths)
