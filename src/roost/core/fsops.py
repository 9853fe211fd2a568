"""Filesystem moves for checkouts and worktrees."""

import errno
import logging
import shutil
from pathlib import Path

logger = logging.getLogger(__name__)


def move_directory(src: str | Path, dst: str | Path) -> None:
    """Move a directory tree, preferring an atomic rename.

    Falls back to copy-then-delete when rename is not possible (for example
    across filesystems). Symlinks are copied as symlinks. Parent directories
    of ``dst`` are created as needed.

    Raises:
        FileNotFoundError: If ``src`` does not exist.
        FileExistsError: If ``dst`` already exists.
        OSError: If the copy or the removal of ``src`` fails.
    """
    src = Path(src)
    dst = Path(dst)

    if not src.exists():
        raise FileNotFoundError(errno.ENOENT, "source directory does not exist", str(src))
    if dst.exists():
        raise FileExistsError(errno.EEXIST, "destination already exists", str(dst))

    dst.parent.mkdir(parents=True, exist_ok=True)

    try:
        src.rename(dst)
        logger.debug("Renamed %s to %s", src, dst)
        return
    except OSError as e:
        logger.debug("Rename %s -> %s failed (%s), copying instead", src, dst, e)

    shutil.copytree(src, dst, symlinks=True)
    shutil.rmtree(src)
    logger.debug("Copied %s to %s and removed the source", src, dst)
