"""Move a repository's sessions from one storage root to another.

There is no transaction spanning two SQLite files and the filesystem, so a
move runs as an ordered list of steps with per-step failure handling:

1. end the tmux sessions of every affected session
2. move the shared ``.main`` checkout (or reuse an identical one)
3. per session: rewrite its paths and move its worktree
4. per session: insert it into the destination store
5. repair git worktree links once
6. delete migrated sessions from the source store

Steps are ordered so that a failure leaves a duplicate, never a loss, and the
whole move can be re-run against the same inputs.
"""

import dataclasses
import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path

import click

from roost.core.capabilities import (
    GitCollaborator,
    ProcessTerminator,
    SessionReader,
    SessionRepository,
)
from roost.core.fsops import move_directory
from roost.core.git import GitError, is_same_repo
from roost.core.paths import expand_path
from roost.core.session import Session, SessionExistsError, SessionNotFoundError
from roost.core.store import SessionStore, StoreError
from roost.core.tmux import TmuxError

logger = logging.getLogger(__name__)


class MigrationError(Exception):
    """Raised when a move cannot start or its shared checkout cannot move."""


class InvalidRepoInfoError(MigrationError):
    """Raised when a repository identifier is not ``owner/repo``."""


class NoSessionsError(MigrationError):
    """Raised when the source root has no sessions for the repository."""


class RepoPathMismatchError(MigrationError):
    """Raised when sessions of one repository point at different checkouts."""


class RemoteMismatchError(MigrationError):
    """Raised when the destination checkout belongs to another repository."""


@dataclass
class MigrationResult:
    """Outcome of a move.

    Attributes:
        moved: Sessions now present in the destination store, in move order
        failed: Session name -> reason, for sessions left in the source
        warnings: Non-fatal problems (tmux, repair, source cleanup, reuse)
        moved_worktrees: Destination paths of worktrees that were moved
    """

    moved: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    moved_worktrees: list[Path] = field(default_factory=list)

    @property
    def moved_count(self) -> int:
        return len(self.moved)

    @property
    def ok(self) -> bool:
        return not self.failed


def validate_repo_info(repo_info: str) -> None:
    """Check that a repository identifier looks like ``owner/repo``.

    Raises:
        InvalidRepoInfoError: If it does not.
    """
    owner, sep, repo = repo_info.partition("/")
    if not sep or not owner or not repo:
        raise InvalidRepoInfoError(
            f"invalid repository format {repo_info!r}, expected owner/repo"
        )


def _replace_prefix(value: str, source: str, dest: str) -> str:
    return value.replace(source, dest, 1) if value else value


def rewrite_session_paths(
    session: Session, source_home: str | Path, dest_home: str | Path
) -> Session:
    """Return a copy of a session with its paths moved to another root.

    The first occurrence of the source root is replaced in the worktree and
    checkout paths, and in the Claude directory when it lives under the
    source root. The shell session is rewritten the same way.
    """
    source = str(source_home)
    dest = str(dest_home)

    claude_dir = session.claude_dir
    if claude_dir and source in claude_dir:
        claude_dir = _replace_prefix(claude_dir, source, dest)

    shell = session.shell_session
    if shell is not None:
        shell = rewrite_session_paths(shell, source, dest)

    return dataclasses.replace(
        session,
        worktree_path=_replace_prefix(session.worktree_path, source, dest),
        repo_path=_replace_prefix(session.repo_path, source, dest),
        claude_dir=claude_dir,
        shell_session=shell,
    )


class MigrationService:
    """Moves sessions between storage roots.

    Args:
        terminator: Ends tmux sessions before their directories move
        git: Reads remote URLs and repairs worktree links
        store_factory: Opens the store for a storage root
        out: Receives user-facing progress lines
    """

    def __init__(
        self,
        terminator: ProcessTerminator,
        git: GitCollaborator,
        store_factory: Callable[[Path], SessionRepository] = SessionStore.for_home,
        out: Callable[[str], None] = click.echo,
    ) -> None:
        self._terminator = terminator
        self._git = git
        self._store_factory = store_factory
        self._out = out

    @contextmanager
    def _open_store(self, home: Path) -> Iterator[SessionRepository]:
        store = self._store_factory(home)
        try:
            yield store
        finally:
            store.close()

    def _warn(self, result: MigrationResult, message: str) -> None:
        logger.warning(message)
        result.warnings.append(message)
        self._out(f"⚠ Warning: {message}")

    def _fail(self, result: MigrationResult, name: str, reason: str) -> None:
        logger.error("Failed to move session %s: %s", name, reason)
        result.failed[name] = reason
        self._out(f"✗ Failed to move '{name}': {reason}")

    def get_sessions_for_repo(
        self, home: str | Path, repo_info: str, include_archived: bool = True
    ) -> list[Session]:
        """List the sessions of one repository in a storage root."""
        with self._open_store(expand_path(home)) as store:
            return store.get_sessions_for_repo(repo_info, include_archived=include_archived)

    def move_repository_between_homes(
        self,
        repo_info: str,
        source_home: str | Path,
        dest_home: str | Path,
    ) -> MigrationResult:
        """Move every session of ``repo_info`` from one root to another.

        Archived sessions move with the rest of the group since they
        reference the same checkout.

        Returns:
            MigrationResult. Sessions that failed individually are listed in
            ``failed`` and remain in the source store.

        Raises:
            InvalidRepoInfoError: If repo_info is not ``owner/repo``.
            NoSessionsError: If the source has no session for repo_info.
            RepoPathMismatchError: If the sessions use different checkouts.
            RemoteMismatchError: If the destination checkout is another repo.
            MigrationError: If the roots are unusable or the shared checkout
                could not be moved.
        """
        validate_repo_info(repo_info)
        source_home = expand_path(source_home)
        dest_home = expand_path(dest_home)

        if not source_home.is_dir():
            raise MigrationError(f"source root {source_home} does not exist")
        if source_home.resolve() == dest_home.resolve():
            raise MigrationError("source and destination roots are the same")

        logger.info("Moving repository %s from %s to %s", repo_info, source_home, dest_home)
        dest_home.mkdir(parents=True, exist_ok=True)
        result = MigrationResult()

        with self._open_store(source_home) as source_store:
            sessions = source_store.get_sessions_for_repo(repo_info, include_archived=True)
            if not sessions:
                raise NoSessionsError(f"no sessions found for repository {repo_info}")

            repo_paths = sorted({s.repo_path for s in sessions})
            if len(repo_paths) > 1:
                raise RepoPathMismatchError(
                    f"sessions of {repo_info} use different checkouts: {', '.join(repo_paths)}"
                )
            logger.info("Found %d session(s) for %s", len(sessions), repo_info)

            for session in sessions:
                self._kill(session, result)

            main_repo_path = self._move_main_checkout(
                repo_paths[0], source_home, dest_home, result
            )

            with self._open_store(dest_home) as dest_store:
                for session in sessions:
                    self._relocate(session, source_home, dest_home, dest_store, result)

            if main_repo_path and result.moved_worktrees:
                self._out("Repairing git worktree references...")
                try:
                    self._git.repair_worktrees(main_repo_path, result.moved_worktrees)
                    self._out("✓ Repaired worktree references")
                except (GitError, OSError) as e:
                    self._warn(result, f"failed to repair worktrees: {e}")

            if result.moved:
                self._out("Cleaning up source database...")
            for name in result.moved:
                try:
                    source_store.delete(name)
                except (SessionNotFoundError, StoreError) as e:
                    self._warn(result, f"failed to delete session {name} from source: {e}")

        logger.info(
            "Moved %d session(s) of %s, %d failed",
            result.moved_count,
            repo_info,
            len(result.failed),
        )
        return result

    def move_session(
        self,
        session: Session,
        source_home: str | Path,
        dest_home: str | Path,
        dest_store: SessionRepository,
    ) -> MigrationResult:
        """Move one session without group checks or worktree repair.

        The session is not removed from the source store.
        """
        result = MigrationResult()
        self._kill(session, result)
        self._relocate(
            session, expand_path(source_home), expand_path(dest_home), dest_store, result
        )
        return result

    def verify_session(self, name: str, dest_store: SessionReader) -> Session:
        """Confirm a session exists in the destination store.

        Raises:
            MigrationError: If it does not.
        """
        try:
            session = dest_store.get(name)
        except SessionNotFoundError as e:
            raise MigrationError(f"session {name} not found in destination") from e
        logger.debug("Verified session %s in destination", name)
        return session

    def _kill(self, session: Session, result: MigrationResult) -> None:
        names = [session.name]
        if session.shell_session is not None:
            names.append(session.shell_session.name)
        for name in names:
            self._out(f"Killing tmux session '{name}'...")
            try:
                self._terminator.kill_session(name)
            except (TmuxError, OSError) as e:
                self._warn(result, f"failed to kill tmux session {name}: {e}")

    def _move_main_checkout(
        self,
        main_repo_path: str,
        source_home: Path,
        dest_home: Path,
        result: MigrationResult,
    ) -> Path | None:
        """Move the shared checkout and return its destination path."""
        if not main_repo_path:
            self._warn(result, "sessions have no shared checkout path")
            return None

        source = Path(main_repo_path)
        dest = Path(_replace_prefix(main_repo_path, str(source_home), str(dest_home)))
        if source == dest:
            logger.info("Checkout %s is outside the source root, leaving it in place", source)
            return dest

        if dest.exists():
            if not source.exists():
                self._warn(result, f"checkout already moved to {dest}, reusing it")
                return dest

            source_remote = self._git.get_remote_url(source)
            dest_remote = self._git.get_remote_url(dest)
            if not source_remote or not dest_remote:
                raise RemoteMismatchError(
                    f"checkout already exists at {dest} and its remote could not be compared"
                )
            if not is_same_repo(source_remote, dest_remote):
                raise RemoteMismatchError(
                    f"checkout at {dest} is a different repository "
                    f"(source: {source_remote}, destination: {dest_remote})"
                )
            self._out("✓ Using existing main repository at destination (same repository)")
            logger.info("Reusing existing checkout at %s", dest)
            return dest

        self._out("Moving main repository directory...")
        try:
            move_directory(source, dest)
        except OSError as e:
            raise MigrationError(f"failed to move main repository directory: {e}") from e
        self._out("✓ Moved main repository directory")
        return dest

    def _move_worktree(self, source: Path, dest: Path, result: MigrationResult) -> bool:
        """Move one worktree; return False when there was nothing to move."""
        if source == dest:
            return False
        if not source.exists() and dest.exists():
            self._warn(result, f"worktree already at {dest}, treating it as moved")
            return True
        move_directory(source, dest)
        return True

    def _destination_conflict(
        self, moved: Session, dest_store: SessionReader, require: bool = False
    ) -> str | None:
        """Describe why the destination cannot take this session, if it cannot.

        A destination row with the same name is only accepted as an earlier
        run of this move when its repository and worktree match. With
        ``require``, the top-level row must already be present.
        """
        candidates = [moved]
        if moved.shell_session is not None:
            candidates.append(moved.shell_session)

        for candidate in candidates:
            try:
                existing = dest_store.get(candidate.name)
            except SessionNotFoundError:
                if require and candidate is moved:
                    return f"session {candidate.name} could not be added to destination"
                continue
            if (
                existing.repo_info != candidate.repo_info
                or existing.worktree_path != candidate.worktree_path
            ):
                return (
                    f"a different session named {candidate.name} already exists in "
                    f"destination (repository {existing.repo_info or 'unknown'}, "
                    f"worktree {existing.worktree_path or 'none'})"
                )
        return None

    def _relocate(
        self,
        session: Session,
        source_home: Path,
        dest_home: Path,
        dest_store: SessionRepository,
        result: MigrationResult,
    ) -> None:
        name = session.name
        moved = rewrite_session_paths(session, source_home, dest_home)

        try:
            conflict = self._destination_conflict(moved, dest_store)
        except StoreError as e:
            self._fail(result, name, f"failed to read destination: {e}")
            return
        if conflict:
            self._fail(result, name, conflict)
            return

        pairs = [(session.worktree_path, moved.worktree_path)]
        if session.shell_session is not None and moved.shell_session is not None:
            pairs.append((session.shell_session.worktree_path, moved.shell_session.worktree_path))

        worktrees: list[Path] = []
        for source_path, dest_path in pairs:
            if not source_path or Path(dest_path) in worktrees:
                continue
            self._out(f"Moving worktree '{name}'...")
            try:
                if self._move_worktree(Path(source_path), Path(dest_path), result):
                    worktrees.append(Path(dest_path))
            except OSError as e:
                self._fail(result, name, f"failed to move worktree: {e}")
                return

        try:
            dest_store.add(moved)
        except SessionExistsError:
            try:
                conflict = self._destination_conflict(moved, dest_store, require=True)
            except StoreError as e:
                conflict = f"failed to read destination: {e}"
            if conflict:
                self._fail(result, name, conflict)
                return
            self._warn(result, f"session {name} already exists in destination, keeping it")
        except (StoreError, ValueError) as e:
            self._fail(result, name, f"failed to add session to destination: {e}")
            return

        result.moved.append(name)
        result.moved_worktrees.extend(worktrees)
        self._out(f"✓ Moved session '{name}'")
