"""Capability protocols for the session store and its collaborators.

Callers depend on the narrowest protocol they need: the hook handler only
needs SessionStateUpdater and SessionReader, migration needs a full
SessionRepository for each storage root.
"""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path
from typing import Protocol

from roost.core.session import Session, SessionCollection, SessionState


class SessionReader(Protocol):
    def get(self, name: str) -> Session: ...

    def list(self, include_archived: bool = False) -> list[Session]: ...

    def get_sessions_for_repo(
        self, repo_info: str, include_archived: bool = True
    ) -> list[Session]: ...


class SessionWriter(Protocol):
    def add(self, session: Session) -> None: ...

    def delete(self, name: str) -> None: ...

    def link_shell_session(self, parent_name: str, shell_name: str) -> None: ...

    def swap_positions(self, name_a: str, name_b: str) -> None: ...


class SessionStateUpdater(Protocol):
    def update_state(self, name: str, state: SessionState, execution_id: str) -> None: ...

    def update_execution_id(self, name: str, execution_id: str) -> None: ...

    def update_claude_dir(self, name: str, claude_dir: str) -> None: ...

    def update_repo_source(self, name: str, repo_source: str) -> None: ...

    def update_skip_permissions(self, name: str, skip: bool) -> None: ...

    def update_debug_claude(self, name: str, debug: bool) -> None: ...


class SessionMetadataUpdater(Protocol):
    def rename(self, old_name: str, new_name: str, new_display_name: str) -> None: ...

    def toggle_archive(self, name: str) -> None: ...

    def toggle_flag(self, name: str) -> None: ...

    def update_comment(self, name: str, comment: str) -> None: ...

    def update_display_name(self, name: str, display_name: str) -> None: ...

    def update_status(self, name: str, status: str | None) -> None: ...


class SessionStateLoader(Protocol):
    def load_state(self, include_archived: bool = False) -> SessionCollection: ...

    def save_state(self, collection: SessionCollection) -> None: ...


class SessionRepository(
    SessionReader,
    SessionWriter,
    SessionStateUpdater,
    SessionMetadataUpdater,
    SessionStateLoader,
    Protocol,
):
    def close(self) -> None: ...


class ProcessTerminator(Protocol):
    """Ends the multiplexer session backing a roost session."""

    def kill_session(self, name: str) -> None: ...


class RemoteInspector(Protocol):
    def get_remote_url(self, path: str | Path) -> str: ...


class WorktreeRepairer(Protocol):
    def repair_worktrees(
        self, main_repo_path: str | Path, worktree_paths: Sequence[str | Path]
    ) -> None: ...


class GitCollaborator(RemoteInspector, WorktreeRepairer, Protocol):
    pass
