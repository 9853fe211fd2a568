"""Session dataclass and collection for roost."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


class SessionState(str, Enum):
    """Lifecycle state of the agent running inside a session."""

    EXITED = "exited"
    IDLE = "idle"
    WAITING = "waiting"
    WORKING = "working"

    @property
    def symbol(self) -> str:
        return _STATE_SYMBOLS[self]


_STATE_SYMBOLS = {
    SessionState.EXITED: "■",
    SessionState.IDLE: "○",
    SessionState.WAITING: "◐",
    SessionState.WORKING: "●",
}

VALID_STATES = {state.value for state in SessionState}


class SessionNotFoundError(LookupError):
    """Raised when a session (or the row an operation targets) does not exist."""

    def __init__(self, name: str) -> None:
        super().__init__(f"session {name} not found")
        self.name = name


class SessionExistsError(ValueError):
    """Raised when adding or renaming onto a name that is already taken."""

    def __init__(self, name: str) -> None:
        super().__init__(f"session {name} already exists")
        self.name = name


class NestedSessionError(ValueError):
    """Raised when an operation is only valid for top-level sessions."""


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Session:
    """Represents a roost session.

    Attributes:
        name: Unique key, also used as the tmux session name
        display_name: Human label shown in listings
        state: One of idle, working, waiting, exited
        execution_id: Token of the interactive run that last touched the row
        repo_path: Shared checkout root (the ``.main`` directory)
        repo_info: ``owner/repo`` identifier
        repo_source: Original clone source (URL or local path)
        worktree_path: This session's own worktree
        claude_dir: Override for the Claude config directory
        status: Optional workflow status (top-level sessions only)
        position: Rank among top-level sessions, as read from the store
        shell_session: Optional companion shell session (one level deep)
    """

    name: str
    display_name: str = ""
    state: SessionState = SessionState.IDLE
    execution_id: str = ""
    repo_path: str = ""
    repo_info: str = ""
    repo_source: str = ""
    branch_name: str = ""
    worktree_path: str = ""
    claude_dir: str = ""
    initial_prompt: str = ""
    comment: str = ""
    status: str | None = None
    is_flagged: bool = False
    is_archived: bool = False
    allow_dangerously_skip_permissions: bool = False
    debug_claude: bool = False
    position: int = 0
    shell_session: "Session | None" = None
    last_updated: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        """Validate name, state and nesting."""
        if not self.name:
            raise ValueError("Session name must not be empty")
        if self.state not in VALID_STATES:
            raise ValueError(
                f"Invalid state: {self.state}. Must be one of {sorted(VALID_STATES)}"
            )
        self.state = SessionState(self.state)
        if self.status == "":
            self.status = None

        shell = self.shell_session
        if shell is not None:
            if shell.shell_session is not None:
                raise NestedSessionError(
                    f"Shell session {shell.name} cannot have its own shell session"
                )
            if shell.status is not None:
                raise NestedSessionError(
                    f"Cannot set status on nested session {shell.name}"
                )
            if shell.name == self.name:
                raise ValueError("Shell session must have a different name")


@dataclass
class SessionCollection:
    """Ordered view over top-level sessions.

    ``ordered_names`` defines display order; ``sessions`` maps each name to
    its Session (with any shell session attached).
    """

    ordered_names: list[str] = field(default_factory=list)
    sessions: dict[str, Session] = field(default_factory=dict)

    def __iter__(self):
        for name in self.ordered_names:
            yield self.sessions[name]

    def __len__(self) -> int:
        return len(self.ordered_names)

    def __contains__(self, name: object) -> bool:
        return name in self.sessions

    def append(self, session: Session) -> None:
        if session.name not in self.sessions:
            self.ordered_names.append(session.name)
        self.sessions[session.name] = session

    def remove(self, name: str) -> Session:
        session = self.sessions.pop(name)
        self.ordered_names.remove(name)
        return session


def sanitize_session_name(display_name: str) -> str:
    """Convert a display name to a tmux-compatible session name.

    Letters, digits, hyphens, periods and explicit underscores are kept.
    Whitespace, parentheses and slashes become a single underscore. Every
    other character is dropped.

    Example:
        "Fix (auth) bug!" -> "Fix_auth_bug"
    """
    out: list[str] = []
    last_was_underscore = False

    for ch in display_name:
        if ch.isalnum() or ch in "-.":
            out.append(ch)
            last_was_underscore = False
        elif ch == "_":
            out.append("_")
            last_was_underscore = True
        elif ch.isspace() or ch in "()/":
            if not last_was_underscore and out:
                out.append("_")
                last_was_underscore = True

    return "".join(out).rstrip("_")
