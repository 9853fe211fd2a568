"""SQLite schema and row mapping for the session store.

One ``sessions`` table plus five satellite tables keyed by session name. A
satellite row exists only while it holds a non-default value, so "no
override" never needs a nullable-by-convention column on the main row.
"""

import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone

from roost.core.session import VALID_STATES, Session, SessionState


def _sql_enum(values) -> str:
    return ",".join(f"'{value}'" for value in sorted(values))


SESSIONS_TABLE_SQL = f"""
CREATE TABLE IF NOT EXISTS sessions (
    name TEXT PRIMARY KEY,
    parent_name TEXT DEFAULT NULL
        REFERENCES sessions(name) ON UPDATE CASCADE ON DELETE CASCADE,
    position INTEGER NOT NULL DEFAULT 0,
    display_name TEXT NOT NULL DEFAULT '',
    state TEXT NOT NULL DEFAULT 'idle' CHECK (state IN ({_sql_enum(VALID_STATES)})),
    execution_id TEXT NOT NULL DEFAULT '',
    repo_path TEXT NOT NULL DEFAULT '',
    repo_info TEXT NOT NULL DEFAULT '',
    repo_source TEXT NOT NULL DEFAULT '',
    branch_name TEXT NOT NULL DEFAULT '',
    worktree_path TEXT NOT NULL DEFAULT '',
    claude_dir TEXT NOT NULL DEFAULT '',
    initial_prompt TEXT NOT NULL DEFAULT '',
    last_updated TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
)
"""

SESSION_INDEXES_SQL = (
    # At most one shell session per parent; NULLs are not compared.
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_sessions_parent ON sessions(parent_name)",
    "CREATE INDEX IF NOT EXISTS idx_sessions_position ON sessions(position)",
    "CREATE INDEX IF NOT EXISTS idx_sessions_execution_id ON sessions(execution_id)",
    "CREATE INDEX IF NOT EXISTS idx_sessions_last_updated ON sessions(last_updated)",
)

_SATELLITE_FK = (
    "FOREIGN KEY (session_name) REFERENCES sessions(name) "
    "ON UPDATE CASCADE ON DELETE CASCADE"
)


@dataclass(frozen=True)
class Satellite:
    """One satellite record kind.

    Attributes:
        kind: Short name used in logs and errors
        table: Table name
        columns: Value columns with their default values
        stamp_column: Timestamp set on the off -> on transition, if any
    """

    kind: str
    table: str
    columns: tuple[tuple[str, object], ...]
    stamp_column: str | None = None

    @property
    def column_names(self) -> tuple[str, ...]:
        return tuple(name for name, _ in self.columns)

    def is_default(self, values: dict[str, object]) -> bool:
        """Check whether every value column holds its default."""
        for name, default in self.columns:
            value = values.get(name, default)
            if isinstance(default, bool):
                if bool(value) != default:
                    return False
            elif value != default:
                return False
        return True


FLAG = Satellite(
    kind="flag",
    table="session_flags",
    columns=(("is_flagged", False),),
    stamp_column="flagged_at",
)
STATUS = Satellite(kind="status", table="session_statuses", columns=(("status", ""),))
COMMENT = Satellite(kind="comment", table="session_comments", columns=(("comment", ""),))
ARCHIVE = Satellite(
    kind="archive",
    table="session_archives",
    columns=(("is_archived", False),),
    stamp_column="archived_at",
)
AGENT_FLAGS = Satellite(
    kind="agent flags",
    table="session_agent_cli_flags",
    columns=(
        ("allow_dangerously_skip_permissions", False),
        ("debug_claude", False),
    ),
)

SATELLITES = (FLAG, STATUS, COMMENT, ARCHIVE, AGENT_FLAGS)

SATELLITE_TABLES_SQL = (
    f"""
    CREATE TABLE IF NOT EXISTS session_flags (
        session_name TEXT PRIMARY KEY,
        is_flagged INTEGER NOT NULL DEFAULT 0 CHECK (is_flagged IN (0, 1)),
        flagged_at TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        {_SATELLITE_FK}
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS session_statuses (
        session_name TEXT PRIMARY KEY,
        status TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        {_SATELLITE_FK}
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS session_comments (
        session_name TEXT PRIMARY KEY,
        comment TEXT NOT NULL DEFAULT '',
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        {_SATELLITE_FK}
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS session_archives (
        session_name TEXT PRIMARY KEY,
        is_archived INTEGER NOT NULL DEFAULT 0 CHECK (is_archived IN (0, 1)),
        archived_at TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        {_SATELLITE_FK}
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS session_agent_cli_flags (
        session_name TEXT PRIMARY KEY,
        allow_dangerously_skip_permissions INTEGER NOT NULL DEFAULT 0,
        debug_claude INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        {_SATELLITE_FK}
    )
    """,
)

SCHEMA_STATEMENTS = (SESSIONS_TABLE_SQL, *SESSION_INDEXES_SQL, *SATELLITE_TABLES_SQL)

# Columns added after the first release: (table, column, definition).
LATE_COLUMNS = (
    ("session_agent_cli_flags", "debug_claude", "INTEGER NOT NULL DEFAULT 0"),
    ("sessions", "initial_prompt", "TEXT NOT NULL DEFAULT ''"),
)

SESSION_COLUMNS = (
    "name",
    "parent_name",
    "position",
    "display_name",
    "state",
    "execution_id",
    "repo_path",
    "repo_info",
    "repo_source",
    "branch_name",
    "worktree_path",
    "claude_dir",
    "initial_prompt",
    "last_updated",
)


def ensure_schema(conn: sqlite3.Connection) -> None:
    """Create tables idempotently and add late columns to older files."""
    for statement in SCHEMA_STATEMENTS:
        conn.execute(statement)
    for table, column, definition in LATE_COLUMNS:
        existing = {row[1] for row in conn.execute(f"PRAGMA table_info({table})")}
        if column not in existing:
            conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")


def to_db_time(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_time(value: str | None) -> datetime:
    if not value:
        return datetime.fromtimestamp(0, tz=timezone.utc)
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def session_to_params(
    session: Session, *, position: int, parent_name: str | None
) -> dict[str, object]:
    """Map a Session onto ``sessions`` column values."""
    return {
        "name": session.name,
        "parent_name": parent_name,
        "position": position,
        "display_name": session.display_name,
        "state": SessionState(session.state).value,
        "execution_id": session.execution_id,
        "repo_path": session.repo_path,
        "repo_info": session.repo_info,
        "repo_source": session.repo_source,
        "branch_name": session.branch_name,
        "worktree_path": session.worktree_path,
        "claude_dir": session.claude_dir,
        "initial_prompt": session.initial_prompt,
        "last_updated": to_db_time(session.last_updated),
    }


@dataclass
class SatelliteValues:
    """Satellite values gathered for one session; absent rows mean defaults."""

    is_flagged: bool = False
    status: str | None = None
    comment: str = ""
    is_archived: bool = False
    allow_dangerously_skip_permissions: bool = False
    debug_claude: bool = False


def load_satellites(
    conn: sqlite3.Connection, names: list[str] | None = None
) -> dict[str, SatelliteValues]:
    """Read satellite rows, optionally restricted to some session names."""
    values: dict[str, SatelliteValues] = {}

    def rows(table: str, columns: str):
        sql = f"SELECT session_name, {columns} FROM {table}"
        if names is None:
            return conn.execute(sql)
        if not names:
            return []
        placeholders = ",".join("?" for _ in names)
        return conn.execute(f"{sql} WHERE session_name IN ({placeholders})", names)

    for row in rows(FLAG.table, "is_flagged"):
        values.setdefault(row[0], SatelliteValues()).is_flagged = bool(row[1])
    for row in rows(STATUS.table, "status"):
        values.setdefault(row[0], SatelliteValues()).status = row[1] or None
    for row in rows(COMMENT.table, "comment"):
        values.setdefault(row[0], SatelliteValues()).comment = row[1]
    for row in rows(ARCHIVE.table, "is_archived"):
        values.setdefault(row[0], SatelliteValues()).is_archived = bool(row[1])
    for row in rows(AGENT_FLAGS.table, "allow_dangerously_skip_permissions, debug_claude"):
        entry = values.setdefault(row[0], SatelliteValues())
        entry.allow_dangerously_skip_permissions = bool(row[1])
        entry.debug_claude = bool(row[2])
    return values


def session_from_row(
    row: sqlite3.Row,
    satellites: SatelliteValues | None = None,
    *,
    nested: bool = False,
) -> Session:
    """Build a Session from a ``sessions`` row and its satellite values.

    Nested sessions only carry agent flags; flag, status, comment and archive
    belong to the top-level session.
    """
    sat = satellites or SatelliteValues()
    return Session(
        name=row["name"],
        display_name=row["display_name"],
        state=SessionState(row["state"]),
        execution_id=row["execution_id"],
        repo_path=row["repo_path"],
        repo_info=row["repo_info"],
        repo_source=row["repo_source"],
        branch_name=row["branch_name"],
        worktree_path=row["worktree_path"],
        claude_dir=row["claude_dir"],
        initial_prompt=row["initial_prompt"],
        comment="" if nested else sat.comment,
        status=None if nested else sat.status,
        is_flagged=False if nested else sat.is_flagged,
        is_archived=False if nested else sat.is_archived,
        allow_dangerously_skip_permissions=sat.allow_dangerously_skip_permissions,
        debug_claude=sat.debug_claude,
        position=row["position"],
        last_updated=from_db_time(row["last_updated"]),
    )
