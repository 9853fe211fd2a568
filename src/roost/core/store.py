"""SQLite-backed session store.

All session data for one storage root lives in $ROOST_HOME/state.db. The
interactive client and short-lived hook processes open the same file
concurrently, so the database runs in WAL mode and every operation is one
transaction wrapped in a bounded busy-retry loop.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import TypeVar

from roost.core.config import DEFAULT_BUSY_RETRY_LIMIT, DEFAULT_BUSY_TIMEOUT_MS
from roost.core.ordering import normalized_positions, prepend_position
from roost.core.paths import expand_path, get_db_path_for
from roost.core.retry import RetryDecision, RetryPolicy, is_busy_error
from roost.core.schema import (
    AGENT_FLAGS,
    ARCHIVE,
    COMMENT,
    FLAG,
    SATELLITES,
    SESSION_COLUMNS,
    STATUS,
    Satellite,
    ensure_schema,
    load_satellites,
    session_from_row,
    session_to_params,
    to_db_time,
)
from roost.core.session import (
    NestedSessionError,
    Session,
    SessionCollection,
    SessionExistsError,
    SessionNotFoundError,
    SessionState,
    utc_now,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

RetryPolicyFn = Callable[[BaseException, int], RetryDecision]

_INSERT_COLUMNS = (*SESSION_COLUMNS, "created_at", "updated_at")
_INSERT_SQL = (
    f"INSERT INTO sessions ({', '.join(_INSERT_COLUMNS)}) "
    f"VALUES ({', '.join(':' + c for c in _INSERT_COLUMNS)})"
)
_UPSERT_SQL = _INSERT_SQL + " ON CONFLICT(name) DO UPDATE SET " + ", ".join(
    f"{c} = excluded.{c}" for c in (*SESSION_COLUMNS[1:], "updated_at")
)


class StoreError(RuntimeError):
    """Raised when a store operation fails for a non-domain reason."""


class StoreBusyError(StoreError):
    """Raised when the database stayed busy/locked past the retry policy."""


class SessionStore:
    """Session repository over one SQLite file.

    Implements every capability protocol in roost.core.capabilities. A
    single instance may be shared between threads; each process should open
    its own.
    """

    def __init__(
        self,
        path: str | Path,
        *,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
        busy_retry_limit: int = DEFAULT_BUSY_RETRY_LIMIT,
        retry_policy: RetryPolicyFn | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if busy_timeout_ms < 0:
            raise ValueError("busy_timeout_ms must be >= 0")

        self._path = expand_path(path)
        self._retry_policy = retry_policy or RetryPolicy(max_attempts=busy_retry_limit)
        self._sleep = sleep
        self._lock = threading.RLock()

        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(
            self._path,
            timeout=busy_timeout_ms / 1000.0,
            isolation_level=None,
            check_same_thread=False,
        )
        self._conn.row_factory = sqlite3.Row
        try:
            self._configure(busy_timeout_ms)
            self._run("create schema", ensure_schema)
        except Exception:
            self._conn.close()
            raise
        logger.debug("Opened session store at %s", self._path)

    @classmethod
    def for_home(cls, home: str | Path, **kwargs) -> "SessionStore":
        """Open the store for a storage root ($ROOST_HOME/state.db)."""
        return cls(get_db_path_for(home), **kwargs)

    @property
    def path(self) -> Path:
        return self._path

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def __enter__(self) -> "SessionStore":
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.close()

    def _configure(self, busy_timeout_ms: int) -> None:
        conn = self._conn
        conn.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute("PRAGMA synchronous=NORMAL")
        journal_mode = str(conn.execute("PRAGMA journal_mode=WAL").fetchone()[0]).lower()
        if journal_mode != "wal":
            raise StoreError(f"journal_mode must be WAL for {self._path}, got {journal_mode!r}")

    @contextmanager
    def _transaction(self, *, immediate: bool) -> Iterator[sqlite3.Connection]:
        conn = self._conn
        conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
        try:
            yield conn
            conn.execute("COMMIT")
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise

    def _run(
        self,
        operation: str,
        fn: Callable[[sqlite3.Connection], T],
        *,
        write: bool = True,
    ) -> T:
        """Run fn inside one transaction, retrying on busy/locked errors.

        Domain errors raised by fn (not found, already exists, ...) roll the
        transaction back and propagate unchanged.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                with self._lock, self._transaction(immediate=write) as conn:
                    return fn(conn)
            except sqlite3.Error as exc:
                decision = self._retry_policy(exc, attempt)
                if decision.retry:
                    logger.debug(
                        "%s hit busy database (attempt %d), retrying in %.3fs",
                        operation,
                        attempt,
                        decision.delay,
                    )
                    self._sleep(decision.delay)
                    continue
                if is_busy_error(exc):
                    logger.error("%s gave up after %d attempt(s): %s", operation, attempt, exc)
                    raise StoreBusyError(
                        f"{operation} hit a busy database at {self._path} "
                        f"after {attempt} attempt(s): {exc}"
                    ) from exc
                logger.error("%s failed: %s", operation, exc)
                raise StoreError(f"{operation} failed for {self._path}: {exc}") from exc

    # Row helpers

    @staticmethod
    def _fetch_row(conn: sqlite3.Connection, name: str) -> sqlite3.Row | None:
        return conn.execute("SELECT * FROM sessions WHERE name = ?", (name,)).fetchone()

    def _require_row(self, conn: sqlite3.Connection, name: str) -> sqlite3.Row:
        row = self._fetch_row(conn, name)
        if row is None:
            raise SessionNotFoundError(name)
        return row

    @staticmethod
    def _exists(conn: sqlite3.Connection, name: str) -> bool:
        return conn.execute("SELECT 1 FROM sessions WHERE name = ?", (name,)).fetchone() is not None

    @staticmethod
    def _update_row(conn: sqlite3.Connection, name: str, /, **values: object) -> None:
        """Update columns on one session, refreshing last_updated.

        ``name`` is positional-only so ``values`` may carry a new name.
        """
        now = to_db_time(utc_now())
        values = {**values, "last_updated": now, "updated_at": now}
        assignments = ", ".join(f"{column} = :{column}" for column in values)
        cursor = conn.execute(
            f"UPDATE sessions SET {assignments} WHERE name = :_name",
            {**values, "_name": name},
        )
        if cursor.rowcount == 0:
            raise SessionNotFoundError(name)

    @staticmethod
    def _write_session(
        conn: sqlite3.Connection,
        session: Session,
        *,
        position: int,
        parent_name: str | None,
        upsert: bool = False,
    ) -> None:
        params = session_to_params(session, position=position, parent_name=parent_name)
        now = to_db_time(utc_now())
        params["created_at"] = now
        params["updated_at"] = now
        conn.execute(_UPSERT_SQL if upsert else _INSERT_SQL, params)

    # Satellite helpers

    def _set_satellite(
        self,
        conn: sqlite3.Connection,
        sat: Satellite,
        name: str,
        values: dict[str, object],
    ) -> None:
        """Write one satellite row, or remove it when every value is default.

        Satellites with a stamp column record the time of the most recent
        off -> on transition; the stamp is kept while the value stays on.
        """
        if sat.is_default(values):
            conn.execute(f"DELETE FROM {sat.table} WHERE session_name = ?", (name,))
        else:
            row_values = {
                column: int(values.get(column, default)) if isinstance(default, bool)
                else values.get(column, default)
                for column, default in sat.columns
            }
            if sat.stamp_column:
                on_column = sat.column_names[0]
                current = conn.execute(
                    f"SELECT {on_column}, {sat.stamp_column} FROM {sat.table} "
                    "WHERE session_name = ?",
                    (name,),
                ).fetchone()
                if current is not None and current[0]:
                    row_values[sat.stamp_column] = current[1]
                else:
                    row_values[sat.stamp_column] = to_db_time(utc_now())

            now = to_db_time(utc_now())
            columns = ["session_name", *row_values, "created_at", "updated_at"]
            params = {"session_name": name, **row_values, "created_at": now, "updated_at": now}
            updates = ", ".join(f"{c} = excluded.{c}" for c in (*row_values, "updated_at"))
            conn.execute(
                f"INSERT INTO {sat.table} ({', '.join(columns)}) "
                f"VALUES ({', '.join(':' + c for c in columns)}) "
                f"ON CONFLICT(session_name) DO UPDATE SET {updates}",
                params,
            )
        self._enforce_satellite_default(conn, sat, name)

    @staticmethod
    def _enforce_satellite_default(conn: sqlite3.Connection, sat: Satellite, name: str) -> None:
        """Post-condition of every satellite write: no row holds only defaults."""
        row = conn.execute(
            f"SELECT {', '.join(sat.column_names)} FROM {sat.table} WHERE session_name = ?",
            (name,),
        ).fetchone()
        if row is not None and sat.is_default(dict(row)):
            logger.debug("Removing default %s row for %s", sat.kind, name)
            conn.execute(f"DELETE FROM {sat.table} WHERE session_name = ?", (name,))

    def _set_agent_flags(self, conn: sqlite3.Connection, session: Session) -> None:
        self._set_satellite(
            conn,
            AGENT_FLAGS,
            session.name,
            {
                "allow_dangerously_skip_permissions": session.allow_dangerously_skip_permissions,
                "debug_claude": session.debug_claude,
            },
        )

    def _write_satellites(self, conn: sqlite3.Connection, session: Session) -> None:
        name = session.name
        self._set_satellite(conn, FLAG, name, {"is_flagged": session.is_flagged})
        self._set_satellite(conn, STATUS, name, {"status": session.status or ""})
        self._set_satellite(conn, COMMENT, name, {"comment": session.comment})
        self._set_satellite(conn, ARCHIVE, name, {"is_archived": session.is_archived})
        self._set_agent_flags(conn, session)

    def _agent_flag_values(self, conn: sqlite3.Connection, name: str) -> dict[str, object]:
        row = conn.execute(
            "SELECT allow_dangerously_skip_permissions, debug_claude "
            "FROM session_agent_cli_flags WHERE session_name = ?",
            (name,),
        ).fetchone()
        if row is None:
            return {"allow_dangerously_skip_permissions": False, "debug_claude": False}
        return {key: bool(row[key]) for key in row.keys()}

    # Reads

    def _top_level_rows(
        self, conn: sqlite3.Connection, include_archived: bool
    ) -> list[sqlite3.Row]:
        sql = "SELECT * FROM sessions WHERE parent_name IS NULL"
        if not include_archived:
            sql += (
                " AND name NOT IN "
                "(SELECT session_name FROM session_archives WHERE is_archived = 1)"
            )
        sql += " ORDER BY position ASC, name ASC"
        return conn.execute(sql).fetchall()

    def _assemble(self, conn: sqlite3.Connection, rows: list[sqlite3.Row]) -> list[Session]:
        """Attach satellites and shell sessions to top-level rows."""
        nested = {
            row["parent_name"]: row
            for row in conn.execute("SELECT * FROM sessions WHERE parent_name IS NOT NULL")
        }
        satellites = load_satellites(conn)

        sessions = []
        for row in rows:
            session = session_from_row(row, satellites.get(row["name"]))
            shell_row = nested.get(row["name"])
            if shell_row is not None:
                session.shell_session = session_from_row(
                    shell_row, satellites.get(shell_row["name"]), nested=True
                )
            sessions.append(session)
        return sessions

    def get(self, name: str) -> Session:
        """Load one session with its satellites and shell session.

        Raises:
            SessionNotFoundError: If no session has this name.
        """

        def _get(conn: sqlite3.Connection) -> Session:
            row = self._require_row(conn, name)
            shell_row = conn.execute(
                "SELECT * FROM sessions WHERE parent_name = ?", (name,)
            ).fetchone()
            names = [name] + ([shell_row["name"]] if shell_row is not None else [])
            satellites = load_satellites(conn, names)

            session = session_from_row(
                row, satellites.get(name), nested=row["parent_name"] is not None
            )
            if shell_row is not None:
                session.shell_session = session_from_row(
                    shell_row, satellites.get(shell_row["name"]), nested=True
                )
            return session

        return self._run("get session", _get, write=False)

    def list(self, include_archived: bool = False) -> list[Session]:
        """List top-level sessions ordered by (position, name)."""

        def _list(conn: sqlite3.Connection) -> list[Session]:
            return self._assemble(conn, self._top_level_rows(conn, include_archived))

        return self._run("list sessions", _list, write=False)

    def get_sessions_for_repo(
        self, repo_info: str, include_archived: bool = True
    ) -> list[Session]:
        """List the top-level sessions of one repository.

        Archived sessions are included by default since they share the
        repository's checkout.
        """
        return [s for s in self.list(include_archived) if s.repo_info == repo_info]

    def load_state(self, include_archived: bool = False) -> SessionCollection:
        """Load the ordered collection, repairing positions if needed.

        Positions must be exactly 0..n-1 in (position, name) order. When they
        are not (prepends drift negative; crashed writers leave duplicates),
        every out-of-place session is rewritten to its index before returning.
        """

        def _load(conn: sqlite3.Connection) -> SessionCollection:
            rows = self._top_level_rows(conn, include_archived)
            fixes = normalized_positions((row["name"], row["position"]) for row in rows)
            if fixes:
                logger.info("Normalizing positions for %d session(s)", len(fixes))
                conn.executemany(
                    "UPDATE sessions SET position = ? WHERE name = ?",
                    [(position, name) for name, position in fixes],
                )
                rows = self._top_level_rows(conn, include_archived)

            collection = SessionCollection()
            for session in self._assemble(conn, rows):
                collection.append(session)
            return collection

        # Deferred: only takes the write lock when a repair is needed.
        return self._run("load state", _load, write=False)

    # Writes

    def add(self, session: Session) -> None:
        """Insert a session (and its shell session) ahead of all others.

        Raises:
            SessionExistsError: If the session or its shell name is taken.
        """

        def _add(conn: sqlite3.Connection) -> None:
            shell = session.shell_session
            for name in [session.name] + ([shell.name] if shell else []):
                if self._exists(conn, name):
                    raise SessionExistsError(name)

            row = conn.execute(
                "SELECT MIN(position) FROM sessions WHERE parent_name IS NULL"
            ).fetchone()
            position = prepend_position([] if row[0] is None else [row[0]])

            try:
                self._write_session(conn, session, position=position, parent_name=None)
                if shell is not None:
                    self._write_session(conn, shell, position=0, parent_name=session.name)
            except sqlite3.IntegrityError as exc:
                # Lost a race with another writer between the check and the insert.
                raise SessionExistsError(session.name) from exc

            self._write_satellites(conn, session)
            if shell is not None:
                self._set_agent_flags(conn, shell)

        self._run("add session", _add)
        logger.info("Added session %s", session.name)

    def delete(self, name: str) -> None:
        """Delete a session; satellites and its shell session cascade."""

        def _delete(conn: sqlite3.Connection) -> None:
            cursor = conn.execute("DELETE FROM sessions WHERE name = ?", (name,))
            if cursor.rowcount == 0:
                raise SessionNotFoundError(name)

        self._run("delete session", _delete)
        logger.info("Deleted session %s", name)

    def link_shell_session(self, parent_name: str, shell_name: str) -> None:
        """Attach an existing session as the shell session of a top-level one."""

        def _link(conn: sqlite3.Connection) -> None:
            if parent_name == shell_name:
                raise NestedSessionError(f"Session {parent_name} cannot be its own shell session")
            parent = self._require_row(conn, parent_name)
            if parent["parent_name"] is not None:
                raise NestedSessionError(f"Session {parent_name} is itself a shell session")
            self._require_row(conn, shell_name)

            existing = conn.execute(
                "SELECT name FROM sessions WHERE parent_name = ?", (parent_name,)
            ).fetchone()
            if existing is not None and existing["name"] != shell_name:
                raise NestedSessionError(
                    f"Session {parent_name} already has shell session {existing['name']}"
                )
            if conn.execute(
                "SELECT 1 FROM sessions WHERE parent_name = ?", (shell_name,)
            ).fetchone():
                raise NestedSessionError(f"Session {shell_name} has its own shell session")

            conn.execute(
                "UPDATE sessions SET parent_name = ? WHERE name = ?", (parent_name, shell_name)
            )
            # Status is reserved for top-level sessions.
            conn.execute("DELETE FROM session_statuses WHERE session_name = ?", (shell_name,))

        self._run("link shell session", _link)

    def swap_positions(self, name_a: str, name_b: str) -> None:
        def _swap(conn: sqlite3.Connection) -> None:
            row_a = self._require_row(conn, name_a)
            row_b = self._require_row(conn, name_b)
            conn.execute(
                "UPDATE sessions SET position = ? WHERE name = ?", (row_b["position"], name_a)
            )
            conn.execute(
                "UPDATE sessions SET position = ? WHERE name = ?", (row_a["position"], name_b)
            )

        self._run("swap positions", _swap)

    def update_state(self, name: str, state: SessionState, execution_id: str) -> None:
        state = SessionState(state)
        self._run(
            "update state",
            lambda conn: self._update_row(
                conn, name, state=state.value, execution_id=execution_id
            ),
        )

    def update_execution_id(self, name: str, execution_id: str) -> None:
        self._run(
            "update execution id",
            lambda conn: self._update_row(conn, name, execution_id=execution_id),
        )

    def update_claude_dir(self, name: str, claude_dir: str) -> None:
        self._run(
            "update claude dir",
            lambda conn: self._update_row(conn, name, claude_dir=claude_dir),
        )

    def update_repo_source(self, name: str, repo_source: str) -> None:
        self._run(
            "update repo source",
            lambda conn: self._update_row(conn, name, repo_source=repo_source),
        )

    def update_display_name(self, name: str, display_name: str) -> None:
        self._run(
            "update display name",
            lambda conn: self._update_row(conn, name, display_name=display_name),
        )

    def _update_agent_flag(self, operation: str, name: str, column: str, value: bool) -> None:
        def _update(conn: sqlite3.Connection) -> None:
            self._update_row(conn, name)
            values = self._agent_flag_values(conn, name)
            values[column] = value
            self._set_satellite(conn, AGENT_FLAGS, name, values)

        self._run(operation, _update)

    def update_skip_permissions(self, name: str, skip: bool) -> None:
        self._update_agent_flag(
            "update skip permissions", name, "allow_dangerously_skip_permissions", skip
        )

    def update_debug_claude(self, name: str, debug: bool) -> None:
        self._update_agent_flag("update debug claude", name, "debug_claude", debug)

    def update_comment(self, name: str, comment: str) -> None:
        def _update(conn: sqlite3.Connection) -> None:
            self._update_row(conn, name)
            self._set_satellite(conn, COMMENT, name, {"comment": comment})

        self._run("update comment", _update)

    def update_status(self, name: str, status: str | None) -> None:
        """Set or clear (None/empty) the workflow status of a top-level session.

        Raises:
            SessionNotFoundError: If the session does not exist.
            NestedSessionError: If the session is a shell session.
        """

        def _update(conn: sqlite3.Connection) -> None:
            row = self._require_row(conn, name)
            if row["parent_name"] is not None:
                raise NestedSessionError(f"Cannot set status on nested session {name}")
            self._update_row(conn, name)
            self._set_satellite(conn, STATUS, name, {"status": status or ""})

        self._run("update status", _update)

    def _toggle(self, operation: str, sat: Satellite, name: str) -> None:
        column = sat.column_names[0]

        def _update(conn: sqlite3.Connection) -> None:
            self._update_row(conn, name)
            row = conn.execute(
                f"SELECT {column} FROM {sat.table} WHERE session_name = ?", (name,)
            ).fetchone()
            turned_on = row is None or not row[0]
            self._set_satellite(conn, sat, name, {column: turned_on})

        self._run(operation, _update)

    def toggle_flag(self, name: str) -> None:
        self._toggle("toggle flag", FLAG, name)

    def toggle_archive(self, name: str) -> None:
        self._toggle("toggle archive", ARCHIVE, name)

    def rename(self, old_name: str, new_name: str, new_display_name: str) -> None:
        """Rename a session, re-keying its shell link and every satellite row.

        Raises:
            SessionNotFoundError: If old_name does not exist.
            SessionExistsError: If new_name is already taken.
        """

        def _rename(conn: sqlite3.Connection) -> None:
            if new_name != old_name and self._exists(conn, new_name):
                raise SessionExistsError(new_name)
            self._update_row(conn, old_name, name=new_name, display_name=new_display_name)
            if new_name == old_name:
                return

            # ON UPDATE CASCADE normally covers these; re-key explicitly so files
            # created without foreign key enforcement end up consistent too.
            conn.execute(
                "UPDATE sessions SET parent_name = ? WHERE parent_name = ?", (new_name, old_name)
            )
            for sat in SATELLITES:
                conn.execute(
                    f"UPDATE {sat.table} SET session_name = ? WHERE session_name = ?",
                    (new_name, old_name),
                )

        self._run("rename session", _rename)
        logger.info("Renamed session %s to %s", old_name, new_name)

    def save_state(self, collection: SessionCollection) -> None:
        """Reconcile storage with a full collection.

        Every session in the collection is upserted with its position taken
        from ``ordered_names`` (falling back to its stored position, then to
        the end of the list). Sessions in storage but absent from the
        collection are deleted, except archived ones and their shell sessions:
        collections are usually loaded without archived sessions, and saving
        one must not drop them.
        """

        def _save(conn: sqlite3.Connection) -> None:
            existing = {
                row["name"]: row["position"]
                for row in conn.execute("SELECT name, position FROM sessions")
            }
            # Archived sessions and their shell sessions.
            archived = {
                row[0]
                for row in conn.execute(
                    "SELECT name FROM sessions WHERE name IN ("
                    "SELECT session_name FROM session_archives WHERE is_archived = 1) "
                    "OR parent_name IN ("
                    "SELECT session_name FROM session_archives WHERE is_archived = 1)"
                )
            }
            positions = {name: idx for idx, name in enumerate(collection.ordered_names)}
            remaining = set(existing)

            for name, session in collection.sessions.items():
                position = positions.get(name, existing.get(name, len(collection.ordered_names)))
                self._write_session(conn, session, position=position, parent_name=None, upsert=True)
                self._write_satellites(conn, session)
                remaining.discard(name)

                shell = session.shell_session
                if shell is None:
                    continue
                # Detach a previous shell session replaced by this one.
                conn.execute(
                    "UPDATE sessions SET parent_name = NULL WHERE parent_name = ? AND name != ?",
                    (name, shell.name),
                )
                self._write_session(
                    conn, shell, position=existing.get(shell.name, 0), parent_name=name, upsert=True
                )
                self._set_agent_flags(conn, shell)
                remaining.discard(shell.name)

            for name in sorted(remaining - archived):
                logger.debug("Removing session %s absent from saved state", name)
                conn.execute("DELETE FROM sessions WHERE name = ?", (name,))

        self._run("save state", _save)
