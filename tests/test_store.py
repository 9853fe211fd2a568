"""Tests for the SQLite session store."""

import sqlite3
import tempfile
import threading
from pathlib import Path

import pytest
from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from roost.core.retry import GIVE_UP
from roost.core.schema import SATELLITES
from roost.core.session import (
    NestedSessionError,
    SessionExistsError,
    SessionNotFoundError,
    SessionState,
)
from roost.core.store import SessionStore, StoreBusyError

from tests.helpers import make_session


def satellite_rows(path: Path, name: str) -> dict[str, int]:
    """Count satellite rows per table for one session, bypassing the store."""
    conn = sqlite3.connect(path)
    try:
        return {
            sat.table: conn.execute(
                f"SELECT COUNT(*) FROM {sat.table} WHERE session_name = ?", (name,)
            ).fetchone()[0]
            for sat in SATELLITES
        }
    finally:
        conn.close()


def raw_positions(path: Path) -> dict[str, int]:
    conn = sqlite3.connect(path)
    try:
        return dict(conn.execute("SELECT name, position FROM sessions WHERE parent_name IS NULL"))
    finally:
        conn.close()


def test_store_uses_wal(store):
    """Test the database runs in WAL mode with foreign keys on."""
    conn = sqlite3.connect(store.path)
    try:
        assert conn.execute("PRAGMA journal_mode").fetchone()[0] == "wal"
    finally:
        conn.close()
    assert store.path.name == "state.db"


def test_add_and_get(store):
    """Test a session round-trips through add/get."""
    session = make_session(
        "fix-auth",
        display_name="Fix auth",
        state=SessionState.WORKING,
        execution_id="exec-1",
        repo_path="/home/.roost/worktrees/acme/api/.main",
        repo_info="acme/api",
        repo_source="git@github.com:acme/api.git",
        branch_name="fix-auth",
        worktree_path="/home/.roost/worktrees/acme/api/fix-auth",
        initial_prompt="fix the login bug",
        comment="urgent",
        status="plan",
        is_flagged=True,
        debug_claude=True,
    )
    store.add(session)

    loaded = store.get("fix-auth")
    assert loaded.display_name == "Fix auth"
    assert loaded.state is SessionState.WORKING
    assert loaded.repo_info == "acme/api"
    assert loaded.initial_prompt == "fix the login bug"
    assert loaded.comment == "urgent"
    assert loaded.status == "plan"
    assert loaded.is_flagged
    assert not loaded.is_archived
    assert loaded.debug_claude
    assert not loaded.allow_dangerously_skip_permissions
    assert loaded.last_updated == session.last_updated


def test_get_missing(store):
    """Test getting an unknown session raises SessionNotFoundError."""
    with pytest.raises(SessionNotFoundError) as exc_info:
        store.get("nope")
    assert exc_info.value.name == "nope"


def test_duplicate_add_is_rejected(store):
    """Test adding an existing name fails and keeps the first session."""
    store.add(make_session("a", comment="first"))
    with pytest.raises(SessionExistsError):
        store.add(make_session("a", comment="second"))
    assert store.get("a").comment == "first"
    assert len(store.list()) == 1


def test_add_rejects_taken_shell_name(store):
    """Test a shell session name must be unused too."""
    store.add(make_session("taken"))
    with pytest.raises(SessionExistsError):
        store.add(make_session("a", shell_session=make_session("taken")))
    with pytest.raises(SessionNotFoundError):
        store.get("a")


def test_add_prepends(store):
    """Test new sessions appear first."""
    store.add(make_session("a"))
    store.add(make_session("b"))
    store.add(make_session("c"))
    assert [s.name for s in store.list()] == ["c", "b", "a"]


def test_add_with_shell_session(store):
    """Test a shell session is stored nested and hidden from listings."""
    shell = make_session("a-shell", allow_dangerously_skip_permissions=True)
    store.add(make_session("a", shell_session=shell))

    sessions = store.list()
    assert [s.name for s in sessions] == ["a"]
    assert sessions[0].shell_session is not None
    assert sessions[0].shell_session.name == "a-shell"
    assert sessions[0].shell_session.allow_dangerously_skip_permissions

    loaded = store.get("a")
    assert loaded.shell_session.name == "a-shell"


def test_delete_cascades_satellites(store):
    """Test deleting a session removes every satellite row."""
    store.add(
        make_session(
            "a",
            comment="note",
            status="review",
            is_flagged=True,
            is_archived=True,
            allow_dangerously_skip_permissions=True,
        )
    )
    assert all(count == 1 for count in satellite_rows(store.path, "a").values())

    store.delete("a")

    assert all(count == 0 for count in satellite_rows(store.path, "a").values())
    with pytest.raises(SessionNotFoundError):
        store.get("a")


def test_delete_removes_shell_session(store):
    """Test the nested session goes with its parent."""
    store.add(make_session("a", shell_session=make_session("a-shell")))
    store.delete("a")
    with pytest.raises(SessionNotFoundError):
        store.get("a-shell")


def test_delete_missing(store):
    """Test deleting an unknown session raises SessionNotFoundError."""
    with pytest.raises(SessionNotFoundError):
        store.delete("nope")


def test_archived_hidden_by_default(store):
    """Test archived sessions only show with include_archived."""
    store.add(make_session("a"))
    store.add(make_session("b"))
    store.toggle_archive("a")

    assert [s.name for s in store.list()] == ["b"]
    assert {s.name for s in store.list(include_archived=True)} == {"a", "b"}
    assert [s.name for s in store.load_state()] == ["b"]
    assert store.get("a").is_archived


def test_toggle_flag_stamps_and_clears(store):
    """Test flag rows exist only while flagged, stamped when turned on."""
    store.add(make_session("a"))

    store.toggle_flag("a")
    assert store.get("a").is_flagged
    conn = sqlite3.connect(store.path)
    try:
        stamp = conn.execute(
            "SELECT flagged_at FROM session_flags WHERE session_name = 'a'"
        ).fetchone()[0]
    finally:
        conn.close()
    assert stamp

    store.toggle_flag("a")
    assert not store.get("a").is_flagged
    assert satellite_rows(store.path, "a")["session_flags"] == 0


def test_toggle_missing(store):
    """Test toggles on unknown sessions raise SessionNotFoundError."""
    with pytest.raises(SessionNotFoundError):
        store.toggle_flag("nope")
    with pytest.raises(SessionNotFoundError):
        store.toggle_archive("nope")


def test_update_status(store):
    """Test setting and clearing a status."""
    store.add(make_session("a"))

    store.update_status("a", "review")
    assert store.get("a").status == "review"

    store.update_status("a", None)
    assert store.get("a").status is None
    assert satellite_rows(store.path, "a")["session_statuses"] == 0


def test_update_status_on_nested_session_fails(store):
    """Test nested sessions cannot get a status."""
    store.add(make_session("a", shell_session=make_session("a-shell")))
    with pytest.raises(NestedSessionError):
        store.update_status("a-shell", "review")


def test_update_comment_empty_removes_row(store):
    """Test an empty comment deletes the comment row."""
    store.add(make_session("a"))
    store.update_comment("a", "hello")
    assert store.get("a").comment == "hello"

    store.update_comment("a", "")
    assert store.get("a").comment == ""
    assert satellite_rows(store.path, "a")["session_comments"] == 0


def test_agent_flags_row_removed_when_both_off(store):
    """Test the agent flag row disappears once both flags are off."""
    store.add(make_session("a"))
    store.update_skip_permissions("a", True)
    store.update_debug_claude("a", True)

    loaded = store.get("a")
    assert loaded.allow_dangerously_skip_permissions
    assert loaded.debug_claude

    store.update_skip_permissions("a", False)
    assert satellite_rows(store.path, "a")["session_agent_cli_flags"] == 1
    store.update_debug_claude("a", False)
    assert satellite_rows(store.path, "a")["session_agent_cli_flags"] == 0


def test_update_state_refreshes_last_updated(store):
    """Test update_state records state, execution ID and a new timestamp."""
    store.add(make_session("a"))
    before = store.get("a").last_updated

    store.update_state("a", SessionState.WAITING, "exec-2")

    loaded = store.get("a")
    assert loaded.state is SessionState.WAITING
    assert loaded.execution_id == "exec-2"
    assert loaded.last_updated >= before


def test_field_updaters(store):
    """Test the single-field updaters."""
    store.add(make_session("a"))
    store.update_execution_id("a", "exec-9")
    store.update_claude_dir("a", "/tmp/claude")
    store.update_repo_source("a", "https://github.com/acme/api")
    store.update_display_name("a", "Shiny name")

    loaded = store.get("a")
    assert loaded.execution_id == "exec-9"
    assert loaded.claude_dir == "/tmp/claude"
    assert loaded.repo_source == "https://github.com/acme/api"
    assert loaded.display_name == "Shiny name"


def test_updaters_on_missing_session(store):
    """Test updaters raise SessionNotFoundError for unknown names."""
    with pytest.raises(SessionNotFoundError):
        store.update_state("nope", SessionState.IDLE, "x")
    with pytest.raises(SessionNotFoundError):
        store.update_comment("nope", "hi")
    with pytest.raises(SessionNotFoundError):
        store.update_status("nope", "plan")
    with pytest.raises(SessionNotFoundError):
        store.update_skip_permissions("nope", True)
    # Nothing was written for the unknown name
    assert all(count == 0 for count in satellite_rows(store.path, "nope").values())


def test_rename_rekeys_all_metadata(store):
    """Test rename keeps every satellite and the shell link."""
    store.add(
        make_session(
            "old",
            comment="note",
            status="plan",
            is_flagged=True,
            is_archived=True,
            debug_claude=True,
            shell_session=make_session("old-shell"),
        )
    )

    store.rename("old", "new", "New name")

    with pytest.raises(SessionNotFoundError):
        store.get("old")
    loaded = store.get("new")
    assert loaded.display_name == "New name"
    assert loaded.comment == "note"
    assert loaded.status == "plan"
    assert loaded.is_flagged
    assert loaded.is_archived
    assert loaded.debug_claude
    assert loaded.shell_session.name == "old-shell"
    assert all(count == 0 for count in satellite_rows(store.path, "old").values())


def test_rename_onto_existing_name(store):
    """Test renaming onto a taken name fails without changes."""
    store.add(make_session("a"))
    store.add(make_session("b"))
    with pytest.raises(SessionExistsError):
        store.rename("a", "b", "b")
    assert store.get("a").name == "a"


def test_rename_same_name_updates_display_name(store):
    """Test renaming to the same key only changes the display name."""
    store.add(make_session("a"))
    store.rename("a", "a", "Pretty")
    assert store.get("a").display_name == "Pretty"


def test_rename_missing(store):
    """Test renaming an unknown session raises SessionNotFoundError."""
    with pytest.raises(SessionNotFoundError):
        store.rename("nope", "other", "other")


def test_swap_positions_example(store):
    """Test swapping a (0) and b (1) yields [b, a] at positions 0 and 1."""
    store.add(make_session("b"))
    store.add(make_session("a"))
    state = store.load_state()
    assert [(s.name, s.position) for s in state] == [("a", 0), ("b", 1)]

    store.swap_positions("a", "b")

    state = store.load_state()
    assert state.ordered_names == ["b", "a"]
    assert [s.position for s in state] == [0, 1]


def test_swap_missing(store):
    """Test swapping with an unknown session raises SessionNotFoundError."""
    store.add(make_session("a"))
    with pytest.raises(SessionNotFoundError):
        store.swap_positions("a", "nope")


def test_load_state_repairs_positions(store):
    """Test load_state rewrites duplicate and sparse positions and persists them."""
    for name in ("a", "b", "c"):
        store.add(make_session(name))
    conn = sqlite3.connect(store.path)
    try:
        conn.execute("UPDATE sessions SET position = 7 WHERE name IN ('a', 'b')")
        conn.execute("UPDATE sessions SET position = -5 WHERE name = 'c'")
        conn.commit()
    finally:
        conn.close()

    state = store.load_state()

    assert state.ordered_names == ["c", "a", "b"]
    assert [s.position for s in state] == [0, 1, 2]
    assert raw_positions(store.path) == {"c": 0, "a": 1, "b": 2}


def test_link_shell_session(store):
    """Test linking an existing session as a shell session."""
    store.add(make_session("a"))
    store.add(make_session("a-shell", status="plan"))

    store.link_shell_session("a", "a-shell")

    assert [s.name for s in store.list()] == ["a"]
    assert store.get("a").shell_session.name == "a-shell"
    assert store.get("a-shell").status is None
    with pytest.raises(NestedSessionError):
        store.update_status("a-shell", "plan")


def test_link_shell_session_missing(store):
    """Test linking to or from unknown sessions raises SessionNotFoundError."""
    store.add(make_session("a"))
    with pytest.raises(SessionNotFoundError):
        store.link_shell_session("a", "nope")
    with pytest.raises(SessionNotFoundError):
        store.link_shell_session("nope", "a")


def test_link_shell_session_one_per_parent(store):
    """Test a parent keeps at most one shell session."""
    store.add(make_session("a", shell_session=make_session("a-shell")))
    store.add(make_session("other"))
    with pytest.raises(NestedSessionError):
        store.link_shell_session("a", "other")
    with pytest.raises(NestedSessionError):
        store.link_shell_session("a-shell", "other")


def test_save_state_round_trip(store):
    """Test save_state(load_state()) leaves the state unchanged."""
    store.add(make_session("a", comment="x", is_flagged=True))
    store.add(make_session("b", status="review", shell_session=make_session("b-shell")))
    store.add(make_session("c", allow_dangerously_skip_permissions=True))

    first = store.load_state()
    store.save_state(first)
    second = store.load_state()

    assert second == first


def test_save_state_reconciles(store):
    """Test save_state upserts, reorders and deletes absent sessions."""
    store.add(make_session("a"))
    store.add(make_session("b"))
    store.add(make_session("gone"))
    store.add(make_session("kept", is_archived=True))

    state = store.load_state()
    state.remove("gone")
    state.append(make_session("new", comment="fresh"))
    state.ordered_names = ["new", "a", "b"]
    state.sessions["a"].comment = "edited"
    store.save_state(state)

    loaded = store.load_state()
    assert loaded.ordered_names == ["new", "a", "b"]
    assert loaded.sessions["a"].comment == "edited"
    assert loaded.sessions["new"].comment == "fresh"
    with pytest.raises(SessionNotFoundError):
        store.get("gone")
    # Archived sessions are not part of a default load and survive the save.
    assert store.get("kept").is_archived


def test_save_state_keeps_shell_of_archived_session(store):
    """Test saving the default view keeps an archived session's shell session."""
    store.add(make_session("x", shell_session=make_session("x-shell", debug_claude=True)))
    store.add(make_session("y"))
    store.toggle_archive("x")

    store.save_state(store.load_state())

    archived = store.get("x")
    assert archived.is_archived
    assert archived.shell_session is not None
    assert archived.shell_session.name == "x-shell"
    assert archived.shell_session.debug_claude
    assert store.load_state().ordered_names == ["y"]


def test_save_state_clears_reverted_satellites(store):
    """Test satellites reverted to defaults lose their rows on save."""
    store.add(make_session("a", comment="x", is_flagged=True, debug_claude=True))
    state = store.load_state()
    session = state.sessions["a"]
    session.comment = ""
    session.is_flagged = False
    session.debug_claude = False
    store.save_state(state)

    assert all(count == 0 for count in satellite_rows(store.path, "a").values())


def test_get_sessions_for_repo(store):
    """Test filtering by repository identifier."""
    store.add(make_session("a", repo_info="acme/api"))
    store.add(make_session("b", repo_info="acme/web"))
    store.add(make_session("c", repo_info="acme/api", is_archived=True))

    assert {s.name for s in store.get_sessions_for_repo("acme/api")} == {"a", "c"}
    visible = store.get_sessions_for_repo("acme/api", include_archived=False)
    assert [s.name for s in visible] == ["a"]


def test_busy_write_is_retried(store):
    """Test a locked database is retried and the write then succeeds."""
    store.add(make_session("a"))
    delays = []

    def release(delay):
        delays.append(delay)
        if blocker.in_transaction:
            blocker.execute("ROLLBACK")

    contended = SessionStore(store.path, busy_timeout_ms=0, sleep=release)
    blocker = sqlite3.connect(store.path, isolation_level=None, timeout=0)
    blocker.execute("BEGIN IMMEDIATE")
    try:
        contended.update_comment("a", "after retry")
    finally:
        contended.close()
        blocker.close()

    assert delays == [0.05]
    assert store.get("a").comment == "after retry"


def test_busy_write_gives_up(store):
    """Test StoreBusyError once the retry policy is exhausted."""
    store.add(make_session("a"))
    delays = []
    contended = SessionStore(store.path, busy_timeout_ms=0, sleep=delays.append)
    blocker = sqlite3.connect(store.path, isolation_level=None, timeout=0)
    blocker.execute("BEGIN IMMEDIATE")
    try:
        with pytest.raises(StoreBusyError):
            contended.update_comment("a", "never")
    finally:
        blocker.execute("ROLLBACK")
        blocker.close()
        contended.close()

    assert delays == pytest.approx([0.05, 0.10])
    assert store.get("a").comment == ""


def test_retry_policy_is_injectable(store):
    """Test a policy that gives up stops after the first attempt."""
    store.add(make_session("a"))
    attempts = []

    def never(exc, attempt):
        attempts.append(attempt)
        return GIVE_UP

    contended = SessionStore(store.path, busy_timeout_ms=0, retry_policy=never)
    blocker = sqlite3.connect(store.path, isolation_level=None, timeout=0)
    blocker.execute("BEGIN IMMEDIATE")
    try:
        with pytest.raises(StoreBusyError):
            contended.toggle_flag("a")
    finally:
        blocker.execute("ROLLBACK")
        blocker.close()
        contended.close()

    assert attempts == [1]


def test_reads_proceed_during_write(store):
    """Test WAL readers are not blocked by an open write transaction."""
    store.add(make_session("a"))
    blocker = sqlite3.connect(store.path, isolation_level=None, timeout=0)
    blocker.execute("BEGIN IMMEDIATE")
    try:
        assert store.get("a").name == "a"
        assert [s.name for s in store.list()] == ["a"]
    finally:
        blocker.execute("ROLLBACK")
        blocker.close()


def test_concurrent_writers(roost_home):
    """Test several store instances updating concurrently all land."""
    setup = SessionStore.for_home(roost_home)
    for i in range(8):
        setup.add(make_session(f"s{i}"))
    setup.close()

    errors = []

    def worker(i):
        try:
            with SessionStore.for_home(roost_home) as s:
                for _ in range(5):
                    s.update_state(f"s{i}", SessionState.WORKING, f"exec-{i}")
                    s.update_comment(f"s{i}", f"comment {i}")
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    with SessionStore.for_home(roost_home) as s:
        sessions = {x.name: x for x in s.list()}
    assert all(sessions[f"s{i}"].comment == f"comment {i}" for i in range(8))
    assert all(sessions[f"s{i}"].state is SessionState.WORKING for i in range(8))


def test_legacy_agent_flags_table_gains_debug_column(tmp_path):
    """Test opening an older database adds the debug_claude column."""
    db_path = tmp_path / "state.db"
    conn = sqlite3.connect(db_path)
    conn.execute(
        """
        CREATE TABLE session_agent_cli_flags (
            session_name TEXT PRIMARY KEY,
            allow_dangerously_skip_permissions INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.commit()
    conn.close()

    with SessionStore(db_path) as s:
        s.add(make_session("a", debug_claude=True))
        assert s.get("a").debug_claude


_operation = st.one_of(
    st.tuples(st.just("add"), st.integers(0, 5)),
    st.tuples(st.just("delete"), st.integers(0, 5)),
    st.tuples(st.just("swap"), st.integers(0, 5), st.integers(0, 5)),
    st.tuples(st.just("load"),),
)


@settings(max_examples=30, deadline=None, suppress_health_check=[HealthCheck.too_slow])
@given(st.lists(_operation, max_size=15))
def test_positions_dense_after_any_operations(operations):
    """Test load_state always yields positions 0..n-1 in list order."""
    with tempfile.TemporaryDirectory() as tmp:
        with SessionStore.for_home(tmp) as s:
            for op in operations:
                kind = op[0]
                try:
                    if kind == "add":
                        s.add(make_session(f"s{op[1]}"))
                    elif kind == "delete":
                        s.delete(f"s{op[1]}")
                    elif kind == "swap":
                        s.swap_positions(f"s{op[1]}", f"s{op[2]}")
                    else:
                        s.load_state()
                except (SessionExistsError, SessionNotFoundError):
                    pass

            state = s.load_state()
            assert [x.position for x in state] == list(range(len(state)))
            assert state.ordered_names == [x.name for x in s.list()]
