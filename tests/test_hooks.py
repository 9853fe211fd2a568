"""Tests for hook handler and event mapping."""

import orjson
import pytest
from click.testing import CliRunner

from roost.core.notify import EVENT_STATES, handle_event, resolve_execution_id
from roost.core.session import SessionNotFoundError, SessionState
from roost.core.store import SessionStore
from roost.hooks.handler import main

from tests.helpers import make_session


@pytest.fixture
def runner():
    """Click CLI test runner."""
    return CliRunner()


@pytest.fixture
def setup_session(store):
    """Store a session named "task" with a known execution ID."""
    store.add(make_session("task", execution_id="exec-stored"))
    return store


@pytest.mark.parametrize(
    "event,state",
    [
        ("stop", SessionState.IDLE),
        ("start", SessionState.IDLE),
        ("notification", SessionState.WAITING),
        ("permission-request", SessionState.WAITING),
        ("prompt", SessionState.WORKING),
        ("working", SessionState.WORKING),
        ("tool-failure", SessionState.WORKING),
        ("subagent-start", SessionState.WORKING),
        ("subagent-stop", SessionState.WORKING),
        ("pre-compact", SessionState.WORKING),
        ("setup", SessionState.WORKING),
        ("end", SessionState.EXITED),
    ],
)
def test_event_states(event, state):
    """Test each hook event maps to its session state."""
    assert EVENT_STATES[event] is state


def test_handle_event_updates_state(setup_session):
    """Test a known event updates state and execution ID."""
    state = handle_event(setup_session, "task", "prompt", "exec-1")

    assert state is SessionState.WORKING
    loaded = setup_session.get("task")
    assert loaded.state is SessionState.WORKING
    assert loaded.execution_id == "exec-1"


def test_handle_event_unknown_is_ignored(setup_session):
    """Test unknown events change nothing."""
    assert handle_event(setup_session, "task", "bogus", "exec-1") is None
    assert setup_session.get("task").execution_id == "exec-stored"


def test_handle_event_missing_session(store):
    """Test events for unknown sessions raise SessionNotFoundError."""
    with pytest.raises(SessionNotFoundError):
        handle_event(store, "nope", "stop", "exec-1")


def test_resolve_execution_id_precedence(setup_session, monkeypatch):
    """Test explicit > environment > stored > unknown."""
    monkeypatch.setenv("ROOST_EXECUTION_ID", "exec-env")
    assert resolve_execution_id(setup_session, "task", "exec-flag") == "exec-flag"
    assert resolve_execution_id(setup_session, "task") == "exec-env"

    monkeypatch.delenv("ROOST_EXECUTION_ID")
    assert resolve_execution_id(setup_session, "task") == "exec-stored"
    assert resolve_execution_id(setup_session, "nope") == "unknown"


def test_hook_updates_state(runner, setup_session):
    """Test roost-hook records the event's state."""
    result = runner.invoke(main, ["notification", "--session", "task"])

    assert result.exit_code == 0
    loaded = setup_session.get("task")
    assert loaded.state is SessionState.WAITING
    assert loaded.execution_id == "exec-stored"


def test_hook_session_from_env(runner, setup_session, monkeypatch):
    """Test the session name defaults to ROOST_SESSION_NAME."""
    monkeypatch.setenv("ROOST_SESSION_NAME", "task")
    monkeypatch.setenv("ROOST_EXECUTION_ID", "exec-env")

    result = runner.invoke(main, ["end"])

    assert result.exit_code == 0
    loaded = setup_session.get("task")
    assert loaded.state is SessionState.EXITED
    assert loaded.execution_id == "exec-env"


def test_hook_accepts_stdin_payload(runner, setup_session):
    """Test a Claude JSON payload on stdin does not disturb the update."""
    payload = orjson.dumps({"hook_event_name": "Stop", "session_id": "abc"}).decode()

    result = runner.invoke(
        main, ["stop", "--session", "task", "--execution-id", "exec-9"], input=payload
    )

    assert result.exit_code == 0
    assert setup_session.get("task").execution_id == "exec-9"


def test_hook_without_session_is_noop(runner, roost_home):
    """Test the hook does nothing outside a roost session."""
    result = runner.invoke(main, ["stop"])

    assert result.exit_code == 0
    assert not (roost_home / "state.db").exists()


def test_hook_unknown_session_does_not_fail(runner, roost_home):
    """Test a missing session is reported without failing Claude's hook."""
    result = runner.invoke(main, ["stop", "--session", "ghost"])

    assert result.exit_code == 0
    assert "failed to update session state" in result.output


def test_hook_writes_log_file(runner, setup_session, roost_home):
    """Test the hook logs to $ROOST_HOME/logs/roost.log."""
    runner.invoke(main, ["prompt", "--session", "task", "--debug"])

    log_file = roost_home / "logs" / "roost.log"
    assert log_file.exists()
    assert "Hook prompt for session task" in log_file.read_text()


def test_hook_store_is_shared_with_other_writers(runner, roost_home):
    """Test the hook and another open store see each other's writes."""
    with SessionStore.for_home(roost_home) as other:
        other.add(make_session("shared"))
        result = runner.invoke(main, ["working", "--session", "shared"])
        assert result.exit_code == 0
        assert other.get("shared").state is SessionState.WORKING
