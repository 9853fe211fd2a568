"""Map Claude hook events onto session states."""

import logging
import os

from roost.core.capabilities import SessionReader, SessionStateUpdater
from roost.core.session import SessionNotFoundError, SessionState

logger = logging.getLogger(__name__)

EXECUTION_ID_ENV = "ROOST_EXECUTION_ID"
UNKNOWN_EXECUTION_ID = "unknown"

EVENT_STATES: dict[str, SessionState] = {
    "stop": SessionState.IDLE,
    "start": SessionState.IDLE,
    "notification": SessionState.WAITING,
    "permission-request": SessionState.WAITING,
    "prompt": SessionState.WORKING,
    "working": SessionState.WORKING,
    "tool-failure": SessionState.WORKING,
    "subagent-start": SessionState.WORKING,
    "subagent-stop": SessionState.WORKING,
    "pre-compact": SessionState.WORKING,
    "setup": SessionState.WORKING,
    "end": SessionState.EXITED,
}


def state_for_event(event: str) -> SessionState | None:
    """Get the session state an event implies, or None for unknown events."""
    return EVENT_STATES.get(event)


def resolve_execution_id(reader: SessionReader, name: str, explicit: str | None = None) -> str:
    """Pick the execution ID to record for a hook event.

    Precedence: explicit value, then ROOST_EXECUTION_ID, then the value
    already stored on the session, then "unknown".
    """
    if explicit:
        return explicit
    if env_value := os.environ.get(EXECUTION_ID_ENV):
        return env_value
    try:
        stored = reader.get(name).execution_id
    except SessionNotFoundError as e:
        logger.warning("Could not determine execution ID: %s", e)
        return UNKNOWN_EXECUTION_ID
    return stored or UNKNOWN_EXECUTION_ID


def handle_event(
    updater: SessionStateUpdater,
    name: str,
    event: str,
    execution_id: str,
) -> SessionState | None:
    """Record the state implied by a hook event.

    Returns:
        The new state, or None when the event is unknown and nothing changed.

    Raises:
        SessionNotFoundError: If the session does not exist.
    """
    state = state_for_event(event)
    if state is None:
        logger.warning("Unknown event type %r, skipping state update", event)
        return None

    updater.update_state(name, state, execution_id)
    logger.info("Session %s is now %s (execution %s)", name, state.value, execution_id)
    return state
