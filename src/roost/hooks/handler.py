"""Hook handler for Claude Code integration.

This module provides the `roost-hook` CLI command that Claude Code hooks call
to record session state in the shared SQLite store.

Entry point defined in pyproject.toml:
    roost-hook = "roost.hooks.handler:main"
"""

import logging
import os
import sys

import click
import orjson

from roost.core.config import store_options
from roost.core.logs import configure_logging
from roost.core.notify import handle_event, resolve_execution_id
from roost.core.paths import get_db_path
from roost.core.session import SessionNotFoundError
from roost.core.store import SessionStore, StoreError

logger = logging.getLogger(__name__)

SESSION_NAME_ENV = "ROOST_SESSION_NAME"


def read_stdin_json() -> dict:
    """Read and parse the hook payload from stdin, if any."""
    if sys.stdin is None or sys.stdin.isatty():
        return {}
    try:
        data = sys.stdin.read()
        if not data:
            return {}
        payload = orjson.loads(data)
    except (orjson.JSONDecodeError, ValueError, OSError):
        return {}
    return payload if isinstance(payload, dict) else {}


@click.command()
@click.argument("event")
@click.option("--session", "session_name", default=None, help="Session name (default: $ROOST_SESSION_NAME)")
@click.option("--execution-id", default=None, help="Execution ID of the interactive run")
@click.option("--debug", is_flag=True, help="Log at debug level")
def main(event: str, session_name: str | None, execution_id: str | None, debug: bool) -> None:
    """Record the session state implied by a Claude hook EVENT.

    Failures are reported on stderr but never fail the hook, so Claude is
    not interrupted by a busy or missing database.

    Examples:

        roost-hook stop --session my-task

        ROOST_SESSION_NAME=my-task roost-hook prompt
    """
    configure_logging(debug)

    session_name = session_name or os.environ.get(SESSION_NAME_ENV, "")
    if not session_name:
        logger.debug("Hook %s fired outside a roost session", event)
        return

    payload = read_stdin_json()
    if payload:
        logger.debug(
            "Hook payload for %s: %s", event, ", ".join(sorted(str(key) for key in payload))
        )

    try:
        with SessionStore(get_db_path(), **store_options()) as store:
            resolved_id = resolve_execution_id(store, session_name, execution_id)
            logger.info(
                "Hook %s for session %s (execution %s, pid %d)",
                event,
                session_name,
                resolved_id,
                os.getpid(),
            )
            handle_event(store, session_name, event, resolved_id)
    except (SessionNotFoundError, StoreError) as e:
        logger.error("Failed to record %s for %s: %s", event, session_name, e)
        click.echo(f"Warning: failed to update session state: {e}", err=True)
