"""Sessions commands for roost.

Inspect and edit the session records in $ROOST_HOME/state.db.
"""

from collections.abc import Iterator
from contextlib import contextmanager

import click
import orjson

from roost.commands.move import move
from roost.core.config import StatusConfig, load_status_config, store_options
from roost.core.paths import get_db_path
from roost.core.session import (
    NestedSessionError,
    Session,
    SessionExistsError,
    SessionNotFoundError,
    sanitize_session_name,
)
from roost.core.store import SessionStore, StoreError


@contextmanager
def open_store() -> Iterator[SessionStore]:
    """Open the store for $ROOST_HOME, turning failures into CLI errors."""
    try:
        store = SessionStore(get_db_path(), **store_options())
    except StoreError as e:
        raise click.ClickException(str(e)) from e
    try:
        yield store
    except SessionNotFoundError as e:
        raise click.ClickException(f"Session '{e.name}' not found") from e
    except (SessionExistsError, NestedSessionError, StoreError) as e:
        raise click.ClickException(str(e)) from e
    finally:
        store.close()


def _styled_status(status: str | None, config: StatusConfig) -> str:
    if not status:
        return ""
    label = f"{config.icon_for(status)} {status}".strip()
    color = config.color_for(status)
    if color.isdigit():
        return click.style(label, fg=int(color))
    return label


def format_session_line(session: Session, config: StatusConfig) -> str:
    """Render one session as a single listing line."""
    markers = ""
    if session.is_flagged:
        markers += "⚑"
    if session.is_archived:
        markers += "🗄"
    parts = [
        session.state.symbol,
        session.name,
        markers,
        session.display_name if session.display_name != session.name else "",
        session.branch_name,
        session.repo_info,
        _styled_status(session.status, config),
    ]
    line = "  ".join(part for part in parts if part)
    if session.shell_session is not None:
        line += f"  [shell: {session.shell_session.name}]"
    if session.comment:
        line += f"  # {session.comment}"
    return line


def _dump_json(value: object) -> None:
    click.echo(orjson.dumps(value, option=orjson.OPT_INDENT_2).decode())


@click.group()
def sessions() -> None:
    """Manage roost sessions."""
    pass


@sessions.command("list")
@click.option("--all", "-a", "show_all", is_flag=True, help="Include archived sessions")
@click.option("--json", "as_json", is_flag=True, help="Output JSON")
def list_sessions(show_all: bool, as_json: bool) -> None:
    """List top-level sessions in display order.

    Examples:

        roost sessions list

        roost sessions list --all --json
    """
    with open_store() as store:
        collection = store.load_state(include_archived=show_all)
    items = list(collection)

    if as_json:
        _dump_json(items)
        return

    if not items:
        click.echo("No sessions")
        return

    config = load_status_config()
    for session in items:
        click.echo(format_session_line(session, config))
    click.echo(f"\nTotal: {len(items)} session(s)")


@sessions.command()
@click.argument("name")
@click.option("--json", "as_json", is_flag=True, help="Output JSON")
def show(name: str, as_json: bool) -> None:
    """Show every field of one session."""
    with open_store() as store:
        session = store.get(name)

    if as_json:
        _dump_json(session)
        return

    fields = [
        ("Name", session.name),
        ("Display name", session.display_name),
        ("State", f"{session.state.symbol} {session.state.value}"),
        ("Status", session.status or ""),
        ("Repository", session.repo_info),
        ("Source", session.repo_source),
        ("Branch", session.branch_name),
        ("Checkout", session.repo_path),
        ("Worktree", session.worktree_path),
        ("Claude dir", session.claude_dir),
        ("Execution ID", session.execution_id),
        ("Flagged", "yes" if session.is_flagged else "no"),
        ("Archived", "yes" if session.is_archived else "no"),
        ("Skip permissions", "yes" if session.allow_dangerously_skip_permissions else "no"),
        ("Debug Claude", "yes" if session.debug_claude else "no"),
        ("Comment", session.comment),
        ("Shell session", session.shell_session.name if session.shell_session else ""),
        ("Last updated", session.last_updated.strftime("%Y-%m-%d %H:%M:%S")),
    ]
    width = max(len(label) for label, _ in fields)
    for label, value in fields:
        click.echo(f"{label + ':':<{width + 1}} {value}")


@sessions.command("del")
@click.argument("name")
@click.option("--force", "-f", is_flag=True, help="Skip confirmation prompt")
def delete(name: str, force: bool) -> None:
    """Delete a session record (and its shell session)."""
    if not force:
        click.confirm(f"Delete session '{name}'?", abort=True)
    with open_store() as store:
        store.delete(name)
    click.echo(f"Deleted session '{name}'")


@sessions.command()
@click.argument("name")
def flag(name: str) -> None:
    """Toggle the flag on a session."""
    with open_store() as store:
        store.toggle_flag(name)
        flagged = store.get(name).is_flagged
    click.echo(f"{'Flagged' if flagged else 'Unflagged'} '{name}'")


@sessions.command()
@click.argument("name")
def archive(name: str) -> None:
    """Toggle whether a session is archived."""
    with open_store() as store:
        store.toggle_archive(name)
        archived = store.get(name).is_archived
    click.echo(f"{'Archived' if archived else 'Unarchived'} '{name}'")


@sessions.command()
@click.argument("name")
@click.argument("text", default="")
def comment(name: str, text: str) -> None:
    """Set the comment on a session; omit TEXT to clear it."""
    with open_store() as store:
        store.update_comment(name, text)
    click.echo(f"Updated comment on '{name}'" if text else f"Cleared comment on '{name}'")


@sessions.command()
@click.argument("name")
@click.argument("value", required=False)
@click.option("--next", "cycle", is_flag=True, help="Advance to the next configured status")
@click.option("--clear", is_flag=True, help="Remove the status")
def status(name: str, value: str | None, cycle: bool, clear: bool) -> None:
    """Set, cycle or clear the workflow status of a session.

    Statuses come from the "statuses" setting in $ROOST_HOME/settings.json.

    Examples:

        roost sessions status my-task review

        roost sessions status my-task --next
    """
    if sum(bool(x) for x in (value, cycle, clear)) != 1:
        raise click.UsageError("Give exactly one of STATUS, --next or --clear")

    config = load_status_config()
    with open_store() as store:
        if cycle:
            value = config.next_status(store.get(name).status)
        elif clear:
            value = None
        elif not config.is_valid(value):
            raise click.BadParameter(
                f"{value!r} is not one of: {', '.join(config.statuses)}",
                param_hint="STATUS",
            )
        store.update_status(name, value)

    if value:
        click.echo(f"Status of '{name}' is now {value}")
    else:
        click.echo(f"Cleared status of '{name}'")


@sessions.command()
@click.argument("old_name")
@click.argument("new_name")
@click.option("--display-name", default=None, help="Display name (default: NEW_NAME)")
def rename(old_name: str, new_name: str, display_name: str | None) -> None:
    """Rename a session, keeping its metadata."""
    key = sanitize_session_name(new_name)
    if not key:
        raise click.BadParameter("name has no usable characters", param_hint="NEW_NAME")
    with open_store() as store:
        store.rename(old_name, key, display_name or new_name)
    click.echo(f"Renamed '{old_name}' to '{key}'")


@sessions.command()
@click.argument("name_a")
@click.argument("name_b")
def swap(name_a: str, name_b: str) -> None:
    """Swap the list positions of two sessions."""
    with open_store() as store:
        store.swap_positions(name_a, name_b)
    click.echo(f"Swapped '{name_a}' and '{name_b}'")


@sessions.command("set")
@click.argument("name")
@click.option(
    "--skip-permissions/--no-skip-permissions",
    default=None,
    help="Start Claude with --dangerously-skip-permissions",
)
@click.option("--debug-claude/--no-debug-claude", default=None, help="Start Claude in debug mode")
@click.option("--claude-dir", default=None, help="Override the Claude config directory")
def set_options(
    name: str,
    skip_permissions: bool | None,
    debug_claude: bool | None,
    claude_dir: str | None,
) -> None:
    """Change how Claude is started for a session."""
    if skip_permissions is None and debug_claude is None and claude_dir is None:
        raise click.UsageError("Nothing to set")

    with open_store() as store:
        if skip_permissions is not None:
            store.update_skip_permissions(name, skip_permissions)
        if debug_claude is not None:
            store.update_debug_claude(name, debug_claude)
        if claude_dir is not None:
            store.update_claude_dir(name, claude_dir)
    click.echo(f"Updated '{name}'")


sessions.add_command(move)
