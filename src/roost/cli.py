"""CLI entry point for roost.

Usage:
    roost sessions list                  # List sessions in display order
    roost sessions status <name> --next  # Cycle a session's workflow status
    roost sessions move --repo o/r --from ~/.roost --to /data/.roost
"""

import click

from roost.commands.sessions import sessions
from roost.core.logs import configure_logging


@click.group()
@click.option("--debug", is_flag=True, envvar="ROOST_DEBUG", help="Log at debug level")
@click.version_option(package_name="roost")
@click.pass_context
def main(ctx: click.Context, debug: bool) -> None:
    """Roost - named Claude work sessions on git worktrees and tmux.

    Session state lives in $ROOST_HOME/state.db (default ~/.roost) and is
    shared with the roost-hook command that Claude hooks call.
    """
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    configure_logging(debug)


# Register commands
main.add_command(sessions)
