"""Move command for roost.

Relocates every session of one repository, with its checkout and worktrees,
from one ROOST_HOME to another.
"""

import click

from roost.core.git import GitClient
from roost.core.migrate import (
    InvalidRepoInfoError,
    MigrationError,
    MigrationResult,
    MigrationService,
    validate_repo_info,
)
from roost.core.paths import expand_path
from roost.core.store import StoreError
from roost.core.tmux import TmuxTerminator


def build_service() -> MigrationService:
    return MigrationService(terminator=TmuxTerminator(), git=GitClient())


def print_summary(result: MigrationResult) -> None:
    click.echo("")
    click.echo(f"✓ Moved {result.moved_count} session(s)")
    for name in result.moved:
        click.echo(f"  - {name}")
    if result.failed:
        click.echo(f"✗ {len(result.failed)} session(s) failed and remain in the source:")
        for name, reason in result.failed.items():
            click.echo(f"  - {name}: {reason}")
    if result.warnings:
        click.echo(f"{len(result.warnings)} warning(s), see above")


@click.command()
@click.option("--repo", "-r", "repo_info", required=True, help="Repository (owner/repo)")
@click.option("--from", "source", required=True, help="Source ROOST_HOME path")
@click.option("--to", "dest", required=True, help="Destination ROOST_HOME path")
@click.option("--force", "-f", is_flag=True, help="Skip confirmation prompt")
def move(repo_info: str, source: str, dest: str, force: bool) -> None:
    """Move a repository's sessions to another ROOST_HOME.

    Kills their tmux sessions, moves the shared checkout and every worktree,
    repairs git worktree links and moves the session records.

    Exits with status 1 if any session could not be moved; those sessions
    stay in the source and the command can be re-run.

    Examples:

        roost sessions move --repo acme/api --from ~/.roost --to ~/work/.roost
    """
    try:
        validate_repo_info(repo_info)
    except InvalidRepoInfoError as e:
        raise click.BadParameter(str(e), param_hint="--repo") from e

    source_home = expand_path(source)
    dest_home = expand_path(dest)
    service = build_service()

    if not force:
        if not source_home.is_dir():
            raise click.ClickException(f"Source ROOST_HOME does not exist: {source_home}")
        try:
            count = len(service.get_sessions_for_repo(source_home, repo_info))
        except StoreError as e:
            raise click.ClickException(str(e)) from e
        click.echo("WARNING: This operation will:")
        click.echo("  - Kill tmux sessions for all sessions in the repository")
        click.echo("  - Move the .main checkout and all worktrees to the new location")
        click.echo("  - Repair git worktree references")
        click.echo(f"  - Move sessions from {source_home} to {dest_home}")
        click.echo(f"\nRepository to move: {repo_info} ({count} session(s))")
        if not click.confirm("\nContinue?", default=False):
            click.echo("Cancelled")
            return

    try:
        result = service.move_repository_between_homes(repo_info, source_home, dest_home)
    except (MigrationError, StoreError) as e:
        raise click.ClickException(str(e)) from e

    print_summary(result)
    if not result.ok:
        raise SystemExit(1)
