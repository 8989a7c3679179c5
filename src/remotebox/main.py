import asyncio
import json
import logging
from datetime import timedelta
from pathlib import Path
from typing import Optional, Tuple

import typer
from rich import print
from rich.console import Console
from rich.table import Table

from remotebox.config import get_settings
from remotebox.core.claim import claim_ownership, force_claim, release_ownership
from remotebox.core.conflict import check_session_conflict
from remotebox.core.gate import GuardedOperation, acquire_write_access, authorize
from remotebox.core.ownership import (
    clear_session_mirror,
    get_ownership_status,
    list_ownership,
    mirror_session,
)
from remotebox.core.session import delete_lease, lease_path, read_lease, write_lease
from remotebox.core.shell import join_remote_path
from remotebox.core.validation import validate_project_name, validate_remote_path, validate_ssh_host
from remotebox.errors import InvalidTargetError, RemoteboxError
from remotebox.identity import Identity
from remotebox.models import OwnershipStatus
from remotebox.remote.ssh import get_default_channel
from remotebox.remotes import RemoteEntry, RemoteError, RemoteRegistry, ResolvedTarget

logger = logging.getLogger(__name__)

APP_HELP = """
rbox: keep one machine at a time writing to a project synced over SSH.

Two records coordinate the machines that share a remote project:

1. SESSION LEASE: a local, tamper-evident note that this machine is using the
   project right now. It expires on its own (24h by default).
2. OWNERSHIP: a record on the remote host naming the one user+machine allowed
   to change the canonical copy. Claimed atomically; first claimant wins.

Every command that would change the remote copy asks the gate first
(`rbox check`). Read-only commands never need ownership.

HOST may be an ssh destination (user@host) or a remote name saved with
`rbox remote add`. A REMOTE_PATH given as a bare project name is taken
relative to the remote's base path.
"""

app = typer.Typer(name="rbox", help=APP_HELP, no_args_is_help=True)
lease_app = typer.Typer(name="lease", help="Local session leases.")
owner_app = typer.Typer(name="owner", help="Remote project ownership.")
remote_app = typer.Typer(name="remote", help="Named remotes (~/.remotebox/config.toml).")
app.add_typer(lease_app, name="lease")
app.add_typer(owner_app, name="owner")
app.add_typer(remote_app, name="remote")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log every remote round trip."),
):
    """
    remotebox CLI: single-writer coordination for synced projects.
    """
    if verbose:
        level = logging.DEBUG
    else:
        level = getattr(logging, get_settings().log_level.upper(), logging.WARNING)
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")


# ============================================================================
# Helpers
# ============================================================================

def _fail(message: str) -> None:
    print(f"[red]Error: {message}[/red]")
    raise typer.Exit(code=1)


def _echo_json(data) -> None:
    typer.echo(json.dumps(data, indent=2, default=str))


def resolve_target(host: Optional[str], remote_path: Optional[str] = None) -> Tuple[ResolvedTarget, str]:
    """
    Resolve HOST (or a remote name) and REMOTE_PATH for a remote command.

    Returns:
        (target, absolute remote path). With no REMOTE_PATH the path is the
        target's base path.

    Raises:
        InvalidTargetError: If the host or path is unusable
    """
    try:
        target = RemoteRegistry().resolve(host)
    except RemoteError as e:
        raise InvalidTargetError(str(e))

    check = validate_ssh_host(target.ssh_host)
    if not check.valid:
        raise InvalidTargetError(check.error)

    if not remote_path:
        path = target.base_path
    elif remote_path.startswith(("/", "~")):
        path = remote_path
    else:
        check = validate_project_name(remote_path)
        if not check.valid:
            raise InvalidTargetError(check.error)
        path = join_remote_path(target.base_path, remote_path)

    check = validate_remote_path(path)
    if not check.valid:
        raise InvalidTargetError(check.error)
    return target, path


def _target_or_exit(host: Optional[str], remote_path: Optional[str] = None) -> Tuple[ResolvedTarget, str]:
    try:
        return resolve_target(host, remote_path)
    except RemoteboxError as e:
        _fail(str(e))


def _describe_status(status: OwnershipStatus) -> str:
    if status.error:
        return f"[red]unknown[/red] ({status.error})"
    if not status.has_owner:
        return "[yellow]corrupt[/yellow]" if status.corrupt else "[dim]unowned[/dim]"
    mine = " [green](you)[/green]" if status.is_owner else ""
    return f"{status.info.owner}@{status.info.machine}{mine}"


# ============================================================================
# Session leases
# ============================================================================

@lease_app.command("write")
def lease_write(
    project_dir: Path = typer.Argument(Path("."), help="Local project directory"),
    ttl_hours: Optional[float] = typer.Option(None, "--ttl-hours", help="Lease lifetime (default RBOX_SESSION_TTL_HOURS)"),
    host: Optional[str] = typer.Option(None, "--host", help="Also mirror the lease to this host"),
    remote_path: Optional[str] = typer.Option(None, "--remote-path", help="Remote project path for --host"),
):
    """
    Record that this machine is now working on the project.

    Replaces any previous lease. With --host the lease is also copied into the
    remote project's state file so other machines can see it.

    Examples:
        rbox lease write
        rbox lease write ~/code/app --host work --remote-path app
    """
    if ttl_hours is not None and ttl_hours <= 0:
        _fail("--ttl-hours must be positive")

    ttl = timedelta(hours=ttl_hours) if ttl_hours is not None else None
    try:
        lease = write_lease(project_dir, ttl=ttl)
    except OSError as e:
        _fail(f"Could not write lease: {e}")

    print(f"[green]Session lease written for {lease.user}@{lease.machine}[/green]")
    print(f"  Expires: {lease.expires}")

    if host:
        target, path = _target_or_exit(host, remote_path or project_dir.resolve().name)
        result = asyncio.run(mirror_session(
            target.ssh_host, path, lease,
            channel=get_default_channel(), identity_file=target.identity_file,
        ))
        if not result.success:
            _fail(f"Lease written locally but not mirrored: {result.error}")
        print(f"[green]Mirrored to {target.ssh_host}:{path}[/green]")


@lease_app.command("show")
def lease_show(
    project_dir: Path = typer.Argument(Path("."), help="Local project directory"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Show the active session lease, if any."""
    lease = read_lease(project_dir)

    if json_output:
        _echo_json(lease.model_dump(mode="json") if lease else None)
        return

    if lease is None:
        print(f"[dim]No active session lease at {lease_path(project_dir)}[/dim]")
        return

    print(f"[bold]{lease.user}@{lease.machine}[/bold] (pid {lease.pid})")
    print(f"  Started: {lease.timestamp}")
    print(f"  Expires: {lease.expires}")


@lease_app.command("clear")
def lease_clear(
    project_dir: Path = typer.Argument(Path("."), help="Local project directory"),
    host: Optional[str] = typer.Option(None, "--host", help="Also clear the remote mirror on this host"),
    remote_path: Optional[str] = typer.Option(None, "--remote-path", help="Remote project path for --host"),
):
    """Remove the session lease (other state in the file is kept)."""
    delete_lease(project_dir)
    print("[green]Session lease cleared[/green]")

    if host:
        target, path = _target_or_exit(host, remote_path or project_dir.resolve().name)
        result = asyncio.run(clear_session_mirror(
            target.ssh_host, path,
            channel=get_default_channel(), identity_file=target.identity_file,
        ))
        if not result.success:
            _fail(f"Remote session mirror not cleared: {result.error}")
        print(f"[green]Cleared mirror on {target.ssh_host}:{path}[/green]")


@app.command("conflict")
def conflict(
    project_dir: Path = typer.Argument(Path("."), help="Local project directory"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """
    Warn if another machine holds an active lease on the project.

    Exits 1 when there is a conflict.
    """
    result = check_session_conflict(project_dir)

    if json_output:
        _echo_json(result.model_dump(mode="json"))
    elif result.has_conflict:
        lease = result.existing_session
        print(f"[yellow]Project is in use on {lease.machine} by {lease.user}[/yellow]")
        print(f"  Lease expires: {lease.expires}")
    else:
        print("[green]No conflicting session[/green]")

    if result.has_conflict:
        raise typer.Exit(code=1)


# ============================================================================
# Ownership
# ============================================================================

@owner_app.command("status")
def owner_status(
    host: str = typer.Argument(..., help="SSH host or remote name"),
    remote_path: str = typer.Argument(..., help="Remote project path"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Show who owns a remote project."""
    target, path = _target_or_exit(host, remote_path)
    status = asyncio.run(get_ownership_status(
        target.ssh_host, path,
        channel=get_default_channel(), identity_file=target.identity_file,
    ))

    if json_output:
        _echo_json(status.model_dump(mode="json"))
    else:
        print(f"{target.ssh_host}:{path}: {_describe_status(status)}")
        if status.info:
            print(f"  Since: {status.info.created}")

    if status.error:
        raise typer.Exit(code=1)


@owner_app.command("claim")
def owner_claim(
    host: str = typer.Argument(..., help="SSH host or remote name"),
    remote_path: str = typer.Argument(..., help="Remote project path"),
    force: bool = typer.Option(False, "--force", help="Take ownership even if someone else holds it"),
):
    """
    Claim ownership of a remote project.

    Claiming a project you already own just refreshes the record. Use --force
    only to resolve a conflict by hand; the previous owner is audit-logged.
    """
    target, path = _target_or_exit(host, remote_path)
    operation = force_claim if force else claim_ownership
    result = asyncio.run(operation(
        target.ssh_host, path,
        channel=get_default_channel(), identity_file=target.identity_file,
    ))

    if not result.success:
        _fail(result.error or result.code.value)

    print(f"[green]Ownership {result.code.value}: {result.record.owner}@{result.record.machine}[/green]")
    if force and result.existing and not Identity.current().matches(result.existing.owner, result.existing.machine):
        print(f"[yellow]Previous owner was {result.existing.owner}@{result.existing.machine}[/yellow]")


@owner_app.command("release")
def owner_release(
    host: str = typer.Argument(..., help="SSH host or remote name"),
    remote_path: str = typer.Argument(..., help="Remote project path"),
):
    """Give up ownership of a remote project you own."""
    target, path = _target_or_exit(host, remote_path)
    result = asyncio.run(release_ownership(
        target.ssh_host, path,
        channel=get_default_channel(), identity_file=target.identity_file,
    ))

    if not result.success:
        _fail(result.error)
    if result.skipped:
        info = result.owner_info
        print(f"[yellow]Not released: owned by {info.owner}@{info.machine}[/yellow]")
        return
    print("[green]Ownership released[/green]")


@owner_app.command("list")
def owner_list(
    host: Optional[str] = typer.Argument(None, help="SSH host or remote name (default RBOX_DEFAULT_HOST)"),
    base_path: Optional[str] = typer.Argument(None, help="Directory holding projects (default: remote's path)"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """List ownership of every project under a remote directory."""
    target, path = _target_or_exit(host, base_path)
    try:
        rows = asyncio.run(list_ownership(
            target.ssh_host, path,
            channel=get_default_channel(), identity_file=target.identity_file,
        ))
    except (ConnectionError, ValueError) as e:
        _fail(str(e))

    if json_output:
        _echo_json([row.model_dump(mode="json") for row in rows])
        return

    if not rows:
        print(f"[dim]No projects with remotebox state under {path}[/dim]")
        return

    table = Table(title=f"Ownership on {target.ssh_host}:{path}")
    table.add_column("Project", style="cyan")
    table.add_column("Owner")
    table.add_column("Since", style="dim")
    for row in rows:
        table.add_row(
            row.project,
            _describe_status(row.status),
            row.status.info.created if row.status.info else "",
        )
    Console().print(table)


@app.command("check")
def check(
    host: str = typer.Argument(..., help="SSH host or remote name"),
    remote_path: str = typer.Argument(..., help="Remote project path"),
    operation: GuardedOperation = typer.Option(GuardedOperation.PUSH, "--operation", "-o", help="Operation about to run"),
    claim: bool = typer.Option(False, "--claim", help="Claim the project if it is unowned"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """
    Ask the authorization gate whether an operation may run.

    Exits 0 when authorized and 1 when denied, so scripts can run
    `rbox check HOST PATH && <push>`.
    """
    target, path = _target_or_exit(host, remote_path)
    gate = acquire_write_access if claim else authorize
    result = asyncio.run(gate(
        operation, target.ssh_host, path,
        channel=get_default_channel(), identity_file=target.identity_file,
    ))

    if json_output:
        _echo_json(result.model_dump(mode="json"))
    elif result.authorized:
        print(f"[green]Authorized ({result.code.value})[/green]")
    else:
        print(f"[red]Denied ({result.code.value}): {result.error}[/red]")

    if not result.authorized:
        raise typer.Exit(code=1)


# ============================================================================
# Named remotes
# ============================================================================

@remote_app.command("add")
def remote_add(
    name: str = typer.Argument(..., help="Short name for the remote"),
    host: str = typer.Argument(..., help="Hostname or IP"),
    user: Optional[str] = typer.Option(None, "--user", "-u", help="SSH login"),
    path: str = typer.Option("~/code", "--path", "-p", help="Base directory holding projects"),
    identity_file: Optional[str] = typer.Option(None, "--identity-file", "-i", help="SSH private key"),
):
    """Save a named remote."""
    entry = RemoteEntry(host=host, user=user, path=path, identity_file=identity_file)
    try:
        RemoteRegistry().add(name, entry)
    except RemoteError as e:
        _fail(str(e))
    print(f"[green]Remote '{name}' saved ({entry.ssh_host}:{entry.path})[/green]")


@remote_app.command("list")
def remote_list(
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """List saved remotes."""
    remotes = RemoteRegistry().list()

    if json_output:
        _echo_json({name: entry.model_dump(mode="json") for name, entry in remotes.items()})
        return

    if not remotes:
        print("[dim]No remotes configured. Add one with: rbox remote add NAME HOST[/dim]")
        return

    table = Table(title="Remotes")
    table.add_column("Name", style="cyan")
    table.add_column("Destination")
    table.add_column("Path")
    for name, entry in sorted(remotes.items()):
        table.add_row(name, entry.ssh_host, entry.path)
    Console().print(table)


@remote_app.command("remove")
def remote_remove(
    name: str = typer.Argument(..., help="Remote to delete"),
):
    """Delete a saved remote."""
    try:
        removed = RemoteRegistry().remove(name)
    except RemoteError as e:
        _fail(str(e))
    if not removed:
        _fail(f"No remote named '{name}'")
    print(f"[green]Remote '{name}' removed[/green]")


if __name__ == "__main__":
    app()
