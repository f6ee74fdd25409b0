"""Command line interface: evm <command>."""

import logging
from functools import cached_property
from pathlib import Path
from typing import List, Optional

import click

from dotevm import __version__
from dotevm.api.client import EvmAPI
from dotevm.auth.service import AuthService
from dotevm.config import get_database_path, get_server_url, get_session_path
from dotevm.errors import AuthExpiredError, ConnectivityError, EvmError, Result, ValidationError
from dotevm.projects import ProjectService, RemoteOutcome
from dotevm.session import Session, SessionStore
from dotevm.staging import StagingArea, parse_selection
from dotevm.store.local import LocalStore
from dotevm.store.models import Project
from dotevm.sync.engine import SyncReconciler, SyncReport
from dotevm.vcs import FileState, VersionControl
from dotevm.workspace import scan_env_files

log = logging.getLogger(__name__)

_STATE_COLORS = {
    FileState.NEW: "green",
    FileState.MODIFIED: "yellow",
    FileState.DELETED: "red",
    FileState.CORRUPT: "red",
    FileState.UNCHANGED: None,
}


class App:
    """Per-invocation wiring: store, session and API client."""

    def __init__(self, debug: bool = False) -> None:
        self.debug = debug
        self.cwd = Path.cwd()

    @cached_property
    def store(self) -> LocalStore:
        return LocalStore(get_database_path())

    @cached_property
    def sessions(self) -> SessionStore:
        return SessionStore(get_session_path())

    def api(self, session: Optional[Session] = None) -> EvmAPI:
        if session is None:
            return EvmAPI(get_server_url())
        return EvmAPI(
            get_server_url(),
            access_token=session.access_token,
            refresh_token=session.refresh_token,
            on_tokens_refreshed=lambda a, r: self.sessions.update_tokens(session, a, r),
        )

    def session(self) -> Session:
        session = self.sessions.load()
        if session is None:
            raise click.ClickException("Not logged in. Run 'evm login' or 'evm register'.")
        return session

    def project(self, session: Session) -> Project:
        return unwrap(ProjectService(self.store, session).current_project(self.cwd))

    def directory(self, project: Project) -> Path:
        return Path(project.directory_path) if project.directory_path else self.cwd


def unwrap(result: Result):
    """Value of result, or exit with its error message."""
    if not result.ok:
        log.debug("Command failed: %r", result.error)
        raise click.ClickException(str(result.error))
    return result.value


def _cloud_call(app: App, session: Session, call):
    """
    Run call(api) for an online session. An expired session drops its tokens and
    exits; ConnectivityError is left to the caller, other errors exit with their message.
    """
    try:
        return call(app.api(session))
    except AuthExpiredError:
        app.sessions.drop_tokens(session)
        raise click.ClickException("Session expired. Run 'evm login' to use cloud operations.")
    except ConnectivityError:
        raise
    except EvmError as e:
        raise click.ClickException(str(e))


def _report_remote(outcome, what: str) -> None:
    if outcome.remote == RemoteOutcome.SYNCED:
        click.secho(f"{what} (synced to cloud)", fg="green")
    elif outcome.remote == RemoteOutcome.QUEUED:
        click.secho(f"{what} locally; cloud update queued for the next sync", fg="yellow")
    elif outcome.remote == RemoteOutcome.AUTH_REQUIRED:
        click.secho(f"{what} locally; log in again to finish the cloud update", fg="yellow")
    elif outcome.remote == RemoteOutcome.FAILED:
        click.secho(f"{what} locally; cloud update failed: {outcome.detail}", fg="red")
    else:
        click.secho(what, fg="green")


def _report_sync(app: App, session: Session, report: SyncReport) -> None:
    if report.auth_required:
        app.sessions.drop_tokens(session)
        raise click.ClickException("Session expired. Run 'evm login' to use cloud operations.")
    if report.offline:
        click.secho("Server unreachable; sync queued and will run next time.", fg="yellow")
        return
    if report.replay and report.replay.replayed:
        click.echo(f"Replayed {report.replay.replayed} pending operation(s)")
    if report.push:
        click.echo(
            f"Pushed {report.push.files} file(s), {report.push.versions} version(s), "
            f"{report.push.rollbacks} rollback(s)"
        )
        for name, error in report.push.errors.items():
            click.secho(f"  {name}: {error}", fg="red", err=True)
    if report.pull:
        for name, action in report.pull.actions.items():
            click.echo(f"  {name}: {action.value.replace('_', ' ')}")
        for name, error in report.pull.errors.items():
            click.secho(f"  {name}: {error}", fg="red", err=True)
    if not report.ok:
        raise click.ClickException("Sync finished with errors")
    click.secho("Sync complete", fg="green")


@click.group()
@click.version_option(__version__, prog_name="evm")
@click.option("-d", "--debug", is_flag=True, default=False, help="Enable debug logging.")
@click.pass_context
def cli(ctx, debug: bool):
    """Versioned, encrypted .env files with offline-first cloud sync."""
    ctx.obj = App(debug=debug)


# --- Account ---


@cli.command()
@click.option("--email", prompt=True)
@click.password_option()
@click.pass_obj
def register(app: App, email: str, password: str):
    """Create an account (locally if the server is unreachable)."""
    session = unwrap(AuthService(app.store, app.sessions, app.api()).register(email, password))
    mode = "online" if session.is_online else "offline (local only)"
    click.secho(f"Registered {session.email} [{mode}]", fg="green")


@cli.command()
@click.option("--email", prompt=True)
@click.option("--password", prompt=True, hide_input=True)
@click.pass_obj
def login(app: App, email: str, password: str):
    """Log in; falls back to the local account when offline."""
    session = unwrap(AuthService(app.store, app.sessions, app.api()).login(email, password))
    mode = "online" if session.is_online else "offline"
    click.secho(f"Logged in as {session.email} [{mode}]", fg="green")


@cli.command()
@click.pass_obj
def logout(app: App):
    """Forget the current session."""
    AuthService(app.store, app.sessions, app.api()).logout()
    click.echo("Logged out")


@cli.command()
@click.pass_obj
def whoami(app: App):
    """Show the current user; online sessions are confirmed with the server."""
    session = app.session()
    if not session.is_online:
        click.echo(f"{session.email} [offline]")
        return
    try:
        account = _cloud_call(app, session, lambda api: api.me())
    except ConnectivityError:
        click.echo(f"{session.email} [online, server unreachable]")
        return
    click.echo(f"{account['email']} [online]")


# --- Projects ---


@cli.command()
@click.argument("name", required=False)
@click.option("--description", default=None)
@click.pass_obj
def init(app: App, name: Optional[str], description: Optional[str]):
    """Create a project for the current directory."""
    session = app.session()
    name = name or app.cwd.name
    project = unwrap(ProjectService(app.store, session).init_project(name, app.cwd, description))
    click.secho(f"Initialized project {project.name} in {project.directory_path}", fg="green")
    found = scan_env_files(app.cwd)
    if found:
        click.echo(f"Found {len(found)} env file(s). Run 'evm add .' to stage them.")


@cli.command(name="list")
@click.option("--all", "show_all", is_flag=True, help="Also list each project's files.")
@click.option("--remote", is_flag=True, help="List the projects stored in the cloud instead.")
@click.pass_obj
def list_projects(app: App, show_all: bool, remote: bool):
    """List your projects."""
    session = app.session()
    if remote:
        _list_remote_projects(app, session)
        return
    projects = unwrap(ProjectService(app.store, session).list_projects())
    if not projects:
        click.echo("No projects. Run 'evm init' in a project directory.")
        return
    current = app.store.get_current_project(session.user_id, app.cwd)
    for project in projects:
        marker = "*" if current.ok and current.value.id == project.id else " "
        click.echo(f"{marker} {project.name:<30} {project.directory_path or ''}")
        if show_all:
            for env_file in unwrap(app.store.list_env_files(project.id)):
                count = unwrap(app.store.count_versions(env_file.id))
                click.echo(f"      {env_file.name:<26} {count} version(s)")


def _list_remote_projects(app: App, session: Session) -> None:
    if not session.is_online:
        raise click.ClickException("Listing cloud projects needs an online session. Run 'evm login'.")
    try:
        projects = _cloud_call(app, session, lambda api: api.list_projects())
    except ConnectivityError as e:
        raise click.ClickException(f"Server unreachable: {e}")
    if not projects:
        click.echo("No projects in the cloud yet. Run 'evm push' in a project.")
        return
    for project in projects:
        click.echo(f"  {project['name']:<30} {project['file_count']} file(s)")


# --- Working tree ---


@cli.command()
@click.argument("files", nargs=-1)
@click.option("-m", "--message", default=None, help="Commit message for the staged files.")
@click.option("-s", "--select", "selection", default=None, help="File numbers to stage, e.g. 1,3 or all.")
@click.pass_obj
def add(app: App, files: tuple, message: Optional[str], selection: Optional[str]):
    """Stage changed env files for the next push."""
    session = app.session()
    project = app.project(session)
    staging = StagingArea(app.store, session)
    on_disk = scan_env_files(app.directory(project))
    if files and "." not in files:
        missing = [f for f in files if f not in on_disk]
        if missing:
            raise click.ClickException(f"Not an env file in this project: {', '.join(missing)}")
        on_disk = {name: on_disk[name] for name in files}
    changed = unwrap(staging.detect_changes(project, on_disk))
    if not changed:
        click.echo("No changes to stage")
        return
    if not files and selection is None:
        for index, staged in enumerate(changed, start=1):
            click.echo(f"  {index}. {staged.name} ({staged.size} bytes)")
        selection = click.prompt("Select files to stage", default="all")
    if selection is not None:
        indexes = unwrap_selection(selection, len(changed))
        changed = [changed[i] for i in indexes]
    record = unwrap(staging.stage(project, changed, message))
    click.secho(f"Staged {len(record.files)} file(s): {', '.join(f.name for f in record.files)}", fg="green")


def unwrap_selection(selection: str, count: int) -> List[int]:
    try:
        return parse_selection(selection, count)
    except ValidationError as e:
        raise click.ClickException(str(e)) from e


@cli.command()
@click.pass_obj
def status(app: App):
    """Show staged files and how env files differ from their last version."""
    session = app.session()
    project = app.project(session)
    click.echo(f"Project {project.name}")
    record = StagingArea(app.store, session).load(project)
    if record and record.files:
        click.echo(f"Staged ({record.commit_message}):")
        for staged in record.files:
            click.secho(f"  {staged.name}", fg="green")
    states = unwrap(VersionControl(app.store, session).status(project, app.directory(project)))
    if not states:
        click.echo("No env files")
        return
    for item in states:
        click.secho(f"  {item.state.value:<10} {item.name}", fg=_STATE_COLORS[item.state])


@cli.command()
@click.argument("file_name", required=False)
@click.pass_obj
def diff(app: App, file_name: Optional[str]):
    """Show line changes between disk and the last version."""
    session = app.session()
    project = app.project(session)
    diffs = unwrap(VersionControl(app.store, session).diff(project, app.directory(project), file_name))
    if not diffs:
        click.echo("No differences")
        return
    for file_diff in diffs:
        for line in file_diff.lines:
            if line.startswith("+") and not line.startswith("+++"):
                click.secho(line, fg="green")
            elif line.startswith("-") and not line.startswith("---"):
                click.secho(line, fg="red")
            else:
                click.echo(line)


# --- History ---


@cli.command(name="log")
@click.option("-n", "--limit", type=int, default=None, help="Show at most N versions.")
@click.option("--oneline", is_flag=True, help="One line per version.")
@click.pass_obj
def log_cmd(app: App, limit: Optional[int], oneline: bool):
    """Show versions of all files, newest first."""
    session = app.session()
    project = app.project(session)
    entries = unwrap(VersionControl(app.store, session).log(project, limit=limit))
    if not entries:
        click.echo("No versions yet")
        return
    for entry in entries:
        flag = " (rollback)" if entry.is_rollback else ""
        if oneline:
            click.echo(
                f"{click.style(entry.short_token, fg='yellow')} {entry.file_name}: "
                f"{entry.commit_message or 'No message'}{flag}"
            )
            continue
        click.secho(f"version {entry.version_token}{flag}", fg="yellow")
        click.echo(f"File:   {entry.file_name}")
        click.echo(f"Author: {entry.author_email}")
        click.echo(f"Date:   {entry.created_at:%Y-%m-%d %H:%M:%S} UTC")
        click.echo(f"Synced: {'yes' if entry.synced else 'no'}")
        click.echo(f"\n    {entry.commit_message or 'No message'}\n")


@cli.command()
@click.argument("token")
@click.argument("reason", required=False)
@click.pass_obj
def revert(app: App, token: str, reason: Optional[str]):
    """Roll a file back to the version whose token starts with TOKEN."""
    session = app.session()
    project = app.project(session)
    vcs = VersionControl(app.store, session)
    target, env_file = unwrap(vcs.resolve_version(project, token))
    outcome = unwrap(
        vcs.rollback(env_file, target.version_token, reason=reason, directory=app.directory(project))
    )
    click.secho(
        f"Reverted {env_file.name} to {target.short_token} as {outcome.version.short_token}", fg="green"
    )
    if not outcome.disk_written:
        click.secho(f"Could not update {env_file.name} on disk; see the log", fg="yellow", err=True)
    click.echo("Run 'evm push' to sync the rollback.")


@cli.command(name="rollback-history")
@click.pass_obj
def rollback_history(app: App):
    """List rollbacks in the current project."""
    session = app.session()
    project = app.project(session)
    records = unwrap(VersionControl(app.store, session).rollback_history(project))
    if not records:
        click.echo("No rollbacks")
        return
    for record, file_name in records:
        click.echo(
            f"{record.created_at:%Y-%m-%d %H:%M:%S} {file_name}: "
            f"{record.from_version_token[:7]} -> {record.to_version_token[:7]} "
            f"by {record.performed_by}" + (f" ({record.reason})" if record.reason else "")
        )


# --- Sync ---


@cli.command()
@click.option("-m", "--message", default=None, help="Override the staged commit message.")
@click.pass_obj
def push(app: App, message: Optional[str]):
    """Commit staged files and push unsynced history to the cloud."""
    session = app.session()
    project = app.project(session)
    staging = StagingArea(app.store, session)
    record = staging.load(project)
    if record and record.files:
        if message:
            unwrap(staging.stage(project, record.files, message))
        summary = unwrap(staging.commit(project))
        click.echo(f"Committed {summary.succeeded} of {len(record.files)} file(s)")
        for name, error in summary.failed.items():
            click.secho(f"  {name}: {error}", fg="red", err=True)
    reconciler = SyncReconciler(app.api(session), app.store, session, on_status=log.info)
    _report_sync(app, session, reconciler.run(project, app.directory(project), pull=False))


@cli.command()
@click.pass_obj
def pull(app: App):
    """Fetch files and history from the cloud (newer side wins)."""
    session = app.session()
    project = app.project(session)
    if not session.is_online:
        raise click.ClickException("Pull needs an online session. Run 'evm login'.")
    reconciler = SyncReconciler(app.api(session), app.store, session, on_status=log.info)
    _report_sync(app, session, reconciler.run(project, app.directory(project), push=False))


@cli.command()
@click.pass_obj
def sync(app: App):
    """Replay queued operations, push, then pull."""
    session = app.session()
    project = app.project(session)
    reconciler = SyncReconciler(app.api(session), app.store, session, on_status=log.info)
    _report_sync(app, session, reconciler.run(project, app.directory(project)))


# --- Rename / remove ---


@cli.command()
@click.argument("old")
@click.argument("new", required=False)
@click.pass_obj
def rename(app: App, old: str, new: Optional[str]):
    """Rename a file (OLD NEW) or the current project (NEW_PROJECT_NAME)."""
    session = app.session()
    project = app.project(session)
    service = ProjectService(app.store, session, app.api(session))
    if new is None:
        outcome = unwrap(service.rename_project(project, old))
        _report_remote(outcome, f"Renamed project {project.name} to {old}")
    else:
        outcome = unwrap(service.rename_file(project, old, new, app.directory(project)))
        _report_remote(outcome, f"Renamed {old} to {new}")


@cli.command()
@click.argument("file_name", required=False)
@click.option("--project", "whole_project", is_flag=True, help="Remove the current project instead of a file.")
@click.option("-f", "--force", is_flag=True, help="Also delete from the cloud.")
@click.option("-y", "--yes", is_flag=True, help="Do not ask for confirmation.")
@click.option("--keep", is_flag=True, help="Keep the file on disk.")
@click.pass_obj
def rm(app: App, file_name: Optional[str], whole_project: bool, force: bool, yes: bool, keep: bool):
    """Remove a file (or the project) and its history."""
    session = app.session()
    project = app.project(session)
    service = ProjectService(app.store, session, app.api(session))
    if whole_project:
        if not yes:
            click.confirm(f"Delete project {project.name} and all its history?", abort=True)
        outcome = unwrap(service.remove_project(project, remote=force))
        _report_remote(outcome, f"Removed project {project.name}")
        return
    if not file_name:
        raise click.UsageError("Give a file name or --project")
    if not yes:
        click.confirm(f"Delete {file_name} and all its versions?", abort=True)
    outcome = unwrap(
        service.remove_file(project, file_name, app.directory(project), remote=force, keep_on_disk=keep)
    )
    _report_remote(outcome, f"Removed {file_name}")
