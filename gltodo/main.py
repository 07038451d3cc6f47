"""gltodo CLI: all commands."""

import json
import re
import time
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Annotated

import tomlkit
import typer
from rich import print as rprint
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from gltodo.cache import CacheStore
from gltodo.credentials import get_credential_store
from gltodo.engine import SyncEngine
from gltodo.errors import (
    ApiRateLimited,
    ApiUnavailable,
    CredentialRejected,
    CredentialUnavailable,
    GlTodoError,
)
from gltodo.log import configure_logging
from gltodo.models import Account, ActionType, ItemStatus, SyncReport, TodoView
from gltodo.query import SortOrder, TodoFilter
from gltodo.settings import CONFIG_PATH, GlTodoSettings, _list_profiles, get_settings

app = typer.Typer(help="GitLab To-Do Helper: sync, filter and clear your GitLab to-dos", no_args_is_help=True)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_NETWORK = 3
EXIT_AUTH = 4

AccountOpt = Annotated[
    str | None,
    typer.Option("--account", "-a", help="Account profile from ~/.config/gltodo/config.toml"),
]

_STATUS_STYLE = {
    ItemStatus.PENDING: "yellow",
    ItemStatus.DONE_UNCONFIRMED: "cyan",
    ItemStatus.DONE: "green",
}


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def get_engine(settings: GlTodoSettings) -> SyncEngine:
    return SyncEngine(settings, CacheStore(settings.cache_dir), get_credential_store(settings))


@contextmanager
def _errors_to_exit_codes() -> Iterator[None]:
    try:
        yield
    except (CredentialUnavailable, CredentialRejected) as exc:
        rprint(f"[red]{escape(str(exc))}[/red]")
        raise typer.Exit(EXIT_AUTH) from exc
    except (ApiUnavailable, ApiRateLimited) as exc:
        rprint(f"[red]GitLab unreachable:[/red] {escape(str(exc))}")
        raise typer.Exit(EXIT_NETWORK) from exc
    except GlTodoError as exc:
        rprint(f"[red]{escape(str(exc))}[/red]")
        raise typer.Exit(EXIT_ERROR) from exc


@app.callback()
def main(
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Debug logging on stderr")] = False,
) -> None:
    configure_logging(verbose)


# ---------------------------------------------------------------------------
# Parsing and rendering helpers
# ---------------------------------------------------------------------------

_DURATION_UNITS = {"m": "minutes", "h": "hours", "d": "days", "w": "weeks"}


def parse_duration(text: str) -> timedelta:
    """Parse 30m, 2h, 3d, 1w (or combinations like 1d12h) into a timedelta."""
    parts = re.findall(r"(\d+)\s*([mhdw])", text.strip().lower())
    if not parts or re.sub(r"[\d\smhdw]", "", text.lower()):
        raise typer.BadParameter(f"Invalid duration '{text}'. Use e.g. 30m, 2h, 3d, 1w")
    delta = timedelta()
    for amount, unit in parts:
        delta += timedelta(**{_DURATION_UNITS[unit]: int(amount)})
    return delta


def _age(moment: datetime, now: datetime) -> str:
    seconds = int((now - moment).total_seconds())
    if seconds < 3600:
        return f"{max(seconds // 60, 0)}m"
    if seconds < 86400:
        return f"{seconds // 3600}h"
    return f"{seconds // 86400}d"


def render_table(views: list[TodoView], title: str = "GitLab To-Dos") -> Table:
    now = datetime.now(timezone.utc)
    table = Table(title=title)
    table.add_column("ID", style="cyan")
    table.add_column("Status")
    table.add_column("Action")
    table.add_column("Project", style="blue")
    table.add_column("Author")
    table.add_column("Target")
    table.add_column("Updated", style="dim")

    for view in views:
        item = view.item
        title_text = escape(item.target_title or item.body_snippet or item.target_type)
        target = f"[link={item.target_url}]{title_text}[/link]" if item.target_url else title_text
        style = _STATUS_STYLE[view.status]
        table.add_row(
            item.id,
            f"[{style}]{view.status.value}[/{style}]",
            item.action_name,
            escape(item.project_ref) or "-",
            escape(item.author) or "-",
            target,
            _age(item.updated_at, now),
        )
    return table


def _token_page(handle: Account) -> str:
    return f"{handle.gitlab_url}/-/user_settings/personal_access_tokens"


def _report_line(report: SyncReport) -> str:
    line = (
        f"[green]✓[/green] Synced: {report.added} new, {report.updated} updated, "
        f"{report.removed} resolved on GitLab, {report.confirmed} confirmed"
    )
    if not report.complete:
        line += " [dim](more pages pending, run sync again)[/dim]"
    return line


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command("sync")
def sync_cmd(
    account: AccountOpt = None,
    pages: Annotated[int | None, typer.Option("--pages", min=1, help="Page budget for this pass")] = None,
    watch: Annotated[bool, typer.Option("--watch", "-w", help="Keep syncing and redraw the list")] = False,
    interval: Annotated[int, typer.Option("--interval", min=5, help="Seconds between passes with --watch")] = 30,
) -> None:
    """Fetch to-dos from GitLab and reconcile them with the local cache."""
    settings = get_settings(account)
    handle = settings.account_handle()
    engine = get_engine(settings)

    if not watch:
        with _errors_to_exit_codes():
            report = engine.sync(handle, page_budget=pages)
        rprint(_report_line(report))
        for warning in report.warnings:
            rprint(f"[yellow]Warning:[/yellow] {escape(warning)}")
        return

    console = Console()
    try:
        while True:
            with _errors_to_exit_codes():
                try:
                    report = engine.sync(handle, page_budget=pages)
                except (ApiUnavailable, ApiRateLimited) as exc:
                    # Keep showing the cached list while GitLab is unreachable
                    report = None
                    error = str(exc)
                views = engine.list_todos(handle)
            console.clear()
            console.print(render_table(views, title=f"GitLab To-Dos ({handle.key})"))
            if report is None:
                console.print(f"[yellow]GitLab unreachable, showing cached to-dos:[/yellow] {escape(error)}")
            else:
                for warning in report.warnings:
                    console.print(f"[yellow]Warning:[/yellow] {escape(warning)}")
            time.sleep(interval)
    except KeyboardInterrupt:
        raise typer.Exit(EXIT_OK)


@app.command("list")
def list_cmd(
    account: AccountOpt = None,
    project: Annotated[str | None, typer.Option("--project", "-p", help="Project path or parent group")] = None,
    author: Annotated[str | None, typer.Option("--author", help="Author username")] = None,
    action: Annotated[ActionType | None, typer.Option("--action", help="Action type")] = None,
    status: Annotated[ItemStatus | None, typer.Option("--status", help="Only this status")] = None,
    since: Annotated[datetime | None, typer.Option("--since", help="Updated on or after (UTC)")] = None,
    until: Annotated[datetime | None, typer.Option("--until", help="Updated on or before (UTC)")] = None,
    show_all: Annotated[bool, typer.Option("--all", help="Include done to-dos")] = False,
    snoozed: Annotated[bool, typer.Option("--snoozed", help="Include snoozed to-dos")] = False,
    sort: Annotated[SortOrder, typer.Option("--sort", help="updated or priority")] = SortOrder.UPDATED,
    as_json: Annotated[bool, typer.Option("--json", help="Print JSON instead of a table")] = False,
) -> None:
    """List cached to-dos. Never contacts GitLab."""
    settings = get_settings(account)
    engine = get_engine(settings)
    flt = TodoFilter(
        project=project,
        author=author,
        action_type=action,
        status=status,
        since=since,
        until=until,
        include_done=show_all,
        include_snoozed=snoozed,
        sort=sort,
    )
    with _errors_to_exit_codes():
        views = engine.list_todos(settings.account_handle(), flt)

    if as_json:
        typer.echo(json.dumps([view.model_dump(mode="json") for view in views], indent=2))
        return
    rprint(render_table(views))


@app.command("done")
def done_cmd(
    item_ids: Annotated[list[str], typer.Argument(help="To-do IDs")],
    account: AccountOpt = None,
    no_push: Annotated[bool, typer.Option("--no-push", help="Only queue; GitLab is told on the next sync")] = False,
) -> None:
    """Mark to-dos done."""
    settings = get_settings(account)
    handle = settings.account_handle()
    engine = get_engine(settings)
    with _errors_to_exit_codes():
        for item_id in item_ids:
            status = engine.mark_done(handle, item_id, push=not no_push)
            if status is ItemStatus.DONE:
                rprint(f"[green]✓[/green] {item_id} done")
            else:
                rprint(f"[cyan]…[/cyan] {item_id} done locally, GitLab will be updated on the next sync")


@app.command("snooze")
def snooze_cmd(
    item_id: Annotated[str, typer.Argument(help="To-do ID")],
    duration: Annotated[str, typer.Option("--for", help="How long, e.g. 30m, 2h, 3d, 1w")] = "1d",
    account: AccountOpt = None,
) -> None:
    """Hide a to-do from the list for a while. Local only."""
    settings = get_settings(account)
    until = datetime.now(timezone.utc) + parse_duration(duration)
    with _errors_to_exit_codes():
        get_engine(settings).snooze(settings.account_handle(), item_id, until)
    rprint(f"[green]✓[/green] {item_id} snoozed until {until.astimezone():%Y-%m-%d %H:%M}")


@app.command("unsnooze")
def unsnooze_cmd(
    item_id: Annotated[str, typer.Argument(help="To-do ID")],
    account: AccountOpt = None,
) -> None:
    """Show a snoozed to-do again."""
    settings = get_settings(account)
    with _errors_to_exit_codes():
        get_engine(settings).snooze(settings.account_handle(), item_id, None)
    rprint(f"[green]✓[/green] {item_id} unsnoozed")


@app.command("pending")
def pending_cmd(account: AccountOpt = None) -> None:
    """Show mark-done requests GitLab has not confirmed yet."""
    settings = get_settings(account)
    with _errors_to_exit_codes():
        mutations = get_engine(settings).pending_mutations(settings.account_handle())

    if not mutations:
        rprint("[dim]Nothing pending.[/dim]")
        return

    table = Table(title="Pending changes")
    table.add_column("ID", style="cyan")
    table.add_column("Kind")
    table.add_column("Issued", style="dim")
    table.add_column("Attempts")
    table.add_column("Last error")
    for mutation in mutations:
        table.add_row(
            mutation.item_id,
            mutation.kind.value,
            f"{mutation.issued_at.astimezone():%Y-%m-%d %H:%M}",
            str(mutation.attempts),
            escape(mutation.last_error or "-"),
        )
    rprint(table)


@app.command("reset-cache")
def reset_cache_cmd(account: AccountOpt = None) -> None:
    """Delete the local cache; the next sync starts from scratch."""
    settings = get_settings(account)
    get_engine(settings).reset_cache(settings.account_handle())
    rprint(f"[green]✓[/green] Cache cleared for {settings.account_handle().key}")


@app.command("login")
def login_cmd(
    account: AccountOpt = None,
    token: Annotated[str | None, typer.Option("--token", help="Token; prompted for if omitted")] = None,
) -> None:
    """Verify a personal access token and store it in the system keyring."""
    settings = get_settings(account)
    handle = settings.account_handle()
    if token is None:
        rprint(f"Create a token with the [bold]api[/bold] scope at: {_token_page(handle)}")
        token = typer.prompt("Paste token", hide_input=True).strip()
    with _errors_to_exit_codes():
        user = get_engine(settings).login(handle, token)
    rprint(f"[green]✓[/green] Logged in to {handle.host} as [bold]{escape(str(user.get('username', '?')))}[/bold]")


@app.command("logout")
def logout_cmd(account: AccountOpt = None) -> None:
    """Remove the stored token for an account."""
    settings = get_settings(account)
    with _errors_to_exit_codes():
        get_engine(settings).logout(settings.account_handle())
    rprint(f"[green]✓[/green] Credentials cleared for {settings.account_handle().key}")


@app.command("set-default")
def set_default(
    account: Annotated[str, typer.Argument(help="Profile name to set as default")],
) -> None:
    """Set the default account profile in ~/.config/gltodo/config.toml."""
    if not CONFIG_PATH.exists():
        CONFIG_PATH.parent.mkdir(parents=True, exist_ok=True)
        doc = tomlkit.document()
        doc.add("default_account", account)
        CONFIG_PATH.write_text(tomlkit.dumps(doc))
        rprint(f'[green]✓[/green] Default account set to "{account}" in {CONFIG_PATH}')
        return

    doc = tomlkit.load(CONFIG_PATH.open())
    profiles = _list_profiles(doc)
    if account not in profiles:
        rprint(f"[red]Account '{account}' not found in {CONFIG_PATH}. Available: {profiles or '(none)'}[/red]")
        raise typer.Exit(1)

    doc["default_account"] = account
    CONFIG_PATH.write_text(tomlkit.dumps(doc))
    rprint(f'[green]✓[/green] Default account set to "{account}" in {CONFIG_PATH}')


@app.command("config-show")
def config_show(account: AccountOpt = None) -> None:
    """Show resolved configuration and credential status (never the token)."""
    settings = get_settings(account)
    handle = settings.account_handle()

    with _errors_to_exit_codes():
        has_token = get_credential_store(settings).get(handle) is not None
    cursor = get_engine(settings).cursor(handle)

    def when(value: datetime | None) -> str:
        return f"{value.astimezone():%Y-%m-%d %H:%M}" if value else "[dim](never)[/dim]"

    table = Table(title="gltodo Configuration")
    table.add_column("Field", style="bold")
    table.add_column("Value")

    table.add_row("account", handle.key)
    table.add_row("gitlab_url", settings.gitlab_url)
    table.add_row("credential_backend", settings.credential_backend)
    table.add_row("token", "[green]stored[/green]" if has_token else "[dim](not set)[/dim]")
    table.add_row("cache_dir", str(settings.cache_dir))
    table.add_row("page_budget", str(settings.page_budget))
    table.add_row("last sync", when(cursor.last_synced_at))
    table.add_row("last full sync", when(cursor.last_complete_at))

    rprint(table)


@app.command("init")
def init_cmd() -> None:
    """Interactive first-time setup: add an account profile and log in."""
    rprint("[bold]gltodo Setup[/bold]")
    rprint("")

    profile_name = typer.prompt("Profile name (e.g. work, personal)").strip()
    if not profile_name:
        rprint("[red]Profile name cannot be empty.[/red]")
        raise typer.Exit(1)
    gitlab_url = typer.prompt("GitLab URL", default="https://gitlab.com").strip().rstrip("/")
    set_as_default = typer.confirm(f"Set '{profile_name}' as default account?", default=True)

    # round-trip preserves any existing comments
    CONFIG_PATH.parent.mkdir(parents=True, exist_ok=True)
    doc = tomlkit.load(CONFIG_PATH.open()) if CONFIG_PATH.exists() else tomlkit.document()
    doc[profile_name] = {"gitlab_url": gitlab_url}
    if set_as_default:
        doc["default_account"] = profile_name
    CONFIG_PATH.write_text(tomlkit.dumps(doc))
    rprint(f"[green]✓[/green] Profile '{profile_name}' written to {CONFIG_PATH}")

    settings = GlTodoSettings(account=profile_name, gitlab_url=gitlab_url)  # type: ignore[call-arg]
    handle = settings.account_handle()
    rprint(f"Create a token with the [bold]api[/bold] scope at: {_token_page(handle)}")
    token = typer.prompt("Paste token", hide_input=True).strip()
    with _errors_to_exit_codes():
        user = get_engine(settings).login(handle, token)
    rprint(f"[green]✓[/green] Logged in as [bold]{escape(str(user.get('username', '?')))}[/bold]. Next: gltodo sync")
