"""
Command-line interface for Assignment Calendar Sync.
"""

import json
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from datetime import timedelta
from datetime import timezone
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from assignment_calendar_sync.config import load_config
from assignment_calendar_sync.crypto import TokenCipher
from assignment_calendar_sync.crypto import generate_key as _generate_key
from assignment_calendar_sync.db import AssignmentCache
from assignment_calendar_sync.db import MappingStore
from assignment_calendar_sync.db import SettingsStore
from assignment_calendar_sync.db import StateDatabase
from assignment_calendar_sync.db import TokenStore
from assignment_calendar_sync.db import from_db_time
from assignment_calendar_sync.gateway import GoogleCalendarGateway
from assignment_calendar_sync.models import DEFAULT_CONFIG
from assignment_calendar_sync.models import AccountRole
from assignment_calendar_sync.models import AppConfig
from assignment_calendar_sync.models import Assignment
from assignment_calendar_sync.models import CalendarSyncError
from assignment_calendar_sync.models import ConnectionState
from assignment_calendar_sync.models import SyncResult
from assignment_calendar_sync.oauth import GoogleOAuthClient
from assignment_calendar_sync.preferences import SyncSettingsService
from assignment_calendar_sync.status import resolve_status
from assignment_calendar_sync.sync import SyncReconciler
from assignment_calendar_sync.sync.batch import run_auto_sync
from assignment_calendar_sync.sync.retry import RetryPolicy
from assignment_calendar_sync.tokens import TokenLifecycleManager

# ---------------------------------------------------------------------------
# Typer app
# ---------------------------------------------------------------------------

app = typer.Typer(
    no_args_is_help=True,
    rich_markup_mode="rich",
    help="Mirror cached student assignments into parent and student Google calendars.",
)
settings_app = typer.Typer(no_args_is_help=True, help="Show or change sync settings.")
app.add_typer(settings_app, name="settings")

console = Console()


# ---------------------------------------------------------------------------
# Global state shared across subcommands
# ---------------------------------------------------------------------------


@dataclass
class _State:
    config_path: Path = field(default_factory=lambda: DEFAULT_CONFIG)
    state_db: Path | None = None
    verbose: bool = False


state = _State()


@app.callback()
def _global(
    config: Annotated[
        Path,
        typer.Option("--config", "-c", help=f"Config file path (default: {DEFAULT_CONFIG})"),
    ] = DEFAULT_CONFIG,
    state_db: Annotated[
        Path | None,
        typer.Option("--state-db", help="State DB path (overrides config and ACS_STATE_DB)"),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable verbose debug output"),
    ] = False,
) -> None:
    state.config_path = config
    state.state_db = state_db
    state.verbose = verbose
    _setup_logging(verbose)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False, console=console)],
    )


def _config() -> AppConfig:
    try:
        return load_config(state.config_path, state_db_path=state.state_db, verbose=state.verbose)
    except CalendarSyncError as e:
        console.print(f"[bold red]Configuration error:[/] {e}")
        raise typer.Exit(1) from None


@dataclass
class _Services:
    config: AppConfig
    db: StateDatabase
    assignments: AssignmentCache
    settings: SyncSettingsService
    mappings: MappingStore
    tokens: TokenLifecycleManager | None = None
    reconciler: SyncReconciler | None = None


@contextmanager
def _services(need_tokens: bool = True):
    """Open the state DB and wire up the services a command needs."""
    from assignment_calendar_sync.preflight import run_preflight_checks

    cfg = _config()
    if need_tokens and not run_preflight_checks(cfg, console):
        raise typer.Exit(1)

    with StateDatabase(cfg.state_db_path) as db:
        services = _Services(
            config=cfg,
            db=db,
            assignments=AssignmentCache(db),
            settings=SyncSettingsService(SettingsStore(db)),
            mappings=MappingStore(db),
        )
        if need_tokens:
            oauth = GoogleOAuthClient(
                cfg.google_client_id,
                cfg.google_client_secret,
                cfg.google_redirect_uri,
                timeout=cfg.request_timeout_seconds,
            )
            services.tokens = TokenLifecycleManager(
                TokenStore(db),
                TokenCipher(cfg.encryption_key),
                oauth,
                refresh_margin=timedelta(minutes=cfg.token_refresh_margin_minutes),
            )
            services.reconciler = SyncReconciler(
                services.assignments,
                services.settings,
                services.mappings,
                services.tokens,
                GoogleCalendarGateway(
                    timeout=cfg.request_timeout_seconds, time_zone=cfg.time_zone
                ),
                policy=RetryPolicy(
                    max_attempts=cfg.max_attempts,
                    base_delay=cfg.backoff_base_seconds,
                    max_delay=cfg.backoff_cap_seconds,
                ),
                timeout=cfg.sync_timeout_seconds,
            )
        yield services


def _parse_minutes(raw: str | None) -> list[int] | None:
    if raw is None:
        return None
    if not raw.strip():
        return []
    try:
        return [int(part) for part in raw.split(",") if part.strip()]
    except ValueError:
        raise typer.BadParameter(
            f"Reminder minutes must be comma-separated integers: {raw!r}"
        ) from None


def _parse_names(raw: str | None) -> list[str] | None:
    if raw is None:
        return None
    return [part.strip() for part in raw.split(",") if part.strip()]


def _fmt_time(value: datetime | None) -> str:
    if value is None:
        return "—"
    return value.astimezone().strftime("%Y-%m-%d %H:%M:%S")


def _print_result(result: SyncResult) -> None:
    if result.status == "in_progress":
        console.print("[yellow]A sync for this student is already running; try again shortly.[/]")
        return
    if result.status == "disabled":
        console.print("[yellow]Sync is disabled for this student.[/]")
        return

    results = Table.grid(padding=(0, 2))
    results.add_column(style="bold")
    results.add_column(justify="right")
    results.add_row("Created", str(result.created))
    results.add_row("Updated", str(result.updated))
    results.add_row("Deleted", str(result.deleted))
    error_val = Text(str(result.error_count))
    if result.error_count == 0:
        error_val.append(" ✓", style="green")
    else:
        error_val.stylize("bold red")
    results.add_row("Errors", error_val)
    if result.timed_out:
        results.add_row("Timeout", Text("partial (deadline reached)", style="yellow"))
    console.print(Panel(results, title="[bold]Results[/bold]", expand=False))

    if result.roles:
        roles = Table(show_header=True, header_style="bold cyan", box=None, padding=(0, 2))
        roles.add_column("Role")
        roles.add_column("Created", justify="right")
        roles.add_column("Updated", justify="right")
        roles.add_column("Deleted", justify="right")
        roles.add_column("Errors", justify="right")
        roles.add_column("Note")
        for role, r in result.roles.items():
            if r.requires_reauth:
                note = Text("reconnect required", style="bold red")
            elif r.skipped and r.skip_reason:
                note = Text(f"skipped ({r.skip_reason.value})", style="yellow")
            elif r.timed_out:
                note = Text("timed out", style="yellow")
            else:
                note = Text("")
            roles.add_row(
                role.value, str(r.created), str(r.updated), str(r.deleted), str(r.error_count), note
            )
        console.print(roles)

    for error in result.as_dict()["errors"]:
        who = error["role"] or "pass"
        item = f" #{error['assignment_id']}" if error["assignment_id"] is not None else ""
        console.print(f"  [red]✗[/] [bold]{who}{item}[/] [dim]({error['kind']})[/dim] {error['message']}")
    hidden = result.error_count - len(result.as_dict()["errors"])
    if hidden > 0:
        console.print(f"  [dim]… and {hidden} more[/dim]")


_USER = Annotated[str, typer.Argument(help="Observing user id (the parent account)")]
_STUDENT = Annotated[int, typer.Argument(help="Student id")]
_ROLE = Annotated[
    AccountRole, typer.Argument(help="Calendar account role", case_sensitive=False)
]
_YES = Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation prompt")]
_JSON = Annotated[bool, typer.Option("--json", help="Print the result as JSON")]


# ---------------------------------------------------------------------------
# Subcommands: sync / auto-sync
# ---------------------------------------------------------------------------


@app.command()
def sync(
    user_id: _USER,
    student_id: _STUDENT,
    assignment: Annotated[
        int | None, typer.Option("--assignment", "-a", help="Sync a single assignment only")
    ] = None,
    as_json: _JSON = False,
) -> None:
    """Reconcile the student's cached assignments with their calendars."""
    with _services() as services:
        if assignment is None:
            result = services.reconciler.trigger_sync(user_id, student_id)
        else:
            result = services.reconciler.sync_assignment(user_id, student_id, assignment)

    if as_json:
        console.print_json(json.dumps(result.as_dict()))
    else:
        _print_result(result)
    if result.status in ("failed", "in_progress") or result.error_count:
        raise typer.Exit(1)


@app.command("auto-sync")
def auto_sync(
    workers: Annotated[
        int | None, typer.Option("--workers", "-w", help="Students synced in parallel")
    ] = None,
) -> None:
    """Sync every student that has auto-sync enabled."""
    with _services() as services:
        results = run_auto_sync(
            services.reconciler, max_workers=workers or services.config.auto_sync_workers
        )

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("User")
    table.add_column("Student", justify="right")
    table.add_column("Status")
    table.add_column("Created", justify="right")
    table.add_column("Updated", justify="right")
    table.add_column("Deleted", justify="right")
    table.add_column("Errors", justify="right")
    for r in results:
        style = "green" if r.status == "success" and not r.error_count else "yellow"
        table.add_row(
            r.user_id,
            str(r.student_id),
            Text(r.status, style=style),
            str(r.created),
            str(r.updated),
            str(r.deleted),
            str(r.error_count),
        )
    console.print(Panel(table, title="[bold]Auto-sync[/bold]", expand=False))
    if any(r.status == "failed" for r in results):
        raise typer.Exit(1)


# ---------------------------------------------------------------------------
# Subcommand: status
# ---------------------------------------------------------------------------


@app.command()
def status(
    user_id: Annotated[str | None, typer.Argument(help="Observing user id")] = None,
    student_id: Annotated[int | None, typer.Argument(help="Student id")] = None,
) -> None:
    """Show configuration, connections and the state database summary."""
    cfg = _config()
    config_exists = state.config_path.exists()
    db_exists = cfg.state_db_path.exists()

    cfg_info = Text()
    cfg_info.append("  Config:   ", style="bold")
    cfg_info.append(str(state.config_path) + " ")
    cfg_info.append(
        "✓" if config_exists else "(not found)", style="green" if config_exists else "red"
    )
    cfg_info.append("\n  State DB: ", style="bold")
    cfg_info.append(str(cfg.state_db_path) + " ")
    cfg_info.append("✓" if db_exists else "(not found)", style="green" if db_exists else "yellow")
    cfg_info.append("\n  Key:      ", style="bold")
    cfg_info.append(
        "configured" if cfg.encryption_key else "missing",
        style="green" if cfg.encryption_key else "red",
    )
    console.print(Panel(cfg_info, title="[bold]Assignment Calendar Sync — Status[/bold]"))

    if not db_exists:
        console.print(
            "[yellow]No state database yet — run[/] "
            "[cyan]assignment-calendar-sync import-assignments[/] "
            "[yellow]to create it.[/]"
        )
        return

    with StateDatabase(cfg.state_db_path) as db:
        if user_id is not None and student_id is not None:
            _print_connections(db, user_id, student_id)

        rows = MappingStore(db).summary()
        if not rows:
            console.print("[yellow]No events synced yet.[/]")
            return
        table = Table(show_header=True, header_style="bold cyan", box=None, padding=(0, 2))
        table.add_column("Student", justify="right")
        table.add_column("Role")
        table.add_column("Tracked", justify="right")
        table.add_column("Last sync")
        for row in rows:
            if student_id is not None and row["student_id"] != student_id:
                continue
            table.add_row(
                str(row["student_id"]),
                row["account_role"],
                str(row["count"]),
                _fmt_time(from_db_time(row["last_synced_at"])),
            )
        console.print(Panel(table, title="[bold]Event mappings[/bold]", expand=False))


def _print_connections(db: StateDatabase, user_id: str, student_id: int) -> None:
    store = TokenStore(db)
    table = Table(show_header=True, header_style="bold cyan", box=None, padding=(0, 2))
    table.add_column("Role")
    table.add_column("State")
    table.add_column("Account")
    table.add_column("Calendar", overflow="fold")
    table.add_column("Token expires")
    styles = {
        ConnectionState.CONNECTED: "green",
        ConnectionState.REAUTH_REQUIRED: "bold red",
        ConnectionState.NOT_CONNECTED: "dim",
    }
    for role in AccountRole:
        record = store.get(user_id, student_id, role)
        if record is None:
            conn_state = ConnectionState.NOT_CONNECTED
        elif record.requires_reauth:
            conn_state = ConnectionState.REAUTH_REQUIRED
        else:
            conn_state = ConnectionState.CONNECTED
        table.add_row(
            role.value,
            Text(conn_state.value, style=styles[conn_state]),
            (record.account_email or "") if record else "",
            (record.calendar_id or "") if record else "",
            _fmt_time(record.expires_at) if record else "—",
        )
    console.print(Panel(table, title=f"[bold]Connections[/bold] {user_id} / {student_id}"))


# ---------------------------------------------------------------------------
# Subcommands: settings show / set
# ---------------------------------------------------------------------------


@settings_app.command("show")
def settings_show(user_id: _USER, student_id: _STUDENT) -> None:
    """Print the effective settings (defaults when nothing was saved)."""
    cfg = _config()
    with StateDatabase(cfg.state_db_path) as db:
        current = SyncSettingsService(SettingsStore(db)).get(user_id, student_id)

    def flag(value: bool) -> Text:
        return Text("on", style="green") if value else Text("off", style="red")

    grid = Table.grid(padding=(0, 2))
    grid.add_column(style="bold")
    grid.add_column()
    grid.add_row("Sync enabled", flag(current.sync_enabled))
    grid.add_row("Parent calendar", flag(current.sync_to_parent))
    grid.add_row("Student calendar", flag(current.sync_to_student))
    grid.add_row("Parent reminders", ", ".join(map(str, current.parent_reminders)) or "none")
    grid.add_row("Student reminders", ", ".join(map(str, current.student_reminders)) or "none")
    grid.add_row("Included courses", ", ".join(sorted(current.included_courses)) or "all")
    grid.add_row("Excluded types", ", ".join(sorted(current.excluded_types)) or "none")
    grid.add_row("Sync completed", flag(current.sync_completed_assignments))
    grid.add_row("Auto-sync", flag(current.auto_sync_enabled))
    console.print(Panel(grid, title=f"[bold]Settings[/bold] {user_id} / {student_id}", expand=False))


@settings_app.command("set")
def settings_set(
    user_id: _USER,
    student_id: _STUDENT,
    enabled: Annotated[bool | None, typer.Option("--enabled/--disabled")] = None,
    parent: Annotated[bool | None, typer.Option("--parent/--no-parent")] = None,
    student: Annotated[bool | None, typer.Option("--student/--no-student")] = None,
    parent_reminders: Annotated[
        str | None, typer.Option(help="Comma-separated minutes, e.g. 1440,120 (empty for none)")
    ] = None,
    student_reminders: Annotated[
        str | None, typer.Option(help="Comma-separated minutes, e.g. 120,30 (empty for none)")
    ] = None,
    courses: Annotated[
        str | None, typer.Option(help="Comma-separated course names to include (empty for all)")
    ] = None,
    exclude_types: Annotated[
        str | None, typer.Option(help="Comma-separated assignment types to skip, e.g. Discussion")
    ] = None,
    sync_completed: Annotated[
        bool | None, typer.Option("--sync-completed/--skip-completed")
    ] = None,
    auto_sync: Annotated[bool | None, typer.Option("--auto-sync/--no-auto-sync")] = None,
    no_resync: Annotated[
        bool, typer.Option("--no-resync", help="Save without syncing immediately")
    ] = False,
) -> None:
    """Change settings; calendars are resynced when the change affects them."""
    changes = {
        "sync_enabled": enabled,
        "sync_to_parent": parent,
        "sync_to_student": student,
        "parent_reminders": _parse_minutes(parent_reminders),
        "student_reminders": _parse_minutes(student_reminders),
        "included_courses": _parse_names(courses),
        "excluded_types": _parse_names(exclude_types),
        "sync_completed_assignments": sync_completed,
        "auto_sync_enabled": auto_sync,
    }
    changes = {k: v for k, v in changes.items() if v is not None}
    if not changes:
        console.print("[yellow]Nothing to change.[/]")
        return

    with _services(need_tokens=not no_resync) as services:
        try:
            if no_resync:
                services.settings.update(user_id, student_id, **changes)
                result = None
            else:
                _, result = services.reconciler.apply_settings(user_id, student_id, **changes)
        except CalendarSyncError as e:
            console.print(f"[bold red]Invalid settings:[/] {e}")
            raise typer.Exit(1) from None

    console.print(f"[green]Saved[/] {', '.join(sorted(changes))}")
    if result is not None:
        _print_result(result)


# ---------------------------------------------------------------------------
# Subcommands: connect / disconnect
# ---------------------------------------------------------------------------


@app.command()
def connect(
    user_id: _USER,
    student_id: _STUDENT,
    role: _ROLE,
    code: Annotated[
        str | None,
        typer.Option("--code", help="Authorization code from the OAuth redirect"),
    ] = None,
) -> None:
    """Connect a Google calendar account.

    Without [cyan]--code[/], prints the URL to open. After consenting, run
    again with the [cyan]code[/] parameter from the redirect URL.
    """
    with _services() as services:
        if code is None:
            url = services.tokens.oauth.authorization_url(f"{user_id}:{student_id}:{role.value}")
            console.print(Panel(url, title=f"[bold]Authorize {role.value} calendar[/bold]"))
            console.print(
                "Then run: [cyan]assignment-calendar-sync connect "
                f"{user_id} {student_id} {role.value} --code CODE[/]"
            )
            return
        try:
            connection = services.tokens.connect(user_id, student_id, role, code)
        except CalendarSyncError as e:
            console.print(f"[bold red]Connection failed:[/] {e}")
            raise typer.Exit(1) from None

    console.print(
        f"[green]Connected[/] {role.value} calendar"
        + (f" ({connection.account_email})" if connection.account_email else "")
    )


@app.command()
def disconnect(
    user_id: _USER,
    student_id: _STUDENT,
    role: _ROLE,
    remove_events: Annotated[
        bool, typer.Option("--remove-events", help="Delete synced events before disconnecting")
    ] = False,
    yes: _YES = False,
) -> None:
    """Revoke and forget a calendar account's credentials."""
    if not yes:
        typer.confirm(f"Disconnect the {role.value} calendar for student {student_id}?", abort=True)
    with _services() as services:
        if remove_events:
            try:
                removed = services.reconciler.clear(user_id, student_id, role)
                console.print(f"Removed [bold]{removed}[/bold] event(s)")
            except CalendarSyncError as e:
                console.print(f"[yellow]Could not remove events:[/] {e}")
        try:
            existed = services.reconciler.disconnect(user_id, student_id, role)
        except CalendarSyncError as e:
            console.print(f"[bold red]Disconnect failed:[/] {e}")
            raise typer.Exit(1) from None
    if existed:
        console.print(f"[green]Disconnected[/] {role.value} calendar")
    else:
        console.print(f"[yellow]No {role.value} calendar was connected.[/]")


# ---------------------------------------------------------------------------
# Subcommands: rebuild / clear
# ---------------------------------------------------------------------------


@app.command()
def rebuild(user_id: _USER, student_id: _STUDENT, role: _ROLE) -> None:
    """Recover lost event mappings from the events already in the calendar."""
    with _services() as services:
        try:
            recovered = services.reconciler.rebuild(user_id, student_id, role)
        except CalendarSyncError as e:
            console.print(f"[bold red]Rebuild failed:[/] {e}")
            raise typer.Exit(1) from None
    console.print(f"Recovered [bold]{recovered}[/bold] mapping(s)")


@app.command()
def clear(user_id: _USER, student_id: _STUDENT, role: _ROLE, yes: _YES = False) -> None:
    """Remove every synced event from one role's calendar without re-syncing."""
    if not yes:
        typer.confirm(
            f"Delete all synced {role.value} events for student {student_id}?", abort=True
        )
    with _services() as services:
        try:
            removed = services.reconciler.clear(user_id, student_id, role)
        except CalendarSyncError as e:
            console.print(f"[bold red]Clear failed:[/] {e}")
            raise typer.Exit(1) from None
    console.print(f"Removed [bold]{removed}[/bold] event(s)")


# ---------------------------------------------------------------------------
# Subcommands: cached assignments
# ---------------------------------------------------------------------------


def _parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def parse_assignment(data: dict, student_id: int) -> Assignment:
    """Build an Assignment from one exported learning-system record."""
    return Assignment(
        student_id=int(data.get("student_id", student_id)),
        plannable_id=int(data["plannable_id"]),
        title=data.get("title") or f"Assignment {data['plannable_id']}",
        course_name=data.get("course_name"),
        course_id=int(data["course_id"]) if data.get("course_id") is not None else None,
        due_at=_parse_time(data.get("due_at")),
        points_possible=(
            float(data["points_possible"]) if data.get("points_possible") is not None else None
        ),
        current_grade=(
            str(data["current_grade"]) if data.get("current_grade") is not None else None
        ),
        submitted=bool(data.get("submitted", False)),
        missing=bool(data.get("missing", False)),
        late=bool(data.get("late", False)),
        graded=bool(data.get("graded", False)),
    )


@app.command("import-assignments")
def import_assignments(
    student_id: _STUDENT,
    path: Annotated[Path, typer.Argument(help="JSON file with a list of assignment records")],
    replace: Annotated[
        bool, typer.Option("--replace", help="Drop cached assignments missing from the file")
    ] = False,
) -> None:
    """Load assignments into the local cache from a JSON export."""
    try:
        records = json.loads(path.read_text())
        assignments = [parse_assignment(record, student_id) for record in records]
    except (OSError, ValueError, KeyError, TypeError) as e:
        console.print(f"[bold red]Cannot read {path}:[/] {e}")
        raise typer.Exit(1) from None

    cfg = _config()
    with StateDatabase(cfg.state_db_path) as db:
        cache = AssignmentCache(db)
        try:
            if replace:
                removed = cache.replace_for_student(student_id, assignments)
            else:
                removed = 0
                for assignment in assignments:
                    cache.upsert(assignment)
        except CalendarSyncError as e:
            console.print(f"[bold red]Import failed:[/] {e}")
            raise typer.Exit(1) from None
        cached = cache.fetch_assignments(student_id)

    table = Table(show_header=True, header_style="bold cyan", box=None, padding=(0, 2))
    table.add_column("ID", justify="right")
    table.add_column("Title")
    table.add_column("Course")
    table.add_column("Due")
    table.add_column("Status")
    for a in cached:
        table.add_row(
            str(a.plannable_id),
            a.title,
            a.course_name or "",
            _fmt_time(a.due_at),
            resolve_status(a).value,
        )
    console.print(table)
    console.print(f"Imported [bold]{len(assignments)}[/bold], removed [bold]{removed}[/bold]")


@app.command()
def evict(student_id: _STUDENT, yes: _YES = False) -> None:
    """Drop every cached assignment for a student."""
    if not yes:
        typer.confirm(f"Evict all cached assignments for student {student_id}?", abort=True)
    cfg = _config()
    with StateDatabase(cfg.state_db_path) as db:
        count = AssignmentCache(db).evict_student(student_id)
    console.print(f"Evicted [bold]{count}[/bold] assignment(s)")


# ---------------------------------------------------------------------------
# Subcommands: maintenance
# ---------------------------------------------------------------------------


@app.command()
def cleanup(
    days: Annotated[
        int, typer.Option("--days", help="Remove invalid credentials expired this long ago")
    ] = 30,
) -> None:
    """Remove credentials that need re-authentication and have long expired."""
    with _services() as services:
        removed = services.tokens.cleanup_expired(timedelta(days=days))
    console.print(f"Removed [bold]{removed}[/bold] token record(s)")


@app.command("generate-key")
def generate_key() -> None:
    """Print a new encryption key for ACS_ENCRYPTION_KEY."""
    console.print(_generate_key(), highlight=False)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main() -> None:
    app()
