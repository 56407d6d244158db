"""
Preflight checks run before sync to catch common misconfigurations early.
"""

import logging
import sqlite3

from rich.console import Console
from rich.panel import Panel
from rich.text import Text

from assignment_calendar_sync.crypto import TokenCipher
from assignment_calendar_sync.models import AppConfig
from assignment_calendar_sync.models import ConfigError

logger = logging.getLogger(__name__)


def collect_issues(cfg: AppConfig, need_oauth: bool = True) -> list[tuple[str, str, str]]:
    """Return (label, detail, hint) for every problem found."""
    issues: list[tuple[str, str, str]] = []

    # 1. Encryption key present and well-formed
    if not cfg.encryption_key:
        issues.append(
            (
                "Encryption key",
                "not configured",
                "Run: assignment-calendar-sync generate-key, then set ACS_ENCRYPTION_KEY",
            )
        )
    else:
        try:
            TokenCipher(cfg.encryption_key)
        except ConfigError as e:
            logger.error("Encryption key rejected: %s", e)
            issues.append(("Encryption key", str(e), "Generate a new key with generate-key"))

    # 2. OAuth client credentials
    if need_oauth and (not cfg.google_client_id or not cfg.google_client_secret):
        issues.append(
            (
                "Google OAuth client",
                "client id or secret missing",
                "Set ACS_GOOGLE_CLIENT_ID and ACS_GOOGLE_CLIENT_SECRET",
            )
        )

    # 3. State DB parent dir writable + DB readable if it exists
    db_path = cfg.state_db_path
    try:
        db_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.error("Cannot create state DB directory %s: %s", db_path.parent, e)
        issues.append(
            ("State database", f"{db_path}: {e}", f"Check permissions on {db_path.parent}")
        )
    else:
        if db_path.exists():
            try:
                conn = sqlite3.connect(db_path)
                conn.execute("SELECT 1")
                # BEGIN IMMEDIATE needs a journal file next to the DB.
                conn.execute("BEGIN IMMEDIATE")
                conn.execute("ROLLBACK")
                conn.close()
            except sqlite3.Error as e:
                logger.error("State DB not readable/writable (%s): %s", db_path, e)
                issues.append(
                    (
                        "State database",
                        f"{db_path}: {e}",
                        f"Check permissions on {db_path.parent} "
                        f"(journal files must be creatable alongside the DB)",
                    )
                )

    return issues


def run_preflight_checks(cfg: AppConfig, console: Console, need_oauth: bool = True) -> bool:
    """Return True if sync may proceed; print issues and return False otherwise."""
    issues = collect_issues(cfg, need_oauth=need_oauth)
    if issues:
        _print_issues(issues, console)
        return False
    return True


def _print_issues(issues: list[tuple[str, str, str]], console: Console) -> None:
    body = Text()
    for i, (label, detail, hint) in enumerate(issues):
        if i:
            body.append("\n")
        body.append(f"  ✗  {label}: ", style="bold red")
        body.append(detail, style="bold red")
        body.append(f"\n       → {hint}", style="yellow")

    console.print(Panel(body, title="[bold red]Preflight checks failed[/bold red]"))
