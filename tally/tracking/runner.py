"""
Batch entry point for scheduled and manual runs.

    python -m tally.tracking.runner <workbook.xlsx> <command> [team]

Commands: sync-all, sync-next, sync-team <team>, reset-sync, reconcile,
alerts, locks, merge-fields. Document and user properties persist in
<workbook>.properties.json. The workbook is saved back in place after the
command runs, including its DebugLog view.
"""

from __future__ import annotations

import getpass
import logging
import os
from pathlib import Path
from typing import Callable, Optional

from .alerts import refresh_merge_fields, scan_and_send
from .context import TrackerContext
from .diagnostics import attach_debug_log, detach_debug_log
from .errors import TrackerFault
from .event_ledger import reconcile
from .notify import DryRunSender, NotificationSender, SmtpSender
from .properties import PropertyFile
from .roster_sync import reset_sync_status, sync_all_teams, sync_next_team, sync_team
from .week_locks import refresh_week_locks
from .workbook import Workbook

logger = logging.getLogger(__name__)

USAGE = (
    "Usage: python -m tally.tracking.runner <workbook.xlsx> "
    "<sync-all|sync-next|sync-team|reset-sync|reconcile|alerts|locks|merge-fields> [team]"
)


def properties_path(workbook_path: Path) -> Path:
    return workbook_path.with_name(workbook_path.name + ".properties.json")


def _sync_team(ctx: TrackerContext, args: list[str]) -> str:
    if not args:
        raise TrackerFault(reason="sync-team needs a team name", fix_steps=[USAGE])
    report = sync_team(ctx, args[0])
    return f"{report.team}: {report.status} ({report.rows_written} rows)"


def _sync_all(ctx: TrackerContext, args: list[str]) -> str:
    reports = sync_all_teams(ctx)
    return "\n".join(f"{r.team}: {r.status}" + (f" ({r.error})" if r.error else "") for r in reports)


def _sync_next(ctx: TrackerContext, args: list[str]) -> str:
    report = sync_next_team(ctx)
    return "All teams have been synced for today." if report is None else f"{report.team}: {report.status}"


def _reset(ctx: TrackerContext, args: list[str]) -> str:
    reset_sync_status(ctx)
    return "All team sync timestamps reset."


def _reconcile(ctx: TrackerContext, args: list[str]) -> str:
    result = reconcile(ctx)
    return f"{result.new_events} new events, {result.updated_values} source values updated"


def _alerts(ctx: TrackerContext, args: list[str]) -> str:
    result = scan_and_send(ctx)
    return f"Scan complete. {result.sent} new alerts sent ({result.marked} marked, {result.failed} failed)."


def _locks(ctx: TrackerContext, args: list[str]) -> str:
    applied = refresh_week_locks(ctx)
    return "\n".join(f"{name}: {block.week if block else 'no active week'}" for name, block in applied.items())


def _merge_fields(ctx: TrackerContext, args: list[str]) -> str:
    names = refresh_merge_fields(ctx.workbook)
    return f"Merge fields updated: {', '.join(names)}" if names else "No templates to update."


COMMANDS: dict[str, Callable[[TrackerContext, list[str]], str]] = {
    "sync-all": _sync_all,
    "sync-next": _sync_next,
    "sync-team": _sync_team,
    "reset-sync": _reset,
    "reconcile": _reconcile,
    "alerts": _alerts,
    "locks": _locks,
    "merge-fields": _merge_fields,
}

SELF_LOCKING = frozenset({"sync-all", "locks"})


def default_sender() -> NotificationSender:
    smtp = SmtpSender.from_env()
    if smtp.is_available():
        return smtp
    logger.warning("SMTP is not configured; alerts will be recorded but not delivered.")
    return DryRunSender()


def invoking_user() -> str:
    return os.getenv("USER") or getpass.getuser()


def open_context(workbook: Workbook, workbook_path: Path, user: Optional[str] = None,
                 sender: Optional[NotificationSender] = None) -> TrackerContext:
    """Context whose properties persist in the JSON file beside workbook_path."""
    props = PropertyFile.load(properties_path(Path(workbook_path)))
    return TrackerContext(
        workbook=workbook,
        document_properties=props.document(),
        user_properties=props.user(user or invoking_user()),
        sender=sender,
    )


def run(workbook_path: Path, command: str, args: Optional[list[str]] = None,
        sender: Optional[NotificationSender] = None, user: Optional[str] = None) -> str:
    if command not in COMMANDS:
        raise TrackerFault(reason=f"Unknown command '{command}'", fix_steps=[USAGE])
    workbook_path = Path(workbook_path)
    ctx = open_context(Workbook.from_xlsx(str(workbook_path)), workbook_path, user, sender)
    if command == "alerts" and ctx.sender is None:
        ctx.sender = default_sender()

    handler = attach_debug_log(ctx)
    try:
        return COMMANDS[command](ctx, args or [])
    finally:
        # Protections are not read back from xlsx; reapply them before saving.
        if command not in SELF_LOCKING:
            refresh_week_locks(ctx)
        detach_debug_log(handler)
        ctx.workbook.to_xlsx(str(workbook_path))


# ---------------------------------------------------------------------------
# CLI / direct execution
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import sys

    if len(sys.argv) < 3:
        print(USAGE)
        sys.exit(1)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    try:
        print(run(Path(sys.argv[1]), sys.argv[2], sys.argv[3:]))
    except TrackerFault as e:
        print(str(e))
        sys.exit(2)
