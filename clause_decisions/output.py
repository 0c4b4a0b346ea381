"""Rich terminal output: projections, decision history, contract summary."""

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from .models import (
    ACCEPT_DEVIATION, ADD_NOTE, APPLY_FALLBACK, EDIT_MANUAL, ESCALATE, ESCALATED,
    NO_ISSUES, PARTIALLY_RESOLVED, PENDING, RESOLVED, REVERT, UNDO,
    Decision, Projection, is_resolved,
)

STATUS_STYLE = {
    RESOLVED: "bold green",
    PARTIALLY_RESOLVED: "bold yellow",
    ESCALATED: "bold magenta",
    PENDING: "bold red",
    NO_ISSUES: "dim",
}


def _status_markup(status: str) -> str:
    style = STATUS_STYLE.get(status) or ("bold green" if is_resolved(status) else "")
    return f"[{style}]{status}[/]" if style else status


def describe_decision(d: Decision) -> str:
    p = d.payload
    if d.action_type == ACCEPT_DEVIATION:
        return p.get("comment") or "Deviation accepted"
    if d.action_type in (APPLY_FALLBACK, EDIT_MANUAL):
        text = p["replacementText"]
        return f"-> {text[:60]}..." if len(text) > 60 else f"-> {text}"
    if d.action_type == ESCALATE:
        return f"{p['reason']} -> {p.get('assigneeName') or p['assigneeId']}: {p['comment']}"
    if d.action_type == ADD_NOTE:
        return p["noteText"]
    if d.action_type == UNDO:
        return f"undid {p['undoneDecisionId'][:8]}"
    if d.action_type == REVERT:
        return "Reverted to original"
    return ""


def tracked_changes_text(projection: Projection) -> Text:
    text = Text()
    for c in projection.tracked_changes:
        if c.type == "delete":
            text.append(c.text, style="strike red")
        elif c.type == "insert":
            text.append(c.text, style="underline green")
        else:
            text.append(c.text)
    return text


def print_projection(projection: Projection, console: Console = None) -> None:
    console = console or Console()
    console.print()
    summary = (
        f"[bold]Clause:[/bold] {projection.clause_id}  "
        f"[bold]Status:[/bold] {_status_markup(projection.effective_status)}  "
        f"[bold]Resolved:[/bold] {projection.resolved_count}/{projection.total_finding_count}  "
        f"[bold]Decisions:[/bold] {projection.decision_count}  "
        f"[bold]Version:[/bold] {projection.version}"
    )
    if projection.has_unresolved_escalation:
        summary += (
            f"\n[bold magenta]Escalated to:[/bold magenta] "
            f"{projection.escalated_to_user_name or projection.escalated_to_user_id} "
            f"({projection.escalation_reason})"
        )
    console.print(Panel(summary, title="Clause Projection", border_style="blue", expand=False))

    if projection.finding_statuses:
        table = Table(title="Findings", box=box.ROUNDED, show_lines=True)
        table.add_column("Finding", style="bold", width=14)
        table.add_column("Status", width=28)
        table.add_column("Notes", width=6)
        table.add_column("Detail", width=60)
        for fid, entry in projection.finding_statuses.items():
            if entry.status == ESCALATED:
                detail = f"{entry.escalation_reason}: {entry.escalation_comment}"
            else:
                detail = entry.replacement_text or ""
            table.add_row(fid, _status_markup(entry.status), str(entry.note_count), detail)
        console.print(table)

    console.print(Panel(tracked_changes_text(projection), title="Tracked Changes", border_style="green"))
    console.print()


def print_history(decisions: list[Decision], console: Console = None) -> None:
    console = console or Console()
    table = Table(title="Decision History", box=box.ROUNDED)
    table.add_column("#", width=4)
    table.add_column("Decision", style="bold", width=10)
    table.add_column("When", width=27)
    table.add_column("Actor", width=14)
    table.add_column("Action", width=18)
    table.add_column("Finding", width=14)
    table.add_column("Detail", width=50)
    for n, d in enumerate(decisions, start=1):
        table.add_row(
            str(n), d.id[:8], d.created_at.isoformat(), f"{d.actor_id} ({d.actor_role})",
            d.action_type, d.finding_id or "-", describe_decision(d),
        )
    console.print(table)


def print_contract_summary(summary: dict, console: Console = None) -> None:
    console = console or Console()
    header = (
        f"[bold]Contract:[/bold] {summary['contractId']}  "
        f"[bold]Resolved:[/bold] {summary['resolvedCount']}/{summary['totalFindingCount']}  "
        f"[bold]Finalized:[/bold] {'yes' if summary['finalized'] else 'no'}  "
        f"[bold]Can finalize:[/bold] {'yes' if summary['canFinalize'] else 'no'}"
    )
    console.print(Panel(header, title="Contract Review", border_style="blue", expand=False))
    table = Table(box=box.ROUNDED)
    table.add_column("Clause", style="bold")
    table.add_column("Status")
    table.add_column("Resolved")
    table.add_column("Version")
    for c in summary["clauses"]:
        table.add_row(
            c["clauseId"], _status_markup(c["effectiveStatus"]),
            f"{c['resolvedCount']}/{c['totalFindingCount']}", str(c["version"]),
        )
    console.print(table)
