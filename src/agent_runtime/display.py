# display.py
# All terminal output for the agent runtime demo.
#
# This module owns presentation entirely. The agent never formats strings:
# telemetry and run.py call named functions here. Swap this file to change
# the entire UI.
#
# Colour language:
#   cyan    lifecycle and trigger events
#   blue    other telemetry
#   green   success
#   yellow  coalesced or degraded
#   red     failures and faults

import json
from typing import Any

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from agent_runtime.models import CycleSummary, ExecutionRecord, ExecutionStatus

console = Console()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _label(tag: str, color: str) -> Text:
    t = Text()
    t.append(f" {tag} ", style=f"bold white on {color}")
    return t


def _mono(value: Any, max_len: int = 120) -> str:
    if not isinstance(value, str):
        value = json.dumps(value, default=str)
    if len(value) > max_len:
        return value[:max_len] + "…"
    return value


_STATUS_STYLE = {
    ExecutionStatus.SUCCESS: "[bold green]success[/bold green]",
    ExecutionStatus.FAILED: "[bold red]failed[/bold red]",
    ExecutionStatus.PENDING: "[yellow]pending[/yellow]",
}


# ---------------------------------------------------------------------------
# Entry
# ---------------------------------------------------------------------------


def banner(agent_name: str, model: str, goal: str) -> None:
    console.print()
    console.print(
        Panel.fit(
            f"[bold cyan]{agent_name}[/bold cyan]\n"
            "[dim]Trigger → context → plan → execute → remember[/dim]\n\n"
            f"[dim]Model :[/dim] [white]{model}[/white]\n"
            f"[dim]Goal  :[/dim] [white]{goal or '(none)'}[/white]",
            border_style="cyan",
            padding=(1, 4),
        )
    )


# ---------------------------------------------------------------------------
# Telemetry
# ---------------------------------------------------------------------------

_EVENT_COLORS = {
    "agent_started": "cyan",
    "agent_stopped": "cyan",
    "agent_errored": "red",
    "cycle_coalesced": "yellow",
}


def telemetry_event(event_name: str, payload: dict[str, Any]) -> None:
    if event_name == "cycle_completed":
        cycle_completed(payload)
        return
    color = _EVENT_COLORS.get(event_name, "blue")
    console.print(_label(event_name.upper().replace("_", " "), color), f"[dim]{_mono(payload, 160)}[/dim]")


def cycle_completed(payload: dict[str, Any]) -> None:
    console.print()
    if payload.get("ok"):
        tag, color = "CYCLE OK ✓", "green"
    else:
        tag, color = "CYCLE FAILED ✗", "red"
    detail = (
        f"[green]{payload.get('success_count', 0)} succeeded[/green]  "
        f"[red]{payload.get('failure_count', 0)} failed[/red]"
    )
    if payload.get("planning_failed"):
        detail += "  [red]planning failed[/red]"
    console.print(_label(tag, color), detail, f"[dim]{payload.get('cycle_id', '')}[/dim]")


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


def execution_summary(records: list[ExecutionRecord]) -> None:
    console.print()
    table = Table(box=box.SIMPLE_HEAVY, border_style="dim", header_style="bold dim", padding=(0, 1))
    table.add_column("Action", width=18)
    table.add_column("Status", justify="center", width=10)
    table.add_column("Attempts", justify="center", width=8)
    table.add_column("Outcome", style="dim white")

    for record in records:
        outcome = record.error if record.error else record.result
        table.add_row(
            record.action.type.value,
            _STATUS_STYLE[record.status],
            str(record.attempt_count),
            _mono(outcome, 60),
        )

    console.print(Panel(table, title="[dim]EXECUTION SUMMARY[/dim]", border_style="dim"))


def cycle_history(summaries: list[CycleSummary]) -> None:
    console.print()
    console.print(Rule("[cyan]CYCLE HISTORY[/cyan]", style="cyan"))
    table = Table(box=box.SIMPLE, header_style="bold cyan", padding=(0, 1))
    table.add_column("Cycle", style="dim")
    table.add_column("Trigger", style="white")
    table.add_column("Actions", justify="center")
    table.add_column("OK", justify="center")

    for summary in summaries:
        ok = "[bold green]✓[/bold green]" if summary.ok else "[bold red]✗[/bold red]"
        table.add_row(summary.cycle_id, summary.trigger_id or "", str(summary.action_count), ok)
    console.print(table)


def halt(reason: str) -> None:
    console.print()
    console.print(
        Panel(
            f"[bold white]{reason}[/bold white]",
            title=_label("HALT", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )
    console.print()
