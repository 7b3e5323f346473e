"""Console-friendly rendering of diagnose and repair reports."""

from __future__ import annotations

import json
from typing import Any, Dict, List

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .diagnostics import Report, Status

STATUS_STYLES = {
    Status.OK: "bold green",
    Status.FAIL: "bold red",
    Status.INFO: "cyan",
}


def format_report(report: Report) -> str:
    lines: List[str] = []
    for check in report.checks:
        lines.append(f"== {check.title} ==")
        lines.append(check.summary)
        lines.extend(check.details)
        lines.append("")
    lines.append(_closing_line(report))
    return "\n".join(lines)


def report_to_dict(report: Report) -> Dict[str, Any]:
    return {
        "mode": report.mode,
        "target": report.target.as_dict(),
        "writable": report.writable,
        "signature_ok": report.signature_ok,
        "checks": [
            {
                "title": check.title,
                "status": check.status.value,
                "summary": check.summary,
                "details": list(check.details),
            }
            for check in report.checks
        ],
    }


def to_json(report: Report) -> str:
    return json.dumps(report_to_dict(report), ensure_ascii=False, indent=2)


def render_rich(report: Report, console: Console) -> None:
    target = report.target
    console.print(
        Panel(
            f"{target.display_name} ({target.channel.value}) {report.mode}\n{target.path}",
            style="bold cyan",
        )
    )

    table = Table(box=box.SIMPLE_HEAD)
    table.add_column("Check", style="bold")
    table.add_column("Result")
    table.add_column("Details")
    for check in report.checks:
        style = STATUS_STYLES[check.status]
        table.add_row(check.title, f"[{style}]{check.summary}[/{style}]", "\n".join(check.details))
    console.print(table)

    verdict_style = "bold green" if report.writable and report.signature_ok else "bold yellow"
    console.print(Panel(_closing_line(report), style=verdict_style))


def _closing_line(report: Report) -> str:
    if report.mode == "repair":
        return f"Done. Relaunch {report.target.display_name} and try 'Check for Updates' again."
    return "Done."
