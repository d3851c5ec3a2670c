"""
Rich terminal UI components.
"""
import sys
from typing import Dict, List, Optional

import typer
from rich import box
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from .models import CheckStatus, HealthReport, OverallStatus

# Detect ASCII fallback
try:
    "✓⚠✗".encode(sys.stdout.encoding if sys.stdout and sys.stdout.encoding else "utf-8")
    HAS_UNICODE = True
except (UnicodeEncodeError, LookupError):
    HAS_UNICODE = False

ICONS: Dict[str, str] = {
    "success": "✓",
    "warn": "⚠",
    "error": "✗",
    "info": "ℹ",
    "backup": "📦",
    "delete": "🗑",
    "verify": "🧪",
    "docker": "🐳",
}

ASCII_ICONS: Dict[str, str] = {
    "success": "[OK]",
    "warn": "[WARN]",
    "error": "[ERR]",
    "info": "[INF]",
    "backup": "[BAK]",
    "delete": "[DEL]",
    "verify": "[CHK]",
    "docker": "[DKR]",
}

STATUS_STYLE: Dict[CheckStatus, str] = {
    CheckStatus.OK: "bold green",
    CheckStatus.WARN: "bold yellow",
    CheckStatus.FAIL: "bold red",
}

OVERALL_STYLE: Dict[OverallStatus, str] = {
    OverallStatus.HEALTHY: "green",
    OverallStatus.FAIR: "yellow",
    OverallStatus.POOR: "red",
}

def icon(name: str) -> str:
    return ICONS.get(name, "") if HAS_UNICODE else ASCII_ICONS.get(name, "")

console = Console(width=120)
err_console = Console(stderr=True, width=120)

def render_header(title: str, subtitle: Optional[str] = None) -> None:
    """Print the boxed command header."""
    text = Text(title, style="bold cyan")
    if subtitle:
        text.append(f"\n{subtitle}", style="dim")
    console.print(Panel(text, border_style="cyan", expand=False))

def render_status(action: str, message: str, style: str = "white") -> None:
    """Print a single line status update."""
    i = icon(action)
    console.print(f"{i} [{style}]{escape(message)}[/]")

def render_error(message: str) -> None:
    """Print a styled error panel."""
    i = icon("error")
    err_console.print()
    err_console.print(Panel(Text(message, style="red"), border_style="red", expand=False, title=f"{i} ERROR"))

def render_warning(message: str) -> None:
    """Print a styled warning panel."""
    i = icon("warn")
    console.print()
    console.print(Panel(Text(message, style="yellow"), border_style="yellow", expand=False, title=f"{i} WARNING"))

def confirm(prompt_text: str) -> bool:
    """Interactive confirmation prompt."""
    i = icon("warn")
    return typer.confirm(f"{i} {prompt_text}", default=False)

def render_table(title: str, headers: List[str], rows: List[List[str]]) -> None:
    """Render a structured Rich Table."""
    console.print()
    table = Table(
        title=title,
        border_style="cyan",
        header_style="bold magenta",
        show_lines=False,
        box=box.ROUNDED if HAS_UNICODE else box.ASCII
    )

    if headers:
        table.add_column(headers[0], justify="center", no_wrap=True)
        for h in headers[1:]:
            table.add_column(h, justify="left", overflow="fold")

    for r in rows:
        table.add_row(*r)

    console.print(table)

def render_report(report: HealthReport) -> None:
    """Render every check result followed by the summary panel."""
    rows = []
    for r in report.results:
        style = STATUS_STYLE[r.status]
        rows.append([f"[{style}]{r.status.value.upper()}[/]", escape(r.name), escape(r.message)])
    render_table(f"System Health Check - {report.hostname}", ["Status", "Check", "Details"], rows)

    style = OVERALL_STYLE[report.overall]
    if report.issue_count == 0:
        summary = f"{icon('success')} All systems operational!"
    else:
        summary = f"System health: {report.overall.value.upper()} - {report.issue_count} issue(s) detected"
    lines = Text(summary, style=f"bold {style}")
    if report.finished_at:
        lines.append(f"\nCheck completed: {report.finished_at:%Y-%m-%d %H:%M:%S}", style="dim")
    console.print(Panel(lines, border_style=style, expand=False, title="Health Check Summary"))

def render_summary(title: str, stats: Dict[str, str]) -> None:
    """Render a key/value summary panel for operations."""
    table = Table(show_header=False, box=None)
    table.add_column("Key", style="cyan")
    table.add_column("Value", style="magenta")
    for k, v in stats.items():
        table.add_row(k, v)
    i_success = icon("success")
    console.print(Panel(table, title=f"[bold green]{i_success} {title}[/]", border_style="green", expand=False))
