from __future__ import annotations

import threading
from typing import Any, Dict, Optional

from rich.console import Console
from rich.progress import BarColumn, MofNCompleteColumn, Progress, TextColumn, TimeElapsedColumn
from rich.table import Table

from ..core.models import Mode, ProcessingOutcome, RunSummary


def _format_status_counts(counts: Dict[str, int], *, max_items: int = 4) -> str:
    if not counts:
        return ""
    items = sorted(counts.items(), key=lambda item: item[0])
    shown = items[:max_items]
    tail = len(items) - len(shown)
    rendered = ", ".join([f"{name}={count}" for name, count in shown])
    if tail > 0:
        rendered = f"{rendered} (+{tail} more)"
    return rendered


class RunProgress:
    def __init__(self, *, enabled: bool, console: Optional[Console] = None) -> None:
        self._enabled = bool(enabled)
        self._console = console or Console(stderr=True)
        self._progress: Optional[Progress] = None
        self._task: Optional[Any] = None
        self._status_counts: Dict[str, int] = {}
        self._lock = threading.Lock()
        self._started = False
        if self._enabled:
            self._progress = Progress(
                TextColumn("{task.description}"),
                BarColumn(),
                MofNCompleteColumn(),
                TextColumn("{task.fields[statuses]}", justify="left"),
                TimeElapsedColumn(),
                console=self._console,
                transient=True,
            )

    def __enter__(self) -> RunProgress:
        if self._enabled and self._progress and not self._started:
            self._progress.start()
            self._started = True
        return self

    def __exit__(self, exc_type: Any, exc: Any, exc_tb: Any) -> None:
        if self._enabled and self._progress and self._started:
            self._progress.stop()
            self._started = False

    @property
    def enabled(self) -> bool:
        return self._enabled

    def start_records(self, description: str, total: int) -> None:
        if not self._enabled or not self._progress:
            return
        self._status_counts = {}
        self._task = self._progress.add_task(description, total=total, statuses="")

    def advance(self, outcome: ProcessingOutcome) -> None:
        if not self._enabled or not self._progress or self._task is None:
            return
        with self._lock:
            key = outcome.status.value
            self._status_counts[key] = self._status_counts.get(key, 0) + 1
            self._progress.update(self._task, advance=1, statuses=_format_status_counts(self._status_counts))


def summary_rows(summary: RunSummary, mode: Mode) -> list[tuple[str, str]]:
    rows = [("Total records", str(summary.total))]
    if mode is Mode.CONVERT:
        rows += [
            ("Succeeded", str(summary.succeeded)),
            ("Failed", str(summary.failed)),
            ("Skipped", str(summary.skipped)),
        ]
    else:
        rows += [
            ("Valid", str(summary.valid)),
            ("Orphaned", str(summary.orphaned)),
            ("Error checking", str(summary.error_checking)),
            ("Failed", str(summary.failed)),
        ]
        if summary.deleted or summary.would_delete or summary.delete_failed:
            rows += [
                ("Deleted", str(summary.deleted)),
                ("Would delete", str(summary.would_delete)),
                ("Failed to delete", str(summary.delete_failed)),
            ]
    return rows


def render_run_summary_table(
    *,
    enabled: bool,
    summary: RunSummary,
    mode: Mode,
    dry_run: bool,
    report_path: Optional[str],
    console: Optional[Console] = None,
) -> None:
    if not enabled:
        return
    title = f"{mode.value} Summary" + (" (dry run)" if dry_run else "")
    table = Table(title=title, show_header=True, header_style="bold")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="white")
    for label, value in summary_rows(summary, mode):
        table.add_row(label, value)
    table.add_row("Report", report_path or "NOT WRITTEN")
    (console or Console()).print(table)
