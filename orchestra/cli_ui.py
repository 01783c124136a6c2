"""Interactive CLI helpers using Rich."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from rich.console import Console
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeElapsedColumn,
)
from rich.prompt import Prompt
from rich.table import Table

from orchestra.core.logging import LOG_FORMAT
from orchestra.models.jobs import PersistedJob
from orchestra.models.orchestrator import (
    ExtractedResult,
    OrchestratorState,
    RequiredInput,
    SessionLane,
    TargetSite,
)
from orchestra.services.reporter import OrchestratorReporter
from orchestra.services.site_catalog import OutputPreview

_LANE_STYLES = {
    "queued": "dim",
    "initializing": "cyan",
    "navigating": "blue",
    "extracting": "magenta",
    "complete": "green",
    "error": "red",
}


class LogBufferHandler(logging.Handler):
    """Buffer log lines for later viewing."""

    def __init__(self, max_lines: int = 500) -> None:
        super().__init__()
        self._max_lines = max_lines
        self._lines: list[str] = []
        self.setFormatter(logging.Formatter(LOG_FORMAT))

    def emit(self, record: logging.LogRecord) -> None:
        line = self.format(record)
        self._lines.append(line)
        if len(self._lines) > self._max_lines:
            self._lines = self._lines[-self._max_lines :]

    def get_lines(self) -> Iterable[str]:
        """Return buffered log lines."""

        return list(self._lines)


@dataclass
class ProgressUI:
    """Progress UI wrapper with one bar per lane."""

    progress: Progress
    lanes_task: TaskID
    lane_tasks: dict[str, TaskID] = field(default_factory=dict)

    def start(self) -> None:
        """Start the progress display."""

        self.progress.start()

    def stop(self) -> None:
        """Stop the progress display."""

        self.progress.stop()


def configure_interactive_logging(level: str = "WARNING") -> LogBufferHandler:
    """Quiet console logging while the progress display runs and buffer INFO lines."""

    root = logging.getLogger()
    for handler in root.handlers:
        if isinstance(handler, logging.StreamHandler) and not isinstance(
            handler, logging.FileHandler
        ):
            handler.setLevel(level)

    buffer_handler = LogBufferHandler()
    buffer_handler.setLevel(logging.INFO)
    root.addHandler(buffer_handler)
    return buffer_handler


def build_progress_ui(console: Console, total_lanes: int = 0) -> ProgressUI:
    """Create the progress UI with an overall lanes task."""

    progress = Progress(
        SpinnerColumn(),
        TextColumn("[bold blue]{task.description}"),
        BarColumn(),
        TextColumn("{task.percentage:>3.0f}%"),
        TimeElapsedColumn(),
        console=console,
        transient=True,
    )
    lanes_task = progress.add_task("Sites finished", total=total_lanes)
    return ProgressUI(progress=progress, lanes_task=lanes_task)


def lane_description(lane: SessionLane) -> str:
    """One-line description of a lane for the progress display."""

    style = _LANE_STYLES.get(lane.status, "white")
    detail = lane.error if lane.status == "error" else lane.current_action or lane.status
    return f"{lane.site.name} [{style}]{detail}[/{style}]"


def build_progress_reporter(ui: ProgressUI) -> OrchestratorReporter:
    """Create an OrchestratorReporter that updates the progress UI."""

    finished: set[str] = set()

    def on_lane_update(lane: SessionLane) -> None:
        task = ui.lane_tasks.get(lane.id)
        if task is None:
            task = ui.progress.add_task(lane_description(lane), total=100)
            ui.lane_tasks[lane.id] = task
        ui.progress.update(task, description=lane_description(lane), completed=lane.progress)
        if lane.is_terminal and lane.id not in finished:
            finished.add(lane.id)
            ui.progress.advance(ui.lanes_task, 1)

    def on_status_change(status: str) -> None:
        if status == "completing":
            ui.progress.update(ui.lanes_task, description="Aggregating results")

    return OrchestratorReporter(
        on_status_change=on_status_change,
        on_lane_update=on_lane_update,
    )


def format_sites(sites: list[TargetSite]) -> Table:
    """Table of candidate sites with their selection."""

    table = Table(title="Candidate sites")
    table.add_column("Use")
    table.add_column("ID")
    table.add_column("Site")
    table.add_column("Domain")
    table.add_column("Est.", justify="right")
    for site in sites:
        table.add_row(
            "[green]x[/green]" if site.selected else "",
            site.id,
            site.name,
            site.domain,
            f"{site.estimated_time}s" if site.estimated_time else "-",
        )
    return table


def format_output_preview(preview: OutputPreview) -> str:
    """Describe how results will be presented."""

    text = f"Output: {preview.type} - {preview.description}"
    if preview.columns:
        text = f"{text} ({', '.join(preview.columns)})"
    return text


def _money(value: float | None) -> str:
    return f"${value:,.2f}" if value is not None else "-"


def _stock(result: ExtractedResult) -> str:
    if result.in_stock is None:
        return "-"
    return "yes" if result.in_stock else "no"


def format_results(state: OrchestratorState) -> Table:
    """Table of per-lane outcomes."""

    best = state.aggregated_results.best if state.aggregated_results else None
    table = Table(title="Results")
    table.add_column("Site")
    table.add_column("Status")
    if state.intent == "quote_request":
        table.add_column("Annual", justify="right")
        table.add_column("Monthly", justify="right")
        table.add_column("Deductible", justify="right")
    else:
        table.add_column("Price", justify="right")
        table.add_column("In stock")
        table.add_column("Shipping")

    for lane in state.lanes:
        result = lane.result
        name = lane.site.name
        if best is not None and result == best:
            name = f"[bold green]{name} *[/bold green]"
        if result is None:
            table.add_row(name, f"[red]{lane.error or lane.status}[/red]", "-", "-", "-")
        elif state.intent == "quote_request":
            table.add_row(
                name,
                lane.status,
                _money(result.annual_cost),
                _money(result.monthly_cost),
                _money(result.deductible),
            )
        else:
            table.add_row(
                name, lane.status, _money(result.price), _stock(result), result.shipping or "-"
            )
    return table


def format_synthesis(state: OrchestratorState) -> str:
    """Render the synthesis and next actions as plain text."""

    synthesis = state.synthesis
    if synthesis is None:
        return state.error or "No results yet."

    lines = [synthesis.summary]
    if synthesis.insights:
        lines.append("")
        lines.extend(f"- {insight}" for insight in synthesis.insights)
    if synthesis.caveats:
        lines.append("")
        lines.extend(f"! {caveat}" for caveat in synthesis.caveats)
    if synthesis.methodology:
        lines.append("")
        lines.append(synthesis.methodology)
    if state.next_actions:
        lines.append("")
        lines.append("Next:")
        for action in state.next_actions:
            marker = "*" if action.primary else " "
            url = f" ({action.url})" if action.url else ""
            lines.append(f" {marker} {action.label}{url}")
    return "\n".join(lines)


def show_report(console: Console, state: OrchestratorState) -> None:
    """Print the final report for a request."""

    if state.status == "error" and state.synthesis is None:
        console.print(Panel.fit(state.error or "Request failed", style="red"))
        return

    title = state.synthesis.headline if state.synthesis else state.original_query
    console.print(Panel(format_synthesis(state), title=title, style="green"))
    if state.lanes:
        console.print(format_results(state))


def format_jobs(jobs: list[PersistedJob]) -> Table:
    """Table of persisted jobs, newest first."""

    table = Table(title="Recent searches")
    table.add_column("ID")
    table.add_column("Status")
    table.add_column("Query")
    table.add_column("Sites", justify="right")
    table.add_column("Created")
    for job in jobs:
        counts = f"{job.completed}/{job.total}" + (f" ({job.failed} failed)" if job.failed else "")
        table.add_row(
            job.id,
            job.status,
            job.query,
            counts,
            job.created_at.strftime("%Y-%m-%d %H:%M"),
        )
    return table


def show_logs(console: Console, logs: Iterable[str]) -> None:
    """Display logs in a scrollable pager."""

    with console.pager():
        for line in logs:
            console.print(line)


def parse_input_pairs(pairs: Iterable[str]) -> dict[str, str]:
    """Parse ``KEY=VALUE`` strings into a mapping.

    Raises:
        ValueError: If an entry has no ``=`` or an empty key.
    """

    values: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"Expected KEY=VALUE, got {pair!r}")
        values[key.strip()] = value.strip()
    return values


def prompt_required_inputs(
    console: Console,
    questions: list[RequiredInput],
    answers: dict[str, str],
) -> dict[str, str]:
    """Ask for every clarifying input that has no answer yet.

    Args:
        console: Rich console instance.
        questions: Clarifying questions from the parsed query.
        answers: Answers already supplied.

    Returns:
        Answers including the newly prompted ones.
    """

    collected = dict(answers)
    for question in questions:
        if collected.get(question.key, "").strip():
            continue
        choices = [option.value for option in question.options] if question.options else None
        if question.required:
            value = Prompt.ask(question.label, console=console, choices=choices)
        else:
            value = Prompt.ask(question.label, console=console, choices=choices, default="")
        if value and value.strip():
            collected[question.key] = value.strip()
    return collected
