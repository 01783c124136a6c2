"""CLI entrypoint for Orchestra."""

import asyncio

import typer
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm

from orchestra.cli_ui import (
    build_progress_reporter,
    build_progress_ui,
    configure_interactive_logging,
    format_jobs,
    format_output_preview,
    format_sites,
    parse_input_pairs,
    prompt_required_inputs,
    show_logs,
    show_report,
)
from orchestra.core.logging import (
    add_request_file_handler,
    remove_request_file_handler,
    setup_logging,
)
from orchestra.core.settings import get_settings
from orchestra.models.orchestrator import OrchestratorOptions, OrchestratorState
from orchestra.services.job_client import HttpJobClient
from orchestra.services.query_interpreter import build_query_interpreter
from orchestra.services.site_catalog import output_preview
from orchestra.services.storage import (
    fetch_job,
    init_db,
    job_record_from_state,
    list_jobs,
    load_job_state,
    persist_job,
    remove_job,
)
from orchestra.workflows.orchestrator import Orchestrator
from orchestra.workflows.state_machine import missing_required_inputs

app = typer.Typer(add_completion=False)
console = Console()
settings = get_settings()

CHECKPOINT_SECONDS = 2.0

QUERY_ARGUMENT = typer.Argument(..., help="What to search for, e.g. 'best price for AirPods Pro'")
JOB_ID_ARGUMENT = typer.Argument(..., help="Job ID (the request's query id)")
EXCLUDE_OPTION = typer.Option(None, "--exclude", help="Site ID to deselect (repeatable)")
INPUT_OPTION = typer.Option(None, "--input", help="Answer a clarifying question as KEY=VALUE")
MAX_CONCURRENT_OPTION = typer.Option(None, help="Maximum lanes running at once")
STAGGER_OPTION = typer.Option(None, "--stagger-ms", help="Delay between lane starts in ms")
YES_OPTION = typer.Option(False, "--yes", "-y", help="Run without confirmation")
LOGS_OPTION = typer.Option(False, "--logs", help="Show buffered logs after the run")
LIMIT_OPTION = typer.Option(20, help="Number of jobs to list")


async def _checkpoint(state: OrchestratorState) -> None:
    await persist_job(
        settings.database_path,
        job_record_from_state(state),
        max_jobs=settings.max_persisted_jobs,
    )


async def _run_to_completion(orchestrator: Orchestrator) -> OrchestratorState:
    """Wait for the request to finish, persisting a snapshot every few seconds."""

    while True:
        try:
            return await orchestrator.wait_until_finished(timeout=CHECKPOINT_SECONDS)
        except TimeoutError:
            await _checkpoint(orchestrator.snapshot())


@app.command()
def search(
    query: str = QUERY_ARGUMENT,
    exclude: list[str] | None = EXCLUDE_OPTION,
    inputs: list[str] | None = INPUT_OPTION,
    max_concurrent: int | None = MAX_CONCURRENT_OPTION,
    stagger_ms: int | None = STAGGER_OPTION,
    yes: bool = YES_OPTION,
    logs: bool = LOGS_OPTION,
) -> None:
    """Search several sites in parallel and summarize the results."""

    setup_logging(settings.log_level)
    try:
        answers = parse_input_pairs(inputs or [])
    except ValueError as exc:
        raise typer.BadParameter(str(exc), param_hint="--input") from exc
    options = OrchestratorOptions.from_settings(
        settings, max_concurrent=max_concurrent, stagger_delay_ms=stagger_ms
    )

    async def _run() -> None:
        await init_db(settings.database_path)
        ui = build_progress_ui(console)
        job_client = HttpJobClient.from_settings(settings)
        interpreter = build_query_interpreter(settings)
        query_id = None
        try:
            async with Orchestrator(
                job_client, interpreter, options, reporter=build_progress_reporter(ui)
            ) as orchestrator:
                with console.status("Understanding your request..."):
                    state = await orchestrator.submit_query(query)
                if state.status == "error":
                    show_report(console, state)
                    raise typer.Exit(code=1)

                query_id = state.query_id
                add_request_file_handler(
                    settings.database_path.parent / "logs", query_id, settings.log_level
                )
                excluded = set(exclude or [])
                for site in state.parsed_query.suggested_sites:
                    if site.id in excluded and site.selected:
                        state = await orchestrator.toggle_site(site.id)

                parsed = state.parsed_query
                console.print(Panel.fit(f"{parsed.goal}: {parsed.subject}", title=parsed.intent))
                if parsed.reasoning:
                    console.print(parsed.reasoning)
                console.print(format_sites(parsed.suggested_sites))
                console.print(format_output_preview(output_preview(parsed.intent)))

                if parsed.required_inputs:
                    answers_needed = prompt_required_inputs(
                        console, parsed.required_inputs, answers
                    )
                else:
                    answers_needed = answers
                for key, value in answers_needed.items():
                    state = await orchestrator.set_user_input(key, value)

                missing = missing_required_inputs(state)
                if missing:
                    console.print(f"Missing required inputs: {', '.join(missing)}")
                    raise typer.Exit(code=1)
                if not state.selected_sites:
                    console.print("No sites selected.")
                    raise typer.Exit(code=1)
                if not yes and not Confirm.ask(
                    f"Search {len(state.selected_sites)} sites?", default=True, console=console
                ):
                    await _checkpoint(orchestrator.snapshot())
                    return

                log_buffer = configure_interactive_logging()
                ui.start()
                try:
                    state = await orchestrator.execute()
                    ui.progress.update(ui.lanes_task, total=len(state.lanes))
                    await _checkpoint(state)
                    state = await _run_to_completion(orchestrator)
                finally:
                    ui.stop()

                await _checkpoint(state)
                show_report(console, state)
                console.print(f"Job ID: {state.query_id}")
                if logs:
                    show_logs(console, log_buffer.get_lines())
        finally:
            await job_client.aclose()
            if query_id:
                remove_request_file_handler(query_id)

    asyncio.run(_run())


@app.command()
def jobs(limit: int = LIMIT_OPTION) -> None:
    """List recent searches."""

    setup_logging(settings.log_level)

    async def _run() -> None:
        await init_db(settings.database_path)
        records = await list_jobs(settings.database_path, limit=limit)
        if not records:
            console.print("No saved searches.")
            return
        console.print(format_jobs(records))

    asyncio.run(_run())


@app.command()
def show(job_id: str = JOB_ID_ARGUMENT) -> None:
    """Print a saved search's report."""

    setup_logging(settings.log_level)

    async def _run() -> None:
        await init_db(settings.database_path)
        job = await fetch_job(settings.database_path, job_id)
        if job is None:
            console.print(f"Job not found: {job_id}")
            raise typer.Exit(code=1)
        state = load_job_state(job)
        if state is None:
            console.print(f"{job.query} [{job.status}] {job.completed}/{job.total} sites")
            return
        show_report(console, state)

    asyncio.run(_run())


@app.command()
def resume(job_id: str = JOB_ID_ARGUMENT) -> None:
    """Resume an interrupted search and wait for it to finish."""

    setup_logging(settings.log_level)

    async def _run() -> None:
        await init_db(settings.database_path)
        job = await fetch_job(settings.database_path, job_id)
        state = load_job_state(job) if job else None
        if state is None:
            console.print(f"Job not found: {job_id}")
            raise typer.Exit(code=1)
        if state.status not in ("running", "completing"):
            console.print(f"Job {job_id} is {state.status}; nothing to resume.")
            show_report(console, state)
            return

        options = OrchestratorOptions.from_settings(
            settings,
            max_concurrent=state.max_concurrent,
            stagger_delay_ms=state.stagger_delay_ms,
        )
        ui = build_progress_ui(console, total_lanes=len(state.lanes))
        job_client = HttpJobClient.from_settings(settings)
        configure_interactive_logging()
        add_request_file_handler(
            settings.database_path.parent / "logs", state.query_id, settings.log_level
        )
        try:
            async with Orchestrator(
                job_client,
                build_query_interpreter(settings),
                options,
                reporter=build_progress_reporter(ui),
            ) as orchestrator:
                ui.start()
                try:
                    await orchestrator.restore(state)
                    state = await _run_to_completion(orchestrator)
                finally:
                    ui.stop()
        finally:
            await job_client.aclose()
            remove_request_file_handler(state.query_id)

        await _checkpoint(state)
        show_report(console, state)

    asyncio.run(_run())


@app.command()
def remove(job_id: str = JOB_ID_ARGUMENT) -> None:
    """Delete a saved search."""

    setup_logging(settings.log_level)

    async def _run() -> None:
        await init_db(settings.database_path)
        if not await remove_job(settings.database_path, job_id):
            console.print(f"Job not found: {job_id}")
            raise typer.Exit(code=1)
        console.print(f"Removed {job_id}")

    asyncio.run(_run())


def main() -> None:
    """CLI entrypoint."""

    app()


if __name__ == "__main__":
    main()
