from datetime import UTC, datetime

import pytest
from rich.console import Console

from orchestra import cli_ui
from orchestra.cli_ui import (
    build_progress_reporter,
    build_progress_ui,
    format_jobs,
    format_synthesis,
    parse_input_pairs,
    prompt_required_inputs,
)
from orchestra.models.jobs import PersistedJob
from orchestra.models.orchestrator import (
    InputOption,
    NextAction,
    OrchestratorState,
    RequiredInput,
    SessionLane,
    Synthesis,
    TargetSite,
)

NOW = datetime(2026, 1, 1, tzinfo=UTC)


def test_parse_input_pairs() -> None:
    assert parse_input_pairs(["zip_code=94107", " age = 34 ", "notes="]) == {
        "zip_code": "94107",
        "age": "34",
        "notes": "",
    }
    with pytest.raises(ValueError):
        parse_input_pairs(["missing-separator"])
    with pytest.raises(ValueError):
        parse_input_pairs(["=value"])


def test_format_synthesis_includes_sections() -> None:
    state = OrchestratorState(
        query_id="q1",
        status="complete",
        synthesis=Synthesis(
            headline="Best price: $239.00 at Best Buy",
            summary="Found 5 prices.",
            insights=["This is 3% below average"],
            caveats=["1 site(s) could not be reached"],
            methodology="Checked 4 sites in 12.0 seconds",
        ),
        next_actions=[
            NextAction(
                type="purchase", label="Buy from Best Buy", primary=True, url="https://bestbuy.com"
            ),
            NextAction(type="new_search", label="New search"),
        ],
    )

    text = format_synthesis(state)

    assert "Found 5 prices." in text
    assert "- This is 3% below average" in text
    assert "! 1 site(s) could not be reached" in text
    assert "Checked 4 sites in 12.0 seconds" in text
    assert " * Buy from Best Buy (https://bestbuy.com)" in text
    assert "   New search" in text


def test_format_synthesis_without_results_shows_error() -> None:
    state = OrchestratorState(query_id="q1", status="error", error="Query is empty")

    assert format_synthesis(state) == "Query is empty"


def test_progress_reporter_tracks_lanes() -> None:
    console = Console(width=100, record=True)
    ui = build_progress_ui(console, total_lanes=1)
    reporter = build_progress_reporter(ui)
    site = TargetSite(id="amazon", name="Amazon", domain="amazon.com")

    lane = SessionLane(id="lane-amazon-r1", site=site, status="extracting", progress=60)
    reporter.on_lane_update(lane)
    task = ui.progress.tasks[ui.lane_tasks[lane.id]]
    assert task.completed == 60

    done = lane.model_copy(update={"status": "complete", "progress": 100})
    reporter.on_lane_update(done)
    reporter.on_lane_update(done)
    assert ui.progress.tasks[ui.lanes_task].completed == 1


def test_format_jobs_lists_rows() -> None:
    jobs = [
        PersistedJob(
            id="abc",
            query="AirPods",
            status="complete",
            created_at=NOW,
            total=5,
            completed=4,
            failed=1,
        )
    ]

    console = Console(width=140, record=True)
    console.print(format_jobs(jobs))
    output = console.export_text()

    assert "abc" in output
    assert "4/5 (1 failed)" in output


def test_prompt_required_inputs_skips_answered(monkeypatch) -> None:
    questions = [
        RequiredInput(key="zip_code", label="ZIP code"),
        RequiredInput(
            key="condition",
            label="Condition",
            type="select",
            options=[InputOption(value="new", label="New")],
        ),
        RequiredInput(key="notes", label="Notes", required=False),
    ]
    asked: list[str] = []
    replies = iter(["new", ""])

    def fake_ask(label, **kwargs):
        asked.append(label)
        return next(replies)

    monkeypatch.setattr(cli_ui.Prompt, "ask", fake_ask)

    answers = prompt_required_inputs(Console(), questions, {"zip_code": "94107"})

    assert asked == ["Condition", "Notes"]
    assert answers == {"zip_code": "94107", "condition": "new"}
