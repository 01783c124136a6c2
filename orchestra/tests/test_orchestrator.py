import asyncio
from collections import defaultdict
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from orchestra.models.jobs import JobStatus, JobSubmission
from orchestra.models.orchestrator import (
    ExtractedResult,
    OrchestratorOptions,
    OrchestratorState,
    ParsedQuery,
    TargetSite,
)
from orchestra.services.job_client import SubmissionError, TransientPollError
from orchestra.services.query_interpreter import InterpretationError, KeywordQueryInterpreter
from orchestra.services.reporter import OrchestratorReporter
from orchestra.workflows.orchestrator import Orchestrator, build_task_description
from orchestra.workflows.state_machine import (
    ExecutionStarted,
    LaneAdmitted,
    LaneCompleted,
    LaneSubmitted,
    ParseSucceeded,
    QuerySubmitted,
    initial_state,
    transition,
)

T0 = datetime(2026, 1, 1, tzinfo=UTC)


class FakeClock:
    """Simulated time; ``sleep`` advances the clock and yields once."""

    def __init__(self) -> None:
        self.now = T0

    def __call__(self) -> datetime:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)
        await asyncio.sleep(0)


class FakeJobClient:
    """Scripted job backend keyed by the domain at the end of the task description."""

    def __init__(self, clock: FakeClock, scripts: dict[str, list[Any]] | None = None) -> None:
        self.clock = clock
        self.scripts = scripts or {}
        self.submit_errors: dict[str, Exception] = {}
        self.submissions: list[str] = []
        self.descriptions: list[str] = []
        self.polls: dict[str, int] = defaultdict(int)

    async def submit(self, task_description: str) -> JobSubmission:
        domain = task_description.rsplit(" on ", 1)[1]
        self.descriptions.append(task_description)
        self.submissions.append(domain)
        await asyncio.sleep(0)
        if domain in self.submit_errors:
            raise self.submit_errors[domain]
        return JobSubmission(job_handle=f"job-{domain}", live_view_ref=f"https://live/{domain}")

    async def poll_status(self, job_handle: str) -> JobStatus:
        domain = job_handle.removeprefix("job-")
        self.polls[domain] += 1
        script = self.scripts.setdefault(domain, [_done("$10.00")])
        step = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(step, Exception):
            raise step
        return step


class StaticInterpreter:
    def __init__(self, parsed: ParsedQuery | None = None, error: Exception | None = None):
        self.parsed = parsed
        self.error = error
        self.release = asyncio.Event()
        self.release.set()

    async def interpret(self, text: str) -> ParsedQuery:
        await self.release.wait()
        if self.error:
            raise self.error
        return self.parsed


def _done(output: Any) -> JobStatus:
    return JobStatus(status="completed", output=output)


def _running(events: int = 1) -> JobStatus:
    return JobStatus(status="running", events_observed=events, live_view_ref="https://live")


def _sites(count: int) -> list[TargetSite]:
    return [
        TargetSite(id=f"s{i}", name=f"Site {i}", domain=f"s{i}.com", selected=True)
        for i in range(count)
    ]


def _parsed(sites: list[TargetSite]) -> ParsedQuery:
    return ParsedQuery(
        original_query="price for widget",
        intent="price_comparison",
        subject="widget",
        goal="find best price",
        suggested_sites=sites,
    )


def _orchestrator(client, interpreter, clock, reporter=None, **options) -> Orchestrator:
    return Orchestrator(
        client,
        interpreter,
        OrchestratorOptions(**options),
        reporter=reporter,
        clock=clock,
        sleep=clock.sleep,
    )


@pytest.mark.asyncio
async def test_price_comparison_picks_first_of_tied_cheapest() -> None:
    clock = FakeClock()
    prices = {
        "amazon.com": "$249.00 in stock",
        "bestbuy.com": "$239.00 in stock, free shipping",
        "walmart.com": "$255.00 in stock",
        "target.com": "$239.00 in stock",
        "apple.com": "$260.00 in stock",
    }
    client = FakeJobClient(
        clock, {domain: [_running(2), _done(text)] for domain, text in prices.items()}
    )
    statuses: list[str] = []
    reporter = OrchestratorReporter(on_status_change=statuses.append)

    async with _orchestrator(client, KeywordQueryInterpreter(), clock, reporter) as orchestrator:
        state = await orchestrator.submit_query("Best price for AirPods Pro")
        assert state.status == "configuring"
        assert len(state.selected_sites) == 6

        state = await orchestrator.toggle_site("costco")
        assert len(state.selected_sites) == 5

        await orchestrator.execute()
        state = await orchestrator.wait_until_finished(timeout=5)

    assert state.status == "complete"
    assert [lane.status for lane in state.lanes] == ["complete"] * 5
    assert state.aggregated_results.best.site == "Best Buy"
    assert state.synthesis.headline == "Best price: $239.00 at Best Buy"
    assert state.next_actions[0].label == "Buy from Best Buy"
    assert "costco.com" not in client.submissions
    assert client.descriptions[0] == "Find best price for AirPods Pro on amazon.com"
    assert statuses == ["parsing", "configuring", "running", "completing", "complete"]


@pytest.mark.asyncio
async def test_admission_is_capped_staggered_and_refilled() -> None:
    clock = FakeClock()
    client = FakeJobClient(
        clock, {f"s{i}.com": [_running()] * 10 + [_done("$5")] for i in range(5)}
    )
    max_active = 0
    orchestrator: Orchestrator | None = None

    def on_lane_update(_lane) -> None:
        nonlocal max_active
        active = sum(1 for lane in orchestrator.state.lanes if lane.is_active)
        max_active = max(max_active, active)

    reporter = OrchestratorReporter(on_lane_update=on_lane_update)
    interpreter = StaticInterpreter(_parsed(_sites(5)))
    orchestrator = _orchestrator(
        client, interpreter, clock, reporter, max_concurrent=2, stagger_delay_ms=300
    )
    async with orchestrator:
        await orchestrator.submit_query("price for widget")
        await orchestrator.execute()
        state = await orchestrator.wait_until_finished(timeout=5)

    assert state.status == "complete"
    assert [lane.status for lane in state.lanes] == ["complete"] * 5
    assert max_active == 2
    assert sorted(client.submissions) == [f"s{i}.com" for i in range(5)]

    starts = sorted(lane.start_time for lane in state.lanes)
    gaps = [later - earlier for earlier, later in zip(starts, starts[1:])]
    assert all(gap >= timedelta(milliseconds=300) for gap in gaps)


@pytest.mark.asyncio
async def test_submission_failure_is_isolated_to_its_lane() -> None:
    clock = FakeClock()
    client = FakeJobClient(clock)
    client.submit_errors["s1.com"] = SubmissionError("HTTP 500")
    client.submit_errors["s2.com"] = ValueError("socket exploded")

    async with _orchestrator(client, StaticInterpreter(_parsed(_sites(4))), clock) as orchestrator:
        await orchestrator.submit_query("price for widget")
        await orchestrator.execute()
        state = await orchestrator.wait_until_finished(timeout=5)

    assert state.status == "complete"
    assert [lane.status for lane in state.lanes] == ["complete", "error", "error", "complete"]
    assert state.lanes[1].error == "HTTP 500"
    assert state.lanes[2].error == "Failed to start session"
    assert state.aggregated_results.failed_sites == 2
    assert state.synthesis.caveats == ["2 site(s) could not be reached"]
    assert any(action.label == "Retry 2 failed" for action in state.next_actions)


@pytest.mark.asyncio
async def test_transient_poll_errors_keep_polling() -> None:
    clock = FakeClock()
    client = FakeJobClient(
        clock,
        {
            "s0.com": [
                TransientPollError("timeout"),
                TransientPollError("timeout"),
                _done("$12.00"),
            ]
        },
    )

    async with _orchestrator(client, StaticInterpreter(_parsed(_sites(1))), clock) as orchestrator:
        await orchestrator.submit_query("price for widget")
        await orchestrator.execute()
        state = await orchestrator.wait_until_finished(timeout=5)

    assert state.lanes[0].status == "complete"
    assert state.lanes[0].result.price == 12.0
    assert client.polls["s0.com"] == 3


@pytest.mark.asyncio
async def test_unexpected_poll_error_keeps_polling() -> None:
    clock = FakeClock()
    client = FakeJobClient(clock, {"s0.com": [RuntimeError("decode"), _done("$5.00")]})

    async with _orchestrator(client, StaticInterpreter(_parsed(_sites(1))), clock) as orchestrator:
        await orchestrator.submit_query("price for widget")
        await orchestrator.execute()
        state = await orchestrator.wait_until_finished(timeout=5)

    assert state.status == "complete"
    assert state.lanes[0].status == "complete"
    assert state.lanes[0].result.price == 5.0
    assert client.polls["s0.com"] == 2


@pytest.mark.asyncio
async def test_remote_error_fails_the_lane() -> None:
    clock = FakeClock()
    client = FakeJobClient(
        clock,
        {"s0.com": [_running(), JobStatus(status="failed", error_message="Captcha wall")]},
    )

    async with _orchestrator(client, StaticInterpreter(_parsed(_sites(2))), clock) as orchestrator:
        await orchestrator.submit_query("price for widget")
        await orchestrator.execute()
        state = await orchestrator.wait_until_finished(timeout=5)

    assert state.status == "complete"
    assert state.lanes[0].status == "error"
    assert state.lanes[0].error == "Captcha wall"
    assert state.lanes[1].status == "complete"
    assert state.aggregated_results.best.site == "Site 1"


@pytest.mark.asyncio
async def test_reset_stops_all_polling() -> None:
    clock = FakeClock()
    client = FakeJobClient(clock, {f"s{i}.com": [_running()] for i in range(2)})

    async with _orchestrator(client, StaticInterpreter(_parsed(_sites(2))), clock) as orchestrator:
        await orchestrator.submit_query("price for widget")
        await orchestrator.execute()
        await orchestrator.wait_for(
            lambda state: all(lane.status == "extracting" for lane in state.lanes), timeout=5
        )

        state = await orchestrator.reset()
        polls = sum(client.polls.values())
        for _ in range(50):
            await asyncio.sleep(0)

        assert state.status == "idle"
        assert state.lanes == []
        assert orchestrator.state.status == "idle"
        assert sum(client.polls.values()) == polls


@pytest.mark.asyncio
async def test_parse_result_after_reset_is_dropped() -> None:
    clock = FakeClock()
    interpreter = StaticInterpreter(_parsed(_sites(1)))
    interpreter.release.clear()

    async with _orchestrator(FakeJobClient(clock), interpreter, clock) as orchestrator:
        pending = asyncio.create_task(orchestrator.submit_query("price for widget"))
        await orchestrator.wait_for(lambda state: state.status == "parsing", timeout=5)

        await orchestrator.reset()
        interpreter.release.set()
        state = await pending

        assert state.status == "idle"
        assert state.parsed_query is None


@pytest.mark.asyncio
async def test_interpretation_error_moves_request_to_error() -> None:
    clock = FakeClock()
    interpreter = StaticInterpreter(error=InterpretationError("Failed to understand query"))

    async with _orchestrator(FakeJobClient(clock), interpreter, clock) as orchestrator:
        assert (await orchestrator.submit_query("   ")).status == "idle"

        state = await orchestrator.submit_query("gibberish")

    assert state.status == "error"
    assert state.error == "Failed to understand query"


@pytest.mark.asyncio
async def test_interpreter_crash_moves_request_to_error() -> None:
    clock = FakeClock()
    interpreter = StaticInterpreter(error=ValueError("boom"))

    async with _orchestrator(FakeJobClient(clock), interpreter, clock) as orchestrator:
        state = await orchestrator.submit_query("gibberish")

    assert state.status == "error"
    assert state.error == "Failed to understand query"
    assert state.lanes == []


@pytest.mark.asyncio
async def test_restore_resumes_polling_and_admission() -> None:
    sites = _sites(3)
    snapshot = initial_state("q-restored", max_concurrent=2, stagger_delay_ms=300)
    snapshot = transition(snapshot, QuerySubmitted(query="price for widget"))
    snapshot = transition(snapshot, ParseSucceeded(parsed=_parsed(sites)))
    snapshot = transition(snapshot, ExecutionStarted(run_token="r1", at=T0))
    first, second, _ = snapshot.lanes
    snapshot = transition(snapshot, LaneAdmitted(lane_id=first.id, at=T0))
    snapshot = transition(snapshot, LaneSubmitted(lane_id=first.id, job_handle="job-s0.com"))
    snapshot = transition(snapshot, LaneAdmitted(lane_id=second.id, at=T0))
    persisted = OrchestratorState.model_validate_json(snapshot.model_dump_json())

    clock = FakeClock()
    client = FakeJobClient(clock, {"s0.com": [_done("$20")], "s2.com": [_done("$15")]})

    async with _orchestrator(client, StaticInterpreter(), clock) as orchestrator:
        await orchestrator.restore(persisted)
        state = await orchestrator.wait_until_finished(timeout=5)

    assert state.status == "complete"
    assert state.query_id == "q-restored"
    assert [lane.status for lane in state.lanes] == ["complete", "error", "complete"]
    assert state.lanes[1].error == "Lane was interrupted before its job was created"
    assert client.submissions == ["s2.com"]
    assert client.polls["s0.com"] == 1
    assert state.aggregated_results.best.site == "Site 2"


@pytest.mark.asyncio
async def test_restore_completing_snapshot_finishes_settling() -> None:
    snapshot = initial_state("q-settle")
    snapshot = transition(snapshot, QuerySubmitted(query="price for widget"))
    snapshot = transition(snapshot, ParseSucceeded(parsed=_parsed(_sites(1))))
    snapshot = transition(snapshot, ExecutionStarted(run_token="r1", at=T0))
    lane = snapshot.lanes[0]
    snapshot = transition(snapshot, LaneAdmitted(lane_id=lane.id, at=T0))
    result = ExtractedResult(site="Site 0", site_domain="s0.com", price=3.0, extracted_at=T0)
    snapshot = transition(snapshot, LaneCompleted(lane_id=lane.id, result=result, at=T0))
    assert snapshot.status == "completing"

    clock = FakeClock()
    async with _orchestrator(FakeJobClient(clock), StaticInterpreter(), clock) as orchestrator:
        idle = await orchestrator.restore(snapshot, resume=False)
        assert idle.status == "completing"

        await orchestrator.restore(snapshot)
        state = await orchestrator.wait_until_finished(timeout=5)

    assert state.status == "complete"
    assert state.next_actions[-1].type == "new_search"


def test_task_description_includes_answered_inputs() -> None:
    site = TargetSite(id="geico", name="Geico", domain="geico.com")
    state = initial_state("q1").model_copy(
        update={
            "original_query": "car insurance",
            "parsed_query": ParsedQuery(
                original_query="car insurance",
                intent="quote_request",
                subject="auto insurance",
                goal="compare quotes",
            ),
            "user_inputs": {"zip_code": "94107", "notes": " "},
        }
    )

    assert build_task_description(state, site) == (
        "Find compare quotes for auto insurance on geico.com. Details: zip_code: 94107"
    )

    bare = initial_state("q2").model_copy(update={"original_query": "what is open now"})
    assert build_task_description(bare, site) == (
        "Find information for what is open now on geico.com"
    )
