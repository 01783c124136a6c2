"""Multi-site search orchestration.

One ``Orchestrator`` drives one request at a time. Lane tasks, the admission
loop and callers never touch request state directly: they post events to a
queue that a single consumer task applies through ``transition``. Every task
belongs to a generation; ``reset`` and ``restore`` cancel the current
generation's tasks and bump the counter so late events from a superseded
request are dropped.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime

from orchestra.models.orchestrator import (
    OrchestratorOptions,
    OrchestratorState,
    SessionLane,
    TargetSite,
)
from orchestra.services.job_client import (
    JobClient,
    RemoteJobError,
    SubmissionError,
    TransientPollError,
    raise_for_job_error,
)
from orchestra.services.query_interpreter import InterpretationError, QueryInterpreter
from orchestra.services.reporter import OrchestratorReporter
from orchestra.services.result_extraction import extract_result
from orchestra.workflows.state_machine import (
    ExecutionStarted,
    InvalidTransitionError,
    LaneAdmitted,
    LaneCompleted,
    LaneFailed,
    LaneProgressed,
    LaneSubmitted,
    ParseFailed,
    ParseSucceeded,
    QuerySubmitted,
    RequestFinalized,
    RequestReset,
    SitesUpdated,
    SiteToggled,
    StateRestored,
    UserInputSet,
    initial_state,
    transition,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
Sleep = Callable[[float], Awaitable[None]]

FINISHED_STATUSES = frozenset({"complete", "error"})


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _new_id() -> str:
    return uuid.uuid4().hex[:12]


@dataclass
class _Envelope:
    generation: int
    event: object
    future: asyncio.Future | None = None


def build_task_description(state: OrchestratorState, site: TargetSite) -> str:
    """Describe a lane's job for the remote backend.

    Args:
        state: Request state at admission time.
        site: Site the lane searches.

    Returns:
        Natural-language task description.
    """

    parsed = state.parsed_query
    goal = parsed.goal.strip() if parsed and parsed.goal else ""
    if goal.lower().startswith("find "):
        goal = goal[5:].strip()
    subject = parsed.subject if parsed and parsed.subject else state.original_query
    description = f"Find {goal or 'information'} for {subject} on {site.domain}"
    details = "; ".join(
        f"{key}: {value}" for key, value in state.user_inputs.items() if value.strip()
    )
    if details:
        description = f"{description}. Details: {details}"
    return description


class Orchestrator:
    """Fan one query out to per-site lanes and collect a ranked answer."""

    def __init__(
        self,
        job_client: JobClient,
        interpreter: QueryInterpreter,
        options: OrchestratorOptions | None = None,
        reporter: OrchestratorReporter | None = None,
        clock: Clock | None = None,
        sleep: Sleep | None = None,
    ) -> None:
        self._job_client = job_client
        self._interpreter = interpreter
        self._options = options or OrchestratorOptions()
        self._reporter = reporter
        self._clock = clock or _utcnow
        self._sleep = sleep or asyncio.sleep

        self._state = initial_state(
            _new_id(), self._options.max_concurrent, self._options.stagger_delay_ms
        )
        self._generation = 0
        self._events: asyncio.Queue[_Envelope] = asyncio.Queue()
        self._consumer: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()
        self._changed = asyncio.Event()
        self._slot_freed = asyncio.Event()

    async def __aenter__(self) -> Orchestrator:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    @property
    def state(self) -> OrchestratorState:
        return self._state

    @property
    def options(self) -> OrchestratorOptions:
        return self._options

    def snapshot(self) -> OrchestratorState:
        """Return the current state tree for persistence."""

        return self._state.model_copy(deep=True)

    # Commands

    async def submit_query(self, text: str) -> OrchestratorState:
        """Parse a query and move the request to configuring (or error).

        Args:
            text: Raw user text. Blank text is ignored.

        Returns:
            Request state after interpretation.
        """

        if not text or not text.strip():
            logger.info("Ignoring blank query")
            return self._state

        await self._apply(QuerySubmitted(query=text))
        generation = self._generation
        query_id = self._state.query_id
        logger.info("Interpreting query", extra={"query_id": query_id})
        try:
            parsed = await self._interpreter.interpret(text)
        except InterpretationError as exc:
            logger.warning("Query interpretation failed: %s", exc, extra={"query_id": query_id})
            return await self._apply(ParseFailed(error=str(exc)), generation=generation)
        except Exception:
            logger.exception("Query interpreter crashed", extra={"query_id": query_id})
            return await self._apply(
                ParseFailed(error="Failed to understand query"), generation=generation
            )

        logger.info(
            "Query parsed as %s with %d candidate sites",
            parsed.intent,
            len(parsed.suggested_sites),
            extra={"query_id": query_id},
        )
        return await self._apply(ParseSucceeded(parsed=parsed), generation=generation)

    async def update_sites(self, sites: list[TargetSite]) -> OrchestratorState:
        """Replace the candidate site list; ignored outside configuring."""

        return await self._apply(SitesUpdated(sites=list(sites)))

    async def toggle_site(self, site_id: str) -> OrchestratorState:
        """Flip one candidate site's selection; ignored outside configuring."""

        return await self._apply(SiteToggled(site_id=site_id))

    async def set_user_input(self, key: str, value: str) -> OrchestratorState:
        """Answer a clarifying question; ignored outside configuring."""

        return await self._apply(UserInputSet(key=key, value=value))

    async def execute(self) -> OrchestratorState:
        """Create lanes for the selected sites and start admitting them.

        Returns:
            Request state right after the running transition.
        """

        state = await self._apply(ExecutionStarted(run_token=_new_id(), at=self._clock()))
        logger.info(
            "Starting execution with %d sites",
            len(state.lanes),
            extra={"query_id": state.query_id, "max_concurrent": state.max_concurrent},
        )
        self._spawn(self._admit_lanes(self._generation), name="admission")
        return state

    async def reset(self) -> OrchestratorState:
        """Stop all work for the current request and return to idle."""

        await self._cancel_work()
        return await self._apply(RequestReset(query_id=_new_id()))

    async def restore(self, state: OrchestratorState, resume: bool = True) -> OrchestratorState:
        """Install a snapshot, optionally resuming its in-flight work.

        Lanes that hold a job handle resume polling, queued lanes go back
        through admission, and lanes admitted without a job handle are failed
        since their submission outcome is unknown.

        Args:
            state: Snapshot previously returned by ``snapshot``.
            resume: Whether to restart polling and timers.

        Returns:
            Request state after restoring.
        """

        await self._cancel_work()
        restored = await self._apply(StateRestored(state=state))
        if not resume:
            return restored

        generation = self._generation
        if restored.status == "running":
            now = self._clock()
            for lane in restored.lanes:
                if lane.is_terminal or lane.status == "queued":
                    continue
                if lane.job_handle:
                    self._spawn(
                        self._poll_lane(generation, lane, self._options.initial_poll_delay_ms),
                        name=f"poll-{lane.id}",
                    )
                else:
                    self._post(
                        LaneFailed(
                            lane_id=lane.id,
                            error="Lane was interrupted before its job was created",
                            at=now,
                        ),
                        generation,
                    )
            self._spawn(self._admit_lanes(generation), name="admission")
        elif restored.status == "completing":
            self._spawn(self._settle(generation), name="settle")
        return restored

    async def wait_for(
        self,
        predicate: Callable[[OrchestratorState], bool],
        timeout: float | None = None,
    ) -> OrchestratorState:
        """Wait until the request state satisfies ``predicate``."""

        async def _wait() -> OrchestratorState:
            while not predicate(self._state):
                await self._changed.wait()
            return self._state

        return await asyncio.wait_for(_wait(), timeout)

    async def wait_until_finished(self, timeout: float | None = None) -> OrchestratorState:
        """Wait until the request is complete or errored."""

        return await self.wait_for(lambda state: state.status in FINISHED_STATUSES, timeout)

    async def aclose(self) -> None:
        """Cancel all work, including the event consumer."""

        await self._cancel_work()
        if self._consumer is not None:
            self._consumer.cancel()
            await asyncio.gather(self._consumer, return_exceptions=True)
            self._consumer = None

    # Event plumbing

    def _ensure_consumer(self) -> None:
        if self._consumer is None or self._consumer.done():
            self._consumer = asyncio.create_task(self._consume(), name="orchestrator-events")

    async def _apply(self, event: object, generation: int | None = None) -> OrchestratorState:
        """Queue an event and wait until the consumer has applied it."""

        self._ensure_consumer()
        future = asyncio.get_running_loop().create_future()
        envelope_generation = self._generation if generation is None else generation
        self._events.put_nowait(_Envelope(envelope_generation, event, future))
        return await future

    def _post(self, event: object, generation: int) -> None:
        """Queue an event without waiting for it."""

        self._ensure_consumer()
        self._events.put_nowait(_Envelope(generation, event))

    async def _consume(self) -> None:
        while True:
            envelope = await self._events.get()
            try:
                self._handle(envelope)
            except Exception as exc:
                logger.exception("Failed to apply %s", type(envelope.event).__name__)
                if envelope.future is not None and not envelope.future.done():
                    envelope.future.set_exception(exc)
            finally:
                self._events.task_done()

    def _handle(self, envelope: _Envelope) -> None:
        future = envelope.future
        if envelope.generation != self._generation:
            logger.debug("Dropping stale %s", type(envelope.event).__name__)
            if future is not None and not future.done():
                future.set_result(self._state)
            return

        previous = self._state
        try:
            self._state = transition(previous, envelope.event)
        except InvalidTransitionError as exc:
            if future is not None and not future.done():
                future.set_exception(exc)
            else:
                logger.warning("Rejected %s: %s", type(envelope.event).__name__, exc)
            return

        if future is not None and not future.done():
            future.set_result(self._state)
        self._after_transition(previous, self._state)

    def _after_transition(self, previous: OrchestratorState, current: OrchestratorState) -> None:
        if current is previous:
            return

        changed = self._changed
        self._changed = asyncio.Event()
        changed.set()

        previous_lanes = {lane.id: lane for lane in previous.lanes}
        for lane in current.lanes:
            before = previous_lanes.get(lane.id)
            if before is lane:
                continue
            if before is not None and not before.is_terminal and lane.is_terminal:
                self._slot_freed.set()
            if self._reporter and self._reporter.on_lane_update:
                self._reporter.on_lane_update(lane)

        if current.status != previous.status:
            logger.info(
                "Request %s -> %s",
                previous.status,
                current.status,
                extra={"query_id": current.query_id},
            )
            if self._reporter and self._reporter.on_status_change:
                self._reporter.on_status_change(current.status)
            if current.status == "completing" and previous.status == "running":
                self._spawn(self._settle(self._generation), name="settle")

    def _spawn(self, coro: Awaitable[None], name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _cancel_work(self) -> None:
        self._generation += 1
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._slot_freed = asyncio.Event()

    # Admission, lanes and settling

    def _active_lane_count(self) -> int:
        return sum(1 for lane in self._state.lanes if lane.is_active)

    async def _admit_lanes(self, generation: int) -> None:
        """Admit queued lanes in order, capped and staggered.

        Queued lanes are promoted whenever a slot frees up, so every lane runs.
        """

        max_concurrent = self._state.max_concurrent
        stagger_seconds = self._state.stagger_delay_ms / 1000
        last_admission: datetime | None = None
        pending = [lane.id for lane in self._state.lanes if lane.status == "queued"]

        for lane_id in pending:
            while self._active_lane_count() >= max_concurrent:
                self._slot_freed.clear()
                await self._slot_freed.wait()

            if last_admission is not None and stagger_seconds > 0:
                elapsed = (self._clock() - last_admission).total_seconds()
                if elapsed < stagger_seconds:
                    await self._sleep(stagger_seconds - elapsed)

            admitted_at = self._clock()
            state = await self._apply(LaneAdmitted(lane_id=lane_id, at=admitted_at), generation)
            if generation != self._generation:
                return
            lane = state.lane(lane_id)
            if lane is None or lane.status != "initializing":
                continue
            last_admission = admitted_at
            logger.info(
                "Lane admitted: %s",
                lane.site.name,
                extra={"query_id": state.query_id, "lane_id": lane_id},
            )
            self._spawn(self._run_lane(generation, lane, state), name=f"lane-{lane_id}")

    async def _run_lane(
        self, generation: int, lane: SessionLane, state: OrchestratorState
    ) -> None:
        task_description = build_task_description(state, lane.site)
        logger.info("Submitting lane %s: %s", lane.id, task_description)
        try:
            submission = await self._job_client.submit(task_description)
        except SubmissionError as exc:
            logger.warning("Failed to start lane %s: %s", lane.id, exc)
            self._post(LaneFailed(lane_id=lane.id, error=str(exc), at=self._clock()), generation)
            return
        except Exception:
            # Lane failures never abort the request.
            logger.exception("Unexpected error starting lane %s", lane.id)
            self._post(
                LaneFailed(lane_id=lane.id, error="Failed to start session", at=self._clock()),
                generation,
            )
            return

        self._post(
            LaneSubmitted(
                lane_id=lane.id,
                job_handle=submission.job_handle,
                live_view_ref=submission.live_view_ref,
            ),
            generation,
        )
        lane = lane.model_copy(update={"job_handle": submission.job_handle})
        await self._poll_lane(generation, lane, self._options.initial_poll_delay_ms)

    async def _poll_lane(self, generation: int, lane: SessionLane, first_delay_ms: int) -> None:
        """Poll a lane's job until it reaches a terminal remote status."""

        delay_ms = first_delay_ms
        while generation == self._generation:
            await self._sleep(delay_ms / 1000)
            delay_ms = self._options.poll_interval_ms
            if generation != self._generation:
                return

            try:
                status = await self._job_client.poll_status(lane.job_handle)
                result = None
                if status.status == "completed":
                    result = extract_result(
                        lane.site, status.output, self._state.intent, self._clock()
                    )
            except TransientPollError as exc:
                logger.warning("Polling error for %s: %s", lane.id, exc)
                continue
            except Exception:
                # A failed poll never transitions the lane; the next tick retries.
                logger.exception("Unexpected polling error for %s", lane.id)
                continue

            if result is not None:
                self._post(
                    LaneCompleted(lane_id=lane.id, result=result, at=self._clock()), generation
                )
                logger.info("Lane completed: %s", lane.site.name, extra={"lane_id": lane.id})
                return

            try:
                raise_for_job_error(status)
            except RemoteJobError as exc:
                logger.warning("Lane %s failed remotely: %s", lane.id, exc)
                self._post(
                    LaneFailed(lane_id=lane.id, error=str(exc), at=self._clock()), generation
                )
                return

            self._post(
                LaneProgressed(
                    lane_id=lane.id,
                    events_observed=status.events_observed,
                    live_view_ref=status.live_view_ref,
                    progress_hint=status.progress_hint,
                ),
                generation,
            )

    async def _settle(self, generation: int) -> None:
        await self._sleep(self._options.settle_delay_ms / 1000)
        if generation == self._generation:
            self._post(RequestFinalized(), generation)
