"""Request state machine.

``transition`` is the only function that produces new request state. It is
pure: every input it needs, timestamps included, arrives on the event. Commands
issued in the wrong state raise ``InvalidTransitionError``; lane updates that
arrive late or would move a lane backwards are ignored.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from orchestra.constants import (
    DEFAULT_MAX_CONCURRENT,
    DEFAULT_SITE_ESTIMATE_SECONDS,
    DEFAULT_STAGGER_DELAY_MS,
    LANE_PROGRESS_CEILING,
    LANE_PROGRESS_DONE,
    LANE_PROGRESS_EVENT_STEP,
    LANE_PROGRESS_INITIALIZING,
    LANE_PROGRESS_NAVIGATING,
)
from orchestra.models.orchestrator import (
    LANE_STATUS_ORDER,
    ExtractedResult,
    LaneStatus,
    OrchestratorState,
    ParsedQuery,
    RequestProgress,
    SessionLane,
    TargetSite,
)
from orchestra.services.aggregator import aggregate_results
from orchestra.services.next_actions import recommend_next_actions
from orchestra.services.synthesizer import generate_synthesis

logger = logging.getLogger(__name__)


class InvalidTransitionError(RuntimeError):
    """Raised when a command is not allowed in the current request state."""


@dataclass(frozen=True)
class QuerySubmitted:
    query: str


@dataclass(frozen=True)
class ParseSucceeded:
    parsed: ParsedQuery


@dataclass(frozen=True)
class ParseFailed:
    error: str


@dataclass(frozen=True)
class SitesUpdated:
    sites: list[TargetSite]


@dataclass(frozen=True)
class SiteToggled:
    site_id: str


@dataclass(frozen=True)
class UserInputSet:
    key: str
    value: str


@dataclass(frozen=True)
class ExecutionStarted:
    run_token: str
    at: datetime


@dataclass(frozen=True)
class LaneAdmitted:
    lane_id: str
    at: datetime


@dataclass(frozen=True)
class LaneSubmitted:
    lane_id: str
    job_handle: str
    live_view_ref: str | None = None


@dataclass(frozen=True)
class LaneProgressed:
    lane_id: str
    events_observed: int = 0
    live_view_ref: str | None = None
    progress_hint: int | None = None


@dataclass(frozen=True)
class LaneCompleted:
    lane_id: str
    result: ExtractedResult
    at: datetime


@dataclass(frozen=True)
class LaneFailed:
    lane_id: str
    error: str
    at: datetime


@dataclass(frozen=True)
class RequestFinalized:
    pass


@dataclass(frozen=True)
class RequestReset:
    query_id: str


@dataclass(frozen=True)
class StateRestored:
    state: OrchestratorState


def initial_state(
    query_id: str,
    max_concurrent: int = DEFAULT_MAX_CONCURRENT,
    stagger_delay_ms: int = DEFAULT_STAGGER_DELAY_MS,
) -> OrchestratorState:
    """Build an idle request."""

    return OrchestratorState(
        query_id=query_id,
        max_concurrent=max_concurrent,
        stagger_delay_ms=stagger_delay_ms,
    )


def compute_progress(lanes: list[SessionLane]) -> RequestProgress:
    """Count lanes by coarse status."""

    return RequestProgress(
        total=len(lanes),
        queued=sum(1 for lane in lanes if lane.status == "queued"),
        running=sum(1 for lane in lanes if lane.is_active),
        completed=sum(1 for lane in lanes if lane.status == "complete"),
        failed=sum(1 for lane in lanes if lane.status == "error"),
    )


def lane_id_for(site: TargetSite, run_token: str) -> str:
    return f"lane-{site.id}-{run_token}"


def missing_required_inputs(state: OrchestratorState) -> list[str]:
    """Keys of required clarifying inputs that have no answer yet."""

    parsed = state.parsed_query
    if parsed is None or not parsed.required_inputs:
        return []
    return [
        question.key
        for question in parsed.required_inputs
        if question.required and not state.user_inputs.get(question.key, "").strip()
    ]


def _selected_from(sites: list[TargetSite]) -> list[TargetSite]:
    seen: set[str] = set()
    selected: list[TargetSite] = []
    for site in sites:
        if site.selected and site.id not in seen:
            seen.add(site.id)
            selected.append(site)
    return selected


def _require_status(state: OrchestratorState, allowed: str, action: str) -> None:
    if state.status != allowed:
        raise InvalidTransitionError(f"Cannot {action} while request is {state.status}")


def _on_query_submitted(state: OrchestratorState, event: QuerySubmitted) -> OrchestratorState:
    _require_status(state, "idle", "submit a query")
    if not event.query.strip():
        raise InvalidTransitionError("Query text is empty")
    return state.model_copy(update={"original_query": event.query, "status": "parsing"})


def _on_parse_succeeded(state: OrchestratorState, event: ParseSucceeded) -> OrchestratorState:
    _require_status(state, "parsing", "accept a parsed query")
    return state.model_copy(
        update={
            "parsed_query": event.parsed,
            "selected_sites": _selected_from(event.parsed.suggested_sites),
            "status": "configuring",
        }
    )


def _on_parse_failed(state: OrchestratorState, event: ParseFailed) -> OrchestratorState:
    _require_status(state, "parsing", "record a parse failure")
    return state.model_copy(update={"status": "error", "error": event.error})


def _on_sites_updated(state: OrchestratorState, event: SitesUpdated) -> OrchestratorState:
    if state.status != "configuring" or state.parsed_query is None:
        logger.debug("Ignoring site update while %s", state.status)
        return state
    parsed = state.parsed_query.model_copy(update={"suggested_sites": list(event.sites)})
    return state.model_copy(
        update={"parsed_query": parsed, "selected_sites": _selected_from(event.sites)}
    )


def _on_site_toggled(state: OrchestratorState, event: SiteToggled) -> OrchestratorState:
    if state.status != "configuring" or state.parsed_query is None:
        logger.debug("Ignoring site toggle while %s", state.status)
        return state
    sites = state.parsed_query.suggested_sites
    if not any(site.id == event.site_id for site in sites):
        logger.warning("Ignoring toggle for unknown site %s", event.site_id)
        return state
    toggled = [
        site.model_copy(update={"selected": not site.selected}) if site.id == event.site_id else site
        for site in sites
    ]
    return _on_sites_updated(state, SitesUpdated(sites=toggled))


def _on_user_input_set(state: OrchestratorState, event: UserInputSet) -> OrchestratorState:
    if state.status != "configuring":
        logger.debug("Ignoring user input while %s", state.status)
        return state
    return state.model_copy(update={"user_inputs": {**state.user_inputs, event.key: event.value}})


def _on_execution_started(state: OrchestratorState, event: ExecutionStarted) -> OrchestratorState:
    _require_status(state, "configuring", "execute")
    if not state.selected_sites:
        raise InvalidTransitionError("Select at least one site before executing")
    missing = missing_required_inputs(state)
    if missing:
        raise InvalidTransitionError(f"Missing required inputs: {', '.join(missing)}")

    lanes = [
        SessionLane(id=lane_id_for(site, event.run_token), site=site)
        for site in state.selected_sites
    ]
    estimated = max(
        site.estimated_time or DEFAULT_SITE_ESTIMATE_SECONDS for site in state.selected_sites
    )
    return state.model_copy(
        update={
            "status": "running",
            "lanes": lanes,
            "start_time": event.at,
            "estimated_total_time": estimated,
            "progress": compute_progress(lanes),
        }
    )


def _advance_lane(
    state: OrchestratorState,
    lane_id: str,
    build: Callable[[SessionLane], dict[str, Any] | None],
) -> OrchestratorState:
    """Apply a lane update if the request is running and the lane may move forward."""

    if state.status != "running":
        logger.debug("Ignoring lane update for %s while %s", lane_id, state.status)
        return state
    lane = state.lane(lane_id)
    if lane is None:
        logger.warning("Ignoring update for unknown lane %s", lane_id)
        return state
    if lane.is_terminal:
        logger.debug("Ignoring update for terminal lane %s", lane_id)
        return state

    update = build(lane)
    if not update:
        return state
    new_status: LaneStatus = update.get("status", lane.status)
    if LANE_STATUS_ORDER[new_status] < LANE_STATUS_ORDER[lane.status]:
        logger.debug("Ignoring %s -> %s for lane %s", lane.status, new_status, lane_id)
        return state

    updated = lane.model_copy(update=update)
    lanes = [updated if item.id == lane_id else item for item in state.lanes]
    return state.model_copy(update={"lanes": lanes, "progress": compute_progress(lanes)})


def _on_lane_admitted(state: OrchestratorState, event: LaneAdmitted) -> OrchestratorState:
    def build(lane: SessionLane) -> dict[str, Any] | None:
        if lane.status != "queued":
            return None
        return {
            "status": "initializing",
            "progress": LANE_PROGRESS_INITIALIZING,
            "start_time": event.at,
            "current_action": f"Starting {lane.site.name}...",
        }

    return _advance_lane(state, event.lane_id, build)


def _on_lane_submitted(state: OrchestratorState, event: LaneSubmitted) -> OrchestratorState:
    def build(lane: SessionLane) -> dict[str, Any]:
        update: dict[str, Any] = {"job_handle": event.job_handle}
        if event.live_view_ref:
            update.update(_navigating_update(lane, event.live_view_ref))
        return update

    return _advance_lane(state, event.lane_id, build)


def _navigating_update(lane: SessionLane, live_view_ref: str) -> dict[str, Any]:
    update: dict[str, Any] = {"live_view_ref": live_view_ref}
    if LANE_STATUS_ORDER[lane.status] < LANE_STATUS_ORDER["navigating"]:
        update.update(
            {
                "status": "navigating",
                "progress": max(lane.progress, LANE_PROGRESS_NAVIGATING),
                "current_action": f"Loading {lane.site.name}...",
            }
        )
    return update


def _on_lane_progressed(state: OrchestratorState, event: LaneProgressed) -> OrchestratorState:
    def build(lane: SessionLane) -> dict[str, Any]:
        update: dict[str, Any] = {}
        if event.live_view_ref and not lane.live_view_ref:
            update.update(_navigating_update(lane, event.live_view_ref))
        estimate = LANE_PROGRESS_NAVIGATING + LANE_PROGRESS_EVENT_STEP * event.events_observed
        if event.progress_hint is not None:
            estimate = max(estimate, event.progress_hint)
        update.update(
            {
                "status": "extracting",
                "progress": max(lane.progress, min(estimate, LANE_PROGRESS_CEILING)),
                "current_action": f"Analyzing {lane.site.name}...",
            }
        )
        return update

    return _advance_lane(state, event.lane_id, build)


def _on_lane_completed(state: OrchestratorState, event: LaneCompleted) -> OrchestratorState:
    advanced = _advance_lane(
        state,
        event.lane_id,
        lambda lane: {
            "status": "complete",
            "progress": LANE_PROGRESS_DONE,
            "result": event.result,
            "end_time": event.at,
            "current_action": None,
        },
    )
    return _maybe_begin_completion(advanced, event.at)


def _on_lane_failed(state: OrchestratorState, event: LaneFailed) -> OrchestratorState:
    advanced = _advance_lane(
        state,
        event.lane_id,
        lambda lane: {
            "status": "error",
            "error": event.error,
            "end_time": event.at,
            "current_action": None,
        },
    )
    return _maybe_begin_completion(advanced, event.at)


def _maybe_begin_completion(state: OrchestratorState, at: datetime) -> OrchestratorState:
    """Move running -> completing once every lane is terminal."""

    if state.status != "running" or not state.lanes:
        return state
    if not all(lane.is_terminal for lane in state.lanes):
        return state

    aggregated = aggregate_results(state, at)
    return state.model_copy(
        update={
            "status": "completing",
            "aggregated_results": aggregated,
            "synthesis": generate_synthesis(aggregated),
        }
    )


def _on_request_finalized(state: OrchestratorState, event: RequestFinalized) -> OrchestratorState:
    _require_status(state, "completing", "finalize")
    return state.model_copy(
        update={"status": "complete", "next_actions": recommend_next_actions(state)}
    )


def _on_request_reset(state: OrchestratorState, event: RequestReset) -> OrchestratorState:
    return initial_state(event.query_id, state.max_concurrent, state.stagger_delay_ms)


def _on_state_restored(state: OrchestratorState, event: StateRestored) -> OrchestratorState:
    return event.state


_HANDLERS: dict[type, Callable[[OrchestratorState, Any], OrchestratorState]] = {
    QuerySubmitted: _on_query_submitted,
    ParseSucceeded: _on_parse_succeeded,
    ParseFailed: _on_parse_failed,
    SitesUpdated: _on_sites_updated,
    SiteToggled: _on_site_toggled,
    UserInputSet: _on_user_input_set,
    ExecutionStarted: _on_execution_started,
    LaneAdmitted: _on_lane_admitted,
    LaneSubmitted: _on_lane_submitted,
    LaneProgressed: _on_lane_progressed,
    LaneCompleted: _on_lane_completed,
    LaneFailed: _on_lane_failed,
    RequestFinalized: _on_request_finalized,
    RequestReset: _on_request_reset,
    StateRestored: _on_state_restored,
}


def transition(state: OrchestratorState, event: object) -> OrchestratorState:
    """Apply one event to request state.

    Args:
        state: Current request state.
        event: One of the event dataclasses in this module.

    Returns:
        New request state; the input is never mutated.
    """

    handler = _HANDLERS.get(type(event))
    if handler is None:
        raise InvalidTransitionError(f"Unknown event: {type(event).__name__}")
    return handler(state, event)
