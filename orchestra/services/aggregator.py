"""Collapse terminal lanes into ranked results."""

from collections.abc import Callable, Sequence
from datetime import datetime

from orchestra.models.orchestrator import (
    AggregatedResults,
    ExtractedResult,
    OrchestratorState,
    QueryIntent,
)


def _cheapest_in_stock(results: Sequence[ExtractedResult]) -> ExtractedResult | None:
    candidates = [r for r in results if r.price is not None and r.in_stock is not False]
    if not candidates:
        return None
    return min(candidates, key=lambda r: r.price)


def _cheapest_quote(results: Sequence[ExtractedResult]) -> ExtractedResult | None:
    candidates = [r for r in results if r.annual_cost is not None]
    if not candidates:
        return None
    return min(candidates, key=lambda r: r.annual_cost)


RANKERS: dict[str, Callable[[Sequence[ExtractedResult]], ExtractedResult | None]] = {
    "price_comparison": _cheapest_in_stock,
    "availability_check": _cheapest_in_stock,
    "quote_request": _cheapest_quote,
}


def select_best(results: Sequence[ExtractedResult], intent: QueryIntent) -> ExtractedResult | None:
    """Pick the top result for an intent.

    ``min`` keeps the first of equal keys, so ties go to the earliest lane.

    Args:
        results: Results in lane-creation order.
        intent: Query intent.

    Returns:
        Best result, or None when the intent has no ranking or nothing qualifies.
    """

    ranker = RANKERS.get(intent)
    if ranker is None:
        return None
    return ranker(results)


def aggregate_results(state: OrchestratorState, now: datetime) -> AggregatedResults:
    """Aggregate the request's lanes.

    Args:
        state: Request state whose lanes are terminal.
        now: Aggregation time.

    Returns:
        AggregatedResults.
    """

    results = [
        lane.result for lane in state.lanes if lane.status == "complete" and lane.result is not None
    ]
    start_time = state.start_time or now
    duration_ms = max(0, int((now - start_time).total_seconds() * 1000))
    parsed = state.parsed_query

    return AggregatedResults(
        query_id=state.query_id,
        subject=parsed.subject if parsed else state.original_query,
        intent=state.intent,
        results=results,
        best=select_best(results, state.intent),
        total_sites=len(state.lanes),
        completed_sites=sum(1 for lane in state.lanes if lane.status == "complete"),
        failed_sites=sum(1 for lane in state.lanes if lane.status == "error"),
        start_time=start_time,
        end_time=now,
        total_duration_ms=duration_ms,
    )


def current_best(state: OrchestratorState) -> ExtractedResult | None:
    """Cheapest priced result among lanes completed so far."""

    priced = [
        lane.result
        for lane in state.lanes
        if lane.status == "complete" and lane.result is not None and lane.result.price is not None
    ]
    if not priced:
        return None
    return min(priced, key=lambda r: r.price)
