"""Follow-up actions offered once a request completes."""

from orchestra.models.orchestrator import NextAction, OrchestratorState


def recommend_next_actions(state: OrchestratorState) -> list[NextAction]:
    """Derive next-step affordances from final request state.

    Args:
        state: Request state after aggregation.

    Returns:
        Ordered list of NextAction, always ending with a new search.
    """

    actions: list[NextAction] = []
    best = state.aggregated_results.best if state.aggregated_results else None
    is_price_comparison = state.intent == "price_comparison"

    if best is not None and best.url:
        verb = "Buy from" if is_price_comparison else "View on"
        actions.append(
            NextAction(type="purchase", label=f"{verb} {best.site}", primary=True, url=best.url)
        )

    actions.append(NextAction(type="save", label="Save results"))

    if is_price_comparison:
        actions.append(NextAction(type="alert", label="Alert if price drops"))

    failed = sum(1 for lane in state.lanes if lane.status == "error")
    if failed > 0:
        actions.append(NextAction(type="retry", label=f"Retry {failed} failed"))

    actions.append(NextAction(type="new_search", label="New search"))
    return actions
