"""Template-driven summary of aggregated results."""

from orchestra.models.orchestrator import AggregatedResults, ExtractedResult, Synthesis


def _money(value: float) -> str:
    return f"${value:,.2f}"


def _whole_money(value: float) -> str:
    return f"${value:,.0f}"


def _price_comparison(
    aggregated: AggregatedResults, best: ExtractedResult, subject: str
) -> tuple[str, str, list[str]]:
    priced = [r for r in aggregated.results if r.price is not None]
    average = sum(r.price for r in priced) / len(priced) if priced else 0.0

    headline = f"Best price: {_money(best.price)} at {best.site}"
    shipping = f" with {best.shipping.lower()} shipping" if best.shipping else ""
    summary = (
        f"Found {len(priced)} prices for {subject}. The best deal is at {best.site} "
        f"for {_money(best.price)}{shipping}."
    )

    insights: list[str] = []
    if best.in_stock:
        insights.append(f"{best.site} shows this item as in stock")
    if average > best.price:
        below = (average - best.price) / average * 100
        insights.append(f"This is {below:.0f}% below average")
    most_expensive = max(priced, key=lambda r: r.price)
    if most_expensive.price > best.price:
        delta = most_expensive.price - best.price
        insights.append(f"{_money(delta)} less than {most_expensive.site}")
    return headline, summary, insights


def _quote_request(
    aggregated: AggregatedResults, best: ExtractedResult | None
) -> tuple[str, str, list[str]]:
    quotes = [r for r in aggregated.results if r.annual_cost is not None]
    if best is None or best.annual_cost is None:
        return (
            f"Found {len(quotes)} quotes",
            f"Compared quotes from {len(aggregated.results)} insurance providers.",
            [],
        )

    monthly = best.monthly_cost or round(best.annual_cost / 12)
    average = round(sum(r.annual_cost for r in quotes) / len(quotes))
    savings = average - best.annual_cost if average > best.annual_cost else 0

    headline = f"Recommended: {best.site} at {_whole_money(monthly)}/mo"
    deductible = f" with a {_whole_money(best.deductible)} deductible" if best.deductible else ""
    summary = (
        f"We compared {len(quotes)} insurance quotes. {best.site} offers the best value at "
        f"{_whole_money(best.annual_cost)}/year ({_whole_money(monthly)}/month){deductible}."
    )

    insights: list[str] = []
    if savings > 0:
        insights.append(f"Save {_whole_money(savings)}/year vs. the average quote")
    if best.coverage:
        insights.append(f"Coverage level: {best.coverage}")
    ranked = sorted(quotes, key=lambda r: r.annual_cost)
    if len(ranked) >= 2:
        runner_up = next((r for r in ranked if r is not best), None)
        if runner_up is not None and runner_up.annual_cost > best.annual_cost:
            gap = runner_up.annual_cost - best.annual_cost
            insights.append(f"{_whole_money(gap)}/year cheaper than {runner_up.site}")
    return headline, summary, insights


def generate_synthesis(aggregated: AggregatedResults) -> Synthesis:
    """Build the headline, summary and insights for a finished request.

    Args:
        aggregated: Aggregated results, which also carry the intent and subject.

    Returns:
        Synthesis.
    """

    best = aggregated.best
    subject = aggregated.subject or "item"

    if aggregated.intent == "price_comparison" and best is not None and best.price is not None:
        headline, summary, insights = _price_comparison(aggregated, best, subject)
    elif aggregated.intent == "quote_request":
        headline, summary, insights = _quote_request(aggregated, best)
    else:
        headline = f"Found {len(aggregated.results)} results"
        summary = f"Completed search across {aggregated.completed_sites} sites."
        insights = []

    caveats: list[str] = []
    if aggregated.failed_sites > 0:
        caveats.append(f"{aggregated.failed_sites} site(s) could not be reached")

    seconds = aggregated.total_duration_ms / 1000
    return Synthesis(
        headline=headline,
        summary=summary,
        insights=insights,
        caveats=caveats or None,
        methodology=f"Checked {aggregated.completed_sites} sites in {seconds:.1f} seconds",
    )
