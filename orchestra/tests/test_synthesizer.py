from datetime import UTC, datetime

from orchestra.models.orchestrator import AggregatedResults, ExtractedResult
from orchestra.services.synthesizer import generate_synthesis

START = datetime(2026, 1, 1, tzinfo=UTC)


def _result(site: str, **fields) -> ExtractedResult:
    return ExtractedResult(site=site, site_domain=f"{site.lower()}.com", extracted_at=START, **fields)


def _aggregated(results, best, intent="price_comparison", failed=0, duration_ms=12300):
    return AggregatedResults(
        query_id="q1",
        subject="AirPods Pro",
        intent=intent,
        results=results,
        best=best,
        total_sites=len(results) + failed,
        completed_sites=len(results),
        failed_sites=failed,
        start_time=START,
        end_time=START,
        total_duration_ms=duration_ms,
    )


def test_price_comparison_headline_and_insights() -> None:
    results = [
        _result("Amazon", price=260.0),
        _result("Best Buy", price=200.0, in_stock=True, shipping="Free"),
        _result("Walmart", price=260.0),
    ]
    synthesis = generate_synthesis(_aggregated(results, results[1], failed=1))

    assert synthesis.headline == "Best price: $200.00 at Best Buy"
    assert "Found 3 prices for AirPods Pro" in synthesis.summary
    assert "with free shipping" in synthesis.summary
    assert "Best Buy shows this item as in stock" in synthesis.insights
    assert "This is 17% below average" in synthesis.insights
    assert "$60.00 less than Amazon" in synthesis.insights
    assert synthesis.caveats == ["1 site(s) could not be reached"]
    assert synthesis.methodology == "Checked 3 sites in 12.3 seconds"


def test_quote_request_uses_monthly_cost() -> None:
    results = [
        _result("Geico", annual_cost=1200.0, monthly_cost=100.0, deductible=500.0),
        _result("Progressive", annual_cost=1500.0),
    ]
    synthesis = generate_synthesis(_aggregated(results, results[0], intent="quote_request"))

    assert synthesis.headline == "Recommended: Geico at $100/mo"
    assert "with a $500 deductible" in synthesis.summary
    assert "Save $150/year vs. the average quote" in synthesis.insights
    assert "$300/year cheaper than Progressive" in synthesis.insights
    assert synthesis.caveats is None


def test_quote_request_without_best() -> None:
    synthesis = generate_synthesis(_aggregated([], None, intent="quote_request", failed=2))

    assert synthesis.headline == "Found 0 quotes"
    assert synthesis.caveats == ["2 site(s) could not be reached"]


def test_generic_intent_and_unpriced_comparison() -> None:
    results = [_result("Google")]

    general = generate_synthesis(_aggregated(results, None, intent="general"))
    assert general.headline == "Found 1 results"
    assert general.summary == "Completed search across 1 sites."

    unpriced = generate_synthesis(_aggregated(results, None))
    assert unpriced.headline == "Found 1 results"
    assert unpriced.insights == []
