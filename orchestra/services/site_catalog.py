"""Known target sites and per-intent default catalogs."""

from collections.abc import Iterable

from pydantic import BaseModel

from orchestra.constants import DEFAULT_PRESELECTED_SITES
from orchestra.models.orchestrator import QueryIntent, TargetSite


class OutputPreview(BaseModel):
    """How results for an intent are presented."""

    type: str
    description: str
    columns: list[str] | None = None


def _site(site_id: str, name: str, domain: str, estimated_time: int) -> TargetSite:
    return TargetSite(id=site_id, name=name, domain=domain, estimated_time=estimated_time)


SITE_DIRECTORY: dict[str, TargetSite] = {
    site.id: site
    for site in (
        _site("amazon", "Amazon", "amazon.com", 15),
        _site("bestbuy", "Best Buy", "bestbuy.com", 12),
        _site("walmart", "Walmart", "walmart.com", 14),
        _site("target", "Target", "target.com", 12),
        _site("costco", "Costco", "costco.com", 15),
        _site("apple", "Apple", "apple.com", 10),
        _site("ebay", "eBay", "ebay.com", 18),
        _site("newegg", "Newegg", "newegg.com", 12),
        _site("bhphoto", "B&H Photo", "bhphotovideo.com", 14),
        _site("microcenter", "Micro Center", "microcenter.com", 14),
        _site("slickdeals", "Slickdeals", "slickdeals.net", 12),
        _site("backmarket", "Back Market", "backmarket.com", 14),
        _site("woot", "Woot", "woot.com", 12),
        _site("geico", "Geico", "geico.com", 45),
        _site("progressive", "Progressive", "progressive.com", 50),
        _site("statefarm", "State Farm", "statefarm.com", 55),
        _site("allstate", "Allstate", "allstate.com", 50),
        _site("libertymutual", "Liberty Mutual", "libertymutual.com", 55),
        _site("thezebra", "The Zebra", "thezebra.com", 45),
        _site("usaa", "USAA", "usaa.com", 60),
        _site("nationwide", "Nationwide", "nationwide.com", 55),
        _site("farmers", "Farmers", "farmers.com", 55),
        _site("google", "Google", "google.com", 10),
        _site("yelp", "Yelp", "yelp.com", 10),
        _site("maps", "Google Maps", "maps.google.com", 8),
        _site("wikipedia", "Wikipedia", "wikipedia.org", 8),
    )
}

# (site id, pre-selected) in ranked order.
_CATALOG_LAYOUT: dict[str, list[tuple[str, bool]]] = {
    "price_comparison": [
        ("amazon", True),
        ("bestbuy", True),
        ("walmart", True),
        ("target", True),
        ("costco", True),
        ("apple", True),
        ("ebay", False),
        ("newegg", False),
    ],
    "information_lookup": [("google", True), ("yelp", True), ("maps", True)],
    "availability_check": [("amazon", True), ("target", True), ("walmart", True)],
    "quote_request": [
        ("geico", True),
        ("progressive", True),
        ("statefarm", True),
        ("allstate", True),
        ("libertymutual", True),
        ("usaa", False),
    ],
    "research": [("google", True), ("wikipedia", True)],
    "general": [("google", True)],
}

OUTPUT_PREVIEWS: dict[str, OutputPreview] = {
    "price_comparison": OutputPreview(
        type="table",
        description="Comparison table with prices, shipping, and availability",
        columns=["Retailer", "Price", "Shipping", "Availability"],
    ),
    "information_lookup": OutputPreview(
        type="summary", description="Direct answer with source links"
    ),
    "availability_check": OutputPreview(
        type="cards", description="Stock status across retailers"
    ),
    "quote_request": OutputPreview(
        type="table",
        description="Detailed quote comparison with coverage details",
        columns=["Provider", "Annual Cost", "Deductible", "Coverage"],
    ),
    "research": OutputPreview(
        type="summary", description="Comprehensive research summary with sources"
    ),
    "general": OutputPreview(type="summary", description="Answer to your question"),
}


def default_catalog(intent: QueryIntent) -> list[TargetSite]:
    """Return a fresh copy of the default site catalog for an intent."""

    layout = _CATALOG_LAYOUT.get(intent) or _CATALOG_LAYOUT["general"]
    return [
        SITE_DIRECTORY[site_id].model_copy(update={"selected": selected})
        for site_id, selected in layout
    ]


def resolve_sites(
    site_ids: Iterable[str],
    intent: QueryIntent,
    max_selected: int = DEFAULT_PRESELECTED_SITES,
) -> list[TargetSite]:
    """Resolve suggested site ids into ranked candidates.

    Unknown ids are dropped and duplicates removed. The first ``max_selected``
    candidates are pre-selected. Falls back to the intent's default catalog when
    nothing resolves.

    Args:
        site_ids: Suggested site ids in ranked order.
        intent: Classified query intent.
        max_selected: Number of leading candidates to pre-select.

    Returns:
        Ranked list of candidate sites.
    """

    seen: set[str] = set()
    sites: list[TargetSite] = []
    for raw_id in site_ids:
        site_id = raw_id.strip().lower()
        if site_id in seen or site_id not in SITE_DIRECTORY:
            continue
        seen.add(site_id)
        sites.append(SITE_DIRECTORY[site_id])

    if not sites:
        return default_catalog(intent)

    return [
        site.model_copy(update={"selected": index < max_selected})
        for index, site in enumerate(sites)
    ]


def output_preview(intent: QueryIntent) -> OutputPreview:
    """Return the output preview for an intent."""

    return OUTPUT_PREVIEWS.get(intent) or OUTPUT_PREVIEWS["general"]
