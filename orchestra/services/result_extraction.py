"""Best-effort extraction of structured fields from job output.

Extraction is a strategy keyed by intent. Every strategy starts from the base
result (site, url, raw text) and fills whatever fields its patterns find; a
missing field is never an error.
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable
from datetime import datetime
from typing import Any

from orchestra.models.orchestrator import ExtractedResult, QueryIntent, TargetSite

FieldExtractor = Callable[[str, dict[str, Any]], None]

_AMOUNT = r"\$\s?(\d{1,3}(?:,\d{3})+(?:\.\d{1,2})?|\d+(?:\.\d{1,2})?)"
PRICE_PATTERN = re.compile(_AMOUNT)
ANNUAL_PATTERN = re.compile(
    _AMOUNT + r"\s*(?:/\s*(?:year|yr)|per\s+year|a\s+year|annually|yearly)", re.IGNORECASE
)
MONTHLY_PATTERN = re.compile(
    _AMOUNT + r"\s*(?:/\s*(?:month|mo)\b|per\s+month|a\s+month|monthly)", re.IGNORECASE
)
DEDUCTIBLE_PATTERN = re.compile(_AMOUNT + r"\s+deductible", re.IGNORECASE)

OUT_OF_STOCK_PHRASES = ("out of stock", "sold out", "unavailable")
IN_STOCK_PHRASES = ("in stock", "available")
FREE_SHIPPING_PHRASES = ("free shipping", "free delivery")
COVERAGE_PHRASES = (
    ("full coverage", "Full Coverage"),
    ("liability only", "Liability Only"),
    ("premium", "Premium"),
    ("standard", "Standard"),
)


def parse_amount(value: str) -> float:
    """Parse a matched currency amount such as ``1,299.99``."""

    return float(value.replace(",", ""))


def output_text(output: Any) -> str | None:
    """Return the text to scan from an opaque job output."""

    if output is None:
        return None
    if isinstance(output, str):
        return output
    if isinstance(output, dict) and isinstance(output.get("raw"), str):
        return output["raw"]
    try:
        return json.dumps(output, default=str)
    except (TypeError, ValueError):
        return str(output)


def extract_price_fields(text: str, fields: dict[str, Any]) -> None:
    """Price, stock and shipping rules for shopping intents."""

    match = PRICE_PATTERN.search(text)
    if match:
        fields["price"] = parse_amount(match.group(1))
        fields["currency"] = "USD"

    lowered = text.lower()
    if any(phrase in lowered for phrase in OUT_OF_STOCK_PHRASES):
        fields["in_stock"] = False
    elif any(phrase in lowered for phrase in IN_STOCK_PHRASES):
        fields["in_stock"] = True

    if any(phrase in lowered for phrase in FREE_SHIPPING_PHRASES):
        fields["shipping"] = "Free"
        fields["shipping_cost"] = 0.0


def extract_quote_fields(text: str, fields: dict[str, Any]) -> None:
    """Premium, deductible and coverage rules for insurance quotes."""

    annual = ANNUAL_PATTERN.search(text)
    monthly = MONTHLY_PATTERN.search(text)
    if monthly:
        fields["monthly_cost"] = parse_amount(monthly.group(1))
    if annual:
        fields["annual_cost"] = parse_amount(annual.group(1))
    elif monthly:
        fields["annual_cost"] = round(fields["monthly_cost"] * 12, 2)
    if annual or monthly:
        fields["currency"] = "USD"

    deductible = DEDUCTIBLE_PATTERN.search(text)
    if deductible:
        fields["deductible"] = parse_amount(deductible.group(1))

    lowered = text.lower()
    for phrase, label in COVERAGE_PHRASES:
        if phrase in lowered:
            fields["coverage"] = label
            break


EXTRACTION_STRATEGIES: dict[str, tuple[FieldExtractor, ...]] = {
    "price_comparison": (extract_price_fields,),
    "availability_check": (extract_price_fields,),
    "quote_request": (extract_quote_fields,),
}


def register_strategy(intent: QueryIntent, *extractors: FieldExtractor) -> None:
    """Replace the field extractors used for an intent."""

    EXTRACTION_STRATEGIES[intent] = tuple(extractors)


def extract_result(
    site: TargetSite,
    output: Any,
    intent: QueryIntent,
    extracted_at: datetime,
) -> ExtractedResult:
    """Turn job output into an ExtractedResult.

    Args:
        site: Site the lane searched.
        output: Opaque job output.
        intent: Query intent selecting the strategy.
        extracted_at: Extraction timestamp.

    Returns:
        ExtractedResult with whatever fields could be found.
    """

    fields: dict[str, Any] = {
        "site": site.name,
        "site_domain": site.domain,
        "success": True,
        "extracted_at": extracted_at,
        "url": f"https://{site.domain}",
    }

    text = output_text(output)
    if text is not None:
        fields["raw_response"] = text
        for extractor in EXTRACTION_STRATEGIES.get(intent, ()):
            extractor(text, fields)

    return ExtractedResult(**fields)
