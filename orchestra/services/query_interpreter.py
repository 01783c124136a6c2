"""Turn raw user text into a structured search request."""

from __future__ import annotations

import logging
import re
import uuid
from typing import Any, Protocol

from pydantic_ai.models import Model

from orchestra.agents.base import AgentDeps, QueryAnalysis
from orchestra.agents.query_interpreter import analyze_query, build_query_agent
from orchestra.constants import DEFAULT_PRESELECTED_SITES
from orchestra.models.orchestrator import QUERY_INTENTS, ParsedQuery, QueryIntent
from orchestra.services.site_catalog import default_catalog, resolve_sites

logger = logging.getLogger(__name__)

_PRICE_KEYWORDS = ("price", "cost", "cheap", "best deal", "best price")
_QUOTE_KEYWORDS = ("insurance", "quote")
_AVAILABILITY_KEYWORDS = ("in stock", "available")
_INFORMATION_KEYWORDS = ("hours", "open")
_PRICE_SUBJECT_PATTERN = re.compile(
    r"(?:price|cost|deal)(?:\s+(?:for|of|on))?\s+(.+?)(?:\s+(?:on|at|from|across))?$",
    re.IGNORECASE,
)


class InterpretationError(RuntimeError):
    """Raised when a query cannot be understood."""


class QueryInterpreter(Protocol):
    """Contract the orchestrator consumes to parse queries."""

    async def interpret(self, text: str) -> ParsedQuery: ...


def _require_text(text: str) -> str:
    cleaned = (text or "").strip()
    if not cleaned:
        raise InterpretationError("Query is empty")
    return cleaned


def keyword_parse(query: str) -> ParsedQuery:
    """Parse a query with keyword rules.

    Args:
        query: Raw user text.

    Returns:
        ParsedQuery using the intent's default site catalog.
    """

    lowered = query.lower()
    intent: QueryIntent = "general"
    subject = query
    goal = "find information"

    if any(keyword in lowered for keyword in _PRICE_KEYWORDS):
        intent = "price_comparison"
        goal = "find best price"
        match = _PRICE_SUBJECT_PATTERN.search(query)
        if match:
            subject = match.group(1).strip()
    elif any(keyword in lowered for keyword in _QUOTE_KEYWORDS):
        intent = "quote_request"
        goal = "compare quotes"
    elif any(keyword in lowered for keyword in _AVAILABILITY_KEYWORDS):
        intent = "availability_check"
        goal = "check availability"
    elif any(keyword in lowered for keyword in _INFORMATION_KEYWORDS):
        intent = "information_lookup"

    return ParsedQuery(
        original_query=query,
        intent=intent,
        subject=subject,
        goal=goal,
        suggested_sites=default_catalog(intent),
        is_high_stakes=False,
    )


def parsed_query_from_analysis(
    query: str,
    analysis: QueryAnalysis,
    max_selected: int = DEFAULT_PRESELECTED_SITES,
) -> ParsedQuery:
    """Convert agent output into a ParsedQuery.

    Args:
        query: Raw user text.
        analysis: Agent output.
        max_selected: Number of leading candidates to pre-select.

    Returns:
        ParsedQuery with resolved candidate sites.
    """

    intent = analysis.intent.strip().lower()
    if intent not in QUERY_INTENTS:
        logger.info("Unsupported intent %r, using general", analysis.intent)
        intent = "general"

    questions = analysis.clarifying_questions
    return ParsedQuery(
        original_query=query,
        intent=intent,
        subject=analysis.subject.strip() or query,
        goal=analysis.goal.strip() or "find information",
        suggested_sites=resolve_sites(analysis.suggested_sites, intent, max_selected),
        is_high_stakes=analysis.needs_clarification,
        required_inputs=questions or None,
        reasoning=analysis.reasoning or None,
    )


class KeywordQueryInterpreter:
    """Interpreter that only uses keyword rules."""

    async def interpret(self, text: str) -> ParsedQuery:
        return keyword_parse(_require_text(text))


class AgentQueryInterpreter:
    """Interpreter backed by an LLM agent, with optional keyword fallback."""

    def __init__(
        self,
        model: Model | str,
        temperature: float = 0.3,
        max_selected: int = DEFAULT_PRESELECTED_SITES,
        fallback: QueryInterpreter | None = None,
    ) -> None:
        self._agent = build_query_agent(model, temperature=temperature)
        self._max_selected = max_selected
        self._fallback = fallback

    async def interpret(self, text: str) -> ParsedQuery:
        """Interpret a query with the agent.

        Args:
            text: Raw user text.

        Returns:
            ParsedQuery.
        """

        query = _require_text(text)
        deps = AgentDeps(query_id=uuid.uuid4().hex)
        try:
            analysis = await analyze_query(self._agent, query, deps)
        except Exception as exc:
            if self._fallback is None:
                raise InterpretationError(f"Failed to understand query: {exc}") from exc
            logger.warning("Query agent failed, using keyword fallback: %s", exc)
            return await self._fallback.interpret(query)

        return parsed_query_from_analysis(query, analysis, self._max_selected)


def build_query_interpreter(settings: Any) -> QueryInterpreter:
    """Choose an interpreter from application settings.

    Args:
        settings: Application settings.

    Returns:
        Agent interpreter when an LLM key is configured, else keyword rules.
    """

    keyword = KeywordQueryInterpreter()
    if not settings.interpreter_enabled or not settings.openai_api_key:
        logger.info("Query agent disabled, using keyword interpreter")
        return keyword

    return AgentQueryInterpreter(
        model=settings.interpreter_model,
        temperature=settings.interpreter_temperature,
        max_selected=settings.max_preselected_sites,
        fallback=keyword if settings.interpreter_keyword_fallback else None,
    )
