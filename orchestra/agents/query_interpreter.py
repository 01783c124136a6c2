"""Query analysis agent."""

from pydantic_ai import Agent
from pydantic_ai.models import Model
from pydantic_ai.settings import ModelSettings

from orchestra.agents.base import AgentDeps, QueryAnalysis

SYSTEM_PROMPT = """You are a query analyzer for a multi-site search tool. We search sites that \
require deep navigation or real-time price data that search engines can't access.

1. Intent - one of:
   - price_comparison: looking for best prices on products
   - quote_request: insurance quotes (ALWAYS needs clarification)
   - availability_check: checking if something is in stock
   - information_lookup: business info, hours, locations
   - research: general research or learning
   - general: anything else

2. Subject - the main thing being searched for.

3. Goal - what the user wants to accomplish.

4. Clarification rules by intent:
   - price_comparison: ask "condition" (select: new, refurbished, open-box, any; required)
     and "notes" (text, optional) for specifics like color or storage size.
   - quote_request: HIGH-STAKES. Always ask for zip_code, age, vehicle_year,
     vehicle_make_model, driving_history (select: clean, 1-2 minor incidents,
     major incidents), current_coverage (select: none, basic/liability only,
     full coverage), all required, plus optional notes.

5. Suggested sites - pick 5-7 ids from this catalog, most relevant first:
   - price_comparison: amazon, bestbuy, walmart, bhphoto, microcenter, slickdeals,
     costco, backmarket, woot, apple, target, newegg, ebay
   - quote_request: geico, progressive, statefarm, allstate, libertymutual, thezebra,
     usaa, nationwide, farmers
   - availability_check: amazon, target, walmart
   - information_lookup: google, yelp, maps
   - research: google, wikipedia
   - general: google

For price_comparison, include specialty retailers alongside major ones.
For quote_request, always set needs_clarification to true."""


def build_query_agent(model: Model | str, temperature: float = 0.3) -> Agent[AgentDeps, QueryAnalysis]:
    """Build the query analysis agent.

    Args:
        model: Model instance or ``provider:model`` name.
        temperature: Sampling temperature.

    Returns:
        Agent producing QueryAnalysis output.
    """

    return Agent(
        model=model,
        output_type=QueryAnalysis,
        deps_type=AgentDeps,
        model_settings=ModelSettings(temperature=temperature),
        system_prompt=SYSTEM_PROMPT,
        defer_model_check=True,
    )


async def analyze_query(
    agent: Agent[AgentDeps, QueryAnalysis],
    query: str,
    deps: AgentDeps,
) -> QueryAnalysis:
    """Run the query analysis agent.

    Args:
        agent: Agent built by ``build_query_agent``.
        query: Raw user text.
        deps: Agent dependencies.

    Returns:
        QueryAnalysis output.
    """

    result = await agent.run(f'Analyze this query: "{query}"', deps=deps)
    return result.output
