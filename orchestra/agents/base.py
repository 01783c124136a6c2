"""Shared agent models for Orchestra."""

from pydantic import BaseModel, Field

from orchestra.models.orchestrator import RequiredInput


class AgentDeps(BaseModel):
    """Dependencies passed to all agents."""

    query_id: str


class QueryAnalysis(BaseModel):
    """Structured analysis of a user's search query."""

    intent: str = Field(description="One of the supported intent categories")
    subject: str = Field(description="The main thing being searched for")
    goal: str = Field(description="What the user wants to accomplish")
    needs_clarification: bool = Field(
        default=False, description="Whether the user must answer questions first"
    )
    clarifying_questions: list[RequiredInput] = Field(default_factory=list)
    suggested_sites: list[str] = Field(
        default_factory=list, description="Ranked site ids from the catalog"
    )
    reasoning: str = Field(default="", description="Why these sites were chosen")
