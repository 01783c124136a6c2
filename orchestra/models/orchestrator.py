"""Pydantic models for the search orchestrator."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from orchestra.constants import (
    DEFAULT_INITIAL_POLL_DELAY_MS,
    DEFAULT_MAX_CONCURRENT,
    DEFAULT_POLL_INTERVAL_MS,
    DEFAULT_SETTLE_DELAY_MS,
    DEFAULT_STAGGER_DELAY_MS,
)

QueryIntent = Literal[
    "price_comparison",
    "information_lookup",
    "availability_check",
    "quote_request",
    "research",
    "general",
]

RequestStatus = Literal[
    "idle",
    "parsing",
    "configuring",
    "running",
    "completing",
    "complete",
    "error",
]

LaneStatus = Literal[
    "queued",
    "initializing",
    "navigating",
    "extracting",
    "complete",
    "error",
]

ActionType = Literal["purchase", "save", "alert", "expand", "retry", "new_search"]

QUERY_INTENTS: tuple[str, ...] = (
    "price_comparison",
    "information_lookup",
    "availability_check",
    "quote_request",
    "research",
    "general",
)

LANE_STATUS_ORDER: dict[str, int] = {
    "queued": 0,
    "initializing": 1,
    "navigating": 2,
    "extracting": 3,
    "complete": 4,
    "error": 4,
}
TERMINAL_LANE_STATUSES = frozenset({"complete", "error"})
ACTIVE_LANE_STATUSES = frozenset({"initializing", "navigating", "extracting"})


class TargetSite(BaseModel):
    """A site that a lane can search."""

    id: str
    name: str
    domain: str
    icon: str | None = None
    selected: bool = False
    estimated_time: int | None = Field(default=None, ge=0, description="Seconds")


class InputOption(BaseModel):
    """Choice for a select-type clarifying question."""

    value: str
    label: str


class RequiredInput(BaseModel):
    """Clarifying question the user answers before execution."""

    key: str
    label: str
    type: Literal["text", "number", "select"] = "text"
    placeholder: str | None = None
    options: list[InputOption] | None = None
    required: bool = True


class ParsedQuery(BaseModel):
    """Structured request produced by the query interpreter."""

    original_query: str
    intent: QueryIntent = "general"
    subject: str
    goal: str
    suggested_sites: list[TargetSite] = Field(default_factory=list)
    is_high_stakes: bool = False
    required_inputs: list[RequiredInput] | None = None
    reasoning: str | None = None


class ExtractedResult(BaseModel):
    """Structured fields pulled out of a lane's job output."""

    site: str
    site_domain: str
    success: bool = True

    price: float | None = None
    currency: str | None = None
    original_price: float | None = None

    title: str | None = None
    url: str | None = None
    in_stock: bool | None = None
    shipping: str | None = None
    shipping_cost: float | None = None
    delivery_estimate: str | None = None

    annual_cost: float | None = None
    monthly_cost: float | None = None
    deductible: float | None = None
    coverage: str | None = None

    raw_response: str | None = None
    extracted_at: datetime
    metadata: dict[str, Any] | None = None


class SessionLane(BaseModel):
    """One site's job lifecycle inside a request."""

    id: str
    site: TargetSite
    status: LaneStatus = "queued"
    progress: int = Field(default=0, ge=0, le=100)
    job_handle: str | None = None
    live_view_ref: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    result: ExtractedResult | None = None
    error: str | None = None
    current_action: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_LANE_STATUSES

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_LANE_STATUSES


class RequestProgress(BaseModel):
    """Lane counts for a request."""

    total: int = 0
    queued: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0


class AggregatedResults(BaseModel):
    """Ranked collapse of all terminal lanes."""

    model_config = ConfigDict(frozen=True)

    query_id: str
    subject: str
    intent: QueryIntent
    results: list[ExtractedResult]
    best: ExtractedResult | None = None
    total_sites: int
    completed_sites: int
    failed_sites: int
    start_time: datetime
    end_time: datetime
    total_duration_ms: int = Field(ge=0)


class Synthesis(BaseModel):
    """Short natural-language summary of aggregated results."""

    model_config = ConfigDict(frozen=True)

    headline: str
    summary: str
    insights: list[str] = Field(default_factory=list)
    caveats: list[str] | None = None
    methodology: str | None = None


class NextAction(BaseModel):
    """Follow-up affordance offered once a request completes."""

    model_config = ConfigDict(frozen=True)

    type: ActionType
    label: str
    primary: bool = False
    url: str | None = None


class OrchestratorOptions(BaseModel):
    """Runtime knobs for admission, polling and settling."""

    max_concurrent: int = Field(default=DEFAULT_MAX_CONCURRENT, ge=1, le=25)
    stagger_delay_ms: int = Field(default=DEFAULT_STAGGER_DELAY_MS, ge=0)
    poll_interval_ms: int = Field(default=DEFAULT_POLL_INTERVAL_MS, ge=0)
    initial_poll_delay_ms: int = Field(default=DEFAULT_INITIAL_POLL_DELAY_MS, ge=0)
    settle_delay_ms: int = Field(default=DEFAULT_SETTLE_DELAY_MS, ge=0)

    @classmethod
    def from_settings(cls, settings: Any, **overrides: Any) -> OrchestratorOptions:
        """Build options from application settings, ignoring ``None`` overrides."""

        values = {
            "max_concurrent": settings.max_concurrent,
            "stagger_delay_ms": settings.stagger_delay_ms,
            "poll_interval_ms": settings.poll_interval_ms,
            "initial_poll_delay_ms": settings.initial_poll_delay_ms,
            "settle_delay_ms": settings.settle_delay_ms,
        }
        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**values)


class OrchestratorState(BaseModel):
    """Full state tree of one search request; also the persisted snapshot."""

    query_id: str
    status: RequestStatus = "idle"

    original_query: str = ""
    parsed_query: ParsedQuery | None = None
    user_inputs: dict[str, str] = Field(default_factory=dict)

    selected_sites: list[TargetSite] = Field(default_factory=list)

    lanes: list[SessionLane] = Field(default_factory=list)
    max_concurrent: int = Field(default=DEFAULT_MAX_CONCURRENT, ge=1)
    stagger_delay_ms: int = Field(default=DEFAULT_STAGGER_DELAY_MS, ge=0)

    aggregated_results: AggregatedResults | None = None
    synthesis: Synthesis | None = None
    next_actions: list[NextAction] = Field(default_factory=list)

    progress: RequestProgress = Field(default_factory=RequestProgress)

    start_time: datetime | None = None
    estimated_total_time: int | None = None

    error: str | None = None

    @property
    def intent(self) -> QueryIntent:
        return self.parsed_query.intent if self.parsed_query else "general"

    def lane(self, lane_id: str) -> SessionLane | None:
        """Return the lane with the given id, if any."""

        for lane in self.lanes:
            if lane.id == lane_id:
                return lane
        return None
