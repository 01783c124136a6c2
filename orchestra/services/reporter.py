"""Request progress reporting helpers."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from orchestra.models.orchestrator import SessionLane


@dataclass(frozen=True)
class OrchestratorReporter:
    """Optional callbacks invoked after each applied transition."""

    on_status_change: Callable[[str], None] | None = None
    on_lane_update: Callable[[SessionLane], None] | None = None
