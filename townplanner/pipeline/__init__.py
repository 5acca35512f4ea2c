"""Status tracking and report orchestration for the town-planner pipeline."""

from townplanner.pipeline.state_tracker import JobStateTracker
from townplanner.pipeline.orchestrator import ReportOrchestrator

__all__ = [
    "JobStateTracker",
    "ReportOrchestrator",
]
