"""Work item lifecycle tracking: state machine, locked store and tracker."""

from handy_agents.pipeline.models import (
    PipelineItem,
    PipelineState,
    PipelineStatus,
    PipelineSummary,
    PrPipelineStatus,
)
from handy_agents.pipeline.store import PipelineStore
from handy_agents.pipeline.tracker import (
    AssignResult,
    PipelineTracker,
    aggregate_pipeline_state,
    detect_pr_for_item,
    sync_pr_status,
)

__all__ = [
    "AssignResult",
    "PipelineItem",
    "PipelineState",
    "PipelineStatus",
    "PipelineStore",
    "PipelineSummary",
    "PipelineTracker",
    "PrPipelineStatus",
    "aggregate_pipeline_state",
    "detect_pr_for_item",
    "sync_pr_status",
]
