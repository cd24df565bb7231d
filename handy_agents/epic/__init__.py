"""Epic → phase → sub-issue breakdown, with the epic issue body as the source of truth."""

from handy_agents.epic.models import (
    ActiveEpicState,
    EpicConfig,
    EpicProgress,
    EpicRecoveryInfo,
    EpicState,
    OrchestrationResult,
    Phase,
    PhaseApproach,
    PhaseStatus,
    SubIssue,
    SubIssueAgent,
    SubIssueConfig,
    SubIssueInfo,
)
from handy_agents.epic.service import EpicService, SubIssueBatch
from handy_agents.epic.store import EpicStore, EpicStoreState

__all__ = [
    "ActiveEpicState",
    "EpicConfig",
    "EpicProgress",
    "EpicRecoveryInfo",
    "EpicService",
    "EpicState",
    "EpicStore",
    "EpicStoreState",
    "OrchestrationResult",
    "Phase",
    "PhaseApproach",
    "PhaseStatus",
    "SubIssue",
    "SubIssueAgent",
    "SubIssueBatch",
    "SubIssueConfig",
    "SubIssueInfo",
]
