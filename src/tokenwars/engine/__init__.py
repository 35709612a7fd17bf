"""Competition engine: lifecycle state machine, resolution, pairs and automation."""

from tokenwars.engine.automation import AutomationPolicy, AutomationRunner
from tokenwars.engine.lifecycle import (
    CompetitionCreationError,
    CompetitionManager,
    CompetitionStore,
    LifecycleConfig,
    ManagerStats,
    build_draft,
)
from tokenwars.engine.pairs import CompetitionValidationError, PairSelector
from tokenwars.engine.resolution import ResolutionOutcome, calculate_payouts, decide_winner

__all__ = [
    "AutomationPolicy",
    "AutomationRunner",
    "CompetitionCreationError",
    "CompetitionManager",
    "CompetitionStore",
    "CompetitionValidationError",
    "LifecycleConfig",
    "ManagerStats",
    "PairSelector",
    "ResolutionOutcome",
    "build_draft",
    "calculate_payouts",
    "decide_winner",
]
