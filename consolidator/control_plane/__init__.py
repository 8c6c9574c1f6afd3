"""
consolidator/control_plane — analysis, consolidation and migration workflow.

Public API:

    Analysis:
        ClusterModel            — nodes + workloads, utilization analysis
        LimitAnalyzer           — limits vs usage, right-sizing report

    Consolidation:
        ConsolidationPredictor  — minimum-node plan with migration steps

    Migration workflow:
        MigrationOrchestrator   — observe / manual / semi-auto / full-auto runs
        find_safe_window()      — time-of-day gate for disruptive work
        lifecycle               — recommendation state transitions
        ConfigurationError, FullAutoNotConfirmedError
        InvalidTransitionError, ApprovalTokenError, ApprovalExpiredError

    Service:
        OptimizationService     — one full analysis cycle + approval registry
        RecommendationNotFoundError
"""

from consolidator.control_plane import lifecycle
from consolidator.control_plane.cluster_model import ClusterModel
from consolidator.control_plane.limit_analyzer import LimitAnalyzer
from consolidator.control_plane.consolidation import ConsolidationPredictor
from consolidator.control_plane.safe_window import find_safe_window
from consolidator.control_plane.lifecycle import (
    ApprovalExpiredError,
    ApprovalTokenError,
    InvalidTransitionError,
)
from consolidator.control_plane.migration import (
    ConfigurationError,
    FullAutoNotConfirmedError,
    MigrationOrchestrator,
)
from consolidator.control_plane.optimization_service import (
    OptimizationService,
    RecommendationNotFoundError,
)

__all__ = [
    "lifecycle",
    "ClusterModel",
    "LimitAnalyzer",
    "ConsolidationPredictor",
    "find_safe_window",
    "ApprovalExpiredError",
    "ApprovalTokenError",
    "InvalidTransitionError",
    "ConfigurationError",
    "FullAutoNotConfirmedError",
    "MigrationOrchestrator",
    "OptimizationService",
    "RecommendationNotFoundError",
]
