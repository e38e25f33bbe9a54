"""
Gatekeeper Core Schemas

Public exports for input and output Pydantic models.
"""

# Input schemas - Telemetry
from core.schemas.inputs import (
    INTERACTION_GAP_WINDOW,
    TYPING_INTERVAL_WINDOW,
    VELOCITY_WINDOW,
    InteractionEvent,
    InteractionStreamPayload,
    InteractionType,
    SessionClockPayload,
    SessionStartPayload,
    SignalSnapshot,
)

# Input schemas - Thresholds & experiments
from core.schemas.inputs import (
    Arm,
    AssignPayload,
    ExperimentCreatePayload,
    ExperimentResultPayload,
    FalsePositivePayload,
    PromotePayload,
    Recommendation,
    SignificanceMetric,
    ThresholdConfig,
)

# Output schemas
from core.schemas.outputs import (
    Assignment,
    Attempt,
    Experiment,
    ExperimentResults,
    ExperimentStatus,
    ExperimentSummary,
    ExperimentVariants,
    LedgerExport,
    LedgerStats,
    ScoringOutcome,
    SessionScoreResponse,
    SignificanceResult,
    ThresholdRecommendation,
    VariantStats,
    Winner,
    WinnerRecommendation,
)

__all__ = [
    # Input - Telemetry
    "VELOCITY_WINDOW",
    "TYPING_INTERVAL_WINDOW",
    "INTERACTION_GAP_WINDOW",
    "InteractionType",
    "InteractionEvent",
    "InteractionStreamPayload",
    "SessionStartPayload",
    "SessionClockPayload",
    "SignalSnapshot",
    # Input - Thresholds & experiments
    "Recommendation",
    "Arm",
    "SignificanceMetric",
    "ThresholdConfig",
    "ExperimentCreatePayload",
    "AssignPayload",
    "ExperimentResultPayload",
    "FalsePositivePayload",
    "PromotePayload",
    # Output
    "ScoringOutcome",
    "Attempt",
    "SessionScoreResponse",
    "LedgerStats",
    "ThresholdRecommendation",
    "LedgerExport",
    "ExperimentStatus",
    "VariantStats",
    "ExperimentVariants",
    "ExperimentResults",
    "Experiment",
    "Assignment",
    "SignificanceResult",
    "Winner",
    "WinnerRecommendation",
    "ExperimentSummary",
]
