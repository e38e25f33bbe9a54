"""
Gatekeeper Core Output Schemas

This module defines Pydantic V2 models for everything the core hands back:
scoring outcomes, persisted attempts, ledger statistics, experiments and
their analysis results.
"""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from core.schemas.inputs import Arm, Recommendation, ThresholdConfig


# =============================================================================
# Enums
# =============================================================================

class ExperimentStatus(str, Enum):
    """Experiment lifecycle state. COMPLETED is terminal."""
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"


class Winner(str, Enum):
    """Outcome of a winner analysis."""
    CONTROL = "control"
    VARIANT = "variant"
    INCONCLUSIVE = "inconclusive"


# =============================================================================
# Scoring
# =============================================================================

class ScoringOutcome(BaseModel):
    """Result of the bot score model for one snapshot."""
    score: float = Field(..., ge=0, description="Additive bot score (not clamped to 100)")
    confidence: float = Field(..., ge=0, le=100, description="Confidence in the score")
    triggers: List[str] = Field(default_factory=list, description="Rules that fired, in order")
    recommendation: Recommendation = Field(..., description="Fixed-cutoff classification")


class Attempt(BaseModel):
    """One persisted scoring outcome plus the reviewer's false-positive flag."""
    id: str = Field(..., description="Unique attempt identifier")
    timestamp: float = Field(..., description="Record time (ms since epoch)")
    score: float = Field(..., ge=0)
    confidence: float = Field(..., ge=0, le=100)
    triggers: List[str] = Field(default_factory=list)
    recommendation: Recommendation
    decision: Optional[Recommendation] = Field(
        None, description="Classification served under the live or arm thresholds"
    )
    is_false_positive: bool = False
    experiment_id: Optional[str] = Field(None, description="Experiment the attempt was routed to")
    variant: Optional[Arm] = Field(None, description="Arm the attempt was served by")


class SessionScoreResponse(BaseModel):
    """Response for a finished tracking session."""
    outcome: ScoringOutcome
    decision: Recommendation = Field(..., description="Classification under the live or assigned thresholds")
    attempt_id: Optional[str] = Field(None, description="Ledger id; None if the write was dropped")
    experiment_id: Optional[str] = None
    variant: Optional[Arm] = None


# =============================================================================
# Ledger Statistics
# =============================================================================

class LedgerStats(BaseModel):
    """Summary statistics over retained attempts."""
    total: int = 0
    avg_score: float = 0.0
    avg_confidence: float = 0.0
    allowed_count: int = 0
    challenged_count: int = 0
    blocked_count: int = 0
    false_positive_count: int = 0
    false_positive_rate: float = Field(0.0, description="Percent of all attempts")


class ThresholdRecommendation(BaseModel):
    """Advice for tuning the live thresholds."""
    should_increase: bool = Field(..., description="True to raise thresholds, False to lower")
    reason: str


class LedgerExport(BaseModel):
    """Portable dump of the ledger and live thresholds."""
    export_date: datetime
    thresholds: ThresholdConfig
    stats: LedgerStats
    attempts: List[Attempt] = Field(default_factory=list)


# =============================================================================
# Experiments
# =============================================================================

class VariantStats(BaseModel):
    """Running aggregates for one experiment arm."""
    attempts: int = 0
    allowed: int = 0
    challenged: int = 0
    blocked: int = 0
    false_positives: int = 0
    avg_bot_score: float = 0.0
    avg_confidence: float = 0.0


class ExperimentVariants(BaseModel):
    control: ThresholdConfig
    variant: ThresholdConfig

    def for_arm(self, arm: Arm) -> ThresholdConfig:
        return self.control if arm == Arm.CONTROL else self.variant


class ExperimentResults(BaseModel):
    control: VariantStats = Field(default_factory=VariantStats)
    variant: VariantStats = Field(default_factory=VariantStats)

    def for_arm(self, arm: Arm) -> VariantStats:
        return self.control if arm == Arm.CONTROL else self.variant


class Experiment(BaseModel):
    """A controlled trial of two threshold pairs."""
    id: str
    name: str
    status: ExperimentStatus = ExperimentStatus.ACTIVE
    start_date: float = Field(..., description="Creation time (ms since epoch)")
    end_date: Optional[float] = Field(None, description="Set only on completion")
    variants: ExperimentVariants
    traffic_split: float = Field(..., ge=0, le=100)
    min_sample_size: int = Field(..., ge=1)
    results: ExperimentResults = Field(default_factory=ExperimentResults)


class Assignment(BaseModel):
    """Sticky arm assignment for one session."""
    experiment_id: str
    variant: Arm


class SignificanceResult(BaseModel):
    """Approximate chi-squared test between arms."""
    p_value: float = Field(..., ge=0, le=1)
    significant: bool
    stars: str = Field("", description="Cosmetic: *** p<0.01, ** p<0.05, * p<0.10")


class WinnerRecommendation(BaseModel):
    """Which arm to promote, if any."""
    winner: Winner
    reason: str
    confidence: float = Field(..., ge=0, le=95)


class ExperimentSummary(BaseModel):
    """Experiment plus its current analysis, for operator views."""
    experiment: Experiment
    significance: Dict[str, SignificanceResult]
    recommendation: WinnerRecommendation
