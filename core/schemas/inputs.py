"""
Gatekeeper Core Input Schemas

This module defines Pydantic V2 models for:
- Raw interaction events streamed by the client wrapper
- The signal snapshot consumed by the bot score model
- Threshold pairs and experiment management requests
"""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator


# =============================================================================
# Sliding Window Capacities
# =============================================================================

VELOCITY_WINDOW = 50
TYPING_INTERVAL_WINDOW = 30
INTERACTION_GAP_WINDOW = 20


# =============================================================================
# Enums
# =============================================================================

class InteractionType(str, Enum):
    """Input event kinds observed during a session."""
    POINTER_MOVE = "POINTER_MOVE"
    KEY_DOWN = "KEY_DOWN"
    PASTE = "PASTE"
    CLICK = "CLICK"


class Recommendation(str, Enum):
    """Allow/challenge/block classification of a bot score."""
    ALLOW = "allow"
    CHALLENGE = "challenge"
    BLOCK = "block"


class Arm(str, Enum):
    """Experiment arm."""
    CONTROL = "control"
    VARIANT = "variant"


class SignificanceMetric(str, Enum):
    """Per-arm counters that can be compared for significance."""
    ALLOWED = "allowed"
    CHALLENGED = "challenged"
    BLOCKED = "blocked"
    FALSE_POSITIVES = "false_positives"


# =============================================================================
# Interaction Events
# =============================================================================

class InteractionEvent(BaseModel):
    """Single interaction event captured by the client wrapper."""
    event_type: InteractionType = Field(..., description="Kind of input event")
    x: float = Field(0.0, description="Pointer X coordinate (POINTER_MOVE only)")
    y: float = Field(0.0, description="Pointer Y coordinate (POINTER_MOVE only)")
    timestamp: Optional[float] = Field(
        None,
        description="Client timestamp in milliseconds; server clock is used when absent"
    )


class InteractionStreamPayload(BaseModel):
    """Batch of interaction events for an active tracking session."""
    events: List[InteractionEvent] = Field(..., min_length=1, description="Ordered event batch")


class SessionStartPayload(BaseModel):
    """Optional client start time, so elapsed duration uses the client's time base."""
    started_at: Optional[float] = Field(None, ge=0, description="Start timestamp (ms)")


class SessionClockPayload(BaseModel):
    """Optional client timestamp for peek/stop."""
    now: Optional[float] = Field(None, ge=0, description="Current client timestamp (ms)")


# =============================================================================
# Signal Snapshot
# =============================================================================

class SignalSnapshot(BaseModel):
    """
    Accumulated interaction telemetry for one session.

    Sample lists are the contents of the collector's ring buffers, oldest first.
    """
    movement_count: int = Field(0, ge=0, description="Pointer-move events with dt > 0")
    velocity_samples: List[float] = Field(
        default_factory=list,
        max_length=VELOCITY_WINDOW,
        description="Pointer velocities (px/ms)"
    )
    keystroke_count: int = Field(0, ge=0, description="Key-down events")
    interval_samples: List[float] = Field(
        default_factory=list,
        max_length=TYPING_INTERVAL_WINDOW,
        description="Inter-keystroke intervals (ms)"
    )
    paste_count: int = Field(0, ge=0, description="Paste events")
    click_count: int = Field(0, ge=0, description="Click events")
    gap_samples: List[float] = Field(
        default_factory=list,
        max_length=INTERACTION_GAP_WINDOW,
        description="Gaps between consecutive interactions (ms)"
    )
    elapsed_ms: float = Field(0.0, ge=0, description="Session duration (ms)")

    @property
    def is_empty(self) -> bool:
        """True when no interaction of any kind was observed."""
        return not (
            self.movement_count or self.keystroke_count or self.paste_count
            or self.click_count or self.velocity_samples or self.interval_samples
            or self.gap_samples
        )


# =============================================================================
# Threshold Config
# =============================================================================

class ThresholdConfig(BaseModel):
    """Challenge/block cutoffs applied to a bot score."""
    challenge: float = Field(..., ge=0, lt=100, description="Score at which to challenge")
    block: float = Field(..., ge=0, le=100, description="Score at which to block")

    @model_validator(mode="after")
    def _challenge_below_block(self) -> "ThresholdConfig":
        if self.challenge >= self.block:
            raise ValueError("Challenge threshold must be lower than block threshold")
        return self

    def classify(self, score: float) -> Recommendation:
        """Map a bot score onto this pair of cutoffs."""
        if score >= self.block:
            return Recommendation.BLOCK
        if score >= self.challenge:
            return Recommendation.CHALLENGE
        return Recommendation.ALLOW


# =============================================================================
# Experiment Requests
# =============================================================================

class ExperimentCreatePayload(BaseModel):
    """Operator request to start a threshold experiment."""
    name: str = Field(..., min_length=1, description="Human-readable experiment name")
    control: Optional[ThresholdConfig] = Field(
        None,
        description="Control arm thresholds; the live thresholds when omitted"
    )
    variant: ThresholdConfig = Field(..., description="Variant arm thresholds")
    traffic_split: float = Field(50, ge=0, le=100, description="Percent of sessions routed to variant")
    min_sample_size: int = Field(100, ge=1, description="Attempts required per arm before analysis")


class AssignPayload(BaseModel):
    """Sticky assignment request."""
    session_token: str = Field(..., min_length=1, description="Caller session identity")


class ExperimentResultPayload(BaseModel):
    """One scored attempt attributed to an experiment arm."""
    variant: Arm = Field(..., description="Arm the attempt was served by")
    score: float = Field(..., ge=0, description="Bot score")
    confidence: float = Field(..., ge=0, le=100, description="Score confidence")
    recommendation: Recommendation = Field(..., description="Classification served to the attempt")
    is_false_positive: bool = Field(False, description="Reviewer-confirmed false positive")


class FalsePositivePayload(BaseModel):
    """Reviewer correction for a recorded attempt."""
    is_false_positive: bool = Field(..., description="New flag value")


class PromotePayload(BaseModel):
    """Promotion request; the recommended winner is used when arm is omitted."""
    arm: Optional[Arm] = Field(None, description="Arm whose thresholds go live")
