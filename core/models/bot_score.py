"""
Gatekeeper Bot Score Model

Additive rule system that turns a session's interaction telemetry into a
bot score. This module is STATELESS and DETERMINISTIC.

No ML. No I/O. Just rules.

Architecture:
    Input events -> TelemetryCollector -> SignalSnapshot -> BotScoreModel -> ScoringOutcome

Every rule contributes independently to score and confidence; several rules
can fire for one snapshot. The score is not clamped and
can exceed 100; confidence is clamped to [0, 100].
"""

from typing import List, Sequence

import numpy as np

from core.schemas.inputs import Recommendation, SignalSnapshot
from core.schemas.outputs import ScoringOutcome


def sample_mean(values: Sequence[float]) -> float:
    """Arithmetic mean; 0.0 for an empty sample."""
    if len(values) == 0:
        return 0.0
    return float(np.mean(values))


def population_std(values: Sequence[float]) -> float:
    """Population standard deviation (ddof=0); 0.0 for an empty sample."""
    if len(values) == 0:
        return 0.0
    return float(np.std(values, ddof=0))


class BotScoreModel:
    """
    Stateless rule-based bot scorer.

    Rules:
        - movement < 5                      +30 / +15  "Minimal mouse movement"
        - else movement < 20                +15 / +10  "Low mouse activity"
        - >=4 velocities, std < 50          +25 / +20  "Robotic mouse movements"
        - paste > 0                         +20 / +15  "{n} paste event(s) detected"
        - >=4 intervals, mean < 50ms        +20 / +15  "Extremely fast typing"
        - >=4 intervals, std < 10           +15 / +10  "Robotic typing pattern"
        - >=3 gaps, std < 100ms             +15 / +10  "Suspiciously consistent timing"
        - >=3 gaps, mean < 500ms            +10 / +5   "Unnaturally fast interactions"
        - elapsed < 3000ms                  +20 / +15  "Form filled too quickly"
        - no clicks but keystrokes          +10 / +5   "No mouse clicks detected"

    Decision Logic:
        BLOCK: score >= 60
        CHALLENGE: score >= 35
        ALLOW: otherwise

    The cutoffs are fixed here; live, operator-tuned cutoffs are applied by
    consumers of the ThresholdStore.
    """

    # Mouse
    MINIMAL_MOVEMENT: int = 5
    LOW_MOVEMENT: int = 20
    ROBOTIC_VELOCITY_STD: float = 50.0
    MIN_VELOCITY_SAMPLES: int = 4

    # Keyboard
    MIN_INTERVAL_SAMPLES: int = 4
    FAST_TYPING_MEAN_MS: float = 50.0
    ROBOTIC_TYPING_STD: float = 10.0

    # Interaction timing
    MIN_GAP_SAMPLES: int = 3
    CONSISTENT_GAP_STD_MS: float = 100.0
    FAST_GAP_MEAN_MS: float = 500.0
    MIN_FORM_DURATION_MS: float = 3000.0

    # Decision
    BLOCK_THRESHOLD: float = 60.0
    CHALLENGE_THRESHOLD: float = 35.0
    MAX_CONFIDENCE: float = 100.0

    def score(self, snapshot: SignalSnapshot) -> ScoringOutcome:
        """
        Score one signal snapshot.

        Args:
            snapshot: Telemetry accumulated for a single session.

        Returns:
            ScoringOutcome with score, clamped confidence, ordered triggers
            and the fixed-cutoff recommendation. Never raises.
        """
        if snapshot.is_empty:
            return ScoringOutcome(
                score=0,
                confidence=0,
                triggers=[],
                recommendation=Recommendation.ALLOW
            )

        triggers: List[str] = []
        score = 0.0
        confidence = 0.0

        # =================================================================
        # Mouse Activity
        # =================================================================

        if snapshot.movement_count < self.MINIMAL_MOVEMENT:
            score += 30
            confidence += 15
            triggers.append("Minimal mouse movement")
        elif snapshot.movement_count < self.LOW_MOVEMENT:
            score += 15
            confidence += 10
            triggers.append("Low mouse activity")

        # Scripted pointers move at constant speed
        if len(snapshot.velocity_samples) >= self.MIN_VELOCITY_SAMPLES:
            if population_std(snapshot.velocity_samples) < self.ROBOTIC_VELOCITY_STD:
                score += 25
                confidence += 20
                triggers.append("Robotic mouse movements")

        # =================================================================
        # Clipboard
        # =================================================================

        if snapshot.paste_count > 0:
            score += 20
            confidence += 15
            triggers.append(f"{snapshot.paste_count} paste event(s) detected")

        # =================================================================
        # Typing Rhythm
        # =================================================================

        if len(snapshot.interval_samples) >= self.MIN_INTERVAL_SAMPLES:
            if sample_mean(snapshot.interval_samples) < self.FAST_TYPING_MEAN_MS:
                score += 20
                confidence += 15
                triggers.append("Extremely fast typing")

            if population_std(snapshot.interval_samples) < self.ROBOTIC_TYPING_STD:
                score += 15
                confidence += 10
                triggers.append("Robotic typing pattern")

        # =================================================================
        # Interaction Timing
        # =================================================================

        if len(snapshot.gap_samples) >= self.MIN_GAP_SAMPLES:
            if population_std(snapshot.gap_samples) < self.CONSISTENT_GAP_STD_MS:
                score += 15
                confidence += 10
                triggers.append("Suspiciously consistent timing")

            if sample_mean(snapshot.gap_samples) < self.FAST_GAP_MEAN_MS:
                score += 10
                confidence += 5
                triggers.append("Unnaturally fast interactions")

        if snapshot.elapsed_ms < self.MIN_FORM_DURATION_MS:
            score += 20
            confidence += 15
            triggers.append("Form filled too quickly")

        if snapshot.click_count == 0 and snapshot.keystroke_count > 0:
            score += 10
            confidence += 5
            triggers.append("No mouse clicks detected")

        confidence = min(max(confidence, 0.0), self.MAX_CONFIDENCE)

        return ScoringOutcome(
            score=score,
            confidence=confidence,
            triggers=triggers,
            recommendation=self.classify(score)
        )

    def classify(self, score: float) -> Recommendation:
        """Fixed-cutoff classification; the only discontinuities are 35 and 60."""
        if score >= self.BLOCK_THRESHOLD:
            return Recommendation.BLOCK
        elif score >= self.CHALLENGE_THRESHOLD:
            return Recommendation.CHALLENGE
        else:
            return Recommendation.ALLOW
