"""
Gatekeeper Attempt Ledger

Durable, capped log of scoring outcomes with reviewer false-positive
corrections, summary statistics and threshold tuning advice.

Key Schema:
    BOT_LEDGER:attempts    # JSON list of attempts, oldest first

Capacity:
    The ledger keeps the most recent `capacity` attempts. When the backend
    rejects a write for capacity reasons, the ledger drops to half capacity
    and retries once; if that also fails the write is dropped and record()
    returns None. Scoring is never blocked by a ledger failure.
"""

from __future__ import annotations

import logging
import math
import uuid
from typing import Callable, Iterable, List, Optional

from pydantic import ValidationError as PydanticValidationError

from core.exceptions import CapacityError, StorageError
from core.processors.telemetry import Clock, wall_clock_ms
from core.schemas.inputs import Arm, Recommendation
from core.schemas.outputs import (
    Attempt,
    LedgerStats,
    ScoringOutcome,
    ThresholdRecommendation,
)
from .storage import KeyValueStore
from .threshold_store import ThresholdStore


logger = logging.getLogger(__name__)


def round1(value: float) -> float:
    """Round half up to one decimal place."""
    return math.floor(value * 10 + 0.5) / 10


class AttemptLedger:
    """
    Capped attempt log owned by the scoring subsystem.

    Appends and flag changes are read-modify-writes of one blob through
    KeyValueStore.update, so they stay atomic across processes sharing a
    Redis backend.
    """

    KEY: str = "BOT_LEDGER:attempts"
    DEFAULT_CAPACITY: int = 1000

    # Threshold advice
    MIN_ATTEMPTS_FOR_ADVICE: int = 20
    HIGH_FP_RATE: float = 20.0        # percent of challenged+blocked
    LOW_FP_RATE: float = 5.0          # percent of challenged+blocked
    NEAR_MISS_FACTOR: float = 0.8     # of the challenge threshold
    NEAR_MISS_SHARE: float = 0.1      # of all attempts

    def __init__(
        self,
        store: KeyValueStore,
        thresholds: ThresholdStore,
        capacity: int = DEFAULT_CAPACITY,
        clock: Optional[Clock] = None,
        id_factory: Optional[Callable[[], str]] = None
    ) -> None:
        if capacity < 2:
            raise ValueError("Ledger capacity must be at least 2")
        self.store = store
        self.thresholds = thresholds
        self.capacity = capacity
        self.clock = clock or wall_clock_ms
        self.id_factory = id_factory or (lambda: str(uuid.uuid4()))

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def record(
        self,
        outcome: ScoringOutcome,
        decision: Optional[Recommendation] = None,
        experiment_id: Optional[str] = None,
        variant: Optional[Arm] = None
    ) -> Optional[str]:
        """
        Append a new attempt for a scoring outcome.

        Args:
            decision: Classification actually served (live or arm thresholds);
                defaults to the outcome's fixed-cutoff recommendation.

        Returns:
            The new attempt id, or None if the write had to be dropped.
        """
        attempt = Attempt(
            id=self.id_factory(),
            timestamp=self.clock(),
            score=outcome.score,
            confidence=outcome.confidence,
            triggers=list(outcome.triggers),
            recommendation=outcome.recommendation,
            decision=decision or outcome.recommendation,
            experiment_id=experiment_id,
            variant=variant
        )

        if self._append_with_shrink(attempt):
            return attempt.id
        return None

    def mark_false_positive(self, attempt_id: str, is_false_positive: bool) -> Optional[Attempt]:
        """
        Set the reviewer flag on an attempt.

        Returns:
            The previous state of the attempt, or None if the id is unknown
            (in which case nothing is written).
        """
        def flag(data):
            attempts = self._parse(data)
            for index, attempt in enumerate(attempts):
                if attempt.id == attempt_id:
                    attempts[index] = attempt.model_copy(
                        update={"is_false_positive": is_false_positive}
                    )
                    return self._dump(attempts), attempt
            return None, None

        previous = self.store.update(self.KEY, flag)
        if previous is None:
            logger.debug(f"mark_false_positive: unknown attempt {attempt_id}")
        return previous

    def clear(self) -> None:
        self.store.delete(self.KEY)
        logger.info("Attempt ledger cleared")

    def replace_all(self, attempts: Iterable[Attempt]) -> int:
        """Overwrite the ledger (used by import); keeps the most recent `capacity`."""
        retained = list(attempts)[-self.capacity:]
        self.store.set(self.KEY, self._dump(retained))
        logger.info(f"Attempt ledger replaced with {len(retained)} attempts")
        return len(retained)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def list(self) -> List[Attempt]:
        """All retained attempts in insertion order."""
        return self._parse(self.store.get(self.KEY))

    def get(self, attempt_id: str) -> Optional[Attempt]:
        for attempt in self.list():
            if attempt.id == attempt_id:
                return attempt
        return None

    def stats(self) -> LedgerStats:
        """Single-pass summary; all zeros for an empty ledger."""
        attempts = self.list()
        total = len(attempts)
        if total == 0:
            return LedgerStats()

        score_sum = 0.0
        confidence_sum = 0.0
        counts = {
            Recommendation.ALLOW: 0,
            Recommendation.CHALLENGE: 0,
            Recommendation.BLOCK: 0,
        }
        false_positives = 0

        for attempt in attempts:
            score_sum += attempt.score
            confidence_sum += attempt.confidence
            counts[attempt.recommendation] += 1
            if attempt.is_false_positive:
                false_positives += 1

        return LedgerStats(
            total=total,
            avg_score=round1(score_sum / total),
            avg_confidence=round1(confidence_sum / total),
            allowed_count=counts[Recommendation.ALLOW],
            challenged_count=counts[Recommendation.CHALLENGE],
            blocked_count=counts[Recommendation.BLOCK],
            false_positive_count=false_positives,
            false_positive_rate=round1(false_positives / total * 100)
        )

    def threshold_recommendation(self) -> Optional[ThresholdRecommendation]:
        """
        Advise on the live thresholds.

        Logic:
            - None below 20 attempts or when nothing was challenged/blocked
            - FP rate among challenged+blocked > 20%  -> raise thresholds
            - FP rate < 5% and allowed attempts scoring above 0.8x the
              challenge threshold exceed 10% of all    -> lower thresholds
            - None otherwise
        """
        attempts = self.list()
        if len(attempts) < self.MIN_ATTEMPTS_FOR_ADVICE:
            return None

        flagged = [
            a for a in attempts
            if a.recommendation in (Recommendation.CHALLENGE, Recommendation.BLOCK)
        ]
        if not flagged:
            return None

        fp_count = sum(1 for a in flagged if a.is_false_positive)
        fp_rate = fp_count / len(flagged) * 100

        if fp_rate > self.HIGH_FP_RATE:
            return ThresholdRecommendation(
                should_increase=True,
                reason=(
                    f"High false positive rate ({fp_rate:.1f}%). "
                    f"Consider increasing thresholds to improve UX."
                )
            )

        near_miss_score = self.thresholds.get().challenge * self.NEAR_MISS_FACTOR
        allowed_near_misses = sum(
            1 for a in attempts
            if a.recommendation == Recommendation.ALLOW and a.score > near_miss_score
        )

        if fp_rate < self.LOW_FP_RATE and allowed_near_misses > len(attempts) * self.NEAR_MISS_SHARE:
            return ThresholdRecommendation(
                should_increase=False,
                reason=(
                    "Low false positive rate but many high-scoring attempts in allow zone. "
                    "Consider lowering thresholds."
                )
            )

        return None

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    @staticmethod
    def _parse(data) -> List[Attempt]:
        if not data:
            return []

        attempts = []
        for item in data:
            try:
                attempts.append(Attempt.model_validate(item))
            except PydanticValidationError as e:
                logger.warning(f"Skipping malformed ledger entry: {e}")
        return attempts

    @staticmethod
    def _dump(attempts: List[Attempt]) -> list:
        return [a.model_dump(mode="json") for a in attempts]

    def _append(self, attempt: Attempt, keep: int) -> None:
        def append(data):
            attempts = self._parse(data)
            attempts.append(attempt)
            return self._dump(attempts[-keep:]), None

        self.store.update(self.KEY, append)

    def _append_with_shrink(self, attempt: Attempt) -> bool:
        try:
            self._append(attempt, self.capacity)
            return True
        except CapacityError as e:
            logger.warning(
                f"Ledger write rejected ({e}), shrinking to {self.capacity // 2} attempts"
            )
        except StorageError as e:
            logger.error(f"Ledger write failed, attempt {attempt.id} dropped: {e}")
            return False

        try:
            self._append(attempt, self.capacity // 2)
            return True
        except StorageError as e:
            logger.error(f"Ledger write failed after shrinking, attempt {attempt.id} dropped: {e}")
            return False
