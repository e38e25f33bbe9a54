"""
Gatekeeper Experiment Engine

Controlled trials of alternate challenge/block threshold pairs.

State Machine:
    active <-> paused
    active | paused -> completed   (terminal, stamps end_date)
    any -> deleted

At most one experiment is active at a time. Assignment is sticky per caller-supplied
session token. Promotion of an arm into the live ThresholdStore is always
an explicit operator action.
"""

from __future__ import annotations

import logging
import random
import uuid
from typing import Callable, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from core.exceptions import UnknownExperimentError, ValidationError
from core.models.significance import ExperimentAnalyzer, winner_arm
from core.processors.telemetry import Clock, wall_clock_ms
from core.schemas.inputs import (
    Arm,
    ExperimentCreatePayload,
    Recommendation,
    SignificanceMetric,
    ThresholdConfig,
)
from core.schemas.outputs import (
    Experiment,
    ExperimentResults,
    ExperimentStatus,
    ExperimentVariants,
    SignificanceResult,
    WinnerRecommendation,
)
from persistence.experiment_repository import ExperimentRepository
from persistence.threshold_store import ThresholdStore


logger = logging.getLogger(__name__)


RandomSource = Callable[[], float]
ExperimentRef = Union[str, Experiment]


class ExperimentEngine:
    """
    Owns experiments and assignments.

    Reads the ThresholdStore to seed a default control arm and writes it
    only on promotion. Every mutation is one atomic update of the stored
    experiment list or assignment, so several workers can share a backend.
    """

    def __init__(
        self,
        repository: ExperimentRepository,
        thresholds: ThresholdStore,
        analyzer: Optional[ExperimentAnalyzer] = None,
        random_source: Optional[RandomSource] = None,
        clock: Optional[Clock] = None,
        id_factory: Optional[Callable[[], str]] = None
    ) -> None:
        self.repository = repository
        self.thresholds = thresholds
        self.analyzer = analyzer or ExperimentAnalyzer()
        self.random_source = random_source or random.random
        self.clock = clock or wall_clock_ms
        self.id_factory = id_factory or (lambda: str(uuid.uuid4()))

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def create(
        self,
        name: str,
        control: Union[ThresholdConfig, dict, None],
        variant: Union[ThresholdConfig, dict],
        traffic_split: float = 50,
        min_sample_size: int = 100
    ) -> Experiment:
        """
        Start a new experiment.

        Args:
            name: Human-readable name.
            control: Baseline thresholds; None seeds it from the live ThresholdStore.
            variant: Thresholds under test.
            traffic_split: Percent of new sessions routed to the variant.
            min_sample_size: Attempts per arm before analysis is allowed.

        Raises:
            ValidationError: bad parameters or another experiment is active.
        """
        control_config = self.thresholds.get() if control is None else ThresholdStore.validate(control)
        variant_config = ThresholdStore.validate(variant)

        try:
            payload = ExperimentCreatePayload(
                name=name,
                control=control_config,
                variant=variant_config,
                traffic_split=traffic_split,
                min_sample_size=min_sample_size
            )
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid experiment parameters: {e.errors()[0]['msg']}") from e

        experiment = Experiment(
            id=self.id_factory(),
            name=payload.name,
            status=ExperimentStatus.ACTIVE,
            start_date=self.clock(),
            variants=ExperimentVariants(control=payload.control, variant=payload.variant),
            traffic_split=payload.traffic_split,
            min_sample_size=payload.min_sample_size,
            results=ExperimentResults()
        )

        def add(experiments):
            self._ensure_no_active(experiments)
            experiments.append(experiment)

        self.repository.update_all(add)

        logger.info(
            f"Experiment {experiment.id} '{experiment.name}' created: "
            f"control={payload.control.model_dump()}, variant={payload.variant.model_dump()}, "
            f"split={payload.traffic_split}%"
        )
        return experiment

    def pause(self, experiment_id: str) -> Experiment:
        return self._transition(experiment_id, ExperimentStatus.PAUSED)

    def resume(self, experiment_id: str) -> Experiment:
        return self._transition(experiment_id, ExperimentStatus.ACTIVE)

    def complete(self, experiment_id: str) -> Experiment:
        return self._transition(experiment_id, ExperimentStatus.COMPLETED)

    def delete(self, experiment_id: str) -> None:
        def remove(experiments):
            remaining = [e for e in experiments if e.id != experiment_id]
            if len(remaining) == len(experiments):
                raise UnknownExperimentError(experiment_id)
            experiments[:] = remaining

        self.repository.update_all(remove)
        logger.info(f"Experiment {experiment_id} deleted")

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def list(self) -> List[Experiment]:
        return self.repository.load_all()

    def get(self, experiment_id: str) -> Experiment:
        return self._find(self.repository.load_all(), experiment_id)

    def active(self) -> Optional[Experiment]:
        for experiment in self.list():
            if experiment.status == ExperimentStatus.ACTIVE:
                return experiment
        return None

    # -------------------------------------------------------------------------
    # Assignment
    # -------------------------------------------------------------------------

    def assign(self, experiment_id: str, session_token: str) -> Optional[Arm]:
        """
        Sticky arm assignment for a session.

        Returns:
            The arm, or None when the experiment is unknown or not active
            (the caller then does not participate).
        """
        experiment = next(
            (e for e in self.repository.load_all() if e.id == experiment_id), None
        )
        if experiment is None or experiment.status != ExperimentStatus.ACTIVE:
            logger.debug(f"Experiment {experiment_id} not assignable")
            return None

        def draw() -> Arm:
            if self.random_source() * 100 < experiment.traffic_split:
                return Arm.VARIANT
            return Arm.CONTROL

        arm = self.repository.assign_once(session_token, experiment_id, draw)
        logger.debug(f"Session {session_token} in {arm.value} of {experiment_id}")
        return arm

    def assignment(self, session_token: str, experiment_id: str) -> Optional[Arm]:
        """Existing assignment, without drawing a new one."""
        return self.repository.get_assignment(session_token, experiment_id)

    # -------------------------------------------------------------------------
    # Results
    # -------------------------------------------------------------------------

    def record_result(
        self,
        experiment_id: str,
        variant: Arm,
        score: float,
        confidence: float,
        recommendation: Recommendation,
        is_false_positive: bool = False
    ) -> Experiment:
        """
        Accumulate one attempt into an arm's running aggregates.

        Running means use avg' = (avg * (n - 1) + x) / n with the
        post-increment n.

        Raises:
            UnknownExperimentError: no such experiment.
            ValidationError: the experiment is completed.
        """
        variant = Arm(variant)
        recommendation = Recommendation(recommendation)

        def accumulate(experiments):
            experiment = self._find(experiments, experiment_id)
            if experiment.status == ExperimentStatus.COMPLETED:
                raise ValidationError(f"Experiment {experiment_id} is completed")

            stats = experiment.results.for_arm(variant)
            stats.attempts += 1
            n = stats.attempts
            stats.avg_bot_score = (stats.avg_bot_score * (n - 1) + score) / n
            stats.avg_confidence = (stats.avg_confidence * (n - 1) + confidence) / n

            if recommendation == Recommendation.ALLOW:
                stats.allowed += 1
            elif recommendation == Recommendation.CHALLENGE:
                stats.challenged += 1
            elif recommendation == Recommendation.BLOCK:
                stats.blocked += 1
            if is_false_positive:
                stats.false_positives += 1

            return experiment

        return self.repository.update_all(accumulate)

    def adjust_false_positives(self, experiment_id: str, variant: Arm, delta: int) -> bool:
        """
        Apply a reviewer correction to an arm's false-positive counter.

        No-op (returns False) when the experiment is gone or completed.
        """
        def adjust(experiments):
            experiment = next((e for e in experiments if e.id == experiment_id), None)
            if experiment is None or experiment.status == ExperimentStatus.COMPLETED:
                return False

            stats = experiment.results.for_arm(Arm(variant))
            stats.false_positives = min(stats.attempts, max(0, stats.false_positives + delta))
            return True

        return self.repository.update_all(adjust)

    # -------------------------------------------------------------------------
    # Analysis
    # -------------------------------------------------------------------------

    def significance(
        self,
        experiment: ExperimentRef,
        metric: SignificanceMetric = SignificanceMetric.FALSE_POSITIVES
    ) -> SignificanceResult:
        return self.analyzer.significance(self._resolve(experiment), SignificanceMetric(metric))

    def winner_recommendation(self, experiment: ExperimentRef) -> WinnerRecommendation:
        return self.analyzer.winner(self._resolve(experiment))

    def promote(self, experiment_id: str, arm: Optional[Arm] = None) -> ThresholdConfig:
        """
        Copy an arm's thresholds into the live ThresholdStore.

        Args:
            experiment_id: Experiment to promote from.
            arm: Arm to apply; the recommended winner when omitted.

        Raises:
            UnknownExperimentError: no such experiment.
            ValidationError: no arm given and the recommendation is inconclusive.
        """
        experiment = self.get(experiment_id)

        if arm is None:
            recommendation = self.analyzer.winner(experiment)
            try:
                arm = winner_arm(recommendation)
            except ValueError as e:
                raise ValidationError(
                    f"No winner to promote for {experiment_id}: {recommendation.reason}"
                ) from e

        config = experiment.variants.for_arm(Arm(arm))
        applied = self.thresholds.set(config)
        logger.info(f"Promoted {Arm(arm).value} thresholds of experiment {experiment_id} to production")
        return applied

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _transition(self, experiment_id: str, target: ExperimentStatus) -> Experiment:
        def transition(experiments):
            experiment = self._find(experiments, experiment_id)

            if experiment.status == ExperimentStatus.COMPLETED:
                raise ValidationError(f"Experiment {experiment_id} is already completed")
            if experiment.status == target:
                return experiment

            if target == ExperimentStatus.ACTIVE:
                self._ensure_no_active(experiments)
            if target == ExperimentStatus.COMPLETED:
                experiment.end_date = self.clock()

            experiment.status = target
            return experiment

        experiment = self.repository.update_all(transition)

        logger.info(f"Experiment {experiment_id} is now {target.value}")
        return experiment

    def _resolve(self, experiment: ExperimentRef) -> Experiment:
        if isinstance(experiment, Experiment):
            return experiment
        return self.get(experiment)

    @staticmethod
    def _find(experiments: List[Experiment], experiment_id: str) -> Experiment:
        for experiment in experiments:
            if experiment.id == experiment_id:
                return experiment
        raise UnknownExperimentError(experiment_id)

    @staticmethod
    def _ensure_no_active(experiments: List[Experiment]) -> None:
        active = [e for e in experiments if e.status == ExperimentStatus.ACTIVE]
        if active:
            raise ValidationError(f"Experiment {active[0].id} is already active")
