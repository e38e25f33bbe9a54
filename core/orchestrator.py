"""
Gatekeeper Orchestrator

Wires the scoring pipeline together:

    TelemetryCollector -> BotScoreModel -> AttemptLedger
                                        -> ExperimentEngine (if an experiment is active)

Decision Layers:
    recommendation  fixed 35/60 cutoffs inside the BotScoreModel
    decision        live ThresholdStore cutoffs, or the assigned arm's
                    cutoffs while the session participates in an experiment

Scoring never fails because of a ledger or experiment write: those faults
are logged and the outcome is still returned.
"""

from __future__ import annotations

import csv
import io
import logging
from datetime import datetime, timezone
from typing import Iterable, Optional

from core.exceptions import GatekeeperError
from core.experiments import ExperimentEngine
from core.models.bot_score import BotScoreModel
from core.schemas.inputs import Arm, InteractionEvent, Recommendation, SignalSnapshot
from core.schemas.outputs import (
    Attempt,
    LedgerExport,
    LedgerStats,
    ScoringOutcome,
    SessionScoreResponse,
)
from core.sessions import TrackingSessionRegistry
from persistence.attempt_ledger import AttemptLedger
from persistence.threshold_store import ThresholdStore


logger = logging.getLogger(__name__)


CSV_COLUMNS = [
    "id",
    "timestamp",
    "score",
    "confidence",
    "recommendation",
    "decision",
    "is_false_positive",
    "experiment_id",
    "variant",
    "triggers",
]

# Decisions that can be reviewed as false positives
FLAGGED_DECISIONS = (Recommendation.CHALLENGE, Recommendation.BLOCK)


class GatekeeperOrchestrator:
    """
    Scoring entry point for in-process callers and the HTTP layer.

    All collaborators are injected; nothing here is a module-level singleton.
    """

    def __init__(
        self,
        ledger: AttemptLedger,
        thresholds: ThresholdStore,
        experiments: ExperimentEngine,
        model: Optional[BotScoreModel] = None,
        sessions: Optional[TrackingSessionRegistry] = None
    ) -> None:
        self.ledger = ledger
        self.thresholds = thresholds
        self.experiments = experiments
        self.model = model or BotScoreModel()
        self.sessions = sessions or TrackingSessionRegistry(model=self.model)

        logger.info("GatekeeperOrchestrator initialized")

    # -------------------------------------------------------------------------
    # Scoring
    # -------------------------------------------------------------------------

    def score(self, snapshot: SignalSnapshot) -> ScoringOutcome:
        """Pure scoring of a snapshot; nothing is recorded."""
        return self.model.score(snapshot)

    def complete_attempt(self, outcome: ScoringOutcome, session_token: str) -> SessionScoreResponse:
        """
        Record a finished scoring and route it to the active experiment.

        Args:
            outcome: Result of the bot score model.
            session_token: Caller identity used for sticky experiment assignment.

        Returns:
            SessionScoreResponse with the live decision and ledger id.
        """
        decision = self.thresholds.classify(outcome.score)
        experiment_id: Optional[str] = None
        arm: Optional[Arm] = None

        try:
            active = self.experiments.active()
            if active is not None:
                arm = self.experiments.assign(active.id, session_token)
                if arm is not None:
                    experiment_id = active.id
                    decision = active.variants.for_arm(arm).classify(outcome.score)
        except GatekeeperError as e:
            logger.error(f"Experiment assignment failed for {session_token}: {e}")
            experiment_id, arm = None, None

        attempt_id = self.ledger.record(
            outcome,
            decision=decision,
            experiment_id=experiment_id,
            variant=arm
        )

        if experiment_id is not None and arm is not None:
            try:
                self.experiments.record_result(
                    experiment_id,
                    arm,
                    outcome.score,
                    outcome.confidence,
                    decision,
                    False
                )
            except GatekeeperError as e:
                logger.error(f"Failed to record experiment result for {experiment_id}: {e}")

        return SessionScoreResponse(
            outcome=outcome,
            decision=decision,
            attempt_id=attempt_id,
            experiment_id=experiment_id,
            variant=arm
        )

    # -------------------------------------------------------------------------
    # Tracking Sessions
    # -------------------------------------------------------------------------

    def start_session(self, session_token: str, now: Optional[float] = None) -> None:
        self.sessions.start(session_token, now)

    def stream_events(self, session_token: str, events: Iterable[InteractionEvent]) -> int:
        return self.sessions.dispatch(session_token, events)

    def peek_session(self, session_token: str, now: Optional[float] = None) -> Optional[ScoringOutcome]:
        """Pre-submit gating score; nothing is recorded."""
        return self.sessions.peek(session_token, now)

    def stop_session(
        self,
        session_token: str,
        now: Optional[float] = None
    ) -> Optional[SessionScoreResponse]:
        """Finalize a session, record it and return the decision; None if not tracking."""
        outcome = self.sessions.stop(session_token, now)
        if outcome is None:
            return None
        return self.complete_attempt(outcome, session_token)

    # -------------------------------------------------------------------------
    # Reviewer Corrections
    # -------------------------------------------------------------------------

    def mark_false_positive(self, attempt_id: str, is_false_positive: bool) -> Optional[Attempt]:
        """
        Flag or unflag an attempt, keeping experiment counters in step.

        Only attempts the arm challenged or blocked count towards its false
        positives; flags on attempts it allowed stay in the ledger only.

        Returns:
            The updated attempt, or None if the id is unknown.
        """
        previous = self.ledger.mark_false_positive(attempt_id, is_false_positive)
        if previous is None:
            return None

        served = previous.decision or previous.recommendation
        changed = previous.is_false_positive != is_false_positive
        routed = previous.experiment_id and previous.variant
        if changed and routed and served in FLAGGED_DECISIONS:
            delta = 1 if is_false_positive else -1
            if not self.experiments.adjust_false_positives(previous.experiment_id, previous.variant, delta):
                logger.debug(
                    f"Experiment {previous.experiment_id} closed or gone, "
                    f"FP correction for {attempt_id} not propagated"
                )

        return previous.model_copy(update={"is_false_positive": is_false_positive})

    # -------------------------------------------------------------------------
    # Export / Import
    # -------------------------------------------------------------------------

    def export(self) -> LedgerExport:
        return LedgerExport(
            export_date=datetime.now(timezone.utc),
            thresholds=self.thresholds.get(),
            stats=self.ledger.stats(),
            attempts=self.ledger.list()
        )

    def export_csv(self) -> str:
        """Attempts as comma-separated text; triggers are joined with '; '."""
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(CSV_COLUMNS)
        for attempt in self.ledger.list():
            writer.writerow([
                attempt.id,
                f"{attempt.timestamp:.0f}",
                attempt.score,
                attempt.confidence,
                attempt.recommendation.value,
                (attempt.decision or attempt.recommendation).value,
                str(attempt.is_false_positive).lower(),
                attempt.experiment_id or "",
                attempt.variant.value if attempt.variant else "",
                "; ".join(attempt.triggers),
            ])
        return buffer.getvalue()

    def import_export(self, data: LedgerExport) -> LedgerStats:
        """
        Restore thresholds and attempts from an export; returns the resulting stats.

        The thresholds are validated before anything is written and applied
        only after the ledger write succeeds. If applying them fails, the
        previous attempts are restored, so a failed import changes nothing.

        Raises:
            ValidationError: the exported thresholds are invalid.
            StorageError: the ledger could not be written (CapacityError
                when over quota).
        """
        thresholds = ThresholdStore.validate(data.thresholds)
        previous = self.ledger.list()

        self.ledger.replace_all(data.attempts)
        try:
            self.thresholds.set(thresholds)
        except GatekeeperError:
            logger.error("Threshold import failed, restoring previous attempts")
            self.ledger.replace_all(previous)
            raise

        return self.ledger.stats()
