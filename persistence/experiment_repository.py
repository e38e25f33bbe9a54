"""
Gatekeeper Experiment Repository

Key-value persistence for threshold experiments and sticky session
assignments.

Key Schemas:
    BOT_EXPERIMENTS:all              # JSON list of experiments
    BOT_ASSIGNMENT:{session_token}   # JSON {experiment_id: "control"|"variant"} with TTL

Both keys are only changed through KeyValueStore.update, so concurrent
workers sharing one backend never lose a counter or an assignment.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from core.schemas.inputs import Arm
from core.schemas.outputs import Experiment
from .storage import KeyValueStore


logger = logging.getLogger(__name__)


class ExperimentRepository:
    """Data access for experiments and assignments."""

    EXPERIMENTS_KEY: str = "BOT_EXPERIMENTS:all"
    ASSIGNMENT_TTL: int = 1800  # 30 minutes, a sign-in session

    def __init__(self, store: KeyValueStore) -> None:
        self.store = store

    # -------------------------------------------------------------------------
    # Key Builders
    # -------------------------------------------------------------------------

    def _assignment_key(self, session_token: str) -> str:
        return f"BOT_ASSIGNMENT:{session_token}"

    # -------------------------------------------------------------------------
    # Experiments
    # -------------------------------------------------------------------------

    def load_all(self) -> List[Experiment]:
        return self._parse(self.store.get(self.EXPERIMENTS_KEY))

    def save_all(self, experiments: List[Experiment]) -> None:
        self.store.set(self.EXPERIMENTS_KEY, self._dump(experiments))

    def update_all(self, mutator: Callable[[List[Experiment]], Any]) -> Any:
        """
        Atomically change the experiment list.

        The mutator edits the parsed list in place and returns a result.
        Nothing is written when the list is left unchanged or the mutator
        raises. It may run more than once if another writer gets in first.
        """
        def apply(data):
            experiments = self._parse(data)
            before = self._dump(experiments)
            result = mutator(experiments)
            after = self._dump(experiments)
            return (after if after != before else None), result

        return self.store.update(self.EXPERIMENTS_KEY, apply)

    @staticmethod
    def _parse(data) -> List[Experiment]:
        if not data:
            return []

        experiments = []
        for item in data:
            try:
                experiments.append(Experiment.model_validate(item))
            except PydanticValidationError as e:
                logger.warning(f"Skipping malformed experiment record: {e}")
        return experiments

    @staticmethod
    def _dump(experiments: List[Experiment]) -> list:
        return [e.model_dump(mode="json") for e in experiments]

    # -------------------------------------------------------------------------
    # Assignments
    # -------------------------------------------------------------------------

    def get_assignments(self, session_token: str) -> Dict[str, Arm]:
        return self._parse_assignments(
            session_token, self.store.get(self._assignment_key(session_token))
        )

    def get_assignment(self, session_token: str, experiment_id: str) -> Optional[Arm]:
        return self.get_assignments(session_token).get(experiment_id)

    def assign_once(self, session_token: str, experiment_id: str, draw: Callable[[], Arm]) -> Arm:
        """
        Return the session's arm for an experiment, drawing one if it has none.

        The check and the write happen in one atomic update, so concurrent
        first requests for the same token all get the same arm. `draw` is
        called again if the update is retried.
        """
        def assign(data):
            assignments = self._parse_assignments(session_token, data)
            existing = assignments.get(experiment_id)
            if existing is not None:
                return None, existing

            arm = draw()
            assignments[experiment_id] = arm
            return {k: v.value for k, v in assignments.items()}, arm

        return self.store.update(
            self._assignment_key(session_token), assign, ttl=self.ASSIGNMENT_TTL
        )

    @staticmethod
    def _parse_assignments(session_token: str, data) -> Dict[str, Arm]:
        if not data:
            return {}
        assignments = {}
        for experiment_id, arm in data.items():
            try:
                assignments[experiment_id] = Arm(arm)
            except ValueError:
                logger.warning(f"Ignoring invalid arm '{arm}' for session {session_token}")
        return assignments
