"""
Gatekeeper Threshold Store

The live challenge/block cutoffs read by downstream authentication
decisions and written manually or by promoting an experiment arm.

Key Schema:
    BOT_THRESHOLDS:live    # JSON {"challenge": float, "block": float}
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, Union

from pydantic import ValidationError as PydanticValidationError

from core.exceptions import StorageError, ValidationError
from core.schemas.inputs import Recommendation, ThresholdConfig
from .storage import KeyValueStore


logger = logging.getLogger(__name__)


DEFAULT_THRESHOLDS = ThresholdConfig(challenge=35, block=60)


def _seed_defaults(current):
    # Another writer may have stored a config since our read
    if current is None:
        defaults = DEFAULT_THRESHOLDS.model_dump()
        return defaults, defaults
    return None, current


class ThresholdStore:
    """
    Process-wide threshold pair, versioned implicitly by overwrite.

    Writes are validated before anything is persisted, so a rejected
    config leaves the stored one untouched.
    """

    KEY: str = "BOT_THRESHOLDS:live"

    def __init__(self, store: KeyValueStore) -> None:
        self.store = store

    def get(self) -> ThresholdConfig:
        """Live config, seeded with the defaults on first use."""
        try:
            data = self.store.get(self.KEY)
        except StorageError as e:
            logger.error(f"Failed to load thresholds, using defaults: {e}")
            return DEFAULT_THRESHOLDS.model_copy()

        if data is None:
            try:
                data = self.store.update(self.KEY, _seed_defaults)
            except StorageError as e:
                logger.warning(f"Failed to seed default thresholds: {e}")
                return DEFAULT_THRESHOLDS.model_copy()

        try:
            return ThresholdConfig.model_validate(data)
        except PydanticValidationError as e:
            logger.error(f"Stored thresholds invalid, using defaults: {e}")
            return DEFAULT_THRESHOLDS.model_copy()

    def set(self, config: Union[ThresholdConfig, Mapping[str, Any]]) -> ThresholdConfig:
        """
        Replace the live config.

        Raises:
            ValidationError: challenge >= block or either value out of [0, 100].
        """
        validated = self.validate(config)
        self._write(validated)
        logger.info(
            f"Thresholds updated: challenge={validated.challenge}, block={validated.block}"
        )
        return validated

    def reset(self) -> ThresholdConfig:
        """Restore the default pair."""
        return self.set(DEFAULT_THRESHOLDS)

    def classify(self, score: float) -> Recommendation:
        """Classify a score under the live cutoffs."""
        return self.get().classify(score)

    @staticmethod
    def validate(config: Union[ThresholdConfig, Mapping[str, Any]]) -> ThresholdConfig:
        """Re-validate a config (model instances may bypass validation via model_construct)."""
        data = config.model_dump() if isinstance(config, ThresholdConfig) else dict(config)
        try:
            return ThresholdConfig.model_validate(data)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid threshold config: {e.errors()[0]['msg']}") from e

    def _write(self, config: ThresholdConfig) -> None:
        self.store.set(self.KEY, config.model_dump())
