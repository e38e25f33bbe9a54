"""
Gatekeeper Exceptions

Fault taxonomy shared by the scoring, ledger and experiment layers.
"Not enough data" is never an exception: callers get None or an
inconclusive result instead.
"""


class GatekeeperError(Exception):
    """Base class for all Gatekeeper faults."""
    pass


class ValidationError(GatekeeperError, ValueError):
    """Raised when a threshold pair or experiment parameter is rejected."""
    pass


class UnknownExperimentError(ValidationError):
    """Raised when an experiment id does not exist."""

    def __init__(self, experiment_id: str) -> None:
        super().__init__(f"Unknown experiment: {experiment_id}")
        self.experiment_id = experiment_id


class StorageError(GatekeeperError):
    """Raised when the key-value backend fails for reasons other than capacity."""
    pass


class CapacityError(StorageError):
    """Raised when a write exceeds the storage quota."""
    pass
