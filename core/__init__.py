"""
Gatekeeper Core

Central module exports for the Gatekeeper bot scoring system.

Service classes live in their own modules (core.orchestrator,
core.experiments, core.sessions) and are imported from there; this package
must not import anything that depends on persistence.
"""

from core.exceptions import (
    CapacityError,
    GatekeeperError,
    StorageError,
    UnknownExperimentError,
    ValidationError,
)

__all__ = [
    "GatekeeperError",
    "ValidationError",
    "UnknownExperimentError",
    "StorageError",
    "CapacityError",
]
