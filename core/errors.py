"""Engine-level exceptions. Per-schedule problems never use these; they become statuses."""
from __future__ import annotations


class EngineError(Exception):
    """Base exception for the cadence engine."""


class BatchQueryError(EngineError):
    """The store could not list due schedules; the whole run is aborted."""

    def __init__(self, message: str = "Failed to query schedules"):
        super().__init__(message)


class CadenceNotFoundError(EngineError):
    def __init__(self, cadence_id: str):
        self.cadence_id = cadence_id
        super().__init__(f"Cadence not found: {cadence_id}")


class CadenceHasNoStepsError(EngineError):
    def __init__(self, cadence_id: str):
        self.cadence_id = cadence_id
        super().__init__(f"Cadence has no steps: {cadence_id}")
