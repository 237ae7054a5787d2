"""Error types raised by the batching core."""

from __future__ import annotations


class BatchError(Exception):
    """Base class for batching failures."""


class InvalidConfiguration(BatchError, ValueError):
    """A tunable is out of range; rejected before any dispatch."""


class OpenFailed(BatchError):
    """The external viewer for a session could not be created."""

    def __init__(self, batch_id: str, reason: str):
        super().__init__(f"could not open session {batch_id}: {reason}")
        self.batch_id = batch_id
        self.reason = reason


class SchedulingInconsistency(BatchError):
    """A slice at the dispatch cursor was already marked dispatched."""

    def __init__(self, slice_number: int):
        super().__init__(f"slice {slice_number} is already dispatched")
        self.slice_number = slice_number


class DispatchInProgress(BatchError):
    """Another round or window command is running against the same scheduler."""
