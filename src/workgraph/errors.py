"""Domain errors raised by graph operations and the orchestrator."""

from __future__ import annotations


class WorkgraphError(RuntimeError):
    """Base class for workgraph failures surfaced to callers."""


class TaskNotFoundError(WorkgraphError):
    """Referenced task id does not exist in the graph."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class InvalidTransitionError(WorkgraphError):
    """Requested status change is not allowed from the current status."""


class ClaimConflictError(InvalidTransitionError):
    """Task was no longer claimable when the claim was attempted."""


class GraphStoreError(WorkgraphError):
    """Graph file could not be read or written."""


class SpawnError(WorkgraphError):
    """Worker process could not be launched, with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class ServiceError(WorkgraphError):
    """Control channel request failed or service is unreachable."""
