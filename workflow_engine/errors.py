"""
Typed errors for the workflow engine.

Every error carries a machine-readable ``code`` so the HTTP layer and bulk
results can report it without parsing messages.

    WorkflowError
    |
    +-- TransitionError            (returned in results, never raised by transition())
    |   +-- WorkItemNotFoundError
    |   +-- ValidationFailedError
    |   +-- AlreadyTerminalError
    |   +-- VersionConflictError
    |
    +-- StoreUnavailableError      (raised; the whole call fails)
    +-- ImmutabilityViolationError
        +-- AuditImmutableError
        +-- WorkItemDeletionError
"""
from typing import Any, Dict, Optional


class WorkflowError(Exception):
    code: str = "WORKFLOW_ERROR"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message}


class TransitionError(WorkflowError):
    """An expected domain refusal. The caller branches on ``code``."""
    code = "TRANSITION_ERROR"

    def __init__(self, message: str, work_item_id: Optional[str] = None):
        self.work_item_id = work_item_id
        super().__init__(message)


class WorkItemNotFoundError(TransitionError):
    code = "NOT_FOUND"

    def __init__(self, work_item_id: str):
        super().__init__(f"Work item {work_item_id} not found", work_item_id=work_item_id)


class ValidationFailedError(TransitionError):
    code = "VALIDATION_FAILED"

    def __init__(self, message: str, work_item_id: Optional[str] = None, field: Optional[str] = None):
        self.field = field
        super().__init__(message, work_item_id=work_item_id)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        if self.field:
            data["field"] = self.field
        return data


class AlreadyTerminalError(TransitionError):
    code = "ALREADY_TERMINAL"

    def __init__(self, work_item_id: str, status: str):
        self.status = status
        super().__init__(
            f"Work item {work_item_id} is already {status}; no further decisions are accepted",
            work_item_id=work_item_id,
        )


class VersionConflictError(TransitionError):
    code = "VERSION_CONFLICT"

    def __init__(self, work_item_id: str):
        super().__init__(
            f"Work item {work_item_id} was changed by a concurrent decision; reload and retry",
            work_item_id=work_item_id,
        )


class StoreUnavailableError(WorkflowError):
    """The backing store failed. Surfaced to the caller, never retried silently."""
    code = "STORE_UNAVAILABLE"


class ImmutabilityViolationError(WorkflowError):
    code = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"IMMUTABILITY VIOLATION: {entity_type} {entity_id}: {reason}")


class AuditImmutableError(ImmutabilityViolationError):
    code = "AUDIT_IMMUTABLE"


class WorkItemDeletionError(ImmutabilityViolationError):
    code = "WORK_ITEM_DELETE_FORBIDDEN"
