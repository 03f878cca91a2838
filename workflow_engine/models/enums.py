"""Enums for the workflow engine - these define the valid kinds, statuses and actions."""
from enum import Enum
from typing import Dict, FrozenSet, Tuple


class WorkItemKind(str, Enum):
    """The originating console screen of a work item."""
    COMPLIANCE = "compliance"
    MERCH_ALERT = "merch_alert"
    RECON_EXCEPTION = "recon_exception"
    PROCUREMENT = "procurement"


class WorkItemStatus(str, Enum):
    """Lifecycle status. Every kind uses a subset of these."""
    PENDING = "Pending"
    IN_REVIEW = "InReview"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    EXPIRED = "Expired"
    RESOLVED = "Resolved"
    DISMISSED = "Dismissed"


TERMINAL_STATUSES: FrozenSet[WorkItemStatus] = frozenset({
    WorkItemStatus.APPROVED,
    WorkItemStatus.REJECTED,
    WorkItemStatus.EXPIRED,
    WorkItemStatus.RESOLVED,
    WorkItemStatus.DISMISSED,
})

ACTIVE_STATUSES: FrozenSet[WorkItemStatus] = frozenset({
    WorkItemStatus.PENDING,
    WorkItemStatus.IN_REVIEW,
})


class DecisionAction(str, Enum):
    """Decisions a caller can submit against a work item."""
    APPROVE = "Approve"
    REJECT = "Reject"
    RESOLVE = "Resolve"
    DISMISS = "Dismiss"
    SNOOZE = "Snooze"
    INVESTIGATE = "Investigate"
    EXPIRE = "Expire"


# Allowed actions per kind. Anything outside this table is refused.
ACTIONS_BY_KIND: Dict[WorkItemKind, FrozenSet[DecisionAction]] = {
    WorkItemKind.COMPLIANCE: frozenset({
        DecisionAction.APPROVE, DecisionAction.REJECT, DecisionAction.EXPIRE,
    }),
    WorkItemKind.PROCUREMENT: frozenset({
        DecisionAction.APPROVE, DecisionAction.REJECT, DecisionAction.EXPIRE,
    }),
    WorkItemKind.MERCH_ALERT: frozenset({
        DecisionAction.RESOLVE, DecisionAction.DISMISS, DecisionAction.SNOOZE,
    }),
    WorkItemKind.RECON_EXCEPTION: frozenset({
        DecisionAction.INVESTIGATE, DecisionAction.RESOLVE, DecisionAction.DISMISS,
    }),
}

# Kinds whose urgency is deadline-bound (approver chains) rather than recency-bound.
APPROVAL_CHAIN_KINDS: FrozenSet[WorkItemKind] = frozenset({
    WorkItemKind.COMPLIANCE,
    WorkItemKind.PROCUREMENT,
})

# Ordered lowest to highest. All scales have the same length so ranks compare across kinds.
SEVERITY_SCALES: Dict[WorkItemKind, Tuple[str, ...]] = {
    WorkItemKind.COMPLIANCE: ("low", "medium", "high"),
    WorkItemKind.MERCH_ALERT: ("info", "warning", "critical"),
    WorkItemKind.RECON_EXCEPTION: ("low", "medium", "high"),
    WorkItemKind.PROCUREMENT: ("low", "normal", "high"),
}

RECON_RESOLUTION_TYPES: FrozenSet[str] = frozenset({"investigate", "resolve", "write_off", "retry_match"})


def severity_rank(kind: WorkItemKind, severity: str) -> int:
    """Position of ``severity`` in the kind's scale; -1 when it is not on the scale."""
    scale = SEVERITY_SCALES[WorkItemKind(kind)]
    value = (severity or "").strip().lower()
    return scale.index(value) if value in scale else -1


class AuditAction(str, Enum):
    """Event types written to the audit trail."""
    CREATED = "Created"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    INVESTIGATED = "Investigated"
    RESOLVED = "Resolved"
    DISMISSED = "Dismissed"
    SNOOZED = "Snoozed"
    EXPIRED = "Expired"
    BULK_APPROVED = "BulkApproved"
    BULK_REJECTED = "BulkRejected"
    BULK_RESOLVED = "BulkResolved"
    BULK_DISMISSED = "BulkDismissed"
    VIOLATION = "Violation"
    SYSTEM_CHECK = "SystemCheck"


class AuditResult(str, Enum):
    """Pass/fail classification, fixed when the entry is written."""
    PASS = "Pass"
    FAIL = "Fail"


SINGLE_AUDIT_ACTIONS: Dict[DecisionAction, AuditAction] = {
    DecisionAction.APPROVE: AuditAction.APPROVED,
    DecisionAction.REJECT: AuditAction.REJECTED,
    DecisionAction.RESOLVE: AuditAction.RESOLVED,
    DecisionAction.DISMISS: AuditAction.DISMISSED,
    DecisionAction.SNOOZE: AuditAction.SNOOZED,
    DecisionAction.INVESTIGATE: AuditAction.INVESTIGATED,
    DecisionAction.EXPIRE: AuditAction.EXPIRED,
}

BULK_AUDIT_ACTIONS: Dict[DecisionAction, AuditAction] = {
    DecisionAction.APPROVE: AuditAction.BULK_APPROVED,
    DecisionAction.REJECT: AuditAction.BULK_REJECTED,
    DecisionAction.RESOLVE: AuditAction.BULK_RESOLVED,
    DecisionAction.DISMISS: AuditAction.BULK_DISMISSED,
}


def audit_action_for(action: DecisionAction, via_bulk: bool = False) -> AuditAction:
    if via_bulk and action in BULK_AUDIT_ACTIONS:
        return BULK_AUDIT_ACTIONS[action]
    return SINGLE_AUDIT_ACTIONS[action]
