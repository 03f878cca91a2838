"""Domain model - the single generalized work item shared by every workflow screen."""
import logging
import uuid

from sqlalchemy import Column, String, Integer, DateTime, Enum as SQLEnum, JSON, event
from workflow_engine.database import Base
from workflow_engine.errors import WorkItemDeletionError
from workflow_engine.models.enums import WorkItemKind, WorkItemStatus, TERMINAL_STATUSES
from workflow_engine.timeutil import utcnow

logger = logging.getLogger(__name__)


def _new_id() -> str:
    return uuid.uuid4().hex


class WorkItem(Base):
    """
    A request, alert, exception or task moving through a small status lifecycle.

    Invariants enforced here:
    - Rows are never deleted ("clearing" is a view filter)
    - version is bumped on every flush; a stale write raises StaleDataError

    Invariants enforced by the state machine:
    - No transition leaves a terminal status
    - 0 <= current_step <= len(approver_chain)
    - updated_at >= created_at and changes with every committed transition
    """
    __tablename__ = "work_items"

    id = Column(String(32), primary_key=True, default=_new_id)
    kind = Column(SQLEnum(WorkItemKind), nullable=False, index=True)
    category = Column(String, nullable=False, index=True)
    title = Column(String, nullable=False)
    description = Column(String, nullable=True)
    severity = Column(String, nullable=False)
    status = Column(SQLEnum(WorkItemStatus), nullable=False, default=WorkItemStatus.PENDING, index=True)

    # Attribution, immutable after creation
    requested_by = Column(String, nullable=False)
    requester_role = Column(String, nullable=True)

    # Timestamps
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow)
    sla_deadline = Column(DateTime, nullable=True)  # Set by the producer, never recomputed
    decided_at = Column(DateTime, nullable=True)  # Terminal transitions only
    snoozed_until = Column(DateTime, nullable=True)

    # Approver chain; empty means single-step
    approver_chain = Column(JSON, nullable=False, default=list)
    current_step = Column(Integer, nullable=False, default=0)

    # Opaque to the engine, carried for display and navigation
    linked_entities = Column(JSON, nullable=False, default=dict)
    details = Column(JSON, nullable=False, default=dict)

    # Set only on the terminal transition
    decision_note = Column(String, nullable=True)
    rejection_reason = Column(String, nullable=True)
    resolution_type = Column(String, nullable=True)

    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_single_step(self) -> bool:
        return not self.approver_chain

    @property
    def current_approver(self):
        chain = self.approver_chain or []
        if self.status != WorkItemStatus.PENDING or self.current_step >= len(chain):
            return None
        return chain[self.current_step]

    def __repr__(self) -> str:
        return f"<WorkItem {self.id} {self.kind.value if self.kind else None} {self.status}>"


@event.listens_for(WorkItem, "before_delete")
def _refuse_work_item_delete(mapper, connection, target):
    logger.error(
        "immutability_violation_blocked",
        extra={"entity_type": "WorkItem", "entity_id": str(target.id), "operation": "DELETE"},
    )
    raise WorkItemDeletionError(
        entity_type="WorkItem",
        entity_id=str(target.id),
        reason="Work items are never deleted; filter them out of the view instead",
    )
