"""
Audit trail model.

One immutable, append-only entry per committed transition, plus entries for
externally reported violations and system checks.
"""
import logging

from sqlalchemy import Column, String, Integer, DateTime, Enum as SQLEnum, event
from workflow_engine.database import Base
from workflow_engine.errors import AuditImmutableError
from workflow_engine.models.enums import AuditAction, AuditResult
from workflow_engine.timeutil import utcnow

logger = logging.getLogger(__name__)


class AuditEntry(Base):
    """
    Immutable audit entry for reconstructing who decided what, and when.

    Invariants:
    - Once written, never edited or deleted
    - result is classified at write time and stored, never recomputed
    """
    __tablename__ = "audit_entries"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    work_item_id = Column(String(32), nullable=True, index=True)  # Null only for free-standing system checks
    entity_label = Column(String, nullable=True)  # e.g. "Price Change: Coffee Beans 1kg"
    actor = Column(String, nullable=False, index=True)
    action = Column(SQLEnum(AuditAction), nullable=False, index=True)
    result = Column(SQLEnum(AuditResult), nullable=False, index=True)
    timestamp = Column(DateTime, nullable=False, default=utcnow, index=True)
    result_summary = Column(String, nullable=False)


@event.listens_for(AuditEntry, "before_update")
def _refuse_audit_update(mapper, connection, target):
    logger.error(
        "immutability_violation_blocked",
        extra={"entity_type": "AuditEntry", "entity_id": str(target.id), "operation": "UPDATE"},
    )
    raise AuditImmutableError(
        entity_type="AuditEntry",
        entity_id=str(target.id),
        reason="Audit entries are immutable and cannot be modified",
    )


@event.listens_for(AuditEntry, "before_delete")
def _refuse_audit_delete(mapper, connection, target):
    logger.error(
        "immutability_violation_blocked",
        extra={"entity_type": "AuditEntry", "entity_id": str(target.id), "operation": "DELETE"},
    )
    raise AuditImmutableError(
        entity_type="AuditEntry",
        entity_id=str(target.id),
        reason="Audit entries cannot be deleted",
    )
