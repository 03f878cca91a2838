"""
Audit recorder.

Entries are flushed into the caller's transaction so a transition and its
audit entry commit together; the recorder itself never commits except for
free-standing violation/system-check reports.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from workflow_engine.errors import StoreUnavailableError, ValidationFailedError
from workflow_engine.models.audit import AuditEntry
from workflow_engine.models.enums import AuditAction, AuditResult
from workflow_engine.timeutil import as_naive_utc, range_end, utcnow

logger = logging.getLogger(__name__)

CHECK_ACTIONS = frozenset({AuditAction.VIOLATION, AuditAction.SYSTEM_CHECK})


def classify(action: AuditAction) -> AuditResult:
    """Result recorded for an action when the caller does not supply one."""
    if action == AuditAction.VIOLATION:
        return AuditResult.FAIL
    return AuditResult.PASS


@dataclass
class AuditQuery:
    work_item_id: Optional[str] = None
    actor: Optional[str] = None
    action: Optional[AuditAction] = None
    result: Optional[AuditResult] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    search: Optional[str] = None


class AuditRecorder:
    """Append-only writer and query surface for the audit trail."""

    def __init__(self, db: Session):
        self.db = db

    def record(
        self,
        work_item_id: Optional[str],
        actor: str,
        action: AuditAction,
        summary: str,
        result: Optional[AuditResult] = None,
        entity_label: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> AuditEntry:
        entry = AuditEntry(
            work_item_id=work_item_id,
            entity_label=entity_label,
            actor=actor,
            action=AuditAction(action),
            result=AuditResult(result) if result is not None else classify(AuditAction(action)),
            timestamp=timestamp or utcnow(),
            result_summary=summary,
        )
        self.db.add(entry)
        self.db.flush()
        return entry

    def record_check(
        self,
        actor: str,
        action: AuditAction,
        summary: str,
        work_item_id: Optional[str] = None,
        entity_label: Optional[str] = None,
        result: Optional[AuditResult] = None,
    ) -> AuditEntry:
        """Record an externally reported violation or system check and commit it."""
        action = AuditAction(action)
        if action not in CHECK_ACTIONS:
            raise ValidationFailedError(
                f"Only {', '.join(sorted(a.value for a in CHECK_ACTIONS))} entries can be reported directly",
                field="action",
            )
        if not (summary or "").strip():
            raise ValidationFailedError("A summary is required", field="summary")
        try:
            entry = self.record(
                work_item_id, actor, action, summary.strip(), result=result, entity_label=entity_label,
            )
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error("Failed to record %s entry", action.value, exc_info=True)
            raise StoreUnavailableError(f"Audit store unavailable: {exc.__class__.__name__}") from exc
        self.db.refresh(entry)
        logger.info(
            "Recorded %s (%s) by %s", action.value, entry.result.value, actor,
            extra={"work_item_id": work_item_id, "audit_id": entry.id},
        )
        return entry

    def _filtered(self, criteria: AuditQuery):
        query = self.db.query(AuditEntry)
        if criteria.work_item_id:
            query = query.filter(AuditEntry.work_item_id == criteria.work_item_id)
        if criteria.actor:
            query = query.filter(AuditEntry.actor == criteria.actor)
        if criteria.action:
            query = query.filter(AuditEntry.action == AuditAction(criteria.action))
        if criteria.result:
            query = query.filter(AuditEntry.result == AuditResult(criteria.result))
        if criteria.date_from:
            query = query.filter(AuditEntry.timestamp >= as_naive_utc(criteria.date_from))
        if criteria.date_to:
            query = query.filter(AuditEntry.timestamp < range_end(criteria.date_to))
        if criteria.search and criteria.search.strip():
            term = criteria.search.strip()
            query = query.filter(or_(
                AuditEntry.result_summary.icontains(term, autoescape=True),
                AuditEntry.entity_label.icontains(term, autoescape=True),
                AuditEntry.actor.icontains(term, autoescape=True),
                AuditEntry.work_item_id.icontains(term, autoescape=True),
            ))
        return query

    def query(self, criteria: Optional[AuditQuery] = None, offset: int = 0, limit: Optional[int] = None) -> List[AuditEntry]:
        """Matching entries, newest first."""
        query = self._filtered(criteria or AuditQuery()).order_by(
            AuditEntry.timestamp.desc(), AuditEntry.id.desc()
        )
        if offset:
            query = query.offset(offset)
        if limit is not None:
            query = query.limit(limit)
        return query.all()

    def count(self, criteria: Optional[AuditQuery] = None) -> int:
        return self._filtered(criteria or AuditQuery()).count()

    def history(self, work_item_id: str) -> List[AuditEntry]:
        """Full trail of one work item, oldest first."""
        return self.db.query(AuditEntry).filter(
            AuditEntry.work_item_id == work_item_id
        ).order_by(AuditEntry.timestamp.asc(), AuditEntry.id.asc()).all()
