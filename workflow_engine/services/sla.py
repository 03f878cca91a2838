"""
SLA tracking.

Deadlines are assigned by the producer at creation and never recomputed here.
Breach is a read-time fact derived from (sla_deadline, status, now); it changes
ordering and counts but never the stored status. Moving a breached item out of
Pending takes an explicit Expire decision, which ``expire_breached`` issues on
behalf of a scheduler tick.
"""
import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from workflow_engine.models.domain import WorkItem
from workflow_engine.models.enums import ACTIONS_BY_KIND, WorkItemKind, WorkItemStatus, DecisionAction
from workflow_engine.timeutil import as_naive_utc, resolve_now

logger = logging.getLogger(__name__)

SLA_SYSTEM_ACTOR = "system:sla-tick"


def deadline_for(work_item: WorkItem) -> Optional[datetime]:
    return work_item.sla_deadline


def is_breached_at(sla_deadline: Optional[datetime], status: WorkItemStatus, now: datetime) -> bool:
    """Breached iff the item is still Pending and ``now`` is past its deadline."""
    if status != WorkItemStatus.PENDING or sla_deadline is None:
        return False
    return resolve_now(now) > as_naive_utc(sla_deadline)


def is_breached(work_item: WorkItem, now: datetime) -> bool:
    return is_breached_at(work_item.sla_deadline, work_item.status, now)


def _breached_query(db: Session, now: datetime, kind: Optional[WorkItemKind] = None):
    now = resolve_now(now)
    query = db.query(WorkItem).filter(
        WorkItem.status == WorkItemStatus.PENDING,
        WorkItem.sla_deadline.isnot(None),
        WorkItem.sla_deadline < now,
    )
    if kind is not None:
        query = query.filter(WorkItem.kind == WorkItemKind(kind))
    return query


def breached_count(db: Session, now: datetime, kind: Optional[WorkItemKind] = None) -> int:
    """Number of overdue items, for the "N overdue" KPI tile."""
    return _breached_query(db, now, kind).with_entities(func.count(WorkItem.id)).scalar() or 0


def breached_ids(db: Session, now: datetime, kind: Optional[WorkItemKind] = None) -> List[str]:
    rows = _breached_query(db, now, kind).with_entities(WorkItem.id).order_by(WorkItem.sla_deadline).all()
    return [row[0] for row in rows]


def expire_breached(db: Session, now: datetime, actor: str = SLA_SYSTEM_ACTOR) -> List[str]:
    """
    Expire every breached item whose kind accepts the Expire action.

    Each expiry goes through the state machine, so each one is audited on its
    own. Items that lose a race with a human decision are skipped.
    """
    # Deferred: state_machine imports this module.
    from workflow_engine.services.state_machine import StateMachine

    now = resolve_now(now)
    expirable_kinds = [kind for kind, actions in ACTIONS_BY_KIND.items() if DecisionAction.EXPIRE in actions]
    sm = StateMachine(db)
    expired = []
    for work_item_id in breached_ids(db, now):
        work_item = db.get(WorkItem, work_item_id)
        if work_item is None or work_item.kind not in expirable_kinds:
            continue
        result = sm.transition(work_item, DecisionAction.EXPIRE, actor, now=now)
        if result.ok:
            expired.append(work_item_id)
        else:
            logger.info(
                "SLA sweep skipped work item %s: %s", work_item_id, result.error.code,
                extra={"work_item_id": work_item_id},
            )
    if expired:
        logger.info("SLA sweep expired %d work item(s)", len(expired))
    return expired
