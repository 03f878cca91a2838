"""
Entity store: the read side of the workflow plus the producer entry point.

Listings are filtered in SQL and ordered in Python (the ranker, or a single
caller-chosen field) with a stable sort. Reads never change status.
"""
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from workflow_engine.errors import StoreUnavailableError, ValidationFailedError, WorkItemNotFoundError
from workflow_engine.models.domain import WorkItem
from workflow_engine.models.enums import (
    ACTIVE_STATUSES,
    SEVERITY_SCALES,
    AuditAction,
    WorkItemKind,
    WorkItemStatus,
    severity_rank,
)
from workflow_engine.services import ranking
from workflow_engine.services.audit import AuditRecorder
from workflow_engine.services.sla import breached_count
from workflow_engine.timeutil import as_naive_utc, range_end, resolve_now, start_of_day

logger = logging.getLogger(__name__)

STATUS_ACTIVE = "active"
STATUS_ALL = "all"
STATUS_SNOOZED = "snoozed"

SORTABLE_FIELDS = (
    "created_at",
    "updated_at",
    "sla_deadline",
    "severity",
    "status",
    "kind",
    "category",
    "title",
)


@dataclass
class WorkItemFilter:
    """Conjunction of optional predicates. ``None`` means "no constraint"."""
    kind: Optional[WorkItemKind] = None
    category: Optional[str] = None
    status: Optional[str] = None  # a WorkItemStatus value, "active", "snoozed" or "all"
    severity: Optional[str] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    search: Optional[str] = None


@dataclass(frozen=True)
class SortSpec:
    field: str
    descending: bool = False

    @classmethod
    def parse(cls, raw: Optional[str]) -> Optional["SortSpec"]:
        """
        Parse ``field``, ``-field``, ``field:asc`` or ``field:desc``.

        Returns None for an empty value, meaning the default ranked order.
        """
        value = (raw or "").strip()
        if not value:
            return None
        descending = False
        if value.startswith("-"):
            descending, value = True, value[1:]
        elif ":" in value:
            value, direction = value.split(":", 1)
            direction = direction.strip().lower()
            if direction not in ("asc", "desc"):
                raise ValidationFailedError(f"Unknown sort direction '{direction}'", field="sort")
            descending = direction == "desc"
        value = value.strip()
        # Accept the camelCase names the console sends.
        value = {"createdAt": "created_at", "updatedAt": "updated_at", "slaDeadline": "sla_deadline"}.get(value, value)
        if value not in SORTABLE_FIELDS:
            raise ValidationFailedError(
                f"Cannot sort by '{value}'; choose one of: {', '.join(SORTABLE_FIELDS)}", field="sort"
            )
        return cls(field=value, descending=descending)


@dataclass
class Page:
    items: List[WorkItem]
    total: int
    page: int
    limit: int

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


@dataclass
class WorkItemSummary:
    pending_count: int = 0
    approved_today_count: int = 0
    rejected_today_count: int = 0
    breached_count: int = 0


@dataclass
class NewWorkItem:
    """What a producer supplies to open a work item."""
    kind: WorkItemKind
    category: str
    title: str
    severity: str
    requested_by: str
    description: Optional[str] = None
    requester_role: Optional[str] = None
    sla_deadline: Optional[datetime] = None
    approver_chain: Sequence[str] = field(default_factory=list)
    linked_entities: Dict[str, Any] = field(default_factory=dict)
    details: Dict[str, Any] = field(default_factory=dict)


def _sort_value(work_item: WorkItem, field_name: str):
    if field_name == "severity":
        return severity_rank(work_item.kind, work_item.severity)
    value = getattr(work_item, field_name)
    if hasattr(value, "value"):
        return value.value
    if isinstance(value, str):
        return value.lower()
    return value


def sort_by_field(work_items: Sequence[WorkItem], order: SortSpec) -> List[WorkItem]:
    """Stable single-field sort; missing values go last in either direction."""
    present = [item for item in work_items if _sort_value(item, order.field) is not None]
    missing = [item for item in work_items if _sort_value(item, order.field) is None]
    present = sorted(present, key=lambda item: _sort_value(item, order.field), reverse=order.descending)
    return present + missing


class WorkItemStore:
    """Working set of work items behind an explicit session handle."""

    def __init__(self, db: Session):
        self.db = db

    def get(self, work_item_id: str) -> WorkItem:
        try:
            work_item = self.db.get(WorkItem, work_item_id)
        except SQLAlchemyError as exc:
            raise self._unavailable("get", exc) from exc
        if work_item is None:
            raise WorkItemNotFoundError(work_item_id)
        return work_item

    def list(
        self,
        criteria: Optional[WorkItemFilter] = None,
        sort: Optional[SortSpec] = None,
        now: Optional[datetime] = None,
    ) -> List[WorkItem]:
        now = resolve_now(now)
        try:
            rows = self._filtered(criteria or WorkItemFilter(), now).order_by(WorkItem.created_at.asc(), WorkItem.id.asc()).all()
        except SQLAlchemyError as exc:
            raise self._unavailable("list", exc) from exc
        if sort is None:
            return ranking.rank(rows, now)
        return sort_by_field(rows, sort)

    def page(
        self,
        criteria: Optional[WorkItemFilter] = None,
        sort: Optional[SortSpec] = None,
        page: int = 1,
        limit: int = 20,
        now: Optional[datetime] = None,
    ) -> Page:
        if page < 1 or limit < 1:
            raise ValidationFailedError("page and limit must be positive", field="page")
        items = self.list(criteria, sort, now)
        start = (page - 1) * limit
        return Page(items=items[start:start + limit], total=len(items), page=page, limit=limit)

    def summary(self, kind: Optional[WorkItemKind] = None, now: Optional[datetime] = None) -> WorkItemSummary:
        """Counts behind the KPI tiles. "Today" is the UTC calendar day of ``now``."""
        now = resolve_now(now)
        today = start_of_day(now)
        try:
            base = self.db.query(WorkItem)
            if kind is not None:
                base = base.filter(WorkItem.kind == WorkItemKind(kind))
            return WorkItemSummary(
                pending_count=base.filter(WorkItem.status == WorkItemStatus.PENDING).count(),
                approved_today_count=base.filter(
                    WorkItem.status == WorkItemStatus.APPROVED, WorkItem.decided_at >= today
                ).count(),
                rejected_today_count=base.filter(
                    WorkItem.status == WorkItemStatus.REJECTED, WorkItem.decided_at >= today
                ).count(),
                breached_count=breached_count(self.db, now, kind),
            )
        except SQLAlchemyError as exc:
            raise self._unavailable("summary", exc) from exc

    def create(self, new_item: NewWorkItem, now: Optional[datetime] = None) -> WorkItem:
        """Open a Pending work item on behalf of a producer and audit its creation."""
        now = resolve_now(now)
        kind = self._validate_new(new_item)
        work_item = WorkItem(
            kind=kind,
            category=new_item.category.strip(),
            title=new_item.title.strip(),
            description=new_item.description,
            severity=new_item.severity.strip().lower(),
            status=WorkItemStatus.PENDING,
            requested_by=new_item.requested_by.strip(),
            requester_role=new_item.requester_role,
            created_at=now,
            updated_at=now,
            sla_deadline=as_naive_utc(new_item.sla_deadline),
            approver_chain=[str(approver) for approver in new_item.approver_chain],
            current_step=0,
            linked_entities=dict(new_item.linked_entities or {}),
            details=dict(new_item.details or {}),
        )
        try:
            self.db.add(work_item)
            self.db.flush()
            chain = work_item.approver_chain
            summary = f"Created {kind.value} item"
            if chain:
                summary = f"{summary} with {len(chain)}-step approver chain"
            AuditRecorder(self.db).record(
                work_item.id,
                work_item.requested_by,
                AuditAction.CREATED,
                summary,
                entity_label=f"{work_item.category}: {work_item.title}",
                timestamp=now,
            )
            self.db.commit()
        except SQLAlchemyError as exc:
            raise self._unavailable("create", exc) from exc
        self.db.refresh(work_item)
        logger.info(
            "Created work item %s (%s/%s)", work_item.id, kind.value, work_item.category,
            extra={"work_item_id": work_item.id, "actor": work_item.requested_by},
        )
        return work_item

    @staticmethod
    def _validate_new(new_item: NewWorkItem) -> WorkItemKind:
        try:
            kind = WorkItemKind(new_item.kind)
        except ValueError as exc:
            raise ValidationFailedError(f"Unknown kind '{new_item.kind}'", field="kind") from exc
        for name in ("category", "title", "requested_by"):
            if not (getattr(new_item, name) or "").strip():
                raise ValidationFailedError(f"{name} is required", field=name)
        if severity_rank(kind, new_item.severity) < 0:
            raise ValidationFailedError(
                f"Severity for {kind.value} must be one of: {', '.join(SEVERITY_SCALES[kind])}",
                field="severity",
            )
        if any(not str(approver).strip() for approver in new_item.approver_chain):
            raise ValidationFailedError("Approver identifiers cannot be blank", field="approver_chain")
        return kind

    def _filtered(self, criteria: WorkItemFilter, now: datetime):
        query = self.db.query(WorkItem)
        if criteria.kind:
            query = query.filter(WorkItem.kind == WorkItemKind(criteria.kind))
        if criteria.category:
            query = query.filter(WorkItem.category == criteria.category)
        if (criteria.status or "").strip().lower() == STATUS_SNOOZED:
            query = query.filter(
                WorkItem.status == WorkItemStatus.PENDING,
                WorkItem.snoozed_until.isnot(None),
                WorkItem.snoozed_until > now,
            )
        else:
            statuses = self._statuses(criteria.status)
            if statuses is not None:
                query = query.filter(WorkItem.status.in_(statuses))
        if criteria.severity:
            query = query.filter(WorkItem.severity == criteria.severity.strip().lower())
        if criteria.date_from:
            query = query.filter(WorkItem.created_at >= as_naive_utc(criteria.date_from))
        if criteria.date_to:
            query = query.filter(WorkItem.created_at < range_end(criteria.date_to))
        if criteria.search and criteria.search.strip():
            term = criteria.search.strip()
            query = query.filter(or_(
                WorkItem.title.icontains(term, autoescape=True),
                WorkItem.description.icontains(term, autoescape=True),
                WorkItem.requested_by.icontains(term, autoescape=True),
            ))
        return query

    @staticmethod
    def _statuses(raw: Optional[str]) -> Optional[Tuple[WorkItemStatus, ...]]:
        value = (raw or "").strip()
        if not value or value.lower() == STATUS_ALL:
            return None
        if value.lower() == STATUS_ACTIVE:
            return tuple(ACTIVE_STATUSES)
        for status in WorkItemStatus:
            if value.lower() in (status.value.lower(), status.name.lower()):
                return (status,)
        raise ValidationFailedError(f"Unknown status filter '{value}'", field="status")

    def _unavailable(self, operation: str, exc: SQLAlchemyError) -> StoreUnavailableError:
        self.db.rollback()
        logger.error("Work item store %s failed", operation, exc_info=exc)
        return StoreUnavailableError(f"Store unavailable: {exc.__class__.__name__}")
