"""API routes for the approval & exception workflow."""
import logging
import math
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from sqlalchemy.orm import Session

from workflow_engine.api.schemas import (
    AuditCheckCreate,
    AuditEntryEnvelope,
    AuditEntryResponse,
    AuditHistoryResponse,
    AuditListResponse,
    BulkDecisionRequest,
    BulkDecisionResponse,
    BulkMeta,
    DecisionRequest,
    ErrorDetail,
    ExpireBreachedResponse,
    PageMeta,
    PerItemResult,
    WorkItemCreate,
    WorkItemEnvelope,
    WorkItemListResponse,
    WorkItemResponse,
    WorkItemSummaryData,
    WorkItemSummaryResponse,
)
from workflow_engine.database import get_db, get_session_factory
from workflow_engine.errors import (
    AlreadyTerminalError,
    ValidationFailedError,
    VersionConflictError,
    WorkflowError,
    WorkItemNotFoundError,
)
from workflow_engine.models.enums import AuditAction, AuditResult, WorkItemKind
from workflow_engine.services.audit import AuditQuery, AuditRecorder
from workflow_engine.services.bulk import BulkDecisionCoordinator
from workflow_engine.services.sla import expire_breached, is_breached
from workflow_engine.services.state_machine import DecisionPayload, StateMachine
from workflow_engine.services.store import NewWorkItem, SortSpec, WorkItemFilter, WorkItemStore
from workflow_engine.timeutil import as_naive_utc, utcnow

logger = logging.getLogger(__name__)

router = APIRouter()

ERROR_STATUS = {
    WorkItemNotFoundError: status.HTTP_404_NOT_FOUND,
    ValidationFailedError: 422,
    AlreadyTerminalError: status.HTTP_409_CONFLICT,
    VersionConflictError: status.HTTP_409_CONFLICT,
}


def get_actor(
    actor: str = Header(..., alias="X-Forwarded-Preferred-Username", min_length=1),
) -> str:
    """Caller identity, set by the authenticating proxy in front of the service."""
    return actor.strip()


def _http_error(error: WorkflowError) -> HTTPException:
    code = ERROR_STATUS.get(type(error), status.HTTP_400_BAD_REQUEST)
    return HTTPException(status_code=code, detail=error.to_dict())


def _to_response(work_item, now: datetime) -> WorkItemResponse:
    response = WorkItemResponse.model_validate(work_item)
    response.sla_breached = is_breached(work_item, now)
    return response


def _payload(body: DecisionRequest) -> DecisionPayload:
    return DecisionPayload(
        note=body.note,
        reason=body.reason,
        resolution_type=body.resolution_type,
        snooze_minutes=body.snooze_minutes,
    )


# WorkItem endpoints
@router.get("/workitems", response_model=WorkItemListResponse)
def list_work_items(
    kind: Optional[WorkItemKind] = None,
    category: Optional[str] = None,
    status_filter: Optional[str] = Query(
        "active",
        alias="status",
        description=(
            "Pending and InReview by default. Pass a status name, \"snoozed\" "
            "for alerts snoozed past now, or \"all\" to lift the filter."
        ),
    ),
    severity: Optional[str] = None,
    search: Optional[str] = None,
    date_from: Optional[datetime] = Query(None, alias="dateFrom"),
    date_to: Optional[datetime] = Query(None, alias="dateTo"),
    sort: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=200),
    db: Session = Depends(get_db),
):
    """
    List work items for a console view.

    Defaults to active items (Pending, InReview) in ranked order: severity,
    then SLA breach, then deadline or recency depending on the kind.
    """
    now = utcnow()
    criteria = WorkItemFilter(
        kind=kind,
        category=category,
        status=status_filter,
        severity=severity,
        date_from=as_naive_utc(date_from),
        date_to=as_naive_utc(date_to),
        search=search,
    )
    try:
        result = WorkItemStore(db).page(criteria, SortSpec.parse(sort), page=page, limit=limit, now=now)
    except ValidationFailedError as e:
        raise _http_error(e)
    return WorkItemListResponse(
        data=[_to_response(item, now) for item in result.items],
        meta=PageMeta(total=result.total, page=result.page, limit=result.limit, pages=result.pages),
    )


@router.post("/workitems", response_model=WorkItemEnvelope, status_code=status.HTTP_201_CREATED)
def create_work_item(work_item_data: WorkItemCreate, db: Session = Depends(get_db)):
    """Open a Pending work item. Called by producers (pricing engine, reconciliation, scheduler)."""
    new_item = NewWorkItem(**work_item_data.model_dump())
    try:
        work_item = WorkItemStore(db).create(new_item)
    except ValidationFailedError as e:
        raise _http_error(e)
    return WorkItemEnvelope(data=_to_response(work_item, utcnow()))


@router.get("/workitems/summary", response_model=WorkItemSummaryResponse)
def get_summary(kind: Optional[WorkItemKind] = None, db: Session = Depends(get_db)):
    """Counts for the KPI tiles."""
    summary = WorkItemStore(db).summary(kind=kind)
    return WorkItemSummaryResponse(data=WorkItemSummaryData.model_validate(summary))


@router.post("/workitems/bulk-decision", response_model=BulkDecisionResponse)
def bulk_decision(
    body: BulkDecisionRequest,
    actor: str = Depends(get_actor),
    db: Session = Depends(get_db),
    session_factory=Depends(get_session_factory),
):
    """
    Apply one decision to many work items.

    Best effort: every id gets its own result, and a refusal for one id does not
    affect the others. Check ``meta.outcome`` for none / partial / all.
    """
    coordinator = BulkDecisionCoordinator(db, session_factory=session_factory)
    outcome = coordinator.apply_bulk(body.ids, body.action, actor, _payload(body))

    data = []
    for result in outcome.results:
        if result.ok:
            data.append(PerItemResult(id=result.work_item_id, outcome="Success", status=result.work_item.status))
        else:
            data.append(PerItemResult(
                id=result.work_item_id,
                outcome="Error",
                error=ErrorDetail(**result.error.to_dict()),
            ))
    return BulkDecisionResponse(
        data=data,
        meta=BulkMeta(
            total=outcome.total,
            succeeded=outcome.succeeded,
            failed=outcome.failed,
            outcome=outcome.outcome,
        ),
    )


@router.post("/workitems/expire-breached", response_model=ExpireBreachedResponse)
def expire_breached_items(actor: str = Depends(get_actor), db: Session = Depends(get_db)):
    """Expire every overdue item whose kind supports expiry. Driven by an external scheduler tick."""
    return ExpireBreachedResponse(data=expire_breached(db, utcnow(), actor=actor))


@router.get("/workitems/{work_item_id}", response_model=WorkItemEnvelope)
def get_work_item(work_item_id: str, db: Session = Depends(get_db)):
    """Get a specific work item."""
    try:
        work_item = WorkItemStore(db).get(work_item_id)
    except WorkItemNotFoundError as e:
        raise _http_error(e)
    return WorkItemEnvelope(data=_to_response(work_item, utcnow()))


@router.get("/workitems/{work_item_id}/history", response_model=AuditHistoryResponse)
def get_work_item_history(work_item_id: str, db: Session = Depends(get_db)):
    """Audit trail of one work item, oldest first."""
    try:
        WorkItemStore(db).get(work_item_id)
    except WorkItemNotFoundError as e:
        raise _http_error(e)
    entries = AuditRecorder(db).history(work_item_id)
    return AuditHistoryResponse(data=[AuditEntryResponse.model_validate(entry) for entry in entries])


@router.post("/workitems/{work_item_id}/decision", response_model=WorkItemEnvelope, responses={
    404: {"description": "Unknown work item"},
    409: {"description": "Item already terminal, or a concurrent decision won"},
    422: {"description": "Decision failed validation (e.g. missing rejection reason)"},
})
def submit_decision(
    work_item_id: str,
    body: DecisionRequest,
    actor: str = Depends(get_actor),
    db: Session = Depends(get_db),
):
    """
    Submit one decision (Approve, Reject, Resolve, Dismiss, Snooze, Investigate, Expire).

    The response carries the authoritative item state; callers should render it
    rather than a locally guessed one.
    """
    result = StateMachine(db).transition_by_id(work_item_id, body.action, actor, _payload(body))
    if not result.ok:
        raise _http_error(result.error)
    return WorkItemEnvelope(data=_to_response(result.work_item, utcnow()))


# Audit endpoints
@router.get("/audit", response_model=AuditListResponse)
def list_audit_entries(
    entity: Optional[str] = None,
    user: Optional[str] = None,
    event_type: Optional[AuditAction] = Query(None, alias="eventType"),
    result: Optional[AuditResult] = None,
    search: Optional[str] = None,
    date_from: Optional[datetime] = Query(None, alias="dateFrom"),
    date_to: Optional[datetime] = Query(None, alias="dateTo"),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
):
    """Search the audit trail by entity, user, event type, pass/fail result and time range."""
    criteria = AuditQuery(
        work_item_id=entity,
        actor=user,
        action=event_type,
        result=result,
        date_from=as_naive_utc(date_from),
        date_to=as_naive_utc(date_to),
        search=search,
    )
    recorder = AuditRecorder(db)
    total = recorder.count(criteria)
    entries = recorder.query(criteria, offset=(page - 1) * limit, limit=limit)
    return AuditListResponse(
        data=[AuditEntryResponse.model_validate(entry) for entry in entries],
        meta=PageMeta(total=total, page=page, limit=limit, pages=math.ceil(total / limit)),
    )


@router.post("/audit/checks", response_model=AuditEntryEnvelope, status_code=status.HTTP_201_CREATED)
def record_check(body: AuditCheckCreate, actor: str = Depends(get_actor), db: Session = Depends(get_db)):
    """Record a policy violation or system-check result reported by an external checker."""
    try:
        entry = AuditRecorder(db).record_check(
            actor,
            body.action,
            body.summary,
            work_item_id=body.work_item_id,
            entity_label=body.entity_label,
            result=body.result,
        )
    except ValidationFailedError as e:
        raise _http_error(e)
    return AuditEntryEnvelope(data=AuditEntryResponse.model_validate(entry))

