"""Pydantic schemas for request/response validation. Wire names are camelCase."""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from workflow_engine.models.enums import (
    AuditAction,
    AuditResult,
    WorkItemKind,
    WorkItemStatus,
)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


# WorkItem schemas
class WorkItemCreate(CamelModel):
    kind: WorkItemKind
    category: str = Field(..., min_length=1, max_length=100)
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    severity: str = Field(..., min_length=1)
    requested_by: str = Field(..., min_length=1)
    requester_role: Optional[str] = None
    sla_deadline: Optional[datetime] = None
    approver_chain: List[str] = Field(default_factory=list)
    linked_entities: Dict[str, Any] = Field(default_factory=dict)
    details: Dict[str, Any] = Field(default_factory=dict)


class WorkItemResponse(CamelModel):
    id: str
    kind: WorkItemKind
    category: str
    title: str
    description: Optional[str]
    severity: str
    status: WorkItemStatus
    requested_by: str
    requester_role: Optional[str]
    created_at: datetime
    updated_at: datetime
    sla_deadline: Optional[datetime]
    sla_breached: bool = False
    decided_at: Optional[datetime]
    snoozed_until: Optional[datetime]
    approver_chain: List[str]
    current_step: int
    current_approver: Optional[str]
    linked_entities: Dict[str, Any]
    details: Dict[str, Any]
    decision_note: Optional[str]
    rejection_reason: Optional[str]
    resolution_type: Optional[str]
    version: int


class PageMeta(BaseModel):
    total: int
    page: int
    limit: int
    pages: int


class WorkItemEnvelope(BaseModel):
    success: bool = True
    data: WorkItemResponse


class WorkItemListResponse(BaseModel):
    success: bool = True
    data: List[WorkItemResponse]
    meta: PageMeta


class WorkItemSummaryData(CamelModel):
    pending_count: int
    approved_today_count: int
    rejected_today_count: int
    breached_count: int


class WorkItemSummaryResponse(BaseModel):
    success: bool = True
    data: WorkItemSummaryData


# Decision schemas
class DecisionRequest(CamelModel):
    action: str = Field(..., min_length=1)
    note: Optional[str] = Field(None, max_length=1000)
    reason: Optional[str] = Field(None, max_length=500)
    resolution_type: Optional[str] = None
    snooze_minutes: Optional[int] = Field(None, gt=0)


class BulkDecisionRequest(DecisionRequest):
    ids: List[str] = Field(..., min_length=1, max_length=500)


class ErrorDetail(BaseModel):
    code: str
    message: str
    field: Optional[str] = None


class PerItemResult(BaseModel):
    """Outcome for one id of a bulk decision."""
    id: str
    outcome: str  # "Success" or "Error"
    status: Optional[WorkItemStatus] = None
    error: Optional[ErrorDetail] = None


class BulkMeta(BaseModel):
    total: int
    succeeded: int
    failed: int
    outcome: str  # "none", "partial" or "all"


class BulkDecisionResponse(BaseModel):
    success: bool = True
    data: List[PerItemResult]
    meta: BulkMeta


class ExpireBreachedResponse(BaseModel):
    success: bool = True
    data: List[str]


# Audit schemas
class AuditEntryResponse(CamelModel):
    id: int
    work_item_id: Optional[str]
    entity_label: Optional[str]
    actor: str
    action: AuditAction
    result: AuditResult
    timestamp: datetime
    result_summary: str


class AuditListResponse(BaseModel):
    success: bool = True
    data: List[AuditEntryResponse]
    meta: PageMeta


class AuditHistoryResponse(BaseModel):
    success: bool = True
    data: List[AuditEntryResponse]


class AuditCheckCreate(CamelModel):
    """A violation or system-check report from an external checker."""
    action: AuditAction
    summary: str = Field(..., min_length=1, max_length=1000)
    work_item_id: Optional[str] = None
    entity_label: Optional[str] = None
    result: Optional[AuditResult] = None


class AuditEntryEnvelope(BaseModel):
    success: bool = True
    data: AuditEntryResponse
