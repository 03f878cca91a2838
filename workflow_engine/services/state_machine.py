"""
State machine that enforces the work item lifecycle.

This is the core enforcement mechanism - every status change MUST go through here.
Expected refusals (unknown id, validation, terminal item, lost race) come back as
typed results; only a store failure is raised.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from workflow_engine.config import Settings, get_settings
from workflow_engine.errors import (
    AlreadyTerminalError,
    StoreUnavailableError,
    TransitionError,
    ValidationFailedError,
    VersionConflictError,
    WorkItemNotFoundError,
)
from workflow_engine.models.audit import AuditEntry
from workflow_engine.models.domain import WorkItem
from workflow_engine.models.enums import (
    ACTIONS_BY_KIND,
    RECON_RESOLUTION_TYPES,
    AuditAction,
    DecisionAction,
    WorkItemKind,
    WorkItemStatus,
    audit_action_for,
)
from workflow_engine.services.audit import AuditRecorder
from workflow_engine.services.sla import is_breached
from workflow_engine.timeutil import resolve_now

logger = logging.getLogger(__name__)


@dataclass
class DecisionPayload:
    note: Optional[str] = None
    reason: Optional[str] = None
    resolution_type: Optional[str] = None
    snooze_minutes: Optional[int] = None


@dataclass
class TransitionResult:
    """Either the updated work item or the reason the decision was refused."""
    work_item_id: str
    work_item: Optional[WorkItem] = None
    error: Optional[TransitionError] = None
    audit_entry: Optional[AuditEntry] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class _Plan:
    changes: Dict[str, Any]
    audit_action: AuditAction
    summary: str


def entity_label(work_item: WorkItem) -> str:
    return f"{work_item.category}: {work_item.title}"


def _clean(value: Optional[str]) -> Optional[str]:
    value = (value or "").strip()
    return value or None


class StateMachine:
    """Validates and applies decisions against work items."""

    def __init__(self, db: Session, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or get_settings()
        self.audit = AuditRecorder(db)

    def transition_by_id(
        self,
        work_item_id: str,
        action: Union[DecisionAction, str],
        actor: str,
        payload: Optional[DecisionPayload] = None,
        now: Optional[datetime] = None,
        via_bulk: bool = False,
    ) -> TransitionResult:
        try:
            work_item = self.db.get(WorkItem, work_item_id)
        except SQLAlchemyError as exc:
            raise self._store_failure(work_item_id, exc) from exc
        if work_item is None:
            return TransitionResult(work_item_id, error=WorkItemNotFoundError(work_item_id))
        return self.transition(work_item, action, actor, payload, now=now, via_bulk=via_bulk)

    def transition(
        self,
        work_item: WorkItem,
        action: Union[DecisionAction, str],
        actor: str,
        payload: Optional[DecisionPayload] = None,
        now: Optional[datetime] = None,
        via_bulk: bool = False,
    ) -> TransitionResult:
        """
        Apply one decision to one work item.

        On success the item mutation and exactly one audit entry are committed
        together before returning. On refusal nothing is written.
        """
        work_item_id = work_item.id
        payload = payload or DecisionPayload()
        now = resolve_now(now)

        try:
            self._lock(work_item)
            plan = self._plan(work_item, action, payload, now, via_bulk)
        except TransitionError as refusal:
            self._release()
            logger.info(
                "Decision refused for work item %s: %s", work_item_id, refusal.code,
                extra={"work_item_id": work_item_id, "actor": actor, "error_code": refusal.code},
            )
            return TransitionResult(work_item_id, work_item=work_item, error=refusal)
        except StaleDataError:
            return self._conflict(work_item, work_item_id, actor)
        except SQLAlchemyError as exc:
            raise self._store_failure(work_item_id, exc) from exc

        try:
            for field, value in plan.changes.items():
                setattr(work_item, field, value)
            entry = self.audit.record(
                work_item_id,
                actor,
                plan.audit_action,
                plan.summary,
                entity_label=entity_label(work_item),
                timestamp=now,
            )
            self.db.commit()
        except StaleDataError:
            return self._conflict(work_item, work_item_id, actor)
        except SQLAlchemyError as exc:
            raise self._store_failure(work_item_id, exc) from exc

        self.db.refresh(work_item)
        self.db.refresh(entry)
        logger.info(
            "Work item %s: %s by %s -> %s", work_item_id, plan.audit_action.value, actor, work_item.status.value,
            extra={"work_item_id": work_item_id, "actor": actor, "audit_id": entry.id},
        )
        return TransitionResult(work_item_id, work_item=work_item, audit_entry=entry)

    def _lock(self, work_item: WorkItem) -> None:
        # Row lock where the backend supports it. The loaded attributes are left
        # as they are so the version check still catches a stale object.
        locked = self.db.query(WorkItem).filter(WorkItem.id == work_item.id).with_for_update().one_or_none()
        if locked is None:
            raise WorkItemNotFoundError(work_item.id)

    def _conflict(self, work_item: WorkItem, work_item_id: str, actor: str) -> TransitionResult:
        self._release()
        logger.warning(
            "Version conflict on work item %s; decision by %s discarded", work_item_id, actor,
            extra={"work_item_id": work_item_id, "actor": actor},
        )
        return TransitionResult(work_item_id, work_item=work_item, error=VersionConflictError(work_item_id))

    def _release(self) -> None:
        try:
            self.db.rollback()
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(f"Store unavailable: {exc.__class__.__name__}") from exc

    def _store_failure(self, work_item_id: str, exc: SQLAlchemyError) -> StoreUnavailableError:
        try:
            self.db.rollback()
        except SQLAlchemyError:
            logger.debug("Rollback after store failure also failed", exc_info=True)
        logger.error(
            "Store failure while deciding work item %s", work_item_id,
            exc_info=exc, extra={"work_item_id": work_item_id},
        )
        return StoreUnavailableError(f"Store unavailable: {exc.__class__.__name__}")

    @staticmethod
    def _coerce_action(action: Union[DecisionAction, str], work_item_id: str) -> DecisionAction:
        if isinstance(action, DecisionAction):
            return action
        raw = str(action or "").strip()
        for candidate in DecisionAction:
            if raw.lower() in (candidate.value.lower(), candidate.name.lower()):
                return candidate
        raise ValidationFailedError(f"Unknown action '{raw}'", work_item_id=work_item_id, field="action")

    def _plan(
        self,
        work_item: WorkItem,
        action: Union[DecisionAction, str],
        payload: DecisionPayload,
        now: datetime,
        via_bulk: bool,
    ) -> _Plan:
        """Validate the decision and work out the changes without touching the item."""
        if work_item.is_terminal:
            raise AlreadyTerminalError(work_item.id, work_item.status.value)
        action = self._coerce_action(action, work_item.id)

        allowed = ACTIONS_BY_KIND[work_item.kind]
        if action not in allowed:
            raise ValidationFailedError(
                f"{action.value} is not a valid action for {work_item.kind.value} items; "
                f"allowed: {', '.join(sorted(a.value for a in allowed))}",
                work_item_id=work_item.id,
                field="action",
            )

        note = _clean(payload.note)
        changes: Dict[str, Any] = {"updated_at": max(now, work_item.created_at)}
        audit_action = audit_action_for(action, via_bulk)

        if action == DecisionAction.APPROVE:
            self._require_status(work_item, action, WorkItemStatus.PENDING)
            step_changes, summary = self._approve_step(work_item, note, now)
            changes.update(step_changes)
        elif action == DecisionAction.REJECT:
            self._require_status(work_item, action, WorkItemStatus.PENDING)
            reason = _clean(payload.reason)
            if reason is None:
                raise ValidationFailedError(
                    "A rejection reason is required", work_item_id=work_item.id, field="reason"
                )
            changes.update(
                status=WorkItemStatus.REJECTED,
                rejection_reason=reason,
                decision_note=note,
                decided_at=now,
            )
            summary = f"Rejected: {reason}"
        elif action == DecisionAction.INVESTIGATE:
            self._require_status(work_item, action, WorkItemStatus.PENDING)
            changes["status"] = WorkItemStatus.IN_REVIEW
            summary = "Moved to review"
        elif action in (DecisionAction.RESOLVE, DecisionAction.DISMISS):
            self._require_status(work_item, action, WorkItemStatus.PENDING, WorkItemStatus.IN_REVIEW)
            resolution_type = self._resolution_type(work_item, action, payload)
            changes.update(
                status=WorkItemStatus.RESOLVED if action == DecisionAction.RESOLVE else WorkItemStatus.DISMISSED,
                decision_note=note,
                resolution_type=resolution_type,
                decided_at=now,
            )
            summary = "Resolved" if action == DecisionAction.RESOLVE else "Dismissed"
            if resolution_type:
                summary = f"{summary} ({resolution_type})"
        elif action == DecisionAction.SNOOZE:
            self._require_status(work_item, action, WorkItemStatus.PENDING)
            minutes = self._snooze_minutes(work_item, payload)
            changes["snoozed_until"] = now + timedelta(minutes=minutes)
            summary = f"Snoozed for {minutes} minute(s)"
        elif action == DecisionAction.EXPIRE:
            self._require_status(work_item, action, WorkItemStatus.PENDING)
            if not is_breached(work_item, now):
                raise ValidationFailedError(
                    "Only items past their SLA deadline can be expired",
                    work_item_id=work_item.id,
                    field="action",
                )
            changes.update(status=WorkItemStatus.EXPIRED, decision_note=note, decided_at=now)
            summary = f"Expired after SLA deadline {work_item.sla_deadline.isoformat()}"
        else:  # pragma: no cover - every DecisionAction is handled above
            raise ValidationFailedError(f"Unsupported action {action.value}", work_item_id=work_item.id)

        if note and action not in (DecisionAction.APPROVE, DecisionAction.REJECT):
            summary = f"{summary}: {note}"
        return _Plan(changes=changes, audit_action=audit_action, summary=summary)

    @staticmethod
    def _require_status(work_item: WorkItem, action: DecisionAction, *statuses: WorkItemStatus) -> None:
        if work_item.status not in statuses:
            raise ValidationFailedError(
                f"{action.value} is not allowed while the item is {work_item.status.value}",
                work_item_id=work_item.id,
                field="status",
            )

    @staticmethod
    def _approve_step(work_item: WorkItem, note: Optional[str], now: datetime) -> Tuple[Dict[str, Any], str]:
        """
        Approve the current step.

        A non-final step only advances current_step; the final step (or the only
        step of a single-step item) sets the item Approved.
        """
        chain = list(work_item.approver_chain or [])
        if not chain:
            summary = "Approved"
            changes = {"status": WorkItemStatus.APPROVED, "decision_note": note, "decided_at": now}
        else:
            step = min(max(work_item.current_step or 0, 0), len(chain) - 1)
            label = f"step {step + 1} of {len(chain)} ({chain[step]})"
            if step < len(chain) - 1:
                changes = {"current_step": step + 1}
                summary = f"Approved {label}"
            else:
                changes = {
                    "current_step": len(chain),
                    "status": WorkItemStatus.APPROVED,
                    "decision_note": note,
                    "decided_at": now,
                }
                summary = f"Approved final {label}"
        if note:
            summary = f"{summary}: {note}"
        return changes, summary

    @staticmethod
    def _resolution_type(work_item: WorkItem, action: DecisionAction, payload: DecisionPayload) -> Optional[str]:
        value = _clean(payload.resolution_type)
        if value is None or action != DecisionAction.RESOLVE or work_item.kind != WorkItemKind.RECON_EXCEPTION:
            return None
        value = value.lower()
        if value not in RECON_RESOLUTION_TYPES:
            raise ValidationFailedError(
                f"resolution_type must be one of: {', '.join(sorted(RECON_RESOLUTION_TYPES))}",
                work_item_id=work_item.id,
                field="resolution_type",
            )
        return value

    def _snooze_minutes(self, work_item: WorkItem, payload: DecisionPayload) -> int:
        minutes = payload.snooze_minutes
        if minutes is None:
            return self.settings.default_snooze_minutes
        if isinstance(minutes, bool) or not isinstance(minutes, int) or minutes <= 0:
            raise ValidationFailedError(
                "snooze_minutes must be a positive whole number",
                work_item_id=work_item.id,
                field="snooze_minutes",
            )
        return minutes
