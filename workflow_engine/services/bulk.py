"""
Bulk decision coordinator.

A bulk decision is N independent single decisions. Each id goes through the
state machine on its own, so one id's refusal never blocks or rolls back the
others, and each success gets its own audit entry. Results come back in input
order; the caller reads the outcome per id.
"""
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Union

from sqlalchemy.orm import Session

from workflow_engine.config import Settings, get_settings
from workflow_engine.models.enums import DecisionAction
from workflow_engine.services.state_machine import DecisionPayload, StateMachine, TransitionResult
from workflow_engine.timeutil import resolve_now

logger = logging.getLogger(__name__)

OUTCOME_NONE = "none"
OUTCOME_PARTIAL = "partial"
OUTCOME_ALL = "all"


@dataclass
class BulkOutcome:
    results: List[TransitionResult]

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def succeeded(self) -> int:
        return sum(1 for result in self.results if result.ok)

    @property
    def failed(self) -> int:
        return self.total - self.succeeded

    @property
    def outcome(self) -> str:
        """How much of the batch succeeded: none, partial or all. An empty batch is none."""
        if self.total and self.succeeded == self.total:
            return OUTCOME_ALL
        if self.succeeded:
            return OUTCOME_PARTIAL
        return OUTCOME_NONE


def _unique(ids: Iterable[str]) -> List[str]:
    return list(dict.fromkeys(str(work_item_id) for work_item_id in ids))


class BulkDecisionCoordinator:
    """
    Applies one decision to many work items, best effort.

    With ``max_workers > 1`` and a ``session_factory`` the ids are fanned out to
    a bounded thread pool, one session per id. Otherwise they run one after
    another in the caller's session.
    """

    def __init__(
        self,
        db: Session,
        session_factory: Optional[Callable[[], Session]] = None,
        max_workers: Optional[int] = None,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.session_factory = session_factory
        self.max_workers = max_workers or self.settings.bulk_max_workers

    def apply_bulk(
        self,
        ids: Iterable[str],
        action: Union[DecisionAction, str],
        actor: str,
        payload: Optional[DecisionPayload] = None,
        now: Optional[datetime] = None,
    ) -> BulkOutcome:
        work_item_ids = _unique(ids)
        now = resolve_now(now)
        action_name = getattr(action, "value", action)
        logger.info(
            "Bulk %s by %s over %d work item(s)", action_name, actor, len(work_item_ids),
            extra={"actor": actor},
        )
        if self.max_workers > 1 and self.session_factory is not None and len(work_item_ids) > 1:
            results = self._fan_out(work_item_ids, action, actor, payload, now)
        else:
            sm = StateMachine(self.db, self.settings)
            results = [
                sm.transition_by_id(work_item_id, action, actor, payload, now=now, via_bulk=True)
                for work_item_id in work_item_ids
            ]

        outcome = BulkOutcome(results)
        logger.info(
            "Bulk %s by %s finished: %d succeeded, %d failed", action_name, actor, outcome.succeeded, outcome.failed,
            extra={"actor": actor, "outcome": outcome.outcome},
        )
        return outcome

    def _fan_out(self, work_item_ids, action, actor, payload, now) -> List[TransitionResult]:
        def decide(work_item_id: str) -> TransitionResult:
            session = self.session_factory()
            try:
                result = StateMachine(session, self.settings).transition_by_id(
                    work_item_id, action, actor, payload, now=now, via_bulk=True
                )
                # Load then detach so the caller can read the result after the session closes.
                for instance in (result.work_item, result.audit_entry):
                    if instance is not None:
                        session.refresh(instance)
                        session.expunge(instance)
                return result
            finally:
                session.close()

        workers = min(self.max_workers, len(work_item_ids))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="bulk-decision") as pool:
            # map() yields in input order and re-raises a worker's StoreUnavailableError here.
            return list(pool.map(decide, work_item_ids))
