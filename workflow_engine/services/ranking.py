"""
Default ordering for work item listings.

Order, most urgent first:
1. Severity rank, descending
2. Breached SLA before not breached
3. Approval-chain kinds before recency kinds
4. Approval-chain kinds: SLA deadline ascending (no deadline last), then newest first
   Recency kinds: newest first

Sorting uses Python's stable sort, so items with identical keys keep their
input order and repeated listings of unchanged data do not reshuffle.
"""
from datetime import datetime
from typing import Iterable, List, Tuple

from workflow_engine.models.domain import WorkItem
from workflow_engine.models.enums import APPROVAL_CHAIN_KINDS, severity_rank
from workflow_engine.services.sla import is_breached

_NO_DEADLINE = float("inf")


def rank_key(work_item: WorkItem, now: datetime) -> Tuple:
    created = -work_item.created_at.timestamp()
    if work_item.kind in APPROVAL_CHAIN_KINDS:
        deadline = work_item.sla_deadline.timestamp() if work_item.sla_deadline else _NO_DEADLINE
        secondary = (0, deadline, created)
    else:
        secondary = (1, created, 0.0)
    return (
        -severity_rank(work_item.kind, work_item.severity),
        0 if is_breached(work_item, now) else 1,
    ) + secondary


def compare(a: WorkItem, b: WorkItem, now: datetime) -> int:
    """-1 if ``a`` sorts before ``b``, 1 if after, 0 if they rank equal."""
    key_a, key_b = rank_key(a, now), rank_key(b, now)
    if key_a < key_b:
        return -1
    if key_a > key_b:
        return 1
    return 0


def rank(work_items: Iterable[WorkItem], now: datetime) -> List[WorkItem]:
    return sorted(work_items, key=lambda item: rank_key(item, now))
