"""Tests for SLA breach detection and the expiry sweep."""
from datetime import timedelta, timezone

import pytest

from workflow_engine.models.enums import AuditAction, DecisionAction, WorkItemKind, WorkItemStatus
from workflow_engine.services.audit import AuditRecorder
from workflow_engine.services.sla import (
    SLA_SYSTEM_ACTOR,
    breached_count,
    breached_ids,
    expire_breached,
    is_breached,
    is_breached_at,
)
from workflow_engine.services.state_machine import StateMachine


class TestIsBreached:

    @pytest.mark.parametrize("offset,status,expected", [
        (timedelta(minutes=-1), WorkItemStatus.PENDING, True),
        (timedelta(minutes=1), WorkItemStatus.PENDING, False),
        (timedelta(0), WorkItemStatus.PENDING, False),
        (timedelta(hours=-3), WorkItemStatus.IN_REVIEW, False),
        (timedelta(hours=-3), WorkItemStatus.APPROVED, False),
        (timedelta(hours=-3), WorkItemStatus.EXPIRED, False),
    ])
    def test_breach_rule(self, now, offset, status, expected):
        assert is_breached_at(now + offset, status, now) is expected

    def test_no_deadline_never_breaches(self, now):
        assert is_breached_at(None, WorkItemStatus.PENDING, now) is False

    def test_breach_is_read_only(self, db_session, make_item, now):
        """Computing breach leaves the stored item untouched."""
        item = make_item(sla_deadline=now - timedelta(hours=1))
        version = item.version

        assert is_breached(item, now)
        assert is_breached(item, now)

        db_session.refresh(item)
        assert item.status == WorkItemStatus.PENDING
        assert item.version == version


class TestBreachedCount:

    def test_counts_only_pending_overdue(self, db_session, settings, make_item, now):
        overdue = make_item(sla_deadline=now - timedelta(hours=1))
        make_item(sla_deadline=now - timedelta(minutes=5))
        make_item(sla_deadline=now + timedelta(hours=1))
        make_item()
        decided = make_item(sla_deadline=now - timedelta(hours=2))
        StateMachine(db_session, settings).transition(decided, DecisionAction.APPROVE, "a", now=now)

        assert breached_count(db_session, now) == 2
        assert breached_count(db_session, now, WorkItemKind.MERCH_ALERT) == 0
        assert breached_ids(db_session, now)[0] == overdue.id

    def test_count_changes_with_now_only(self, db_session, make_item, now):
        make_item(sla_deadline=now + timedelta(hours=1))

        assert breached_count(db_session, now) == 0
        assert breached_count(db_session, now + timedelta(hours=2)) == 1


class TestExpireBreached:

    def test_sweep_expires_overdue_approval_items(self, db_session, make_item, now):
        overdue = make_item(sla_deadline=now - timedelta(hours=1))
        within = make_item(sla_deadline=now + timedelta(hours=1))

        expired = expire_breached(db_session, now)

        assert expired == [overdue.id]
        db_session.refresh(overdue)
        db_session.refresh(within)
        assert overdue.status == WorkItemStatus.EXPIRED
        assert overdue.decided_at == now
        assert within.status == WorkItemStatus.PENDING

        trail = AuditRecorder(db_session).history(overdue.id)
        assert trail[-1].action == AuditAction.EXPIRED
        assert trail[-1].actor == SLA_SYSTEM_ACTOR

    def test_sweep_leaves_alert_kinds_alone(self, db_session, make_item, now):
        alert = make_item(kind=WorkItemKind.MERCH_ALERT, category="Stock", sla_deadline=now - timedelta(hours=1))
        exception = make_item(kind=WorkItemKind.RECON_EXCEPTION, category="bank", sla_deadline=now - timedelta(hours=1))

        assert expire_breached(db_session, now) == []
        db_session.refresh(alert)
        db_session.refresh(exception)
        assert alert.status == WorkItemStatus.PENDING
        assert exception.status == WorkItemStatus.PENDING
        assert breached_count(db_session, now) == 2

    def test_second_sweep_is_a_no_op(self, db_session, make_item, audit_count, now):
        make_item(sla_deadline=now - timedelta(hours=1))
        expire_breached(db_session, now, actor="scheduler")
        count = audit_count()

        assert expire_breached(db_session, now, actor="scheduler") == []
        assert audit_count() == count


class TestAwareNow:
    """Callers may pass a timezone-aware ``now``; it is compared as naive UTC."""

    def test_breach_checks_accept_aware_now(self, db_session, make_item, now):
        item = make_item(sla_deadline=now - timedelta(minutes=5))
        aware = now.replace(tzinfo=timezone.utc)

        assert is_breached(item, aware) is True
        assert is_breached_at(now + timedelta(minutes=5), WorkItemStatus.PENDING, aware) is False
        assert breached_count(db_session, aware) == 1

    def test_sweep_accepts_aware_now(self, db_session, make_item, now):
        overdue = make_item(sla_deadline=now - timedelta(hours=1))
        aware = (now + timedelta(hours=5, minutes=30)).replace(tzinfo=timezone(timedelta(hours=5, minutes=30)))

        assert expire_breached(db_session, aware) == [overdue.id]
        db_session.refresh(overdue)
        assert overdue.decided_at == now
