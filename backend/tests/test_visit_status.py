"""Tests for the visit status machine and display status."""

from datetime import date, datetime
from types import SimpleNamespace

import pytest

from vms.core.errors import StateConflictError
from vms.models.visit import DisplayStatus, VisitStatus
from vms.services.visit_status import (
    TransitionCause,
    apply_transition,
    can_transition,
    derive_display_status,
    ensure_can_cancel,
    ensure_can_sign_in,
    ensure_can_sign_out,
)

TODAY = date(2026, 10, 14)


def visit(status="approved", day=TODAY, signed_in=False, signed_out=False):
    return SimpleNamespace(
        id=1,
        entity_id=10,
        host_id=20,
        visit_date=day,
        status=status,
        sign_in_time=datetime(2026, 10, 14, 10) if signed_in else None,
        sign_out_time=datetime(2026, 10, 14, 15) if signed_out else None,
    )


class TestTransitions:
    """Stored status transitions."""

    def test_cancelled_is_terminal(self):
        for status in VisitStatus:
            assert not can_transition(VisitStatus.CANCELLED, status)

    def test_apply_returns_change(self):
        v = visit()
        change = apply_transition(v, VisitStatus.UNAPPROVED, TransitionCause.RECALCULATION, ("limit",))
        assert v.status == "unapproved"
        assert change.old_status == VisitStatus.APPROVED
        assert change.new_status == VisitStatus.UNAPPROVED
        assert change.reasons == ("limit",)

    def test_apply_same_status_is_noop(self):
        v = visit()
        assert apply_transition(v, VisitStatus.APPROVED, TransitionCause.RECALCULATION) is None

    def test_entity_driven_statuses_need_entity_cause(self):
        with pytest.raises(StateConflictError):
            apply_transition(visit(), VisitStatus.BANNED, TransitionCause.RECALCULATION)
        change = apply_transition(visit(), VisitStatus.BANNED, TransitionCause.ENTITY_STATUS)
        assert change.new_status == VisitStatus.BANNED

    def test_completed_visit_cannot_change(self):
        v = visit(signed_in=True, signed_out=True)
        with pytest.raises(StateConflictError):
            apply_transition(v, VisitStatus.UNAPPROVED, TransitionCause.RECALCULATION)

    def test_cancelled_cannot_be_reopened(self):
        with pytest.raises(StateConflictError):
            apply_transition(visit(status="cancelled"), VisitStatus.APPROVED, TransitionCause.RECALCULATION)


class TestDisplayStatus:
    """Derived display status."""

    @pytest.mark.parametrize("day,signed_in,signed_out,expected", [
        (date(2026, 10, 20), False, False, DisplayStatus.SCHEDULED),
        (TODAY, False, False, DisplayStatus.PENDING),
        (TODAY, True, False, DisplayStatus.ACTIVE),
        (TODAY, True, True, DisplayStatus.COMPLETED),
        (date(2026, 10, 1), True, True, DisplayStatus.COMPLETED),
        (date(2026, 10, 1), False, False, DisplayStatus.MISSED),
    ])
    def test_approved_visit(self, day, signed_in, signed_out, expected):
        sign_in = datetime(2026, 10, 1, 10) if signed_in else None
        sign_out = datetime(2026, 10, 1, 15) if signed_out else None
        assert derive_display_status(day, sign_in, sign_out, "approved", TODAY) == expected

    @pytest.mark.parametrize("stored", ["unapproved", "suspended", "banned", "cancelled"])
    def test_stored_status_passes_through(self, stored):
        assert derive_display_status(date(2026, 10, 20), None, None, stored, TODAY) == DisplayStatus(stored)


class TestGuards:
    """Preconditions for sign-in, sign-out and cancellation."""

    def test_sign_in_requires_approval(self):
        with pytest.raises(StateConflictError, match="not approved for today"):
            ensure_can_sign_in(visit(status="unapproved"), TODAY)

    def test_sign_in_only_on_visit_date(self):
        with pytest.raises(StateConflictError, match="only allowed on the visit date"):
            ensure_can_sign_in(visit(day=date(2026, 10, 15)), TODAY)

    def test_sign_in_twice(self):
        with pytest.raises(StateConflictError, match="already signed in"):
            ensure_can_sign_in(visit(signed_in=True), TODAY)

    def test_sign_out_requires_sign_in(self):
        with pytest.raises(StateConflictError, match="not signed in"):
            ensure_can_sign_out(visit())

    def test_sign_out_twice(self):
        with pytest.raises(StateConflictError, match="already signed out"):
            ensure_can_sign_out(visit(signed_in=True, signed_out=True))

    def test_cannot_cancel_started_visit(self):
        with pytest.raises(StateConflictError, match="already started"):
            ensure_can_cancel(visit(signed_in=True))
