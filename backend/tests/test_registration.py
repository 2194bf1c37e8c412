"""Tests for visit registration and cancellation."""

from datetime import date

import pytest
from sqlalchemy import select

from vms.core.clock import FixedClock
from vms.core.errors import (
    CapabilityError,
    DuplicateVisitError,
    EntityBlockedError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from vms.models.entity import Entity, EntityStatus, EntityType, StatusSource
from vms.models.visit import Visit, VisitStatus
from vms.schemas.visit import VisitRegistration
from vms.services.visit_workflow import VisitWorkflow


def guest_request(host, day, **overrides) -> VisitRegistration:
    fields = {
        "entity_type": EntityType.GUEST,
        "first_name": "Grace",
        "last_name": "Wanjiru",
        "phone_number": "0722000111",
        "host_id": host.id if host else None,
        "visit_date": day,
    }
    fields.update(overrides)
    return VisitRegistration(**fields)


class TestRegistration:
    """Admission of new visits."""

    def test_first_registration_creates_entity(self, workflow, host, db_session):
        result = workflow.register_visit(guest_request(host, date(2026, 10, 20)), "reception")

        assert result.entity_created
        assert result.visit.status == VisitStatus.APPROVED
        assert not result.capacity_pending
        entity = db_session.get(Entity, result.entity.id)
        assert entity.entity_type == "guest"
        assert entity.status == "active"
        assert result.visit.registered_by_role == "reception"

    def test_returning_guest_matched_by_phone(self, workflow, host):
        first = workflow.register_visit(guest_request(host, date(2026, 10, 20)), "reception")
        second = workflow.register_visit(guest_request(host, date(2026, 10, 21)), "reception")
        assert not second.entity_created
        assert second.entity.id == first.entity.id

    def test_registration_by_entity_id(self, workflow, host, make_entity):
        guest = make_entity("guest")
        result = workflow.register_visit(
            VisitRegistration(entity_type=EntityType.GUEST, entity_id=guest.id, host_id=host.id,
                              visit_date=date(2026, 10, 20)),
            "member",
        )
        assert result.entity.id == guest.id

    def test_fifth_visit_in_month_is_unapproved(self, workflow, host):
        for day in (15, 16, 20, 21):
            result = workflow.register_visit(guest_request(host, date(2026, 10, day)), "reception")
            assert result.visit.status == VisitStatus.APPROVED

        result = workflow.register_visit(guest_request(host, date(2026, 10, 22)), "reception")
        assert result.visit.status == VisitStatus.UNAPPROVED
        assert result.capacity_pending
        assert result.quota.monthly_count == 4
        assert "Monthly visit limit of 4 reached (5 visits)" in result.quota.reasons

    def test_next_month_is_a_fresh_allowance(self, workflow, host):
        for day in (15, 16, 20, 21):
            workflow.register_visit(guest_request(host, date(2026, 10, day)), "reception")
        result = workflow.register_visit(guest_request(host, date(2026, 11, 2)), "reception")
        assert result.visit.status == VisitStatus.APPROVED

    def test_validation_errors_reported_together(self, workflow):
        with pytest.raises(ValidationError) as exc:
            workflow.register_visit(
                VisitRegistration(entity_type=EntityType.GUEST, first_name="", phone_number="12",
                                  visit_date=date(2026, 10, 1)),
                "reception",
            )
        reasons = exc.value.reasons
        assert "First name is required" in reasons
        assert "Last name is required" in reasons
        assert "Phone number is invalid" in reasons
        assert "Visit date cannot be in the past" in reasons
        assert "A host is required unless the visit is a courtesy visit" in reasons

    def test_nothing_persisted_on_validation_error(self, workflow, db_session):
        with pytest.raises(ValidationError):
            workflow.register_visit(guest_request(None, date(2026, 10, 20)), "reception")
        assert db_session.scalars(select(Entity)).all() == []

    def test_host_must_be_able_to_host(self, workflow, make_entity):
        supplier = make_entity("supplier")
        with pytest.raises(ValidationError, match="cannot host"):
            workflow.register_visit(guest_request(supplier, date(2026, 10, 20)), "reception")

    def test_banned_host_rejected(self, workflow, make_entity):
        host = make_entity("member", status="banned", status_source="admin")
        with pytest.raises(ValidationError, match="Host is banned"):
            workflow.register_visit(guest_request(host, date(2026, 10, 20)), "reception")

    def test_unknown_entity_id(self, workflow, host):
        with pytest.raises(NotFoundError):
            workflow.register_visit(
                VisitRegistration(entity_type=EntityType.GUEST, entity_id=999, host_id=host.id,
                                  visit_date=date(2026, 10, 20)),
                "reception",
            )

    def test_invalid_purpose_for_reciprocating_member(self, workflow):
        request = VisitRegistration(
            entity_type=EntityType.RECIPROCATING_MEMBER,
            first_name="Otieno", last_name="Ouma", phone_number="0733000222",
            visit_date=date(2026, 10, 20), visit_purpose="wedding",
        )
        with pytest.raises(ValidationError, match="Invalid visit purpose"):
            workflow.register_visit(request, "reception")


class TestUniqueness:
    """One open visit per (entity, host, date)."""

    def test_duplicate_rejected(self, workflow, host):
        workflow.register_visit(guest_request(host, date(2026, 10, 20)), "reception")
        with pytest.raises(DuplicateVisitError):
            workflow.register_visit(guest_request(host, date(2026, 10, 20)), "reception")

    def test_duplicate_caught_by_unique_index(self, workflow, host, db_session, monkeypatch):
        first = workflow.register_visit(guest_request(host, date(2026, 10, 20)), "reception")
        # Simulate a concurrent registration that passed the pre-check
        monkeypatch.setattr(workflow.registration, "_find_duplicate", lambda *args: None)

        with pytest.raises(DuplicateVisitError):
            workflow.register_visit(guest_request(host, date(2026, 10, 20)), "reception")

        visits = db_session.scalars(select(Visit).where(Visit.entity_id == first.entity.id)).all()
        assert len(visits) == 1

    def test_concurrent_first_registration_is_a_duplicate(self, workflow, host, db_session, monkeypatch):
        first = workflow.register_visit(guest_request(host, date(2026, 10, 20)), "reception")
        # Lookup ran before the other request committed the new visitor
        monkeypatch.setattr(workflow.registration, "_existing_entity", lambda request: None)

        with pytest.raises(DuplicateVisitError):
            workflow.register_visit(guest_request(host, date(2026, 10, 20)), "reception")

        assert len(db_session.scalars(select(Entity)).all()) == 2  # the host and Grace
        visits = db_session.scalars(select(Visit).where(Visit.entity_id == first.entity.id)).all()
        assert len(visits) == 1

    def test_concurrent_first_registration_joins_existing_visitor(self, workflow, host, monkeypatch):
        first = workflow.register_visit(guest_request(host, date(2026, 10, 20)), "reception")
        monkeypatch.setattr(workflow.registration, "_existing_entity", lambda request: None)

        second = workflow.register_visit(guest_request(host, date(2026, 10, 21)), "reception")
        assert not second.entity_created
        assert second.entity.id == first.entity.id
        assert second.visit.status == VisitStatus.APPROVED

    def test_cancelled_visit_frees_the_date(self, workflow, host):
        first = workflow.register_visit(guest_request(host, date(2026, 10, 20)), "reception")
        workflow.cancel_visit(first.visit.id, "reception")
        again = workflow.register_visit(guest_request(host, date(2026, 10, 20)), "reception")
        assert again.visit.status == VisitStatus.APPROVED


class TestBlocking:
    """Entity status and registration."""

    @pytest.mark.parametrize("status", ["banned", "suspended"])
    def test_admin_blocked_entity_cannot_register(self, workflow, host, make_entity, status):
        guest = make_entity("guest", status=status, status_source=StatusSource.ADMIN.value)
        with pytest.raises(EntityBlockedError):
            workflow.register_visit(
                VisitRegistration(entity_type=EntityType.GUEST, entity_id=guest.id, host_id=host.id,
                                  visit_date=date(2026, 10, 20)),
                "reception",
            )

    def test_quota_suspension_does_not_block(self, workflow, host, make_entity):
        guest = make_entity("guest", status=EntityStatus.SUSPENDED.value, status_source=StatusSource.SYSTEM.value)
        result = workflow.register_visit(
            VisitRegistration(entity_type=EntityType.GUEST, entity_id=guest.id, host_id=host.id,
                              visit_date=date(2026, 10, 20)),
            "reception",
        )
        assert result.visit.id is not None


class TestCapabilities:
    """Role checks on registration."""

    def test_gate_cannot_register(self, workflow, host):
        with pytest.raises(CapabilityError):
            workflow.register_visit(guest_request(host, date(2026, 10, 20)), "gate")

    def test_member_cannot_register_courtesy(self, workflow):
        with pytest.raises(CapabilityError):
            workflow.register_visit(guest_request(None, date(2026, 10, 20), courtesy=True), "member")

    def test_courtesy_visit_needs_no_host(self, workflow):
        result = workflow.register_visit(guest_request(None, date(2026, 10, 20), courtesy=True), "chairman")
        assert result.visit.courtesy
        assert result.visit.host_id is None
        assert result.visit.status == VisitStatus.APPROVED


class TestCancellation:
    """Explicit cancellation."""

    def test_cancel_sets_timestamp(self, workflow, host, clock):
        result = workflow.register_visit(guest_request(host, date(2026, 10, 20)), "reception")
        visit = workflow.cancel_visit(result.visit.id, "reception")
        assert visit.status == VisitStatus.CANCELLED
        assert visit.cancelled_at == clock.now()

    def test_cancel_twice(self, workflow, host):
        result = workflow.register_visit(guest_request(host, date(2026, 10, 20)), "reception")
        workflow.cancel_visit(result.visit.id, "reception")
        with pytest.raises(StateConflictError, match="already cancelled"):
            workflow.cancel_visit(result.visit.id, "reception")

    def test_cancel_promotes_next_visit_in_month(self, workflow, host):
        results = [
            workflow.register_visit(guest_request(host, date(2026, 10, day)), "reception")
            for day in (15, 16, 20, 21, 22)
        ]
        assert results[-1].visit.status == VisitStatus.UNAPPROVED

        workflow.cancel_visit(results[0].visit.id, "reception")
        workflow.db.refresh(results[-1].visit)
        assert results[-1].visit.status == VisitStatus.APPROVED

    def test_past_dated_registration_is_refused_whatever_the_clock(self, db_session, notifier, host):
        late = VisitWorkflow(db_session, FixedClock.on(date(2026, 10, 21)), notifier)
        with pytest.raises(ValidationError, match="in the past"):
            late.register_visit(guest_request(host, date(2026, 10, 20)), "reception")
