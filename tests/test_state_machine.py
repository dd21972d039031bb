"""Tests for PickupService create/transition rules."""

from __future__ import annotations

import uuid
from datetime import date, datetime

import pytest

from conftest import actor_for, load_request
from schoolpickup.models.pickup import PickupHistory, PickupStatus
from schoolpickup.services.authorization_resolver import ActorContext
from schoolpickup.services.outcomes import DenialReason, ErrorCode


# =============================================================================
# create
# =============================================================================


class TestCreate:
    def test_guardian_creates_pending_request(self, pickups, school, bus, clock) -> None:
        outcome = pickups.create(actor_for(school["guardian"]), school["student"].id)

        assert outcome.ok
        assert outcome.request.status == PickupStatus.PENDING
        assert outcome.request.parent_id == school["guardian"].id
        assert outcome.request.class_id == school["class"].id
        assert outcome.request.request_time == clock.now.replace(tzinfo=None)
        assert outcome.request.version == 1

        [event] = bus.events
        assert event.previous_status is None
        assert event.new_status == PickupStatus.PENDING
        assert event.request_id == outcome.request.id

    def test_second_create_is_already_active(self, pickups, school, pending_request, bus) -> None:
        outcome = pickups.create(actor_for(school["guardian"]), school["student"].id)

        assert outcome.error == ErrorCode.ALREADY_ACTIVE
        assert outcome.request.id == pending_request.id
        assert len(bus.events) == 1

    def test_already_active_while_called(self, pickups, school, pending_request) -> None:
        pickups.transition(actor_for(school["teacher"]), pending_request.id, PickupStatus.CALLED)
        outcome = pickups.create(actor_for(school["guardian"]), school["student"].id)
        assert outcome.error == ErrorCode.ALREADY_ACTIVE

    def test_new_request_allowed_after_completion(self, pickups, school, pending_request) -> None:
        staff = actor_for(school["teacher"])
        pickups.transition(staff, pending_request.id, PickupStatus.CALLED)
        pickups.transition(staff, pending_request.id, PickupStatus.COMPLETED)

        outcome = pickups.create(actor_for(school["guardian"]), school["student"].id)

        assert outcome.ok
        assert outcome.request.id != pending_request.id

    def test_unauthorized_party_gets_reason(self, pickups, school) -> None:
        outcome = pickups.create(actor_for(school["outsider"]), school["student"].id)
        assert outcome.error == ErrorCode.NOT_AUTHORIZED
        assert outcome.reason == DenialReason.NO_RELATIONSHIP

    def test_day_not_allowed_blocks_create(self, pickups, factory, school) -> None:
        factory.authorization(school["student"], school["guardian"], school["family"], days=[1, 3])
        outcome = pickups.create(actor_for(school["family"]), school["student"].id)
        assert outcome.error == ErrorCode.NOT_AUTHORIZED
        assert outcome.reason == DenialReason.DAY_NOT_ALLOWED
        assert "Tuesday" in outcome.message

    def test_authorized_family_member_creates(self, pickups, factory, school) -> None:
        factory.authorization(school["student"], school["guardian"], school["family"], days=[2])
        outcome = pickups.create(actor_for(school["family"]), school["student"].id)
        assert outcome.ok

    def test_missing_student(self, pickups, school) -> None:
        outcome = pickups.create(actor_for(school["guardian"]), uuid.uuid4())
        assert outcome.error == ErrorCode.NOT_FOUND

    def test_soft_deleted_student_is_not_found(self, pickups, session, school) -> None:
        school["student"].deleted_at = datetime(2025, 10, 1)
        session.commit()
        outcome = pickups.create(actor_for(school["guardian"]), school["student"].id)
        assert outcome.error == ErrorCode.NOT_FOUND

    def test_system_actor_cannot_create(self, pickups, school) -> None:
        outcome = pickups.create(ActorContext.system("sweeper"), school["student"].id)
        assert outcome.error == ErrorCode.NOT_AUTHORIZED


# =============================================================================
# transition
# =============================================================================


class TestTransition:
    def test_call_then_complete(self, pickups, school, pending_request, session, clock, bus) -> None:
        staff = actor_for(school["teacher"])

        called = pickups.transition(staff, pending_request.id, PickupStatus.CALLED)
        clock.advance(minutes=4)
        completed = pickups.transition(staff, pending_request.id, PickupStatus.COMPLETED)

        assert called.ok and called.changed
        assert called.request.called_time is not None
        assert called.request.version == 2
        assert completed.request.status == PickupStatus.COMPLETED
        assert completed.request.completed_time == clock.now.replace(tzinfo=None)
        assert completed.request.version == 3
        assert [(e.previous_status, e.new_status) for e in bus.events] == [
            (None, PickupStatus.PENDING),
            (PickupStatus.PENDING, PickupStatus.CALLED),
            (PickupStatus.CALLED, PickupStatus.COMPLETED),
        ]

    def test_completion_writes_history(self, pickups, school, pending_request, session, clock) -> None:
        staff = actor_for(school["teacher"])
        clock.advance(minutes=2)
        pickups.transition(staff, pending_request.id, PickupStatus.CALLED)
        clock.advance(minutes=5)
        pickups.transition(staff, pending_request.id, PickupStatus.COMPLETED)

        history = session.query(PickupHistory).filter_by(request_id=pending_request.id).one()
        assert history.pickup_duration_minutes == 7
        assert history.completed_by == "staff"
        assert history.called_time is not None

    def test_parent_cannot_call(self, pickups, school, pending_request, bus) -> None:
        outcome = pickups.transition(actor_for(school["guardian"]), pending_request.id, PickupStatus.CALLED)
        assert outcome.error == ErrorCode.NOT_AUTHORIZED
        assert len(bus.events) == 1

    def test_cannot_complete_pending(self, pickups, school, pending_request) -> None:
        outcome = pickups.transition(actor_for(school["teacher"]), pending_request.id, PickupStatus.COMPLETED)
        assert outcome.error == ErrorCode.INVALID_TRANSITION

    def test_cannot_return_to_pending(self, pickups, school, pending_request) -> None:
        staff = actor_for(school["teacher"])
        pickups.transition(staff, pending_request.id, PickupStatus.CALLED)
        outcome = pickups.transition(staff, pending_request.id, PickupStatus.PENDING)
        assert outcome.error == ErrorCode.INVALID_TRANSITION

    def test_terminal_requests_are_immutable(self, pickups, school, pending_request, session) -> None:
        staff = actor_for(school["teacher"])
        pickups.cancel(actor_for(school["guardian"]), pending_request.id)

        for target in PickupStatus:
            outcome = pickups.transition(staff, pending_request.id, target)
            assert outcome.error == ErrorCode.ALREADY_TERMINAL

        assert load_request(session, pending_request.id).status == "cancelled"

    def test_second_call_is_noop(self, pickups, school, pending_request, bus) -> None:
        pickups.transition(actor_for(school["teacher"]), pending_request.id, PickupStatus.CALLED)
        again = pickups.transition(actor_for(school["admin"]), pending_request.id, PickupStatus.CALLED)

        assert again.ok
        assert not again.changed
        assert again.request.version == 2
        assert len(bus.events) == 2

    def test_second_call_with_stale_expectation_conflicts(self, pickups, school, pending_request) -> None:
        pickups.transition(actor_for(school["teacher"]), pending_request.id, PickupStatus.CALLED,
                           expected_status=PickupStatus.PENDING)
        again = pickups.transition(actor_for(school["admin"]), pending_request.id, PickupStatus.CALLED,
                                   expected_status=PickupStatus.PENDING)
        assert again.error == ErrorCode.CONFLICT
        assert again.request.status == PickupStatus.CALLED

    def test_stale_expectation_checked_before_terminal(self, pickups, school, pending_request) -> None:
        pickups.cancel(actor_for(school["guardian"]), pending_request.id)
        outcome = pickups.transition(actor_for(school["teacher"]), pending_request.id, PickupStatus.CALLED,
                                     expected_status="pending")
        assert outcome.error == ErrorCode.CONFLICT

    def test_unknown_request(self, pickups, school) -> None:
        outcome = pickups.transition(actor_for(school["teacher"]), uuid.uuid4(), PickupStatus.CALLED)
        assert outcome.error == ErrorCode.NOT_FOUND

    def test_string_statuses_accepted(self, pickups, school, pending_request) -> None:
        outcome = pickups.transition(actor_for(school["teacher"]), pending_request.id, "called", "pending")
        assert outcome.ok

    @pytest.mark.parametrize("target, expected", [("picked_up", None), ("called", "waiting")])
    def test_unknown_status_is_an_outcome(self, pickups, school, pending_request, session, bus, target, expected) -> None:
        staff = actor_for(school["teacher"])

        outcome = pickups.transition(staff, pending_request.id, target, expected)
        retried = pickups.transition_with_retry(staff, pending_request.id, target, expected)

        assert outcome.error == ErrorCode.INVALID_TRANSITION
        assert retried.error == ErrorCode.INVALID_TRANSITION
        assert load_request(session, pending_request.id).status == "pending"
        assert len(bus.events) == 1


# =============================================================================
# cancel
# =============================================================================


class TestCancel:
    def test_requester_cancels(self, pickups, school, pending_request) -> None:
        outcome = pickups.cancel(actor_for(school["guardian"]), pending_request.id)
        assert outcome.ok
        assert outcome.request.status == PickupStatus.CANCELLED

    def test_other_permitted_party_cancels_called_request(self, pickups, factory, school, pending_request) -> None:
        factory.authorization(school["student"], school["guardian"], school["family"], days=[2])
        pickups.transition(actor_for(school["teacher"]), pending_request.id, PickupStatus.CALLED)

        outcome = pickups.cancel(actor_for(school["family"]), pending_request.id)

        assert outcome.ok

    def test_outsider_cannot_cancel(self, pickups, school, pending_request) -> None:
        outcome = pickups.cancel(actor_for(school["outsider"]), pending_request.id)
        assert outcome.error == ErrorCode.NOT_AUTHORIZED

    def test_teacher_cannot_cancel_others_requests(self, pickups, school, pending_request) -> None:
        outcome = pickups.cancel(actor_for(school["teacher"]), pending_request.id)
        assert outcome.error == ErrorCode.NOT_AUTHORIZED

    def test_admin_cancels_any(self, pickups, school, pending_request) -> None:
        outcome = pickups.cancel(actor_for(school["admin"]), pending_request.id)
        assert outcome.ok

    def test_sweeper_cannot_cancel(self, pickups, school, pending_request) -> None:
        outcome = pickups.transition(ActorContext.system("sweeper"), pending_request.id, PickupStatus.CANCELLED)
        assert outcome.error == ErrorCode.NOT_AUTHORIZED

    def test_expired_authorization_cannot_cancel(self, pickups, factory, school, pending_request) -> None:
        factory.authorization(
            school["student"], school["guardian"], school["family"],
            start=date(2025, 9, 1), end=date(2025, 9, 30),
        )
        outcome = pickups.cancel(actor_for(school["family"]), pending_request.id)
        assert outcome.error == ErrorCode.NOT_AUTHORIZED
