"""Tests for PickupQueries and the notification outbox."""

from __future__ import annotations

import asyncio
from datetime import date

import pytest

from conftest import actor_for
from schoolpickup.models.notification import Notification
from schoolpickup.models.pickup import PickupStatus
from schoolpickup.models.student import StudentParent
from schoolpickup.services.event_bus import EventBus
from schoolpickup.services.notification_outbox import PickupNotifier
from schoolpickup.services.outcomes import ErrorCode, PickupRequestChangeEvent


class TestQueries:
    def test_active_and_called_lists(self, pickups, queries, factory, school, pending_request) -> None:
        second = factory.student("Ben", "Second", school_class=school["class"], guardians=(school["guardian"],))
        other = pickups.create(actor_for(school["guardian"]), second.id).request
        pickups.transition(actor_for(school["teacher"]), other.id, PickupStatus.CALLED)

        assert {r.id for r in queries.list_active()} == {pending_request.id, other.id}
        assert [r.id for r in queries.list_called()] == [other.id]
        assert [r.id for r in queries.list_called(school["class"].id)] == [other.id]

    def test_class_filter(self, queries, factory, school, pending_request) -> None:
        other_class = factory.school_class("Tulips")
        assert queries.list_active(other_class.id) == []
        assert [r.id for r in queries.list_active(school["class"].id)] == [pending_request.id]

    def test_parent_sees_only_permitted_students(self, queries, factory, school, pending_request) -> None:
        assert [r.id for r in queries.list_for_parent(actor_for(school["guardian"]))] == [pending_request.id]
        assert queries.list_for_parent(actor_for(school["outsider"])) == []

        factory.authorization(school["student"], school["guardian"], school["family"], days=[2])
        assert [r.id for r in queries.list_for_parent(actor_for(school["family"]))] == [pending_request.id]

    def test_visibility_of_single_request(self, queries, school, pending_request) -> None:
        assert queries.get_for_actor(actor_for(school["teacher"]), pending_request.id).ok
        assert queries.get_for_actor(actor_for(school["guardian"]), pending_request.id).ok
        assert queries.get_for_actor(actor_for(school["outsider"]), pending_request.id).error == ErrorCode.NOT_AUTHORIZED

    def test_history_by_student_and_date(self, pickups, queries, school, pending_request) -> None:
        staff = actor_for(school["teacher"])
        pickups.transition(staff, pending_request.id, PickupStatus.CALLED)
        pickups.transition(staff, pending_request.id, PickupStatus.COMPLETED)

        assert len(queries.history(student_id=school["student"].id)) == 1
        assert len(queries.history(start=date(2025, 10, 21), end=date(2025, 10, 21))) == 1
        assert queries.history(start=date(2025, 10, 22)) == []
        assert len(queries.history(parent_id=school["guardian"].id)) == 1


class TestNotifier:
    def called_event(self, request) -> PickupRequestChangeEvent:
        return PickupRequestChangeEvent(
            request_id=request.id,
            student_id=request.student_id,
            previous_status=PickupStatus.PENDING,
            new_status=PickupStatus.CALLED,
            timestamp=request.request_time,
            version=2,
            parent_id=request.parent_id,
            class_id=request.class_id,
        )

    def test_queues_for_requester_and_guardians(self, db_manager, session, factory, school, pending_request) -> None:
        second_guardian = factory.parent("Sam Second")
        factory._save(StudentParent(student_id=school["student"].id, parent_id=second_guardian.id))
        notifier = PickupNotifier(db_manager.SessionLocal, EventBus())

        assert notifier.handle(self.called_event(pending_request)) == 2

        rows = session.query(Notification).all()
        assert {r.to_parent_id for r in rows} == {school["guardian"].id, second_guardian.id}
        assert rows[0].subject == "Ada Lovelace is on the way"
        assert "Sunflowers" in rows[0].body
        assert {r.status for r in rows} == {"QUEUED"}

    def test_ignores_other_statuses(self, db_manager, pending_request) -> None:
        notifier = PickupNotifier(db_manager.SessionLocal, EventBus())
        event = PickupRequestChangeEvent(
            request_id=pending_request.id,
            student_id=pending_request.student_id,
            previous_status=None,
            new_status=PickupStatus.PENDING,
            timestamp=pending_request.request_time,
            version=1,
        )
        assert notifier.handle(event) == 0

    async def test_runs_from_the_bus(self, db_manager, session, school, pending_request) -> None:
        bus = EventBus()
        notifier = PickupNotifier(db_manager.SessionLocal, bus)
        notifier.start()

        bus.publish(self.called_event(pending_request))
        for _ in range(50):
            if session.query(Notification).count():
                break
            await asyncio.sleep(0.02)

        await notifier.stop()
        assert session.query(Notification).count() == 1
        assert bus.subscriber_count == 0
