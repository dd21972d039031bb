"""Tests for AutoCompletionSweeper."""

from __future__ import annotations

import asyncio
import threading
import time

import pytest

from conftest import UTC_TZ, RecordingBus, actor_for, load_request
from schoolpickup.models.pickup import PickupHistory, PickupStatus
from schoolpickup.services.mutation_coordinator import MutationCoordinator
from schoolpickup.services.outcomes import ErrorCode, RequestOutcome, SweepReport
from schoolpickup.services.pickup_queries import PickupQueries
from schoolpickup.services.pickup_state_machine import PickupService
from schoolpickup.services.sweeper import AutoCompletionSweeper


@pytest.fixture
def sweeper(pickups, queries, clock) -> AutoCompletionSweeper:
    return AutoCompletionSweeper(pickups, queries, stale_after_seconds=300, interval_seconds=60, clock=clock)


@pytest.fixture
def called_request(pickups, school, pending_request):
    outcome = pickups.transition(actor_for(school["teacher"]), pending_request.id, PickupStatus.CALLED)
    assert outcome.ok
    return outcome.request


def test_fresh_called_requests_are_left_alone(sweeper, called_request, clock) -> None:
    clock.advance(minutes=4)
    assert sweeper.sweep() == 0


def test_pending_requests_are_never_swept(sweeper, pending_request, clock, session) -> None:
    clock.advance(hours=3)
    assert sweeper.sweep() == 0
    assert load_request(session, pending_request.id).status == "pending"


def test_stale_called_request_is_completed(sweeper, called_request, clock, session, bus) -> None:
    clock.advance(minutes=6)

    report = sweeper.run()

    assert report.completed == 1
    assert report.errors == []
    assert load_request(session, called_request.id).status == "completed"
    history = session.query(PickupHistory).filter_by(request_id=called_request.id).one()
    assert history.completed_by == "sweeper"
    assert bus.events[-1].new_status == PickupStatus.COMPLETED


def test_sweep_is_idempotent(sweeper, called_request, clock) -> None:
    clock.advance(minutes=10)
    assert sweeper.sweep() == 1
    assert sweeper.sweep() == 0


def test_race_with_staff_is_skipped(sweeper, pickups, school, called_request, clock, monkeypatch) -> None:
    """Staff complete the request between the scan and the sweeper's write."""
    clock.advance(minutes=10)
    real_find = sweeper.queries.find_stale_called

    def find_then_staff_completes(cutoff):
        stale = real_find(cutoff)
        pickups.transition(actor_for(school["teacher"]), called_request.id, PickupStatus.COMPLETED)
        return stale

    monkeypatch.setattr(sweeper.queries, "find_stale_called", find_then_staff_completes)
    report = sweeper.run()

    assert report.completed == 0
    assert report.skipped == 1
    assert report.errors == []


def test_one_failure_does_not_stop_the_sweep(sweeper, pickups, factory, school, clock, monkeypatch) -> None:
    staff = actor_for(school["teacher"])
    second = factory.student("Ben", "Second", school_class=school["class"], guardians=(school["guardian"],))
    ids = []
    for student in (school["student"], second):
        created = pickups.create(actor_for(school["guardian"]), student.id)
        pickups.transition(staff, created.request.id, PickupStatus.CALLED)
        ids.append(created.request.id)
    clock.advance(minutes=10)

    real_transition = pickups.transition

    def failing_first(actor, request_id, *args, **kwargs):
        if request_id == ids[0]:
            return RequestOutcome.failure(ErrorCode.TRANSIENT_IO, "store unavailable")
        return real_transition(actor, request_id, *args, **kwargs)

    monkeypatch.setattr(pickups, "transition", failing_first)
    report = sweeper.run()

    assert report.completed == 1
    assert [(e.request_id, e.error) for e in report.errors] == [(ids[0], "TRANSIENT_IO")]


def test_unexpected_exception_is_collected(sweeper, pickups, called_request, clock, monkeypatch) -> None:
    clock.advance(minutes=10)

    def explode(*args, **kwargs):
        raise RuntimeError("boom")

    monkeypatch.setattr(pickups, "transition", explode)
    report = sweeper.run()

    assert report.completed == 0
    assert report.errors[0].error == "RuntimeError"
    assert report.to_dict()["errors"][0]["request_id"] == str(called_request.id)


async def test_background_loop_runs_and_stops(sweeper, called_request, clock, session) -> None:
    clock.advance(minutes=10)
    sweeper.start()
    assert sweeper.running

    for _ in range(50):
        if load_request(session, called_request.id).status == "completed":
            break
        await asyncio.sleep(0.05)

    await sweeper.stop()
    assert not sweeper.running
    assert load_request(session, called_request.id).status == "completed"


def test_overlapping_sweeps_complete_once(sweeper, other_db_manager, called_request, clock, session) -> None:
    """Two sweeper processes waking at the same moment."""
    other = AutoCompletionSweeper(
        PickupService(MutationCoordinator(other_db_manager.SessionLocal, RecordingBus()), UTC_TZ, clock=clock),
        PickupQueries(MutationCoordinator(other_db_manager.SessionLocal), UTC_TZ, clock=clock),
        stale_after_seconds=300,
        clock=clock,
    )
    clock.advance(minutes=10)
    barrier = threading.Barrier(2)
    reports = []

    def sweep(instance):
        barrier.wait()
        reports.append(instance.run())

    threads = [threading.Thread(target=sweep, args=(instance,)) for instance in (sweeper, other)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert len(reports) == 2
    assert sum(r.completed for r in reports) == 1
    assert [r.errors for r in reports] == [[], []]
    assert session.query(PickupHistory).filter_by(request_id=called_request.id).count() == 1
    assert load_request(session, called_request.id).status == "completed"


async def test_stop_waits_for_running_sweep(sweeper, monkeypatch) -> None:
    started = threading.Event()
    finished = threading.Event()

    def slow_run(now=None):
        started.set()
        time.sleep(0.3)
        finished.set()
        return SweepReport()

    monkeypatch.setattr(sweeper, "run", slow_run)
    sweeper.start()
    while not started.is_set():
        await asyncio.sleep(0.01)

    await sweeper.stop()

    assert finished.is_set()
    assert not sweeper.running
