# schoolpickup/api/routers/pickup_requests.py - Pickup request lifecycle endpoints and live feed
from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect, status
from typing import Optional
from datetime import date
from uuid import UUID
import asyncio
import logging

import anyio

from schoolpickup.api.deps.auth import get_current_actor, parent_from_token, require_capability
from schoolpickup.api.deps.services import get_pickup_queries, get_pickup_service, get_sweeper
from schoolpickup.api.errors import error_detail, raise_for_outcome
from schoolpickup.services.authorization_resolver import ActorContext, Capability
from schoolpickup.services.board import FeedUpdate, LiveBoardFeed
from schoolpickup.services.event_bus import for_class
from schoolpickup.services.pickup_queries import PickupQueries
from schoolpickup.services.pickup_state_machine import PickupService
from schoolpickup.services.sweeper import AutoCompletionSweeper
from schoolpickup.schemas.pickup import (
    PickupCancelIn,
    PickupHistoryOut,
    PickupOutcomeOut,
    PickupRequestCreate,
    PickupRequestList,
    PickupRequestOut,
    PickupTransitionIn,
    SweepReportOut,
)

logger = logging.getLogger(__name__)
router = APIRouter()


def _outcome_out(outcome) -> PickupOutcomeOut:
    return PickupOutcomeOut(
        request=PickupRequestOut.model_validate(outcome.request),
        changed=outcome.changed,
        message=outcome.message
    )


@router.post("", response_model=PickupOutcomeOut, status_code=status.HTTP_201_CREATED)
def create_pickup_request(
    data: PickupRequestCreate,
    actor: ActorContext = Depends(get_current_actor),
    pickups: PickupService = Depends(get_pickup_service)
):
    """Request pickup of a student the caller may collect"""
    outcome = raise_for_outcome(pickups.create(actor, data.student_id))
    return _outcome_out(outcome)


@router.get("/active", response_model=PickupRequestList)
def list_active_requests(
    class_id: Optional[UUID] = Query(None),
    actor: ActorContext = Depends(get_current_actor),
    queries: PickupQueries = Depends(get_pickup_queries)
):
    """Staff see every active request; parents see those for students they may collect today"""
    requests = queries.list_visible(actor, class_id)
    return PickupRequestList(
        requests=[PickupRequestOut.model_validate(r) for r in requests],
        total=len(requests)
    )


@router.get("/called", response_model=PickupRequestList)
def list_called_requests(
    class_id: Optional[UUID] = Query(None),
    actor: ActorContext = Depends(get_current_actor),
    queries: PickupQueries = Depends(get_pickup_queries)
):
    """Students currently called to the pickup point"""
    requests = queries.list_called(class_id)
    if not actor.can(Capability.VIEW_ALL_REQUESTS):
        permitted = queries.permitted_students(actor)
        requests = [r for r in requests if r.student_id in permitted or r.parent_id == actor.party_id]
    return PickupRequestList(
        requests=[PickupRequestOut.model_validate(r) for r in requests],
        total=len(requests)
    )


@router.get("/history", response_model=list[PickupHistoryOut])
def pickup_history(
    student_id: Optional[UUID] = Query(None),
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    actor: ActorContext = Depends(get_current_actor),
    queries: PickupQueries = Depends(get_pickup_queries)
):
    """Completed pickups; parents only see students they may collect or pickups they requested"""
    if start_date and end_date and end_date < start_date:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=error_detail("INVALID_RANGE", "end_date must be on or after start_date")
        )

    parent_id = None
    if not actor.can(Capability.VIEW_ALL_REQUESTS):
        if student_id is None:
            parent_id = actor.party_id
        elif student_id not in queries.permitted_students(actor):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=error_detail("NOT_AUTHORIZED", "You may not view this student's pickup history")
            )

    rows = queries.history(student_id=student_id, start=start_date, end=end_date, parent_id=parent_id, limit=limit)
    return [PickupHistoryOut.model_validate(row) for row in rows]


@router.post("/sweep", response_model=SweepReportOut)
def run_sweep(
    actor: ActorContext = Depends(require_capability(Capability.RUN_SWEEP)),
    sweeper: AutoCompletionSweeper = Depends(get_sweeper)
):
    """Complete stale called requests now instead of waiting for the background sweep"""
    report = sweeper.run()
    logger.info(f"Manual sweep by {actor}: {report.completed} completed")
    return SweepReportOut(**report.to_dict())


@router.get("/{request_id}", response_model=PickupRequestOut)
def get_pickup_request(
    request_id: UUID,
    actor: ActorContext = Depends(get_current_actor),
    queries: PickupQueries = Depends(get_pickup_queries)
):
    outcome = raise_for_outcome(queries.get_for_actor(actor, request_id))
    return PickupRequestOut.model_validate(outcome.request)


@router.post("/{request_id}/transition", response_model=PickupOutcomeOut)
def transition_pickup_request(
    request_id: UUID,
    data: PickupTransitionIn,
    actor: ActorContext = Depends(get_current_actor),
    pickups: PickupService = Depends(get_pickup_service)
):
    """Call, complete or cancel a request"""
    outcome = pickups.transition_with_retry(actor, request_id, data.target_status, data.expected_status)
    return _outcome_out(raise_for_outcome(outcome))


@router.post("/{request_id}/cancel", response_model=PickupOutcomeOut)
def cancel_pickup_request(
    request_id: UUID,
    data: Optional[PickupCancelIn] = None,
    actor: ActorContext = Depends(get_current_actor),
    pickups: PickupService = Depends(get_pickup_service)
):
    expected = data.expected_status if data else None
    outcome = pickups.cancel(actor, request_id, expected)
    return _outcome_out(raise_for_outcome(outcome))


# ---------------------------------------------------------------------------
# Live feed
# ---------------------------------------------------------------------------

def _feed_message(update: FeedUpdate) -> dict:
    return {
        "type": update.kind,
        "changes": [change.to_dict() for change in update.changes],
        "board": [PickupRequestOut.model_validate(r).model_dump(mode="json") for r in update.board],
        "event": update.event.to_dict() if update.event else None,
    }


def _actor_for_token(app, token: str) -> ActorContext:
    with app.state.db_manager.transaction() as db:
        return ActorContext.for_parent(parent_from_token(token, db))


@router.websocket("/ws")
async def pickup_feed(
    websocket: WebSocket,
    token: Optional[str] = Query(None),
    class_id: Optional[UUID] = Query(None)
):
    """
    Streams board changes. Authenticates with ``?token=`` since browsers cannot
    set headers on WebSocket upgrades. Staff may narrow to one class.
    """
    app = websocket.app
    if not token:
        await websocket.close(code=4401)
        return
    try:
        actor = await asyncio.to_thread(_actor_for_token, app, token)
    except HTTPException as e:
        logger.info(f"Rejected pickup feed connection: {e.detail}")
        await websocket.close(code=4401)
        return

    queries: PickupQueries = app.state.queries

    if actor.can(Capability.VIEW_ALL_REQUESTS):
        predicate = for_class(class_id) if class_id else None
        load_snapshot = lambda: queries.list_active(class_id)
    else:
        permitted = await asyncio.to_thread(queries.permitted_students, actor)
        party_id = actor.party_id
        predicate = lambda event: event.student_id in permitted or event.parent_id == party_id
        load_snapshot = lambda: queries.list_for_parent(actor)

    feed = LiveBoardFeed(
        app.state.bus,
        load_snapshot=load_snapshot,
        fetch_request=queries.get,
        predicate=predicate,
        poll_interval=app.state.fallback_poll_seconds,
    )

    await websocket.accept()
    logger.info(f"Pickup feed opened for {actor}")

    async def pump():
        updates = feed.updates()
        try:
            async for update in updates:
                await websocket.send_json(_feed_message(update))
        finally:
            with anyio.CancelScope(shield=True):
                await updates.aclose()

    async def drain():
        # Only used to notice the client going away
        while True:
            await websocket.receive_text()

    async def until_first_exit(side, task_group):
        try:
            await side()
        except WebSocketDisconnect:
            pass
        except Exception as e:
            logger.error(f"Pickup feed for {actor} failed: {e}")
        finally:
            task_group.cancel_scope.cancel()

    try:
        async with anyio.create_task_group() as tg:
            tg.start_soon(until_first_exit, pump, tg)
            tg.start_soon(until_first_exit, drain, tg)
    finally:
        logger.info(f"Pickup feed closed for {actor}")
