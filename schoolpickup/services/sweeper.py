# schoolpickup/services/sweeper.py - Auto-completes pickups left in "called" too long
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional

from schoolpickup.core.clock import Clock, utcnow
from schoolpickup.models.pickup import PickupStatus
from schoolpickup.services.authorization_resolver import ActorContext
from schoolpickup.services.mutation_coordinator import TransientStoreError
from schoolpickup.services.outcomes import ErrorCode, SweepError, SweepReport
from schoolpickup.services.pickup_queries import PickupQueries
from schoolpickup.services.pickup_state_machine import PickupService

logger = logging.getLogger(__name__)

SWEEPER_ACTOR = ActorContext.system("sweeper")

# Lost races: someone else already finished or cancelled the request
_SKIPPED = (ErrorCode.CONFLICT, ErrorCode.ALREADY_TERMINAL)


class AutoCompletionSweeper:
    """
    Completes called requests whose called_time is older than ``stale_after``.

    The sweeper writes through ``PickupService`` exactly like staff do, always
    with ``expected_status=called``, so a request finished by a person between
    the scan and the write is skipped rather than completed twice.
    """

    def __init__(
        self,
        pickups: PickupService,
        queries: PickupQueries,
        stale_after_seconds: int = 300,
        interval_seconds: int = 120,
        clock: Clock = utcnow,
    ):
        self.pickups = pickups
        self.queries = queries
        self.stale_after = timedelta(seconds=stale_after_seconds)
        self.interval_seconds = interval_seconds
        self.clock = clock
        self._task: Optional[asyncio.Task] = None
        self._inflight: Optional[asyncio.Future] = None

    def run(self, now: Optional[datetime] = None) -> SweepReport:
        now = now or self.clock()
        report = SweepReport()

        try:
            stale = self.queries.find_stale_called(now - self.stale_after)
        except TransientStoreError as e:
            logger.error(f"Sweep aborted, could not list stale requests: {e}")
            report.errors.append(SweepError(request_id=None, error=ErrorCode.TRANSIENT_IO.value, message=str(e)))
            return report

        for request_id in stale:
            try:
                outcome = self.pickups.transition(
                    SWEEPER_ACTOR, request_id, PickupStatus.COMPLETED,
                    expected_status=PickupStatus.CALLED, now=now,
                )
            except Exception as e:
                logger.exception(f"Sweep failed on request {request_id}")
                report.errors.append(SweepError(request_id=request_id, error=type(e).__name__, message=str(e)))
                continue

            if outcome.ok and outcome.changed:
                report.completed += 1
            elif outcome.ok or outcome.error in _SKIPPED:
                report.skipped += 1
            else:
                logger.warning(f"Sweep could not complete {request_id}: {outcome.error.value} {outcome.message}")
                report.errors.append(SweepError(
                    request_id=request_id, error=outcome.error.value, message=outcome.message,
                ))

        if stale:
            logger.info(
                f"Sweep at {now.isoformat()}: {report.completed} completed, "
                f"{report.skipped} skipped, {len(report.errors)} errors"
            )
        return report

    def sweep(self, now: Optional[datetime] = None) -> int:
        """Run one sweep and return how many requests were completed."""
        return self.run(now).completed

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _loop(self):
        logger.info(f"Sweeper started (every {self.interval_seconds}s, stale after {self.stale_after})")
        while True:
            # Shielded so stop() can wait for a sweep already in its thread
            self._inflight = asyncio.ensure_future(asyncio.to_thread(self.run))
            try:
                await asyncio.shield(self._inflight)
            except Exception:
                logger.exception("Sweep iteration failed")
            await asyncio.sleep(self.interval_seconds)

    def start(self):
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._loop())

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        if self._inflight is not None and not self._inflight.done():
            logger.info("Waiting for the running sweep to finish")
            try:
                await self._inflight
            except Exception:
                logger.exception("Sweep iteration failed")
        self._inflight = None
        logger.info("Sweeper stopped")
