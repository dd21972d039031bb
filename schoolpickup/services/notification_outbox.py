# schoolpickup/services/notification_outbox.py - Queues in-app notices when a child is called
import asyncio
import logging
from typing import Optional

from jinja2 import Template
from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from schoolpickup.models.notification import Notification
from schoolpickup.models.pickup import PickupStatus
from schoolpickup.models.student import Student, StudentParent
from schoolpickup.services.event_bus import EventBus, Subscription, for_status
from schoolpickup.services.outcomes import PickupRequestChangeEvent

logger = logging.getLogger(__name__)

CALLED_SUBJECT = Template("{{ student_name }} is on the way")
CALLED_BODY = Template(
    "{{ student_name }}{% if class_name %} ({{ class_name }}){% endif %} has been called "
    "and is heading to the pickup point."
)


class PickupNotifier:
    """
    Subscribes to the fanout and writes QUEUED rows to the notifications
    outbox for the requester and the student's guardians. Delivery is handled
    elsewhere; failures here are logged and never reach the transition.
    """

    def __init__(self, session_factory: sessionmaker, bus: EventBus):
        self.session_factory = session_factory
        self.bus = bus
        self._subscription: Optional[Subscription] = None
        self._task: Optional[asyncio.Task] = None

    def handle(self, event: PickupRequestChangeEvent) -> int:
        """Write outbox rows for one event. Returns the number of rows queued."""
        if event.new_status != PickupStatus.CALLED:
            return 0

        db = self.session_factory()
        try:
            student = db.get(Student, event.student_id)
            if student is None:
                return 0

            recipients = set(db.execute(
                select(StudentParent.parent_id).where(StudentParent.student_id == event.student_id)
            ).scalars().all())
            if event.parent_id:
                recipients.add(event.parent_id)

            context = {
                "student_name": student.full_name,
                "class_name": student.class_.name if student.class_ else None,
            }
            subject = CALLED_SUBJECT.render(**context)
            body = CALLED_BODY.render(**context)
            for parent_id in recipients:
                db.add(Notification(
                    type="IN_APP",
                    subject=subject,
                    body=body,
                    to_parent_id=parent_id,
                    request_id=event.request_id,
                    status="QUEUED",
                ))
            db.commit()
            logger.info(f"Queued {len(recipients)} notification(s) for request {event.request_id}")
            return len(recipients)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    async def _consume(self):
        async for event in self._subscription:
            try:
                await asyncio.to_thread(self.handle, event)
            except Exception:
                logger.exception(f"Failed to queue notification for request {event.request_id}")

    def start(self):
        if self._task is not None:
            return
        self._subscription = self.bus.subscribe(for_status(PickupStatus.CALLED))
        self._task = asyncio.get_running_loop().create_task(self._consume())

    async def stop(self):
        if self._task is None:
            return
        self._subscription.close()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        self._subscription = None
