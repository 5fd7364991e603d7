"""
HR Process Engine
Event Service — booking, the slice of scheduling the process engine depends on.

``book_event`` is reachable two ways: directly by the viewer over the API,
and as the deferred ``event.book`` task scheduled by the ``book_event``
automation action (booking on behalf of the process owner).
"""

import logging

from hrflow.auth import require_viewer
from hrflow.core.constants import TASK_EVALUATE_AUTOMATIONS, Trigger
from hrflow.core.exceptions import ValidationError
from hrflow.models.audit import write_audit
from hrflow.models.event import Event
from hrflow.models.program import Program
from hrflow.models.user import User
from hrflow.services.helpers.scoped_queries import get_active, get_active_or_none
from hrflow.services.scheduler_service import schedule
from hrflow.utils.helpers import commit_or_conflict

logger = logging.getLogger(__name__)


def _book(user_id: int, event: Event, actor_user_id: int | None) -> bool:
    """Add ``user_id`` to the attendee list. Returns False if already booked."""
    if event.status == "cancelled":
        raise ValidationError("Event is not available")

    attendees = list(event.attendees or [])
    if user_id in attendees:
        return False
    if len(attendees) >= event.max_attendees:
        raise ValidationError("Event is full")

    attendees.append(user_id)
    event.attendees = attendees
    event.status = "full" if len(attendees) >= event.max_attendees else "open"
    write_audit(
        entity_type="event",
        entity_id=event.id,
        action="event.book",
        actor_user_id=actor_user_id,
        changes={"after": {"attendees": attendees, "status": event.status}},
        metadata={"user_id": user_id},
    )
    return True


def _schedule_booked(event: Event, user_id: int, depth: int) -> None:
    program = get_active_or_none(Program, event.program_id)
    if program is None or not program.automations:
        return
    schedule(0, TASK_EVALUATE_AUTOMATIONS, {
        "trigger": Trigger.EVENT_BOOKED.value,
        "program_id": program.id,
        "user_id": user_id,
        "data": {"eventId": event.id, "eventTitle": event.title},
        "depth": depth,
    })


def book_event(viewer: User | None, event_id: int) -> dict:
    """Book the viewer onto ``event_id``. Booking twice is a no-op."""
    viewer = require_viewer(viewer)
    event = get_active(Event, event_id)
    booked = _book(viewer.id, event, viewer.id)
    commit_or_conflict("Event")
    if booked:
        logger.info("User %s booked event %s", viewer.id, event.id)
        _schedule_booked(event, viewer.id, depth=0)
    return event.to_dict()


def cancel_booking(viewer: User | None, event_id: int) -> dict:
    viewer = require_viewer(viewer)
    event = get_active(Event, event_id)
    attendees = list(event.attendees or [])
    if viewer.id in attendees:
        attendees.remove(viewer.id)
        event.attendees = attendees
        if event.status != "cancelled":
            event.status = "open"
        commit_or_conflict("Event")
    return event.to_dict()


def book_event_task(*, user_id: int, event_id: int, depth: int = 0) -> None:
    """Deferred booking on behalf of ``user_id``; the scheduler owns the commit."""
    event = get_active(Event, event_id)
    if _book(user_id, event, actor_user_id=None):
        _schedule_booked(event, user_id, depth=depth)
