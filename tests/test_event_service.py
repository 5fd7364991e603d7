"""
HR Process Engine
Tests — event booking (direct and deferred).
"""

import pytest

from hrflow.core.exceptions import NotFoundError, UnauthorizedError, ValidationError
from hrflow.models import db
from hrflow.models.event import Event
from hrflow.services.event_service import book_event, book_event_task, cancel_booking
from hrflow.services.scheduler_service import SchedulerService


@pytest.fixture()
def make_event():
    def _make(*, max_attendees=2, status="open", program=None):
        event = Event(title="Orientation", max_attendees=max_attendees, status=status,
                      program_id=program.id if program is not None else None)
        db.session.add(event)
        db.session.commit()
        return event
    return _make


def test_book_adds_attendee(make_user, make_event):
    user, event = make_user(), make_event()
    result = book_event(user, event.id)
    assert result["attendees"] == [user.id]
    assert result["status"] == "open"


def test_booking_twice_is_noop(make_user, make_event):
    user, event = make_user(), make_event()
    book_event(user, event.id)
    assert book_event(user, event.id)["attendees"] == [user.id]


def test_last_seat_marks_full(make_user, make_event):
    event = make_event(max_attendees=1)
    assert book_event(make_user(), event.id)["status"] == "full"
    with pytest.raises(ValidationError, match="Event is full"):
        book_event(make_user(), event.id)


def test_cancelled_event_refused(make_user, make_event):
    event = make_event(status="cancelled")
    with pytest.raises(ValidationError, match="not available"):
        book_event(make_user(), event.id)


def test_requires_viewer_and_event(make_user, make_event):
    with pytest.raises(UnauthorizedError):
        book_event(None, make_event().id)
    with pytest.raises(NotFoundError):
        book_event(make_user(), 999)


def test_cancel_reopens(make_user, make_event):
    user, event = make_user(), make_event(max_attendees=1)
    book_event(user, event.id)
    result = cancel_booking(user, event.id)
    assert result["attendees"] == []
    assert result["status"] == "open"


def test_booking_schedules_event_booked(make_user, make_program, make_event):
    program = make_program(automations=[{"trigger": "event_booked", "actions": []}])
    user = make_user()
    event = make_event(program=program)

    book_event(user, event.id)

    pending = SchedulerService.pending()
    assert len(pending) == 1
    assert pending[0]["args"]["trigger"] == "event_booked"
    assert pending[0]["args"]["data"] == {"eventId": event.id, "eventTitle": "Orientation"}


def test_deferred_booking_carries_depth(make_user, make_program, make_event):
    program = make_program(automations=[{"trigger": "event_booked", "actions": []}])
    user = make_user()
    event = make_event(program=program)

    book_event_task(user_id=user.id, event_id=event.id, depth=2)

    assert event.attendees == [user.id]
    assert SchedulerService.pending()[0]["args"]["depth"] == 2
