"""
HR Process Engine
Event blueprint — self-service booking.

Endpoints:
    POST   /api/v1/events/<id>/book  — book the viewer onto an event
    DELETE /api/v1/events/<id>/book  — cancel the viewer's booking
"""

from flask import Blueprint, jsonify

from hrflow.auth import get_viewer
from hrflow.blueprints import register_error_handlers
from hrflow.services import event_service

event_bp = Blueprint("event", __name__, url_prefix="/api/v1")
register_error_handlers(event_bp)


@event_bp.route("/events/<int:event_id>/book", methods=["POST"])
def book_event(event_id):
    return jsonify(event_service.book_event(get_viewer(), event_id))


@event_bp.route("/events/<int:event_id>/book", methods=["DELETE"])
def cancel_booking(event_id):
    return jsonify(event_service.cancel_booking(get_viewer(), event_id))
