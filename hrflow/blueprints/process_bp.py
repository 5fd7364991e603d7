"""
HR Process Engine
Process blueprint — start, submit, and track process instances.

Endpoints:
    POST   /api/v1/processes                    — start a process
    GET    /api/v1/processes                    — staff listing (paginated)
    GET    /api/v1/processes/mine               — viewer's own processes
    GET    /api/v1/processes/team               — direct reports' processes
    GET    /api/v1/processes/<id>               — detail with access masks
    POST   /api/v1/processes/<id>/submit        — submit the current stage
    PUT    /api/v1/processes/<id>/status        — admin status override
    POST   /api/v1/processes/<id>/accept-offer  — owner accepts an offer
    DELETE /api/v1/processes/<id>               — admin soft delete

Service layer owns all business logic and commits.
"""

import logging

from flask import Blueprint, jsonify, request

from hrflow.auth import get_viewer
from hrflow.blueprints import json_body, register_error_handlers
from hrflow.services import process_service
from hrflow.utils.errors import E, api_error
from hrflow.utils.helpers import pagination_args

logger = logging.getLogger(__name__)

process_bp = Blueprint("process", __name__, url_prefix="/api/v1")
register_error_handlers(process_bp)


@process_bp.route("/processes", methods=["POST"])
def create_process():
    """Body: {program_id, process_type?, department_id?, target_user_id?}"""
    data = json_body()
    program_id = data.get("program_id")
    if program_id is None:
        return api_error(E.VALIDATION_REQUIRED, "program_id is required")
    process = process_service.create_process(
        get_viewer(),
        program_id,
        process_type=data.get("process_type"),
        department_id=data.get("department_id"),
        target_user_id=data.get("target_user_id"),
    )
    return jsonify(process), 201


@process_bp.route("/processes", methods=["GET"])
def list_processes():
    """Query params: type, program_id, limit, offset."""
    limit, offset = pagination_args()
    items, total = process_service.list_processes_paginated(
        get_viewer(),
        process_type=request.args.get("type"),
        program_id=request.args.get("program_id", type=int),
        limit=limit,
        offset=offset,
    )
    return jsonify({"items": items, "total": total, "limit": limit, "offset": offset})


@process_bp.route("/processes/mine", methods=["GET"])
def my_processes():
    return jsonify(process_service.get_my_processes(get_viewer()))


@process_bp.route("/processes/team", methods=["GET"])
def team_processes():
    return jsonify(process_service.get_team_processes(get_viewer()))


@process_bp.route("/processes/<int:process_id>", methods=["GET"])
def get_process(process_id):
    return jsonify(process_service.get_process(get_viewer(), process_id))


@process_bp.route("/processes/<int:process_id>/submit", methods=["POST"])
def submit_stage(process_id):
    """Body: {stage_id, data, expected_version?}"""
    body = json_body()
    stage_id = body.get("stage_id")
    if stage_id is None:
        return api_error(E.VALIDATION_REQUIRED, "stage_id is required")
    process = process_service.submit_stage(
        get_viewer(),
        process_id,
        stage_id,
        body.get("data"),
        expected_version=body.get("expected_version"),
    )
    return jsonify(process)


@process_bp.route("/processes/<int:process_id>/status", methods=["PUT"])
def update_status(process_id):
    status = json_body().get("status")
    if not status:
        return api_error(E.VALIDATION_REQUIRED, "status is required")
    return jsonify(process_service.update_status(get_viewer(), process_id, status))


@process_bp.route("/processes/<int:process_id>/accept-offer", methods=["POST"])
def accept_offer(process_id):
    return jsonify(process_service.accept_offer(get_viewer(), process_id))


@process_bp.route("/processes/<int:process_id>", methods=["DELETE"])
def delete_process(process_id):
    process_service.delete_process(get_viewer(), process_id)
    return "", 204
