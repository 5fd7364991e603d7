"""
HR Process Engine
Program blueprint — pipeline administration.

Endpoints:
    GET    /api/v1/programs                          — programs visible to the viewer
    POST   /api/v1/programs                          — create (admin)
    PUT    /api/v1/programs/<id>                     — update / activate (admin)
    PUT    /api/v1/programs/<id>/view-config         — role visibility (admin)
    PUT    /api/v1/programs/<id>/access-control      — start/view rules (admin)
    GET    /api/v1/programs/<id>/stages              — ordered stages
    GET    /api/v1/programs/<id>/visible-stages      — stages + access mask for viewer
    POST   /api/v1/programs/<id>/stages              — add stage (admin)
    PUT    /api/v1/programs/<id>/stages/order        — reorder (admin)
    PUT    /api/v1/stages/<id>                       — update stage (admin)
    PUT    /api/v1/stages/<id>/role-access           — stage role access (admin)
    DELETE /api/v1/stages/<id>                       — soft delete (admin)
    GET    /api/v1/stage-templates                   — list templates (manager+)
    POST   /api/v1/stage-templates                   — create template (admin)
"""

from flask import Blueprint, jsonify, request

from hrflow.auth import get_viewer
from hrflow.blueprints import json_body, register_error_handlers
from hrflow.services import program_service
from hrflow.utils.errors import E, api_error

program_bp = Blueprint("program", __name__, url_prefix="/api/v1")
register_error_handlers(program_bp)


# ═════════════════════════════════════════════════════════════════════════
# Programs
# ═════════════════════════════════════════════════════════════════════════


@program_bp.route("/programs", methods=["GET"])
def list_programs():
    return jsonify(program_service.list_programs(get_viewer(), program_type=request.args.get("type")))


@program_bp.route("/programs", methods=["POST"])
def create_program():
    return jsonify(program_service.create_program(get_viewer(), json_body())), 201


@program_bp.route("/programs/<int:program_id>", methods=["PUT"])
def update_program(program_id):
    return jsonify(program_service.update_program(get_viewer(), program_id, json_body()))


@program_bp.route("/programs/<int:program_id>/view-config", methods=["PUT"])
def update_view_config(program_id):
    body = json_body()
    if "view_config" not in body:
        return api_error(E.VALIDATION_REQUIRED, "view_config is required")
    return jsonify(program_service.update_view_config(get_viewer(), program_id, body["view_config"]))


@program_bp.route("/programs/<int:program_id>/access-control", methods=["PUT"])
def update_access_control(program_id):
    body = json_body()
    if "access_control" not in body:
        return api_error(E.VALIDATION_REQUIRED, "access_control is required")
    return jsonify(program_service.update_access_control(get_viewer(), program_id, body["access_control"]))


# ═════════════════════════════════════════════════════════════════════════
# Stages
# ═════════════════════════════════════════════════════════════════════════


@program_bp.route("/programs/<int:program_id>/stages", methods=["GET"])
def list_stages(program_id):
    return jsonify(program_service.get_program_stages(program_id))


@program_bp.route("/programs/<int:program_id>/visible-stages", methods=["GET"])
def list_visible_stages(program_id):
    return jsonify(program_service.get_visible_program_stages(get_viewer(), program_id))


@program_bp.route("/programs/<int:program_id>/stages", methods=["POST"])
def add_stage(program_id):
    return jsonify(program_service.add_stage_to_program(get_viewer(), program_id, json_body())), 201


@program_bp.route("/programs/<int:program_id>/stages/order", methods=["PUT"])
def reorder_stages(program_id):
    stage_ids = json_body().get("stage_ids")
    if stage_ids is None:
        return api_error(E.VALIDATION_REQUIRED, "stage_ids is required")
    return jsonify(program_service.reorder_stages(get_viewer(), program_id, stage_ids))


@program_bp.route("/stages/<int:stage_id>", methods=["PUT"])
def update_stage(stage_id):
    return jsonify(program_service.update_stage(get_viewer(), stage_id, json_body()))


@program_bp.route("/stages/<int:stage_id>/role-access", methods=["PUT"])
def update_stage_role_access(stage_id):
    role_access = json_body().get("role_access")
    if role_access is None:
        return api_error(E.VALIDATION_REQUIRED, "role_access is required")
    return jsonify(program_service.update_stage_role_access(get_viewer(), stage_id, role_access))


@program_bp.route("/stages/<int:stage_id>", methods=["DELETE"])
def delete_stage(stage_id):
    program_service.delete_stage(get_viewer(), stage_id)
    return "", 204


# ═════════════════════════════════════════════════════════════════════════
# Stage templates
# ═════════════════════════════════════════════════════════════════════════


@program_bp.route("/stage-templates", methods=["GET"])
def list_stage_templates():
    return jsonify(program_service.list_stage_templates(get_viewer()))


@program_bp.route("/stage-templates", methods=["POST"])
def create_stage_template():
    return jsonify(program_service.create_stage_template(get_viewer(), json_body())), 201
