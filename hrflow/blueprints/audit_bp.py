"""
HR Process Engine
Audit blueprint — read-only access to the append-only audit trail.

Endpoints:
    GET  /api/v1/audit-logs               — list / filter audit logs (admin)
    GET  /api/v1/audit-logs/<int:log_id>  — single audit entry (admin)
"""

from flask import Blueprint, jsonify, request

from hrflow.auth import ensure_admin, get_viewer
from hrflow.blueprints import paginate_query, register_error_handlers
from hrflow.models.audit import AuditLog
from hrflow.services.helpers.scoped_queries import get_active

audit_bp = Blueprint("audit", __name__, url_prefix="/api/v1")
register_error_handlers(audit_bp)


@audit_bp.route("/audit-logs", methods=["GET"])
def list_audit_logs():
    """
    Return paginated audit logs, newest first.

    Query params:
        entity_type  — filter by entity type
        entity_id    — filter by entity PK
        action       — filter by action string (prefix match)
        actor        — filter by actor user id
        severity     — info | critical
        limit/offset — pagination (default 50)
    """
    ensure_admin(get_viewer(), "read audit logs")
    q = AuditLog.query

    entity_type = request.args.get("entity_type")
    if entity_type:
        q = q.filter(AuditLog.entity_type == entity_type)

    entity_id = request.args.get("entity_id")
    if entity_id:
        q = q.filter(AuditLog.entity_id == entity_id)

    action = request.args.get("action")
    if action:
        q = q.filter(AuditLog.action.startswith(action))

    actor = request.args.get("actor", type=int)
    if actor is not None:
        q = q.filter(AuditLog.actor_user_id == actor)

    severity = request.args.get("severity")
    if severity:
        q = q.filter(AuditLog.severity == severity)

    q = q.order_by(AuditLog.timestamp.desc(), AuditLog.id.desc())
    items, total = paginate_query(q)

    return jsonify({
        "audit_logs": [log.to_dict() for log in items],
        "total": total,
    })


@audit_bp.route("/audit-logs/<int:log_id>", methods=["GET"])
def get_audit_log(log_id):
    ensure_admin(get_viewer(), "read audit logs")
    return jsonify(get_active(AuditLog, log_id, "AuditLog").to_dict())
