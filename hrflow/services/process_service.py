"""
HR Process Engine
Process Orchestrator — create, submit, status and offer flows for processes.

Every mutation follows the same sequence, in one transaction:

    authorize → validate → compute next state → persist → audit → commit

and only after the commit are side effects handed to the scheduler
(automation evaluation, which may in turn send email or book events).
A failing automation therefore never undoes the mutation that fired it.

Status machine:
    in_progress ──(final stage submitted)──▶ completed
    in_progress ──▶ accepted ──(accept_offer)──▶ offer_accepted
    admins may force any known status via update_status

Usage:
    from hrflow.services.process_service import create_process, submit_stage

    proc = create_process(viewer, program_id=1)
    proc = submit_stage(viewer, proc["id"], stage_id=proc["current_stage_id"], data={...})
"""

import logging

from flask import current_app
from sqlalchemy import select

from hrflow.auth import ensure_admin, ensure_reviewer, require_role, require_viewer
from hrflow.core.constants import (
    PROCESS_STATUSES,
    TASK_EVALUATE_AUTOMATIONS,
    TERMINAL_STATUSES,
    ProcessStatus,
    SystemRole,
    Trigger,
    is_admin,
    role_level,
)
from hrflow.core.exceptions import (
    ConfigurationError,
    ConflictError,
    UnauthorizedError,
    ValidationError,
)
from hrflow.models import db
from hrflow.models.audit import write_audit
from hrflow.models.process import Process
from hrflow.models.program import Program, Stage
from hrflow.models.user import Department, ManagerAssignment, User
from hrflow.services.access_service import (
    can_start_program,
    compute_access,
    compute_required_role_level,
    get_process_access_mask,
    require_process_access,
)
from hrflow.services.helpers.scoped_queries import (
    find_user_process,
    get_active,
    load_pipeline,
)
from hrflow.services.rate_limit_service import require_rate_limit
from hrflow.services.scheduler_service import schedule
from hrflow.services.stage_router import find_stage, route
from hrflow.services.submission_validator import validate_submission
from hrflow.utils.helpers import commit_or_conflict

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# Internals
# ═════════════════════════════════════════════════════════════════════════════

def _schedule_automation(trigger: Trigger, process: Process, program: Program, data: dict, depth: int = 0) -> None:
    if not program.automations:
        return
    schedule(0, TASK_EVALUATE_AUTOMATIONS, {
        "trigger": trigger.value,
        "program_id": program.id,
        "process_id": process.id,
        "user_id": process.user_id,
        "data": data,
        "depth": depth,
    })


def _configuration_error(message: str, **extra) -> ConfigurationError:
    logger.error("Configuration error: %s", message, extra={"event_type": "configuration_error", **extra})
    return ConfigurationError(message)


def _insert_process(
    user: User,
    program: Program,
    pipeline: list[Stage],
    *,
    process_type: str | None = None,
    department_id=None,
    created_for: int | None = None,
) -> Process:
    process = Process(
        user_id=user.id,
        program_id=program.id,
        process_type=process_type or program.program_type or "generic",
        status=ProcessStatus.IN_PROGRESS.value,
        current_stage_id=pipeline[0].stage_key,
        data={},
        required_role_level=compute_required_role_level(program.view_config),
        stage_flow_snapshot=[s.stage_key for s in pipeline],
        department_id=department_id,
        created_for=created_for,
    )
    db.session.add(process)
    db.session.flush()
    return process


def _audit_create(process: Process, actor_user_id: int | None, **metadata) -> None:
    write_audit(
        entity_type="process",
        entity_id=process.id,
        action="process.create",
        actor_user_id=actor_user_id,
        changes={"after": {
            "program_id": process.program_id,
            "current_stage_id": process.current_stage_id,
            "status": process.status,
        }},
        metadata=metadata,
    )


def _load_owned_process(viewer: User, process_id: int, *, allow_admin: bool = True) -> Process:
    process = get_active(Process, process_id)
    if process.user_id != viewer.id and not (allow_admin and is_admin(viewer.system_role)):
        raise UnauthorizedError("Only the process owner can perform this action")
    return process


def _check_version(process: Process, expected_version: int | None) -> None:
    if expected_version is not None and int(expected_version) != process.version:
        raise ConflictError(
            "Process", "version", str(expected_version),
            message=f"Process was modified (version {process.version}); reload and retry",
        )


def _decision_from(data: dict) -> str | None:
    values = list(data.values())
    if "accept" in values:
        return "accept"
    if "decline" in values:
        return "decline"
    return None


# ═════════════════════════════════════════════════════════════════════════════
# Creation
# ═════════════════════════════════════════════════════════════════════════════

def create_process(
    viewer: User | None,
    program_id: int,
    *,
    process_type: str | None = None,
    department_id: int | None = None,
    target_user_id: int | None = None,
) -> dict:
    """
    Start a process in ``program_id`` for the viewer (or a direct report).

    Raises:
        UnauthorizedError: no viewer, role lacks "start", department scope or
            delegation not allowed.
        RateLimitedError: the viewer exceeded the "process.create" quota.
        NotFoundError / ValidationError: program missing or inactive.
        ConflictError: the user already has a process in this program.
        ConfigurationError: the program has no stages.
    """
    viewer = require_viewer(viewer)
    require_rate_limit(viewer.id, "process.create")

    program = get_active(Program, program_id)
    if not program.is_active:
        raise ValidationError("Program is not active", details={"program_id": "inactive"})

    can_start_program(viewer, program, department_id)

    if department_id is not None:
        get_active(Department, department_id)

    owner = viewer
    if target_user_id is not None and int(target_user_id) != viewer.id:
        ensure_reviewer(viewer, "create processes for other users")
        owner = get_active(User, target_user_id)
        reports_to_viewer = db.session.execute(
            select(ManagerAssignment).where(
                ManagerAssignment.manager_id == viewer.id,
                ManagerAssignment.user_id == owner.id,
                ManagerAssignment.deleted_at.is_(None),
            )
        ).scalars().first()
        if reports_to_viewer is None and not is_admin(viewer.system_role):
            raise UnauthorizedError("You can only create processes for your direct reports")

    if find_user_process(owner.id, program.id) is not None:
        raise ConflictError("Process", "program_id", str(program.id),
                            message="Process already exists for this program")

    pipeline = load_pipeline(program)
    if not pipeline:
        raise _configuration_error(
            f"Program '{program.slug}' has no stages configured", program_id=program.id,
        )

    process = _insert_process(
        owner, program, pipeline,
        process_type=process_type,
        department_id=department_id,
        created_for=viewer.id if owner.id != viewer.id else None,
    )
    _audit_create(process, viewer.id, program_name=program.name, target_user_id=owner.id)
    commit_or_conflict("Process")

    logger.info("Process %s created for user %s in program %s", process.id, owner.id, program.id,
                extra={"program_id": program.id, "process_id": process.id})
    _schedule_automation(Trigger.PROCESS_CREATED, process, program,
                         {"type": process.process_type, "departmentId": department_id})
    return process.to_dict()


def start_process_for_user(user: User, program: Program, *, actor_user_id: int | None = None,
                           depth: int = 0) -> Process | None:
    """
    Idempotently start ``program`` for ``user`` from automation context.

    Returns None when the user already has a process in the program or the
    program has no stages. The caller's transaction is not committed here;
    the ``process_created`` cascade is scheduled with ``depth``.
    """
    if find_user_process(user.id, program.id) is not None:
        return None
    pipeline = load_pipeline(program)
    if not pipeline:
        logger.warning("trigger_process skipped: program %s has no stages", program.id)
        return None

    process = _insert_process(user, program, pipeline)
    _audit_create(process, actor_user_id, source="automation", depth=depth)
    _schedule_automation(Trigger.PROCESS_CREATED, process, program,
                         {"type": process.process_type, "departmentId": None}, depth=depth)
    return process


# ═════════════════════════════════════════════════════════════════════════════
# Stage submission
# ═════════════════════════════════════════════════════════════════════════════

def submit_stage(
    viewer: User | None,
    process_id: int,
    stage_id,
    data,
    *,
    expected_version: int | None = None,
) -> dict:
    """
    Submit ``data`` for the process's current stage and advance it.

    The payload is stored under ``process.data[stage_id]``; other stages'
    entries are kept. The next stage comes from the router using the
    process's frozen stage snapshot; no next stage completes the process.
    """
    viewer = require_viewer(viewer)
    process = _load_owned_process(viewer, process_id)
    _check_version(process, expected_version)

    if process.status in TERMINAL_STATUSES:
        raise ValidationError(f"Process is {process.status} and no longer accepts submissions")

    program = get_active(Program, process.program_id)
    pipeline = load_pipeline(program)
    current = find_stage(pipeline, process.current_stage_id)
    if current is None:
        raise _configuration_error(
            "Invalid stage configuration: current stage not found in pipeline",
            process_id=process.id, program_id=program.id,
        )

    legacy_id = (current.config or {}).get("id")
    if not (current.matches(stage_id) or (legacy_id is not None and str(stage_id) == str(legacy_id))):
        raise ValidationError(
            f"Stage mismatch. You are trying to submit to {stage_id} "
            f"but process is at {process.current_stage_id}",
            details={"stage_id": "mismatch"},
        )

    validate_submission(current.config, data)

    merged = dict(process.data or {})
    merged[str(stage_id)] = data

    result = route(process.current_stage_id, pipeline, data, process.stage_flow_snapshot)
    if result.not_found:
        raise _configuration_error(
            "Invalid stage configuration: router could not locate current stage",
            process_id=process.id, program_id=program.id,
        )

    previous_stage_id = process.current_stage_id
    process.data = merged
    if result.completed:
        process.status = ProcessStatus.COMPLETED.value
    else:
        process.current_stage_id = result.next_stage_id

    advanced = result.completed or result.next_stage_id != previous_stage_id
    write_audit(
        entity_type="process",
        entity_id=process.id,
        action="process.advance" if advanced else "process.update",
        actor_user_id=viewer.id,
        changes={
            "before": {"current_stage_id": previous_stage_id},
            "after": {"current_stage_id": None if result.completed else result.next_stage_id},
        },
        metadata={"stage_name": current.name, "submitted_stage_id": str(stage_id)},
    )
    commit_or_conflict("Process")

    logger.info("Process %s stage %s submitted (%s)", process.id, current.id,
                "completed" if result.completed else f"next={result.next_stage_id}",
                extra={"process_id": process.id, "program_id": program.id})

    submission_data = {"stageId": str(stage_id), "stageName": current.name, "submission": data}
    decision = _decision_from(data)
    if decision:
        submission_data["decision"] = decision
    _schedule_automation(Trigger.STAGE_SUBMISSION, process, program, submission_data)
    if result.completed:
        _schedule_automation(Trigger.PROCESS_COMPLETED, process, program, {"finalData": merged})

    return process.to_dict()


# ═════════════════════════════════════════════════════════════════════════════
# Status & offer
# ═════════════════════════════════════════════════════════════════════════════

def update_status(viewer: User | None, process_id: int, status: str) -> dict:
    """Admin override of a process status; fires ``status_change``."""
    viewer = ensure_admin(viewer, "change process status")
    if status not in PROCESS_STATUSES:
        raise ValidationError(f"Unknown process status: {status}", details={"status": "invalid"})

    process = get_active(Process, process_id)
    program = get_active(Program, process.program_id)
    previous = process.status
    process.status = status

    changes = {"before": {"status": previous}, "after": {"status": status}}
    write_audit(entity_type="process", entity_id=process.id, action="process.status_change",
                actor_user_id=viewer.id, changes=changes)
    if current_app.config.get("AUDIT_STATUS_CHANGE_TWICE", False):
        write_audit(entity_type="process", entity_id=process.id, action="process.status_change",
                    actor_user_id=viewer.id, changes=changes)
    commit_or_conflict("Process")

    logger.info("Process %s status %s -> %s by admin %s", process.id, previous, status, viewer.id)
    _schedule_automation(Trigger.STATUS_CHANGE, process, program, {"status": status, "prevStatus": previous})
    return process.to_dict()


def accept_offer(viewer: User | None, process_id: int) -> dict:
    """Owner accepts an extended offer; everything downstream is automation-driven."""
    viewer = require_viewer(viewer)
    process = _load_owned_process(viewer, process_id, allow_admin=False)
    if process.status != ProcessStatus.ACCEPTED.value:
        raise ValidationError("No pending offer to accept.")

    program = get_active(Program, process.program_id)
    process.status = ProcessStatus.OFFER_ACCEPTED.value
    write_audit(
        entity_type="process",
        entity_id=process.id,
        action="offer.accept",
        actor_user_id=viewer.id,
        changes={
            "before": {"status": ProcessStatus.ACCEPTED.value},
            "after": {"status": ProcessStatus.OFFER_ACCEPTED.value},
        },
    )
    commit_or_conflict("Process")

    _schedule_automation(Trigger.OFFER_ACCEPTED, process, program, {
        "previousStatus": ProcessStatus.ACCEPTED.value,
        "newStatus": ProcessStatus.OFFER_ACCEPTED.value,
    })
    return {"success": True, "process": process.to_dict()}


def delete_process(viewer: User | None, process_id: int) -> None:
    viewer = ensure_admin(viewer, "delete processes")
    process = get_active(Process, process_id)
    process.soft_delete()
    write_audit(entity_type="process", entity_id=process.id, action="process.delete",
                actor_user_id=viewer.id, changes={"before": {"status": process.status}})
    commit_or_conflict("Process")


# ═════════════════════════════════════════════════════════════════════════════
# Reads
# ═════════════════════════════════════════════════════════════════════════════

def get_process(viewer: User | None, process_id: int) -> dict:
    """Process detail with access masks; raises if the viewer cannot see it."""
    viewer = require_viewer(viewer)
    process = get_active(Process, process_id)
    require_process_access(viewer, process, "view")
    result = process.to_dict()
    result["access"] = get_process_access_mask(viewer, process)
    result["stage_access"] = compute_access(viewer, process).to_dict()
    return result


def get_my_processes(viewer: User | None) -> list[dict]:
    viewer = require_viewer(viewer)
    rows = db.session.execute(
        select(Process)
        .where(Process.user_id == viewer.id, Process.deleted_at.is_(None))
        .order_by(Process.updated_at.desc())
    ).scalars().all()
    return [p.to_dict() for p in rows]


def get_team_processes(viewer: User | None) -> list[dict]:
    """Processes owned by the viewer's active direct reports."""
    viewer = ensure_reviewer(viewer, "view team processes")
    report_ids = db.session.execute(
        select(ManagerAssignment.user_id).where(
            ManagerAssignment.manager_id == viewer.id,
            ManagerAssignment.deleted_at.is_(None),
        )
    ).scalars().all()
    if not report_ids:
        return []
    rows = db.session.execute(
        select(Process)
        .where(Process.user_id.in_(report_ids), Process.deleted_at.is_(None))
        .order_by(Process.updated_at.desc())
    ).scalars().all()
    return [p.to_dict() for p in rows]


def list_processes_paginated(
    viewer: User | None,
    *,
    process_type: str | None = None,
    program_id: int | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[dict], int]:
    """
    Bulk listing for staff, gated by each process's frozen required role level.

    Returns:
        (items, total)
    """
    viewer = require_role(viewer, SystemRole.MANAGER.value, "list processes")
    stmt = select(Process).where(
        Process.deleted_at.is_(None),
        Process.required_role_level <= role_level(viewer.system_role),
    )
    if process_type:
        stmt = stmt.where(Process.process_type == process_type)
    if program_id:
        stmt = stmt.where(Process.program_id == program_id)

    total = db.session.execute(
        select(db.func.count()).select_from(stmt.subquery())
    ).scalar_one()
    rows = db.session.execute(
        stmt.order_by(Process.updated_at.desc(), Process.id.desc()).limit(limit).offset(offset)
    ).scalars().all()
    return [p.to_dict() for p in rows], total
