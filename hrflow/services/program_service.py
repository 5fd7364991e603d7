"""Program service layer — pipeline administration for programs, stages and templates.

Transaction policy: public functions call db.session.commit() on success.
Internal helpers use flush() for ID generation within a transaction.

Provides:
- Program create/update with single-active enforcement
- View-config and access-control updates (audited before/after)
- Stage templates and stage instances (template blocks are deep-copied)
- Stage ordering, role access, soft delete
- Maintenance: recompute frozen ``required_role_level`` on processes
"""
import logging
from typing import Any

from sqlalchemy import select

from hrflow.auth import ensure_admin, ensure_reviewer, require_viewer
from hrflow.core.constants import (
    PROCESS_ACTIONS,
    PROGRAM_TYPES,
    STAGE_TYPES,
    TRIGGERS,
    is_admin,
)
from hrflow.core.exceptions import ConflictError, NotFoundError, ValidationError
from hrflow.models import db
from hrflow.models.audit import write_audit
from hrflow.models.process import Process
from hrflow.models.program import BlockInstance, Program, Stage, StageTemplate
from hrflow.models.user import User
from hrflow.services.access_service import compute_required_role_level, get_visible_stages
from hrflow.services.helpers.scoped_queries import find_program_by_slug, get_active, load_pipeline
from hrflow.utils.helpers import commit_or_conflict, parse_datetime

logger = logging.getLogger(__name__)

_STAGE_UPDATABLE = ("name", "description", "config", "block_ids", "assignee_ids")


def _validate_enum(value: str | None, allowed: set[str], field_name: str) -> None:
    if value and value not in allowed:
        raise ValidationError(f"Invalid {field_name}: '{value}'. Allowed: {sorted(allowed)}")


def _require_name(data: dict) -> str:
    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError("Name is required", details={"name": "Required"})
    if len(name) > 200:
        raise ValidationError("Name exceeds maximum length of 200 characters")
    return name


def _validate_automations(automations: Any) -> list[dict]:
    """Shape check only; action payloads are interpreted at evaluation time."""
    if not isinstance(automations, list):
        raise ValidationError("automations must be a list")
    for i, rule in enumerate(automations):
        if not isinstance(rule, dict):
            raise ValidationError(f"automations[{i}] must be an object")
        if rule.get("trigger") not in TRIGGERS:
            raise ValidationError(
                f"automations[{i}].trigger must be one of: {', '.join(sorted(TRIGGERS))}"
            )
        conditions = rule.get("conditions")
        if conditions is not None and not isinstance(conditions, dict):
            raise ValidationError(f"automations[{i}].conditions must be an object")
        actions = rule.get("actions")
        if not isinstance(actions, list):
            raise ValidationError(f"automations[{i}].actions must be a list")
        for j, action in enumerate(actions):
            if not isinstance(action, dict) or not isinstance(action.get("type"), str):
                raise ValidationError(f"automations[{i}].actions[{j}] needs a string 'type'")
    return automations


def _validate_access_control(entries: Any) -> list[dict]:
    if not isinstance(entries, list):
        raise ValidationError("access_control must be a list")
    for i, entry in enumerate(entries):
        if not isinstance(entry, dict) or not entry.get("roleSlug"):
            raise ValidationError(f"access_control[{i}] needs a 'roleSlug'")
        actions = entry.get("actions") or []
        unknown = [a for a in actions if a not in PROCESS_ACTIONS]
        if unknown:
            raise ValidationError(
                f"access_control[{i}] has unknown actions: {', '.join(map(str, unknown))}"
            )
        visibility = entry.get("stageVisibility")
        if visibility is not None and not isinstance(visibility, list):
            raise ValidationError(f"access_control[{i}].stageVisibility must be a list")
    return entries


def _validate_role_access(entries: Any) -> list[dict]:
    if not isinstance(entries, list):
        raise ValidationError("role_access must be a list")
    cleaned = []
    for i, entry in enumerate(entries):
        if not isinstance(entry, dict) or not entry.get("roleSlug"):
            raise ValidationError(f"role_access[{i}] needs a 'roleSlug'")
        cleaned.append({
            "roleSlug": entry["roleSlug"],
            "canView": bool(entry.get("canView")),
            "canSubmit": bool(entry.get("canSubmit")),
            "canApprove": bool(entry.get("canApprove")),
        })
    return cleaned


# ═════════════════════════════════════════════════════════════════════════════
# Programs
# ═════════════════════════════════════════════════════════════════════════════


def get_active_program() -> Program | None:
    return db.session.execute(
        select(Program).where(Program.is_active.is_(True), Program.deleted_at.is_(None))
    ).scalars().first()


def list_programs(viewer: User | None, *, program_type: str | None = None) -> list[dict]:
    """Programs the viewer may see: admin sees all, others are filtered by view_config."""
    viewer = require_viewer(viewer)
    stmt = select(Program).where(Program.deleted_at.is_(None)).order_by(Program.id)
    if program_type:
        stmt = stmt.where(Program.program_type == program_type)
    programs = db.session.execute(stmt).scalars().all()
    if is_admin(viewer.system_role):
        return [p.to_dict() for p in programs]

    role = viewer.system_role or "guest"
    visible = []
    for program in programs:
        tier = (program.view_config or {}).get(role)
        if isinstance(tier, dict) and tier.get("visible") is False:
            continue
        visible.append(program.to_dict())
    return visible


def create_program(viewer: User | None, data: dict[str, Any]) -> dict:
    """Create an inactive program with an empty pipeline."""
    admin = ensure_admin(viewer, action="create programs")
    name = _require_name(data)
    slug = (data.get("slug") or "").strip()
    if not slug:
        raise ValidationError("Slug is required", details={"slug": "Required"})

    program_type = data.get("program_type") or "generic"
    _validate_enum(program_type, PROGRAM_TYPES, "program type")

    if find_program_by_slug(slug) is not None:
        raise ConflictError("Program", "slug", slug, message="Program slug already exists.")

    program = Program(
        name=name,
        slug=slug,
        description=data.get("description"),
        program_type=program_type,
        is_active=False,
        stage_ids=[],
        automations=[],
        config=data.get("config"),
        start_date=parse_datetime(data.get("start_date")),
        end_date=parse_datetime(data.get("end_date")),
    )
    db.session.add(program)
    db.session.flush()

    write_audit(
        entity_type="program",
        entity_id=program.id,
        action="program.create",
        actor_user_id=admin.id,
        changes={"after": {"name": name, "slug": slug, "program_type": program_type}},
    )
    commit_or_conflict("Program")
    logger.info("Program %s created (slug=%s)", program.id, slug)
    return program.to_dict()


def update_program(viewer: User | None, program_id: int, data: dict[str, Any]) -> dict:
    """
    Patch a program.

    Activating a program deactivates every other active program.
    ``automations`` and ``access_control`` are replaced wholesale after a
    shape check.
    """
    admin = ensure_admin(viewer, action="update programs")
    program = get_active(Program, program_id)
    before = {"is_active": program.is_active}
    after: dict[str, Any] = {}

    if "name" in data:
        program.name = after["name"] = _require_name(data)
    if "description" in data:
        program.description = after["description"] = data.get("description")
    if "slug" in data and data["slug"] != program.slug:
        slug = (data.get("slug") or "").strip()
        if not slug:
            raise ValidationError("Slug is required", details={"slug": "Required"})
        if find_program_by_slug(slug) is not None:
            raise ConflictError("Program", "slug", slug, message="Program slug already exists.")
        program.slug = after["slug"] = slug
    if "program_type" in data:
        _validate_enum(data["program_type"], PROGRAM_TYPES, "program type")
        program.program_type = after["program_type"] = data["program_type"] or "generic"
    if "config" in data:
        program.config = after["config"] = data["config"]
    if "start_date" in data:
        program.start_date = parse_datetime(data["start_date"])
        after["start_date"] = data["start_date"]
    if "end_date" in data:
        program.end_date = parse_datetime(data["end_date"])
        after["end_date"] = data["end_date"]
    if "automations" in data:
        program.automations = after["automations"] = list(_validate_automations(data["automations"]))
    if "access_control" in data:
        entries = data["access_control"]
        program.access_control = after["access_control"] = (
            None if entries is None else list(_validate_access_control(entries))
        )

    if "is_active" in data:
        activate = bool(data["is_active"])
        if activate:
            others = db.session.execute(
                select(Program).where(Program.is_active.is_(True), Program.id != program.id)
            ).scalars().all()
            for other in others:
                other.is_active = False
                logger.info("Program %s deactivated by activation of %s", other.id, program.id)
        program.is_active = after["is_active"] = activate

    write_audit(
        entity_type="program",
        entity_id=program.id,
        action="program.update",
        actor_user_id=admin.id,
        changes={"before": before, "after": after},
    )
    commit_or_conflict("Program")
    return program.to_dict()


def update_view_config(viewer: User | None, program_id: int, view_config: Any) -> dict:
    admin = ensure_admin(viewer, action="update view config")
    program = get_active(Program, program_id)
    if view_config is not None and not isinstance(view_config, dict):
        raise ValidationError("view_config must be an object keyed by role")

    previous = program.view_config
    program.view_config = dict(view_config) if view_config is not None else None
    write_audit(
        entity_type="program",
        entity_id=program.id,
        action="program.view_config_update",
        actor_user_id=admin.id,
        changes={"before": {"view_config": previous}, "after": {"view_config": program.view_config}},
    )
    commit_or_conflict("Program")
    return program.to_dict()


def update_access_control(viewer: User | None, program_id: int, entries: Any) -> dict:
    admin = ensure_admin(viewer, action="update access control")
    program = get_active(Program, program_id)
    previous = program.access_control
    program.access_control = None if entries is None else list(_validate_access_control(entries))
    write_audit(
        entity_type="program",
        entity_id=program.id,
        action="program.access_control_update",
        actor_user_id=admin.id,
        changes={"before": {"access_control": previous},
                 "after": {"access_control": program.access_control}},
    )
    commit_or_conflict("Program")
    return program.to_dict()


# ═════════════════════════════════════════════════════════════════════════════
# Stage templates
# ═════════════════════════════════════════════════════════════════════════════


def list_stage_templates(viewer: User | None) -> list[dict]:
    ensure_reviewer(viewer, action="list stage templates")
    templates = db.session.execute(select(StageTemplate).order_by(StageTemplate.id)).scalars().all()
    return [t.to_dict() for t in templates]


def create_stage_template(viewer: User | None, data: dict[str, Any]) -> dict:
    admin = ensure_admin(viewer, action="create stage templates")
    name = _require_name(data)
    stage_type = data.get("stage_type") or "form"
    _validate_enum(stage_type, STAGE_TYPES, "stage type")

    template = StageTemplate(
        name=name,
        stage_type=stage_type,
        description=data.get("description"),
        config=dict(data.get("config") or {}),
        block_ids=list(data.get("block_ids") or []),
    )
    db.session.add(template)
    db.session.flush()
    write_audit(
        entity_type="stage_template",
        entity_id=template.id,
        action="stage_template.create",
        actor_user_id=admin.id,
        changes={"after": {"name": name, "stage_type": stage_type}},
    )
    commit_or_conflict("StageTemplate")
    return template.to_dict()


# ═════════════════════════════════════════════════════════════════════════════
# Stages
# ═════════════════════════════════════════════════════════════════════════════


def _copy_blocks(block_ids: list) -> list[int]:
    """Deep-copy template blocks; each copy records its origin in ``parent_id``."""
    copies = []
    for block_id in block_ids:
        original = db.session.get(BlockInstance, int(block_id))
        if original is None:
            logger.warning("Template block %s missing; skipped during copy", block_id)
            continue
        copy = BlockInstance(
            block_type=original.block_type,
            name=original.name,
            config=dict(original.config or {}),
            version=1,
            parent_id=original.id,
        )
        db.session.add(copy)
        db.session.flush()
        copies.append(copy.id)
    return copies


def add_stage_to_program(viewer: User | None, program_id: int, data: dict[str, Any]) -> dict:
    """
    Create a stage and append it to the program's pipeline.

    With ``template_id`` the template's config is used and its blocks are
    deep-copied; otherwise ``config`` and ``block_ids`` come from ``data``.
    """
    admin = ensure_admin(viewer, action="add stages")
    program = get_active(Program, program_id)
    name = _require_name(data)
    stage_type = data.get("stage_type") or "form"
    _validate_enum(stage_type, STAGE_TYPES, "stage type")

    template = None
    if data.get("template_id") is not None:
        template = db.session.get(StageTemplate, int(data["template_id"]))
        if template is None:
            raise NotFoundError("StageTemplate", data["template_id"])

    if template is not None:
        config = dict(template.config or {})
        block_ids = _copy_blocks(template.block_ids or [])
    else:
        config = dict(data.get("config") or {})
        block_ids = list(data.get("block_ids") or [])

    original_id = data.get("original_stage_id")
    stage = Stage(
        program_id=program.id,
        name=name,
        stage_type=stage_type,
        description=data.get("description"),
        config=config,
        block_ids=block_ids,
        role_access=_validate_role_access(data.get("role_access") or []),
        assignee_ids=data.get("assignee_ids"),
        original_stage_id=str(original_id) if original_id is not None else None,
        source_template_id=template.id if template is not None else None,
    )
    db.session.add(stage)
    db.session.flush()

    program.stage_ids = [*(program.stage_ids or []), stage.stage_key]
    write_audit(
        entity_type="stage",
        entity_id=stage.id,
        action="stage.create",
        actor_user_id=admin.id,
        changes={"after": {"name": name, "stage_type": stage_type, "program_id": program.id}},
        metadata={"template_id": stage.source_template_id},
    )
    commit_or_conflict("Stage")
    return stage.to_dict()


def reorder_stages(viewer: User | None, program_id: int, stage_ids: list) -> dict:
    """Replace the pipeline order; ``stage_ids`` must be a permutation of the live stages."""
    admin = ensure_admin(viewer, action="reorder stages")
    program = get_active(Program, program_id)
    if not isinstance(stage_ids, list):
        raise ValidationError("stage_ids must be a list")

    requested = [str(s) for s in stage_ids]
    current = [s.stage_key for s in load_pipeline(program)]
    if len(requested) != len(set(requested)) or sorted(requested) != sorted(current):
        raise ValidationError(
            "stage_ids must contain each stage of the program exactly once",
            details={"expected": sorted(current), "received": requested},
        )

    previous = list(program.stage_ids or [])
    program.stage_ids = requested
    write_audit(
        entity_type="program",
        entity_id=program.id,
        action="stage.reorder",
        actor_user_id=admin.id,
        changes={"before": {"stage_ids": previous}, "after": {"stage_ids": requested}},
    )
    commit_or_conflict("Program")
    return program.to_dict()


def update_stage(viewer: User | None, stage_id: int, data: dict[str, Any]) -> dict:
    admin = ensure_admin(viewer, action="update stages")
    stage = get_active(Stage, stage_id)
    after: dict[str, Any] = {}

    for field in _STAGE_UPDATABLE:
        if field not in data:
            continue
        value = data[field]
        if field == "name":
            value = _require_name(data)
        elif field == "config":
            value = dict(value or {})
        elif field == "block_ids":
            value = list(value or [])
        setattr(stage, field, value)
        after[field] = value

    if "stage_type" in data:
        _validate_enum(data["stage_type"], STAGE_TYPES, "stage type")
        stage.stage_type = after["stage_type"] = data["stage_type"]

    write_audit(
        entity_type="stage",
        entity_id=stage.id,
        action="stage.update",
        actor_user_id=admin.id,
        changes={"after": after},
    )
    commit_or_conflict("Stage")
    return stage.to_dict()


def update_stage_role_access(viewer: User | None, stage_id: int, role_access: Any) -> dict:
    admin = ensure_admin(viewer, action="update stage role access")
    stage = get_active(Stage, stage_id)
    previous = list(stage.role_access or [])
    stage.role_access = _validate_role_access(role_access)
    write_audit(
        entity_type="stage",
        entity_id=stage.id,
        action="stage.role_access_update",
        actor_user_id=admin.id,
        changes={"before": {"role_access": previous}, "after": {"role_access": stage.role_access}},
    )
    commit_or_conflict("Stage")
    return {"success": True, "stage": stage.to_dict()}


def delete_stage(viewer: User | None, stage_id: int) -> None:
    """Soft-delete a stage and drop it from its program's order."""
    admin = ensure_admin(viewer, action="delete stages")
    stage = get_active(Stage, stage_id)
    program = db.session.get(Program, stage.program_id)
    if program is not None and program.stage_ids:
        program.stage_ids = [s for s in program.stage_ids if str(s) != stage.stage_key]

    stage.soft_delete()
    write_audit(
        entity_type="stage",
        entity_id=stage.id,
        action="stage.delete",
        actor_user_id=admin.id,
        changes={"before": {"name": stage.name, "program_id": stage.program_id}},
    )
    commit_or_conflict("Stage")


def get_program_stages(program_id: int) -> list[dict]:
    program = get_active(Program, program_id)
    return [stage.to_dict() for stage in load_pipeline(program)]


def get_visible_program_stages(viewer: User | None, program_id: int) -> list[dict]:
    viewer = require_viewer(viewer)
    return get_visible_stages(viewer, get_active(Program, program_id))


# ═════════════════════════════════════════════════════════════════════════════
# Maintenance
# ═════════════════════════════════════════════════════════════════════════════


def recompute_required_role_levels(program_id: int | None = None) -> int:
    """
    Re-derive ``required_role_level`` for live processes from their program's
    current view_config. Returns the number of processes changed.

    Levels are frozen at creation; this is the only path that moves them.
    """
    stmt = select(Program).where(Program.deleted_at.is_(None))
    if program_id is not None:
        stmt = stmt.where(Program.id == program_id)

    changed = 0
    for program in db.session.execute(stmt).scalars():
        level = compute_required_role_level(program.view_config)
        processes = db.session.execute(
            select(Process).where(
                Process.program_id == program.id,
                Process.deleted_at.is_(None),
                Process.required_role_level != level,
            )
        ).scalars().all()
        for process in processes:
            process.required_role_level = level
        if processes:
            changed += len(processes)
            write_audit(
                entity_type="program",
                entity_id=program.id,
                action="program.role_levels_recomputed",
                changes={"after": {"required_role_level": level}},
                metadata={"process_count": len(processes)},
            )
            logger.info("Recomputed required_role_level=%s on %s processes of program %s",
                        level, len(processes), program.id)
    commit_or_conflict("Process")
    return changed
