"""
HR Process Engine
Access Mask Calculator.

Two layers of access control:

  1. Stage masks (``compute_stage_access``) — per-stage {can_view, can_submit,
     can_approve} derived from the stage's ``role_access`` list. A stage whose
     mask has ``can_view=False`` is removed from every list/detail response.
  2. Process access (``can_access_process``) — action checks (view, start,
     approve, comment, edit) driven by the program's ``access_control``
     entries, department scope and the legacy ``view_config``.

``compute_required_role_level`` produces the coarse, frozen listing gate
stored on each process at creation time.

Usage:
    from hrflow.services.access_service import compute_access

    mask = compute_access(user, process, stage)
    if not mask.can_submit:
        ...
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass

from hrflow.core.constants import (
    ADMIN_LEVEL,
    PROCESS_ACTIONS,
    ROLE_HIERARCHY,
    SystemRole,
    is_admin,
    is_staff_role,
    role_level,
    roles_by_level,
)
from hrflow.core.exceptions import UnauthorizedError
from hrflow.models.process import Process
from hrflow.models.program import Program, Stage
from hrflow.models.user import User
from hrflow.services.helpers.scoped_queries import get_active_or_none, load_pipeline

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# Data Classes
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class AccessMask:
    """Capability triple for one user on one stage."""
    can_view: bool
    can_submit: bool
    can_approve: bool

    def to_dict(self) -> dict:
        return asdict(self)


FULL_ACCESS = AccessMask(True, True, True)
DEFAULT_ACCESS = AccessMask(True, True, False)
NO_ACCESS = AccessMask(False, False, False)


def _role_slug(user: User) -> str:
    return user.system_role or SystemRole.GUEST.value


# ═════════════════════════════════════════════════════════════════════════════
# Stage masks
# ═════════════════════════════════════════════════════════════════════════════

def compute_stage_access(user: User, stage: Stage | None) -> AccessMask:
    """Mask for ``user`` on ``stage`` from the stage's ``role_access`` entries."""
    if is_admin(user.system_role):
        return FULL_ACCESS
    if stage is None:
        return DEFAULT_ACCESS

    entries = stage.role_access or []
    if not entries:
        return DEFAULT_ACCESS

    slug = _role_slug(user)
    entry = next((e for e in entries if e.get("roleSlug") == slug), None)
    if entry is None:
        return NO_ACCESS
    return AccessMask(
        can_view=bool(entry.get("canView", False)),
        can_submit=bool(entry.get("canSubmit", False)),
        can_approve=bool(entry.get("canApprove", False)),
    )


def compute_access(user: User, process: Process, stage: Stage | None = None) -> AccessMask:
    """
    Mask for ``user`` on ``process``.

    With no explicit stage, the process's current stage is used; when that
    stage cannot be found the mask falls back to ownership and the frozen
    ``required_role_level`` gate.
    """
    if is_admin(user.system_role):
        return FULL_ACCESS

    if stage is None:
        program = get_active_or_none(Program, process.program_id)
        if program is not None:
            stage = next(
                (s for s in load_pipeline(program) if s.matches(process.current_stage_id)),
                None,
            )

    if stage is not None:
        return compute_stage_access(user, stage)

    is_owner = process.user_id == user.id
    return AccessMask(
        can_view=is_owner or role_level(user.system_role) >= (process.required_role_level or 0),
        can_submit=is_owner,
        can_approve=False,
    )


# ═════════════════════════════════════════════════════════════════════════════
# Required role level
# ═════════════════════════════════════════════════════════════════════════════

def compute_required_role_level(view_config: dict | None) -> int:
    """
    Lowest role level allowed to see processes of a program in bulk listings.

    Tiers are scanned lowest to highest; the first whose ``visible`` flag is
    not explicitly ``False`` wins. No view config means everyone (level 0);
    no visible tier means admins only.
    """
    if not view_config:
        return 0
    for slug in roles_by_level():
        tier = view_config.get(slug) or {}
        if tier.get("visible") is not False:
            return ROLE_HIERARCHY[slug]
    return ADMIN_LEVEL


# ═════════════════════════════════════════════════════════════════════════════
# Program access control
# ═════════════════════════════════════════════════════════════════════════════

def find_access_entry(program: Program, role_slug: str) -> dict | None:
    for entry in program.access_control or []:
        if entry.get("roleSlug") == role_slug:
            return entry
    return None


def department_scope_allows(user: User, entry: dict, department_id) -> bool:
    """
    Department scope check for one access-control entry.

    ``"all"`` or no scope lifts the restriction; ``"own"`` requires
    ``department_id`` to be one of the user's position departments; any
    other value names a specific department the user must belong to.
    """
    scope = entry.get("departmentScope")
    if not scope or scope == "all":
        return True
    user_departments = user.department_ids
    if scope == "own":
        if department_id is None:
            return True
        return str(department_id) in user_departments
    return str(scope) in user_departments


def can_start_program(user: User, program: Program, department_id=None) -> None:
    """Raise UnauthorizedError unless ``user`` may start a process in ``program``."""
    slug = _role_slug(user)
    entry = find_access_entry(program, slug)
    if entry is None or "start" not in (entry.get("actions") or []):
        raise UnauthorizedError(f"Users with role '{slug}' are not permitted to start this process.")
    if not department_scope_allows(user, entry, department_id):
        raise UnauthorizedError("You can only create processes for your own department")


def can_access_process(user: User, process: Process, action: str) -> bool:
    """Check whether ``user`` may perform ``action`` on ``process``."""
    if action not in PROCESS_ACTIONS:
        raise ValueError(f"Unknown process action: {action}")

    is_owner = process.user_id == user.id
    slug = _role_slug(user)

    if is_admin(user.system_role):
        return True
    if is_owner and action in ("view", "edit"):
        return True

    program = get_active_or_none(Program, process.program_id)
    if program is None:
        return is_owner

    if program.access_control:
        entry = find_access_entry(program, slug)
        if entry is None:
            return is_owner
        if action not in (entry.get("actions") or []):
            return False
        if entry.get("departmentScope") == "own" and process.department_id is None:
            owner = get_active_or_none(User, process.user_id)
            if owner is not None:
                return bool(set(user.department_ids) & set(owner.department_ids))
            return True
        return department_scope_allows(user, entry, process.department_id)

    tier = (program.view_config or {}).get(slug)
    if tier:
        if tier.get("visible") is False:
            return False
        if action in (tier.get("actions") or []):
            return True

    if is_owner:
        return False
    return is_staff_role(user.system_role)


def get_process_access_mask(user: User, process: Process) -> dict:
    """All five process actions evaluated for ``user``."""
    return {
        f"can_{action}": can_access_process(user, process, action)
        for action in PROCESS_ACTIONS
    }


def require_process_access(user: User, process: Process, action: str) -> None:
    if not can_access_process(user, process, action):
        raise UnauthorizedError(f"Cannot {action} this process")


# ═════════════════════════════════════════════════════════════════════════════
# Visible stages
# ═════════════════════════════════════════════════════════════════════════════

def get_visible_stage_ids(user: User, program: Program) -> list[str] | None:
    """Stage ids restricted by ``stageVisibility``; ``None`` means no restriction."""
    if is_admin(user.system_role):
        return None
    entry = find_access_entry(program, _role_slug(user))
    if entry and entry.get("stageVisibility") is not None:
        return [str(s) for s in entry["stageVisibility"]]
    return None


def get_visible_stages(user: User, program: Program) -> list[dict]:
    """
    Ordered pipeline for ``user`` with each stage's access mask attached.

    Hidden stages (mask ``can_view=False`` or outside ``stageVisibility``)
    are dropped entirely, blocks included.
    """
    allowed_ids = get_visible_stage_ids(user, program)
    result = []
    for stage in load_pipeline(program):
        if allowed_ids is not None and not any(stage.matches(sid) for sid in allowed_ids):
            continue
        mask = compute_stage_access(user, stage)
        if not mask.can_view:
            continue
        item = stage.to_dict()
        item["access"] = mask.to_dict()
        result.append(item)
    return result
