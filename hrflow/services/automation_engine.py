"""
HR Process Engine
Automation Evaluator — declarative trigger → condition → action rules.

Rules live on ``Program.automations``:

    {
        "trigger": "stage_submission",
        "conditions": {"decision": "accept", "check_prerequisites": {"programSlug": "onboarding"}},
        "actions": [{"type": "update_role", "payload": {"systemRole": "member"}}]
    }

Evaluation is a depth-bounded recursive interpreter. Cascading evaluations
(``trigger_process`` firing ``process_created``) are scheduled as deferred
tasks carrying ``depth + 1``; past ``AUTOMATION_MAX_DEPTH`` the evaluator
records a critical ``automation.halted`` audit entry and stops.

Action payload strings shaped like ``"{{field}}"`` resolve against the
trigger's ``data`` at execution time.

Usage:
    from hrflow.services.automation_engine import evaluate
    evaluate("offer_accepted", program_id=1, process_id=7, user_id=3, data={...})
"""

from __future__ import annotations

import logging
import random
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar

from flask import current_app
from sqlalchemy import select

from hrflow.core.constants import (
    MAX_RECURSION_DEPTH,
    ROLE_HIERARCHY,
    TASK_BOOK_EVENT,
    TASK_SEND_EMAIL,
    DEFAULT_HR_STATUS,
)
from hrflow.core.exceptions import AutomationLoopDetected
from hrflow.models import db
from hrflow.models.audit import write_audit
from hrflow.models.event import Goal, PeerReviewAssignment
from hrflow.models.process import Process
from hrflow.models.program import Program
from hrflow.models.user import ManagerAssignment, User
from hrflow.services.helpers.scoped_queries import (
    find_program_by_slug,
    find_user_process,
    get_active_or_none,
)
from hrflow.services.process_service import start_process_for_user
from hrflow.services.scheduler_service import schedule

logger = logging.getLogger(__name__)

PREREQUISITES_KEY = "check_prerequisites"
PROFILE_ROOT_KEYS = ("joinDate", "exitDate", "privacyLevel")

_TEMPLATE_RE = re.compile(r"^\{\{\s*([\w.\-]+)\s*\}\}$")


# ═════════════════════════════════════════════════════════════════════════════
# Context & templating
# ═════════════════════════════════════════════════════════════════════════════

@dataclass
class AutomationContext:
    """Everything an action may read while executing."""
    trigger: str
    user_id: int
    program_id: int | None = None
    process_id: int | None = None
    data: dict = field(default_factory=dict)
    depth: int = 0

    def resolve(self, value: Any) -> Any:
        return resolve_value(value, self.data)


def resolve_value(value: Any, data: dict | None) -> Any:
    """``"{{key}}"`` → ``data[key]``; everything else passes through."""
    if isinstance(value, str):
        match = _TEMPLATE_RE.match(value)
        if match:
            return (data or {}).get(match.group(1))
    return value


def resolve_values(values: dict | None, data: dict | None) -> dict:
    return {k: resolve_value(v, data) for k, v in (values or {}).items()}


def _replace_profile(user: User, **changes) -> None:
    profile = dict(user.profile or {"positions": [], "status": DEFAULT_HR_STATUS})
    profile.update(changes)
    user.profile = profile


# ═════════════════════════════════════════════════════════════════════════════
# Action variants
# ═════════════════════════════════════════════════════════════════════════════

class ActionType(str, Enum):
    SEND_EMAIL = "send_email"
    UPDATE_ROLE = "update_role"
    UPDATE_STATUS = "update_status"
    MANAGE_USER_PROFILE = "manage_user_profile"
    ASSIGN_MANAGER = "assign_manager"
    ASSIGN_DEPARTMENT = "assign_department"
    TRIGGER_PROCESS = "trigger_process"
    BOOK_EVENT = "book_event"
    UPDATE_PROCESS_STATUS = "update_process_status"
    CREATE_GOAL = "create_goal"
    DISTRIBUTE_PEER_REVIEWS = "distribute_peer_reviews"


_ACTIONS: dict[str, type[Action]] = {}


def action_type(kind: ActionType):
    """Register an Action dataclass under its rule ``type`` string."""
    def decorator(cls):
        cls.kind = kind
        _ACTIONS[kind.value] = cls
        return cls
    return decorator


class Action:
    kind: ClassVar[ActionType]

    @classmethod
    def from_payload(cls, payload: dict) -> Action:
        raise NotImplementedError

    def execute(self, ctx: AutomationContext, user: User) -> None:
        raise NotImplementedError


@action_type(ActionType.SEND_EMAIL)
@dataclass
class SendEmail(Action):
    subject: str = "Notification"
    template: str = "default"
    variables: dict = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload):
        return cls(
            subject=payload.get("subject") or "Notification",
            template=payload.get("template") or "default",
            variables=dict(payload.get("variables") or {}),
        )

    def execute(self, ctx, user):
        schedule(0, TASK_SEND_EMAIL, {
            "to": user.email,
            "subject": self.subject,
            "template": self.template,
            "payload": {"name": user.name, **(ctx.data or {}), **resolve_values(self.variables, ctx.data)},
        })


@action_type(ActionType.UPDATE_ROLE)
@dataclass
class UpdateRole(Action):
    system_role: Any = None

    @classmethod
    def from_payload(cls, payload):
        return cls(system_role=payload.get("systemRole"))

    def execute(self, ctx, user):
        role = ctx.resolve(self.system_role)
        if role not in ROLE_HIERARCHY:
            logger.warning("update_role ignored: unknown role %r for user %s", role, user.id)
            return
        user.system_role = role


@action_type(ActionType.UPDATE_STATUS)
@dataclass
class UpdateStatus(Action):
    status: Any = None

    @classmethod
    def from_payload(cls, payload):
        return cls(status=payload.get("status"))

    def execute(self, ctx, user):
        status = ctx.resolve(self.status) or user.hr_status
        _replace_profile(user, status=status)


@action_type(ActionType.MANAGE_USER_PROFILE)
@dataclass
class ManageUserProfile(Action):
    fields: dict = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload):
        return cls(fields=dict(payload.get("fields") or {}))

    def execute(self, ctx, user):
        updates = resolve_values(self.fields, ctx.data)
        custom = dict((user.profile or {}).get("customFields") or {})
        root = {}
        for key, value in updates.items():
            if key in PROFILE_ROOT_KEYS:
                root[key] = value
            else:
                custom[key] = value
        _replace_profile(user, customFields=custom, **root)


@action_type(ActionType.ASSIGN_MANAGER)
@dataclass
class AssignManager(Action):
    manager_id: Any = None
    context: str = "direct"
    is_primary: bool = False

    @classmethod
    def from_payload(cls, payload):
        return cls(
            manager_id=payload.get("managerId"),
            context=payload.get("context") or "direct",
            is_primary=bool(payload.get("isPrimary")),
        )

    def execute(self, ctx, user):
        manager_id = ctx.resolve(self.manager_id)
        if not manager_id:
            return
        manager_id = int(manager_id)
        existing = db.session.execute(
            select(ManagerAssignment).where(
                ManagerAssignment.user_id == user.id,
                ManagerAssignment.manager_id == manager_id,
                ManagerAssignment.context == self.context,
                ManagerAssignment.deleted_at.is_(None),
            )
        ).scalars().first()
        if existing is not None:
            return
        db.session.add(ManagerAssignment(
            user_id=user.id,
            manager_id=manager_id,
            context=self.context,
            is_primary=self.is_primary,
        ))
        db.session.flush()


@action_type(ActionType.ASSIGN_DEPARTMENT)
@dataclass
class AssignDepartment(Action):
    department_id: Any = None
    title: Any = None

    @classmethod
    def from_payload(cls, payload):
        return cls(department_id=payload.get("departmentId"), title=payload.get("title"))

    def execute(self, ctx, user):
        department_id = ctx.resolve(self.department_id)
        title = ctx.resolve(self.title)
        if not department_id:
            return

        positions = [dict(p) for p in (user.profile or {}).get("positions") or []]
        current = next(
            (p for p in positions if str(p.get("departmentId")) == str(department_id)),
            None,
        )
        if current is not None:
            if not title:
                return
            current["title"] = title
        else:
            positions.append({
                "departmentId": department_id,
                "title": title or "Member",
                "isPrimary": len(positions) == 0,
                "startDate": datetime.now(timezone.utc).isoformat(),
            })
        _replace_profile(user, positions=positions)


@action_type(ActionType.TRIGGER_PROCESS)
@dataclass
class TriggerProcess(Action):
    program_id: Any = None
    program_slug: Any = None

    @classmethod
    def from_payload(cls, payload):
        return cls(program_id=payload.get("programId"), program_slug=payload.get("programSlug"))

    def execute(self, ctx, user):
        program = get_active_or_none(Program, ctx.resolve(self.program_id))
        if program is None and self.program_slug:
            program = find_program_by_slug(ctx.resolve(self.program_slug))
        if program is None:
            logger.warning("trigger_process: no program for %r/%r", self.program_id, self.program_slug)
            return

        start_process_for_user(user, program, actor_user_id=None, depth=ctx.depth + 1)


@action_type(ActionType.BOOK_EVENT)
@dataclass
class BookEvent(Action):
    event_id: Any = None

    @classmethod
    def from_payload(cls, payload):
        return cls(event_id=payload.get("eventId"))

    def execute(self, ctx, user):
        event_id = ctx.resolve(self.event_id)
        if not event_id:
            return
        schedule(0, TASK_BOOK_EVENT, {"user_id": user.id, "event_id": int(event_id), "depth": ctx.depth + 1})


@action_type(ActionType.UPDATE_PROCESS_STATUS)
@dataclass
class UpdateProcessStatus(Action):
    status: Any = None

    @classmethod
    def from_payload(cls, payload):
        return cls(status=payload.get("status"))

    def execute(self, ctx, user):
        status = ctx.resolve(self.status)
        if not status or not ctx.process_id:
            return
        process = get_active_or_none(Process, ctx.process_id)
        if process is not None:
            process.status = status


@action_type(ActionType.CREATE_GOAL)
@dataclass
class CreateGoal(Action):
    title: Any = None
    description: Any = None
    cycle_id: Any = None

    @classmethod
    def from_payload(cls, payload):
        return cls(
            title=payload.get("title"),
            description=payload.get("description"),
            cycle_id=payload.get("cycleId"),
        )

    def execute(self, ctx, user):
        title = ctx.resolve(self.title)
        if not title:
            return
        cycle_id = ctx.resolve(self.cycle_id)
        db.session.add(Goal(
            user_id=user.id,
            title=str(title),
            description=ctx.resolve(self.description),
            cycle_id=str(cycle_id) if cycle_id is not None else None,
            status="in_progress",
        ))
        db.session.flush()


@action_type(ActionType.DISTRIBUTE_PEER_REVIEWS)
@dataclass
class DistributePeerReviews(Action):
    """Top up the user's reviewers for a cycle with random peers from their primary department."""
    cycle_id: Any = None
    grouping: str = "same_department"
    count: int = 2

    @classmethod
    def from_payload(cls, payload):
        return cls(
            cycle_id=payload.get("cycleId"),
            grouping=payload.get("grouping") or "same_department",
            count=int(payload.get("count") or 2),
        )

    def execute(self, ctx, user):
        cycle_id = ctx.resolve(self.cycle_id)
        if not cycle_id:
            return
        if self.grouping != "same_department":
            logger.warning("distribute_peer_reviews: unsupported grouping %r", self.grouping)
            return

        positions = (user.profile or {}).get("positions") or []
        primary = next((p for p in positions if p.get("isPrimary")), None)
        if primary is None or primary.get("departmentId") is None:
            return
        department_id = str(primary["departmentId"])
        cycle_id = str(cycle_id)

        assigned = set(db.session.execute(
            select(PeerReviewAssignment.reviewer_id).where(
                PeerReviewAssignment.cycle_id == cycle_id,
                PeerReviewAssignment.reviewee_id == user.id,
            )
        ).scalars())
        needed = self.count - len(assigned)
        if needed <= 0:
            return

        candidates = db.session.execute(
            select(User).where(User.id != user.id, User.deleted_at.is_(None))
        ).scalars()
        peers = [u.id for u in candidates if u.id not in assigned and department_id in u.department_ids]

        for reviewer_id in random.sample(peers, min(needed, len(peers))):
            db.session.add(PeerReviewAssignment(
                cycle_id=cycle_id,
                reviewer_id=reviewer_id,
                reviewee_id=user.id,
                is_anonymous=True,
                status="pending",
            ))
        db.session.flush()


@dataclass
class UnknownAction(Action):
    """Fallback for ``type`` strings outside the known vocabulary."""
    type_name: str = ""
    payload: dict = field(default_factory=dict)

    def execute(self, ctx, user):
        logger.warning("Unknown automation action type: %s", self.type_name)


def parse_action(raw: dict) -> Action:
    type_name = (raw or {}).get("type") or ""
    payload = (raw or {}).get("payload") or {}
    cls = _ACTIONS.get(type_name)
    if cls is None:
        return UnknownAction(type_name=type_name, payload=payload)
    return cls.from_payload(payload)


def known_action_types() -> list[str]:
    return sorted(_ACTIONS)


# ═════════════════════════════════════════════════════════════════════════════
# Conditions
# ═════════════════════════════════════════════════════════════════════════════

def check_conditions(conditions: dict | None, data: dict | None) -> bool:
    """Every key except ``check_prerequisites`` must equal ``data[key]``."""
    if not conditions:
        return True
    if data is None:
        return False
    for key, expected in conditions.items():
        if key == PREREQUISITES_KEY:
            continue
        if data.get(key) != expected:
            return False
    return True


def verify_prerequisites(user_id: int, prerequisite: dict | None) -> bool:
    """``{programSlug, status?}`` — the user must have a (matching) process in that program."""
    if not prerequisite:
        return True
    program = find_program_by_slug(prerequisite.get("programSlug") or "")
    if program is None:
        return False
    process = find_user_process(user_id, program.id)
    if process is None:
        return False
    expected = prerequisite.get("status")
    return not expected or process.status == expected


# ═════════════════════════════════════════════════════════════════════════════
# Evaluation
# ═════════════════════════════════════════════════════════════════════════════

def _max_depth() -> int:
    return current_app.config.get("AUTOMATION_MAX_DEPTH", MAX_RECURSION_DEPTH)


def _halt(exc: AutomationLoopDetected, ctx: AutomationContext) -> None:
    logger.critical(
        "Automation halted: %s",
        exc,
        extra={"event_type": "automation_halted", "trigger": ctx.trigger,
               "depth": ctx.depth, "program_id": ctx.program_id},
    )
    write_audit(
        entity_type="automation",
        entity_id=ctx.program_id or "none",
        action="automation.halted",
        actor_user_id=None,
        severity="critical",
        metadata={
            "trigger": ctx.trigger,
            "depth": ctx.depth,
            "user_id": ctx.user_id,
            "process_id": ctx.process_id,
        },
    )


def evaluate(
    trigger: str,
    *,
    user_id: int,
    program_id: int | None = None,
    process_id: int | None = None,
    data: dict | None = None,
    depth: int = 0,
) -> int:
    """
    Evaluate every rule of ``program_id`` bound to ``trigger``.

    Runs inside the caller's transaction. Returns the number of rules whose
    actions were executed.
    """
    ctx = AutomationContext(
        trigger=trigger,
        user_id=user_id,
        program_id=program_id,
        process_id=process_id,
        data=data if data is not None else {},
        depth=depth,
    )
    if depth > _max_depth():
        _halt(AutomationLoopDetected(trigger, depth), ctx)
        return 0

    if not program_id:
        return 0
    program = get_active_or_none(Program, program_id)
    if program is None or not program.automations:
        return 0

    user = get_active_or_none(User, user_id)
    if user is None:
        logger.warning("Automation %s skipped: user %s not found", trigger, user_id)
        return 0

    fired = 0
    for rule in program.automations:
        if rule.get("trigger") != trigger:
            continue
        conditions = rule.get("conditions") or {}
        if not check_conditions(conditions, data):
            continue
        if PREREQUISITES_KEY in conditions and not verify_prerequisites(user_id, conditions[PREREQUISITES_KEY]):
            continue

        fired += 1
        for raw in rule.get("actions") or []:
            action = parse_action(raw)
            # Savepoint per action: a failed flush rolls back only this action.
            try:
                with db.session.begin_nested():
                    action.execute(ctx, user)
            except Exception:
                logger.exception(
                    "Automation action %s failed (trigger=%s program=%s)",
                    raw.get("type"), trigger, program_id,
                )

    logger.info(
        "Evaluated %s for program %s: %d rule(s) fired",
        trigger, program_id, fired,
        extra={"trigger": trigger, "program_id": program_id, "depth": depth},
    )
    return fired


def run_automation_task(
    *,
    trigger: str,
    user_id: int,
    program_id: int | None = None,
    process_id: int | None = None,
    data: dict | None = None,
    depth: int = 0,
) -> None:
    """Deferred-task entry point; the scheduler owns commit/rollback."""
    evaluate(
        trigger,
        user_id=user_id,
        program_id=program_id,
        process_id=process_id,
        data=data,
        depth=depth,
    )
