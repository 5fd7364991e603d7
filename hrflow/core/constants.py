"""
Engine-wide vocabularies: role hierarchy, process statuses, triggers.

The role hierarchy is the single ordered table consumed by the access
calculator, the listing filters and any role picker exposed over the API.

Usage:
    from hrflow.core.constants import SystemRole, role_level

    role_level("manager")               # -> 20
    has_minimum_role("lead", "manager")  # -> True
"""

from __future__ import annotations

from enum import Enum


# ═════════════════════════════════════════════════════════════════════════════
# Roles
# ═════════════════════════════════════════════════════════════════════════════

class SystemRole(str, Enum):
    GUEST = "guest"
    MEMBER = "member"
    MANAGER = "manager"
    LEAD = "lead"
    ADMIN = "admin"


# Monotonic and total: every known role maps to a distinct level.
ROLE_HIERARCHY: dict[str, int] = {
    SystemRole.GUEST.value: 0,
    SystemRole.MEMBER.value: 10,
    SystemRole.MANAGER.value: 20,
    SystemRole.LEAD.value: 30,
    SystemRole.ADMIN.value: 100,
}

ADMIN_LEVEL = ROLE_HIERARCHY[SystemRole.ADMIN.value]


def role_level(role: str | None) -> int:
    """Return the numeric level for a role slug. Unknown roles rank as guest."""
    if isinstance(role, SystemRole):
        role = role.value
    return ROLE_HIERARCHY.get(role or SystemRole.GUEST.value, 0)


def has_minimum_role(role: str | None, minimum: str) -> bool:
    return role_level(role) >= role_level(minimum)


def is_admin(role: str | None) -> bool:
    return role == SystemRole.ADMIN.value


def is_staff_role(role: str | None) -> bool:
    """Manager and above count as staff (reviewers)."""
    return has_minimum_role(role, SystemRole.MANAGER.value)


def roles_by_level() -> list[str]:
    """Role slugs ordered from lowest to highest level."""
    return sorted(ROLE_HIERARCHY, key=ROLE_HIERARCHY.get)


# ═════════════════════════════════════════════════════════════════════════════
# Process / profile vocabularies
# ═════════════════════════════════════════════════════════════════════════════

class ProcessStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    PENDING_REVIEW = "pending_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    WITHDRAWN = "withdrawn"
    ACCEPTED = "accepted"
    OFFER_ACCEPTED = "offer_accepted"
    COMPLETED = "completed"


PROCESS_STATUSES = {s.value for s in ProcessStatus}

# Statuses that refuse further stage submissions.
TERMINAL_STATUSES = {
    ProcessStatus.COMPLETED.value,
    ProcessStatus.REJECTED.value,
    ProcessStatus.WITHDRAWN.value,
}

DEFAULT_HR_STATUS = "candidate"

PROGRAM_TYPES = {
    "recruitment_cycle",
    "training_program",
    "survey_campaign",
    "performance_cycle",
    "generic",
}

STAGE_TYPES = {"form", "static", "interview", "agreement", "completed"}

PROCESS_ACTIONS = ("view", "start", "approve", "comment", "edit")


class Trigger(str, Enum):
    """Named events that cause automation evaluation."""
    PROCESS_CREATED = "process_created"
    STAGE_SUBMISSION = "stage_submission"
    PROCESS_COMPLETED = "process_completed"
    STATUS_CHANGE = "status_change"
    OFFER_ACCEPTED = "offer_accepted"
    EVENT_BOOKED = "event_booked"


TRIGGERS = {t.value for t in Trigger}

MAX_RECURSION_DEPTH = 3


# ═════════════════════════════════════════════════════════════════════════════
# Deferred task names
# ═════════════════════════════════════════════════════════════════════════════

TASK_EVALUATE_AUTOMATIONS = "automation.evaluate"
TASK_SEND_EMAIL = "email.send"
TASK_BOOK_EVENT = "event.book"
