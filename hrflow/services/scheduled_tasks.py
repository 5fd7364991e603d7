"""
HR Process Engine
Scheduled Tasks — deferred side effects handed to the scheduler.

Tasks:
    - automation.evaluate: evaluate a program's automation rules for a trigger
    - email.send: render and send a templated notification email
    - event.book: book a user onto an event on their behalf

Each task runs in its own transaction; the scheduler commits on success
and rolls back on failure.
"""

from __future__ import annotations

import logging
from typing import Any

from hrflow.core.constants import (
    TASK_BOOK_EVENT,
    TASK_EVALUATE_AUTOMATIONS,
    TASK_SEND_EMAIL,
)
from hrflow.services.automation_engine import run_automation_task
from hrflow.services.email_service import EmailService
from hrflow.services.event_service import book_event_task
from hrflow.services.scheduler_service import register_task

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Task 1: Automation Evaluation
# ═══════════════════════════════════════════════════════════════════════════

register_task(TASK_EVALUATE_AUTOMATIONS)(run_automation_task)


# ═══════════════════════════════════════════════════════════════════════════
#  Task 2: Email Dispatch
# ═══════════════════════════════════════════════════════════════════════════

@register_task(TASK_SEND_EMAIL)
def send_email_task(*, to: str, subject: str, template: str | None = None,
                    payload: dict[str, Any] | None = None) -> None:
    """Send a templated email; a missing recipient is skipped with a warning."""
    if not to:
        logger.warning("email.send skipped: no recipient (template=%s)", template)
        return
    payload = payload or {}
    EmailService.send_from_template(
        to_email=to,
        to_name=payload.get("name"),
        subject=subject or "Notification",
        template_name=template or "default",
        context=payload,
    )


# ═══════════════════════════════════════════════════════════════════════════
#  Task 3: Event Booking
# ═══════════════════════════════════════════════════════════════════════════

register_task(TASK_BOOK_EVENT)(book_event_task)
