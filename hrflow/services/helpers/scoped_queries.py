"""
Soft-delete-aware query helpers.

Every get-by-id in the engine goes through these helpers so that
soft-deleted programs, stages and processes behave exactly like missing
ones (``NotFoundError``), and the pipeline of a program is always read in
one consistent order.

Usage:
    program = get_active(Program, program_id)
    pipeline = load_pipeline(program)
    existing = find_user_process(user_id, program_id)
"""

import logging

from sqlalchemy import select

from hrflow.core.exceptions import NotFoundError
from hrflow.models import db
from hrflow.models.process import Process
from hrflow.models.program import Program, Stage

logger = logging.getLogger(__name__)


def get_active(model, pk, label: str | None = None):
    """Fetch ``model`` by primary key; raise NotFoundError if missing or soft-deleted."""
    obj = get_active_or_none(model, pk)
    if obj is None:
        raise NotFoundError(resource=label or model.__name__, resource_id=pk)
    return obj


def get_active_or_none(model, pk):
    if pk is None:
        return None
    try:
        pk = int(pk)
    except (TypeError, ValueError):
        return None
    obj = db.session.get(model, pk)
    if obj is None or getattr(obj, "is_deleted", False):
        return None
    return obj


def load_pipeline(program: Program) -> list[Stage]:
    """
    Return the program's non-deleted stages in ``program.stage_ids`` order.

    Stages that belong to the program but are missing from ``stage_ids``
    are appended in creation order so that nothing reachable is lost.
    """
    stages = db.session.execute(
        select(Stage)
        .where(Stage.program_id == program.id, Stage.deleted_at.is_(None))
        .order_by(Stage.id)
    ).scalars().all()

    position = {str(sid): idx for idx, sid in enumerate(program.stage_ids or [])}
    fallback = len(position)
    return sorted(stages, key=lambda s: position.get(s.stage_key, fallback))


def find_user_process(user_id: int, program_id: int) -> Process | None:
    """The user's non-deleted process for a program, if any."""
    return db.session.execute(
        select(Process).where(
            Process.user_id == user_id,
            Process.program_id == program_id,
            Process.deleted_at.is_(None),
        )
    ).scalars().first()


def find_program_by_slug(slug: str) -> Program | None:
    return db.session.execute(
        select(Program).where(Program.slug == slug, Program.deleted_at.is_(None))
    ).scalars().first()
