"""
HR Process Engine
Stage Router — decides where a process goes after a stage submission.

Pure functions over already-loaded stages; no database access.

Order of decisions:
    1. Reorder the live pipeline by the process's frozen stage snapshot.
    2. Locate the current stage by live id or original id.
    3. First routing rule whose condition matches and whose target resolves wins.
    4. Otherwise advance linearly; past the last stage the pipeline is complete.

Usage:
    result = route(process.current_stage_id, pipeline, payload, process.stage_flow_snapshot)
    if result.not_found:   -> configuration error
    elif result.completed: -> mark process completed
    else:                  -> result.next_stage_id
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Sequence

from hrflow.models.program import Stage

logger = logging.getLogger(__name__)

# Stages missing from a snapshot sort after every snapshotted stage.
_UNSNAPSHOTTED_INDEX = 999


@dataclass(frozen=True)
class RouteResult:
    next_stage_id: str | None = None
    completed: bool = False
    not_found: bool = False


# ═════════════════════════════════════════════════════════════════════════════
# Pipeline helpers
# ═════════════════════════════════════════════════════════════════════════════

def apply_snapshot(pipeline: Sequence[Stage], snapshot: Sequence | None) -> list[Stage]:
    """Reorder ``pipeline`` to follow ``snapshot``; unknown stages go last (stable)."""
    if not snapshot:
        return list(pipeline)

    order = [str(sid) for sid in snapshot]

    def _index(stage: Stage) -> int:
        for idx, sid in enumerate(order):
            if stage.matches(sid):
                return idx
        return _UNSNAPSHOTTED_INDEX

    return sorted(pipeline, key=_index)


def find_stage(pipeline: Sequence[Stage], stage_id) -> Stage | None:
    """Locate a stage by live id or original id."""
    return next((s for s in pipeline if s.matches(stage_id)), None)


# ═════════════════════════════════════════════════════════════════════════════
# Conditions
# ═════════════════════════════════════════════════════════════════════════════

def _compare(left: Any, right: Any, op: str) -> bool:
    try:
        return left > right if op == "gt" else left < right
    except TypeError:
        try:
            left_num, right_num = float(left), float(right)
        except (TypeError, ValueError):
            return False
        return left_num > right_num if op == "gt" else left_num < right_num


def evaluate_condition(condition: dict | None, data: dict) -> bool:
    """Evaluate ``{field, op, value}`` against a submission. Missing condition matches."""
    if not condition:
        return True
    actual = (data or {}).get(condition.get("field"))
    expected = condition.get("value")
    op = condition.get("op") or "eq"

    if op == "neq":
        return actual != expected
    if op in ("gt", "lt"):
        if actual is None or expected is None:
            return False
        return _compare(actual, expected, op)
    if op == "contains":
        return isinstance(actual, (list, tuple)) and expected in actual
    if op == "exists":
        return actual is not None
    if op != "eq":
        logger.debug("Unknown routing operator %r treated as eq", op)
    return actual == expected


# ═════════════════════════════════════════════════════════════════════════════
# Routing
# ═════════════════════════════════════════════════════════════════════════════

def route(
    current_stage_id,
    pipeline: Sequence[Stage],
    submission: dict | None,
    snapshot: Sequence | None = None,
) -> RouteResult:
    """Compute the next stage, distinguishing completion from a missing stage."""
    ordered = apply_snapshot(pipeline, snapshot)
    current = find_stage(ordered, current_stage_id)
    if current is None:
        return RouteResult(not_found=True)

    for rule in (current.config or {}).get("routingRules") or []:
        if not evaluate_condition(rule.get("condition"), submission or {}):
            continue
        target = find_stage(ordered, rule.get("targetStageId"))
        if target is None:
            logger.warning(
                "Routing rule on stage %s targets unknown stage %r; skipping",
                current.id, rule.get("targetStageId"),
            )
            continue
        return RouteResult(next_stage_id=target.stage_key)

    position = ordered.index(current)
    if position + 1 < len(ordered):
        return RouteResult(next_stage_id=ordered[position + 1].stage_key)
    return RouteResult(completed=True)


def calculate_next_stage(
    current_stage_id,
    pipeline: Sequence[Stage],
    submission: dict | None,
    snapshot: Sequence | None = None,
) -> str | None:
    """Plain contract: next stage id, or None for completion *or* missing stage."""
    return route(current_stage_id, pipeline, submission, snapshot).next_stage_id
