"""
HR Process Engine
Scheduler Service — deferred, fire-and-forget task execution.

Mutations hand post-commit side effects (automation cascades, emails,
event bookings) to this scheduler. ``schedule`` returns immediately; the
task later runs in its own app context and its own transaction:

    - success  → ``db.session.commit()``
    - failure  → ``db.session.rollback()``, logged, recorded as failed

A failing task never reaches the caller that scheduled it, and tasks
scheduled by the same call are not ordered relative to each other.
Follow-up tasks scheduled from inside a task are queued only after that
task commits; a rollback discards them.

Modes (``SCHEDULER_MODE``):
    thread  — a daemon worker thread polls the queue
    manual  — tasks wait until ``SchedulerService.run_pending()`` is called

Architecture:
    - Task functions are registered by name via ``@register_task``
    - Each run is recorded as a ``ScheduledTask`` row
"""

from __future__ import annotations

import itertools
import logging
import threading
import time
from contextlib import nullcontext
from typing import Callable

from flask import Flask, current_app, has_app_context

from hrflow.models import db
from hrflow.models.scheduling import ScheduledTask

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Task Registry
# ═══════════════════════════════════════════════════════════════════════════

_task_registry: dict[str, Callable] = {}


def register_task(name: str):
    """Decorator to register a deferred task function.

    Usage:
        @register_task("email.send")
        def send_email_task(*, to, subject, template, payload):
            ...
    """
    def decorator(fn: Callable) -> Callable:
        _task_registry[name] = fn
        return fn
    return decorator


def get_registered_tasks() -> dict[str, Callable]:
    return dict(_task_registry)


class SchedulerService:
    """
    In-process deferred task queue.

    Queue entries are ``(due_monotonic, seq, task_name, args)``; ``seq``
    only keeps the sort stable.
    """

    _app: Flask | None = None
    _mode: str = "manual"
    _queue: list[tuple[float, int, str, dict]] = []
    _lock = threading.Lock()
    _seq = itertools.count()
    _running: bool = False
    _thread: threading.Thread | None = None
    # Per-thread holding area for schedules made by a running task.
    _local = threading.local()

    @classmethod
    def init_app(cls, app: Flask) -> None:
        """Initialize scheduler with the Flask app; start the worker in thread mode."""
        cls._app = app
        cls._mode = app.config.get("SCHEDULER_MODE", "thread")
        with cls._lock:
            cls._queue = []
        app.extensions["scheduler"] = cls
        logger.info("SchedulerService initialized (mode=%s) with %d registered tasks",
                    cls._mode, len(_task_registry))
        if cls._mode == "thread":
            cls.start()

    # ── Scheduling ───────────────────────────────────────────────────────

    @classmethod
    def schedule(cls, delay_ms: int, task_name: str, args: dict | None = None) -> None:
        """Queue ``task_name(**args)`` to run after ``delay_ms``. Returns immediately.

        Inside a running task the entry is held back until that task's
        transaction commits, and dropped if it rolls back.
        """
        if task_name not in _task_registry:
            raise ValueError(f"Unknown task: {task_name}")
        entry = (delay_ms, task_name, dict(args or {}))
        held = getattr(cls._local, "held", None)
        if held is not None:
            held.append(entry)
            logger.debug("Holding %s until the running task commits", task_name)
            return
        cls._enqueue([entry])

    @classmethod
    def _enqueue(cls, entries: list[tuple[int, str, dict]]) -> None:
        now = time.monotonic()
        with cls._lock:
            for delay_ms, task_name, args in entries:
                cls._queue.append((now + max(delay_ms, 0) / 1000, next(cls._seq), task_name, args))
                logger.debug("Scheduled %s in %dms", task_name, delay_ms)
            cls._queue.sort()

    @classmethod
    def pending(cls) -> list[dict]:
        with cls._lock:
            return [{"task_name": name, "args": args} for _due, _seq, name, args in cls._queue]

    @classmethod
    def clear(cls) -> None:
        with cls._lock:
            cls._queue = []

    @classmethod
    def _pop_due(cls, ignore_delay: bool) -> tuple[str, dict] | None:
        with cls._lock:
            if not cls._queue:
                return None
            due, _seq, name, args = cls._queue[0]
            if not ignore_delay and due > time.monotonic():
                return None
            cls._queue.pop(0)
            return name, args

    # ── Execution ────────────────────────────────────────────────────────

    @classmethod
    def run_pending(cls, ignore_delay: bool = True, max_tasks: int = 1000) -> list[dict]:
        """
        Drain the queue, including tasks scheduled by tasks that ran.

        Returns the per-task result dicts in execution order.
        """
        results = []
        for _ in range(max_tasks):
            item = cls._pop_due(ignore_delay)
            if item is None:
                break
            results.append(cls.run_task(*item))
        return results

    @classmethod
    def _task_context(cls):
        if has_app_context() and current_app._get_current_object() is cls._app:
            return nullcontext()
        return cls._app.app_context()

    @classmethod
    def run_task(cls, task_name: str, args: dict) -> dict:
        """
        Execute one task in its own transaction.

        Returns:
            Dict with task_name, status, duration_ms, error.
        """
        fn = _task_registry.get(task_name)
        if not fn:
            return {"task_name": task_name, "status": "error", "error": f"Unknown task: {task_name}"}
        if not cls._app:
            return {"task_name": task_name, "status": "error", "error": "Scheduler not initialized"}

        start = time.monotonic()
        status = "success"
        error = None

        with cls._task_context():
            outer_held = getattr(cls._local, "held", None)
            held: list[tuple[int, str, dict]] = []
            cls._local.held = held
            try:
                fn(**args)
                db.session.commit()
            except Exception as exc:
                db.session.rollback()
                status = "failed"
                error = str(exc)
                logger.exception("Task %s failed: %s", task_name, exc)
                if held:
                    logger.warning("Discarded %d task(s) scheduled by failed task %s",
                                   len(held), task_name)
            else:
                cls._enqueue(held)
            finally:
                cls._local.held = outer_held

            duration_ms = int((time.monotonic() - start) * 1000)
            try:
                record = ScheduledTask(task_name=task_name, args=args)
                record.record_run(status=status, duration_ms=duration_ms, error=error)
                db.session.add(record)
                db.session.commit()
            except Exception:
                db.session.rollback()
                logger.exception("Failed to record run of task %s", task_name)

        return {
            "task_name": task_name,
            "status": status,
            "duration_ms": duration_ms,
            "error": error,
        }

    # ── Worker thread ────────────────────────────────────────────────────

    @classmethod
    def start(cls) -> None:
        if cls._running:
            return
        cls._running = True
        cls._thread = threading.Thread(target=cls._worker, name="hrflow-scheduler", daemon=True)
        cls._thread.start()

    @classmethod
    def stop(cls) -> None:
        cls._running = False
        if cls._thread is not None:
            cls._thread.join(timeout=5)
            cls._thread = None

    @classmethod
    def _worker(cls) -> None:
        interval = cls._app.config.get("SCHEDULER_POLL_INTERVAL", 0.5)
        while cls._running:
            item = cls._pop_due(ignore_delay=False)
            if item is None:
                time.sleep(interval)
                continue
            cls.run_task(*item)


def schedule(delay_ms: int, task_name: str, args: dict | None = None) -> None:
    """Module-level shortcut for ``SchedulerService.schedule``."""
    SchedulerService.schedule(delay_ms, task_name, args)
