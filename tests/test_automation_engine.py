"""
HR Process Engine
Tests — Automation Evaluator.

Covers:
    1. Condition matching and prerequisite checks
    2. Action payload templating
    3. Idempotent actions (assign_manager, assign_department, trigger_process)
    4. Profile / role / status / goal / process-status actions
    5. Deferred actions (send_email, book_event) through the scheduler
    6. Depth bound on cascading trigger_process chains
    7. Unknown and failing actions do not stop the rule
"""

import pytest
from sqlalchemy import select

from hrflow.core.constants import TASK_SEND_EMAIL
from hrflow.models import db
from hrflow.models.audit import AuditLog
from hrflow.models.event import Event, Goal, PeerReviewAssignment
from hrflow.models.process import Process
from hrflow.models.scheduling import EmailLog
from hrflow.models.user import ManagerAssignment
from hrflow.services.automation_engine import (
    UnknownAction,
    check_conditions,
    evaluate,
    known_action_types,
    parse_action,
    resolve_value,
)
from hrflow.services.process_service import create_process
from hrflow.services.scheduler_service import SchedulerService


def _rule(trigger, *actions, conditions=None):
    return {"trigger": trigger, "conditions": conditions or {}, "actions": list(actions)}


def _action(kind, **payload):
    return {"type": kind, "payload": payload}


def _audits(action):
    return db.session.execute(
        select(AuditLog).where(AuditLog.action == action)
    ).scalars().all()


@pytest.fixture()
def automated(make_program, make_stage):
    """Program with one stage and the given automation rules."""

    def _make(*rules, slug=None):
        program = make_program(slug=slug, automations=list(rules))
        make_stage(program, "Only")
        return program

    return _make


# ═══════════════════════════════════════════════════════════════════════════
#  Conditions & templating
# ═══════════════════════════════════════════════════════════════════════════

class TestConditions:
    def test_empty_conditions_match(self):
        assert check_conditions({}, None)
        assert check_conditions(None, {"a": 1})

    def test_conditions_without_data_fail(self):
        assert not check_conditions({"decision": "accept"}, None)

    def test_every_key_must_match(self):
        conditions = {"decision": "accept", "stageName": "Offer"}
        assert check_conditions(conditions, {"decision": "accept", "stageName": "Offer", "x": 1})
        assert not check_conditions(conditions, {"decision": "accept", "stageName": "Interview"})

    def test_prerequisite_key_is_not_compared(self):
        conditions = {"check_prerequisites": {"programSlug": "x"}}
        assert check_conditions(conditions, {})

    def test_prerequisite_gates_rule(self, make_user, make_program, make_stage, automated):
        onboarding = make_program(slug="onboarding")
        stage = make_stage(onboarding, "Intro")
        program = automated(_rule(
            "stage_submission",
            _action("update_role", systemRole="lead"),
            conditions={"check_prerequisites": {"programSlug": "onboarding", "status": "completed"}},
        ))
        user = make_user("member")

        assert evaluate("stage_submission", user_id=user.id, program_id=program.id, data={}) == 0

        db.session.add(Process(
            user_id=user.id, program_id=onboarding.id, current_stage_id=str(stage.id),
            data={}, status="completed",
        ))
        db.session.commit()
        assert evaluate("stage_submission", user_id=user.id, program_id=program.id, data={}) == 1
        assert user.system_role == "lead"


class TestTemplating:
    def test_placeholder_resolves_from_data(self):
        assert resolve_value("{{ managerId }}", {"managerId": 7}) == 7
        assert resolve_value("{{missing}}", {}) is None

    def test_non_placeholders_pass_through(self):
        assert resolve_value("plain", {"plain": 1}) == "plain"
        assert resolve_value("prefix {{x}}", {"x": 1}) == "prefix {{x}}"
        assert resolve_value(5, {}) == 5

    def test_unknown_type_parses_to_fallback(self):
        action = parse_action({"type": "launch_rocket", "payload": {"x": 1}})
        assert isinstance(action, UnknownAction)
        assert action.type_name == "launch_rocket"
        assert "update_role" in known_action_types()


# ═══════════════════════════════════════════════════════════════════════════
#  Idempotent actions
# ═══════════════════════════════════════════════════════════════════════════

class TestIdempotentActions:
    def test_assign_manager_twice_creates_one_assignment(self, make_user, automated):
        manager = make_user("manager")
        program = automated(_rule("offer_accepted", _action("assign_manager", managerId="{{managerId}}")))
        user = make_user()

        for _ in range(2):
            evaluate("offer_accepted", user_id=user.id, program_id=program.id,
                     data={"managerId": manager.id})
        db.session.commit()

        rows = db.session.execute(
            select(ManagerAssignment).where(ManagerAssignment.user_id == user.id)
        ).scalars().all()
        assert len(rows) == 1
        assert rows[0].manager_id == manager.id
        assert rows[0].context == "direct"

    def test_assign_department_twice_keeps_one_position(self, make_user, automated):
        program = automated(_rule("offer_accepted", _action("assign_department", departmentId=4)))
        user = make_user()

        evaluate("offer_accepted", user_id=user.id, program_id=program.id, data={})
        evaluate("offer_accepted", user_id=user.id, program_id=program.id, data={})

        positions = user.profile["positions"]
        assert len(positions) == 1
        assert positions[0]["departmentId"] == 4
        assert positions[0]["title"] == "Member"
        assert positions[0]["isPrimary"] is True

    def test_assign_department_with_title_updates_existing(self, make_user, automated):
        program = automated(_rule(
            "offer_accepted", _action("assign_department", departmentId=4, title="{{title}}"),
        ))
        user = make_user(departments=[4])

        evaluate("offer_accepted", user_id=user.id, program_id=program.id, data={"title": "Engineer"})

        positions = user.profile["positions"]
        assert len(positions) == 1
        assert positions[0]["title"] == "Engineer"

    def test_trigger_process_twice_starts_one_process(self, make_user, make_program, make_stage, automated):
        target = make_program(slug="onboarding")
        make_stage(target, "Welcome")
        program = automated(_rule("offer_accepted", _action("trigger_process", programSlug="onboarding")))
        user = make_user()

        evaluate("offer_accepted", user_id=user.id, program_id=program.id, data={})
        evaluate("offer_accepted", user_id=user.id, program_id=program.id, data={})
        db.session.commit()

        started = db.session.execute(
            select(Process).where(Process.user_id == user.id, Process.program_id == target.id)
        ).scalars().all()
        assert len(started) == 1
        assert started[0].current_stage_id == target.stage_ids[0]
        assert started[0].stage_flow_snapshot == target.stage_ids


# ═══════════════════════════════════════════════════════════════════════════
#  Direct-effect actions
# ═══════════════════════════════════════════════════════════════════════════

class TestDirectActions:
    def test_update_role_from_decision(self, make_user, automated):
        program = automated(_rule(
            "stage_submission", _action("update_role", systemRole="member"),
            conditions={"decision": "accept"},
        ))
        user = make_user("guest")

        assert evaluate("stage_submission", user_id=user.id, program_id=program.id,
                        data={"decision": "decline"}) == 0
        assert user.system_role == "guest"

        assert evaluate("stage_submission", user_id=user.id, program_id=program.id,
                        data={"decision": "accept"}) == 1
        assert user.system_role == "member"

    def test_update_role_ignores_unknown_role(self, make_user, automated):
        program = automated(_rule("offer_accepted", _action("update_role", systemRole="overlord")))
        user = make_user("member")
        evaluate("offer_accepted", user_id=user.id, program_id=program.id, data={})
        assert user.system_role == "member"

    def test_update_status_and_profile(self, make_user, automated):
        program = automated(_rule(
            "offer_accepted",
            _action("update_status", status="active"),
            _action("manage_user_profile", fields={"joinDate": "{{start}}", "shirtSize": "M"}),
        ))
        user = make_user(status="candidate")

        evaluate("offer_accepted", user_id=user.id, program_id=program.id, data={"start": "2026-11-01"})

        assert user.profile["status"] == "active"
        assert user.profile["joinDate"] == "2026-11-01"
        assert user.profile["customFields"] == {"shirtSize": "M"}

    def test_create_goal(self, make_user, automated):
        program = automated(_rule(
            "process_completed", _action("create_goal", title="Ship {{x}}", cycleId="{{cycle}}"),
        ))
        user = make_user()
        evaluate("process_completed", user_id=user.id, program_id=program.id, data={"cycle": 2026})
        db.session.commit()

        goal = db.session.execute(select(Goal).where(Goal.user_id == user.id)).scalars().one()
        assert goal.title == "Ship {{x}}"
        assert goal.cycle_id == "2026"
        assert goal.status == "in_progress"

    def test_distribute_peer_reviews_picks_department_peers(self, make_user, automated):
        program = automated(_rule(
            "offer_accepted",
            _action("distribute_peer_reviews", cycleId="{{cycle}}", count=2),
        ))
        user = make_user(departments=[7, 9])
        peers = {make_user(departments=[7]).id for _ in range(3)}
        make_user(departments=[9])
        make_user()

        evaluate("offer_accepted", user_id=user.id, program_id=program.id, data={"cycle": "2026-h1"})
        evaluate("offer_accepted", user_id=user.id, program_id=program.id, data={"cycle": "2026-h1"})
        db.session.commit()

        rows = db.session.execute(select(PeerReviewAssignment)).scalars().all()
        assert len(rows) == 2
        assert {r.reviewer_id for r in rows} <= peers
        assert {(r.reviewee_id, r.cycle_id, r.status, r.is_anonymous) for r in rows} == {
            (user.id, "2026-h1", "pending", True),
        }

    def test_distribute_peer_reviews_needs_primary_department(self, make_user, automated):
        program = automated(_rule(
            "offer_accepted", _action("distribute_peer_reviews", cycleId="c1"),
        ))
        user = make_user()
        make_user(departments=[7])

        evaluate("offer_accepted", user_id=user.id, program_id=program.id, data={})
        assert db.session.execute(select(PeerReviewAssignment)).scalars().all() == []

    def test_update_process_status(self, make_user, automated):
        program = automated(_rule(
            "stage_submission", _action("update_process_status", status="accepted"),
            conditions={"decision": "accept"},
        ))
        user = make_user()
        process = Process(user_id=user.id, program_id=program.id,
                          current_stage_id=program.stage_ids[0], data={})
        db.session.add(process)
        db.session.commit()

        evaluate("stage_submission", user_id=user.id, program_id=program.id,
                 process_id=process.id, data={"decision": "accept"})
        assert process.status == "accepted"

    def test_other_triggers_ignored(self, make_user, automated):
        program = automated(_rule("offer_accepted", _action("update_role", systemRole="lead")))
        user = make_user()
        assert evaluate("status_change", user_id=user.id, program_id=program.id, data={}) == 0
        assert user.system_role == "member"


# ═══════════════════════════════════════════════════════════════════════════
#  Deferred actions
# ═══════════════════════════════════════════════════════════════════════════

class TestDeferredActions:
    def test_send_email_is_scheduled_then_logged(self, make_user, automated, run_tasks):
        program = automated(_rule("stage_submission", _action(
            "send_email", subject="Thanks {name}", template="stage_submitted",
            variables={"stageName": "{{stageName}}"},
        )))
        user = make_user(name="Jane")

        evaluate("stage_submission", user_id=user.id, program_id=program.id, data={"stageName": "Apply"})
        pending = SchedulerService.pending()
        assert [p["task_name"] for p in pending] == [TASK_SEND_EMAIL]
        assert pending[0]["args"]["to"] == user.email
        db.session.commit()

        results = run_tasks()
        assert [r["status"] for r in results] == ["success"]

        log = db.session.execute(select(EmailLog)).scalars().one()
        assert log.recipient_email == user.email
        assert log.subject == "Thanks Jane"
        assert log.template_name == "stage_submitted"
        assert log.status == "sent"

    def test_book_event_runs_as_task(self, make_user, automated, run_tasks):
        user = make_user()
        program = automated(_rule("offer_accepted", _action("book_event", eventId="{{eventId}}")))
        event = Event(program_id=program.id, title="Orientation", max_attendees=2)
        db.session.add(event)
        db.session.commit()

        evaluate("offer_accepted", user_id=user.id, program_id=program.id, data={"eventId": event.id})
        db.session.commit()
        run_tasks()

        db.session.refresh(event)
        assert event.attendees == [user.id]
        assert event.status == "open"
        assert len(_audits("event.book")) == 1


# ═══════════════════════════════════════════════════════════════════════════
#  Depth bound
# ═══════════════════════════════════════════════════════════════════════════

class TestDepthBound:
    def test_direct_evaluation_past_limit_halts(self, make_user, automated):
        program = automated(_rule("offer_accepted", _action("update_role", systemRole="lead")))
        user = make_user()

        assert evaluate("offer_accepted", user_id=user.id, program_id=program.id, data={}, depth=4) == 0
        assert user.system_role == "member"

        halted = _audits("automation.halted")
        assert len(halted) == 1
        assert halted[0].severity == "critical"
        assert halted[0].actor_user_id is None
        assert halted[0].meta["depth"] == 4

    def test_limit_itself_still_runs(self, make_user, automated):
        program = automated(_rule("offer_accepted", _action("update_role", systemRole="lead")))
        user = make_user()
        assert evaluate("offer_accepted", user_id=user.id, program_id=program.id, data={}, depth=3) == 1
        assert _audits("automation.halted") == []

    def test_trigger_process_chain_is_cut(self, make_user, make_program, make_stage, run_tasks):
        programs = []
        for i in range(6):
            program = make_program(slug=f"chain-{i}", automations=[
                _rule("process_created", _action("trigger_process", programSlug=f"chain-{i + 1}")),
            ])
            make_stage(program, f"Step {i}")
            programs.append(program)
        user = make_user()

        create_process(user, programs[0].id)
        run_tasks()

        owned = {
            p.program_id for p in db.session.execute(
                select(Process).where(Process.user_id == user.id)
            ).scalars()
        }
        assert owned == {p.id for p in programs[:5]}

        halted = _audits("automation.halted")
        assert len(halted) == 1
        assert halted[0].meta["trigger"] == "process_created"
        assert SchedulerService.pending() == []


# ═══════════════════════════════════════════════════════════════════════════
#  Resilience
# ═══════════════════════════════════════════════════════════════════════════

class TestResilience:
    def test_unknown_action_is_skipped(self, make_user, automated):
        program = automated(_rule(
            "offer_accepted",
            _action("launch_rocket"),
            _action("update_role", systemRole="lead"),
        ))
        user = make_user()
        assert evaluate("offer_accepted", user_id=user.id, program_id=program.id, data={}) == 1
        assert user.system_role == "lead"

    def test_failing_action_does_not_stop_the_rule(self, make_user, automated):
        program = automated(_rule(
            "offer_accepted",
            _action("assign_manager", managerId="not-a-number"),
            _action("update_status", status="active"),
        ))
        user = make_user(status="candidate")
        evaluate("offer_accepted", user_id=user.id, program_id=program.id, data={})
        assert user.profile["status"] == "active"

    def test_database_failure_rolls_back_only_that_action(self, make_user, automated, run_tasks):
        program = automated(_rule(
            "process_created",
            _action("update_role", systemRole="lead"),
            _action("assign_manager", managerId=99999),
            _action("update_status", status="alumni"),
        ))
        user = make_user()

        create_process(user, program.id)
        results = run_tasks()

        assert [r["status"] for r in results] == ["success"]
        db.session.expire_all()
        assert user.system_role == "lead"
        assert user.profile["status"] == "alumni"
        assert db.session.execute(select(ManagerAssignment)).scalars().all() == []

    def test_missing_program_or_user_is_a_no_op(self, make_user, automated):
        program = automated(_rule("offer_accepted", _action("update_role", systemRole="lead")))
        user = make_user()
        assert evaluate("offer_accepted", user_id=user.id, program_id=None, data={}) == 0
        assert evaluate("offer_accepted", user_id=user.id, program_id=9999, data={}) == 0
        assert evaluate("offer_accepted", user_id=9999, program_id=program.id, data={}) == 0
