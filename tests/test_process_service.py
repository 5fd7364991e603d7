"""
HR Process Engine
Tests — Process Orchestrator.

Covers:
    1. create_process: happy path, guards, duplicate, delegation, quotas
    2. submit_stage: accumulation, routing, completion, snapshot, versioning
    3. update_status: admin-only, audited twice (configurable)
    4. accept_offer: offer flow and automation cascade
    5. Reads: detail masks, my/team processes, role-gated bulk listing
"""

import pytest
from sqlalchemy import select

from hrflow.core.constants import TASK_EVALUATE_AUTOMATIONS
from hrflow.core.exceptions import (
    ConfigurationError,
    ConflictError,
    NotFoundError,
    RateLimitedError,
    SubmissionValidationError,
    UnauthorizedError,
    ValidationError,
)
from hrflow.models import db
from hrflow.models.audit import AuditLog
from hrflow.models.process import Process
from hrflow.models.user import ManagerAssignment
from hrflow.services.process_service import (
    accept_offer,
    create_process,
    delete_process,
    get_my_processes,
    get_process,
    get_team_processes,
    list_processes_paginated,
    submit_stage,
    update_status,
)
from hrflow.services.scheduler_service import SchedulerService

APPLY_DATA = {"email": "jane@example.com", "name": "Jane"}


def _audit_actions(entity_id):
    rows = db.session.execute(
        select(AuditLog)
        .where(AuditLog.entity_type == "process", AuditLog.entity_id == str(entity_id))
        .order_by(AuditLog.id)
    ).scalars().all()
    return [r.action for r in rows]


def _pending_triggers():
    return [
        p["args"]["trigger"] for p in SchedulerService.pending()
        if p["task_name"] == TASK_EVALUATE_AUTOMATIONS
    ]


def _assign(manager, report):
    db.session.add(ManagerAssignment(user_id=report.id, manager_id=manager.id, context="direct"))
    db.session.commit()


# ═══════════════════════════════════════════════════════════════════════════
#  Creation
# ═══════════════════════════════════════════════════════════════════════════

class TestCreateProcess:
    def test_starts_at_first_stage(self, make_user, pipeline_program):
        program, stages = pipeline_program
        user = make_user()

        proc = create_process(user, program.id)

        assert proc["user_id"] == user.id
        assert proc["status"] == "in_progress"
        assert proc["current_stage_id"] == str(stages[0].id)
        assert proc["stage_flow_snapshot"] == [str(s.id) for s in stages]
        assert proc["data"] == {}
        assert proc["version"] == 1
        assert proc["required_role_level"] == 0
        assert _audit_actions(proc["id"]) == ["process.create"]

    def test_no_automations_schedules_nothing(self, make_user, pipeline_program):
        program, _ = pipeline_program
        create_process(make_user(), program.id)
        assert SchedulerService.pending() == []

    def test_process_created_trigger_scheduled(self, make_user, make_program, make_stage):
        program = make_program(automations=[{"trigger": "process_created", "actions": []}])
        make_stage(program)
        create_process(make_user(), program.id)
        assert _pending_triggers() == ["process_created"]

    def test_requires_viewer(self, pipeline_program):
        program, _ = pipeline_program
        with pytest.raises(UnauthorizedError) as exc:
            create_process(None, program.id)
        assert exc.value.authenticated is False

    def test_inactive_program_refused(self, make_user, make_program, make_stage):
        program = make_program(is_active=False)
        make_stage(program)
        with pytest.raises(ValidationError, match="not active"):
            create_process(make_user(), program.id)

    def test_missing_program(self, make_user):
        with pytest.raises(NotFoundError):
            create_process(make_user(), 4242)

    def test_role_without_start_refused(self, make_user, make_program, make_stage):
        program = make_program(access_control=[{"roleSlug": "member", "actions": ["start"]}])
        make_stage(program)
        with pytest.raises(UnauthorizedError, match="role 'guest'"):
            create_process(make_user("guest"), program.id)

    def test_duplicate_process_conflicts(self, make_user, pipeline_program):
        program, _ = pipeline_program
        user = make_user()
        create_process(user, program.id)
        with pytest.raises(ConflictError, match="already exists"):
            create_process(user, program.id)

    def test_program_without_stages_is_configuration_error(self, make_user, make_program):
        program = make_program()
        with pytest.raises(ConfigurationError, match="no stages"):
            create_process(make_user(), program.id)

    def test_unknown_department_refused(self, make_user, pipeline_program):
        program, _ = pipeline_program
        with pytest.raises(NotFoundError, match="Department"):
            create_process(make_user(), program.id, department_id=999)

    def test_rate_limited(self, app, monkeypatch, make_user, make_program, make_stage):
        monkeypatch.setitem(app.config["RATE_LIMITS"], "process.create", (1, 3600))
        first, second = make_program(), make_program()
        make_stage(first)
        make_stage(second)
        user = make_user()

        create_process(user, first.id)
        with pytest.raises(RateLimitedError) as exc:
            create_process(user, second.id)
        assert exc.value.retry_after_seconds > 0
        assert "Try again in" in str(exc.value)


class TestDelegatedCreate:
    def test_manager_creates_for_direct_report(self, make_user, pipeline_program):
        program, _ = pipeline_program
        manager, report = make_user("manager"), make_user()
        _assign(manager, report)

        proc = create_process(manager, program.id, target_user_id=report.id)
        assert proc["user_id"] == report.id
        assert proc["created_for"] == manager.id

    def test_manager_cannot_create_for_stranger(self, make_user, pipeline_program):
        program, _ = pipeline_program
        manager, stranger = make_user("manager"), make_user()
        with pytest.raises(UnauthorizedError, match="direct reports"):
            create_process(manager, program.id, target_user_id=stranger.id)

    def test_member_cannot_delegate(self, make_user, pipeline_program):
        program, _ = pipeline_program
        member, other = make_user(), make_user()
        with pytest.raises(UnauthorizedError, match="Requires role 'manager'"):
            create_process(member, program.id, target_user_id=other.id)


# ═══════════════════════════════════════════════════════════════════════════
#  Stage submission
# ═══════════════════════════════════════════════════════════════════════════

class TestSubmitStage:
    def test_advances_and_stores_payload(self, make_user, pipeline_program):
        program, stages = pipeline_program
        user = make_user()
        proc = create_process(user, program.id)

        proc = submit_stage(user, proc["id"], str(stages[0].id), APPLY_DATA)

        assert proc["current_stage_id"] == str(stages[1].id)
        assert proc["data"] == {str(stages[0].id): APPLY_DATA}
        assert proc["status"] == "in_progress"
        assert proc["version"] == 2
        assert _audit_actions(proc["id"])[-1] == "process.advance"

    def test_submissions_accumulate_per_stage(self, make_user, pipeline_program):
        program, stages = pipeline_program
        user = make_user()
        proc = create_process(user, program.id)

        submit_stage(user, proc["id"], str(stages[0].id), APPLY_DATA)
        proc = submit_stage(user, proc["id"], str(stages[1].id), {"slot": "monday"})

        assert proc["data"] == {
            str(stages[0].id): APPLY_DATA,
            str(stages[1].id): {"slot": "monday"},
        }

    def test_final_stage_completes(self, make_user, pipeline_program):
        program, stages = pipeline_program
        user = make_user()
        proc = create_process(user, program.id)

        submit_stage(user, proc["id"], str(stages[0].id), APPLY_DATA)
        submit_stage(user, proc["id"], str(stages[1].id), {})
        proc = submit_stage(user, proc["id"], str(stages[2].id), {"signed": True})

        assert proc["status"] == "completed"
        assert proc["current_stage_id"] == str(stages[2].id)

    def test_completed_process_refuses_submissions(self, make_user, make_program, make_stage):
        program = make_program()
        only = make_stage(program)
        user = make_user()
        proc = create_process(user, program.id)
        submit_stage(user, proc["id"], str(only.id), {})

        with pytest.raises(ValidationError, match="no longer accepts"):
            submit_stage(user, proc["id"], str(only.id), {})

    def test_stage_mismatch(self, make_user, pipeline_program):
        program, stages = pipeline_program
        user = make_user()
        proc = create_process(user, program.id)

        with pytest.raises(ValidationError, match="Stage mismatch") as exc:
            submit_stage(user, proc["id"], str(stages[2].id), {})
        assert f"process is at {stages[0].id}" in str(exc.value)

    def test_original_stage_id_accepted(self, make_user, make_program, make_stage):
        program = make_program()
        first = make_stage(program, original_stage_id="welcome")
        second = make_stage(program)
        user = make_user()
        proc = create_process(user, program.id)

        proc = submit_stage(user, proc["id"], "welcome", {"ok": True})
        assert proc["current_stage_id"] == str(second.id)
        assert proc["data"] == {"welcome": {"ok": True}}
        assert first.id != second.id

    def test_invalid_payload_leaves_process_unchanged(self, make_user, pipeline_program):
        program, stages = pipeline_program
        user = make_user()
        proc = create_process(user, program.id)

        with pytest.raises(SubmissionValidationError, match="Validation Failed: name: Required"):
            submit_stage(user, proc["id"], str(stages[0].id), {"email": "jane@example.com"})
        db.session.rollback()

        stored = db.session.get(Process, proc["id"])
        assert stored.current_stage_id == str(stages[0].id)
        assert stored.data == {}
        assert stored.version == 1

    def test_routing_rule_skips_stage(self, make_user, make_program, make_stage):
        program = make_program()
        first = make_stage(program, "Screen")
        make_stage(program, "Interview")
        offer = make_stage(program, "Offer")
        first.config = {"routingRules": [
            {"condition": {"field": "fastTrack", "op": "eq", "value": True},
             "targetStageId": str(offer.id)},
        ]}
        db.session.commit()
        user = make_user()
        proc = create_process(user, program.id)

        proc = submit_stage(user, proc["id"], str(first.id), {"fastTrack": True})
        assert proc["current_stage_id"] == str(offer.id)

    def test_snapshot_insulates_from_reorder(self, make_user, pipeline_program):
        program, stages = pipeline_program
        user = make_user()
        proc = create_process(user, program.id)

        program.stage_ids = [str(stages[0].id), str(stages[2].id), str(stages[1].id)]
        db.session.commit()

        proc = submit_stage(user, proc["id"], str(stages[0].id), APPLY_DATA)
        assert proc["current_stage_id"] == str(stages[1].id)

        late_user = make_user()
        late = create_process(late_user, program.id)
        assert late["stage_flow_snapshot"] == program.stage_ids
        late = submit_stage(late_user, late["id"], str(stages[0].id), APPLY_DATA)
        assert late["current_stage_id"] == str(stages[2].id)

    def test_resubmission_overwrites_only_that_stage(self, make_user, make_program, make_stage):
        program = make_program()
        first = make_stage(program, "Draft")
        review = make_stage(program, "Review")
        make_stage(program, "Done")
        review.config = {"routingRules": [
            {"condition": {"field": "verdict", "value": "revise"}, "targetStageId": str(first.id)},
        ]}
        db.session.commit()
        user = make_user()
        proc = create_process(user, program.id)

        submit_stage(user, proc["id"], str(first.id), {"text": "v1"})
        proc = submit_stage(user, proc["id"], str(review.id), {"verdict": "revise"})
        assert proc["current_stage_id"] == str(first.id)

        proc = submit_stage(user, proc["id"], str(first.id), {"text": "v2"})
        assert proc["data"] == {
            str(first.id): {"text": "v2"},
            str(review.id): {"verdict": "revise"},
        }

    def test_deleted_current_stage_is_configuration_error(self, make_user, pipeline_program):
        program, stages = pipeline_program
        user = make_user()
        proc = create_process(user, program.id)
        stages[0].soft_delete()
        db.session.commit()

        with pytest.raises(ConfigurationError, match="Invalid stage configuration"):
            submit_stage(user, proc["id"], str(stages[0].id), APPLY_DATA)

    def test_stale_expected_version_conflicts(self, make_user, pipeline_program):
        program, stages = pipeline_program
        user = make_user()
        proc = create_process(user, program.id)

        with pytest.raises(ConflictError) as exc:
            submit_stage(user, proc["id"], str(stages[0].id), APPLY_DATA, expected_version=7)
        assert exc.value.field == "version"

        proc = submit_stage(user, proc["id"], str(stages[0].id), APPLY_DATA, expected_version=1)
        assert proc["version"] == 2

    def test_only_owner_or_admin_may_submit(self, make_user, pipeline_program):
        program, stages = pipeline_program
        owner = make_user()
        proc = create_process(owner, program.id)

        with pytest.raises(UnauthorizedError, match="owner"):
            submit_stage(make_user("lead"), proc["id"], str(stages[0].id), APPLY_DATA)

        proc = submit_stage(make_user("admin"), proc["id"], str(stages[0].id), APPLY_DATA)
        assert proc["current_stage_id"] == str(stages[1].id)

    def test_decision_and_completion_triggers(self, make_user, make_program, make_stage):
        program = make_program(automations=[{"trigger": "stage_submission", "actions": []}])
        only = make_stage(program)
        user = make_user()
        proc = create_process(user, program.id)
        SchedulerService.clear()

        submit_stage(user, proc["id"], str(only.id), {"answer": "accept"})

        pending = [p["args"] for p in SchedulerService.pending()]
        assert [p["trigger"] for p in pending] == ["stage_submission", "process_completed"]
        assert pending[0]["data"]["decision"] == "accept"
        assert pending[0]["data"]["stageName"] == only.name
        assert pending[1]["data"]["finalData"] == {str(only.id): {"answer": "accept"}}


# ═══════════════════════════════════════════════════════════════════════════
#  Status & offer
# ═══════════════════════════════════════════════════════════════════════════

class TestUpdateStatus:
    def test_admin_change_is_audited_once(self, make_user, pipeline_program):
        program, _ = pipeline_program
        proc = create_process(make_user(), program.id)

        proc = update_status(make_user("admin"), proc["id"], "accepted")

        assert proc["status"] == "accepted"
        assert _audit_actions(proc["id"]).count("process.status_change") == 1

    def test_legacy_double_audit(self, app, monkeypatch, make_user, pipeline_program):
        monkeypatch.setitem(app.config, "AUDIT_STATUS_CHANGE_TWICE", True)
        program, _ = pipeline_program
        proc = create_process(make_user(), program.id)
        update_status(make_user("admin"), proc["id"], "rejected")
        assert _audit_actions(proc["id"]).count("process.status_change") == 2

    def test_status_change_trigger_carries_previous(self, make_user, make_program, make_stage):
        program = make_program(automations=[{"trigger": "status_change", "actions": []}])
        make_stage(program)
        proc = create_process(make_user(), program.id)
        SchedulerService.clear()

        update_status(make_user("admin"), proc["id"], "approved")

        args = SchedulerService.pending()[0]["args"]
        assert args["trigger"] == "status_change"
        assert args["data"] == {"status": "approved", "prevStatus": "in_progress"}

    def test_non_admin_refused(self, make_user, pipeline_program):
        program, _ = pipeline_program
        proc = create_process(make_user(), program.id)
        with pytest.raises(UnauthorizedError, match="Admin access required"):
            update_status(make_user("lead"), proc["id"], "accepted")

    def test_unknown_status_refused(self, make_user, pipeline_program):
        program, _ = pipeline_program
        proc = create_process(make_user(), program.id)
        with pytest.raises(ValidationError, match="Unknown process status"):
            update_status(make_user("admin"), proc["id"], "teleported")


class TestAcceptOffer:
    def test_requires_pending_offer(self, make_user, pipeline_program):
        program, _ = pipeline_program
        user = make_user()
        proc = create_process(user, program.id)
        with pytest.raises(ValidationError, match="No pending offer to accept."):
            accept_offer(user, proc["id"])

    def test_only_owner_accepts(self, make_user, pipeline_program):
        program, _ = pipeline_program
        admin = make_user("admin")
        proc = create_process(make_user(), program.id)
        update_status(admin, proc["id"], "accepted")
        with pytest.raises(UnauthorizedError):
            accept_offer(admin, proc["id"])

    def test_offer_flow_runs_automations(self, make_user, make_program, make_stage, run_tasks):
        program = make_program(automations=[{
            "trigger": "offer_accepted",
            "conditions": {"newStatus": "offer_accepted"},
            "actions": [
                {"type": "update_role", "payload": {"systemRole": "member"}},
                {"type": "update_status", "payload": {"status": "active"}},
                {"type": "assign_department", "payload": {"departmentId": 3, "title": "Engineer"}},
            ],
        }])
        make_stage(program, "Offer", stage_type="agreement")
        candidate = make_user("guest", status="candidate")
        proc = create_process(candidate, program.id)
        update_status(make_user("admin"), proc["id"], "accepted")
        run_tasks()

        result = accept_offer(candidate, proc["id"])
        assert result["success"] is True
        assert result["process"]["status"] == "offer_accepted"
        assert "offer.accept" in _audit_actions(proc["id"])

        run_tasks()
        db.session.refresh(candidate)
        assert candidate.system_role == "member"
        assert candidate.hr_status == "active"
        assert candidate.profile["positions"][0]["title"] == "Engineer"


# ═══════════════════════════════════════════════════════════════════════════
#  Reads
# ═══════════════════════════════════════════════════════════════════════════

class TestReads:
    def test_detail_includes_access_masks(self, make_user, pipeline_program):
        program, _ = pipeline_program
        user = make_user()
        proc = create_process(user, program.id)

        detail = get_process(user, proc["id"])
        assert detail["access"]["can_view"] is True
        assert detail["access"]["can_edit"] is True
        assert detail["stage_access"] == {"can_view": True, "can_submit": True, "can_approve": False}

    def test_detail_hidden_from_other_roles(self, make_user, make_program, make_stage):
        program = make_program(access_control=[{"roleSlug": "member", "actions": ["start"]}])
        make_stage(program)
        proc = create_process(make_user(), program.id)
        with pytest.raises(UnauthorizedError, match="Cannot view"):
            get_process(make_user(), proc["id"])

    def test_my_processes(self, make_user, pipeline_program, make_program, make_stage):
        program, _ = pipeline_program
        other = make_program()
        make_stage(other)
        user = make_user()
        create_process(user, program.id)
        create_process(user, other.id)
        create_process(make_user(), program.id)

        assert {p["program_id"] for p in get_my_processes(user)} == {program.id, other.id}

    def test_team_processes(self, make_user, pipeline_program):
        program, _ = pipeline_program
        manager, report, stranger = make_user("manager"), make_user(), make_user()
        _assign(manager, report)
        create_process(report, program.id)
        create_process(stranger, program.id)

        team = get_team_processes(manager)
        assert [p["user_id"] for p in team] == [report.id]
        assert get_team_processes(make_user("manager")) == []

    def test_listing_gated_by_required_role_level(self, make_user, make_program, make_stage):
        open_program = make_program()
        make_stage(open_program)
        restricted = make_program(view_config={
            "guest": {"visible": False},
            "member": {"visible": False},
            "manager": {"visible": False},
        })
        make_stage(restricted)
        user = make_user()
        create_process(user, open_program.id)
        proc = create_process(user, restricted.id)
        assert proc["required_role_level"] == 30

        items, total = list_processes_paginated(make_user("manager"))
        assert total == 1
        assert items[0]["program_id"] == open_program.id

        items, total = list_processes_paginated(make_user("lead"))
        assert total == 2

        items, total = list_processes_paginated(make_user("admin"), program_id=restricted.id, limit=1)
        assert total == 1 and len(items) == 1

    def test_listing_requires_manager(self, make_user):
        with pytest.raises(UnauthorizedError, match="to list processes"):
            list_processes_paginated(make_user())

    def test_delete_hides_process(self, make_user, pipeline_program):
        program, _ = pipeline_program
        user = make_user()
        proc = create_process(user, program.id)

        delete_process(make_user("admin"), proc["id"])

        with pytest.raises(NotFoundError):
            get_process(user, proc["id"])
        assert get_my_processes(user) == []
        # A deleted process no longer blocks starting the program again.
        assert create_process(user, program.id)["id"] != proc["id"]
