"""
Shared pytest fixtures for the HR Process Engine test suite.

Provides:
    - app: Flask application (session-scoped, SCHEDULER_MODE=manual)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - make_user / make_program / make_stage: committed-entity factories
    - pipeline_program: active three-stage program anyone may start
    - auth_headers: Bearer header for a given user
    - run_tasks: drain the deferred task queue
"""

import pytest

from hrflow import create_app
from hrflow.models import db as _db
from hrflow.models.program import Program, Stage
from hrflow.models.user import User
from hrflow.services.scheduler_service import SchedulerService


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        SchedulerService.clear()
        yield
        SchedulerService.clear()
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Factories ────────────────────────────────────────────────────────────


@pytest.fixture()
def make_user():
    """Create and commit a User. Positions are given as department ids."""
    counter = {"n": 0}

    def _make(role="member", *, email=None, name=None, departments=(), status="active"):
        counter["n"] += 1
        user = User(
            email=email or f"user{counter['n']}@example.com",
            name=name or f"User {counter['n']}",
            system_role=role,
            profile={
                "status": status,
                "positions": [
                    {"departmentId": d, "title": "Staff", "isPrimary": i == 0}
                    for i, d in enumerate(departments)
                ],
            },
        )
        _db.session.add(user)
        _db.session.commit()
        return user

    return _make


@pytest.fixture()
def make_program():
    """Create and commit a Program. Defaults to active and startable by every role."""
    counter = {"n": 0}

    def _make(*, slug=None, is_active=True, access_control=None, view_config=None,
              automations=None, program_type="generic"):
        counter["n"] += 1
        if access_control is None:
            access_control = [
                {"roleSlug": role, "actions": ["start", "view"]}
                for role in ("guest", "member", "manager", "lead")
            ]
        program = Program(
            name=f"Program {counter['n']}",
            slug=slug or f"program-{counter['n']}",
            program_type=program_type,
            is_active=is_active,
            stage_ids=[],
            automations=automations or [],
            access_control=access_control,
            view_config=view_config,
        )
        _db.session.add(program)
        _db.session.commit()
        return program

    return _make


@pytest.fixture()
def make_stage():
    """Create a Stage, append it to the program's order, and commit."""

    def _make(program, name="Stage", *, stage_type="form", config=None, role_access=None,
              original_stage_id=None):
        stage = Stage(
            program_id=program.id,
            name=name,
            stage_type=stage_type,
            config=config or {},
            block_ids=[],
            role_access=role_access or [],
            original_stage_id=original_stage_id,
        )
        _db.session.add(stage)
        _db.session.flush()
        program.stage_ids = [*(program.stage_ids or []), str(stage.id)]
        _db.session.commit()
        return stage

    return _make


@pytest.fixture()
def pipeline_program(make_program, make_stage):
    """Active program with Apply → Interview → Offer stages."""
    program = make_program(slug="recruiting")
    apply_stage = make_stage(program, "Apply", config={
        "formConfig": [
            {"id": "email", "label": "Email", "type": "email", "required": True},
            {"id": "name", "label": "Name", "type": "text", "required": True},
        ],
    })
    interview = make_stage(program, "Interview", stage_type="interview")
    offer = make_stage(program, "Offer", stage_type="agreement")
    return program, [apply_stage, interview, offer]


# ── Auth & scheduler helpers ─────────────────────────────────────────────


@pytest.fixture()
def auth_headers(app):
    """Return a function building Bearer headers for a user."""
    from hrflow.services.jwt_service import generate_access_token

    def _headers(user):
        token = generate_access_token(user.id, [user.system_role])
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture()
def run_tasks():
    """Drain the manual-mode scheduler queue and return the run results."""

    def _run():
        return SchedulerService.run_pending()

    return _run
