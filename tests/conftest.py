"""
Shared pytest fixtures for the delivery console test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - make_user / make_project / make_task / make_definition: ORM factories
    - as_user: request headers identifying the acting user
    - cast: a small, fully wired project (PM owner, delivery manager,
      vendor engineer, one task)
"""

import itertools

import pytest

from delivery import create_app
from delivery.models import db as _db
from delivery.models.auth import Company, User
from delivery.models.project import Project
from delivery.models.task import Task
from delivery.services import workflow_definition_service

_seq = itertools.count(1)


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
        yield
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
    def _make(role="VIEWER", company=None, is_active=True, name=None):
        n = next(_seq)
        user = User(
            email=f"user{n}@example.test",
            full_name=name or f"{role.title()} {n}",
            role=role,
            company_id=company.id if company else None,
            is_active=is_active,
        )
        _db.session.add(user)
        _db.session.commit()
        return user
    return _make


@pytest.fixture()
def make_company():
    def _make(name="Vendor Co", kind="VENDOR"):
        company = Company(name=name, kind=kind)
        _db.session.add(company)
        _db.session.commit()
        return company
    return _make


@pytest.fixture()
def make_project():
    def _make(owner=None, delivery_manager=None, vendors=(), **fields):
        n = next(_seq)
        project = Project(
            code=fields.pop("code", f"PRJ-{n}"),
            name=fields.pop("name", f"Project {n}"),
            owner_id=owner.id if owner else None,
            owner_ids=[owner.id] if owner else [],
            delivery_manager_user_id=delivery_manager.id if delivery_manager else None,
            delivery_manager_user_ids=[delivery_manager.id] if delivery_manager else [],
            vendor_company_ids=[c.id for c in vendors],
            **fields,
        )
        _db.session.add(project)
        _db.session.commit()
        return project
    return _make


@pytest.fixture()
def make_task():
    def _make(project, creator=None, assignee=None, plan=None, title="Build the interface"):
        task = Task(
            project_id=project.id,
            title=title,
            created_by_id=creator.id if creator else None,
            assignee_user_id=assignee.id if assignee else None,
            assignment_plan=plan or [],
        )
        _db.session.add(task)
        _db.session.commit()
        return task
    return _make


@pytest.fixture()
def make_definition():
    def _make(steps, name="Task approval", is_active=True):
        return workflow_definition_service.create_definition(
            {"entity_type": "TASK", "name": name, "is_active": is_active, "steps": steps},
        )
    return _make


@pytest.fixture()
def as_user():
    """Headers naming the actor (auth is disabled under TestingConfig)."""
    def _headers(user):
        return {"X-User-Id": str(user.id)}
    return _headers


# ── Scenario ─────────────────────────────────────────────────────────────


class Cast:
    """Named users and the project/task they share."""

    def __init__(self, **members):
        self.__dict__.update(members)


@pytest.fixture()
def cast(make_user, make_company, make_project, make_task):
    vendor = make_company("Acme Delivery")
    pm = make_user("PM", name="Priya PM")
    other_pm = make_user("PM", name="Other PM")
    pjm = make_user("PROJECT_MANAGER", company=vendor, name="Dana Delivery")
    engineer = make_user("ENGINEER", company=vendor, name="Eli Engineer")
    developer = make_user("DEVELOPER", company=vendor, name="Dev Developer")
    outsider = make_user("ENGINEER", name="Olly Outsider")
    viewer = make_user("VIEWER")
    admin = make_user("SUPER_ADMIN", name="Ada Admin")
    project = make_project(owner=pm, delivery_manager=pjm, vendors=[vendor])
    task = make_task(project, creator=pm, assignee=developer)
    return Cast(
        vendor=vendor,
        pm=pm,
        other_pm=other_pm,
        pjm=pjm,
        engineer=engineer,
        developer=developer,
        outsider=outsider,
        viewer=viewer,
        admin=admin,
        project=project,
        task=task,
    )
