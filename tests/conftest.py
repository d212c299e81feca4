"""
Shared pytest fixtures for the Legal Workflow Engine test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - make_user / admin / lawyer / paralegal / portal_user: users by role
    - matter / contact: a matter team (owner, client, paralegal task) and a contact
    - auth_headers: X-User-Id headers for the test client
    - publish_template: create + publish a template from a draft
"""

import itertools

import pytest

from app import create_app
from app.models import db as _db
from app.models.auth import User
from app.models.crm import Contact, Matter, MatterTask
from app.services import workflow_template_service
from app.services.scheduler_service import SchedulerService
from app.services.workflow_metrics import reset_metrics


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
        reset_metrics()
        yield
        SchedulerService.stop()
        SchedulerService.set_clock(None)
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Users ────────────────────────────────────────────────────────────────


@pytest.fixture()
def make_user():
    """Factory: ``make_user("LAWYER", email=None, is_active=True)``."""
    counter = itertools.count(1)

    def _make(role="LAWYER", email=None, name=None, is_active=True):
        n = next(counter)
        user = User(
            email=email or f"{role.lower()}{n}@firm.test",
            name=name or f"{role.title()} {n}",
            role=role,
            is_active=is_active,
        )
        _db.session.add(user)
        _db.session.commit()
        return user

    return _make


@pytest.fixture()
def admin(make_user):
    return make_user("ADMIN", email="admin@firm.test", name="Ada Admin")


@pytest.fixture()
def lawyer(make_user):
    return make_user("LAWYER", email="lawyer@firm.test", name="Lou Lawyer")


@pytest.fixture()
def paralegal(make_user):
    return make_user("PARALEGAL", email="paralegal@firm.test", name="Pat Paralegal")


@pytest.fixture()
def portal_user(make_user):
    return make_user("CLIENT", email="client@example.com", name="Cleo Client")


@pytest.fixture()
def auth_headers():
    """``auth_headers(user)`` → headers identifying *user* to the API."""
    def _headers(user):
        return {"X-User-Id": str(user.id)}
    return _headers


# ── CRM records ──────────────────────────────────────────────────────────


@pytest.fixture()
def matter(admin, lawyer, paralegal, portal_user):
    """
    Matter owned by ``lawyer`` whose client contact logs in as ``portal_user``
    and with one open task assigned to ``paralegal``.
    """
    client_contact = Contact(
        first_name="Cleo", last_name="Client", email=portal_user.email,
        owner_id=lawyer.id, user_id=portal_user.id,
    )
    _db.session.add(client_contact)
    _db.session.flush()
    m = Matter(title="Doe v. Acme", owner_id=lawyer.id, client_id=client_contact.id)
    _db.session.add(m)
    _db.session.flush()
    _db.session.add(MatterTask(matter_id=m.id, title="Collect exhibits", assignee_id=paralegal.id))
    _db.session.commit()
    return m


@pytest.fixture()
def contact(lawyer, portal_user):
    """Stand-alone contact owned by ``lawyer``, portal login ``portal_user``."""
    c = Contact(
        first_name="Nora", last_name="Prospect", email="nora@example.com",
        owner_id=lawyer.id, user_id=portal_user.id,
    )
    _db.session.add(c)
    _db.session.commit()
    return c


# ── Templates ────────────────────────────────────────────────────────────


@pytest.fixture()
def publish_template(admin):
    """
    Factory: ``publish_template(steps, dependencies=None, name="Intake")``.

    Steps / dependencies use the authoring draft format (steps keyed by
    ``key``).  Returns the published WorkflowTemplate.
    """
    def _publish(steps, dependencies=None, name="Intake", **draft):
        template = workflow_template_service.create_template(
            {"name": name, "steps": steps, "dependencies": dependencies or [], **draft},
            admin,
        )
        return workflow_template_service.publish(template.id, admin)

    return _publish


def step(key, order, action_type="TASK", role_scope="LAWYER", **kw):
    """Draft step dict with sensible defaults."""
    return {
        "key": key,
        "order": order,
        "title": kw.pop("title", key.replace("_", " ").title()),
        "action_type": action_type,
        "role_scope": role_scope,
        **kw,
    }


@pytest.fixture()
def draft_step():
    """``draft_step(key, order, action_type="TASK", role_scope="LAWYER", **kw)``."""
    return step
