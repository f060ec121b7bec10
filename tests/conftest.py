"""
Shared pytest fixtures for the Core Bug Tracker test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - bug / trial_manager / irt: pre-created collaborator records
    - make_task: factory building a task from compact step specs
    - step_specs: the default three-step graph as request payload specs
"""

import pytest

from bugtracker import create_app
from bugtracker.models import db as _db
from bugtracker.models.bug import CoreBug
from bugtracker.models.product import InteractiveResponseTechnology, TrialManager


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


# ── Collaborator records ─────────────────────────────────────────────────


@pytest.fixture()
def bug():
    b = CoreBug(
        jira_key="CORE-101",
        title="Randomisation list skips a block",
        severity="major",
        affected_versions_json='["2024.1.2", "2024.1.3"]',
    )
    _db.session.add(b)
    _db.session.commit()
    return b


@pytest.fixture()
def trial_manager():
    tm = TrialManager(client_name="Acme Pharma", protocol="ACM-001", version="2024.1.2")
    _db.session.add(tm)
    _db.session.commit()
    return tm


@pytest.fixture()
def irt():
    system = InteractiveResponseTechnology(study_name="Study Nine", protocol="NIN-009", version="2024.1.3")
    _db.session.add(system)
    _db.session.commit()
    return system


# ── Step specs & task factory ────────────────────────────────────────────


def three_step_specs():
    """S1 (plain) → S2 (decision: Yes→S3, No→T); S3 and T are terminal."""
    return [
        {"step_id": "s1", "name": "Clone core bug", "role": "action", "order": 1, "next": "s2"},
        {"step_id": "s2", "name": "Does the bug reproduce?", "role": "decision", "order": 2,
         "next_if_yes": "s3", "next_if_no": "t"},
        {"step_id": "s3", "name": "Keep open for fix", "role": "terminal", "order": 3},
        {"step_id": "t", "name": "Close as not reproducible", "role": "terminal", "order": 4},
    ]


@pytest.fixture()
def make_task(bug, trial_manager):
    """Factory: create a TM task from step specs (defaults to the three-step graph)."""
    from bugtracker.services import task_service

    def _make(specs=None, title="CORE-101 - ACM-001", context=None, initial_step_id=None):
        return task_service.create_task(
            bug.id,
            trial_manager.product_ref,
            title,
            steps=specs or three_step_specs(),
            initial_step_id=initial_step_id,
            context=context,
        )

    return _make


@pytest.fixture()
def step_specs():
    """Three-step graph specs, for request payloads."""
    return three_step_specs()
