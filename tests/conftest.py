"""
Shared pytest fixtures for the Lead Pipeline Tracker test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - manager: StageTransitionManager with a fixed clock
    - make_lead / make_pipeline: row factories; lead / pipeline: pre-created rows
"""

from datetime import datetime, timezone

import pytest

from leadflow import create_app
from leadflow.models import db as _db
from leadflow.models.lead import Lead
from leadflow.services import pipeline_config
from leadflow.services.pipeline_config import invalidate_criteria_cache
from leadflow.services.stage_transition import StageTransitionManager

# Fixed "now" shared by manager-level tests
T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    return create_app("testing")


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
        # Ids are reused after recreate; compiled criteria are keyed by stage id.
        invalidate_criteria_cache()
        yield
        invalidate_criteria_cache()
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def t0():
    return T0


@pytest.fixture()
def manager():
    """Transition manager pinned to T0 unless a test passes ``now``."""
    return StageTransitionManager(lock_timeout=1.0, clock=lambda: T0)


@pytest.fixture()
def make_lead():
    """Factory: ``make_lead(name=..., **columns)`` -> committed Lead."""

    def _make(name="Ada Lovelace", **fields):
        lead = Lead(name=name, **fields)
        _db.session.add(lead)
        _db.session.commit()
        return lead

    return _make


@pytest.fixture()
def make_pipeline():
    """Factory: three-stage pipeline (Qualify 3d, Demo 5d, Won) unless ``stages`` given."""

    def _make(stages=None, **flags):
        data = {
            "name": flags.pop("name", "Sales"),
            "stages": stages if stages is not None else [
                {"name": "Qualify", "sla_deadline_days": 3},
                {"name": "Demo", "sla_deadline_days": 5},
                {"name": "Won", "sla_deadline_days": 0, "is_terminal": True},
            ],
            **flags,
        }
        return pipeline_config.create_pipeline(data)

    return _make


@pytest.fixture()
def lead(make_lead):
    return make_lead(email="ada@example.com", lead_score=72, company="Analytical Engines")


@pytest.fixture()
def pipeline(make_pipeline):
    return make_pipeline()
