"""
Shared pytest fixtures for the change governance test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - users: a small organisation of active users, one per governance role
"""

import pytest

from change_governance import create_app
from change_governance.models import db as _db
from change_governance.models.auth import User


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


# ── Convenience fixtures ─────────────────────────────────────────────────


def _make_user(email: str, role: str, department: str | None = None, is_active: bool = True) -> User:
    u = User(email=email, full_name=email.split("@")[0].title(), role=role,
             department=department, is_active=is_active)
    _db.session.add(u)
    _db.session.commit()
    return u


@pytest.fixture()
def users():
    """One active user per role used by the governance tests, keyed by role."""
    return {
        "ADMIN": _make_user("admin@plant.test", "ADMIN", "Quality"),
        "QUALITY_MANAGER": _make_user("qm@plant.test", "QUALITY_MANAGER", "Quality"),
        "PROCESS_ENGINEER": _make_user("pe@plant.test", "PROCESS_ENGINEER", "Engineering"),
        "PRODUCTION_MANAGER": _make_user("pm@plant.test", "PRODUCTION_MANAGER", "Production"),
        "OPERATOR": _make_user("op@plant.test", "OPERATOR", "Production"),
    }
