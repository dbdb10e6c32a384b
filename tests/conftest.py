"""
Shared fixtures: a throwaway SQLite database per test and relay settings
pointing at a fake upstream host.
"""

import pytest
from sqlalchemy import func, select

import models
from database import Database
from settings import Settings


UPSTREAM_URL = "http://upstream.test/api/mcp/execute"


@pytest.fixture
def settings(tmp_path):
    """Settings isolated from the developer's environment"""
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'relay.db'}",
        upstream_url=UPSTREAM_URL,
        upstream_api_key="test-key",
        upstream_timeout=5.0,
        default_session_id="default",
        history_limit=50,
    )


@pytest.fixture
def database(settings):
    """Initialized database, disposed after the test"""
    db = Database(settings.database_url)
    db.init_db()
    yield db
    db.dispose()


@pytest.fixture
def count_rows(database):
    """Count rows of a model, optionally filtered by column equality"""

    def _count(model, **filters):
        stmt = select(func.count()).select_from(model).filter_by(**filters)
        with database.session_scope() as db:
            return db.scalar(stmt)

    return _count


@pytest.fixture
def session_rows(database):
    """Return all UserSession rows for a token"""

    def _rows(token):
        with database.session_scope() as db:
            return db.scalars(select(models.UserSession).filter_by(token=token)).all()

    return _rows
