"""
Shared fixtures. The app runs against a private in-memory SQLite database
that is rebuilt before every test.
"""
import os

os.environ["DATABASE_URL"]  = "sqlite://"
os.environ["DASHBOARD_KEY"] = "test-admin"
os.environ["SCANNER_KEY"]   = "test-scanner"
os.environ["VIEWER_KEY"]    = "test-viewer"

import pytest
from fastapi.testclient import TestClient

import checkin
import main
import models
from database import SessionLocal, engine


@pytest.fixture(autouse=True)
def fresh_schema():
    models.Base.metadata.drop_all(bind=engine)
    models.Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client():
    with TestClient(main.app) as c:
        yield c


@pytest.fixture
def admin_headers():
    return {"X-Admin-Key": "test-admin"}


@pytest.fixture
def scanner_headers():
    return {"X-Admin-Key": "test-scanner"}


@pytest.fixture
def viewer_headers():
    return {"X-Admin-Key": "test-viewer"}


@pytest.fixture
def group(db):
    g = models.Group(name="Layla's Wedding", default_scan_limit=1)
    db.add(g)
    db.commit()
    db.refresh(g)
    return g


@pytest.fixture
def add_guest(db, group):
    """Factory adding a guest to the default group through the ticket issuer."""
    def _add(name="Guest", phone="+966500000000", scan_limit=None, group_id=None):
        return checkin.add_member(
            db,
            group_id=group_id or group.id,
            name=name,
            phone=phone,
            scan_limit=scan_limit,
        )
    return _add
