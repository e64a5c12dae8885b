"""
Pytest configuration and fixtures

Tests run against an in-memory sqlite database built from the models; every
test gets freshly created tables, so nothing leaks between tests. Slot
fixtures use UTC windows so wall-clock arithmetic is easy to read.
"""
import os
import sys
from datetime import datetime, timezone
from uuid import uuid4

# Must be set before core.config is imported anywhere.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SLOT_TIMEZONE"] = "UTC"
os.environ.setdefault("SECRET_KEY", "test-secret-key-prayer-coverage-0123456789abcdef")

# Add the parent directory to the path so we can import from services
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest  # noqa: E402

from core.database import Base, SessionLocal, engine  # noqa: E402
from core.security import create_access_token  # noqa: E402
from models import Intercessor, PrayerSlot  # noqa: E402
from services.slot_service import assign_slot  # noqa: E402
from services.slot_time import SlotWindow  # noqa: E402

ASSIGNED_AT = datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc)


@pytest.fixture(scope="function")
def db_session():
    """
    Session over freshly created tables, dropped again after the test.
    """
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


def _make_intercessor(db, role="intercessor", **kwargs) -> Intercessor:
    user = Intercessor(
        email=f"test_{uuid4()}@example.com",
        display_name="Test Intercessor",
        role=role,
        timezone="UTC",
        **kwargs,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def intercessor(db_session):
    return _make_intercessor(db_session)


@pytest.fixture
def other_intercessor(db_session):
    return _make_intercessor(db_session)


@pytest.fixture
def admin(db_session):
    return _make_intercessor(db_session, role="admin")


@pytest.fixture
def make_slot(db_session):
    """Factory: make_slot("22:00–22:30", tz_name="UTC")."""
    def _make(label: str, tz_name: str = "UTC") -> PrayerSlot:
        window = SlotWindow.parse(label)
        slot = PrayerSlot(
            slot_time=window.label,
            window_start=window.start,
            window_end=window.end,
            timezone=tz_name,
            status="unassigned",
            missed_count=0,
            version=1,
        )
        db_session.add(slot)
        db_session.commit()
        db_session.refresh(slot)
        return slot
    return _make


@pytest.fixture
def slot(make_slot):
    """The 22:00–22:30 UTC window, unassigned."""
    return make_slot("22:00–22:30")


@pytest.fixture
def active_slot(db_session, slot, intercessor):
    """The 22:00–22:30 window assigned to `intercessor` at ASSIGNED_AT."""
    assign_slot(db_session, slot.id, intercessor.id, now=ASSIGNED_AT)
    db_session.commit()
    return slot


@pytest.fixture
def auth_headers(intercessor):
    token = create_access_token(data={"sub": str(intercessor.id)})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def other_headers(other_intercessor):
    token = create_access_token(data={"sub": str(other_intercessor.id)})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_headers(admin):
    token = create_access_token(data={"sub": str(admin.id)})
    return {"Authorization": f"Bearer {token}"}
