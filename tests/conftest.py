import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ["SEATFLOW_TIMEZONE"] = "America/New_York"

from datetime import datetime
from types import SimpleNamespace
from unittest.mock import patch

import pytest
from sqlalchemy.orm import sessionmaker

from seatflow.database import ClassSession, Company, Course, init_db, make_engine


COURSE_ID = "f89-flsd"
SESSION_ID = "feb-2026"
COMPANY_ID = "acme"
DEFAULT_CAPACITY = 25


@pytest.fixture
def engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'seatflow.db'}")
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def SessionLocal(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(SessionLocal):
    db = SessionLocal()
    yield db
    db.close()


@pytest.fixture(autouse=True)
def outbound():
    with patch("seatflow.reconciler.send_welcome_email") as email, \
            patch("seatflow.alerts.r") as redis_client:
        yield SimpleNamespace(email=email, redis=redis_client)


@pytest.fixture
def make_session(db):
    def _make(
        session_id=SESSION_ID,
        capacity=DEFAULT_CAPACITY,
        enrolled_count=0,
        start_at=datetime(2026, 2, 10, 9, 0),
        end_at=datetime(2026, 2, 14, 16, 0),
    ):
        if db.get(Course, COURSE_ID) is None:
            db.add(Course(id=COURSE_ID, title="FDNY F-89 Fire Life Safety Director", price=650))
        db.add(
            ClassSession(
                id=session_id,
                course_id=COURSE_ID,
                start_at=start_at,
                end_at=end_at,
                capacity=capacity,
                enrolled_count=enrolled_count,
            )
        )
        db.commit()
        return session_id

    return _make


@pytest.fixture
def company(db):
    db.add(Company(id=COMPANY_ID, name="Acme Properties", code="ACME", seats_total=10))
    db.commit()
    return COMPANY_ID
