from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    event,
)
from sqlalchemy.orm import declarative_base, relationship, sessionmaker

from seatflow import config


def _utcnow():
    return datetime.now(timezone.utc)


def make_engine(url: str):
    if not url.startswith("sqlite"):
        return create_engine(url, pool_pre_ping=True)

    sqlite_engine = create_engine(
        url, connect_args={"check_same_thread": False, "timeout": 30}
    )

    # pysqlite defers BEGIN until the first DML statement, which breaks
    # SAVEPOINT and lets readers race writers. Take the write lock up front.
    @event.listens_for(sqlite_engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(sqlite_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return sqlite_engine


engine = make_engine(config.DATABASE_URL)

SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)

Base = declarative_base()


class Course(Base):
    __tablename__ = "courses"
    id = Column(String(64), primary_key=True)
    title = Column(String, nullable=False)
    price = Column(Float, nullable=False, default=0)

    sessions = relationship("ClassSession", back_populates="course")


class ClassSession(Base):
    __tablename__ = "class_sessions"

    id = Column(String(64), primary_key=True)
    course_id = Column(String(64), ForeignKey("courses.id"), nullable=False, index=True)
    start_at = Column(DateTime(timezone=True), nullable=False)
    end_at = Column(DateTime(timezone=True), nullable=False)
    capacity = Column(Integer, nullable=False, default=config.DEFAULT_CAPACITY)
    enrolled_count = Column(Integer, nullable=False, default=0)
    is_cancelled = Column(Boolean, nullable=False, default=False)

    course = relationship("Course", back_populates="sessions")

    __table_args__ = (
        CheckConstraint("capacity > 0", name="check_session_capacity_positive"),
        CheckConstraint(
            "enrolled_count >= 0 AND enrolled_count <= capacity",
            name="check_session_enrolled_within_capacity",
        ),
    )


class Enrollment(Base):
    __tablename__ = "enrollments"

    id = Column(Integer, primary_key=True)
    user_id = Column(String(128), nullable=False, index=True)
    course_id = Column(String(64), ForeignKey("courses.id"), nullable=False)
    session_id = Column(String(64), ForeignKey("class_sessions.id"), nullable=True)
    source = Column(String(16), nullable=False)  # direct, payment, corporate
    seats = Column(Integer, nullable=False, default=1)
    seat_reserved = Column(Boolean, nullable=False, default=False)
    payment_reference = Column(String(255), nullable=True)
    status = Column(String(16), nullable=False, default="active")  # active, cancelled
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "course_id", name="unique_user_course_enrollment"),
    )


class PaymentReceipt(Base):
    """One row per applied payment; the primary key is the idempotency key."""

    __tablename__ = "payment_receipts"

    payment_reference = Column(String(255), primary_key=True)
    user_id = Column(String(128), nullable=False)
    course_id = Column(String(64), nullable=False)
    session_id = Column(String(64), nullable=True)
    seats = Column(Integer, nullable=False, default=1)
    customer_email = Column(String(320), nullable=True)
    status = Column(String(32), nullable=False, default="applied")  # applied, needs_reconciliation
    detail = Column(Text, nullable=True)
    received_at = Column(DateTime(timezone=True), default=_utcnow)


class Company(Base):
    __tablename__ = "companies"

    id = Column(String(64), primary_key=True)
    name = Column(String, nullable=False)
    code = Column(String(32), unique=True, nullable=False)
    seats_total = Column(Integer, nullable=False, default=0)
    seats_used = Column(Integer, nullable=False, default=0)


class AccessCode(Base):
    __tablename__ = "access_codes"

    code = Column(String(64), primary_key=True)
    company_id = Column(String(64), ForeignKey("companies.id"), nullable=False, index=True)
    status = Column(String(16), nullable=False, default="active")  # active, redeemed, revoked
    redeemed_by = Column(String(128), nullable=True)
    redeemed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)


def init_db(bind=None):
    Base.metadata.create_all(bind=bind or engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
