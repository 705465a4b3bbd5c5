"""Seat counts change only through guarded UPDATEs. Nothing here commits."""
import logging
import time
from datetime import datetime, timezone
from typing import List

from sqlalchemy import select, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from seatflow.database import ClassSession
from seatflow.live_gate import to_local
from seatflow.metrics import (
    capacity as capacity_gauge,
    reservation_latency_seconds,
    reservations_total,
    seats_taken as seats_taken_gauge,
)
from seatflow.schemas import ReservationResult

logger = logging.getLogger(__name__)


def _counts(db, session_id):
    return db.execute(
        select(ClassSession.enrolled_count, ClassSession.capacity).where(
            ClassSession.id == session_id
        )
    ).first()


def reserve_seats(db: Session, session_id: str, seat_count: int) -> ReservationResult:
    if seat_count < 1:
        raise ValueError("seat_count must be at least 1")

    start = time.time()
    try:
        updated = db.execute(
            update(ClassSession)
            .where(ClassSession.id == session_id)
            .where(ClassSession.enrolled_count + seat_count <= ClassSession.capacity)
            .values(enrolled_count=ClassSession.enrolled_count + seat_count)
            .execution_options(synchronize_session=False)
        )

        row = _counts(db, session_id)

        if row is None:
            reservations_total.labels(status="session_not_found").inc()
            logger.warning(f"Reservation for unknown session {session_id}")
            return ReservationResult(status="session_not_found")

        enrolled, capacity = row
        seats_taken_gauge.labels(session_id=session_id).set(enrolled)
        capacity_gauge.labels(session_id=session_id).set(capacity)

        if updated.rowcount != 1:
            reservations_total.labels(status="capacity_exceeded").inc()
            logger.info(
                f"Session {session_id} cannot take {seat_count} seats, "
                f"{capacity - enrolled} remaining"
            )
            return ReservationResult(
                status="capacity_exceeded", seats_remaining=capacity - enrolled
            )

        reservations_total.labels(status="reserved").inc()
        logger.info(f"Reserved {seat_count} seats in {session_id}, total {enrolled}/{capacity}")
        return ReservationResult(
            status="reserved", new_total=enrolled, seats_remaining=capacity - enrolled
        )
    finally:
        reservation_latency_seconds.observe(time.time() - start)


def release_seats(db: Session, session_id: str, seat_count: int) -> int:
    """Return seats to the pool. Returns the new enrolled count.

    Never drives the count below zero: a release larger than what is held
    leaves the count untouched and is logged as a bookkeeping error.
    """
    if seat_count < 1:
        raise ValueError("seat_count must be at least 1")

    updated = db.execute(
        update(ClassSession)
        .where(ClassSession.id == session_id)
        .where(ClassSession.enrolled_count >= seat_count)
        .values(enrolled_count=ClassSession.enrolled_count - seat_count)
        .execution_options(synchronize_session=False)
    )

    if updated.rowcount != 1:
        row = _counts(db, session_id)
        if row is None:
            logger.warning(f"Release for unknown session {session_id}")
            return 0
        logger.error(
            f"Release of {seat_count} seats exceeds {row[0]} held in {session_id}"
        )
        return row[0]

    enrolled, _ = _counts(db, session_id)
    seats_taken_gauge.labels(session_id=session_id).set(enrolled)
    logger.info(f"Released {seat_count} seats in {session_id}, total {enrolled}")
    return enrolled


def seats_remaining(session: ClassSession) -> int:
    return max(0, session.capacity - session.enrolled_count)


def session_status(session: ClassSession, now: datetime = None) -> str:
    if session.is_cancelled:
        return "cancelled"

    now = now or datetime.now(timezone.utc)
    if to_local(now) > to_local(session.end_at):
        return "completed"
    if session.enrolled_count >= session.capacity:
        return "full"
    return "open"


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.1, max=1),
    retry=retry_if_exception_type(OperationalError),
    reraise=True,
)
def list_sessions(db: Session, course_id: str = None) -> List[ClassSession]:
    """Read-only, so transient database errors are retried."""
    query = select(ClassSession).order_by(ClassSession.start_at)
    if course_id:
        query = query.where(ClassSession.course_id == course_id)
    try:
        return list(db.execute(query).scalars())
    except OperationalError:
        db.rollback()
        raise
