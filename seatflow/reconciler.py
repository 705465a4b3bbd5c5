"""Direct, payment and corporate enrollment. Payments apply at most once per reference."""
import logging
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from seatflow.alerts import raise_alert
from seatflow.codes import redeem_code
from seatflow.database import ClassSession, Course, Enrollment, PaymentReceipt
from seatflow.ledger import release_seats, reserve_seats
from seatflow.live_gate import to_local
from seatflow.metrics import enrollments_total
from seatflow.notifications import send_welcome_email
from seatflow.schemas import EnrollmentResult, PaymentConfirmation, UserDetails

logger = logging.getLogger(__name__)


def _find_enrollment(db, user_id, course_id):
    return db.execute(
        select(Enrollment).where(
            Enrollment.user_id == user_id, Enrollment.course_id == course_id
        )
    ).scalar_one_or_none()


def _start_date(session):
    start = to_local(session.start_at)
    return f"{start.month}/{start.day}/{start.year}"


def _activate(enrollment, source, seats):
    enrollment.status = "active"
    enrollment.source = source
    enrollment.seats = seats
    enrollment.seat_reserved = False
    enrollment.session_id = None
    enrollment.payment_reference = None


def _welcome(email, name, course_title, start_date):
    if not email:
        return
    send_welcome_email(
        email,
        {"name": name or "Student", "course_title": course_title, "start_date": start_date},
    )


def register_direct(
    db: Session,
    session_id: str,
    seat_count: int,
    user_id: str,
    user_details: UserDetails,
) -> EnrollmentResult:
    try:
        session = db.get(ClassSession, session_id)
        if session is None:
            db.rollback()
            enrollments_total.labels(source="direct", status="session_not_found").inc()
            return EnrollmentResult(status="session_not_found", message="Session does not exist")

        course_id = session.course_id
        enrollment = _find_enrollment(db, user_id, course_id)
        if enrollment is not None and enrollment.status == "active":
            db.rollback()
            enrollments_total.labels(source="direct", status="already_enrolled").inc()
            return EnrollmentResult(status="already_enrolled", message="Already enrolled")

        reservation = reserve_seats(db, session_id, seat_count)
        if not reservation.ok:
            db.rollback()
            enrollments_total.labels(source="direct", status=reservation.status).inc()
            message = (
                f"Capacity exceeded. Only {reservation.seats_remaining} seats remaining."
                if reservation.status == "capacity_exceeded"
                else "Session does not exist"
            )
            return EnrollmentResult(
                status=reservation.status,
                message=message,
                seats_remaining=reservation.seats_remaining,
                reservation=reservation,
            )

        if enrollment is None:
            enrollment = Enrollment(user_id=user_id, course_id=course_id)
            db.add(enrollment)
        _activate(enrollment, "direct", seat_count)
        enrollment.session_id = session_id
        enrollment.seat_reserved = True

        course_title = session.course.title
        start_date = _start_date(session)
        db.commit()

    except IntegrityError:
        # A concurrent path enrolled the same user first; our seats roll back with us
        db.rollback()
        enrollments_total.labels(source="direct", status="already_enrolled").inc()
        return EnrollmentResult(status="already_enrolled", message="Already enrolled")

    enrollments_total.labels(source="direct", status="enrolled").inc()
    logger.info(f"User {user_id} registered for {session_id} ({seat_count} seats)")

    _welcome(user_details.email, user_details.name, course_title, start_date)

    return EnrollmentResult(
        status="enrolled",
        message="Registration successful",
        seats_remaining=reservation.seats_remaining,
        seat_reserved=True,
        reservation=reservation,
    )


def enroll_from_payment(db: Session, confirmation: PaymentConfirmation) -> EnrollmentResult:
    """Apply a verified payment. Safe to call again with the same reference.

    Money has already been captured by the time this runs, so a seat that
    can no longer be reserved does not reject the enrollment. The student
    keeps course access without a session seat and the receipt is flagged
    for manual refund or reassignment.
    """
    ref = confirmation.payment_reference

    receipt = PaymentReceipt(
        payment_reference=ref,
        user_id=confirmation.user_id,
        course_id=confirmation.course_id,
        session_id=confirmation.session_id,
        seats=confirmation.seat_count,
        customer_email=confirmation.customer_email,
        status="applied",
    )
    db.add(receipt)
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        enrollments_total.labels(source="payment", status="already_processed").inc()
        logger.info(f"Payment {ref} already applied, skipping")
        return EnrollmentResult(status="already_processed", message="Already processed")

    course = db.get(Course, confirmation.course_id)
    if course is None:
        # Nothing to enroll into; keep the receipt so the payment is not lost
        receipt.status = "needs_reconciliation"
        receipt.detail = "course not found"
        db.commit()
        enrollments_total.labels(source="payment", status="course_not_found").inc()
        raise_alert(
            "paid_course_missing",
            payment_reference=ref,
            user_id=confirmation.user_id,
            course_id=confirmation.course_id,
            session_id=confirmation.session_id,
            seats=confirmation.seat_count,
        )
        return EnrollmentResult(
            status="course_not_found",
            message="Course not found",
            needs_reconciliation=True,
        )

    course_title = course.title
    start_date = "Confirmed"
    reservation = None
    problem = None

    session = db.get(ClassSession, confirmation.session_id) if confirmation.session_id else None
    enrollment = _find_enrollment(db, confirmation.user_id, confirmation.course_id)
    holds_other_session = (
        enrollment is not None
        and enrollment.status == "active"
        and enrollment.seat_reserved
        and enrollment.session_id != confirmation.session_id
    )

    if session is not None and session.course_id != confirmation.course_id:
        problem = f"session {session.id} belongs to course {session.course_id}"
    elif confirmation.session_id and holds_other_session:
        problem = f"already holds a seat in session {enrollment.session_id}"
    elif confirmation.session_id:
        reservation = reserve_seats(db, confirmation.session_id, confirmation.seat_count)
        if reservation.ok:
            start_date = _start_date(session)
        elif reservation.status == "capacity_exceeded":
            problem = f"capacity exceeded, {reservation.seats_remaining} seats remaining"
        else:
            problem = "session not found"

    if problem:
        receipt.status = "needs_reconciliation"
        receipt.detail = problem

    created = enrollment is None or enrollment.status != "active"
    if enrollment is None:
        enrollment = Enrollment(user_id=confirmation.user_id, course_id=confirmation.course_id)
        db.add(enrollment)
    if created:
        _activate(enrollment, "payment", confirmation.seat_count)
        enrollment.payment_reference = ref

    if reservation is not None and reservation.ok:
        if enrollment.seat_reserved:
            # More seats bought for the session already held
            enrollment.seats += confirmation.seat_count
        else:
            enrollment.session_id = confirmation.session_id
            enrollment.seats = confirmation.seat_count
            enrollment.seat_reserved = True

    try:
        db.commit()
    except IntegrityError:
        # Another path enrolled this user first. The receipt and the seats
        # roll back too, so the processor's redelivery applies cleanly.
        db.rollback()
        raise

    status = "enrolled" if created else "already_enrolled"
    enrollments_total.labels(source="payment", status=status).inc()
    logger.info(f"Payment {ref} applied for user {confirmation.user_id}: {status}")

    if problem:
        raise_alert(
            "paid_seat_unavailable",
            payment_reference=ref,
            user_id=confirmation.user_id,
            course_id=confirmation.course_id,
            session_id=confirmation.session_id,
            seats=confirmation.seat_count,
            reason=problem,
        )

    if created:
        _welcome(confirmation.customer_email, confirmation.customer_name, course_title, start_date)

    return EnrollmentResult(
        status=status,
        message="Enrollment successful" if created else "Payment applied to existing enrollment",
        seat_reserved=bool(reservation and reservation.ok),
        needs_reconciliation=problem is not None,
        seats_remaining=reservation.seats_remaining if reservation else None,
        reservation=reservation,
    )


def enroll_from_code(
    db: Session,
    code: str,
    user_id: str,
    course_id: str,
    user_details: Optional[UserDetails] = None,
) -> EnrollmentResult:
    """Redeem a corporate access code and enroll in the same transaction."""
    course = db.get(Course, course_id)
    if course is None:
        db.rollback()
        return EnrollmentResult(status="course_not_found", message="Course not found")

    enrollment = _find_enrollment(db, user_id, course_id)
    if enrollment is not None and enrollment.status == "active":
        # Leave the code unspent
        db.rollback()
        return EnrollmentResult(status="already_enrolled", message="Already enrolled")

    try:
        redemption = redeem_code(db, code, user_id)
        if not redemption.ok:
            db.rollback()
            enrollments_total.labels(source="corporate", status=redemption.status).inc()
            return EnrollmentResult(status=redemption.status, message="Code not accepted")

        if enrollment is None:
            enrollment = Enrollment(user_id=user_id, course_id=course_id)
            db.add(enrollment)
        _activate(enrollment, "corporate", 1)
        course_title = course.title
        db.commit()
    except IntegrityError:
        db.rollback()
        return EnrollmentResult(status="already_enrolled", message="Already enrolled")

    enrollments_total.labels(source="corporate", status="enrolled").inc()
    logger.info(f"User {user_id} enrolled in {course_id} with code {code}")

    if user_details is not None:
        _welcome(user_details.email, user_details.name, course_title, "Confirmed")

    return EnrollmentResult(status="enrolled", message="Enrollment successful")


def cancel_enrollment(db: Session, user_id: str, course_id: str) -> EnrollmentResult:
    """Cancel an active enrollment and hand its reserved seats back."""
    enrollment = _find_enrollment(db, user_id, course_id)
    if enrollment is None or enrollment.status != "active":
        db.rollback()
        return EnrollmentResult(status="not_enrolled", message="No active enrollment")

    session_id = enrollment.session_id
    source = enrollment.source
    seats = enrollment.seats
    seat_reserved = enrollment.seat_reserved

    # Guarded flip so two concurrent cancels release the seats only once
    flipped = db.execute(
        update(Enrollment)
        .where(Enrollment.id == enrollment.id, Enrollment.status == "active")
        .values(status="cancelled", seat_reserved=False)
        .execution_options(synchronize_session=False)
    )
    if flipped.rowcount != 1:
        db.rollback()
        return EnrollmentResult(status="not_enrolled", message="No active enrollment")

    if seat_reserved and session_id:
        release_seats(db, session_id, seats)

    db.commit()
    enrollments_total.labels(source=source, status="cancelled").inc()
    logger.info(f"User {user_id} cancelled enrollment in {course_id}")

    return EnrollmentResult(status="cancelled", message="Enrollment cancelled")
