import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Optional

import redis
import uvicorn
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, Response
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from sqlalchemy import select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from seatflow import alerts, config
from seatflow.codes import generate_codes
from seatflow.database import ClassSession, Course, Enrollment, get_db, init_db
from seatflow.ledger import list_sessions, seats_remaining, session_status
from seatflow.live_gate import is_live
from seatflow.payments import (
    PaymentProviderError,
    WebhookSignatureError,
    confirmation_from_event,
    create_checkout_session,
    parse_webhook,
)
from seatflow.reconciler import (
    cancel_enrollment,
    enroll_from_code,
    enroll_from_payment,
    register_direct,
)
from seatflow.schemas import (
    CancelRequest,
    CheckoutRequest,
    GenerateCodesRequest,
    LiveDecision,
    RedeemRequest,
    RegisterRequest,
    SessionOut,
)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    logger.info("Database ready")
    yield


app = FastAPI(title="SeatFlow", lifespan=lifespan)


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError):
    logger.error(f"Database error on {request.url.path}: {exc}")
    return JSONResponse(status_code=503, content={"detail": "Storage unavailable"})


def current_user_id(x_user_id: Optional[str] = Header(None, alias="X-User-Id")) -> str:
    # Set by the auth proxy in front of this service
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Authentication required")
    return x_user_id


STATUS_CODES = {
    "session_not_found": 404,
    "course_not_found": 404,
    "code_not_found": 404,
    "company_not_found": 404,
    "capacity_exceeded": 409,
    "code_already_redeemed": 409,
    "code_revoked": 409,
    "invalid_quantity": 400,
}


def _fail_on_error(result):
    status_code = STATUS_CODES.get(result.status)
    if status_code:
        raise HTTPException(status_code=status_code, detail=result.model_dump(exclude_none=True))
    return result


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/ready")
def ready(db: Session = Depends(get_db)):
    try:
        alerts.r.ping()
        db.execute(text("SELECT 1"))
        return {"status": "ready", "redis": "ok", "database": "ok"}
    except (redis.exceptions.RedisError, SQLAlchemyError) as e:
        raise HTTPException(status_code=503, detail=f"Service not ready: {str(e)}")


@app.get("/metrics")
def metrics():
    """Application metrics in Prometheus format"""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/sessions", response_model=List[SessionOut])
def sessions(course_id: Optional[str] = None, db: Session = Depends(get_db)):
    now = datetime.now(timezone.utc)
    return [
        SessionOut(
            id=s.id,
            course_id=s.course_id,
            start_at=s.start_at,
            end_at=s.end_at,
            capacity=s.capacity,
            enrolled_count=s.enrolled_count,
            seats_remaining=seats_remaining(s),
            status=session_status(s, now),
        )
        for s in list_sessions(db, course_id)
    ]


@app.get("/sessions/{session_id}/live", response_model=LiveDecision)
def live(
    session_id: str,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    session = db.get(ClassSession, session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")

    seat = db.execute(
        select(Enrollment.id).where(
            Enrollment.user_id == user_id,
            Enrollment.session_id == session_id,
            Enrollment.status == "active",
            Enrollment.seat_reserved.is_(True),
        )
    ).first()
    if seat is None:
        raise HTTPException(status_code=403, detail="No seat in this session")

    return is_live(session, datetime.now(timezone.utc))


@app.post("/register")
def register(
    req: RegisterRequest,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    result = register_direct(db, req.session_id, req.seat_count, user_id, req.user_details)
    return _fail_on_error(result)


@app.post("/checkout")
def checkout(
    req: CheckoutRequest,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    course = db.get(Course, req.course_id)
    if course is None:
        raise HTTPException(status_code=404, detail="Course not found")

    if req.session_id:
        session = db.get(ClassSession, req.session_id)
        if session is None:
            raise HTTPException(status_code=404, detail="Session not found")
        if session.course_id != course.id:
            raise HTTPException(status_code=400, detail="Session is not part of this course")

    try:
        url = create_checkout_session(
            course,
            user_id=user_id,
            seat_count=req.seat_count,
            session_id=req.session_id,
            user_email=req.user_email,
            user_name=req.user_name,
        )
    except PaymentProviderError:
        raise HTTPException(status_code=502, detail="Payment provider unavailable")

    return {"url": url}


@app.post("/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    db: Session = Depends(get_db),
):
    payload = await request.body()

    try:
        event = parse_webhook(payload, stripe_signature)
    except WebhookSignatureError as e:
        client_ip = request.client.host if request.client else None
        logger.warning(f"security: rejected webhook from {client_ip}: {e}")
        raise HTTPException(status_code=400, detail="Webhook Error")

    confirmation = confirmation_from_event(event)
    if confirmation is None:
        return {"received": True}

    result = await run_in_threadpool(enroll_from_payment, db, confirmation)
    return {"received": True, "status": result.status}


@app.post("/enrollments/cancel")
def cancel(
    req: CancelRequest,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    result = cancel_enrollment(db, user_id, req.course_id)
    if result.status == "not_enrolled":
        raise HTTPException(status_code=404, detail=result.message)
    return result


@app.post("/corporate/generate-codes")
def corporate_generate_codes(
    req: GenerateCodesRequest,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    logger.info(f"User {user_id} requested {req.quantity} codes for {req.company_id}")
    return _fail_on_error(generate_codes(db, req.company_id, req.quantity))


@app.post("/corporate/redeem")
def corporate_redeem(
    req: RedeemRequest,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    result = enroll_from_code(db, req.code, user_id, req.course_id, req.user_details)
    return _fail_on_error(result)


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=config.SERVER_PORT)
