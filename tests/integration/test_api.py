import asyncio
from datetime import datetime, timedelta
from unittest.mock import MagicMock, patch

import httpx
import pytest
import stripe
from fastapi.testclient import TestClient
from sqlalchemy import func, select

from seatflow.database import Course, Enrollment, PaymentReceipt, get_db
from seatflow.main import app

SESSION_ID = "feb-2026"
COURSE_ID = "f89-flsd"


@pytest.fixture
def client(SessionLocal):
    def override_get_db():
        db = SessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


def checkout_completed(reference="cs_test_1"):
    event = MagicMock()
    event.to_dict.return_value = {
        "id": "evt_1",
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": reference,
                "metadata": {
                    "userId": "user-1",
                    "courseId": COURSE_ID,
                    "sessionId": SESSION_ID,
                    "seats": "1",
                },
                "customer_details": {"email": "dana@example.com", "name": "Dana"},
            }
        },
    }
    return event


def test_register_requires_identity(client, make_session):
    make_session()

    response = client.post("/register", json={"session_id": SESSION_ID})

    assert response.status_code == 401


def test_register(client, make_session):
    make_session()

    response = client.post(
        "/register",
        json={"session_id": SESSION_ID, "seat_count": 2, "user_details": {"email": "d@example.com"}},
        headers={"X-User-Id": "user-1"},
    )

    assert response.status_code == 200
    assert response.json()["status"] == "enrolled"


def test_register_full_session(client, make_session):
    make_session(capacity=25, enrolled_count=24)

    response = client.post(
        "/register",
        json={"session_id": SESSION_ID, "seat_count": 2},
        headers={"X-User-Id": "user-1"},
    )

    assert response.status_code == 409
    assert response.json()["detail"]["seats_remaining"] == 1


def test_sessions_listing(client, make_session):
    make_session(capacity=25, enrolled_count=25, end_at=datetime.now() + timedelta(days=30))

    sessions = client.get("/sessions", params={"course_id": COURSE_ID}).json()

    assert len(sessions) == 1
    assert sessions[0]["status"] == "full"
    assert sessions[0]["seats_remaining"] == 0


def test_webhook_signature_mismatch_changes_nothing(client, db, make_session):
    make_session()
    error = stripe.SignatureVerificationError("No signatures found", "t=1,v1=bad")

    with patch("seatflow.payments.stripe.Webhook.construct_event", side_effect=error):
        response = client.post(
            "/webhooks/stripe", content=b"{}", headers={"Stripe-Signature": "t=1,v1=bad"}
        )

    assert response.status_code == 400
    assert db.scalar(select(func.count()).select_from(PaymentReceipt)) == 0


def test_webhook_without_signature(client):
    assert client.post("/webhooks/stripe", content=b"{}").status_code == 400


def test_webhook_redelivery(client, db, make_session, outbound):
    make_session()

    with patch("seatflow.payments.stripe.Webhook.construct_event", return_value=checkout_completed()):
        first = client.post("/webhooks/stripe", content=b"{}", headers={"Stripe-Signature": "sig"})
        second = client.post("/webhooks/stripe", content=b"{}", headers={"Stripe-Signature": "sig"})

    assert first.json() == {"received": True, "status": "enrolled"}
    assert second.json() == {"received": True, "status": "already_processed"}
    assert db.scalar(select(func.count()).select_from(Enrollment)) == 1
    assert outbound.email.call_count == 1


@pytest.mark.asyncio
async def test_concurrent_webhook_delivery(SessionLocal, make_session, outbound):
    make_session()

    def override_get_db():
        db = SessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    transport = httpx.ASGITransport(app=app)
    try:
        with patch("seatflow.payments.stripe.Webhook.construct_event", return_value=checkout_completed()):
            async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
                responses = await asyncio.gather(
                    *[
                        client.post("/webhooks/stripe", content=b"{}", headers={"Stripe-Signature": "sig"})
                        for _ in range(3)
                    ]
                )
    finally:
        app.dependency_overrides.clear()

    statuses = sorted(r.json()["status"] for r in responses)
    assert statuses == ["already_processed", "already_processed", "enrolled"]
    assert outbound.email.call_count == 1


def test_live_requires_a_seat(client, make_session):
    make_session()

    response = client.get(f"/sessions/{SESSION_ID}/live", headers={"X-User-Id": "user-1"})

    assert response.status_code == 403


def test_live_for_seat_holder(client, make_session):
    make_session(start_at=datetime(2025, 1, 6, 9, 0), end_at=datetime(2025, 1, 10, 16, 0))
    client.post("/register", json={"session_id": SESSION_ID}, headers={"X-User-Id": "user-1"})

    response = client.get(f"/sessions/{SESSION_ID}/live", headers={"X-User-Id": "user-1"})

    assert response.status_code == 200
    # The run is over
    assert response.json() == {"is_live": False, "next_window_description": None}


def test_generate_and_redeem(client, company, make_session):
    make_session()

    response = client.post(
        "/corporate/generate-codes",
        json={"company_id": "acme", "quantity": 3},
        headers={"X-User-Id": "admin-1"},
    )
    codes = [c["code"] for c in response.json()["codes"]]
    assert len(codes) == 3

    redeem = {"code": codes[0], "course_id": COURSE_ID}
    assert client.post("/corporate/redeem", json=redeem, headers={"X-User-Id": "user-1"}).status_code == 200
    assert client.post("/corporate/redeem", json=redeem, headers={"X-User-Id": "user-2"}).status_code == 409


def test_generate_too_many_codes(client, company):
    response = client.post(
        "/corporate/generate-codes",
        json={"company_id": "acme", "quantity": 500},
        headers={"X-User-Id": "admin-1"},
    )

    assert response.status_code == 400


def test_cancel(client, make_session):
    make_session()
    client.post("/register", json={"session_id": SESSION_ID}, headers={"X-User-Id": "user-1"})

    response = client.post("/enrollments/cancel", json={"course_id": COURSE_ID}, headers={"X-User-Id": "user-1"})

    assert response.json()["status"] == "cancelled"
    assert client.post(
        "/enrollments/cancel", json={"course_id": COURSE_ID}, headers={"X-User-Id": "user-1"}
    ).status_code == 404


def test_checkout(client, make_session):
    make_session()

    with patch("seatflow.payments.stripe.checkout.Session.create") as create:
        create.return_value.url = "https://checkout.stripe.com/c/pay/cs_test_1"
        response = client.post(
            "/checkout",
            json={"course_id": COURSE_ID, "session_id": SESSION_ID, "seat_count": 2},
            headers={"X-User-Id": "user-1"},
        )

    assert response.json() == {"url": "https://checkout.stripe.com/c/pay/cs_test_1"}
    metadata = create.call_args.kwargs["metadata"]
    assert metadata == {"userId": "user-1", "courseId": COURSE_ID, "seats": "2", "userName": "", "sessionId": SESSION_ID}
    assert create.call_args.kwargs["line_items"][0]["price_data"]["unit_amount"] == 65000


def test_checkout_provider_failure(client, make_session):
    make_session()

    with patch("seatflow.payments.stripe.checkout.Session.create", side_effect=stripe.APIConnectionError("down")):
        response = client.post("/checkout", json={"course_id": COURSE_ID}, headers={"X-User-Id": "user-1"})

    assert response.status_code == 502


def test_checkout_unknown_session(client, make_session):
    make_session()

    with patch("seatflow.payments.stripe.checkout.Session.create") as create:
        response = client.post(
            "/checkout",
            json={"course_id": COURSE_ID, "session_id": "gone"},
            headers={"X-User-Id": "user-1"},
        )

    assert response.status_code == 404
    create.assert_not_called()


def test_checkout_session_of_another_course(client, db, make_session):
    make_session()
    db.add(Course(id="cheap", title="Fire Guard Refresher", price=10))
    db.commit()

    with patch("seatflow.payments.stripe.checkout.Session.create") as create:
        response = client.post(
            "/checkout",
            json={"course_id": "cheap", "session_id": SESSION_ID},
            headers={"X-User-Id": "user-1"},
        )

    assert response.status_code == 400
    create.assert_not_called()
