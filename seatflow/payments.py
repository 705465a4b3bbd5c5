"""
Thin Stripe glue: hosted checkout creation and webhook verification.

Nothing in a webhook body is trusted until the signature has been checked
against STRIPE_WEBHOOK_SECRET.
"""
import logging
from typing import Optional

import stripe

from seatflow import config
from seatflow.database import Course
from seatflow.schemas import PaymentConfirmation

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"


class WebhookSignatureError(Exception):
    pass


class PaymentProviderError(Exception):
    pass


def _init_stripe():
    stripe.api_key = config.STRIPE_SECRET_KEY


def create_checkout_session(
    course: Course,
    user_id: str,
    seat_count: int = 1,
    session_id: Optional[str] = None,
    user_email: Optional[str] = None,
    user_name: Optional[str] = None,
) -> str:
    """Create a hosted checkout session and return its URL.

    The metadata written here comes back on the completion webhook and is
    what the reconciler enrolls from.
    """
    _init_stripe()

    metadata = {
        "userId": user_id,
        "courseId": course.id,
        "seats": str(seat_count),
        "userName": user_name or "",
    }
    if session_id:
        metadata["sessionId"] = session_id

    try:
        checkout = stripe.checkout.Session.create(
            payment_method_types=["card"],
            line_items=[
                {
                    "price_data": {
                        "currency": "usd",
                        "product_data": {"name": course.title},
                        "unit_amount": round(course.price * 100),
                    },
                    "quantity": seat_count,
                }
            ],
            mode="payment",
            success_url=f"{config.APP_URL}/signup?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{config.APP_URL}/courses/{course.id}?canceled=true",
            customer_email=user_email,
            metadata=metadata,
        )
    except stripe.StripeError as e:
        logger.error(f"Checkout creation for course {course.id} failed: {e}")
        raise PaymentProviderError(str(e)) from e

    return checkout.url


def parse_webhook(payload: bytes, signature: Optional[str]) -> dict:
    """Verify the Stripe-Signature header and return the event as a dict."""
    if not signature:
        logger.warning("security: webhook received without Stripe-Signature header")
        raise WebhookSignatureError("Missing signature")

    try:
        event = stripe.Webhook.construct_event(
            payload, signature, config.STRIPE_WEBHOOK_SECRET
        )
    except stripe.SignatureVerificationError:
        logger.warning("security: webhook signature verification failed")
        raise WebhookSignatureError("Invalid signature")
    except ValueError:
        logger.warning("security: webhook payload is not valid JSON")
        raise WebhookSignatureError("Invalid payload")

    return event.to_dict()


def confirmation_from_event(event: dict) -> Optional[PaymentConfirmation]:
    """Map a verified checkout-completed event to a PaymentConfirmation.

    Returns None for other event types and for checkouts that do not carry
    the user/course metadata (e.g. created outside this application).
    """
    if event.get("type") != CHECKOUT_COMPLETED:
        return None

    checkout = event["data"]["object"]
    metadata = checkout.get("metadata") or {}
    user_id = metadata.get("userId")
    course_id = metadata.get("courseId")
    if not user_id or not course_id:
        logger.warning(f"Checkout {checkout.get('id')} has no enrollment metadata")
        return None

    details = checkout.get("customer_details") or {}
    try:
        seat_count = max(1, int(metadata.get("seats") or 1))
    except ValueError:
        seat_count = 1

    return PaymentConfirmation(
        payment_reference=checkout["id"],
        user_id=user_id,
        course_id=course_id,
        session_id=metadata.get("sessionId") or None,
        seat_count=seat_count,
        customer_email=details.get("email") or checkout.get("customer_email"),
        customer_name=metadata.get("userName") or details.get("name"),
    )
