"""
Best-effort welcome emails sent through Resend.

A failed send is logged and reported as ``False``; it never undoes the
enrollment that triggered it.
"""
import logging

import resend

from seatflow import config

logger = logging.getLogger(__name__)


def _welcome_html(name: str, course_title: str, start_date: str, portal_link: str) -> str:
    return f"""
    <html>
    <body style="font-family: Arial, sans-serif; color: #333;">
        <h2>Welcome, {name}!</h2>
        <p>You are enrolled in <strong>{course_title}</strong>.</p>
        <p><strong>Start date:</strong> {start_date}</p>
        <p>Sign in to the student portal to begin: <a href="{portal_link}">{portal_link}</a></p>
    </body>
    </html>
    """


def send_welcome_email(recipient: str, template_data: dict) -> bool:
    """
    Send the enrollment welcome email.

    Args:
        recipient: Email address of the student
        template_data: ``name``, ``course_title`` and ``start_date``

    Returns:
        True when the provider accepted the message
    """
    if not recipient:
        return False

    course_title = template_data.get("course_title", "your course")
    html = _welcome_html(
        name=template_data.get("name") or "Student",
        course_title=course_title,
        start_date=template_data.get("start_date") or "Confirmed",
        portal_link=f"{config.APP_URL}/login",
    )

    resend.api_key = config.RESEND_API_KEY
    try:
        resend.Emails.send(
            {
                "from": config.EMAIL_FROM,
                "to": [recipient],
                "subject": f"Welcome to {course_title} - Start Your Training",
                "html": html,
            }
        )
    except Exception as e:
        logger.error(f"Welcome email to {recipient} failed: {e}")
        return False

    logger.info(f"Welcome email sent to {recipient}")
    return True
