"""
Delivery of a student's QR code by email (Resend HTTP API).

Delivery problems never fail a registration: callers get a result dict and
the error is logged.
"""
import logging
from typing import TypedDict
from urllib.parse import quote, urlencode

import requests
from jinja2 import Template

from backend.config import (
    EMAIL_SENDER,
    EMAIL_TIMEOUT_SECONDS,
    QR_IMAGE_BASE_URL,
    QR_IMAGE_SIZE,
    RESEND_API_KEY,
    RESEND_API_URL,
)

logger = logging.getLogger(__name__)

SUBJECT = "Your QR Code - QR Attend System"


class EmailDeliveryError(Exception):
    pass


class EmailResult(TypedDict):
    sent: bool
    error: str | None
    message_id: str | None


HTML_TEMPLATE = Template("""\
<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
  <title>Your QR Code - QR Attend</title>
</head>
<body style="font-family: -apple-system, 'Segoe UI', Roboto, sans-serif; color: #333; max-width: 600px; margin: 0 auto; padding: 20px; background-color: #f8fafc;">
  <div style="background: white; border-radius: 12px; padding: 32px;">
    <div style="text-align: center; margin-bottom: 32px;">
      <div style="font-size: 24px; font-weight: bold; color: #2563eb;">QR Attend</div>
      <h1 style="font-size: 28px; color: #1f2937;">Your QR Code is Ready!</h1>
      <p style="color: #6b7280;">Welcome to the QR Attendance System</p>
    </div>

    <div style="text-align: center; margin: 32px 0; padding: 24px; background: #f9fafb; border-radius: 8px;">
      <h2>Your Personal QR Code</h2>
      <img src="{{ qr_code_url }}" alt="Your QR Code for {{ student_name }}" style="max-width: 200px; border: 2px solid #e5e7eb; border-radius: 8px; padding: 8px; background: white;" />
      <p><strong>Save this QR code</strong> - you'll need it for attendance at events!</p>
    </div>

    <div style="background: #eff6ff; border: 1px solid #dbeafe; border-radius: 8px; padding: 20px; margin: 24px 0;">
      <h3>Your Registration Details</h3>
      <p><strong>Name:</strong> {{ student_name }}</p>
      <p><strong>Student ID:</strong> <code>{{ student_id }}</code></p>
      <p><strong>Email:</strong> {{ to }}</p>
    </div>

    <div style="background: #f0fdf4; border: 1px solid #bbf7d0; border-radius: 8px; padding: 20px; margin: 24px 0; color: #166534;">
      <h3>How to Use Your QR Code</h3>
      <ol>
        <li><strong>Save the QR code</strong> to your phone or print it out</li>
        <li><strong>Bring it to events</strong> - show it to staff at the entrance</li>
        <li><strong>Get scanned</strong> - your attendance will be logged automatically</li>
      </ol>
    </div>

    <div style="background: #fef3c7; border: 1px solid #f59e0b; border-radius: 8px; padding: 16px; margin: 24px 0; color: #92400e;">
      <h4>Important Security Note</h4>
      <p>Keep this QR code private and don't share it with others. Each QR code is unique to your student account and should only be used by you.</p>
    </div>

    <div style="text-align: center; margin-top: 32px; padding-top: 24px; border-top: 1px solid #e5e7eb; color: #6b7280; font-size: 14px;">
      <p><strong>QR Attend</strong> - Modern Attendance Tracking<br>If you have any questions, contact your administrator.</p>
      <p style="font-size: 12px; color: #9ca3af;">This email was sent automatically. Please do not reply to this email.<br>If you didn't register for QR Attend, please ignore this email.</p>
    </div>
  </div>
</body>
</html>
""", autoescape=True)

TEXT_TEMPLATE = Template("""\
QR Attend - Your QR Code is Ready!

Hello {{ student_name }},

Welcome to the QR Attendance System! Your personal QR code has been generated and is ready to use.

Your Registration Details:
- Name: {{ student_name }}
- Student ID: {{ student_id }}
- Email: {{ to }}

Your QR Code: {{ qr_code_url }}

How to Use Your QR Code:
1. Save the QR code to your phone or print it out
2. Bring it to events - show it to staff at the entrance
3. Get scanned - your attendance will be logged automatically

IMPORTANT: Keep this QR code private and don't share it with others. Each QR code is unique to your student account.

If you have any questions, contact your administrator.

---
QR Attend - Modern Attendance Tracking
This email was sent automatically. Please do not reply to this email.
If you didn't register for QR Attend, please ignore this email.""")


def build_qr_image_url(qr_data: str) -> str:
    query = urlencode({"size": QR_IMAGE_SIZE, "data": qr_data}, quote_via=quote)
    return f"{QR_IMAGE_BASE_URL}?{query}"


def render_email(*, to: str, student_name: str, student_id: str, qr_code_url: str) -> tuple[str, str]:
    context = {
        "to": to,
        "student_name": student_name,
        "student_id": student_id,
        "qr_code_url": qr_code_url,
    }
    return HTML_TEMPLATE.render(**context), TEXT_TEMPLATE.render(**context)


def deliver_email(*, to: str, subject: str, html: str, text: str) -> str:
    """Send one message. Returns the provider's message id."""
    if not RESEND_API_KEY:
        raise EmailDeliveryError("Email service not configured. Please contact administrator.")

    try:
        res = requests.post(
            RESEND_API_URL,
            headers={
                "Authorization": f"Bearer {RESEND_API_KEY}",
                "Content-Type": "application/json",
            },
            json={
                "from": EMAIL_SENDER,
                "to": [to],
                "subject": subject,
                "html": html,
                "text": text,
            },
            timeout=EMAIL_TIMEOUT_SECONDS,
        )
    except requests.RequestException as exc:
        raise EmailDeliveryError(f"Email service unreachable: {exc}")

    try:
        body = res.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}

    if not res.ok:
        raise EmailDeliveryError(f"Email service error: {body.get('message') or res.status_code}")
    return str(body.get("id") or "")


def send_qr_code_email(*, to: str, student_name: str, student_id: str, qr_code_url: str) -> EmailResult:
    html, text = render_email(
        to=to,
        student_name=student_name,
        student_id=student_id,
        qr_code_url=qr_code_url,
    )
    try:
        message_id = deliver_email(to=to, subject=SUBJECT, html=html, text=text)
    except EmailDeliveryError as exc:
        logger.warning("QR code email to %s not sent: %s", to, exc)
        return {"sent": False, "error": str(exc), "message_id": None}

    logger.info("QR code email sent to %s (%s)", to, message_id)
    return {"sent": True, "error": None, "message_id": message_id}
