"""
Email service for the marketplace.

Uses SMTP (MAIL_SMTP_HOST, default smtp.gmail.com) to send transactional
emails rendered from Jinja2 templates. Sending is synchronous: callers that
must not block (order confirmations, cancellations) go through the task
queue, which retries failed sends.

Usage:
    from marketplace.services.email_service import send_email

    send_email(
        to="customer@example.com",
        subject="Order confirmed",
        template="emails/order_confirmation.html",
        context={"order": order},
    )
"""

import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from flask import current_app, render_template

logger = logging.getLogger(__name__)


def _build_message(app, to, subject, template, context, reply_to):
    from_name = app.config.get("MAIL_FROM_NAME", "Marketplace")
    from_email = app.config.get("MAIL_FROM_ADDRESS") or app.config.get("MAIL_USERNAME") or ""

    html_body = render_template(template, **context)

    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = f"{from_name} <{from_email}>"
    msg["To"] = to if isinstance(to, str) else ", ".join(to)
    if reply_to:
        msg["Reply-To"] = reply_to
    msg.attach(MIMEText(html_body, "html"))
    return msg


def send_email(to, subject, template, context=None, reply_to=None):
    """
    Render and send a templated HTML email.

    Returns True if sent, False if mail isn't configured.
    Raises smtplib.SMTPException / OSError on delivery failure so the
    task queue can retry.
    """
    app = current_app._get_current_object()
    msg = _build_message(app, to, subject, template, context or {}, reply_to)

    host = app.config.get("MAIL_SMTP_HOST", "smtp.gmail.com")
    port = app.config.get("MAIL_SMTP_PORT", 587)
    username = app.config.get("MAIL_USERNAME")
    password = app.config.get("MAIL_PASSWORD")

    if not username or not password:
        logger.warning("Email not sent: MAIL_USERNAME or MAIL_PASSWORD not configured.")
        return False

    with smtplib.SMTP(host, port, timeout=30) as server:
        server.ehlo()
        server.starttls()
        server.ehlo()
        server.login(username, password)
        server.send_message(msg)
    logger.info(f"Email sent to {msg['To']}: {msg['Subject']}")
    return True
