"""Email notification queue and SMTP dispatcher.

Notifications are queued as ``EmailNotification`` rows and delivered by
``dispatch_pending`` (see ``scripts/dispatch_notifications.py``). Queue
helpers add to the current session and leave the commit to the caller.
"""
from __future__ import annotations

import copy
import logging
import smtplib
import ssl
from datetime import datetime, timedelta, timezone
from email.message import EmailMessage

from flask import current_app, render_template_string

from .availability import resolve_timezone
from .extensions import db
from .models import EmailNotification, NotificationSettings, TherapySession, utc_now

logger = logging.getLogger(__name__)

MAX_RETRIES = 3

DEFAULT_NOTIFICATION_SETTINGS = {
    "email_notifications": {
        "enabled": True,
        "session_reminders": True,
        "new_bookings": True,
        "cancellations": True,
        "reminder_hours_before": 24,
    },
    "sms_notifications": {
        "enabled": False,
        "session_reminders": False,
        "reminder_hours_before": 2,
    },
}

_LAYOUT = """\
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
  <h2 style="color: #00BFA5;">{{ heading }}</h2>
  <p>Dear {{ name }},</p>
  {{ body | safe }}
  <p><a href="{{ portal_url }}">Open Kalm</a></p>
  <p style="color: #888; font-size: 12px;">Kalm Mental Wellness</p>
</div>
"""

_REMINDER_BODY = """\
<p>This is a reminder that your {{ session_type }} session with {{ counterpart }}
is scheduled for <strong>{{ when }}</strong>.</p>
<p>Please join a few minutes early to check your connection.</p>
"""

_NEW_BOOKING_BODY = """\
<p>{{ client_name }} has booked a {{ session_type }} session with you on
<strong>{{ when }}</strong> ({{ duration }} minutes).</p>
"""

_CANCELLATION_BODY = """\
<p>Your {{ session_type }} session scheduled for <strong>{{ when }}</strong>
has been cancelled.</p>
{% if reason %}<p>Reason: {{ reason }}</p>{% endif %}
"""


def _render(heading: str, name: str, body_template: str, **context) -> str:
    body = render_template_string(body_template, **context)
    return render_template_string(
        _LAYOUT,
        heading=heading,
        name=name or "there",
        body=body,
        portal_url=current_app.config.get("PORTAL_URL", "https://kalm.lk"),
    )


def _format_when(session: TherapySession) -> str:
    tz_name = None
    therapist = session.therapist
    if therapist is not None and therapist.availability is not None:
        tz_name = therapist.availability.timezone
    tz = resolve_timezone(tz_name or current_app.config.get("DEFAULT_TIMEZONE"))
    local = session.scheduled_time.replace(tzinfo=timezone.utc).astimezone(tz)
    return local.strftime("%A, %d %B %Y at %H:%M %Z")


def _therapist_name(session: TherapySession) -> str:
    return session.therapist.full_name if session.therapist else "your therapist"


def _queue(**fields) -> EmailNotification:
    notification = EmailNotification(status="pending", retry_count=0, **fields)
    db.session.add(notification)
    db.session.flush()
    return notification


def schedule_session_reminder(
    session: TherapySession,
    email: str,
    name: str | None,
    hours_before: float = 24,
    counterpart: str | None = None,
    now: datetime | None = None,
) -> EmailNotification | None:
    """Queue a reminder ``hours_before`` the session (fractions allowed).

    ``counterpart`` names the other participant and defaults to the
    therapist. Nothing is queued when the reminder time has already passed.
    """
    now = now or utc_now()
    send_at = session.scheduled_time - timedelta(hours=hours_before)
    if send_at <= now:
        logger.info("Skipping reminder for session %s, send time already passed", session.session_id)
        return None

    html = _render(
        "Session reminder",
        name,
        _REMINDER_BODY,
        session_type=session.session_type,
        counterpart=counterpart or _therapist_name(session),
        when=_format_when(session),
    )
    return _queue(
        recipient_email=email,
        recipient_name=name,
        subject="Reminder: your Kalm session is coming up",
        body=html,
        notification_type="session_reminder",
        session_id=session.session_id,
        scheduled_for=send_at,
    )


def schedule_new_booking_notification(
    session: TherapySession, therapist_email: str, therapist_name: str | None
) -> EmailNotification:
    html = _render(
        "New booking",
        therapist_name,
        _NEW_BOOKING_BODY,
        client_name=session.client_name or "A client",
        session_type=session.session_type,
        when=_format_when(session),
        duration=session.duration,
    )
    return _queue(
        recipient_email=therapist_email,
        recipient_name=therapist_name,
        subject="New session booked",
        body=html,
        notification_type="new_booking",
        session_id=session.session_id,
        scheduled_for=utc_now(),
    )


def schedule_cancellation_notification(
    session: TherapySession, email: str, name: str | None, reason: str | None = None
) -> EmailNotification:
    html = _render(
        "Session cancelled",
        name,
        _CANCELLATION_BODY,
        session_type=session.session_type,
        when=_format_when(session),
        reason=reason,
    )
    return _queue(
        recipient_email=email,
        recipient_name=name,
        subject="Your Kalm session was cancelled",
        body=html,
        notification_type="cancellation",
        session_id=session.session_id,
        scheduled_for=utc_now(),
    )


def pending_notifications(now: datetime | None = None, limit: int = 100) -> list[EmailNotification]:
    now = now or utc_now()
    return (
        EmailNotification.query.filter(
            EmailNotification.status == "pending",
            EmailNotification.scheduled_for <= now,
        )
        .order_by(EmailNotification.scheduled_for.asc())
        .limit(limit)
        .all()
    )


def mark_sent(notification: EmailNotification, sent_at: datetime | None = None) -> None:
    notification.status = "sent"
    notification.sent_at = sent_at or utc_now()


def mark_failed(notification: EmailNotification, retry_count: int) -> None:
    """Record a failed attempt; the notification gives up after MAX_RETRIES."""
    notification.retry_count = retry_count
    notification.status = "failed" if retry_count >= MAX_RETRIES else "pending"


def get_notification_settings(therapist_id: str) -> dict[str, object]:
    settings = db.session.get(NotificationSettings, therapist_id)
    if settings is None:
        data = copy.deepcopy(DEFAULT_NOTIFICATION_SETTINGS)
        data["therapist_id"] = therapist_id
        return data

    data = settings.to_dict()
    for channel, defaults in DEFAULT_NOTIFICATION_SETTINGS.items():
        data[channel] = {**defaults, **(data.get(channel) or {})}
    return data


def save_notification_settings(therapist_id: str, payload: dict) -> NotificationSettings:
    settings = db.session.get(NotificationSettings, therapist_id)
    if settings is None:
        settings = NotificationSettings(
            therapist_id=therapist_id,
            email_notifications=dict(DEFAULT_NOTIFICATION_SETTINGS["email_notifications"]),
            sms_notifications=dict(DEFAULT_NOTIFICATION_SETTINGS["sms_notifications"]),
        )
        db.session.add(settings)

    for channel in DEFAULT_NOTIFICATION_SETTINGS:
        if isinstance(payload.get(channel), dict):
            # Reassign so the JSON column is flagged dirty
            setattr(settings, channel, {**(getattr(settings, channel) or {}), **payload[channel]})
    db.session.flush()
    return settings


# --- BEGIN: SMTP dispatch ---


def send_email(to: str, subject: str, html: str) -> None:
    config = current_app.config
    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = config["MAIL_FROM"]
    msg["To"] = to
    msg.set_content("This message requires an HTML capable mail client.")
    msg.add_alternative(html, subtype="html")

    host, port = config["SMTP_HOST"], int(config["SMTP_PORT"])
    context = ssl.create_default_context()
    if port == 465:
        server = smtplib.SMTP_SSL(host, port, context=context, timeout=30)
    else:
        server = smtplib.SMTP(host, port, timeout=30)
    with server:
        if port != 465:
            server.starttls(context=context)
        if config.get("SMTP_USER"):
            server.login(config["SMTP_USER"], config["SMTP_PASSWORD"])
        server.send_message(msg)


def dispatch_pending(now: datetime | None = None, sender=send_email) -> dict[str, int]:
    """Send every due notification and record the outcome of each attempt."""
    counts = {"sent": 0, "retrying": 0, "failed": 0}
    for notification in pending_notifications(now):
        try:
            sender(notification.recipient_email, notification.subject, notification.body)
        except (smtplib.SMTPException, OSError) as exc:
            logger.warning(
                "Failed to send notification %s: %s", notification.notification_id, exc
            )
            mark_failed(notification, notification.retry_count + 1)
            counts["failed" if notification.status == "failed" else "retrying"] += 1
        else:
            mark_sent(notification)
            counts["sent"] += 1
        db.session.commit()

    logger.info(
        "Notification dispatch finished: %(sent)d sent, %(retrying)d retrying, %(failed)d failed",
        counts,
    )
    return counts
