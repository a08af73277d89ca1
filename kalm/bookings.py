"""Booking lifecycle: slot checks, finalizing paid bookings, session state changes."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from flask import current_app
from sqlalchemy.exc import IntegrityError

from . import availability as avail
from . import notifications
from .booking_flow import InvalidCouponError, coupon_discount, normalize_coupon
from .counters import next_id
from .extensions import db
from .models import (
    LIVE_SESSION_STATUSES,
    Payment,
    PendingPayment,
    SystemConfig,
    TherapistAvailability,
    TherapistProfile,
    TherapySession,
    User,
    utc_now,
)

logger = logging.getLogger(__name__)

SESSION_CONFIG_KEY = "session_config"
DEFAULT_SESSION_CONFIG = {"join_early_minutes": 15, "join_late_minutes": 30}


class BookingError(Exception):
    """A booking or session operation is not allowed in the current state."""

    status_code = 400
    error = "booking_error"


class SlotUnavailableError(BookingError):
    status_code = 409
    error = "slot_unavailable"


def slot_key(therapist_id: str, starts_at: datetime) -> str:
    return f"{therapist_id}@{starts_at.isoformat()}"


def booked_intervals(
    therapist_id: str,
    window_start: datetime | None = None,
    window_end: datetime | None = None,
) -> list[tuple[datetime, datetime]]:
    """(start, end) pairs for the therapist's scheduled and active sessions."""
    query = TherapySession.query.filter(
        TherapySession.therapist_id == therapist_id,
        TherapySession.status.in_(LIVE_SESSION_STATUSES),
    )
    if window_end is not None:
        query = query.filter(TherapySession.scheduled_time < window_end)
    intervals = []
    for session in query.all():
        end = session.scheduled_time + timedelta(minutes=session.duration or 60)
        if window_start is not None and end <= window_start:
            continue
        intervals.append((session.scheduled_time, end))
    return intervals


def has_conflict(therapist_id: str, starts_at: datetime, duration: int) -> bool:
    ends_at = starts_at + timedelta(minutes=duration)
    return any(
        start < ends_at and starts_at < end
        for start, end in booked_intervals(therapist_id, starts_at, ends_at)
    )


def _availability_dict(therapist: TherapistProfile) -> dict | None:
    record = therapist.availability
    return record.to_dict() if record is not None else None


def get_bookable_slot(therapist: TherapistProfile, starts_at: datetime, now: datetime | None = None) -> avail.Slot:
    """Return the slot starting at ``starts_at`` or raise SlotUnavailableError."""
    if not therapist.is_active:
        raise SlotUnavailableError("therapist is not accepting bookings")
    slot = avail.find_slot(
        _availability_dict(therapist),
        starts_at,
        booked_intervals(therapist.therapist_id),
        now=now or utc_now(),
        lead_minutes=current_app.config.get("BOOKING_LEAD_MINUTES", 15),
    )
    if slot is None:
        raise SlotUnavailableError("the selected time slot is no longer available")
    return slot


def create_pending_payment(
    client: User,
    therapist: TherapistProfile,
    slot: avail.Slot,
    service_type: str | None = None,
    service_name: str | None = None,
    coupon_code: str | None = None,
) -> PendingPayment:
    """Hold the slot's price, less any coupon, under a new order id.

    The booking number is committed straight away so the counter row is
    not locked while the gateway is called.
    """
    price = avail.slot_price(slot, therapist.hourly_rate)
    discount = 0
    if coupon_code:
        try:
            discount = coupon_discount(coupon_code, price)
        except InvalidCouponError as exc:
            raise BookingError(str(exc)) from exc
        coupon_code = normalize_coupon(coupon_code)

    booking_number = next_id("booking")
    db.session.commit()
    pending = PendingPayment(
        order_id=f"KALM-{booking_number}",
        booking_number=booking_number,
        client_uid=client.uid,
        therapist_id=therapist.therapist_id,
        scheduled_time=slot.starts_at,
        duration=slot.duration,
        session_type=slot.session_type,
        service_type=service_type,
        service_name=service_name,
        amount_cents=price * 100,
        discount_cents=discount * 100,
        coupon_code=coupon_code,
        currency=current_app.config.get("PAYMENT_CURRENCY", "lkr").upper(),
        status="pending",
    )
    db.session.add(pending)
    db.session.commit()
    return pending


def _local_slot(therapist: TherapistProfile, starts_at: datetime):
    record = therapist.availability
    tz = avail.resolve_timezone(record.timezone if record else current_app.config.get("DEFAULT_TIMEZONE"))
    local = starts_at.replace(tzinfo=timezone.utc).astimezone(tz)
    return local.date(), local.strftime("%H:%M")


def _mark_special_slot(therapist: TherapistProfile, starts_at: datetime, booking_id: str) -> None:
    record: TherapistAvailability | None = therapist.availability
    if record is None:
        return
    on_date, start_time = _local_slot(therapist, starts_at)
    updated = avail.mark_slot_booked(record.special_dates, on_date, start_time, booking_id)
    if updated is not None:
        record.special_dates = updated


def _release_special_slot(therapist: TherapistProfile | None, booking_id: str) -> None:
    if therapist is None or therapist.availability is None:
        return
    record = therapist.availability
    updated = avail.release_slot(record.special_dates, booking_id)
    if updated is not None:
        record.special_dates = updated


def _queue_booking_notifications(session: TherapySession, client: User, therapist: TherapistProfile) -> None:
    settings = notifications.get_notification_settings(therapist.therapist_id)
    email_settings = settings["email_notifications"]
    if therapist.email and email_settings.get("enabled"):
        if email_settings.get("new_bookings"):
            notifications.schedule_new_booking_notification(session, therapist.email, therapist.full_name)
        if email_settings.get("session_reminders"):
            notifications.schedule_session_reminder(
                session,
                therapist.email,
                therapist.full_name,
                hours_before=email_settings.get("reminder_hours_before", 24),
                counterpart=session.client_name or "your client",
            )
    # Clients have no notification settings of their own
    if client.email:
        notifications.schedule_session_reminder(session, client.email, client.display_name)


def _existing_booking(pending: PendingPayment, gateway_payment_id: str | None) -> TherapySession | None:
    if pending.session_id:
        return db.session.get(TherapySession, pending.session_id)
    if gateway_payment_id:
        payment = Payment.query.filter_by(gateway_payment_id=gateway_payment_id).first()
        if payment is not None and payment.session_id:
            return db.session.get(TherapySession, payment.session_id)
    return None


def finalize_booking(pending: PendingPayment, gateway_payment_id: str | None) -> tuple[TherapySession, bool]:
    """Turn a paid pending payment into a session and payment record.

    Returns ``(session, created)``. Calling it again for the same order
    returns the existing session. Raises SlotUnavailableError when another
    live session already overlaps the slot.
    """
    existing = _existing_booking(pending, gateway_payment_id)
    if existing is not None:
        return existing, False

    if pending.status != "pending":
        raise BookingError(f"order {pending.order_id} is {pending.status}")

    if has_conflict(pending.therapist_id, pending.scheduled_time, pending.duration):
        raise SlotUnavailableError("the selected time slot was booked by someone else")

    client = pending.client
    therapist = pending.therapist
    order_id = pending.order_id
    try:
        session = TherapySession(
            booking_id=order_id,
            booking_number=pending.booking_number,
            therapist_id=therapist.therapist_id,
            client_uid=client.uid,
            client_name=client.display_name or client.username,
            session_type=pending.session_type,
            status="scheduled",
            scheduled_time=pending.scheduled_time,
            duration=pending.duration,
            amount_cents=pending.final_amount_cents,
            currency=pending.currency,
            slot_key=slot_key(therapist.therapist_id, pending.scheduled_time),
        )
        db.session.add(session)
        db.session.flush()

        payment = Payment(
            sequential_id=next_id("payment"),
            order_id=order_id,
            session_id=session.session_id,
            client_uid=client.uid,
            therapist_id=therapist.therapist_id,
            client_name=session.client_name,
            therapist_name=therapist.full_name,
            amount_cents=pending.amount_cents,
            discount_cents=pending.discount_cents or 0,
            final_amount_cents=pending.final_amount_cents,
            currency=pending.currency,
            payment_method="stripe",
            payment_status="completed",
            gateway_payment_id=gateway_payment_id,
            coupon_code=pending.coupon_code,
            payout_status="pending",
        )
        db.session.add(payment)

        pending.status = "completed"
        pending.session_id = session.session_id
        _mark_special_slot(therapist, session.scheduled_time, order_id)
        _queue_booking_notifications(session, client, therapist)
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        logger.warning("Concurrent finalization detected for order %s", order_id)
        pending = db.session.get(PendingPayment, order_id)
        existing = _existing_booking(pending, gateway_payment_id) if pending else None
        if existing is not None:
            return existing, False
        raise SlotUnavailableError("the selected time slot was booked by someone else") from exc

    logger.info("Booked session %s for order %s", session.session_id, order_id)
    return session, True


def mark_conflict(pending: PendingPayment, refunded: bool = True) -> None:
    """Close a paid order whose slot was lost.

    An order whose refund did not go through is kept as ``refund_failed``
    so the next callback or webhook retries the refund.
    """
    pending.status = "conflict" if refunded else "refund_failed"
    db.session.commit()


# --- BEGIN: session state changes ---


def start_session(session: TherapySession, now: datetime | None = None) -> TherapySession:
    if session.status != "scheduled":
        raise BookingError(f"cannot start a {session.status} session")
    session.status = "active"
    session.start_time = now or utc_now()
    db.session.commit()
    return session


def end_session(session: TherapySession, notes: str | None = None, now: datetime | None = None) -> TherapySession:
    if session.status != "active":
        raise BookingError(f"cannot end a {session.status} session")
    session.status = "completed"
    session.end_time = now or utc_now()
    session.slot_key = None
    if notes is not None and notes.strip():
        session.notes = notes.strip()
    db.session.commit()
    return session


def cancel_session(session: TherapySession, cancelled_by: User, reason: str | None = None) -> TherapySession:
    """Cancel a scheduled session, free its slot and notify the other party."""
    if session.status != "scheduled":
        raise BookingError(f"cannot cancel a {session.status} session")

    session.status = "cancelled"
    session.slot_key = None
    if reason:
        session.notes = reason.strip()
    _release_special_slot(session.therapist, session.booking_id)

    client = session.client
    therapist = session.therapist
    if client is not None and client.email and client.uid != cancelled_by.uid:
        notifications.schedule_cancellation_notification(session, client.email, client.display_name, reason)
    if therapist is not None and therapist.email and therapist.user_uid != cancelled_by.uid:
        notifications.schedule_cancellation_notification(session, therapist.email, therapist.full_name, reason)

    db.session.commit()
    logger.info("Session %s cancelled by %s", session.session_id, cancelled_by.uid)
    return session


def get_session_config() -> dict[str, int]:
    record = db.session.get(SystemConfig, SESSION_CONFIG_KEY)
    return {**DEFAULT_SESSION_CONFIG, **(record.value if record else {})}


def save_session_config(values: dict, updated_by: str) -> dict[str, int]:
    config = get_session_config()
    for key in DEFAULT_SESSION_CONFIG:
        if key in values:
            value = values[key]
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise BookingError(f"{key} must be a non-negative integer")
            config[key] = value

    record = db.session.get(SystemConfig, SESSION_CONFIG_KEY)
    if record is None:
        record = SystemConfig(key=SESSION_CONFIG_KEY)
        db.session.add(record)
    record.value = config
    record.updated_by = updated_by
    db.session.commit()
    return config


def can_join(session: TherapySession, now: datetime | None = None, config: dict | None = None) -> bool:
    if session.status == "active":
        return True
    if session.status != "scheduled":
        return False
    now = now or utc_now()
    config = config or get_session_config()
    opens = session.scheduled_time - timedelta(minutes=config["join_early_minutes"])
    closes = session.scheduled_time + timedelta(minutes=session.duration + config["join_late_minutes"])
    return opens < now < closes


def mark_missed(now: datetime | None = None) -> int:
    """Flag scheduled sessions whose join window has closed as missed."""
    now = now or utc_now()
    late = get_session_config()["join_late_minutes"]
    candidates = TherapySession.query.filter(
        TherapySession.status == "scheduled",
        TherapySession.scheduled_time < now,
    ).all()

    count = 0
    for session in candidates:
        if session.scheduled_time + timedelta(minutes=session.duration + late) < now:
            session.status = "missed"
            session.slot_key = None
            count += 1
    db.session.commit()
    if count:
        logger.info("Marked %d sessions as missed", count)
    return count
