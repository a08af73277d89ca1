"""Database models for the Kalm backend."""
from __future__ import annotations

import uuid
from datetime import datetime, timezone

from .extensions import db

USER_ROLES = ("client", "therapist", "admin", "superadmin")
SESSION_TYPES = ("video", "audio", "chat")
SESSION_STATUSES = ("scheduled", "active", "completed", "cancelled", "missed")
LIVE_SESSION_STATUSES = ("scheduled", "active")
PAYMENT_STATUSES = ("pending", "completed", "failed", "refunded")
PAYOUT_STATUSES = ("pending", "scheduled", "paid")
NOTIFICATION_TYPES = ("session_reminder", "new_booking", "cancellation", "rescheduled")
NOTIFICATION_STATUSES = ("pending", "sent", "failed")


def utc_now() -> datetime:
    """Return the current UTC time as a naive datetime.

    All DateTime columns hold naive UTC values.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return uuid.uuid4().hex


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class User(db.Model):
    __tablename__ = "users"

    uid = db.Column(db.String(64), primary_key=True, default=new_id)
    sequential_id = db.Column(db.Integer, unique=True)
    email = db.Column(db.String(255), unique=True, nullable=True)
    username = db.Column(db.String(100), unique=True, nullable=True)
    display_name = db.Column(db.String(150))
    phone = db.Column(db.String(30))
    role = db.Column(
        db.Enum(
            *USER_ROLES,
            name="user_role",
            native_enum=False,
            validate_strings=True,
        ),
        nullable=False,
        default="client",
    )
    is_anonymous = db.Column(db.Boolean, nullable=False, default=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    updated_at = db.Column(
        db.DateTime,
        nullable=False,
        default=utc_now,
        onupdate=utc_now,
    )

    auth_account = db.relationship("AuthAccount", back_populates="user", uselist=False)
    therapist_profile = db.relationship("TherapistProfile", back_populates="user", uselist=False)

    def to_dict(self) -> dict[str, object]:
        return {
            "uid": self.uid,
            "id": self.sequential_id,
            "email": self.email,
            "username": self.username,
            "display_name": self.display_name,
            "phone": self.phone,
            "role": self.role,
            "is_anonymous": bool(self.is_anonymous),
            "is_active": bool(self.is_active),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class AuthAccount(db.Model):
    """Credentials attached to a user (password hash or external provider)."""

    __tablename__ = "auth_accounts"

    uid = db.Column(db.String(64), db.ForeignKey("users.uid"), primary_key=True)
    provider = db.Column(
        db.Enum(
            "password",
            "anonymous",
            "google",
            name="auth_provider",
            native_enum=False,
            validate_strings=True,
        ),
        nullable=False,
        default="password",
    )
    password_hash = db.Column(db.String(255), nullable=True)
    google_subject = db.Column(db.String(255), unique=True, nullable=True)
    last_login_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    updated_at = db.Column(db.DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    user = db.relationship("User", back_populates="auth_account")


class TherapistProfile(db.Model):
    __tablename__ = "therapists"

    therapist_id = db.Column(db.String(64), primary_key=True, default=new_id)
    user_uid = db.Column(db.String(64), db.ForeignKey("users.uid"), unique=True, nullable=True)
    sequential_id = db.Column(db.Integer, unique=True)
    first_name = db.Column(db.String(100), nullable=False)
    last_name = db.Column(db.String(100), nullable=False)
    email = db.Column(db.String(255))
    credentials = db.Column(db.JSON, nullable=False, default=list)
    specializations = db.Column(db.JSON, nullable=False, default=list)
    languages = db.Column(db.JSON, nullable=False, default=list)
    services = db.Column(db.JSON, nullable=False, default=list)
    session_formats = db.Column(db.JSON, nullable=False, default=list)
    bio = db.Column(db.Text)
    experience_years = db.Column(db.Integer, nullable=False, default=0)
    rating = db.Column(db.Float, nullable=False, default=5.0)
    review_count = db.Column(db.Integer, nullable=False, default=0)
    hourly_rate = db.Column(db.Integer, nullable=False, default=4500)
    profile_photo = db.Column(db.String(500))
    is_available = db.Column(db.Boolean, nullable=False, default=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    next_available_slot = db.Column(db.String(100))
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    updated_at = db.Column(
        db.DateTime,
        nullable=False,
        default=utc_now,
        onupdate=utc_now,
    )

    user = db.relationship("User", back_populates="therapist_profile")
    availability = db.relationship(
        "TherapistAvailability",
        back_populates="therapist",
        uselist=False,
        cascade="all, delete-orphan",
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @property
    def service_category(self) -> str:
        """Bucket the free-text services into one of the directory categories."""
        services = " ".join(self.services or []).lower()
        if "teen" in services or "adolescent" in services:
            return "TEENS"
        if "couple" in services or "family" in services:
            return "FAMILY_COUPLES"
        if "lgbtq" in services or "lgbt" in services:
            return "LGBTQIA"
        return "INDIVIDUALS"

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.therapist_id,
            "therapist_id_int": self.sequential_id,
            "user_uid": self.user_uid,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "name": self.full_name,
            "email": self.email,
            "credentials": self.credentials or [],
            "specializations": self.specializations or [],
            "languages": self.languages or [],
            "services": self.services or [],
            "service_category": self.service_category,
            "session_formats": self.session_formats or [],
            "bio": self.bio,
            "experience": self.experience_years,
            "rating": self.rating,
            "review_count": self.review_count,
            "hourly_rate": self.hourly_rate,
            "profile_photo": self.profile_photo,
            "is_available": bool(self.is_available),
            "is_active": bool(self.is_active),
            "next_available_slot": self.next_available_slot,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class TherapistAvailability(db.Model):
    """Weekly schedule plus date-specific overrides for one therapist."""

    __tablename__ = "therapist_availability"

    therapist_id = db.Column(db.String(64), db.ForeignKey("therapists.therapist_id"), primary_key=True)
    weekly_schedule = db.Column(db.JSON, nullable=False, default=list)
    special_dates = db.Column(db.JSON, nullable=False, default=list)
    timezone = db.Column(db.String(64), nullable=False, default="Asia/Colombo")
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    updated_at = db.Column(
        db.DateTime,
        nullable=False,
        default=utc_now,
        onupdate=utc_now,
    )

    therapist = db.relationship("TherapistProfile", back_populates="availability")

    def to_dict(self) -> dict[str, object]:
        return {
            "therapist_id": self.therapist_id,
            "weekly_schedule": self.weekly_schedule or [],
            "special_dates": self.special_dates or [],
            "timezone": self.timezone,
            "is_active": bool(self.is_active),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class AvailabilitySettings(db.Model):
    __tablename__ = "availability_settings"

    therapist_id = db.Column(db.String(64), db.ForeignKey("therapists.therapist_id"), primary_key=True)
    settings = db.Column(db.JSON, nullable=False, default=dict)
    updated_at = db.Column(db.DateTime, nullable=False, default=utc_now, onupdate=utc_now)


class NotificationSettings(db.Model):
    __tablename__ = "notification_settings"

    therapist_id = db.Column(db.String(64), db.ForeignKey("therapists.therapist_id"), primary_key=True)
    email_notifications = db.Column(db.JSON, nullable=False, default=dict)
    sms_notifications = db.Column(db.JSON, nullable=False, default=dict)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    updated_at = db.Column(db.DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    def to_dict(self) -> dict[str, object]:
        return {
            "therapist_id": self.therapist_id,
            "email_notifications": self.email_notifications or {},
            "sms_notifications": self.sms_notifications or {},
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class TherapySession(db.Model):
    """A confirmed, paid booking between a client and a therapist."""

    __tablename__ = "sessions"

    session_id = db.Column(db.String(64), primary_key=True, default=new_id)
    booking_id = db.Column(db.String(64), nullable=False, index=True)
    booking_number = db.Column(db.Integer)
    therapist_id = db.Column(db.String(64), db.ForeignKey("therapists.therapist_id"), nullable=False)
    client_uid = db.Column(db.String(64), db.ForeignKey("users.uid"), nullable=False)
    client_name = db.Column(db.String(150))
    session_type = db.Column(
        db.Enum(
            *SESSION_TYPES,
            name="session_type",
            native_enum=False,
            validate_strings=True,
        ),
        nullable=False,
        default="video",
    )
    status = db.Column(
        db.Enum(
            *SESSION_STATUSES,
            name="session_status",
            native_enum=False,
            validate_strings=True,
        ),
        nullable=False,
        default="scheduled",
    )
    scheduled_time = db.Column(db.DateTime, nullable=False)
    duration = db.Column(db.Integer, nullable=False, default=60)
    start_time = db.Column(db.DateTime)
    end_time = db.Column(db.DateTime)
    notes = db.Column(db.Text)
    amount_cents = db.Column(db.Integer, nullable=False, default=0)
    currency = db.Column(db.String(10), nullable=False, default="LKR")
    # "<therapist_id>@<start iso>" while the session is live; cleared on cancel
    slot_key = db.Column(db.String(160), unique=True, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    updated_at = db.Column(
        db.DateTime,
        nullable=False,
        default=utc_now,
        onupdate=utc_now,
    )

    therapist = db.relationship("TherapistProfile")
    client = db.relationship("User")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.session_id,
            "booking_id": self.booking_id,
            "booking_number": self.booking_number,
            "therapist_id": self.therapist_id,
            "therapist_name": self.therapist.full_name if self.therapist else None,
            "client_id": self.client_uid,
            "client_name": self.client_name,
            "session_type": self.session_type,
            "status": self.status,
            "scheduled_time": _iso(self.scheduled_time),
            "duration": self.duration,
            "start_time": _iso(self.start_time),
            "end_time": _iso(self.end_time),
            "notes": self.notes,
            "amount": self.amount_cents / 100.0,
            "currency": self.currency,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class PendingPayment(db.Model):
    """Booking selections held between checkout redirect and gateway callback."""

    __tablename__ = "pending_payments"

    order_id = db.Column(db.String(64), primary_key=True)
    booking_number = db.Column(db.Integer)
    client_uid = db.Column(db.String(64), db.ForeignKey("users.uid"), nullable=False)
    therapist_id = db.Column(db.String(64), db.ForeignKey("therapists.therapist_id"), nullable=False)
    scheduled_time = db.Column(db.DateTime, nullable=False)
    duration = db.Column(db.Integer, nullable=False, default=60)
    session_type = db.Column(db.String(20), nullable=False, default="video")
    service_type = db.Column(db.String(100))
    service_name = db.Column(db.String(150))
    amount_cents = db.Column(db.Integer, nullable=False)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    coupon_code = db.Column(db.String(50))
    currency = db.Column(db.String(10), nullable=False, default="LKR")
    checkout_session_id = db.Column(db.String(255), unique=True)
    status = db.Column(
        db.Enum(
            "pending",
            "completed",
            "failed",
            "conflict",
            "refund_failed",
            name="pending_payment_status",
            native_enum=False,
            validate_strings=True,
        ),
        nullable=False,
        default="pending",
    )
    session_id = db.Column(db.String(64), db.ForeignKey("sessions.session_id"), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    updated_at = db.Column(db.DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    client = db.relationship("User")
    therapist = db.relationship("TherapistProfile")

    @property
    def final_amount_cents(self) -> int:
        return max(0, self.amount_cents - (self.discount_cents or 0))

    def to_dict(self) -> dict[str, object]:
        return {
            "order_id": self.order_id,
            "client_id": self.client_uid,
            "therapist_id": self.therapist_id,
            "scheduled_time": _iso(self.scheduled_time),
            "duration": self.duration,
            "session_type": self.session_type,
            "service_name": self.service_name,
            "amount": self.amount_cents / 100.0,
            "discount_amount": (self.discount_cents or 0) / 100.0,
            "final_amount": self.final_amount_cents / 100.0,
            "currency": self.currency,
            "status": self.status,
            "session_id": self.session_id,
        }


class Payment(db.Model):
    __tablename__ = "payments"

    payment_id = db.Column(db.String(64), primary_key=True, default=new_id)
    sequential_id = db.Column(db.Integer, unique=True)
    order_id = db.Column(db.String(64), nullable=False, index=True)
    session_id = db.Column(db.String(64), db.ForeignKey("sessions.session_id"), nullable=True)
    client_uid = db.Column(db.String(64), db.ForeignKey("users.uid"), nullable=False)
    therapist_id = db.Column(db.String(64), db.ForeignKey("therapists.therapist_id"), nullable=False)
    client_name = db.Column(db.String(150))
    therapist_name = db.Column(db.String(150))
    amount_cents = db.Column(db.Integer, nullable=False)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    final_amount_cents = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(10), nullable=False, default="LKR")
    payment_method = db.Column(db.String(30), nullable=False, default="stripe")
    payment_status = db.Column(
        db.Enum(
            *PAYMENT_STATUSES,
            name="payment_status",
            native_enum=False,
            validate_strings=True,
        ),
        nullable=False,
        default="completed",
    )
    # Gateway identifier (Stripe payment intent id)
    gateway_payment_id = db.Column(db.String(255), nullable=True, unique=True)
    coupon_code = db.Column(db.String(50))
    payout_status = db.Column(
        db.Enum(
            *PAYOUT_STATUSES,
            name="payout_status",
            native_enum=False,
            validate_strings=True,
        ),
        nullable=False,
        default="pending",
    )
    payout_date = db.Column(db.DateTime)
    therapist_payout_cents = db.Column(db.Integer)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    updated_at = db.Column(db.DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    session = db.relationship("TherapySession")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.payment_id,
            "payment_id_int": self.sequential_id,
            "order_id": self.order_id,
            "session_id": self.session_id,
            "client_id": self.client_uid,
            "therapist_id": self.therapist_id,
            "client_name": self.client_name,
            "therapist_name": self.therapist_name,
            "amount": self.amount_cents / 100.0,
            "discount_amount": (self.discount_cents or 0) / 100.0,
            "final_amount": self.final_amount_cents / 100.0,
            "currency": self.currency,
            "payment_method": self.payment_method,
            "payment_status": self.payment_status,
            "gateway_payment_id": self.gateway_payment_id,
            "coupon_code": self.coupon_code,
            "payout_status": self.payout_status,
            "payout_date": _iso(self.payout_date),
            "therapist_payout_amount": (
                self.therapist_payout_cents / 100.0 if self.therapist_payout_cents is not None else None
            ),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class WebhookLog(db.Model):
    """One row per processed gateway event, used to drop redeliveries."""

    __tablename__ = "webhook_logs"

    event_id = db.Column(db.String(255), primary_key=True)
    event_type = db.Column(db.String(100), nullable=False)
    order_id = db.Column(db.String(64))
    status = db.Column(db.String(30), nullable=False)
    payload = db.Column(db.JSON, nullable=True)
    processed_at = db.Column(db.DateTime, nullable=False, default=utc_now)


class EmailNotification(db.Model):
    __tablename__ = "email_notifications"

    notification_id = db.Column(db.Integer, primary_key=True)
    recipient_email = db.Column(db.String(255), nullable=False)
    recipient_name = db.Column(db.String(150))
    subject = db.Column(db.String(255), nullable=False)
    body = db.Column(db.Text, nullable=False)
    notification_type = db.Column(
        db.Enum(
            *NOTIFICATION_TYPES,
            name="notification_type",
            native_enum=False,
            validate_strings=True,
        ),
        nullable=False,
    )
    session_id = db.Column(db.String(64), nullable=True, index=True)
    scheduled_for = db.Column(db.DateTime, nullable=False, default=utc_now, index=True)
    sent_at = db.Column(db.DateTime)
    status = db.Column(
        db.Enum(
            *NOTIFICATION_STATUSES,
            name="notification_status",
            native_enum=False,
            validate_strings=True,
        ),
        nullable=False,
        default="pending",
    )
    retry_count = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.notification_id,
            "recipient_email": self.recipient_email,
            "recipient_name": self.recipient_name,
            "subject": self.subject,
            "type": self.notification_type,
            "session_id": self.session_id,
            "scheduled_for": _iso(self.scheduled_for),
            "sent_at": _iso(self.sent_at),
            "status": self.status,
            "retry_count": self.retry_count,
            "created_at": _iso(self.created_at),
        }


class Counter(db.Model):
    __tablename__ = "counters"

    counter_type = db.Column(db.String(30), primary_key=True)
    count = db.Column(db.Integer, nullable=False)


class SystemConfig(db.Model):
    """Key/value platform settings editable by admins."""

    __tablename__ = "system_config"

    key = db.Column(db.String(100), primary_key=True)
    value = db.Column(db.JSON, nullable=False, default=dict)
    updated_by = db.Column(db.String(64), nullable=False, default="system")
    updated_at = db.Column(db.DateTime, nullable=False, default=utc_now, onupdate=utc_now)


class ErrorLog(db.Model):
    __tablename__ = "error_logs"

    error_id = db.Column(db.Integer, primary_key=True)
    message = db.Column(db.Text, nullable=False)
    stack = db.Column(db.Text)
    user_uid = db.Column(db.String(64))
    user_role = db.Column(db.String(30))
    user_agent = db.Column(db.String(500))
    url = db.Column(db.String(500))
    environment = db.Column(db.String(30), nullable=False, default="production")
    error_type = db.Column(
        db.Enum(
            "auth",
            "payment",
            "storage",
            "network",
            "ui",
            "unknown",
            name="error_type",
            native_enum=False,
            validate_strings=True,
        ),
        nullable=False,
        default="unknown",
    )
    additional_data = db.Column(db.JSON, nullable=True)
    timestamp = db.Column(db.DateTime, nullable=False, default=utc_now, index=True)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.error_id,
            "message": self.message,
            "stack": self.stack,
            "user_id": self.user_uid,
            "user_role": self.user_role,
            "user_agent": self.user_agent,
            "url": self.url,
            "environment": self.environment,
            "error_type": self.error_type,
            "additional_data": self.additional_data,
            "timestamp": _iso(self.timestamp),
        }
