"""HTTP routes for the Kalm backend."""
from __future__ import annotations

from datetime import datetime, timezone

from flask import Blueprint, current_app, jsonify, request, session
from google.auth.transport import requests as google_requests
from google.oauth2 import id_token as google_id_token
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from werkzeug.security import check_password_hash, generate_password_hash

from . import availability as avail
from . import bookings, notifications, payments
from .booking_flow import BookingFlow, BookingFlowError, InvalidCouponError
from .counters import next_id
from .error_log import log_error
from .extensions import db
from .models import (
    AuthAccount,
    AvailabilitySettings,
    PendingPayment,
    TherapistAvailability,
    TherapistProfile,
    TherapySession,
    User,
    WebhookLog,
    utc_now,
)

bp = Blueprint("api", __name__)

ADMIN_ROLES = ("admin", "superadmin")
BOOKING_FLOW_KEY = "booking_flow"
MIN_PASSWORD_LENGTH = 6


@bp.get("/health")
def health_check() -> tuple[dict[str, str], int]:
    """
    Expose a simple uptime check endpoint.
    ---
    tags:
      - Health
    responses:
      200:
        description: Service is healthy and running.
    """
    return jsonify({"status": "ok"}), 200


@bp.get("/db-health")
def database_health() -> tuple[dict[str, str], int]:
    """Check connectivity to the configured database.
    ---
    tags:
      - Health
    responses:
      200:
        description: Database connection is ok.
      500:
        description: Database connection failed.
    """
    try:
        db.session.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        current_app.logger.exception("Database connectivity check failed", exc_info=exc)
        return jsonify({"database": "unavailable"}), 500

    return jsonify({"database": "ok"}), 200


# --- BEGIN: token helpers ---


def _serializer() -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(current_app.config["SECRET_KEY"], salt="auth-token")


def _build_token(payload: dict[str, object]) -> str:
    return _serializer().dumps(payload)


def get_jwt_identity() -> str | None:
    """Extract and validate the user uid from the Authorization header token.

    Returns the uid if the token is valid, None if missing, invalid or expired.
    """
    auth_header = request.headers.get("Authorization", "")

    if not auth_header.startswith("Bearer "):
        return None

    token = auth_header[7:]

    try:
        payload = _serializer().loads(token, max_age=current_app.config.get("TOKEN_MAX_AGE", 86400))
    except (BadSignature, SignatureExpired):
        return None
    return payload.get("uid") if isinstance(payload, dict) else None


def require_user(*roles: str):
    """Return ``(user, None)`` for an active caller holding one of ``roles``.

    Otherwise returns ``(None, error_response)``. With no roles any
    authenticated user passes.
    """
    uid = get_jwt_identity()
    if not uid:
        return None, (jsonify({"error": "unauthorized", "message": "Authentication required"}), 401)

    user = db.session.get(User, uid)
    if user is None or not user.is_active:
        return None, (jsonify({"error": "unauthorized", "message": "Authentication required"}), 401)

    if roles and user.role not in roles:
        return None, (jsonify({"error": "forbidden", "message": "You do not have access to this resource"}), 403)

    return user, None


def _auth_response(user: User, status: int) -> tuple[dict[str, object], int]:
    token = _build_token({"uid": user.uid, "role": user.role})
    return jsonify({"token": token, "user": user.to_dict()}), status


def _parse_instant(value) -> datetime | None:
    """Parse an ISO-8601 string into a naive UTC datetime."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


# --- END: token helpers ---


# --- BEGIN: authentication ---


@bp.post("/auth/register")
def register_user() -> tuple[dict[str, object], int]:
    """Register a new client with email and password.
    ---
    tags:
      - Authentication
    parameters:
      - name: body
        in: body
        required: true
        schema:
          type: object
          properties:
            email:
              type: string
            password:
              type: string
            display_name:
              type: string
            phone:
              type: string
          required:
            - email
            - password
            - display_name
    responses:
      201:
        description: User registered successfully
      400:
        description: Invalid payload
      409:
        description: Email already in use
      500:
        description: Server error
    """
    payload = request.get_json(silent=True) or {}

    email = (payload.get("email") or "").strip().lower()
    password = payload.get("password") or ""
    display_name = (payload.get("display_name") or "").strip()
    phone = (payload.get("phone") or "").strip() or None

    if not email or not password or not display_name:
        return (
            jsonify({"error": "invalid_payload", "message": "email, password, and display_name are required"}),
            400,
        )
    if "@" not in email:
        return jsonify({"error": "invalid_payload", "message": "email address is not valid"}), 400
    if len(password) < MIN_PASSWORD_LENGTH:
        return (
            jsonify({"error": "invalid_payload", "message": f"password must be at least {MIN_PASSWORD_LENGTH} characters"}),
            400,
        )

    if User.query.filter_by(email=email).first():
        return jsonify({"error": "conflict", "message": "email address is already in use"}), 409

    try:
        new_user = User(
            email=email,
            display_name=display_name,
            phone=phone,
            role="client",
            sequential_id=next_id("client"),
        )
        db.session.add(new_user)
        db.session.flush()

        db.session.add(
            AuthAccount(uid=new_user.uid, provider="password", password_hash=generate_password_hash(password))
        )
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return jsonify({"error": "conflict", "message": "email address is already in use"}), 409
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to register new user", exc_info=exc)
        return jsonify({"error": "database_error"}), 500

    return _auth_response(new_user, 201)


@bp.post("/auth/anonymous")
def register_anonymous() -> tuple[dict[str, object], int]:
    """Create an anonymous client account identified by username only.
    ---
    tags:
      - Authentication
    responses:
      201:
        description: Anonymous account created
      400:
        description: Invalid payload
      409:
        description: Username already taken
    """
    payload = request.get_json(silent=True) or {}

    username = (payload.get("username") or "").strip()
    password = payload.get("password") or ""

    if not username or not password:
        return jsonify({"error": "invalid_payload", "message": "username and password are required"}), 400
    if "@" in username:
        return jsonify({"error": "invalid_payload", "message": "username must not contain '@'"}), 400
    if len(password) < MIN_PASSWORD_LENGTH:
        return (
            jsonify({"error": "invalid_payload", "message": f"password must be at least {MIN_PASSWORD_LENGTH} characters"}),
            400,
        )

    if User.query.filter_by(username=username).first():
        return jsonify({"error": "conflict", "message": "username is already taken"}), 409

    try:
        new_user = User(
            username=username,
            display_name=username,
            email=None,
            is_anonymous=True,
            role="client",
            sequential_id=next_id("client"),
        )
        db.session.add(new_user)
        db.session.flush()
        db.session.add(
            AuthAccount(uid=new_user.uid, provider="anonymous", password_hash=generate_password_hash(password))
        )
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return jsonify({"error": "conflict", "message": "username is already taken"}), 409
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to create anonymous user", exc_info=exc)
        return jsonify({"error": "database_error"}), 500

    return _auth_response(new_user, 201)


@bp.post("/auth/login")
def login() -> tuple[dict[str, object], int]:
    """Authenticate by email or username and password.
    ---
    tags:
      - Authentication
    parameters:
      - name: body
        in: body
        required: true
        schema:
          type: object
          properties:
            identifier:
              type: string
              description: Email address, or username for anonymous accounts
            password:
              type: string
    responses:
      200:
        description: Login successful, returns access token
      400:
        description: Missing credentials
      401:
        description: Invalid credentials
      403:
        description: Account disabled
    """
    payload = request.get_json(silent=True) or {}

    identifier = (payload.get("identifier") or payload.get("email") or payload.get("username") or "").strip()
    password = payload.get("password") or ""

    if not identifier or not password:
        return jsonify({"error": "invalid_payload", "message": "identifier and password are required"}), 400

    lookup = User.email == identifier.lower() if "@" in identifier else User.username == identifier
    record = (
        db.session.query(User, AuthAccount)
        .join(AuthAccount, AuthAccount.uid == User.uid)
        .filter(lookup)
        .first()
    )

    if not record:
        return jsonify({"error": "unauthorized", "message": "invalid credentials"}), 401

    user, auth_account = record

    if not auth_account.password_hash or not check_password_hash(auth_account.password_hash, password):
        return jsonify({"error": "unauthorized", "message": "invalid credentials"}), 401

    if not user.is_active:
        return jsonify({"error": "forbidden", "message": "this account has been disabled"}), 403

    auth_account.last_login_at = utc_now()

    try:
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to update last login timestamp", exc_info=exc)
        return jsonify({"error": "database_error"}), 500

    return _auth_response(user, 200)


@bp.post("/auth/google")
def google_sign_in() -> tuple[dict[str, object], int]:
    """Sign in with a Google ID token, creating a client profile on first use.
    ---
    tags:
      - Authentication
    responses:
      200:
        description: Existing user signed in
      201:
        description: New client profile created
      401:
        description: Token could not be verified
    """
    payload = request.get_json(silent=True) or {}
    token = payload.get("id_token") or payload.get("credential")
    if not token:
        return jsonify({"error": "invalid_payload", "message": "id_token is required"}), 400

    client_id = current_app.config.get("GOOGLE_CLIENT_ID")
    if not client_id:
        current_app.logger.warning("Google sign-in requested but GOOGLE_CLIENT_ID is not configured")
        return jsonify({"error": "server_error", "message": "Google sign-in is not available"}), 500

    try:
        claims = google_id_token.verify_oauth2_token(token, google_requests.Request(), client_id)
    except ValueError as exc:
        current_app.logger.warning("Rejected Google ID token: %s", exc)
        return jsonify({"error": "unauthorized", "message": "invalid Google token"}), 401

    subject = claims.get("sub")
    email = (claims.get("email") or "").strip().lower() or None
    if not subject:
        return jsonify({"error": "unauthorized", "message": "invalid Google token"}), 401

    account = AuthAccount.query.filter_by(google_subject=subject).first()
    user = account.user if account else None
    if user is None and email:
        user = User.query.filter_by(email=email).first()

    if user is not None and not user.is_active:
        return jsonify({"error": "forbidden", "message": "this account has been disabled"}), 403

    status = 200
    try:
        if user is None:
            user = User(
                email=email,
                display_name=claims.get("name") or (email.split("@")[0] if email else "Kalm user"),
                role="client",
                sequential_id=next_id("client"),
            )
            db.session.add(user)
            db.session.flush()
            account = AuthAccount(uid=user.uid, provider="google", google_subject=subject)
            db.session.add(account)
            status = 201
        else:
            account = user.auth_account
            if account is None:
                account = AuthAccount(uid=user.uid, provider="google", google_subject=subject)
                db.session.add(account)
            elif account.google_subject is None:
                account.google_subject = subject

        account.last_login_at = utc_now()
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to sign in with Google", exc_info=exc)
        return jsonify({"error": "database_error"}), 500

    return _auth_response(user, status)


@bp.post("/auth/logout")
def logout() -> tuple[dict[str, object], int]:
    """Acknowledge sign-out; tokens are stateless so the client discards its copy.
    ---
    tags:
      - Authentication
    responses:
      200:
        description: Signed out
    """
    session.pop(BOOKING_FLOW_KEY, None)
    return jsonify({"message": "signed out"}), 200


@bp.get("/auth/me")
def get_me() -> tuple[dict[str, object], int]:
    """Return the profile of the authenticated user.
    ---
    tags:
      - Authentication
    security:
      - Bearer: []
    responses:
      200:
        description: Current user
      401:
        description: Authentication required
    """
    user, error = require_user()
    if error:
        return error

    data = user.to_dict()
    if user.therapist_profile is not None:
        data["therapist_id"] = user.therapist_profile.therapist_id
    return jsonify({"user": data}), 200


@bp.put("/users/me")
def update_my_profile() -> tuple[dict[str, object], int]:
    """Update display name and phone for the authenticated user.
    ---
    tags:
      - Users
    security:
      - Bearer: []
    responses:
      200:
        description: Profile updated
      400:
        description: Invalid payload
      401:
        description: Authentication required
    """
    user, error = require_user()
    if error:
        return error

    payload = request.get_json(silent=True) or {}
    if "display_name" in payload:
        display_name = (payload.get("display_name") or "").strip()
        if not display_name:
            return jsonify({"error": "invalid_payload", "message": "display_name cannot be empty"}), 400
        user.display_name = display_name
    if "phone" in payload:
        user.phone = (payload.get("phone") or "").strip() or None

    try:
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to update profile", exc_info=exc)
        return jsonify({"error": "database_error"}), 500

    return jsonify({"user": user.to_dict()}), 200


# --- END: authentication ---


# --- BEGIN: therapist directory ---


def _as_bool(value) -> bool | None:
    if value is None or value == "":
        return None
    return str(value).strip().lower() in {"1", "true", "yes"}


def _contains(values, needle: str) -> bool:
    needle = needle.strip().lower()
    return any(needle in str(value).lower() for value in values or [])


@bp.get("/therapists")
def list_therapists() -> tuple[dict[str, object], int]:
    """List active therapists with optional filters.
    ---
    tags:
      - Therapists
    parameters:
      - name: service_category
        in: query
        type: string
        enum: [TEENS, FAMILY_COUPLES, LGBTQIA, INDIVIDUALS]
      - name: specialization
        in: query
        type: string
      - name: language
        in: query
        type: string
      - name: session_format
        in: query
        type: string
      - name: available
        in: query
        type: boolean
      - name: min_price
        in: query
        type: integer
      - name: max_price
        in: query
        type: integer
    responses:
      200:
        description: Matching therapists
      400:
        description: Invalid filter
    """
    query = TherapistProfile.query.filter(TherapistProfile.is_active.is_(True))

    min_price = request.args.get("min_price")
    max_price = request.args.get("max_price")
    try:
        if min_price:
            query = query.filter(TherapistProfile.hourly_rate >= int(min_price))
        if max_price:
            query = query.filter(TherapistProfile.hourly_rate <= int(max_price))
    except ValueError:
        return jsonify({"error": "invalid_query", "message": "min_price and max_price must be integers"}), 400

    available = _as_bool(request.args.get("available"))
    if available is not None:
        query = query.filter(TherapistProfile.is_available.is_(available))

    therapists = query.order_by(TherapistProfile.rating.desc(), TherapistProfile.last_name.asc()).all()

    category = (request.args.get("service_category") or "").strip().upper()
    specialization = request.args.get("specialization")
    language = request.args.get("language")
    session_format = request.args.get("session_format")

    # JSON list columns are filtered in Python
    if category:
        therapists = [t for t in therapists if t.service_category == category]
    if specialization:
        therapists = [t for t in therapists if _contains(t.specializations, specialization)]
    if language:
        therapists = [t for t in therapists if _contains(t.languages, language)]
    if session_format:
        therapists = [t for t in therapists if _contains(t.session_formats, session_format)]

    return jsonify({"therapists": [t.to_dict() for t in therapists], "total": len(therapists)}), 200


@bp.get("/therapists/<therapist_id>")
def get_therapist(therapist_id: str) -> tuple[dict[str, object], int]:
    """Fetch a single therapist profile.
    ---
    tags:
      - Therapists
    responses:
      200:
        description: Therapist profile
      404:
        description: Not found
    """
    therapist = db.session.get(TherapistProfile, therapist_id)
    if therapist is None:
        return jsonify({"error": "not_found", "message": "therapist not found"}), 404
    return jsonify({"therapist": therapist.to_dict()}), 200


THERAPIST_EDITABLE_FIELDS = {
    "first_name": str,
    "last_name": str,
    "bio": str,
    "profile_photo": str,
    "next_available_slot": str,
    "credentials": list,
    "specializations": list,
    "languages": list,
    "services": list,
    "session_formats": list,
    "experience_years": int,
    "hourly_rate": int,
    "is_available": bool,
}


def apply_therapist_fields(therapist: TherapistProfile, payload: dict, allowed: dict) -> str | None:
    """Copy whitelisted fields onto ``therapist``; returns an error message or None."""
    for field, expected in allowed.items():
        if field not in payload:
            continue
        value = payload[field]
        if expected is int and (isinstance(value, bool) or not isinstance(value, int) or value < 0):
            return f"{field} must be a non-negative integer"
        if expected is float and (isinstance(value, bool) or not isinstance(value, (int, float))):
            return f"{field} must be a number"
        if expected is bool and not isinstance(value, bool):
            return f"{field} must be a boolean"
        if expected is list and not isinstance(value, list):
            return f"{field} must be a list"
        if expected is str and value is not None and not isinstance(value, str):
            return f"{field} must be a string"
        if field == "session_formats" and any(v not in avail.SESSION_TYPES for v in value):
            return "session_formats may only contain video, audio, or chat"
        if field in ("first_name", "last_name") and not (value or "").strip():
            return f"{field} cannot be empty"
        setattr(therapist, field, value.strip() if isinstance(value, str) else value)
    return None


@bp.get("/therapists/me")
def get_my_therapist_profile() -> tuple[dict[str, object], int]:
    """Return the therapist profile of the authenticated therapist.
    ---
    tags:
      - Therapists
    security:
      - Bearer: []
    responses:
      200:
        description: Therapist profile
      404:
        description: No profile linked to this account
    """
    user, error = require_user("therapist")
    if error:
        return error
    if user.therapist_profile is None:
        return jsonify({"error": "not_found", "message": "therapist profile not found"}), 404
    return jsonify({"therapist": user.therapist_profile.to_dict()}), 200


@bp.put("/therapists/me")
def update_my_therapist_profile() -> tuple[dict[str, object], int]:
    """Let a therapist edit their own directory profile.
    ---
    tags:
      - Therapists
    security:
      - Bearer: []
    responses:
      200:
        description: Profile updated
      400:
        description: Invalid payload
      404:
        description: No profile linked to this account
    """
    user, error = require_user("therapist")
    if error:
        return error
    therapist = user.therapist_profile
    if therapist is None:
        return jsonify({"error": "not_found", "message": "therapist profile not found"}), 404

    payload = request.get_json(silent=True) or {}
    message = apply_therapist_fields(therapist, payload, THERAPIST_EDITABLE_FIELDS)
    if message:
        db.session.rollback()
        return jsonify({"error": "invalid_payload", "message": message}), 400

    try:
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to update therapist profile", exc_info=exc)
        return jsonify({"error": "database_error"}), 500

    return jsonify({"therapist": therapist.to_dict()}), 200


# --- END: therapist directory ---


# --- BEGIN: availability ---


def _managed_therapist(therapist_id: str):
    """Resolve a therapist the caller may manage (owner therapist or admin)."""
    user, error = require_user("therapist", *ADMIN_ROLES)
    if error:
        return None, None, error

    therapist = db.session.get(TherapistProfile, therapist_id)
    if therapist is None:
        return None, None, (jsonify({"error": "not_found", "message": "therapist not found"}), 404)

    if user.role == "therapist" and therapist.user_uid != user.uid:
        return None, None, (
            jsonify({"error": "forbidden", "message": "You can only manage your own availability"}),
            403,
        )
    return user, therapist, None


@bp.get("/therapists/<therapist_id>/availability")
def get_availability(therapist_id: str) -> tuple[dict[str, object], int]:
    """Return the stored weekly schedule and special dates.
    ---
    tags:
      - Availability
    responses:
      200:
        description: Availability document
      404:
        description: Therapist or availability not found
    """
    record = db.session.get(TherapistAvailability, therapist_id)
    if record is None:
        return jsonify({"error": "not_found", "message": "availability not set"}), 404
    return jsonify({"availability": record.to_dict()}), 200


@bp.put("/therapists/<therapist_id>/availability")
def save_availability(therapist_id: str) -> tuple[dict[str, object], int]:
    """Create or replace a therapist's availability.
    ---
    tags:
      - Availability
    security:
      - Bearer: []
    parameters:
      - name: body
        in: body
        required: true
        schema:
          type: object
          properties:
            weekly_schedule:
              type: array
            special_dates:
              type: array
            timezone:
              type: string
            is_active:
              type: boolean
    responses:
      200:
        description: Availability saved
      400:
        description: Validation failed
      403:
        description: Not the owner
    """
    _user, therapist, error = _managed_therapist(therapist_id)
    if error:
        return error

    payload = request.get_json(silent=True) or {}
    record = therapist.availability

    try:
        weekly = avail.validate_weekly_schedule(payload.get("weekly_schedule"))
        special = avail.validate_special_dates(payload.get("special_dates"))
        tz_name = avail.validate_timezone(
            payload.get("timezone")
            or (record.timezone if record else current_app.config["DEFAULT_TIMEZONE"])
        )
    except avail.AvailabilityValidationError as exc:
        return jsonify({"error": "invalid_availability", "message": str(exc)}), 400

    if record is None:
        record = TherapistAvailability(therapist_id=therapist.therapist_id)
        db.session.add(record)
    record.weekly_schedule = weekly
    record.special_dates = special
    record.timezone = tz_name
    if "is_active" in payload:
        record.is_active = bool(payload.get("is_active"))
    therapist.is_available = bool(record.is_active is not False and (weekly or special))

    try:
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to save availability", exc_info=exc)
        return jsonify({"error": "database_error"}), 500

    return jsonify({"availability": record.to_dict()}), 200


@bp.post("/therapists/<therapist_id>/availability/bulk")
def bulk_update_availability(therapist_id: str) -> tuple[dict[str, object], int]:
    """Mark every day in a date range available or unavailable.
    ---
    tags:
      - Availability
    security:
      - Bearer: []
    responses:
      200:
        description: Special dates updated
      400:
        description: Invalid range
      404:
        description: No availability saved yet
    """
    _user, therapist, error = _managed_therapist(therapist_id)
    if error:
        return error

    record = therapist.availability
    if record is None:
        return jsonify({"error": "not_found", "message": "availability not set for this therapist"}), 404

    payload = request.get_json(silent=True) or {}
    if not isinstance(payload.get("is_available"), bool):
        return jsonify({"error": "invalid_payload", "message": "is_available must be a boolean"}), 400

    try:
        start = avail.parse_date(payload.get("start_date"))
        end = avail.parse_date(payload.get("end_date"))
        record.special_dates = avail.bulk_special_dates(
            record.special_dates, start, end, payload["is_available"], payload.get("reason")
        )
    except avail.AvailabilityValidationError as exc:
        return jsonify({"error": "invalid_availability", "message": str(exc)}), 400

    try:
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to bulk update availability", exc_info=exc)
        return jsonify({"error": "database_error"}), 500

    return jsonify({"availability": record.to_dict()}), 200


@bp.get("/therapists/<therapist_id>/availability-settings")
def get_availability_settings(therapist_id: str) -> tuple[dict[str, object], int]:
    """Return availability settings, falling back to defaults.
    ---
    tags:
      - Availability
    responses:
      200:
        description: Settings
    """
    if db.session.get(TherapistProfile, therapist_id) is None:
        return jsonify({"error": "not_found", "message": "therapist not found"}), 404
    record = db.session.get(AvailabilitySettings, therapist_id)
    return jsonify({"settings": avail.merge_settings(record.settings if record else None)}), 200


@bp.put("/therapists/<therapist_id>/availability-settings")
def save_availability_settings(therapist_id: str) -> tuple[dict[str, object], int]:
    """Update buffer, daily limits, advance window, cancellation policy and prices.
    ---
    tags:
      - Availability
    security:
      - Bearer: []
    responses:
      200:
        description: Settings saved
      400:
        description: Invalid payload
    """
    _user, therapist, error = _managed_therapist(therapist_id)
    if error:
        return error

    payload = request.get_json(silent=True) or {}
    unknown = set(payload) - set(avail.DEFAULT_AVAILABILITY_SETTINGS)
    if unknown:
        return jsonify({"error": "invalid_payload", "message": f"unknown settings: {', '.join(sorted(unknown))}"}), 400
    for key in ("buffer_time", "max_sessions_per_day", "advance_booking_days"):
        value = payload.get(key)
        if value is not None and (isinstance(value, bool) or not isinstance(value, int) or value < 0):
            return jsonify({"error": "invalid_payload", "message": f"{key} must be a non-negative integer"}), 400

    record = db.session.get(AvailabilitySettings, therapist.therapist_id)
    merged = avail.merge_settings(record.settings if record else None, payload)
    if record is None:
        record = AvailabilitySettings(therapist_id=therapist.therapist_id)
        db.session.add(record)
    record.settings = merged

    try:
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to save availability settings", exc_info=exc)
        return jsonify({"error": "database_error"}), 500

    return jsonify({"settings": merged}), 200


@bp.get("/therapists/<therapist_id>/notification-settings")
def get_notification_settings(therapist_id: str) -> tuple[dict[str, object], int]:
    """Return the therapist's notification preferences.
    ---
    tags:
      - Notifications
    security:
      - Bearer: []
    responses:
      200:
        description: Settings, defaults when never saved
    """
    _user, therapist, error = _managed_therapist(therapist_id)
    if error:
        return error
    return jsonify({"settings": notifications.get_notification_settings(therapist.therapist_id)}), 200


@bp.put("/therapists/<therapist_id>/notification-settings")
def save_notification_settings(therapist_id: str) -> tuple[dict[str, object], int]:
    """Update the therapist's notification preferences.
    ---
    tags:
      - Notifications
    security:
      - Bearer: []
    responses:
      200:
        description: Settings saved
    """
    _user, therapist, error = _managed_therapist(therapist_id)
    if error:
        return error

    payload = request.get_json(silent=True) or {}
    try:
        notifications.save_notification_settings(therapist.therapist_id, payload)
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to save notification settings", exc_info=exc)
        return jsonify({"error": "database_error"}), 500

    return jsonify({"settings": notifications.get_notification_settings(therapist.therapist_id)}), 200


@bp.get("/therapists/<therapist_id>/slots")
def list_slots(therapist_id: str) -> tuple[dict[str, object], int]:
    """List bookable slots for one date.
    ---
    tags:
      - Availability
    parameters:
      - name: date
        in: query
        type: string
        required: true
        description: YYYY-MM-DD
    responses:
      200:
        description: Slots sorted by start time
      400:
        description: Invalid date
      404:
        description: Therapist not found
    """
    therapist = db.session.get(TherapistProfile, therapist_id)
    if therapist is None or not therapist.is_active:
        return jsonify({"error": "not_found", "message": "therapist not found"}), 404

    try:
        on_date = avail.parse_date(request.args.get("date"))
    except avail.AvailabilityValidationError as exc:
        return jsonify({"error": "invalid_query", "message": str(exc)}), 400

    slots = avail.generate_slots(
        therapist.availability.to_dict() if therapist.availability else None,
        on_date,
        bookings.booked_intervals(therapist.therapist_id),
        now=utc_now(),
        lead_minutes=current_app.config["BOOKING_LEAD_MINUTES"],
    )
    return jsonify({
        "date": on_date.isoformat(),
        "slots": [
            {**slot.to_dict(), "price": avail.slot_price(slot, therapist.hourly_rate)} for slot in slots
        ],
    }), 200


@bp.get("/therapists/<therapist_id>/slots/upcoming")
def list_upcoming_slots(therapist_id: str) -> tuple[dict[str, object], int]:
    """Slots grouped by day for the date picker (7 days by default).
    ---
    tags:
      - Availability
    parameters:
      - name: start
        in: query
        type: string
      - name: days
        in: query
        type: integer
    responses:
      200:
        description: One entry per day
    """
    therapist = db.session.get(TherapistProfile, therapist_id)
    if therapist is None or not therapist.is_active:
        return jsonify({"error": "not_found", "message": "therapist not found"}), 404

    availability = therapist.availability.to_dict() if therapist.availability else None
    now = utc_now()
    try:
        if request.args.get("start"):
            start = avail.parse_date(request.args["start"])
        else:
            tz_name = (availability or {}).get("timezone") or current_app.config.get("DEFAULT_TIMEZONE")
            start = avail.local_date(now, avail.resolve_timezone(tz_name))
        days = int(request.args.get("days", 7))
    except (avail.AvailabilityValidationError, ValueError):
        return jsonify({"error": "invalid_query", "message": "start must be YYYY-MM-DD and days an integer"}), 400
    days = max(1, min(days, 31))

    result = avail.upcoming_days(
        availability,
        start,
        days,
        bookings.booked_intervals(therapist.therapist_id),
        now=now,
        lead_minutes=current_app.config["BOOKING_LEAD_MINUTES"],
    )
    return jsonify({"days": result}), 200


# --- END: availability ---


# --- BEGIN: booking wizard ---


def _load_flow() -> BookingFlow:
    return BookingFlow.from_dict(session.get(BOOKING_FLOW_KEY))


def _store_flow(flow: BookingFlow) -> tuple[dict[str, object], int]:
    session[BOOKING_FLOW_KEY] = {k: v for k, v in flow.to_dict().items() if k not in ("step_name", "final_amount")}
    return jsonify({"booking": flow.to_dict()}), 200


@bp.get("/booking")
def get_booking_flow() -> tuple[dict[str, object], int]:
    """Return the current booking wizard state.
    ---
    tags:
      - Booking
    responses:
      200:
        description: Wizard state
    """
    return jsonify({"booking": _load_flow().to_dict()}), 200


@bp.post("/booking/start")
def start_booking_flow() -> tuple[dict[str, object], int]:
    """Start the wizard, optionally with a service or therapist chosen elsewhere.
    ---
    tags:
      - Booking
    parameters:
      - name: body
        in: body
        schema:
          type: object
          properties:
            service:
              type: object
            therapist_id:
              type: string
            selected_at:
              type: string
              description: When the pre-selection was made (ISO-8601)
    responses:
      200:
        description: Wizard state
      404:
        description: Pre-selected therapist not found
    """
    payload = request.get_json(silent=True) or {}
    therapist_id = payload.get("therapist_id")
    if therapist_id and db.session.get(TherapistProfile, therapist_id) is None:
        return jsonify({"error": "not_found", "message": "therapist not found"}), 404

    service = payload.get("service") if isinstance(payload.get("service"), dict) else None
    flow = BookingFlow.start(
        service=service,
        therapist_id=therapist_id,
        selected_at=_parse_instant(payload.get("selected_at")),
        now=utc_now(),
    )
    return _store_flow(flow)


@bp.post("/booking/service")
def select_booking_service() -> tuple[dict[str, object], int]:
    """Step 1: choose a service.
    ---
    tags:
      - Booking
    responses:
      200:
        description: Wizard moved to the therapist step
      400:
        description: Invalid payload
      409:
        description: Not on the service step
    """
    payload = request.get_json(silent=True) or {}
    service_type = (payload.get("service_type") or "").strip()
    service_name = (payload.get("service_name") or "").strip()
    if not service_type or not service_name:
        return jsonify({"error": "invalid_payload", "message": "service_type and service_name are required"}), 400

    flow = _load_flow()
    try:
        flow.select_service(service_type, service_name)
    except BookingFlowError as exc:
        return jsonify({"error": "invalid_step", "message": str(exc)}), 409
    return _store_flow(flow)


@bp.post("/booking/therapist")
def select_booking_therapist() -> tuple[dict[str, object], int]:
    """Step 2: choose a therapist.
    ---
    tags:
      - Booking
    responses:
      200:
        description: Wizard moved to the slot step
      404:
        description: Therapist not found
      409:
        description: Not on the therapist step
    """
    payload = request.get_json(silent=True) or {}
    therapist = db.session.get(TherapistProfile, payload.get("therapist_id") or "")
    if therapist is None or not therapist.is_active:
        return jsonify({"error": "not_found", "message": "therapist not found"}), 404

    flow = _load_flow()
    try:
        flow.select_therapist(therapist.therapist_id)
    except BookingFlowError as exc:
        return jsonify({"error": "invalid_step", "message": str(exc)}), 409
    return _store_flow(flow)


@bp.post("/booking/slot")
def select_booking_slot() -> tuple[dict[str, object], int]:
    """Step 3: choose a slot; it must still be bookable.
    ---
    tags:
      - Booking
    parameters:
      - name: body
        in: body
        schema:
          type: object
          properties:
            starts_at:
              type: string
              description: Slot start (ISO-8601)
    responses:
      200:
        description: Wizard moved to the confirmation step
      400:
        description: Invalid payload
      409:
        description: Slot unavailable or wrong step
    """
    payload = request.get_json(silent=True) or {}
    starts_at = _parse_instant(payload.get("starts_at"))
    if starts_at is None:
        return jsonify({"error": "invalid_payload", "message": "starts_at must be an ISO-8601 datetime"}), 400

    flow = _load_flow()
    therapist = db.session.get(TherapistProfile, flow.therapist_id or "")
    if therapist is None:
        return jsonify({"error": "invalid_step", "message": "choose a therapist first"}), 409

    try:
        slot = bookings.get_bookable_slot(therapist, starts_at)
        flow.select_slot(
            slot.starts_at.isoformat(),
            slot.session_type,
            slot.duration,
            avail.slot_price(slot, therapist.hourly_rate),
        )
    except bookings.SlotUnavailableError as exc:
        return jsonify({"error": exc.error, "message": str(exc)}), 409
    except BookingFlowError as exc:
        return jsonify({"error": "invalid_step", "message": str(exc)}), 409
    return _store_flow(flow)


@bp.post("/booking/coupon")
def apply_booking_coupon() -> tuple[dict[str, object], int]:
    """Apply a coupon on the confirmation step.
    ---
    tags:
      - Booking
    parameters:
      - name: body
        in: body
        schema:
          type: object
          properties:
            coupon_code:
              type: string
    responses:
      200:
        description: Discount applied
      400:
        description: Missing or invalid coupon code
      409:
        description: Not on the confirmation step
    """
    payload = request.get_json(silent=True) or {}
    code = (payload.get("coupon_code") or "").strip()
    if not code:
        return jsonify({"error": "invalid_payload", "message": "coupon_code is required"}), 400

    flow = _load_flow()
    try:
        flow.apply_coupon(code)
    except InvalidCouponError as exc:
        return jsonify({"error": "invalid_coupon", "message": str(exc)}), 400
    except BookingFlowError as exc:
        return jsonify({"error": "invalid_step", "message": str(exc)}), 409
    return _store_flow(flow)


@bp.delete("/booking/coupon")
def remove_booking_coupon() -> tuple[dict[str, object], int]:
    """Remove the applied coupon.
    ---
    tags:
      - Booking
    responses:
      200:
        description: Coupon removed
      409:
        description: Not on the confirmation step
    """
    flow = _load_flow()
    try:
        flow.remove_coupon()
    except BookingFlowError as exc:
        return jsonify({"error": "invalid_step", "message": str(exc)}), 409
    return _store_flow(flow)


@bp.post("/booking/confirm")
def confirm_booking() -> tuple[dict[str, object], int]:
    """Step 4: confirm the summary and move to payment.
    ---
    tags:
      - Booking
    responses:
      200:
        description: Wizard moved to the payment step
      409:
        description: Not on the confirmation step
    """
    flow = _load_flow()
    try:
        flow.confirm()
    except BookingFlowError as exc:
        return jsonify({"error": "invalid_step", "message": str(exc)}), 409
    return _store_flow(flow)


@bp.post("/booking/back")
def booking_back() -> tuple[dict[str, object], int]:
    """Go back one step (never below the first).
    ---
    tags:
      - Booking
    responses:
      200:
        description: Wizard state
    """
    flow = _load_flow()
    flow.back()
    return _store_flow(flow)


@bp.delete("/booking")
def reset_booking_flow() -> tuple[dict[str, object], int]:
    """Clear the wizard.
    ---
    tags:
      - Booking
    responses:
      200:
        description: Fresh wizard state
    """
    flow = _load_flow()
    flow.reset()
    return _store_flow(flow)


# --- END: booking wizard ---


# --- BEGIN: payments ---


@bp.post("/payments/checkout")
def create_checkout() -> tuple[dict[str, object], int]:
    """Hold the booking and start a hosted checkout.
    ---
    tags:
      - Payments
    security:
      - Bearer: []
    parameters:
      - name: body
        in: body
        schema:
          type: object
          properties:
            therapist_id:
              type: string
            starts_at:
              type: string
            service_type:
              type: string
            service_name:
              type: string
            coupon_code:
              type: string
    responses:
      201:
        description: Checkout created, returns redirect URL
      400:
        description: Nothing to pay for or invalid coupon
      401:
        description: Authentication required
      409:
        description: Slot no longer available
      502:
        description: Payment gateway error
    """
    user, error = require_user()
    if error:
        return error

    payload = request.get_json(silent=True) or {}
    flow = _load_flow()
    if payload.get("therapist_id"):
        therapist_id = payload.get("therapist_id")
        starts_at = _parse_instant(payload.get("starts_at"))
        service_type = payload.get("service_type")
        service_name = payload.get("service_name")
        coupon_code = payload.get("coupon_code")
    elif flow.ready_for_payment:
        therapist_id = flow.therapist_id
        starts_at = _parse_instant(flow.session_time)
        service_type = flow.service_type
        service_name = flow.service_name
        coupon_code = flow.coupon_code
    else:
        return jsonify({"error": "invalid_payload", "message": "therapist_id and starts_at are required"}), 400

    if starts_at is None:
        return jsonify({"error": "invalid_payload", "message": "starts_at must be an ISO-8601 datetime"}), 400

    therapist = db.session.get(TherapistProfile, therapist_id)
    if therapist is None:
        return jsonify({"error": "not_found", "message": "therapist not found"}), 404

    try:
        slot = bookings.get_bookable_slot(therapist, starts_at)
        pending = bookings.create_pending_payment(
            user, therapist, slot, service_type, service_name, coupon_code=coupon_code
        )
    except bookings.BookingError as exc:
        db.session.rollback()
        return jsonify({"error": exc.error, "message": str(exc)}), exc.status_code
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to create pending payment", exc_info=exc)
        return jsonify({"error": "database_error"}), 500

    try:
        checkout = payments.create_checkout(pending, user.email)
    except payments.PaymentGatewayError as exc:
        pending.status = "failed"
        db.session.commit()
        return jsonify({"error": "payment_error", "message": str(exc)}), 502

    pending.checkout_session_id = checkout.id
    db.session.commit()

    current_app.logger.info("Created checkout %s for order %s", checkout.id, pending.order_id)
    return jsonify({
        "order_id": pending.order_id,
        "checkout_url": checkout.url,
        "payment": pending.to_dict(),
    }), 201


def _refund_lost_slot(pending: PendingPayment, payment_intent_id: str | None, message: str):
    """Refund a paid order whose slot went to someone else.

    A failed refund leaves the order ``refund_failed`` and answers 502; the
    next callback or webhook delivery for the order tries the refund again.
    """
    order_id = pending.order_id
    refunded = False
    if payment_intent_id:
        try:
            payments.refund(payment_intent_id)
            refunded = True
        except payments.PaymentGatewayError as exc:
            log_error(exc, "payment", user=pending.client, order_id=order_id, payment_intent=payment_intent_id)
    pending = db.session.get(PendingPayment, order_id)
    bookings.mark_conflict(pending, refunded=refunded or not payment_intent_id)

    body = {"error": "slot_unavailable", "message": message, "refunded": refunded}
    if payment_intent_id and not refunded:
        body["error"] = "refund_failed"
        return jsonify(body), 502
    return jsonify(body), 409


def _complete_order(pending: PendingPayment, payment_intent_id: str | None):
    """Finalize a paid order; on a lost slot refund it and mark it conflicted.

    Returns ``(session, created, error_response)``.
    """
    if pending.status == "refund_failed":
        message = "the selected time slot was booked by someone else"
        return None, False, _refund_lost_slot(pending, payment_intent_id, message)

    try:
        therapy_session, created = bookings.finalize_booking(pending, payment_intent_id)
    except bookings.SlotUnavailableError as exc:
        current_app.logger.warning("Slot taken before order %s was finalized, refunding", pending.order_id)
        pending = db.session.get(PendingPayment, pending.order_id)
        return None, False, _refund_lost_slot(pending, payment_intent_id, str(exc))
    except bookings.BookingError as exc:
        return None, False, (jsonify({"error": exc.error, "message": str(exc)}), exc.status_code)
    return therapy_session, created, None


@bp.get("/payments/callback")
def payment_callback() -> tuple[dict[str, object], int]:
    """Return-URL handler: finalize the booking when the gateway reports it paid.
    ---
    tags:
      - Payments
    parameters:
      - name: order_id
        in: query
        type: string
        required: true
    responses:
      200:
        description: Session booked, or current payment status when unpaid
      404:
        description: Unknown order
      409:
        description: Slot was taken; payment refunded
      502:
        description: Payment gateway error, or the refund for a taken slot failed
    """
    order_id = (request.args.get("order_id") or "").strip()
    pending = db.session.get(PendingPayment, order_id) if order_id else None
    if pending is None:
        return jsonify({"error": "not_found", "message": "order not found"}), 404

    if pending.status == "conflict":
        return jsonify({"error": "slot_unavailable", "message": "this order was refunded"}), 409

    if pending.status == "completed" and pending.session_id:
        therapy_session = db.session.get(TherapySession, pending.session_id)
        return jsonify({"status": "paid", "session": therapy_session.to_dict()}), 200

    if not pending.checkout_session_id:
        return jsonify({"error": "invalid_order", "message": "order has no checkout"}), 400

    try:
        checkout = payments.retrieve_checkout(pending.checkout_session_id)
    except payments.PaymentGatewayError as exc:
        return jsonify({"error": "payment_error", "message": str(exc)}), 502

    if not payments.is_paid(checkout):
        return jsonify({"status": getattr(checkout, "payment_status", "unpaid"), "order_id": order_id}), 200

    therapy_session, _created, error = _complete_order(pending, getattr(checkout, "payment_intent", None))
    if error:
        return error

    session.pop(BOOKING_FLOW_KEY, None)
    return jsonify({"status": "paid", "session": therapy_session.to_dict()}), 200


@bp.get("/payments/<order_id>/verify")
def verify_payment(order_id: str) -> tuple[dict[str, object], int]:
    """Report whether the gateway considers the order paid.
    ---
    tags:
      - Payments
    security:
      - Bearer: []
    responses:
      200:
        description: "{success, status}"
      404:
        description: Unknown order
      502:
        description: Payment gateway error
    """
    user, error = require_user()
    if error:
        return error

    pending = db.session.get(PendingPayment, order_id)
    if pending is None or (pending.client_uid != user.uid and user.role not in ADMIN_ROLES):
        return jsonify({"error": "not_found", "message": "order not found"}), 404

    if pending.status == "completed":
        return jsonify({"success": True, "status": pending.status}), 200
    if not pending.checkout_session_id:
        return jsonify({"success": False, "status": pending.status}), 200

    try:
        checkout = payments.retrieve_checkout(pending.checkout_session_id)
    except payments.PaymentGatewayError as exc:
        return jsonify({"error": "payment_error", "message": str(exc)}), 502

    return jsonify({"success": payments.is_paid(checkout), "status": pending.status}), 200


@bp.post("/payments/webhook")
def payment_webhook():
    """Gateway webhook endpoint to receive asynchronous events.
    ---
    tags:
      - Payments
    parameters:
      - name: Stripe-Signature
        in: header
        required: true
        type: string
    responses:
      200:
        description: Event received
      400:
        description: Invalid payload or signature
    """
    try:
        event = payments.construct_event(request.get_data(), request.headers.get("Stripe-Signature"))
    except payments.PaymentGatewayError as exc:
        current_app.logger.error("%s - webhooks will not be processed", exc)
        # Acknowledge so the gateway stops retrying a server-side config problem
        return jsonify({"received": True}), 200
    except payments.InvalidWebhookError as exc:
        current_app.logger.warning("Rejected webhook: %s", exc)
        return jsonify({"error": str(exc)}), 400

    event_id = event.get("id")
    evt_type = event.get("type")
    data = event.get("data", {}).get("object", {})

    if event_id and db.session.get(WebhookLog, event_id) is not None:
        current_app.logger.info("Ignoring duplicate webhook event %s", event_id)
        return jsonify({"received": True, "duplicate": True}), 200

    order_id = (data.get("metadata") or {}).get("order_id") or data.get("client_reference_id")
    outcome = "ignored"

    if evt_type == "checkout.session.completed" and order_id:
        pending = db.session.get(PendingPayment, order_id)
        if pending is None:
            current_app.logger.warning("Webhook for unknown order %s", order_id)
            outcome = "unknown_order"
        elif data.get("payment_status") != "paid":
            outcome = "unpaid"
        else:
            _session, created, error = _complete_order(pending, data.get("payment_intent"))
            if error and error[1] == 502:
                # Left unlogged so the gateway's redelivery retries the refund
                current_app.logger.error("Refund failed for order %s, asking the gateway to retry", order_id)
                return jsonify({"received": False, "status": "refund_failed"}), 502
            if error:
                outcome = "conflict" if error[1] == 409 else "error"
            else:
                outcome = "booked" if created else "already_booked"

    if event_id:
        try:
            db.session.add(WebhookLog(
                event_id=event_id,
                event_type=evt_type or "unknown",
                order_id=order_id,
                status=outcome,
                payload={"type": evt_type, "order_id": order_id},
            ))
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            current_app.logger.info("Webhook event %s logged concurrently", event_id)
        except SQLAlchemyError as exc:
            db.session.rollback()
            current_app.logger.exception("Failed to log webhook event", exc_info=exc)

    return jsonify({"received": True, "status": outcome}), 200


# --- END: payments ---


# --- BEGIN: sessions ---


def _session_for(user: User, session_id: str):
    therapy_session = db.session.get(TherapySession, session_id)
    if therapy_session is None:
        return None, (jsonify({"error": "not_found", "message": "session not found"}), 404)

    therapist = therapy_session.therapist
    is_participant = therapy_session.client_uid == user.uid or (
        therapist is not None and therapist.user_uid == user.uid
    )
    if not is_participant and user.role not in ADMIN_ROLES:
        return None, (jsonify({"error": "forbidden", "message": "You are not part of this session"}), 403)
    return therapy_session, None


def _session_payload(therapy_session: TherapySession, config: dict | None = None) -> dict[str, object]:
    data = therapy_session.to_dict()
    data["can_join"] = bookings.can_join(therapy_session, config=config)
    return data


@bp.get("/sessions")
def list_my_sessions() -> tuple[dict[str, object], int]:
    """List the caller's sessions, newest first.
    ---
    tags:
      - Sessions
    security:
      - Bearer: []
    parameters:
      - name: status
        in: query
        type: string
    responses:
      200:
        description: Sessions
    """
    user, error = require_user()
    if error:
        return error

    if user.role == "therapist":
        therapist = user.therapist_profile
        if therapist is None:
            return jsonify({"sessions": []}), 200
        query = TherapySession.query.filter(TherapySession.therapist_id == therapist.therapist_id)
    else:
        query = TherapySession.query.filter(TherapySession.client_uid == user.uid)

    status = (request.args.get("status") or "").strip().lower()
    if status:
        query = query.filter(TherapySession.status == status)

    config = bookings.get_session_config()
    sessions = query.order_by(TherapySession.scheduled_time.desc()).all()
    return jsonify({"sessions": [_session_payload(s, config) for s in sessions]}), 200


@bp.get("/sessions/<session_id>")
def get_session(session_id: str) -> tuple[dict[str, object], int]:
    """Fetch one session (participants and admins only).
    ---
    tags:
      - Sessions
    security:
      - Bearer: []
    responses:
      200:
        description: Session
      403:
        description: Not a participant
      404:
        description: Not found
    """
    user, error = require_user()
    if error:
        return error
    therapy_session, error = _session_for(user, session_id)
    if error:
        return error
    return jsonify({"session": _session_payload(therapy_session)}), 200


@bp.post("/sessions/<session_id>/start")
def start_session(session_id: str) -> tuple[dict[str, object], int]:
    """Start a scheduled session inside its join window.
    ---
    tags:
      - Sessions
    security:
      - Bearer: []
    responses:
      200:
        description: Session active
      400:
        description: Session cannot be started
    """
    user, error = require_user()
    if error:
        return error
    therapy_session, error = _session_for(user, session_id)
    if error:
        return error

    if not bookings.can_join(therapy_session):
        return jsonify({"error": "not_joinable", "message": "this session cannot be joined right now"}), 400

    try:
        bookings.start_session(therapy_session)
    except bookings.BookingError as exc:
        return jsonify({"error": exc.error, "message": str(exc)}), exc.status_code
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to start session", exc_info=exc)
        return jsonify({"error": "database_error"}), 500
    return jsonify({"session": _session_payload(therapy_session)}), 200


@bp.post("/sessions/<session_id>/end")
def end_session(session_id: str) -> tuple[dict[str, object], int]:
    """Complete an active session, optionally saving notes.
    ---
    tags:
      - Sessions
    security:
      - Bearer: []
    responses:
      200:
        description: Session completed
      400:
        description: Session is not active
    """
    user, error = require_user()
    if error:
        return error
    therapy_session, error = _session_for(user, session_id)
    if error:
        return error

    payload = request.get_json(silent=True) or {}
    notes = payload.get("notes")
    if notes is not None and not isinstance(notes, str):
        return jsonify({"error": "invalid_payload", "message": "notes must be a string"}), 400

    try:
        bookings.end_session(therapy_session, notes)
    except bookings.BookingError as exc:
        return jsonify({"error": exc.error, "message": str(exc)}), exc.status_code
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to end session", exc_info=exc)
        return jsonify({"error": "database_error"}), 500
    return jsonify({"session": _session_payload(therapy_session)}), 200


@bp.post("/sessions/<session_id>/cancel")
def cancel_session(session_id: str) -> tuple[dict[str, object], int]:
    """Cancel a scheduled session and release its slot.
    ---
    tags:
      - Sessions
    security:
      - Bearer: []
    responses:
      200:
        description: Session cancelled
      400:
        description: Session is not scheduled
    """
    user, error = require_user()
    if error:
        return error
    therapy_session, error = _session_for(user, session_id)
    if error:
        return error

    payload = request.get_json(silent=True) or {}
    try:
        bookings.cancel_session(therapy_session, user, (payload.get("reason") or "").strip() or None)
    except bookings.BookingError as exc:
        return jsonify({"error": exc.error, "message": str(exc)}), exc.status_code
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to cancel session", exc_info=exc)
        return jsonify({"error": "database_error"}), 500
    return jsonify({"session": _session_payload(therapy_session)}), 200


# --- END: sessions ---
