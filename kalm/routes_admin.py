"""Admin console routes plus client error reporting."""
from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy import func, or_
from sqlalchemy.exc import SQLAlchemyError

from . import bookings
from .counters import next_id
from .error_log import ERROR_TYPES
from .extensions import db
from .models import (
    PAYOUT_STATUSES,
    USER_ROLES,
    AvailabilitySettings,
    EmailNotification,
    ErrorLog,
    NotificationSettings,
    Payment,
    PendingPayment,
    TherapistProfile,
    TherapySession,
    User,
    utc_now,
)
from .routes import ADMIN_ROLES, THERAPIST_EDITABLE_FIELDS, apply_therapist_fields, get_jwt_identity, require_user

bp_admin = Blueprint("admin", __name__)

PAYMENTS_PER_PAGE = 10

ADMIN_THERAPIST_FIELDS = {
    **THERAPIST_EDITABLE_FIELDS,
    "email": str,
    "rating": float,
    "review_count": int,
    "is_active": bool,
}


def _page_args(default_per_page: int = 20) -> tuple[int, int]:
    page = max(1, int(request.args.get("page", 1)))
    per_page = min(100, max(1, int(request.args.get("per_page", default_per_page))))
    return page, per_page


def placeholder_therapist(user: User) -> TherapistProfile:
    """Directory profile created when a user is promoted to therapist."""
    names = (user.display_name or user.username or "New Therapist").split(" ", 1)
    return TherapistProfile(
        user_uid=user.uid,
        sequential_id=next_id("therapist"),
        first_name=names[0],
        last_name=names[1] if len(names) > 1 else "",
        email=user.email,
        credentials=["Licensed Therapist"],
        specializations=["General Counseling"],
        languages=["English"],
        services=["Individual Therapy"],
        session_formats=["video"],
        bio="",
        experience_years=0,
        rating=5.0,
        review_count=0,
        hourly_rate=4500,
        is_available=False,
        is_active=True,
    )


# --- BEGIN: users ---


@bp_admin.get("/admin/users")
def list_users() -> tuple[dict[str, object], int]:
    """Paginated user listing with role filter and search.
    ---
    tags:
      - Admin
    security:
      - Bearer: []
    parameters:
      - name: role
        in: query
        type: string
      - name: search
        in: query
        type: string
      - name: page
        in: query
        type: integer
    responses:
      200:
        description: Users
      403:
        description: Admins only
    """
    _admin, error = require_user(*ADMIN_ROLES)
    if error:
        return error

    try:
        page, per_page = _page_args()
    except (ValueError, TypeError):
        return jsonify({"error": "invalid_parameters"}), 400

    query = User.query
    role = (request.args.get("role") or "").strip().lower()
    if role:
        query = query.filter(User.role == role)
    search = (request.args.get("search") or "").strip()
    if search:
        like = f"%{search}%"
        query = query.filter(or_(
            User.email.ilike(like),
            User.username.ilike(like),
            User.display_name.ilike(like),
        ))

    paginated = query.order_by(User.created_at.desc()).paginate(page=page, per_page=per_page, error_out=False)
    return jsonify({
        "users": [u.to_dict() for u in paginated.items],
        "page": page,
        "per_page": per_page,
        "total": paginated.total,
        "pages": paginated.pages,
    }), 200


@bp_admin.put("/admin/users/<uid>/role")
def update_user_role(uid: str) -> tuple[dict[str, object], int]:
    """Change a user's role; promotion to therapist creates a profile.
    ---
    tags:
      - Admin
    security:
      - Bearer: []
    parameters:
      - name: body
        in: body
        required: true
        schema:
          type: object
          properties:
            role:
              type: string
              enum: [client, therapist, admin, superadmin]
    responses:
      200:
        description: Role updated
      400:
        description: Invalid role
      403:
        description: Only a superadmin may grant or revoke admin access
      404:
        description: User not found
    """
    admin, error = require_user(*ADMIN_ROLES)
    if error:
        return error

    payload = request.get_json(silent=True) or {}
    role = (payload.get("role") or "").strip().lower()
    if role not in USER_ROLES:
        return jsonify({"error": "invalid_role", "message": f"role must be one of {', '.join(USER_ROLES)}"}), 400

    user = db.session.get(User, uid)
    if user is None:
        return jsonify({"error": "not_found", "message": "user not found"}), 404
    if user.uid == admin.uid:
        return jsonify({"error": "forbidden", "message": "you cannot change your own role"}), 403

    touches_admin = role in ADMIN_ROLES or user.role in ADMIN_ROLES
    if touches_admin and admin.role != "superadmin":
        return jsonify({"error": "forbidden", "message": "only a superadmin can grant or revoke admin access"}), 403

    try:
        user.role = role
        if role == "therapist" and user.therapist_profile is None:
            db.session.add(placeholder_therapist(user))
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to update user role", exc_info=exc)
        return jsonify({"error": "database_error"}), 500

    current_app.logger.info("User %s role set to %s by %s", user.uid, role, admin.uid)
    data = user.to_dict()
    if user.therapist_profile is not None:
        data["therapist_id"] = user.therapist_profile.therapist_id
    return jsonify({"user": data}), 200


@bp_admin.put("/admin/users/<uid>/status")
def update_user_status(uid: str) -> tuple[dict[str, object], int]:
    """Activate or deactivate an account.
    ---
    tags:
      - Admin
    security:
      - Bearer: []
    responses:
      200:
        description: Status updated
      400:
        description: is_active missing
      404:
        description: User not found
    """
    admin, error = require_user(*ADMIN_ROLES)
    if error:
        return error

    payload = request.get_json(silent=True) or {}
    if not isinstance(payload.get("is_active"), bool):
        return jsonify({"error": "invalid_payload", "message": "is_active must be a boolean"}), 400

    user = db.session.get(User, uid)
    if user is None:
        return jsonify({"error": "not_found", "message": "user not found"}), 404
    if user.role in ADMIN_ROLES and admin.role != "superadmin":
        return jsonify({"error": "forbidden", "message": "only a superadmin can change admin accounts"}), 403

    try:
        user.is_active = payload["is_active"]
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to update user status", exc_info=exc)
        return jsonify({"error": "database_error"}), 500

    return jsonify({"user": user.to_dict()}), 200


# --- END: users ---


# --- BEGIN: therapists ---


@bp_admin.get("/admin/therapists")
def admin_list_therapists() -> tuple[dict[str, object], int]:
    """All therapist profiles, including inactive ones.
    ---
    tags:
      - Admin
    security:
      - Bearer: []
    responses:
      200:
        description: Therapists
    """
    _admin, error = require_user(*ADMIN_ROLES)
    if error:
        return error

    therapists = TherapistProfile.query.order_by(TherapistProfile.created_at.desc()).all()
    return jsonify({"therapists": [t.to_dict() for t in therapists]}), 200


@bp_admin.post("/admin/therapists")
def admin_create_therapist() -> tuple[dict[str, object], int]:
    """Create a therapist profile, optionally linked to an existing user.
    ---
    tags:
      - Admin
    security:
      - Bearer: []
    responses:
      201:
        description: Therapist created
      400:
        description: Invalid payload
      404:
        description: Linked user not found
    """
    _admin, error = require_user(*ADMIN_ROLES)
    if error:
        return error

    payload = request.get_json(silent=True) or {}
    if not (payload.get("first_name") or "").strip() or not (payload.get("last_name") or "").strip():
        return jsonify({"error": "invalid_payload", "message": "first_name and last_name are required"}), 400

    user = None
    if payload.get("user_uid"):
        user = db.session.get(User, payload["user_uid"])
        if user is None:
            return jsonify({"error": "not_found", "message": "user not found"}), 404
        if user.therapist_profile is not None:
            return jsonify({"error": "conflict", "message": "user already has a therapist profile"}), 409

    therapist = TherapistProfile(first_name="", last_name="")
    message = apply_therapist_fields(therapist, payload, ADMIN_THERAPIST_FIELDS)
    if message:
        return jsonify({"error": "invalid_payload", "message": message}), 400

    try:
        therapist.sequential_id = next_id("therapist")
        if user is not None:
            therapist.user_uid = user.uid
            therapist.email = therapist.email or user.email
            if user.role == "client":
                user.role = "therapist"
        db.session.add(therapist)
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to create therapist", exc_info=exc)
        return jsonify({"error": "database_error"}), 500

    return jsonify({"therapist": therapist.to_dict()}), 201


@bp_admin.put("/admin/therapists/<therapist_id>")
def admin_update_therapist(therapist_id: str) -> tuple[dict[str, object], int]:
    """Update any therapist profile field.
    ---
    tags:
      - Admin
    security:
      - Bearer: []
    responses:
      200:
        description: Therapist updated
      400:
        description: Invalid payload
      404:
        description: Not found
    """
    _admin, error = require_user(*ADMIN_ROLES)
    if error:
        return error

    therapist = db.session.get(TherapistProfile, therapist_id)
    if therapist is None:
        return jsonify({"error": "not_found", "message": "therapist not found"}), 404

    payload = request.get_json(silent=True) or {}
    message = apply_therapist_fields(therapist, payload, ADMIN_THERAPIST_FIELDS)
    if message:
        db.session.rollback()
        return jsonify({"error": "invalid_payload", "message": message}), 400

    try:
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to update therapist", exc_info=exc)
        return jsonify({"error": "database_error"}), 500

    return jsonify({"therapist": therapist.to_dict()}), 200


@bp_admin.delete("/admin/therapists/<therapist_id>")
def admin_delete_therapist(therapist_id: str) -> tuple[dict[str, object], int]:
    """Delete a therapist profile that has no sessions.
    ---
    tags:
      - Admin
    security:
      - Bearer: []
    responses:
      200:
        description: Deleted
      404:
        description: Not found
      409:
        description: Therapist has sessions; deactivate instead
    """
    _admin, error = require_user(*ADMIN_ROLES)
    if error:
        return error

    therapist = db.session.get(TherapistProfile, therapist_id)
    if therapist is None:
        return jsonify({"error": "not_found", "message": "therapist not found"}), 404

    has_bookings = (
        TherapySession.query.filter_by(therapist_id=therapist_id).first() is not None
        or PendingPayment.query.filter_by(therapist_id=therapist_id).first() is not None
    )
    if has_bookings:
        return (
            jsonify({"error": "conflict", "message": "therapist has sessions, deactivate the profile instead"}),
            409,
        )

    try:
        AvailabilitySettings.query.filter_by(therapist_id=therapist_id).delete()
        NotificationSettings.query.filter_by(therapist_id=therapist_id).delete()
        db.session.delete(therapist)
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to delete therapist", exc_info=exc)
        return jsonify({"error": "database_error"}), 500

    return jsonify({"deleted": therapist_id}), 200


# --- END: therapists ---


# --- BEGIN: payments ---


@bp_admin.get("/admin/payments")
def admin_list_payments() -> tuple[dict[str, object], int]:
    """Payments newest first, 10 per page.
    ---
    tags:
      - Admin
    security:
      - Bearer: []
    parameters:
      - name: payout_status
        in: query
        type: string
        enum: [pending, scheduled, paid]
      - name: search
        in: query
        type: string
        description: Order id, payment id, client or therapist name
      - name: page
        in: query
        type: integer
    responses:
      200:
        description: Payments
    """
    _admin, error = require_user(*ADMIN_ROLES)
    if error:
        return error

    try:
        page, per_page = _page_args(PAYMENTS_PER_PAGE)
    except (ValueError, TypeError):
        return jsonify({"error": "invalid_parameters"}), 400

    query = Payment.query
    payout_status = (request.args.get("payout_status") or "").strip().lower()
    if payout_status:
        if payout_status not in PAYOUT_STATUSES:
            return jsonify({"error": "invalid_parameters", "message": "unknown payout_status"}), 400
        query = query.filter(Payment.payout_status == payout_status)

    search = (request.args.get("search") or "").strip()
    if search:
        like = f"%{search}%"
        query = query.filter(or_(
            Payment.order_id.ilike(like),
            Payment.payment_id.ilike(like),
            Payment.gateway_payment_id.ilike(like),
            Payment.client_name.ilike(like),
            Payment.therapist_name.ilike(like),
        ))

    paginated = query.order_by(Payment.created_at.desc()).paginate(page=page, per_page=per_page, error_out=False)
    return jsonify({
        "payments": [p.to_dict() for p in paginated.items],
        "page": page,
        "per_page": per_page,
        "total": paginated.total,
        "pages": paginated.pages,
    }), 200


@bp_admin.get("/admin/payments/stats")
def admin_payment_stats() -> tuple[dict[str, object], int]:
    """Counts and totals per payout status.
    ---
    tags:
      - Admin
    security:
      - Bearer: []
    responses:
      200:
        description: Summary
    """
    _admin, error = require_user(*ADMIN_ROLES)
    if error:
        return error

    rows = (
        db.session.query(Payment.payout_status, func.count(Payment.payment_id), func.sum(Payment.final_amount_cents))
        .group_by(Payment.payout_status)
        .all()
    )
    by_status = {status: {"count": 0, "amount": 0.0} for status in PAYOUT_STATUSES}
    for status, count, total in rows:
        by_status[status] = {"count": count, "amount": (total or 0) / 100.0}

    return jsonify({
        "total_payments": sum(item["count"] for item in by_status.values()),
        "total_revenue": sum(item["amount"] for item in by_status.values()),
        "payout_status": by_status,
    }), 200


@bp_admin.put("/admin/payments/<payment_id>/payout")
def admin_update_payout(payment_id: str) -> tuple[dict[str, object], int]:
    """Move a payment through pending, scheduled and paid.
    ---
    tags:
      - Admin
    security:
      - Bearer: []
    parameters:
      - name: body
        in: body
        required: true
        schema:
          type: object
          properties:
            payout_status:
              type: string
              enum: [pending, scheduled, paid]
            therapist_payout_amount:
              type: number
    responses:
      200:
        description: Payout updated
      400:
        description: Invalid status
      404:
        description: Payment not found
    """
    _admin, error = require_user(*ADMIN_ROLES)
    if error:
        return error

    payload = request.get_json(silent=True) or {}
    status = (payload.get("payout_status") or "").strip().lower()
    if status not in PAYOUT_STATUSES:
        return jsonify({"error": "invalid_payload", "message": "payout_status must be pending, scheduled, or paid"}), 400

    payment = db.session.get(Payment, payment_id)
    if payment is None:
        return jsonify({"error": "not_found", "message": "payment not found"}), 404

    amount = payload.get("therapist_payout_amount")
    if amount is not None and (isinstance(amount, bool) or not isinstance(amount, (int, float)) or amount < 0):
        return jsonify({"error": "invalid_payload", "message": "therapist_payout_amount must be a non-negative number"}), 400

    try:
        payment.payout_status = status
        payment.payout_date = utc_now() if status == "paid" else None
        if amount is not None:
            payment.therapist_payout_cents = int(round(amount * 100))
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to update payout", exc_info=exc)
        return jsonify({"error": "database_error"}), 500

    return jsonify({"payment": payment.to_dict()}), 200


# --- END: payments ---


# --- BEGIN: sessions ---


@bp_admin.get("/admin/session-config")
def get_session_config() -> tuple[dict[str, object], int]:
    """Join window settings.
    ---
    tags:
      - Admin
    security:
      - Bearer: []
    responses:
      200:
        description: Session config
    """
    _admin, error = require_user(*ADMIN_ROLES)
    if error:
        return error
    return jsonify({"config": bookings.get_session_config()}), 200


@bp_admin.put("/admin/session-config")
def update_session_config() -> tuple[dict[str, object], int]:
    """Change how early and how late participants may join.
    ---
    tags:
      - Admin
    security:
      - Bearer: []
    responses:
      200:
        description: Config saved
      400:
        description: Invalid values
    """
    admin, error = require_user(*ADMIN_ROLES)
    if error:
        return error

    payload = request.get_json(silent=True) or {}
    try:
        config = bookings.save_session_config(payload, admin.uid)
    except bookings.BookingError as exc:
        return jsonify({"error": "invalid_payload", "message": str(exc)}), 400
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to save session config", exc_info=exc)
        return jsonify({"error": "database_error"}), 500
    return jsonify({"config": config}), 200


@bp_admin.post("/admin/sessions/mark-missed")
def mark_missed_sessions() -> tuple[dict[str, object], int]:
    """Flag scheduled sessions past their join window as missed.
    ---
    tags:
      - Admin
    security:
      - Bearer: []
    responses:
      200:
        description: Number of sessions updated
    """
    _admin, error = require_user(*ADMIN_ROLES)
    if error:
        return error
    try:
        count = bookings.mark_missed()
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to mark missed sessions", exc_info=exc)
        return jsonify({"error": "database_error"}), 500
    return jsonify({"updated": count}), 200


# --- END: sessions ---


# --- BEGIN: error logs and notifications ---


@bp_admin.post("/error-logs")
def report_error() -> tuple[dict[str, object], int]:
    """Let the web client report an error it caught.
    ---
    tags:
      - Errors
    responses:
      201:
        description: Stored
      400:
        description: message missing
    """
    payload = request.get_json(silent=True) or {}
    message = (payload.get("message") or "").strip()
    if not message:
        return jsonify({"error": "invalid_payload", "message": "message is required"}), 400

    error_type = (payload.get("error_type") or "ui").strip().lower()
    if error_type not in ERROR_TYPES:
        error_type = "unknown"

    uid = get_jwt_identity()
    user = db.session.get(User, uid) if uid else None
    additional = payload.get("additional_data")

    entry = ErrorLog(
        message=message[:5000],
        stack=(payload.get("stack") or None),
        user_uid=user.uid if user else None,
        user_role=user.role if user else None,
        user_agent=(request.headers.get("User-Agent") or "")[:500] or None,
        url=(payload.get("url") or "")[:500] or None,
        environment=current_app.config.get("ENVIRONMENT", "production"),
        error_type=error_type,
        additional_data=additional if isinstance(additional, dict) else None,
    )
    try:
        db.session.add(entry)
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to store reported error", exc_info=exc)
        return jsonify({"error": "database_error"}), 500

    return jsonify({"id": entry.error_id}), 201


@bp_admin.get("/admin/error-logs")
def list_error_logs() -> tuple[dict[str, object], int]:
    """Recent error log entries, newest first.
    ---
    tags:
      - Admin
    security:
      - Bearer: []
    parameters:
      - name: limit
        in: query
        type: integer
      - name: error_type
        in: query
        type: string
    responses:
      200:
        description: Error logs
    """
    _admin, error = require_user(*ADMIN_ROLES)
    if error:
        return error

    try:
        limit = min(500, max(1, int(request.args.get("limit", 50))))
    except ValueError:
        return jsonify({"error": "invalid_parameters"}), 400

    query = ErrorLog.query
    error_type = (request.args.get("error_type") or "").strip().lower()
    if error_type:
        query = query.filter(ErrorLog.error_type == error_type)

    logs = query.order_by(ErrorLog.timestamp.desc(), ErrorLog.error_id.desc()).limit(limit).all()
    return jsonify({"error_logs": [log.to_dict() for log in logs]}), 200


@bp_admin.get("/admin/notifications")
def list_notifications() -> tuple[dict[str, object], int]:
    """Inspect the email queue.
    ---
    tags:
      - Admin
    security:
      - Bearer: []
    parameters:
      - name: status
        in: query
        type: string
        enum: [pending, sent, failed]
    responses:
      200:
        description: Notifications
    """
    _admin, error = require_user(*ADMIN_ROLES)
    if error:
        return error

    try:
        page, per_page = _page_args()
    except (ValueError, TypeError):
        return jsonify({"error": "invalid_parameters"}), 400

    query = EmailNotification.query
    status = (request.args.get("status") or "").strip().lower()
    if status:
        query = query.filter(EmailNotification.status == status)

    paginated = query.order_by(EmailNotification.scheduled_for.desc()).paginate(
        page=page, per_page=per_page, error_out=False
    )
    return jsonify({
        "notifications": [n.to_dict() for n in paginated.items],
        "page": page,
        "per_page": per_page,
        "total": paginated.total,
        "pages": paginated.pages,
    }), 200


# --- END: error logs and notifications ---
