"""Tests for the admin console endpoints."""
from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from kalm import notifications
from kalm.extensions import db
from kalm.models import ErrorLog, Payment, TherapistProfile, TherapySession, User, utc_now


@pytest.fixture
def admin(make_user):
    return make_user(role="admin", email="admin@kalm.lk", display_name="Admin")


@pytest.fixture
def make_payment(app):
    counter = {"n": 0}

    def _make_payment(therapist, client_user, final_amount_cents: int = 450000,
                      payout_status: str = "pending") -> Payment:
        counter["n"] += 1
        payment = Payment(
            sequential_id=40000 + counter["n"],
            order_id=f"KALM-{30000 + counter['n']}",
            client_uid=client_user.uid,
            therapist_id=therapist.therapist_id,
            client_name=client_user.display_name,
            therapist_name=therapist.full_name,
            amount_cents=final_amount_cents,
            final_amount_cents=final_amount_cents,
            currency="LKR",
            gateway_payment_id=f"pi_{counter['n']}",
            payout_status=payout_status,
        )
        db.session.add(payment)
        db.session.commit()
        return payment

    return _make_payment


def test_admin_endpoints_require_admin(client, make_user, auth_headers) -> None:
    assert client.get("/admin/users").status_code == 401
    assert client.get("/admin/users", headers=auth_headers(make_user())).status_code == 403


def test_list_users_with_search_and_role(client, make_user, admin, auth_headers) -> None:
    make_user(email="kasun@example.com", display_name="Kasun Silva")
    make_user(role="therapist", email="nimali@example.com", display_name="Nimali")

    response = client.get("/admin/users?search=kasun", headers=auth_headers(admin))
    assert [u["email"] for u in response.get_json()["users"]] == ["kasun@example.com"]

    response = client.get("/admin/users?role=therapist", headers=auth_headers(admin))
    assert [u["email"] for u in response.get_json()["users"]] == ["nimali@example.com"]

    response = client.get("/admin/users?per_page=2", headers=auth_headers(admin))
    body = response.get_json()
    assert body["total"] == 3
    assert body["pages"] == 2
    assert len(body["users"]) == 2


def test_promote_to_therapist_creates_profile(client, make_user, admin, auth_headers) -> None:
    user = make_user(display_name="Ruwan Fernando")

    response = client.put(f"/admin/users/{user.uid}/role", json={"role": "therapist"}, headers=auth_headers(admin))

    assert response.status_code == 200
    body = response.get_json()["user"]
    assert body["role"] == "therapist"
    profile = db.session.get(TherapistProfile, body["therapist_id"])
    assert profile.first_name == "Ruwan"
    assert profile.last_name == "Fernando"
    assert profile.is_available is False
    assert profile.sequential_id == 20000


def test_role_change_rules(client, make_user, admin, auth_headers) -> None:
    user = make_user()
    other_admin = make_user(role="admin")
    superadmin = make_user(role="superadmin")

    response = client.put(f"/admin/users/{admin.uid}/role", json={"role": "client"}, headers=auth_headers(admin))
    assert response.status_code == 403

    response = client.put(f"/admin/users/{user.uid}/role", json={"role": "admin"}, headers=auth_headers(admin))
    assert response.status_code == 403

    response = client.put(f"/admin/users/{other_admin.uid}/role", json={"role": "client"},
                          headers=auth_headers(admin))
    assert response.status_code == 403

    response = client.put(f"/admin/users/{user.uid}/role", json={"role": "admin"}, headers=auth_headers(superadmin))
    assert response.status_code == 200
    assert db.session.get(User, user.uid).role == "admin"

    response = client.put(f"/admin/users/{user.uid}/role", json={"role": "wizard"}, headers=auth_headers(superadmin))
    assert response.status_code == 400


def test_update_user_status(client, make_user, admin, auth_headers) -> None:
    user = make_user()

    response = client.put(f"/admin/users/{user.uid}/status", json={"is_active": False}, headers=auth_headers(admin))
    assert response.status_code == 200
    assert response.get_json()["user"]["is_active"] is False

    response = client.put(f"/admin/users/{user.uid}/status", json={"is_active": "no"}, headers=auth_headers(admin))
    assert response.status_code == 400

    response = client.put("/admin/users/missing/status", json={"is_active": True}, headers=auth_headers(admin))
    assert response.status_code == 404


def test_deactivated_user_cannot_log_in(client, make_user, admin, auth_headers) -> None:
    user = make_user(email="kasun@example.com")
    client.put(f"/admin/users/{user.uid}/status", json={"is_active": False}, headers=auth_headers(admin))

    response = client.post("/auth/login", json={"email": "kasun@example.com", "password": "Secret123!"})

    assert response.status_code == 403


def test_admin_therapist_crud(client, make_user, admin, auth_headers) -> None:
    user = make_user(email="new@example.com")
    headers = auth_headers(admin)

    response = client.post("/admin/therapists", json={
        "user_uid": user.uid,
        "first_name": "Dilani",
        "last_name": "Jayasuriya",
        "services": ["Couples Therapy"],
        "hourly_rate": 6000,
    }, headers=headers)
    assert response.status_code == 201
    therapist = response.get_json()["therapist"]
    assert therapist["service_category"] == "FAMILY_COUPLES"
    assert therapist["email"] == "new@example.com"
    assert db.session.get(User, user.uid).role == "therapist"

    response = client.post("/admin/therapists", json={"user_uid": user.uid, "first_name": "A", "last_name": "B"},
                           headers=headers)
    assert response.status_code == 409

    response = client.put(f"/admin/therapists/{therapist['id']}", json={"rating": 4.5, "is_active": False},
                          headers=headers)
    assert response.status_code == 200
    assert response.get_json()["therapist"]["rating"] == 4.5
    assert client.get("/therapists").get_json()["total"] == 0
    assert len(client.get("/admin/therapists", headers=headers).get_json()["therapists"]) == 1

    response = client.delete(f"/admin/therapists/{therapist['id']}", headers=headers)
    assert response.status_code == 200
    assert db.session.get(TherapistProfile, therapist["id"]) is None


def test_admin_create_therapist_requires_names(client, admin, auth_headers) -> None:
    response = client.post("/admin/therapists", json={"first_name": "Solo"}, headers=auth_headers(admin))

    assert response.status_code == 400


def test_delete_therapist_with_sessions_conflicts(client, make_user, make_therapist, admin, auth_headers) -> None:
    therapist = make_therapist()
    db.session.add(TherapySession(
        booking_id="KALM-30000",
        therapist_id=therapist.therapist_id,
        client_uid=make_user().uid,
        scheduled_time=datetime(2030, 1, 7, 9, 0),
        duration=60,
        status="completed",
    ))
    db.session.commit()

    response = client.delete(f"/admin/therapists/{therapist.therapist_id}", headers=auth_headers(admin))

    assert response.status_code == 409


def test_list_payments_paginates_and_filters(client, make_user, make_therapist, make_payment, admin,
                                             auth_headers) -> None:
    therapist = make_therapist()
    patient = make_user(display_name="Kasun")
    for _ in range(11):
        make_payment(therapist, patient)
    make_payment(therapist, make_user(display_name="Amaya"), payout_status="paid")
    headers = auth_headers(admin)

    body = client.get("/admin/payments", headers=headers).get_json()
    assert body["per_page"] == 10
    assert body["total"] == 12
    assert len(body["payments"]) == 10

    body = client.get("/admin/payments?page=2", headers=headers).get_json()
    assert len(body["payments"]) == 2

    body = client.get("/admin/payments?payout_status=paid", headers=headers).get_json()
    assert [p["client_name"] for p in body["payments"]] == ["Amaya"]

    body = client.get("/admin/payments?search=amaya", headers=headers).get_json()
    assert body["total"] == 1

    assert client.get("/admin/payments?payout_status=lost", headers=headers).status_code == 400


def test_payment_stats(client, make_user, make_therapist, make_payment, admin, auth_headers) -> None:
    therapist = make_therapist()
    patient = make_user()
    make_payment(therapist, patient, 450000)
    make_payment(therapist, patient, 400000, payout_status="scheduled")
    make_payment(therapist, patient, 500000, payout_status="paid")

    body = client.get("/admin/payments/stats", headers=auth_headers(admin)).get_json()

    assert body["total_payments"] == 3
    assert body["total_revenue"] == 13500.0
    assert body["payout_status"]["pending"] == {"count": 1, "amount": 4500.0}
    assert body["payout_status"]["paid"] == {"count": 1, "amount": 5000.0}


def test_update_payout(client, make_user, make_therapist, make_payment, admin, auth_headers) -> None:
    payment = make_payment(make_therapist(), make_user())
    headers = auth_headers(admin)

    response = client.put(f"/admin/payments/{payment.payment_id}/payout",
                          json={"payout_status": "paid", "therapist_payout_amount": 3600.5}, headers=headers)

    assert response.status_code == 200
    stored = db.session.get(Payment, payment.payment_id)
    assert stored.payout_status == "paid"
    assert stored.payout_date is not None
    assert stored.therapist_payout_cents == 360050

    response = client.put(f"/admin/payments/{payment.payment_id}/payout",
                          json={"payout_status": "scheduled"}, headers=headers)
    assert db.session.get(Payment, payment.payment_id).payout_date is None

    response = client.put(f"/admin/payments/{payment.payment_id}/payout",
                          json={"payout_status": "refunded"}, headers=headers)
    assert response.status_code == 400

    response = client.put(f"/admin/payments/{payment.payment_id}/payout",
                          json={"payout_status": "paid", "therapist_payout_amount": -5}, headers=headers)
    assert response.status_code == 400


def test_session_config_endpoints(client, admin, auth_headers) -> None:
    headers = auth_headers(admin)

    assert client.get("/admin/session-config", headers=headers).get_json()["config"] == {
        "join_early_minutes": 15,
        "join_late_minutes": 30,
    }

    response = client.put("/admin/session-config", json={"join_late_minutes": 45}, headers=headers)
    assert response.status_code == 200
    assert response.get_json()["config"]["join_late_minutes"] == 45

    response = client.put("/admin/session-config", json={"join_early_minutes": "soon"}, headers=headers)
    assert response.status_code == 400


def test_mark_missed_endpoint(client, make_user, make_therapist, admin, auth_headers) -> None:
    therapist = make_therapist()
    db.session.add(TherapySession(
        booking_id="KALM-30000",
        therapist_id=therapist.therapist_id,
        client_uid=make_user().uid,
        scheduled_time=utc_now() - timedelta(hours=3),
        duration=60,
        status="scheduled",
    ))
    db.session.commit()

    response = client.post("/admin/sessions/mark-missed", headers=auth_headers(admin))

    assert response.status_code == 200
    assert response.get_json() == {"updated": 1}
    assert TherapySession.query.one().status == "missed"


def test_report_and_list_error_logs(client, make_user, admin, auth_headers) -> None:
    patient = make_user()

    response = client.post("/error-logs", json={
        "message": "Cannot read properties of undefined",
        "error_type": "ui",
        "url": "https://kalm.lk/booking",
        "additional_data": {"component": "SlotPicker"},
    }, headers={**auth_headers(patient), "User-Agent": "Mozilla/5.0"})
    assert response.status_code == 201

    client.post("/error-logs", json={"message": "Card declined", "error_type": "payment"})
    client.post("/error-logs", json={"message": "Odd", "error_type": "cosmic-rays"})

    entry = db.session.get(ErrorLog, response.get_json()["id"])
    assert entry.user_uid == patient.uid
    assert entry.user_role == "client"
    assert entry.user_agent == "Mozilla/5.0"
    assert entry.environment == "testing"

    logs = client.get("/admin/error-logs", headers=auth_headers(admin)).get_json()["error_logs"]
    assert len(logs) == 3
    assert logs[0]["error_type"] == "unknown"

    logs = client.get("/admin/error-logs?error_type=payment", headers=auth_headers(admin)).get_json()["error_logs"]
    assert [log["message"] for log in logs] == ["Card declined"]


def test_report_error_requires_message(client) -> None:
    response = client.post("/error-logs", json={"error_type": "ui"})

    assert response.status_code == 400


def test_list_notifications(client, make_user, make_therapist, admin, auth_headers) -> None:
    therapist = make_therapist()
    therapy_session = TherapySession(
        booking_id="KALM-30000",
        therapist_id=therapist.therapist_id,
        client_uid=make_user().uid,
        scheduled_time=datetime(2030, 1, 7, 9, 0),
        duration=60,
        status="scheduled",
    )
    db.session.add(therapy_session)
    db.session.flush()
    notifications.schedule_new_booking_notification(therapy_session, therapist.email, therapist.full_name)
    db.session.commit()

    body = client.get("/admin/notifications?status=pending", headers=auth_headers(admin)).get_json()
    assert body["total"] == 1
    assert body["notifications"][0]["type"] == "new_booking"

    body = client.get("/admin/notifications?status=sent", headers=auth_headers(admin)).get_json()
    assert body["total"] == 0
