"""Tests for checkout, gateway callback, verification and webhooks."""
from __future__ import annotations

from datetime import datetime, timedelta
from unittest.mock import MagicMock, patch

import pytest

from kalm import bookings
from kalm.bookings import SlotUnavailableError, slot_key
from kalm.extensions import db
from kalm.models import EmailNotification, ErrorLog, Payment, PendingPayment, TherapySession, WebhookLog


class FakeStripeError(Exception):
    pass


class FakeSignatureError(Exception):
    pass


@pytest.fixture
def stripe_mock():
    """Mock Stripe API calls."""
    with patch("kalm.payments.stripe") as mock_stripe:
        checkout = MagicMock()
        checkout.id = "cs_test_123"
        checkout.url = "https://checkout.stripe.com/c/pay/cs_test_123"
        checkout.payment_status = "paid"
        checkout.payment_intent = "pi_test_123"

        mock_stripe.checkout.Session.create.return_value = checkout
        mock_stripe.checkout.Session.retrieve.return_value = checkout

        mock_stripe.StripeError = FakeStripeError
        mock_stripe.SignatureVerificationError = FakeSignatureError

        yield mock_stripe


def _starts_at(day, hour: int = 9) -> datetime:
    return datetime.combine(day, datetime.min.time()) + timedelta(hours=hour)


def _checkout(client, headers, therapist, starts_at: datetime):
    return client.post(
        "/payments/checkout",
        json={
            "therapist_id": therapist.therapist_id,
            "starts_at": starts_at.isoformat(),
            "service_type": "individual",
            "service_name": "Individual Therapy",
        },
        headers=headers,
    )


def test_checkout_requires_auth(client, make_therapist, future_date, stripe_mock) -> None:
    therapist = make_therapist()

    response = _checkout(client, {}, therapist, _starts_at(future_date))

    assert response.status_code == 401


def test_checkout_creates_pending_payment(client, make_user, make_therapist, auth_headers, future_date,
                                          stripe_mock) -> None:
    therapist = make_therapist()
    patient = make_user(email="patient@example.com")

    response = _checkout(client, auth_headers(patient), therapist, _starts_at(future_date))

    assert response.status_code == 201
    body = response.get_json()
    assert body["order_id"] == "KALM-30000"
    assert body["checkout_url"] == "https://checkout.stripe.com/c/pay/cs_test_123"
    assert body["payment"]["final_amount"] == 4500.0

    kwargs = stripe_mock.checkout.Session.create.call_args.kwargs
    assert kwargs["line_items"][0]["price_data"]["unit_amount"] == 450000
    assert kwargs["line_items"][0]["price_data"]["currency"] == "lkr"
    assert kwargs["metadata"]["order_id"] == "KALM-30000"
    assert kwargs["customer_email"] == "patient@example.com"

    pending = db.session.get(PendingPayment, "KALM-30000")
    assert pending.status == "pending"
    assert pending.checkout_session_id == "cs_test_123"
    assert pending.scheduled_time == _starts_at(future_date)


def test_checkout_rejects_unknown_slot(client, make_user, make_therapist, auth_headers, future_date,
                                       stripe_mock) -> None:
    therapist = make_therapist()

    response = _checkout(client, auth_headers(make_user()), therapist, _starts_at(future_date, 13))

    assert response.status_code == 409
    assert PendingPayment.query.count() == 0
    stripe_mock.checkout.Session.create.assert_not_called()


def test_checkout_gateway_error(client, make_user, make_therapist, auth_headers, future_date,
                                stripe_mock) -> None:
    therapist = make_therapist()
    stripe_mock.checkout.Session.create.side_effect = FakeStripeError("card network down")

    response = _checkout(client, auth_headers(make_user()), therapist, _starts_at(future_date))

    assert response.status_code == 502
    assert response.get_json()["error"] == "payment_error"
    assert PendingPayment.query.one().status == "failed"


def test_checkout_commits_order_before_calling_gateway(client, make_user, make_therapist, auth_headers, future_date,
                                                       stripe_mock) -> None:
    therapist = make_therapist()
    checkout = stripe_mock.checkout.Session.create.return_value
    seen = {}

    def create_session(**params):
        seen["uncommitted"] = bool(db.session.new or db.session.dirty)
        return checkout

    stripe_mock.checkout.Session.create.side_effect = create_session

    response = _checkout(client, auth_headers(make_user()), therapist, _starts_at(future_date))

    assert response.status_code == 201
    assert seen == {"uncommitted": False}


def test_checkout_from_wizard_state(client, make_user, make_therapist, auth_headers, future_date,
                                    stripe_mock) -> None:
    therapist = make_therapist()
    client.post("/booking/start", json={"therapist_id": therapist.therapist_id})
    client.post("/booking/slot", json={"starts_at": _starts_at(future_date, 11).isoformat()})
    client.post("/booking/confirm")

    response = client.post("/payments/checkout", json={}, headers=auth_headers(make_user()))

    assert response.status_code == 201
    pending = db.session.get(PendingPayment, response.get_json()["order_id"])
    assert pending.session_type == "audio"
    assert pending.amount_cents == 400000


def test_checkout_without_selection(client, make_user, auth_headers, stripe_mock) -> None:
    response = client.post("/payments/checkout", json={}, headers=auth_headers(make_user()))

    assert response.status_code == 400


def test_callback_finalizes_booking(client, make_user, make_therapist, auth_headers, future_date,
                                    stripe_mock) -> None:
    therapist = make_therapist()
    patient = make_user(email="patient@example.com", display_name="Kasun")
    order_id = _checkout(client, auth_headers(patient), therapist, _starts_at(future_date)).get_json()["order_id"]

    response = client.get(f"/payments/callback?order_id={order_id}")

    assert response.status_code == 200
    body = response.get_json()
    assert body["status"] == "paid"
    session = body["session"]
    assert session["status"] == "scheduled"
    assert session["booking_id"] == order_id
    assert session["booking_number"] == 30000
    assert session["client_name"] == "Kasun"
    assert session["amount"] == 4500.0

    payment = Payment.query.filter_by(order_id=order_id).one()
    assert payment.payout_status == "pending"
    assert payment.payment_status == "completed"
    assert payment.gateway_payment_id == "pi_test_123"
    assert payment.sequential_id == 40000

    assert db.session.get(PendingPayment, order_id).status == "completed"

    queued = sorted((n.notification_type, n.recipient_email) for n in EmailNotification.query.all())
    assert queued == [
        ("new_booking", therapist.email),
        ("session_reminder", "patient@example.com"),
        ("session_reminder", therapist.email),
    ]


def test_callback_is_idempotent(client, make_user, make_therapist, auth_headers, future_date, stripe_mock) -> None:
    therapist = make_therapist()
    order_id = _checkout(client, auth_headers(make_user()), therapist, _starts_at(future_date)).get_json()["order_id"]

    first = client.get(f"/payments/callback?order_id={order_id}").get_json()
    second = client.get(f"/payments/callback?order_id={order_id}").get_json()

    assert first["session"]["id"] == second["session"]["id"]
    assert TherapySession.query.count() == 1
    assert Payment.query.count() == 1


def test_callback_unpaid_reports_status(client, make_user, make_therapist, auth_headers, future_date,
                                        stripe_mock) -> None:
    therapist = make_therapist()
    order_id = _checkout(client, auth_headers(make_user()), therapist, _starts_at(future_date)).get_json()["order_id"]
    stripe_mock.checkout.Session.retrieve.return_value.payment_status = "unpaid"

    response = client.get(f"/payments/callback?order_id={order_id}")

    assert response.status_code == 200
    assert response.get_json()["status"] == "unpaid"
    assert TherapySession.query.count() == 0


def test_callback_conflict_refunds(client, make_user, make_therapist, auth_headers, future_date,
                                   stripe_mock) -> None:
    therapist = make_therapist()
    order_id = _checkout(client, auth_headers(make_user()), therapist, _starts_at(future_date)).get_json()["order_id"]

    # Someone else's session lands on the slot before the callback arrives
    db.session.add(TherapySession(
        booking_id="KALM-OTHER",
        therapist_id=therapist.therapist_id,
        client_uid=make_user().uid,
        scheduled_time=_starts_at(future_date) + timedelta(minutes=30),
        duration=60,
        status="scheduled",
    ))
    db.session.commit()

    response = client.get(f"/payments/callback?order_id={order_id}")

    assert response.status_code == 409
    assert response.get_json()["refunded"] is True
    stripe_mock.Refund.create.assert_called_once_with(payment_intent="pi_test_123")
    assert db.session.get(PendingPayment, order_id).status == "conflict"
    assert Payment.query.count() == 0

    again = client.get(f"/payments/callback?order_id={order_id}")
    assert again.status_code == 409


def _occupy_slot(therapist, starts_at: datetime, client_user) -> TherapySession:
    """A live session holding the slot key, as a concurrent finalization would leave it."""
    occupant = TherapySession(
        booking_id="KALM-OTHER",
        therapist_id=therapist.therapist_id,
        client_uid=client_user.uid,
        scheduled_time=starts_at,
        duration=60,
        status="scheduled",
        slot_key=slot_key(therapist.therapist_id, starts_at),
    )
    db.session.add(occupant)
    db.session.commit()
    return occupant


def test_finalize_falls_back_when_slot_key_taken(client, make_user, make_therapist, auth_headers, future_date,
                                                 stripe_mock) -> None:
    therapist = make_therapist()
    order_id = _checkout(client, auth_headers(make_user()), therapist, _starts_at(future_date)).get_json()["order_id"]
    _occupy_slot(therapist, _starts_at(future_date), make_user())
    pending = db.session.get(PendingPayment, order_id)

    # Both finalizations passed the overlap query; only the unique key stops the second
    with patch("kalm.bookings.has_conflict", return_value=False):
        with pytest.raises(SlotUnavailableError):
            bookings.finalize_booking(pending, "pi_test_123")

    assert db.session.get(PendingPayment, order_id).status == "pending"
    assert TherapySession.query.count() == 1
    assert Payment.query.count() == 0


def test_callback_refunds_when_slot_key_taken(client, make_user, make_therapist, auth_headers, future_date,
                                              stripe_mock) -> None:
    therapist = make_therapist()
    order_id = _checkout(client, auth_headers(make_user()), therapist, _starts_at(future_date)).get_json()["order_id"]
    _occupy_slot(therapist, _starts_at(future_date), make_user())

    with patch("kalm.bookings.has_conflict", return_value=False):
        response = client.get(f"/payments/callback?order_id={order_id}")

    assert response.status_code == 409
    assert response.get_json()["refunded"] is True
    stripe_mock.Refund.create.assert_called_once_with(payment_intent="pi_test_123")
    assert db.session.get(PendingPayment, order_id).status == "conflict"


def test_callback_refund_failure_is_retried(app, client, make_user, make_therapist, auth_headers, future_date,
                                            stripe_mock) -> None:
    app.config["ENVIRONMENT"] = "production"
    therapist = make_therapist()
    order_id = _checkout(client, auth_headers(make_user()), therapist, _starts_at(future_date)).get_json()["order_id"]
    _occupy_slot(therapist, _starts_at(future_date), make_user())
    stripe_mock.Refund.create.side_effect = FakeStripeError("gateway timeout")

    response = client.get(f"/payments/callback?order_id={order_id}")

    assert response.status_code == 502
    body = response.get_json()
    assert body["refunded"] is False
    assert body["error"] == "refund_failed"
    assert db.session.get(PendingPayment, order_id).status == "refund_failed"
    entry = ErrorLog.query.one()
    assert entry.error_type == "payment"
    assert entry.additional_data["order_id"] == order_id

    stripe_mock.Refund.create.side_effect = None
    retry = client.get(f"/payments/callback?order_id={order_id}")

    assert retry.status_code == 409
    assert retry.get_json()["refunded"] is True
    assert stripe_mock.Refund.create.call_count == 2
    assert db.session.get(PendingPayment, order_id).status == "conflict"
    assert Payment.query.count() == 0


def test_callback_unknown_order(client, stripe_mock) -> None:
    response = client.get("/payments/callback?order_id=KALM-1")

    assert response.status_code == 404


def test_verify_payment(client, make_user, make_therapist, auth_headers, future_date, stripe_mock) -> None:
    therapist = make_therapist()
    patient = make_user()
    order_id = _checkout(client, auth_headers(patient), therapist, _starts_at(future_date)).get_json()["order_id"]

    response = client.get(f"/payments/{order_id}/verify", headers=auth_headers(patient))

    assert response.status_code == 200
    assert response.get_json() == {"success": True, "status": "pending"}

    stranger = client.get(f"/payments/{order_id}/verify", headers=auth_headers(make_user()))
    assert stranger.status_code == 404


def test_special_date_slot_marked_booked(client, make_user, make_therapist, auth_headers, future_date,
                                         stripe_mock) -> None:
    special = [{
        "date": future_date.isoformat(),
        "is_available": True,
        "time_slots": [{"id": "sp-1", "start_time": "15:00", "end_time": "16:00", "is_available": True,
                        "is_recurring": False, "session_type": "video", "price": 5000}],
    }]
    therapist = make_therapist(special=special)
    order_id = _checkout(client, auth_headers(make_user()), therapist,
                         _starts_at(future_date, 15)).get_json()["order_id"]

    client.get(f"/payments/callback?order_id={order_id}")

    slot = therapist.availability.special_dates[0]["time_slots"][0]
    assert slot["is_booked"] is True
    assert slot["booking_id"] == order_id


def _webhook_event(order_id: str, event_id: str = "evt_1") -> dict:
    return {
        "id": event_id,
        "type": "checkout.session.completed",
        "data": {"object": {
            "id": "cs_test_123",
            "payment_status": "paid",
            "payment_intent": "pi_test_123",
            "client_reference_id": order_id,
            "metadata": {"order_id": order_id},
        }},
    }


def test_webhook_finalizes_and_ignores_duplicates(client, make_user, make_therapist, auth_headers, future_date,
                                                  stripe_mock) -> None:
    therapist = make_therapist()
    order_id = _checkout(client, auth_headers(make_user()), therapist, _starts_at(future_date)).get_json()["order_id"]
    stripe_mock.Webhook.construct_event.return_value = _webhook_event(order_id)

    first = client.post("/payments/webhook", data=b"{}", headers={"Stripe-Signature": "sig"})
    second = client.post("/payments/webhook", data=b"{}", headers={"Stripe-Signature": "sig"})

    assert first.status_code == 200
    assert first.get_json()["status"] == "booked"
    assert second.get_json()["duplicate"] is True
    assert TherapySession.query.count() == 1
    assert db.session.get(WebhookLog, "evt_1").status == "booked"


def test_webhook_after_callback_is_noop(client, make_user, make_therapist, auth_headers, future_date,
                                        stripe_mock) -> None:
    therapist = make_therapist()
    order_id = _checkout(client, auth_headers(make_user()), therapist, _starts_at(future_date)).get_json()["order_id"]
    client.get(f"/payments/callback?order_id={order_id}")
    stripe_mock.Webhook.construct_event.return_value = _webhook_event(order_id, "evt_2")

    response = client.post("/payments/webhook", data=b"{}", headers={"Stripe-Signature": "sig"})

    assert response.get_json()["status"] == "already_booked"
    assert TherapySession.query.count() == 1


def test_webhook_invalid_signature(client, stripe_mock) -> None:
    stripe_mock.Webhook.construct_event.side_effect = FakeSignatureError("bad signature")

    response = client.post("/payments/webhook", data=b"{}", headers={"Stripe-Signature": "sig"})

    assert response.status_code == 400
    assert response.get_json()["error"] == "invalid_signature"


def test_webhook_refund_failure_asks_for_redelivery(client, make_user, make_therapist, auth_headers, future_date,
                                                    stripe_mock) -> None:
    therapist = make_therapist()
    order_id = _checkout(client, auth_headers(make_user()), therapist, _starts_at(future_date)).get_json()["order_id"]
    _occupy_slot(therapist, _starts_at(future_date), make_user())
    stripe_mock.Webhook.construct_event.return_value = _webhook_event(order_id)
    stripe_mock.Refund.create.side_effect = FakeStripeError("gateway timeout")

    first = client.post("/payments/webhook", data=b"{}", headers={"Stripe-Signature": "sig"})

    assert first.status_code == 502
    assert db.session.get(WebhookLog, "evt_1") is None
    assert db.session.get(PendingPayment, order_id).status == "refund_failed"

    stripe_mock.Refund.create.side_effect = None
    second = client.post("/payments/webhook", data=b"{}", headers={"Stripe-Signature": "sig"})

    assert second.status_code == 200
    assert second.get_json()["status"] == "conflict"
    assert db.session.get(WebhookLog, "evt_1").status == "conflict"
    assert db.session.get(PendingPayment, order_id).status == "conflict"


def test_checkout_applies_coupon(client, make_user, make_therapist, auth_headers, future_date, stripe_mock) -> None:
    therapist = make_therapist()
    response = client.post(
        "/payments/checkout",
        json={"therapist_id": therapist.therapist_id, "starts_at": _starts_at(future_date).isoformat(),
              "coupon_code": "first10"},
        headers=auth_headers(make_user()),
    )

    assert response.status_code == 201
    assert response.get_json()["payment"]["final_amount"] == 4050.0
    kwargs = stripe_mock.checkout.Session.create.call_args.kwargs
    assert kwargs["line_items"][0]["price_data"]["unit_amount"] == 405000

    order_id = response.get_json()["order_id"]
    client.get(f"/payments/callback?order_id={order_id}")

    payment = Payment.query.filter_by(order_id=order_id).one()
    assert payment.coupon_code == "FIRST10"
    assert payment.discount_cents == 45000
    assert payment.final_amount_cents == 405000


def test_checkout_rejects_unknown_coupon(client, make_user, make_therapist, auth_headers, future_date,
                                         stripe_mock) -> None:
    therapist = make_therapist()
    response = client.post(
        "/payments/checkout",
        json={"therapist_id": therapist.therapist_id, "starts_at": _starts_at(future_date).isoformat(),
              "coupon_code": "FREE100"},
        headers=auth_headers(make_user()),
    )

    assert response.status_code == 400
    assert PendingPayment.query.count() == 0
    stripe_mock.checkout.Session.create.assert_not_called()


def test_checkout_carries_wizard_coupon(client, make_user, make_therapist, auth_headers, future_date,
                                        stripe_mock) -> None:
    therapist = make_therapist()
    client.post("/booking/start", json={"therapist_id": therapist.therapist_id})
    client.post("/booking/slot", json={"starts_at": _starts_at(future_date, 11).isoformat()})
    client.post("/booking/coupon", json={"coupon_code": "WELCOME20"})
    client.post("/booking/confirm")

    response = client.post("/payments/checkout", json={}, headers=auth_headers(make_user()))

    pending = db.session.get(PendingPayment, response.get_json()["order_id"])
    assert pending.coupon_code == "WELCOME20"
    assert pending.amount_cents == 400000
    assert pending.discount_cents == 80000
    assert pending.final_amount_cents == 320000
