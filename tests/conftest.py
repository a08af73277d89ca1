"""pytest configuration and shared fixtures."""
from __future__ import annotations

import sys
from datetime import timedelta
from pathlib import Path

import pytest
from itsdangerous import URLSafeTimedSerializer
from werkzeug.security import generate_password_hash

# Ensure the project root is available on sys.path so tests can import the app package.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from kalm import create_app  # noqa: E402
from kalm.config import TestingConfig  # noqa: E402
from kalm.extensions import db  # noqa: E402
from kalm.models import (  # noqa: E402
    AuthAccount,
    TherapistAvailability,
    TherapistProfile,
    User,
    utc_now,
)

DEFAULT_PASSWORD = "Secret123!"

ALL_WEEK = [
    {
        "day_of_week": day,
        "day_name": name,
        "is_available": True,
        "time_slots": [
            {"id": f"w{day}-09", "start_time": "09:00", "end_time": "10:00", "is_available": True,
             "is_recurring": True, "session_type": "video", "price": 4500},
            {"id": f"w{day}-11", "start_time": "11:00", "end_time": "12:00", "is_available": True,
             "is_recurring": True, "session_type": "audio", "price": 4000},
        ],
    }
    for day, name in enumerate(
        ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]
    )
]


@pytest.fixture
def app():
    flask_app = create_app(TestingConfig)
    with flask_app.app_context():
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def future_date():
    """A date far enough ahead that the booking lead buffer never matters."""
    return utc_now().date() + timedelta(days=10)


@pytest.fixture
def make_user(app):
    counter = {"n": 0}

    def _make_user(role: str = "client", email: str | None = None, password: str = DEFAULT_PASSWORD,
                   display_name: str = "Test User", **fields) -> User:
        counter["n"] += 1
        user = User(
            email=email if email is not None else f"{role}{counter['n']}@example.com",
            display_name=display_name,
            role=role,
            **fields,
        )
        db.session.add(user)
        db.session.flush()
        db.session.add(AuthAccount(uid=user.uid, provider="password",
                                   password_hash=generate_password_hash(password)))
        db.session.commit()
        return user

    return _make_user


@pytest.fixture
def make_therapist(app, make_user):
    def _make_therapist(user: User | None = None, weekly=None, special=None, timezone: str = "UTC",
                        with_availability: bool = True, **fields) -> TherapistProfile:
        if user is None:
            user = make_user(role="therapist", display_name="Nimali Perera")
        values = {
            "first_name": "Nimali",
            "last_name": "Perera",
            "email": user.email,
            "specializations": ["Anxiety", "Depression"],
            "languages": ["English", "Sinhala"],
            "services": ["Individual Therapy"],
            "session_formats": ["video", "audio"],
            "hourly_rate": 4500,
            "is_available": True,
            "is_active": True,
        }
        values.update(fields)
        therapist = TherapistProfile(user_uid=user.uid, **values)
        db.session.add(therapist)
        db.session.flush()
        if with_availability:
            db.session.add(TherapistAvailability(
                therapist_id=therapist.therapist_id,
                weekly_schedule=ALL_WEEK if weekly is None else weekly,
                special_dates=special or [],
                timezone=timezone,
                is_active=True,
            ))
        db.session.commit()
        return therapist

    return _make_therapist


@pytest.fixture
def auth_headers(app):
    def _auth_headers(user: User) -> dict[str, str]:
        serializer = URLSafeTimedSerializer(app.config["SECRET_KEY"], salt="auth-token")
        token = serializer.dumps({"uid": user.uid, "role": user.role})
        return {"Authorization": f"Bearer {token}"}

    return _auth_headers
