"""Utility to seed or update user account passwords for local development."""
from __future__ import annotations

import argparse
import sys
from pathlib import Path

from werkzeug.security import generate_password_hash

# Ensure the project root is on sys.path so ``kalm`` can be imported when the script is executed directly.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from kalm import create_app
from kalm.counters import next_id
from kalm.extensions import db
from kalm.models import USER_ROLES, AuthAccount, User
from kalm.routes_admin import placeholder_therapist

DEFAULT_NAMES = {
    "client": "Client User",
    "therapist": "Therapist User",
    "admin": "Admin User",
    "superadmin": "Super Admin",
}


def set_password(email: str, password: str, role: str = "client") -> None:
    app = create_app()

    with app.app_context():
        user = User.query.filter_by(email=email).first()
        if user is None:
            user = User(display_name=DEFAULT_NAMES[role], email=email, role=role)
            if role == "client":
                user.sequential_id = next_id("client")
            db.session.add(user)
            db.session.flush()
            print(f"Created new {role} user: {email}")
        elif user.role != role:
            print(f"Updating user role from '{user.role}' to '{role}'")
            user.role = role

        if role == "therapist" and user.therapist_profile is None:
            db.session.add(placeholder_therapist(user))
            print(f"Created placeholder therapist profile for: {email}")

        account = db.session.get(AuthAccount, user.uid)
        if account is None:
            account = AuthAccount(uid=user.uid, provider="password")
            db.session.add(account)
            print(f"Created auth account for user: {email}")

        account.password_hash = generate_password_hash(password)
        db.session.commit()

        print(f"Password for {role} user '{email}' has been set successfully.")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Set a user password for local testing.")
    parser.add_argument("email", help="User email address")
    parser.add_argument("password", help="Plain-text password to hash and store")
    parser.add_argument(
        "--role",
        choices=list(USER_ROLES),
        default="client",
        help="User role (default: client)"
    )
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    set_password(args.email, args.password, args.role)


if __name__ == "__main__":
    main()
