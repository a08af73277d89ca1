#!/usr/bin/env python3
"""Create database tables and seed the session join-window config."""
import sys
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from kalm import create_app
from kalm.bookings import SESSION_CONFIG_KEY, DEFAULT_SESSION_CONFIG
from kalm.extensions import db
from kalm.models import SystemConfig

def init_database():
    app = create_app()
    with app.app_context():
        db.create_all()
        if db.session.get(SystemConfig, SESSION_CONFIG_KEY) is None:
            db.session.add(SystemConfig(key=SESSION_CONFIG_KEY, value=dict(DEFAULT_SESSION_CONFIG)))
            db.session.commit()
        print(f"Database tables initialized at {app.config['SQLALCHEMY_DATABASE_URI']}")

if __name__ == "__main__":
    init_database()
