"""Application configuration."""
from __future__ import annotations

import os

from dotenv import load_dotenv

load_dotenv()


def _database_uri() -> str:
    url = os.getenv("DATABASE_URL", "")
    if not url:
        return "sqlite:///kalm.db"
    # Heroku/Railway style URLs need the SQLAlchemy dialect name
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql://", 1)
    return url


class Config:
    """Base configuration read from the environment."""

    ENVIRONMENT: str = os.getenv("ENVIRONMENT", "development")
    DEBUG: bool = os.getenv("FLASK_DEBUG", "0") in {"1", "true", "True"}
    TESTING: bool = False
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    SECRET_KEY: str = os.getenv("SECRET_KEY", "dev-secret-key")
    TOKEN_MAX_AGE: int = int(os.getenv("TOKEN_MAX_AGE", "86400"))

    SQLALCHEMY_DATABASE_URI: str = _database_uri()
    SQLALCHEMY_TRACK_MODIFICATIONS: bool = False

    CORS_ORIGINS: str = os.getenv("CORS_ORIGINS", "*")

    # Stripe hosted checkout
    STRIPE_SECRET_KEY: str = os.getenv("STRIPE_SECRET_KEY", "")
    STRIPE_WEBHOOK_SECRET: str = os.getenv("STRIPE_WEBHOOK_SECRET", "")
    PAYMENT_CURRENCY: str = os.getenv("PAYMENT_CURRENCY", "lkr")
    PAYMENT_SUCCESS_URL: str = os.getenv(
        "PAYMENT_SUCCESS_URL", "http://localhost:5173/payment/success"
    )
    PAYMENT_CANCEL_URL: str = os.getenv(
        "PAYMENT_CANCEL_URL", "http://localhost:5173/payment/cancel"
    )

    GOOGLE_CLIENT_ID: str = os.getenv("GOOGLE_CLIENT_ID", "")

    # Outgoing mail for the notification dispatcher
    SMTP_HOST: str = os.getenv("SMTP_HOST", "smtp.gmail.com")
    SMTP_PORT: int = int(os.getenv("SMTP_PORT", "587"))
    SMTP_USER: str = os.getenv("SMTP_USER", "")
    SMTP_PASSWORD: str = os.getenv("SMTP_PASSWORD", "")
    MAIL_FROM: str = os.getenv("MAIL_FROM", "Kalm Mental Wellness <noreply@kalm.lk>")
    PORTAL_URL: str = os.getenv("PORTAL_URL", "https://kalm.lk")

    BOOKING_LEAD_MINUTES: int = int(os.getenv("BOOKING_LEAD_MINUTES", "15"))
    DEFAULT_TIMEZONE: str = os.getenv("DEFAULT_TIMEZONE", "Asia/Colombo")


class TestingConfig(Config):
    """Configuration used by the test-suite."""

    ENVIRONMENT = "testing"
    TESTING = True
    SECRET_KEY = "test-secret-key"
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    STRIPE_SECRET_KEY = "sk_test_dummy"
    STRIPE_WEBHOOK_SECRET = "whsec_dummy"
    GOOGLE_CLIENT_ID = "test-client-id.apps.googleusercontent.com"
    DEFAULT_TIMEZONE = "UTC"
