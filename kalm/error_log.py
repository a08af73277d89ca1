"""Logging setup and persistent error reporting."""
from __future__ import annotations

import logging
import traceback

from flask import Flask, current_app, has_request_context, request
from sqlalchemy.exc import SQLAlchemyError

from .extensions import db
from .models import ErrorLog

ERROR_TYPES = ("auth", "payment", "storage", "network", "ui", "unknown")


def setup_logging(app: Flask) -> None:
    """Configure basic logging for the application."""
    level = getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="[%(asctime)s] %(levelname)s in %(module)s: %(message)s",
    )
    app.logger.setLevel(level)


def log_error(exc: BaseException, error_type: str = "unknown", user=None, **data) -> ErrorLog | None:
    """Log ``exc`` and, in production, persist it to the error_logs table.

    Returns the stored row, or None when nothing was written.
    """
    current_app.logger.error("Unhandled %s error: %s", error_type, exc, exc_info=exc)

    if current_app.config.get("ENVIRONMENT") != "production":
        return None

    entry = ErrorLog(
        message=str(exc) or exc.__class__.__name__,
        stack="".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
        user_uid=getattr(user, "uid", None),
        user_role=getattr(user, "role", None),
        environment="production",
        error_type=error_type if error_type in ERROR_TYPES else "unknown",
        additional_data=data or None,
    )
    if has_request_context():
        entry.url = request.url[:500]
        entry.user_agent = (request.headers.get("User-Agent") or "")[:500] or None

    try:
        db.session.add(entry)
        db.session.commit()
    except SQLAlchemyError as db_exc:
        db.session.rollback()
        current_app.logger.exception("Failed to store error log", exc_info=db_exc)
        return None
    return entry
