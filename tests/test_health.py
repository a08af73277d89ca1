"""Tests for the uptime endpoints."""
from __future__ import annotations

from unittest.mock import patch

from sqlalchemy.exc import OperationalError


def test_health_check(client) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    assert response.get_json() == {"status": "ok"}


def test_db_health_ok(client) -> None:
    response = client.get("/db-health")

    assert response.status_code == 200
    assert response.get_json() == {"database": "ok"}


def test_db_health_unavailable(client) -> None:
    with patch("kalm.routes.db.session.execute", side_effect=OperationalError("SELECT 1", {}, Exception("down"))):
        response = client.get("/db-health")

    assert response.status_code == 500
    assert response.get_json() == {"database": "unavailable"}
