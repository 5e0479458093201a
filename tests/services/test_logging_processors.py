"""Tests for the structlog processors that tag every billing log entry."""

import pytest
from asgi_correlation_id.context import correlation_id

from billing_recon.core.logging import SERVICE_NAME, add_correlation_id, add_service_name

pytestmark = pytest.mark.unit


def test_service_name_added():
    event_dict = add_service_name(None, "info", {"event": "stripe_webhook_received"})

    assert event_dict["service"] == SERVICE_NAME


def test_service_name_not_overwritten():
    event_dict = add_service_name(None, "info", {"event": "backfill_started", "service": "backfill"})

    assert event_dict["service"] == "backfill"


def test_correlation_id_from_request_context():
    token = correlation_id.set("req-123")
    try:
        event_dict = add_correlation_id(None, "info", {"event": "plan_change_applied"})
    finally:
        correlation_id.reset(token)

    assert event_dict["correlation_id"] == "req-123"


def test_no_correlation_id_outside_a_request():
    event_dict = add_correlation_id(None, "info", {"event": "backfill_started"})

    assert "correlation_id" not in event_dict
