"""
Tests for log processors.
"""
import pytest

from checkout_platform.monitoring.logging import (
    add_app_context,
    mask_value,
    scrub_sensitive_fields,
)


class TestLogProcessors:
    """Test suite for the structlog processors."""

    @pytest.mark.unit
    def test_secrets_and_contacts_scrubbed(self) -> None:
        event = scrub_sensitive_fields(
            None,
            "info",
            {
                "event": "checkout_started",
                "buyer_email": "ada@example.com",
                "client_secret": "pi_1_secret_abc",
                "ip_address": "203.0.113.42",
                "sale_id": 7,
            },
        )

        assert event["buyer_email"] == "a***@example.com"
        assert event["client_secret"] == "***REDACTED***"
        assert event["ip_address"] == "***3.42"
        assert event["sale_id"] == 7

    @pytest.mark.unit
    def test_mask_short_values(self) -> None:
        assert mask_value("abc") == "***"
        assert mask_value(None) == "***"

    @pytest.mark.unit
    def test_app_context(self) -> None:
        event = add_app_context(None, "info", {"event": "x"})

        assert event["app_env"] == "test"
        assert event["app_name"]
