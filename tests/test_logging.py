"""Tests for logging helpers."""

import structlog
from structlog.testing import capture_logs

from ledgerline.logging import billing_context, log_audit_event, redact_secrets


class TestLoggingHelpers:
    def test_redacts_secret_fields(self):
        event = redact_secrets(None, "info", {"event": "x", "signature": "t=1,v1=abc", "provider": "mock"})

        assert event["signature"] == "***"
        assert event["provider"] == "mock"

    def test_billing_context_binds_and_unbinds(self):
        with billing_context(sweep_at="2025-02-15T12:00:00+00:00"):
            assert structlog.contextvars.get_contextvars()["sweep_at"] == "2025-02-15T12:00:00+00:00"

        assert "sweep_at" not in structlog.contextvars.get_contextvars()

    def test_audit_event_fields(self):
        with capture_logs() as logs:
            log_audit_event("subscription.canceled", "subscription", "sub_1", livemode=False, reason="churn")

        [entry] = logs
        assert entry["event"] == "subscription.canceled"
        assert entry["audit_resource_type"] == "subscription"
        assert entry["audit_resource_id"] == "sub_1"
        assert entry["reason"] == "churn"
