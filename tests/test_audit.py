# tests/test_audit.py
"""
Unit tests for gateway audit logging.
"""
import json
import tempfile
from pathlib import Path
from unittest.mock import patch

from paygate.x402.audit import (
    AuditEventType,
    create_audit_event,
    generate_request_id,
    get_audit_stats,
    log_agent_denied,
    log_agent_verified,
    log_audit_event,
    log_payment_duplicate,
    log_payment_settled,
    log_price_adjusted,
    log_proxy_error,
    log_request_received,
    read_audit_log,
)


class TestCreateAuditEvent:
    """Test audit event creation."""

    def test_creates_event_structure(self):
        event = create_audit_event(
            event_type=AuditEventType.REQUEST_RECEIVED,
            data={"method": "GET", "path": "/w/ep1/forecast"},
            endpoint_id="ep1",
            client_ip="192.168.1.1",
            wallet_address="0x1234",
            request_id="abc12345",
        )

        assert event["event_type"] == "request_received"
        assert event["request_id"] == "abc12345"
        assert event["endpoint_id"] == "ep1"
        assert event["wallet_address"] == "0x1234"
        assert event["data"]["path"] == "/w/ep1/forecast"
        assert event["timestamp"].endswith("+00:00")

    def test_generates_request_id(self):
        assert len(generate_request_id()) == 8
        event = create_audit_event(AuditEventType.ERROR, {})
        assert len(event["request_id"]) == 8


class TestLogAuditEvent:
    """Test audit event logging to file."""

    @patch("paygate.x402.audit.settings")
    def test_writes_json_lines(self, mock_settings):
        with tempfile.TemporaryDirectory() as tmpdir:
            log_path = Path(tmpdir) / "nested" / "audit.jsonl"
            mock_settings.AUDIT_LOG_ENABLED = True
            mock_settings.AUDIT_LOG_PATH = str(log_path)

            log_audit_event(AuditEventType.REQUEST_RECEIVED, {"n": 1}, endpoint_id="ep1")
            log_audit_event(AuditEventType.ERROR, {"n": 2}, endpoint_id="ep1")

            lines = log_path.read_text().splitlines()
            assert len(lines) == 2
            assert [json.loads(line)["data"]["n"] for line in lines] == [1, 2]

    @patch("paygate.x402.audit.settings")
    def test_disabled(self, mock_settings):
        with tempfile.TemporaryDirectory() as tmpdir:
            log_path = Path(tmpdir) / "audit.jsonl"
            mock_settings.AUDIT_LOG_ENABLED = False
            mock_settings.AUDIT_LOG_PATH = str(log_path)

            assert log_audit_event(AuditEventType.ERROR, {}) is None
            assert not log_path.exists()

    @patch("paygate.x402.audit.settings")
    def test_write_failure_returns_none(self, mock_settings):
        with tempfile.TemporaryDirectory() as tmpdir:
            blocker = Path(tmpdir) / "file"
            blocker.write_text("x")
            mock_settings.AUDIT_LOG_ENABLED = True
            mock_settings.AUDIT_LOG_PATH = str(blocker / "audit.jsonl")

            assert log_audit_event(AuditEventType.ERROR, {}) is None


class TestConvenienceLoggingFunctions:
    """Test the per-event helpers (log path set by the autouse fixture)."""

    def test_request_received(self):
        log_request_received("10.0.0.1", "ep1", "GET", "/w/ep1/forecast")
        events = read_audit_log()
        assert events[0]["event_type"] == "request_received"
        assert events[0]["data"]["method"] == "GET"

    def test_agent_denied(self):
        log_agent_denied("10.0.0.1", "ep1", "AGENT_NOT_ALLOWED", "not listed", wallet_address="0xabc")
        event = read_audit_log()[0]
        assert event["event_type"] == "agent_denied"
        assert event["wallet_address"] == "0xabc"
        assert event["data"]["code"] == "AGENT_NOT_ALLOWED"

    def test_agent_verified_returns_request_id(self):
        request_id = log_agent_verified("10.0.0.1", "ep1", "0xabc", "0xtx", signature_checked=False)

        event = read_audit_log()[0]
        assert event["request_id"] == request_id
        assert event["data"] == {"validator_txid": "0xtx", "signature_checked": False}

    def test_payment_settled(self):
        log_payment_settled("10.0.0.1", "ep1", "0xpayer", "0xabc", "base-sepolia", True, None)
        event = read_audit_log()[0]
        assert event["event_type"] == "payment_settled"
        assert event["data"]["transaction_hash"] == "0xabc"

    def test_duplicate_proxy_and_price_events(self):
        log_payment_duplicate("ep1", "0xabc")
        log_proxy_error("ep1", "timeout", "https://api.example.com", "timed out")
        log_price_adjusted("ep1", 5.0, 10.0, "Flow automation: INCREASE", clamped=True)

        events = read_audit_log()
        assert [e["event_type"] for e in events] == ["price_adjusted", "proxy_error", "payment_duplicate"]


class TestReadAuditLog:
    """Test audit log reading and filtering."""

    def test_filters(self):
        log_request_received("10.0.0.1", "ep1", "GET", "/w/ep1")
        log_request_received("10.0.0.1", "ep2", "GET", "/w/ep2")
        log_payment_duplicate("ep1", "0xabc")

        assert len(read_audit_log(endpoint_id="ep1")) == 2
        assert len(read_audit_log(event_type=AuditEventType.PAYMENT_DUPLICATE)) == 1
        assert len(read_audit_log(max_entries=1)) == 1

    def test_missing_file(self):
        assert read_audit_log() == []

    def test_stats(self):
        log_request_received("10.0.0.1", "ep1", "GET", "/w/ep1")
        log_request_received("10.0.0.1", "ep1", "GET", "/w/ep1")
        log_payment_duplicate("ep1", "0xabc")

        stats = get_audit_stats()
        assert stats["total_events"] == 3
        assert stats["events_by_type"]["request_received"] == 2
