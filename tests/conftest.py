# tests/conftest.py
"""
Shared fixtures: an in-memory store, a registered endpoint, an agent key
and an audit log redirected into the test's temp directory.
"""
import pytest
from eth_account import Account

from paygate.core.config import settings
from paygate.db.storage import Storage

PAY_TO = "0x1234567890123456789012345678901234567890"


@pytest.fixture(autouse=True)
def isolated_audit_log(tmp_path, monkeypatch):
    """Keep audit events out of the working directory."""
    log_path = tmp_path / "audit.jsonl"
    monkeypatch.setattr(settings, "AUDIT_LOG_PATH", str(log_path))
    return log_path


@pytest.fixture
def storage():
    return Storage.from_url("sqlite://")


@pytest.fixture
def endpoint(storage):
    return storage.create_endpoint(
        name="Weather API",
        original_url="https://weather.example.com/v1",
        price_per_request=5.0,
        pay_to_address=PAY_TO,
        min_price=1.0,
        max_price=10.0,
        endpoint_id="ep1",
    )


@pytest.fixture
def agent_account():
    return Account.create()
