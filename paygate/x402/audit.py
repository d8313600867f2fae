# paygate/x402/audit.py
"""
JSON-lines audit trail for wrapper calls.

One line per event, appended to AUDIT_LOG_PATH. Each event carries the
endpoint, the caller's IP and wallet where known, and an event-specific
data payload. The trail backs payment disputes and revenue reconciliation,
so it records denials and replays as well as successes.

Writing is best effort: a failed append is logged and dropped, never raised
into the request path.
"""
import json
import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from paygate.core.config import settings

logger = logging.getLogger(__name__)


class AuditEventType(Enum):
    REQUEST_RECEIVED = "request_received"
    AGENT_VERIFIED = "agent_verified"
    AGENT_DENIED = "agent_denied"
    PAYMENT_REQUIRED_SENT = "payment_required_sent"
    PAYMENT_VERIFIED = "payment_verified"
    PAYMENT_SETTLED = "payment_settled"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_DUPLICATE = "payment_duplicate"
    PROXY_ERROR = "proxy_error"
    PRICE_ADJUSTED = "price_adjusted"
    ERROR = "error"


def generate_request_id() -> str:
    """Short correlation id (8 hex chars)."""
    return uuid.uuid4().hex[:8]


def get_audit_log_path() -> Path:
    return Path(settings.AUDIT_LOG_PATH)


def create_audit_event(
    event_type: AuditEventType,
    data: Dict[str, Any],
    endpoint_id: Optional[str] = None,
    client_ip: Optional[str] = None,
    wallet_address: Optional[str] = None,
    request_id: Optional[str] = None,
) -> Dict[str, Any]:
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event_type": event_type.value,
        "request_id": request_id or generate_request_id(),
        "endpoint_id": endpoint_id,
        "client_ip": client_ip,
        "wallet_address": wallet_address,
        "data": data,
    }


def log_audit_event(
    event_type: AuditEventType,
    data: Dict[str, Any],
    endpoint_id: Optional[str] = None,
    client_ip: Optional[str] = None,
    wallet_address: Optional[str] = None,
    request_id: Optional[str] = None,
) -> Optional[str]:
    """
    Append one event to the audit trail.

    Returns:
        The event's request_id, or None when auditing is off or the append failed
    """
    if not settings.AUDIT_LOG_ENABLED:
        return None

    event = create_audit_event(event_type, data, endpoint_id, client_ip, wallet_address, request_id)
    log_path = get_audit_log_path()
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with log_path.open("a") as f:
            f.write(json.dumps(event) + "\n")
    except Exception as e:
        logger.error(f"Failed to write audit event {event_type.value} to {log_path}: {e}")
        return None

    logger.debug(f"Audit: {event_type.value} endpoint={endpoint_id} [{event['request_id']}]")
    return event["request_id"]


# --- Pipeline events ---

def log_request_received(client_ip: str, endpoint_id: str, method: str, path: str) -> Optional[str]:
    """Log a wrapper call arriving for an active endpoint."""
    return log_audit_event(
        AuditEventType.REQUEST_RECEIVED,
        {"method": method, "path": path},
        endpoint_id=endpoint_id,
        client_ip=client_ip,
    )


def log_agent_verified(
    client_ip: str,
    endpoint_id: str,
    wallet_address: str,
    validator_txid: str,
    signature_checked: bool,
) -> Optional[str]:
    """
    Log an agent that passed validation.

    Args:
        validator_txid: Registry transaction the agent presented
        signature_checked: False when the record has verify-agent disabled

    Returns:
        The event request_id, or None if nothing was written
    """
    return log_audit_event(
        AuditEventType.AGENT_VERIFIED,
        {"validator_txid": validator_txid, "signature_checked": signature_checked},
        endpoint_id=endpoint_id,
        client_ip=client_ip,
        wallet_address=wallet_address,
    )


def log_agent_denied(
    client_ip: str,
    endpoint_id: str,
    code: str,
    reason: str,
    wallet_address: Optional[str] = None,
) -> Optional[str]:
    """Record a 400/403 from agent validation, with the error code returned to the caller."""
    return log_audit_event(
        AuditEventType.AGENT_DENIED,
        {"code": code, "reason": reason},
        endpoint_id=endpoint_id,
        client_ip=client_ip,
        wallet_address=wallet_address,
    )


def log_payment_required_sent(
    client_ip: str,
    endpoint_id: str,
    price: float,
    network: str,
    pay_to: str,
    resource: str,
) -> Optional[str]:
    """Log a 402 challenge sent to the caller."""
    return log_audit_event(
        AuditEventType.PAYMENT_REQUIRED_SENT,
        {"price": price, "network": network, "pay_to": pay_to, "resource": resource},
        endpoint_id=endpoint_id,
        client_ip=client_ip,
    )


def log_payment_verified(
    client_ip: str,
    endpoint_id: str,
    payer: Optional[str],
    is_valid: bool,
    invalid_reason: Optional[str] = None,
) -> Optional[str]:
    """Log the facilitator's verify result."""
    return log_audit_event(
        AuditEventType.PAYMENT_VERIFIED,
        {"is_valid": is_valid, "invalid_reason": invalid_reason},
        endpoint_id=endpoint_id,
        client_ip=client_ip,
        wallet_address=payer,
    )


def log_payment_settled(
    client_ip: str,
    endpoint_id: str,
    payer: Optional[str],
    transaction_hash: Optional[str],
    network: str,
    success: bool,
    error_reason: Optional[str] = None,
) -> Optional[str]:
    """Log the facilitator's settle result, successful or not."""
    return log_audit_event(
        AuditEventType.PAYMENT_SETTLED,
        {
            "success": success,
            "transaction_hash": transaction_hash,
            "network": network,
            "error_reason": error_reason,
        },
        endpoint_id=endpoint_id,
        client_ip=client_ip,
        wallet_address=payer,
    )


def log_payment_failed(
    client_ip: str,
    endpoint_id: str,
    reason: str,
    stage: str,
    wallet_address: Optional[str] = None,
) -> Optional[str]:
    """Log a payment rejected at the decode, verify or settle stage."""
    return log_audit_event(
        AuditEventType.PAYMENT_FAILED,
        {"reason": reason, "stage": stage},
        endpoint_id=endpoint_id,
        client_ip=client_ip,
        wallet_address=wallet_address,
    )


def log_payment_duplicate(
    endpoint_id: str,
    transaction_hash: str,
    wallet_address: Optional[str] = None,
) -> Optional[str]:
    """Log a settled transaction hash that was already recorded."""
    return log_audit_event(
        AuditEventType.PAYMENT_DUPLICATE,
        {"transaction_hash": transaction_hash},
        endpoint_id=endpoint_id,
        wallet_address=wallet_address,
    )


def log_proxy_error(endpoint_id: str, cause: str, upstream: str, error_message: str) -> Optional[str]:
    """Log a connection-level upstream failure (timeout, dns, unreachable or other)."""
    return log_audit_event(
        AuditEventType.PROXY_ERROR,
        {"cause": cause, "upstream": upstream, "error_message": error_message},
        endpoint_id=endpoint_id,
    )


def log_price_adjusted(
    endpoint_id: str,
    old_price: float,
    new_price: float,
    reason: str,
    clamped: bool,
) -> Optional[str]:
    """Log an automated price change and whether it was clamped to the endpoint bounds."""
    return log_audit_event(
        AuditEventType.PRICE_ADJUSTED,
        {"old_price": old_price, "new_price": new_price, "reason": reason, "clamped": clamped},
        endpoint_id=endpoint_id,
    )


def log_error(
    error_type: str,
    error_message: str,
    endpoint_id: Optional[str] = None,
    client_ip: Optional[str] = None,
    context: Optional[Dict[str, Any]] = None,
) -> Optional[str]:
    """Log an unexpected error that reached the 500 handler."""
    return log_audit_event(
        AuditEventType.ERROR,
        {"error_type": error_type, "error_message": error_message, "context": context or {}},
        endpoint_id=endpoint_id,
        client_ip=client_ip,
    )


# --- Reading the trail back ---

def _iter_events(log_path: Path) -> Iterator[Dict[str, Any]]:
    """Yield parsed events in file order, skipping blank or corrupt lines."""
    with log_path.open("r") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                yield json.loads(line)
            except json.JSONDecodeError:
                logger.debug("Skipping corrupt audit line")


def read_audit_log(
    max_entries: int = 100,
    event_type: Optional[AuditEventType] = None,
    endpoint_id: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """
    Return matching events, most recent first.

    Args:
        max_entries: Upper bound on returned events
        event_type: Only events of this type
        endpoint_id: Only events for this wrapped endpoint
    """
    log_path = get_audit_log_path()
    if not log_path.exists():
        return []

    try:
        events = [
            event for event in _iter_events(log_path)
            if (event_type is None or event.get("event_type") == event_type.value)
            and (endpoint_id is None or event.get("endpoint_id") == endpoint_id)
        ]
    except OSError as e:
        logger.error(f"Failed to read audit log {log_path}: {e}")
        return []

    events.reverse()
    return events[:max_entries]


def get_audit_stats() -> Dict[str, Any]:
    """Event counts by type plus the first and last event timestamps."""
    log_path = get_audit_log_path()
    stats: Dict[str, Any] = {
        "total_events": 0,
        "events_by_type": {},
        "first_event": None,
        "last_event": None,
        "log_path": str(log_path),
        "log_exists": log_path.exists(),
    }
    if not stats["log_exists"]:
        return stats

    try:
        for event in _iter_events(log_path):
            kind = event.get("event_type", "unknown")
            stats["events_by_type"][kind] = stats["events_by_type"].get(kind, 0) + 1
            stats["total_events"] += 1
            timestamp = event.get("timestamp")
            if timestamp:
                stats["first_event"] = stats["first_event"] or timestamp
                stats["last_event"] = timestamp
    except OSError as e:
        logger.error(f"Failed to read audit log {log_path}: {e}")
        stats["error"] = str(e)

    return stats
