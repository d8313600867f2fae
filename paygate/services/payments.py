# paygate/services/payments.py
"""Duplicate-payment guard: record each settled transaction exactly once."""
import logging
from enum import Enum

from paygate.core.errors import PersistenceError
from paygate.db.storage import Storage
from paygate.x402 import audit
from paygate.x402.payment_gate import PaymentReceipt

logger = logging.getLogger(__name__)


class GuardOutcome(Enum):
    RECORDED = "recorded"
    DUPLICATE = "duplicate"
    FAILED = "failed"


def record_payment_once(storage: Storage, endpoint_id: str, receipt: PaymentReceipt) -> GuardOutcome:
    """
    Insert a PaymentRecord for the receipt's transaction hash.

    A duplicate hash and a storage failure both let the request proceed;
    payment bookkeeping never blocks the proxy step.
    """
    try:
        inserted = storage.record_payment(
            tx_hash=receipt.transaction,
            endpoint_id=endpoint_id,
            amount=receipt.amount,
            payer_address=receipt.payer,
            status="SUCCESS",
        )
    except PersistenceError as e:
        logger.error(f"Failed to log payment {receipt.transaction}: {e}")
        return GuardOutcome.FAILED

    if not inserted:
        logger.info(f"Duplicate payment transaction {receipt.transaction}, skipping insert (replay protection)")
        audit.log_payment_duplicate(endpoint_id, receipt.transaction, wallet_address=receipt.payer)
        return GuardOutcome.DUPLICATE

    logger.info(f"Payment logged: {receipt.transaction} - {receipt.amount}")
    return GuardOutcome.RECORDED
