# paygate/agent/validator.py
import logging
from dataclasses import dataclass
from typing import Any

from paygate.agent.registry import AuthorizationRecord, RegistryClient
from paygate.agent.signature import AgentClaim, verify_claim
from paygate.core.errors import AgentNotAllowed, InvalidTransaction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ValidatedAgent:
    """An agent that passed registry (and, if required, signature) checks."""
    wallet: str
    timestamp: str
    validator_txid: str
    record: AuthorizationRecord
    signature_checked: bool


def validate_agent(
    claim: AgentClaim,
    endpoint_id: str,
    body: Any,
    registry: RegistryClient,
) -> ValidatedAgent:
    """
    Authorize an agent call against the on-chain registry record.

    When the record requires verification, the wallet must be allow-listed and
    the signature must match the canonical message. When it does not, both
    checks are skipped.

    Raises:
        InvalidTransaction: Record missing or malformed
        AgentNotAllowed: Wallet not in the record's allow-list
        InvalidSignature: Signature does not match the wallet
    """
    record = registry.fetch_record(claim.validator_txid)
    if record is None:
        logger.warning(f"Validator transaction rejected: {claim.validator_txid}")
        raise InvalidTransaction()

    if not record.verify_agent:
        logger.info(f"Agent verification disabled for API '{record.api_name}'")
        return ValidatedAgent(
            wallet=claim.wallet,
            timestamp=claim.timestamp,
            validator_txid=claim.validator_txid,
            record=record,
            signature_checked=False,
        )

    if not record.allows(claim.wallet):
        logger.warning(f"Agent wallet not in allowed list: {claim.wallet}")
        raise AgentNotAllowed()

    verify_claim(claim.wallet, claim.signature, claim.timestamp, endpoint_id, body)
    logger.info(f"Agent signature verified for {claim.wallet}")

    return ValidatedAgent(
        wallet=claim.wallet,
        timestamp=claim.timestamp,
        validator_txid=claim.validator_txid,
        record=record,
        signature_checked=True,
    )
