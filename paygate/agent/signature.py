# paygate/agent/signature.py
"""
Canonical request messages and agent signature verification.

The signed message is the pipe-delimited concatenation of
endpoint id, timestamp, timestamp (nonce slot) and the SHA-256 hex digest of
the compact JSON serialization of the request body. Signatures use EIP-191
personal_sign over secp256k1 and are checked by recovering the signer address.
"""
import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from eth_account import Account
from eth_account.messages import encode_defunct
from eth_utils import is_address, to_checksum_address

from paygate.core.errors import InvalidSignature, MissingClaimHeaders

logger = logging.getLogger(__name__)

AGENT_WALLET_HEADER = "x-agent-wallet"
AGENT_SIGNATURE_HEADER = "x-agent-signature"
AGENT_TIMESTAMP_HEADER = "x-agent-timestamp"
VALIDATOR_TXID_HEADER = "x-validator-txid"

REQUIRED_AGENT_HEADERS = (
    AGENT_WALLET_HEADER,
    AGENT_SIGNATURE_HEADER,
    AGENT_TIMESTAMP_HEADER,
    VALIDATOR_TXID_HEADER,
)


@dataclass(frozen=True)
class AgentClaim:
    """The agent headers of one inbound request."""
    wallet: str
    signature: str
    timestamp: str
    validator_txid: str


def extract_agent_claim(headers: Mapping[str, str]) -> AgentClaim:
    """
    Read the four agent headers.

    Raises:
        MissingClaimHeaders: If any header is absent or empty
    """
    values = {name: (headers.get(name) or "").strip() for name in REQUIRED_AGENT_HEADERS}
    missing = [name for name, value in values.items() if not value]
    if missing:
        raise MissingClaimHeaders(REQUIRED_AGENT_HEADERS, missing)

    return AgentClaim(
        wallet=values[AGENT_WALLET_HEADER],
        signature=values[AGENT_SIGNATURE_HEADER],
        timestamp=values[AGENT_TIMESTAMP_HEADER],
        validator_txid=values[VALIDATOR_TXID_HEADER],
    )


def decode_request_body(raw: bytes) -> Any:
    """Parse a raw request body for signing: JSON if possible, else text."""
    if not raw:
        return {}
    text = raw.decode("utf-8", errors="replace")
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text


def serialize_body(body: Any) -> str:
    """Compact JSON serialization; an absent or empty body serializes as {}."""
    if body is None or body == "" or body == b"":
        body = {}
    return json.dumps(body, separators=(",", ":"), ensure_ascii=False)


def hash_body(body: Any) -> str:
    return hashlib.sha256(serialize_body(body).encode("utf-8")).hexdigest()


def build_canonical_message(endpoint_id: str, timestamp: str, body: Any) -> str:
    return f"{endpoint_id}|{timestamp}|{timestamp}|{hash_body(body)}"


def sign_message(message: str, private_key: str) -> str:
    """Sign a canonical message the way an agent client does."""
    signed = Account.sign_message(encode_defunct(text=message), private_key=private_key)
    raw = signed.signature.hex()
    return raw if raw.startswith("0x") else f"0x{raw}"


def recover_signer(message: str, signature: str) -> str:
    signer = Account.recover_message(encode_defunct(text=message), signature=signature)
    return to_checksum_address(signer)


def verify_signature(message: str, signature: str, wallet: str) -> bool:
    """
    Check that signature over message was produced by wallet.

    Malformed signatures or addresses verify as False rather than raising.
    """
    if not is_address(wallet):
        logger.warning(f"Agent wallet is not a valid address: {wallet}")
        return False
    try:
        recovered = recover_signer(message, signature)
    except Exception as e:
        logger.warning(f"Signature recovery failed: {e}")
        return False
    return recovered == to_checksum_address(wallet)


def verify_claim(
    wallet: Optional[str],
    signature: Optional[str],
    timestamp: Optional[str],
    endpoint_id: Optional[str],
    body: Any,
) -> str:
    """
    Rebuild the canonical message for a request and verify the agent signature.

    Returns:
        The canonical message that was verified

    Raises:
        MissingClaimHeaders: If wallet, signature, timestamp or endpoint_id is absent
        InvalidSignature: If the signature does not match the wallet
    """
    inputs = {
        AGENT_WALLET_HEADER: wallet,
        AGENT_SIGNATURE_HEADER: signature,
        AGENT_TIMESTAMP_HEADER: timestamp,
        "endpoint_id": endpoint_id,
    }
    missing = [name for name, value in inputs.items() if not value]
    if missing:
        raise MissingClaimHeaders(REQUIRED_AGENT_HEADERS, missing)

    message = build_canonical_message(endpoint_id, timestamp, body)
    logger.debug(f"Canonical message created: {message}")

    if not verify_signature(message, signature, wallet):
        raise InvalidSignature()
    return message
