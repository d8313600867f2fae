# paygate/agent/registry.py
"""
Authorization registry client.

Resolves a validator transaction id to the access configuration that an API
owner wrote to the on-chain registry contract. The transaction is fetched
directly by id from the Stacks indexer and must be:

1. present,
2. confirmed (tx_status == "success"),
3. a contract call,
4. against the configured registry contract,
5. a call to create-api or update-api.

Any failure resolves to None. Callers treat None as a hard denial.
Records are fetched fresh on every call, since each request carries its own
proof transaction.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import requests
from requests.exceptions import RequestException
from eth_utils import is_address, to_checksum_address

from paygate.core.config import settings

logger = logging.getLogger(__name__)

REGISTRY_FUNCTIONS = ("create-api", "update-api")

ARG_API_NAME = "api-name"
ARG_ALLOWED_AGENTS = "allowed-agents"
ARG_COOLDOWN_BLOCKS = "cooldown-blocks"
ARG_VERIFY_AGENT = "verify-agent"

# Clarity consensus serialization type prefixes
CLARITY_INT = 0x00
CLARITY_UINT = 0x01
CLARITY_BUFFER = 0x02
CLARITY_TRUE = 0x03
CLARITY_FALSE = 0x04
CLARITY_NONE = 0x09
CLARITY_SOME = 0x0A
CLARITY_STRING_ASCII = 0x0D
CLARITY_STRING_UTF8 = 0x0E


class ClarityDecodeError(ValueError):
    """Raised when a hex-encoded Clarity value cannot be decoded."""


@dataclass(frozen=True)
class AuthorizationRecord:
    """Access configuration resolved from a registry transaction."""
    api_name: str
    allowed_agents: str
    cooldown_blocks: int
    verify_agent: bool

    def allowed_agent_list(self) -> List[str]:
        return [agent.strip() for agent in self.allowed_agents.split(",") if agent.strip()]

    def allows(self, wallet: str) -> bool:
        """Address match against the allow-list, ignoring hex case."""
        if not is_address(wallet):
            return False
        wanted = to_checksum_address(wallet)
        return any(
            is_address(agent.lower()) and to_checksum_address(agent) == wanted
            for agent in self.allowed_agent_list()
        )


def _decode_at(data: bytes, offset: int) -> Tuple[Any, int]:
    if offset >= len(data):
        raise ClarityDecodeError("Unexpected end of Clarity value")

    type_id = data[offset]
    offset += 1

    if type_id in (CLARITY_INT, CLARITY_UINT):
        end = offset + 16
        if end > len(data):
            raise ClarityDecodeError("Truncated 128-bit integer")
        value = int.from_bytes(data[offset:end], "big", signed=(type_id == CLARITY_INT))
        return value, end

    if type_id == CLARITY_TRUE:
        return True, offset
    if type_id == CLARITY_FALSE:
        return False, offset
    if type_id == CLARITY_NONE:
        return None, offset
    if type_id == CLARITY_SOME:
        return _decode_at(data, offset)

    if type_id in (CLARITY_BUFFER, CLARITY_STRING_ASCII, CLARITY_STRING_UTF8):
        if offset + 4 > len(data):
            raise ClarityDecodeError("Truncated length prefix")
        length = int.from_bytes(data[offset:offset + 4], "big")
        start = offset + 4
        end = start + length
        if end > len(data):
            raise ClarityDecodeError(f"Declared length {length} exceeds available bytes")
        raw = data[start:end]
        if type_id == CLARITY_BUFFER:
            return raw, end
        try:
            encoding = "ascii" if type_id == CLARITY_STRING_ASCII else "utf-8"
            return raw.decode(encoding), end
        except UnicodeDecodeError as e:
            raise ClarityDecodeError(f"Invalid string payload: {e}") from e

    raise ClarityDecodeError(f"Unsupported Clarity type prefix: 0x{type_id:02x}")


def decode_clarity_hex(hex_value: str) -> Any:
    """
    Decode a hex-encoded Clarity value into a plain Python value.

    Supports int/uint, bool, optional, buffer and string types.

    Raises:
        ClarityDecodeError: If the value is malformed, unsupported, or has trailing bytes
    """
    if not isinstance(hex_value, str):
        raise ClarityDecodeError("Clarity value must be a hex string")
    cleaned = hex_value[2:] if hex_value.startswith("0x") else hex_value
    try:
        data = bytes.fromhex(cleaned)
    except ValueError as e:
        raise ClarityDecodeError(f"Invalid hex: {e}") from e

    value, end = _decode_at(data, 0)
    if end != len(data):
        raise ClarityDecodeError(f"{len(data) - end} trailing bytes after Clarity value")
    return value


def parse_registry_args(function_args: List[Dict[str, Any]]) -> Optional[AuthorizationRecord]:
    """Decode create-api/update-api arguments; None if any are missing or mistyped."""
    by_name = {arg.get("name"): arg for arg in function_args if isinstance(arg, dict)}
    required = (ARG_API_NAME, ARG_ALLOWED_AGENTS, ARG_COOLDOWN_BLOCKS, ARG_VERIFY_AGENT)
    missing = [name for name in required if name not in by_name]
    if missing:
        logger.error(f"Registry transaction missing function arguments: {missing}")
        return None

    try:
        api_name = decode_clarity_hex(by_name[ARG_API_NAME].get("hex"))
        allowed_agents = decode_clarity_hex(by_name[ARG_ALLOWED_AGENTS].get("hex"))
        cooldown_blocks = decode_clarity_hex(by_name[ARG_COOLDOWN_BLOCKS].get("hex"))
        verify_agent = decode_clarity_hex(by_name[ARG_VERIFY_AGENT].get("hex"))
    except ClarityDecodeError as e:
        logger.error(f"Failed to decode registry arguments: {e}")
        return None

    if not isinstance(api_name, str) or not isinstance(allowed_agents, str):
        logger.error("Registry api-name/allowed-agents are not strings")
        return None
    if isinstance(cooldown_blocks, bool) or not isinstance(cooldown_blocks, int):
        logger.error("Registry cooldown-blocks is not an integer")
        return None
    if not isinstance(verify_agent, bool):
        logger.error("Registry verify-agent is not a boolean")
        return None

    return AuthorizationRecord(
        api_name=api_name,
        allowed_agents=allowed_agents,
        cooldown_blocks=cooldown_blocks,
        verify_agent=verify_agent,
    )


class RegistryClient:
    """Fetches authorization records from the Stacks indexer."""

    def __init__(
        self,
        network: Optional[str] = None,
        contract_id: Optional[str] = None,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        self.network = network or settings.STACKS_NETWORK
        self.contract_id = contract_id or settings.REGISTRY_CONTRACT_ID
        self.timeout = timeout if timeout is not None else settings.REGISTRY_TIMEOUT_SECONDS
        self._session = session or requests.Session()

    @property
    def base_url(self) -> str:
        return settings.stacks_api_url(self.network)

    def fetch_transaction(self, tx_id: str) -> Optional[Dict[str, Any]]:
        """
        Fetch a transaction by id.

        Returns:
            The transaction JSON, or None if the indexer does not know it

        Raises:
            RequestException: On connection failures or non-404 error statuses
        """
        api_url = f"{self.base_url}/extended/v1/tx/{tx_id}"
        logger.info(f"Fetching validator transaction from: {api_url}")
        response = self._session.get(api_url, timeout=self.timeout)
        if response.status_code == 404:
            return None
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, dict):
            logger.warning(f"Unexpected transaction payload type: {type(data)}")
            return None
        return data

    def fetch_record(self, tx_id: str) -> Optional[AuthorizationRecord]:
        """
        Resolve a validator transaction to its authorization record.

        Never raises: every failure is logged and returned as None.
        """
        try:
            transaction = self.fetch_transaction(tx_id)
        except RequestException as e:
            logger.error(f"Failed to fetch transaction data for {tx_id}: {e}")
            return None
        except ValueError as e:
            logger.error(f"Invalid JSON from indexer for {tx_id}: {e}")
            return None

        if transaction is None:
            logger.error(f"Transaction not found: {tx_id}")
            return None

        if transaction.get("tx_status") != "success":
            logger.error(f"Transaction not successful: {transaction.get('tx_status')}")
            return None

        contract_call = transaction.get("contract_call")
        if transaction.get("tx_type") not in (None, "contract_call") or not isinstance(contract_call, dict):
            logger.error(f"Transaction is not a contract call: {transaction.get('tx_type')}")
            return None

        if contract_call.get("contract_id") != self.contract_id:
            logger.error(f"Invalid contract ID: {contract_call.get('contract_id')}")
            return None

        function_name = contract_call.get("function_name")
        if function_name not in REGISTRY_FUNCTIONS:
            logger.error(f"Invalid function name: {function_name}")
            return None

        function_args = contract_call.get("function_args")
        if not isinstance(function_args, list):
            logger.error("Transaction has no function arguments")
            return None

        record = parse_registry_args(function_args)
        if record is not None:
            logger.info(
                f"Transaction data parsed: api_name={record.api_name}, "
                f"verify_agent={record.verify_agent}, cooldown_blocks={record.cooldown_blocks}"
            )
        return record
