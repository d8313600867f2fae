# tests/test_agent_registry.py
"""
Unit tests for the authorization registry client and Clarity decoding.
"""
from unittest.mock import MagicMock

import pytest
from requests.exceptions import ConnectionError as RequestsConnectionError, HTTPError

from paygate.agent.registry import (
    AuthorizationRecord,
    ClarityDecodeError,
    RegistryClient,
    decode_clarity_hex,
    parse_registry_args,
)

CONTRACT_ID = "ST3AW560S3EET4NNSC3NG9N6CPNMPGASTMKWX11KG.api-registry"


def clarity_ascii(value: str) -> str:
    raw = value.encode("ascii")
    return "0x0d" + len(raw).to_bytes(4, "big").hex() + raw.hex()


def clarity_uint(value: int) -> str:
    return "0x01" + value.to_bytes(16, "big").hex()


def clarity_bool(value: bool) -> str:
    return "0x03" if value else "0x04"


def registry_args(api_name="weather", allowed="0xAAA,0xBBB", cooldown=10, verify=True):
    return [
        {"name": "api-name", "hex": clarity_ascii(api_name)},
        {"name": "allowed-agents", "hex": clarity_ascii(allowed)},
        {"name": "cooldown-blocks", "hex": clarity_uint(cooldown)},
        {"name": "verify-agent", "hex": clarity_bool(verify)},
    ]


def registry_tx(**overrides):
    tx = {
        "tx_id": "0xtx",
        "tx_status": "success",
        "tx_type": "contract_call",
        "contract_call": {
            "contract_id": CONTRACT_ID,
            "function_name": "create-api",
            "function_args": registry_args(),
        },
    }
    tx.update(overrides)
    return tx


def make_client(status_code=200, payload=None, side_effect=None):
    session = MagicMock()
    if side_effect is not None:
        session.get.side_effect = side_effect
    else:
        response = MagicMock()
        response.status_code = status_code
        response.json.return_value = payload
        if status_code >= 400 and status_code != 404:
            response.raise_for_status.side_effect = HTTPError(f"{status_code} error")
        session.get.return_value = response
    client = RegistryClient(network="testnet", contract_id=CONTRACT_ID, timeout=5.0, session=session)
    return client, session


class TestDecodeClarityHex:
    """Test Clarity value decoding."""

    def test_string_ascii(self):
        assert decode_clarity_hex(clarity_ascii("weather-api")) == "weather-api"

    def test_string_utf8(self):
        raw = "Zürich".encode("utf-8")
        hex_value = "0x0e" + len(raw).to_bytes(4, "big").hex() + raw.hex()
        assert decode_clarity_hex(hex_value) == "Zürich"

    def test_uint(self):
        assert decode_clarity_hex(clarity_uint(144)) == 144

    def test_negative_int(self):
        hex_value = "0x00" + (-5).to_bytes(16, "big", signed=True).hex()
        assert decode_clarity_hex(hex_value) == -5

    def test_booleans(self):
        assert decode_clarity_hex("0x03") is True
        assert decode_clarity_hex("0x04") is False

    def test_optional(self):
        assert decode_clarity_hex("0x09") is None
        assert decode_clarity_hex("0x0a" + clarity_uint(7)[2:]) == 7

    def test_buffer(self):
        assert decode_clarity_hex("0x02" + (3).to_bytes(4, "big").hex() + "abcdef") == b"\xab\xcd\xef"

    def test_without_prefix(self):
        assert decode_clarity_hex(clarity_uint(1)[2:]) == 1

    def test_truncated_string(self):
        """Declared length longer than the payload is rejected."""
        with pytest.raises(ClarityDecodeError):
            decode_clarity_hex("0x0d" + (10).to_bytes(4, "big").hex() + "6162")

    def test_truncated_integer(self):
        with pytest.raises(ClarityDecodeError):
            decode_clarity_hex("0x01" + "00" * 8)

    def test_trailing_bytes(self):
        with pytest.raises(ClarityDecodeError):
            decode_clarity_hex("0x0300")

    def test_unsupported_type(self):
        with pytest.raises(ClarityDecodeError):
            decode_clarity_hex("0x0c00000000")

    def test_invalid_hex(self):
        with pytest.raises(ClarityDecodeError):
            decode_clarity_hex("0xzz")

    def test_empty(self):
        with pytest.raises(ClarityDecodeError):
            decode_clarity_hex("0x")


class TestAuthorizationRecord:
    """Test allow-list handling."""

    def test_allowed_agent_list_trims_entries(self):
        record = AuthorizationRecord("weather", " 0xAAA , 0xBBB,,", 10, True)
        assert record.allowed_agent_list() == ["0xAAA", "0xBBB"]

    def test_allows_address_in_any_case(self, agent_account):
        """A lowercase allow-list entry matches the checksummed wallet and vice versa."""
        record = AuthorizationRecord("weather", f"0xAAA,{agent_account.address.lower()}", 10, True)
        assert record.allows(agent_account.address) is True
        assert record.allows(agent_account.address.lower()) is True

    def test_rejects_unlisted_and_invalid_wallets(self, agent_account):
        other = "0x" + "ab" * 20
        record = AuthorizationRecord("weather", f"0xAAA,{other}", 10, True)
        assert record.allows(agent_account.address) is False
        assert record.allows("0xAAA") is False
        assert record.allows(other.replace("ab", "AB")) is True


class TestParseRegistryArgs:
    """Test decoding of create-api/update-api arguments."""

    def test_valid_args(self):
        record = parse_registry_args(registry_args())
        assert record == AuthorizationRecord("weather", "0xAAA,0xBBB", 10, True)

    def test_missing_argument(self):
        args = [a for a in registry_args() if a["name"] != "verify-agent"]
        assert parse_registry_args(args) is None

    def test_malformed_hex(self):
        args = registry_args()
        args[0]["hex"] = "0x0d000000ff41"
        assert parse_registry_args(args) is None

    def test_wrong_type(self):
        """verify-agent encoded as uint is rejected."""
        args = registry_args()
        args[3]["hex"] = clarity_uint(1)
        assert parse_registry_args(args) is None


class TestRegistryClient:
    """Test transaction lookup and validation."""

    def test_fetch_record_success(self):
        client, session = make_client(payload=registry_tx())

        record = client.fetch_record("0xtx")

        assert record.api_name == "weather"
        assert record.verify_agent is True
        assert record.cooldown_blocks == 10
        session.get.assert_called_once_with(
            "https://api.testnet.hiro.so/extended/v1/tx/0xtx", timeout=5.0
        )

    def test_mainnet_base_url(self):
        client = RegistryClient(network="mainnet", session=MagicMock())
        assert client.base_url == "https://api.mainnet.hiro.so"

    def test_update_api_accepted(self):
        tx = registry_tx()
        tx["contract_call"]["function_name"] = "update-api"
        client, _ = make_client(payload=tx)
        assert client.fetch_record("0xtx") is not None

    def test_not_found(self):
        client, _ = make_client(status_code=404)
        assert client.fetch_record("0xmissing") is None

    def test_server_error(self):
        client, _ = make_client(status_code=500)
        assert client.fetch_record("0xtx") is None

    def test_connection_error(self):
        client, _ = make_client(side_effect=RequestsConnectionError("refused"))
        assert client.fetch_record("0xtx") is None

    def test_invalid_json(self):
        client, session = make_client(payload=None)
        session.get.return_value.json.side_effect = ValueError("bad json")
        assert client.fetch_record("0xtx") is None

    def test_non_object_payload(self):
        client, _ = make_client(payload=["not", "a", "tx"])
        assert client.fetch_record("0xtx") is None

    def test_unconfirmed_transaction(self):
        client, _ = make_client(payload=registry_tx(tx_status="pending"))
        assert client.fetch_record("0xtx") is None

    def test_aborted_transaction(self):
        client, _ = make_client(payload=registry_tx(tx_status="abort_by_response"))
        assert client.fetch_record("0xtx") is None

    def test_not_a_contract_call(self):
        client, _ = make_client(payload=registry_tx(tx_type="token_transfer", contract_call=None))
        assert client.fetch_record("0xtx") is None

    def test_wrong_contract(self):
        tx = registry_tx()
        tx["contract_call"]["contract_id"] = "ST000000000000000000002AMW42H.other-registry"
        client, _ = make_client(payload=tx)
        assert client.fetch_record("0xtx") is None

    def test_wrong_function(self):
        tx = registry_tx()
        tx["contract_call"]["function_name"] = "delete-api"
        client, _ = make_client(payload=tx)
        assert client.fetch_record("0xtx") is None

    def test_missing_function_args(self):
        tx = registry_tx()
        del tx["contract_call"]["function_args"]
        client, _ = make_client(payload=tx)
        assert client.fetch_record("0xtx") is None
