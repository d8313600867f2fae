# paygate/x402/payment_gate.py
"""
Per-request x402 payment gate.

Each request moves PENDING -> PAID or PENDING -> DENIED:
1. No X-PAYMENT header: respond 402 with the endpoint's payment requirements
2. Undecodable header: respond 402
3. Verify the payment with the endpoint's facilitator; invalid -> 402
4. Settle the payment; failed settlement -> 402
5. PAID: hand the transaction id and payer back to the caller

A 402 is the normal first-contact outcome, not an error.

Requirements, payloads and facilitator calls come from the x402 SDK.
"""
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional

from fastapi import Request
from starlette.responses import JSONResponse

from x402.types import PaymentRequirements, PaymentPayload, SettleResponse
from x402.facilitator import FacilitatorClient
from x402.encoding import safe_base64_decode, safe_base64_encode

from paygate.core.config import settings
from paygate.core.errors import error_envelope
from paygate.db.models import WrappedEndpoint
from paygate.x402 import audit

logger = logging.getLogger(__name__)

# x402 protocol constants
X402_VERSION = 1
X_PAYMENT_HEADER = "X-PAYMENT"
X_PAYMENT_RESPONSE_HEADER = "X-PAYMENT-RESPONSE"

# Headers that belong to the payment exchange and never reach the upstream API
PAYMENT_HEADERS = frozenset({
    "x-payment",
    "x-payment-response",
    "payment-signature",
    "payment-required",
    "payment-response",
})

# USDC contract addresses by network
USDC_ADDRESSES = {
    "base": "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",
    "base-sepolia": "0x036CbD53842c5426634e7929541eC2318f3dCF7e",
}

# EIP-712 domain of the USDC contract, needed by exact-scheme verification
USDC_DOMAINS = {
    "base": {"name": "USD Coin", "version": "2"},
    "base-sepolia": {"name": "USDC", "version": "2"},
}


class PaymentState(Enum):
    PENDING = "pending"
    PAID = "paid"
    DENIED = "denied"


@dataclass(frozen=True)
class PaymentReceipt:
    """Identity of a settled payment."""
    transaction: str
    payer: Optional[str]
    network: str
    amount: float
    response_header: str


@dataclass
class GateResult:
    state: PaymentState
    receipt: Optional[PaymentReceipt] = None
    # The response to send instead of proxying when state is DENIED
    response: Optional[JSONResponse] = None

    @property
    def paid(self) -> bool:
        return self.state is PaymentState.PAID


def get_client_ip(request: Request) -> str:
    """Best-effort caller IP for audit records (first proxy hop wins)."""
    forwarded = request.headers.get("X-Forwarded-For") or request.headers.get("X-Real-IP")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def to_atomic_units(price: float) -> str:
    """USDC has 6 decimals, so 1.00 = 1,000,000 smallest units."""
    return str(int(round(price * 1_000_000)))


def create_payment_requirements(resource: str, endpoint: WrappedEndpoint) -> PaymentRequirements:
    """
    Describe what a wrapped call costs, for the 402 challenge and facilitator checks.

    Args:
        resource: The wrapper URL being paid for
        endpoint: The wrapped endpoint; supplies price, recipient and network

    Returns:
        An "exact" scheme requirement denominated in USDC atomic units
    """
    network = endpoint.network
    asset = USDC_ADDRESSES.get(network)
    if asset is None:
        logger.warning(f"No USDC address known for network '{network}', using base-sepolia")
        asset = USDC_ADDRESSES["base-sepolia"]

    return PaymentRequirements(
        scheme="exact",
        network=network,
        max_amount_required=to_atomic_units(endpoint.price_per_request),
        resource=resource,
        description=f"Pay-per-call access to {endpoint.name}",
        mime_type="application/json",
        pay_to=endpoint.pay_to_address,
        max_timeout_seconds=settings.X402_MAX_TIMEOUT_SECONDS,
        asset=asset,
        extra=USDC_DOMAINS.get(network),
    )


def create_402_response(requirements: PaymentRequirements, error_message: str) -> JSONResponse:
    """The x402 challenge: protocol version, reason, and the accepted payment options."""
    return JSONResponse(
        status_code=402,
        content={
            "x402Version": X402_VERSION,
            "error": error_message,
            "accepts": [requirements.model_dump(by_alias=True)],
        },
    )


def decode_payment_header(header_value: str) -> Optional[PaymentPayload]:
    """Parse a base64 JSON X-PAYMENT value; None if it is not a valid payload."""
    try:
        # safe_base64_decode returns str, not bytes
        return PaymentPayload.model_validate(json.loads(safe_base64_decode(header_value)))
    except (ValueError, TypeError) as e:
        logger.warning(f"Unreadable X-PAYMENT header: {e}")
        return None


def encode_payment_response(settle_response: SettleResponse) -> str:
    """X-PAYMENT-RESPONSE value: the settlement result as base64 JSON."""
    body = json.dumps(settle_response.model_dump(by_alias=True))
    return safe_base64_encode(body.encode("utf-8"))


class PaymentGate:
    """
    Negotiates x402 payments for wrapped endpoints.

    Facilitator clients are created lazily, one per facilitator URL.
    """

    def __init__(self, facilitator_factory: Optional[Callable[[str], FacilitatorClient]] = None):
        self._facilitator_factory = facilitator_factory or _default_facilitator
        self._facilitators: Dict[str, FacilitatorClient] = {}

    def facilitator_for(self, endpoint: WrappedEndpoint) -> FacilitatorClient:
        url = endpoint.facilitator_url or str(settings.X402_DEFAULT_FACILITATOR_URL)
        if url not in self._facilitators:
            self._facilitators[url] = self._facilitator_factory(url)
        return self._facilitators[url]

    def _deny(self, requirements: PaymentRequirements, message: str) -> GateResult:
        return GateResult(
            state=PaymentState.DENIED,
            response=create_402_response(requirements, error_message=message),
        )

    async def negotiate(self, request: Request, endpoint: WrappedEndpoint) -> GateResult:
        """
        Decide whether the request carries a valid, settled payment.

        Returns:
            GateResult in state PAID (with a receipt) or DENIED (with the
            response to send)
        """
        client_ip = get_client_ip(request)
        requirements = create_payment_requirements(str(request.url), endpoint)

        payment_header = request.headers.get(X_PAYMENT_HEADER)
        if not payment_header:
            logger.info(f"x402: No X-PAYMENT header, returning 402 for {endpoint.price_per_request}")
            audit.log_payment_required_sent(
                client_ip=client_ip,
                endpoint_id=endpoint.id,
                price=endpoint.price_per_request,
                network=endpoint.network,
                pay_to=endpoint.pay_to_address,
                resource=requirements.resource,
            )
            return self._deny(requirements, "X-PAYMENT header is required")

        payment_payload = decode_payment_header(payment_header)
        if payment_payload is None:
            logger.warning(f"x402: Invalid X-PAYMENT header from {client_ip}")
            audit.log_payment_failed(client_ip, endpoint.id, "Invalid X-PAYMENT header format", stage="decode")
            return self._deny(requirements, "Invalid X-PAYMENT header format")

        facilitator = self.facilitator_for(endpoint)

        try:
            verify_response = await facilitator.verify(payment_payload, requirements)
        except Exception as e:
            logger.error(f"x402: Facilitator verification failed: {e}")
            audit.log_payment_failed(client_ip, endpoint.id, str(e), stage="verify")
            return GateResult(
                state=PaymentState.DENIED,
                response=JSONResponse(
                    status_code=502,
                    content=error_envelope("PAYMENT_VERIFICATION_ERROR", "Payment verification failed", str(e)),
                ),
            )

        audit.log_payment_verified(
            client_ip=client_ip,
            endpoint_id=endpoint.id,
            payer=verify_response.payer,
            is_valid=verify_response.is_valid,
            invalid_reason=verify_response.invalid_reason,
        )
        if not verify_response.is_valid:
            reason = verify_response.invalid_reason or "Unknown reason"
            logger.warning(f"x402: Payment verification failed: {reason}")
            return self._deny(requirements, f"Payment verification failed: {reason}")

        logger.info(f"x402: Payment verified for payer {verify_response.payer}")

        try:
            settle_response = await facilitator.settle(payment_payload, requirements)
        except Exception as e:
            logger.error(f"x402: Payment settlement failed: {e}")
            audit.log_payment_failed(client_ip, endpoint.id, str(e), stage="settle",
                                     wallet_address=verify_response.payer)
            return self._deny(requirements, "Payment settlement failed")

        payer = settle_response.payer or verify_response.payer
        audit.log_payment_settled(
            client_ip=client_ip,
            endpoint_id=endpoint.id,
            payer=payer,
            transaction_hash=settle_response.transaction,
            network=settle_response.network or endpoint.network,
            success=settle_response.success,
            error_reason=settle_response.error_reason,
        )
        if not settle_response.success or not settle_response.transaction:
            reason = settle_response.error_reason or "no transaction returned"
            logger.warning(f"x402: Payment settlement rejected: {reason}")
            return self._deny(requirements, f"Payment settlement failed: {reason}")

        logger.info(f"x402: Payment settled: {settle_response.transaction} from {payer}")
        return GateResult(
            state=PaymentState.PAID,
            receipt=PaymentReceipt(
                transaction=settle_response.transaction,
                payer=payer,
                network=settle_response.network or endpoint.network,
                amount=endpoint.price_per_request,
                response_header=encode_payment_response(settle_response),
            ),
        )


def _default_facilitator(url: str) -> FacilitatorClient:
    return FacilitatorClient({"url": url})
