# paygate/api/deps.py
import hmac
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from fastapi import Request, Security
from fastapi.security import APIKeyHeader

from paygate.agent.registry import RegistryClient
from paygate.core.config import settings
from paygate.core.errors import AuthenticationRequired, AuthorizationError
from paygate.db.storage import Storage
from paygate.services.metrics import MetricsSink
from paygate.services.proxy import ProxyForwarder
from paygate.x402.payment_gate import PaymentGate

logger = logging.getLogger(__name__)


def monotonic_ms() -> float:
    return time.monotonic() * 1000


@dataclass
class GatewayContext:
    """Everything the wrapper pipeline talks to, built once per application."""
    storage: Storage
    registry: RegistryClient
    payment_gate: PaymentGate
    forwarder: ProxyForwarder
    sink: MetricsSink
    clock: Callable[[], float] = field(default=monotonic_ms)

    @classmethod
    def from_settings(cls, storage: Optional[Storage] = None) -> "GatewayContext":
        storage = storage or Storage.from_url()
        return cls(
            storage=storage,
            registry=RegistryClient(),
            payment_gate=PaymentGate(),
            forwarder=ProxyForwarder(),
            sink=MetricsSink(storage),
        )


def get_context(request: Request) -> GatewayContext:
    return request.app.state.context


api_key_header = APIKeyHeader(name=settings.API_KEY_NAME, auto_error=False)


def require_api_key(api_key: Optional[str] = Security(api_key_header)) -> str:
    """
    Admit owner-only routes when the request carries the configured API key.

    Raises:
        AuthenticationRequired: no key was sent (401)
        AuthorizationError: the key is wrong, or no key is configured (403)
    """
    if not api_key:
        raise AuthenticationRequired()
    if not settings.API_KEY:
        logger.warning("API_KEY is not configured; refusing owner request")
        raise AuthorizationError("Owner access is not configured")
    if not hmac.compare_digest(api_key.encode(), settings.API_KEY.encode()):
        logger.warning("Rejected owner request with an invalid API key")
        raise AuthorizationError("Invalid API key")
    return api_key
