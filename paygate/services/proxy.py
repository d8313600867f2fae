# paygate/services/proxy.py
"""
Forwards paid wrapper calls to the upstream API.

Any HTTP status from upstream is a valid response and is relayed verbatim.
Only connection-level failures (refused, DNS, timeout) become UpstreamError.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

import requests
from requests.exceptions import ConnectionError as RequestsConnectionError, RequestException, Timeout

from paygate.core.config import settings
from paygate.core.errors import UpstreamError
from paygate.x402.payment_gate import PAYMENT_HEADERS

logger = logging.getLogger(__name__)

HOP_BY_HOP_HEADERS = frozenset({
    "host",
    "content-length",
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
})

# requests already decoded the body and the length is recomputed on relay
RESPONSE_SKIP_HEADERS = frozenset({
    "content-encoding",
    "transfer-encoding",
    "connection",
    "content-length",
})

DNS_FAILURE_MARKERS = (
    "NameResolutionError",
    "Name or service not known",
    "nodename nor servname",
    "getaddrinfo failed",
    "Temporary failure in name resolution",
    "No address associated with hostname",
)


@dataclass
class UpstreamResponse:
    status_code: int
    content: bytes
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return 200 <= self.status_code < 300


def wrapper_prefix(endpoint_id: str) -> str:
    return f"/w/{endpoint_id}"


def raw_request_path(scope: Mapping[str, Any]) -> str:
    """
    The request path exactly as the client sent it, percent-encoding intact.

    Falls back to the decoded path when the server does not provide raw_path.
    """
    raw_path = scope.get("raw_path")
    if not raw_path:
        return scope.get("path", "/")
    return raw_path.decode("latin-1").split("?", 1)[0]


def build_target_url(original_url: str, request_path: str, endpoint_id: str, query_string: str = "") -> str:
    """
    Map /w/{endpoint_id}/rest?query onto the upstream base URL.

    request_path should be the raw (still percent-encoded) path so that an
    encoded "?", "#" or "/" in the remainder reaches upstream unchanged.
    The wrapper prefix is stripped; an empty remainder becomes "/".
    """
    prefix = wrapper_prefix(endpoint_id)
    if request_path.startswith(prefix + "/") or request_path == prefix:
        remainder = request_path[len(prefix):]
    elif request_path.startswith("/w/"):
        # endpoint id arrived percent-encoded; drop the whole segment
        remainder = request_path[len("/w/"):].partition("/")[2]
    else:
        remainder = request_path
    if not remainder.startswith("/"):
        remainder = "/" + remainder
    target = original_url.rstrip("/") + remainder
    if query_string:
        target = f"{target}?{query_string}"
    return target


def filter_request_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    """Drop hop-by-hop and payment headers before forwarding."""
    outbound: Dict[str, str] = {}
    for key, value in headers.items():
        lower = key.lower()
        if lower in HOP_BY_HOP_HEADERS or lower in PAYMENT_HEADERS:
            continue
        outbound[key] = value
    return outbound


def filter_response_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    return {k: v for k, v in headers.items() if k.lower() not in RESPONSE_SKIP_HEADERS}


def classify_connection_error(error: RequestException) -> str:
    """Return "timeout", "dns", "unreachable" or "other"."""
    if isinstance(error, Timeout):
        return "timeout"
    if isinstance(error, RequestsConnectionError):
        text = repr(error)
        if any(marker in text for marker in DNS_FAILURE_MARKERS):
            return "dns"
        return "unreachable"
    return "other"


class ProxyForwarder:
    """Sends the rewritten request upstream with a bounded timeout."""

    def __init__(self, timeout: Optional[float] = None, session: Optional[requests.Session] = None):
        self.timeout = timeout if timeout is not None else settings.PROXY_TIMEOUT_SECONDS
        self._session = session or requests.Session()

    def forward(
        self,
        method: str,
        target_url: str,
        headers: Mapping[str, str],
        body: bytes = b"",
    ) -> UpstreamResponse:
        """
        Forward a request and return the upstream response, whatever its status.

        Raises:
            UpstreamError: If the upstream could not be reached
        """
        try:
            response = self._session.request(
                method.upper(),
                target_url,
                headers=filter_request_headers(headers),
                data=body or None,
                timeout=self.timeout,
                allow_redirects=False,
            )
        except RequestException as e:
            cause = classify_connection_error(e)
            if cause == "timeout":
                logger.error(f"PROXY_ERROR: Timeout connecting to {target_url} - exceeded {self.timeout}s")
            elif cause == "dns":
                logger.error(f"PROXY_ERROR: DNS lookup failed for {target_url} - Domain not found")
            elif cause == "unreachable":
                logger.error(f"PROXY_ERROR: Connection refused to {target_url} - Original API is unreachable")
            else:
                logger.error(f"PROXY_ERROR: Failed to proxy request to {target_url}: {e}")
            raise UpstreamError(cause=cause, details=str(e)) from e

        logger.info(f"Proxy response: {response.status_code} from {target_url}")
        return UpstreamResponse(
            status_code=response.status_code,
            content=response.content,
            headers=filter_response_headers(response.headers),
        )
