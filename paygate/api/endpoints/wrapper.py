# paygate/api/endpoints/wrapper.py
"""
Public wrapper entry point: ANY /w/{endpoint_id}/*

Pipeline per call:
1. Load the endpoint (404 unknown, 403 inactive)
2. Agent validation: headers, registry record, allow-list, signature
3. x402 payment gate (402 until a settled payment is presented)
4. Duplicate-payment guard
5. Proxy to the upstream API and relay its response
6. Background: request log and automation pass
"""
import logging

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.responses import Response
from starlette.concurrency import run_in_threadpool

from paygate.agent.signature import decode_request_body, extract_agent_claim
from paygate.agent.validator import validate_agent
from paygate.api.deps import GatewayContext, get_context
from paygate.core.config import settings
from paygate.core.errors import (
    AuthorizationError,
    EndpointInactive,
    EndpointNotFound,
    UpstreamError,
    error_response,
)
from paygate.services.automation import TriggerType
from paygate.services.payments import record_payment_once
from paygate.services.proxy import build_target_url, raw_request_path
from paygate.x402 import audit
from paygate.x402.payment_gate import X_PAYMENT_RESPONSE_HEADER, get_client_ip

logger = logging.getLogger(__name__)
router = APIRouter()

WRAPPER_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "HEAD"]


@router.api_route("/w/{endpoint_id}", methods=WRAPPER_METHODS)
@router.api_route("/w/{endpoint_id}/{path:path}", methods=WRAPPER_METHODS)
async def handle_wrapper(
    endpoint_id: str,
    request: Request,
    background_tasks: BackgroundTasks,
    context: GatewayContext = Depends(get_context),
    path: str = "",
) -> Response:
    """
    Gate a call behind agent validation and payment, then proxy it upstream.

    Gateway-produced responses use the {success, error} envelope; proxied
    responses are relayed verbatim with an added X-PAYMENT-RESPONSE header.
    """
    started_ms = context.clock()
    client_ip = get_client_ip(request)

    endpoint = await run_in_threadpool(context.storage.get_endpoint, endpoint_id)
    if endpoint is None:
        logger.warning(f"API not found: {endpoint_id}")
        raise EndpointNotFound()
    if not endpoint.is_active:
        logger.warning(f"API is inactive: {endpoint.name} ({endpoint_id})")
        raise EndpointInactive()

    logger.info(f"Wrapper request: {request.method} /w/{endpoint_id}/{path}")
    audit.log_request_received(client_ip, endpoint_id, request.method, request.url.path)

    raw_body = await request.body()

    if settings.AGENT_VALIDATION_ENABLED:
        claim = extract_agent_claim(request.headers)
        try:
            agent = await run_in_threadpool(
                validate_agent, claim, endpoint_id, decode_request_body(raw_body), context.registry
            )
        except AuthorizationError as e:
            audit.log_agent_denied(client_ip, endpoint_id, e.code, e.message, wallet_address=claim.wallet)
            raise
        audit.log_agent_verified(
            client_ip, endpoint_id, agent.wallet, agent.validator_txid, agent.signature_checked
        )

    gate = await context.payment_gate.negotiate(request, endpoint)
    if not gate.paid:
        return gate.response

    receipt = gate.receipt
    await run_in_threadpool(record_payment_once, context.storage, endpoint_id, receipt)

    target_url = build_target_url(
        endpoint.original_url, raw_request_path(request.scope), endpoint_id, request.url.query
    )
    logger.info(f"Proxying {request.method} request to: {target_url}")

    try:
        upstream = await run_in_threadpool(
            context.forwarder.forward, request.method, target_url, request.headers, raw_body
        )
        response = Response(
            content=upstream.content,
            status_code=upstream.status_code,
            headers=upstream.headers,
        )
        response.headers[X_PAYMENT_RESPONSE_HEADER] = receipt.response_header
    except UpstreamError as e:
        latency_ms = int(context.clock() - started_ms)
        audit.log_proxy_error(endpoint_id, e.cause, endpoint.original_url, str(e.details))
        context.sink.schedule(background_tasks, endpoint_id, success=False, latency_ms=latency_ms)
        return error_response(e)
    except Exception:
        # queued background tasks never run once an exception escapes
        latency_ms = int(context.clock() - started_ms)
        await run_in_threadpool(context.sink.record_request, endpoint_id, False, latency_ms)
        raise

    latency_ms = int(context.clock() - started_ms)
    logger.info(f"Proxy response: {upstream.status_code} ({latency_ms}ms)")

    context.sink.schedule(
        background_tasks,
        endpoint_id,
        success=upstream.success,
        latency_ms=latency_ms,
        events=[TriggerType.PAYMENT_SUCCESS, TriggerType.API_REQUEST],
        context={
            "payment": {"amount": receipt.amount, "payer": receipt.payer},
            "request": {"success": upstream.success, "latency_ms": latency_ms},
        },
    )
    return response
