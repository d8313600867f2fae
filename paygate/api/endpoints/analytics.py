# paygate/api/endpoints/analytics.py
import logging
from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Depends, Path, Query
from starlette.concurrency import run_in_threadpool

from paygate.api.deps import GatewayContext, get_context, require_api_key
from paygate.api.models.analytics import (
    AnalyticsEnvelope,
    CustomerStats,
    EndpointAnalytics,
    RequestStats,
    RevenueStats,
)
from paygate.core.errors import EndpointNotFound
from paygate.db.storage import Storage

logger = logging.getLogger(__name__)
router = APIRouter()

PERIOD_DAYS = {"7d": 7, "30d": 30, "90d": 90, "1y": 365}
DEFAULT_PERIOD_DAYS = 30


def compute_analytics(storage: Storage, endpoint_id: str, since: datetime) -> EndpointAnalytics:
    requests = storage.list_request_logs(endpoint_id, since=since)
    payments = [p for p in storage.list_payments(endpoint_id, since=since) if p.status == "SUCCESS"]

    total = len(requests)
    successful = sum(1 for r in requests if r.success)
    success_rate = (successful / total * 100) if total else 0.0
    avg_latency = round(sum(r.latency_ms for r in requests) / total) if total else 0
    payers = {p.payer_address for p in payments if p.payer_address}

    return EndpointAnalytics(
        requests=RequestStats(
            total=total,
            successful=successful,
            successRate=f"{success_rate:.1f}%",
            avgResponseTime=f"{avg_latency}ms",
        ),
        revenue=RevenueStats(
            total=sum(p.amount for p in payments),
            paymentCount=len(payments),
        ),
        customers=CustomerStats(unique=len(payers)),
    )


@router.get(
    "/endpoints/{endpoint_id}/analytics",
    response_model=AnalyticsEnvelope,
    dependencies=[Depends(require_api_key)],
)
async def get_endpoint_analytics(
    endpoint_id: str = Path(..., description="Wrapped endpoint id"),
    period: str = Query("30d", description="One of 7d, 30d, 90d, 1y"),
    context: GatewayContext = Depends(get_context),
) -> AnalyticsEnvelope:
    """
    Summarize requests, revenue and customers for a wrapped endpoint.

    Owner-only: requires the configured API key. Unknown periods fall back
    to 30 days.
    """
    endpoint = await run_in_threadpool(context.storage.get_endpoint, endpoint_id)
    if endpoint is None:
        raise EndpointNotFound()

    days = PERIOD_DAYS.get(period, DEFAULT_PERIOD_DAYS)
    since = datetime.now(timezone.utc) - timedelta(days=days)
    analytics = await run_in_threadpool(compute_analytics, context.storage, endpoint_id, since)
    logger.info(f"Analytics served for {endpoint_id} ({period})")
    return AnalyticsEnvelope(data=analytics)
