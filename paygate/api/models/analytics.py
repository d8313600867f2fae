# paygate/api/models/analytics.py
from pydantic import BaseModel, Field


class RequestStats(BaseModel):
    total: int = Field(..., description="Wrapped calls in the period")
    successful: int = Field(..., description="Calls whose upstream answered 2xx")
    successRate: str = Field(..., description="Percentage of successful calls", example="97.5%")
    avgResponseTime: str = Field(..., description="Mean gateway latency", example="120ms")


class RevenueStats(BaseModel):
    total: float = Field(..., description="Sum of recorded payment amounts")
    currency: str = Field(default="USDC", description="Settlement currency")
    paymentCount: int


class CustomerStats(BaseModel):
    unique: int = Field(..., description="Distinct payer addresses")


class EndpointAnalytics(BaseModel):
    """Usage and revenue summary for one wrapped endpoint."""
    requests: RequestStats
    revenue: RevenueStats
    customers: CustomerStats


class AnalyticsEnvelope(BaseModel):
    success: bool = True
    data: EndpointAnalytics
