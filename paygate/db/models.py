# paygate/db/models.py
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Tuple

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from paygate.db.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_endpoint_id() -> str:
    return uuid.uuid4().hex


class WrappedEndpoint(Base):
    """A registered upstream API and the price charged per wrapped call."""

    __tablename__ = "endpoints"

    id = Column(String(64), primary_key=True, default=generate_endpoint_id)
    name = Column(String(200), nullable=False)
    original_url = Column(String(2048), nullable=False)
    price_per_request = Column(Float, nullable=False)
    min_price = Column(Float, nullable=True)
    max_price = Column(Float, nullable=True)
    network = Column(String(50), nullable=False, default="base-sepolia")
    pay_to_address = Column(String(100), nullable=False)
    facilitator_url = Column(String(2048), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    def price_bounds(self, default_min: float, default_max: float) -> Tuple[float, float]:
        min_price = self.min_price if self.min_price is not None else default_min
        max_price = self.max_price if self.max_price is not None else default_max
        return min_price, max_price

    def __repr__(self):
        return f"<WrappedEndpoint(id='{self.id}', name='{self.name}', price={self.price_per_request})>"


class PaymentRecord(Base):
    """One row per distinct settled payment transaction."""

    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tx_hash = Column(String(200), unique=True, nullable=False, index=True)
    endpoint_id = Column(String(64), ForeignKey("endpoints.id"), nullable=False, index=True)
    amount = Column(Float, nullable=False)
    payer_address = Column(String(100), nullable=True)
    status = Column(String(20), nullable=False, default="SUCCESS")
    created_at = Column(DateTime(timezone=True), default=_utcnow, index=True)

    def __repr__(self):
        return f"<PaymentRecord(tx_hash='{self.tx_hash[:16]}...', endpoint_id='{self.endpoint_id}')>"


class RequestLogEntry(Base):
    __tablename__ = "request_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    endpoint_id = Column(String(64), ForeignKey("endpoints.id"), nullable=False, index=True)
    success = Column(Boolean, nullable=False)
    latency_ms = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, index=True)


class AutomationRule(Base):
    """A trigger/action flow attached to an endpoint."""

    __tablename__ = "automation_rules"

    id = Column(Integer, primary_key=True, autoincrement=True)
    endpoint_id = Column(String(64), ForeignKey("endpoints.id"), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    enabled = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    nodes = relationship(
        "AutomationNode",
        order_by="AutomationNode.position",
        cascade="all, delete-orphan",
        back_populates="rule",
    )


class AutomationNode(Base):
    __tablename__ = "automation_nodes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    rule_id = Column(Integer, ForeignKey("automation_rules.id"), nullable=False, index=True)
    # TRIGGER, ACTION or AI
    kind = Column(String(20), nullable=False)
    label = Column(String(200), nullable=False, default="")
    position = Column(Integer, nullable=False, default=0)
    config = Column(JSON, nullable=False, default=dict)

    rule = relationship("AutomationRule", back_populates="nodes")


class AutomationDecision(Base):
    """Audit trail of automated price changes."""

    __tablename__ = "automation_decisions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    endpoint_id = Column(String(64), ForeignKey("endpoints.id"), nullable=False, index=True)
    reason = Column(Text, nullable=False)
    old_price = Column(Float, nullable=False)
    new_price = Column(Float, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
