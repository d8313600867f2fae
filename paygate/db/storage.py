# paygate/db/storage.py
"""
Persistence layer for the gateway.

Wraps a SQLAlchemy session factory behind simple keyed create/read/update/count
operations on endpoints, payments, request logs, automation rules and
automation decisions.

The unique constraint on payments.tx_hash is the only double-submission guard:
record_payment() reports a collision as False instead of raising.
"""
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import selectinload, sessionmaker

from paygate.core.config import settings
from paygate.core.errors import PersistenceError
from paygate.db.database import create_db_engine, create_session_factory, init_db, session_scope
from paygate.db.models import (
    AutomationDecision,
    AutomationNode,
    AutomationRule,
    PaymentRecord,
    RequestLogEntry,
    WrappedEndpoint,
)

logger = logging.getLogger(__name__)


class Storage:
    """SQLAlchemy-backed store shared by the request path and background tasks."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    @classmethod
    def from_url(cls, database_url: Optional[str] = None, create_tables: bool = True) -> "Storage":
        engine = create_db_engine(database_url)
        if create_tables:
            init_db(engine)
        return cls(create_session_factory(engine))

    # --- Endpoints ---

    def create_endpoint(
        self,
        name: str,
        original_url: str,
        price_per_request: float,
        pay_to_address: str,
        network: str = "base-sepolia",
        min_price: Optional[float] = None,
        max_price: Optional[float] = None,
        facilitator_url: Optional[str] = None,
        is_active: bool = True,
        endpoint_id: Optional[str] = None,
    ) -> WrappedEndpoint:
        """
        Register a wrapped endpoint.

        Raises:
            ValueError: If the price lies outside [min_price, max_price]
        """
        endpoint = WrappedEndpoint(
            name=name,
            original_url=original_url.rstrip("/"),
            price_per_request=price_per_request,
            pay_to_address=pay_to_address,
            network=network,
            min_price=min_price,
            max_price=max_price,
            facilitator_url=facilitator_url,
            is_active=is_active,
        )
        if endpoint_id:
            endpoint.id = endpoint_id
        _check_price_bounds(endpoint, price_per_request)

        with session_scope(self._session_factory) as session:
            session.add(endpoint)
            session.commit()
        logger.info(f"Endpoint registered: {name} ({endpoint.id})")
        return endpoint

    def get_endpoint(self, endpoint_id: str) -> Optional[WrappedEndpoint]:
        with session_scope(self._session_factory) as session:
            return session.get(WrappedEndpoint, endpoint_id)

    def set_endpoint_active(self, endpoint_id: str, is_active: bool) -> None:
        with session_scope(self._session_factory) as session:
            endpoint = session.get(WrappedEndpoint, endpoint_id)
            if endpoint is None:
                raise KeyError(endpoint_id)
            endpoint.is_active = is_active
            session.commit()

    def update_endpoint_price(
        self,
        endpoint_id: str,
        compute: Callable[[WrappedEndpoint], float],
    ) -> Optional[Tuple[float, float]]:
        """
        Read, recompute and write an endpoint's price in one transaction.

        The row is locked with SELECT ... FOR UPDATE where the backend supports
        it. The computed price must respect the endpoint's bounds.

        Returns:
            (old_price, new_price), or None if the endpoint does not exist

        Raises:
            ValueError: If compute() returns a price outside the bounds
        """
        with session_scope(self._session_factory) as session:
            with session.begin():
                endpoint = session.execute(
                    select(WrappedEndpoint)
                    .where(WrappedEndpoint.id == endpoint_id)
                    .with_for_update()
                ).scalar_one_or_none()
                if endpoint is None:
                    return None

                old_price = endpoint.price_per_request
                new_price = compute(endpoint)
                _check_price_bounds(endpoint, new_price)
                endpoint.price_per_request = new_price
            return old_price, new_price

    # --- Payments ---

    def record_payment(
        self,
        tx_hash: str,
        endpoint_id: str,
        amount: float,
        payer_address: Optional[str],
        status: str = "SUCCESS",
    ) -> bool:
        """
        Insert a payment keyed by transaction hash.

        Returns:
            True if this is the first sighting of tx_hash, False if it was
            already recorded

        Raises:
            PersistenceError: On any failure other than a duplicate hash
        """
        with session_scope(self._session_factory) as session:
            session.add(PaymentRecord(
                tx_hash=tx_hash,
                endpoint_id=endpoint_id,
                amount=amount,
                payer_address=payer_address,
                status=status,
            ))
            try:
                session.commit()
                return True
            except IntegrityError as e:
                session.rollback()
                existing = session.execute(
                    select(PaymentRecord.id).where(PaymentRecord.tx_hash == tx_hash)
                ).first()
                if existing is None:
                    # Integrity failure unrelated to the hash (e.g. foreign key)
                    raise PersistenceError(f"Failed to record payment {tx_hash}: {e}") from e
                return False
            except SQLAlchemyError as e:
                session.rollback()
                raise PersistenceError(f"Failed to record payment {tx_hash}: {e}") from e

    def count_payments(self, endpoint_id: Optional[str] = None, tx_hash: Optional[str] = None) -> int:
        stmt = select(func.count(PaymentRecord.id))
        if endpoint_id is not None:
            stmt = stmt.where(PaymentRecord.endpoint_id == endpoint_id)
        if tx_hash is not None:
            stmt = stmt.where(PaymentRecord.tx_hash == tx_hash)
        with session_scope(self._session_factory) as session:
            return session.execute(stmt).scalar_one()

    def list_payments(self, endpoint_id: str, since: Optional[datetime] = None) -> List[PaymentRecord]:
        stmt = select(PaymentRecord).where(PaymentRecord.endpoint_id == endpoint_id)
        if since is not None:
            stmt = stmt.where(PaymentRecord.created_at >= since)
        with session_scope(self._session_factory) as session:
            return list(session.execute(stmt.order_by(PaymentRecord.id)).scalars())

    # --- Request logs ---

    def log_request(self, endpoint_id: str, success: bool, latency_ms: int) -> RequestLogEntry:
        entry = RequestLogEntry(endpoint_id=endpoint_id, success=success, latency_ms=latency_ms)
        with session_scope(self._session_factory) as session:
            try:
                session.add(entry)
                session.commit()
            except SQLAlchemyError as e:
                session.rollback()
                raise PersistenceError(f"Failed to log request for {endpoint_id}: {e}") from e
        return entry

    def list_request_logs(self, endpoint_id: str, since: Optional[datetime] = None) -> List[RequestLogEntry]:
        stmt = select(RequestLogEntry).where(RequestLogEntry.endpoint_id == endpoint_id)
        if since is not None:
            stmt = stmt.where(RequestLogEntry.created_at >= since)
        with session_scope(self._session_factory) as session:
            return list(session.execute(stmt.order_by(RequestLogEntry.id)).scalars())

    # --- Automation ---

    def create_rule(
        self,
        endpoint_id: str,
        name: str,
        nodes: Iterable[Dict[str, Any]],
        enabled: bool = True,
    ) -> AutomationRule:
        """
        Create an automation rule.

        Each node is a dict with "kind" (TRIGGER, ACTION or AI), an optional
        "label" and a free-form "config" mapping.
        """
        rule = AutomationRule(endpoint_id=endpoint_id, name=name, enabled=enabled)
        for position, node in enumerate(nodes):
            rule.nodes.append(AutomationNode(
                kind=node["kind"],
                label=node.get("label", ""),
                position=position,
                config=node.get("config") or {},
            ))
        with session_scope(self._session_factory) as session:
            session.add(rule)
            session.commit()
        return rule

    def list_enabled_rules(self, endpoint_id: str) -> List[AutomationRule]:
        stmt = (
            select(AutomationRule)
            .where(AutomationRule.endpoint_id == endpoint_id, AutomationRule.enabled.is_(True))
            .options(selectinload(AutomationRule.nodes))
            .order_by(AutomationRule.id)
        )
        with session_scope(self._session_factory) as session:
            return list(session.execute(stmt).scalars())

    def append_decision(
        self,
        endpoint_id: str,
        reason: str,
        old_price: float,
        new_price: float,
    ) -> AutomationDecision:
        decision = AutomationDecision(
            endpoint_id=endpoint_id,
            reason=reason,
            old_price=old_price,
            new_price=new_price,
        )
        with session_scope(self._session_factory) as session:
            session.add(decision)
            session.commit()
        return decision

    def list_decisions(self, endpoint_id: str) -> List[AutomationDecision]:
        stmt = (
            select(AutomationDecision)
            .where(AutomationDecision.endpoint_id == endpoint_id)
            .order_by(AutomationDecision.id)
        )
        with session_scope(self._session_factory) as session:
            return list(session.execute(stmt).scalars())


def _check_price_bounds(endpoint: WrappedEndpoint, price: float) -> None:
    min_price, max_price = endpoint.price_bounds(settings.DEFAULT_MIN_PRICE, settings.DEFAULT_MAX_PRICE)
    if min_price > max_price:
        raise ValueError(f"min_price {min_price} exceeds max_price {max_price}")
    if not (min_price <= price <= max_price):
        raise ValueError(f"price {price} outside bounds [{min_price}, {max_price}]")
