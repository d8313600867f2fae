# paygate/services/automation.py
"""
Rule-based automation engine.

Rules are flows of TRIGGER, ACTION and AI nodes attached to an endpoint.
A rule runs when one of its trigger nodes matches an event of the pass; its
ACTION/AI nodes then execute in order.

Action node configs are parsed into a closed set of typed actions:
- UPDATE_PRICE: adjust the endpoint price (INCREASE, DECREASE, SET, MULTIPLY)
- SEND_NOTIFICATION: log a message

Every price write is clamped to the endpoint's [min_price, max_price].
A failing rule or node is logged and never stops its siblings.
"""
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Sequence, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from paygate.core.config import settings
from paygate.db.models import AutomationNode, AutomationRule, WrappedEndpoint
from paygate.db.storage import Storage
from paygate.x402 import audit

logger = logging.getLogger(__name__)

NODE_TRIGGER = "TRIGGER"
NODE_ACTION = "ACTION"
NODE_AI = "AI"

DEFAULT_PRICE_STEP = 0.1
DEFAULT_MULTIPLIER = 1.1


class TriggerType(str, Enum):
    PAYMENT_SUCCESS = "PAYMENT_SUCCESS"
    API_REQUEST = "API_REQUEST"


class PriceChangeMode(str, Enum):
    INCREASE = "INCREASE"
    DECREASE = "DECREASE"
    SET = "SET"
    MULTIPLY = "MULTIPLY"


class PriceAdjustment(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    action_type: Literal["UPDATE_PRICE"] = Field(alias="actionType")
    mode: PriceChangeMode = Field(alias="priceChange")
    amount: Optional[float] = None
    multiplier: Optional[float] = None

    def apply(self, current: float) -> float:
        """Unclamped price after this adjustment."""
        if self.mode is PriceChangeMode.INCREASE:
            return current + (self.amount if self.amount is not None else DEFAULT_PRICE_STEP)
        if self.mode is PriceChangeMode.DECREASE:
            return current - (self.amount if self.amount is not None else DEFAULT_PRICE_STEP)
        if self.mode is PriceChangeMode.SET:
            return self.amount if self.amount is not None else current
        if self.mode is PriceChangeMode.MULTIPLY:
            return current * (self.multiplier if self.multiplier is not None else DEFAULT_MULTIPLIER)
        raise ValueError(f"Unhandled price change mode: {self.mode}")


class Notification(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    action_type: Literal["SEND_NOTIFICATION"] = Field(alias="actionType")
    message: str = "Event occurred"


Action = Annotated[Union[PriceAdjustment, Notification], Field(discriminator="action_type")]

_action_adapter = TypeAdapter(Action)

KNOWN_ACTION_TYPES = frozenset({"UPDATE_PRICE", "SEND_NOTIFICATION"})


class UnknownAction(ValueError):
    """The node's actionType is not one the engine knows."""


def parse_action(config: Dict[str, Any]) -> Union[PriceAdjustment, Notification]:
    """
    Parse an ACTION node config into a typed action.

    Raises:
        UnknownAction: If actionType is missing or unrecognised
        pydantic.ValidationError: If the payload for a known action is malformed
    """
    action_type = (config or {}).get("actionType")
    if action_type not in KNOWN_ACTION_TYPES:
        raise UnknownAction(f"Unknown action type: {action_type}")
    return _action_adapter.validate_python(config)


def clamp_price(price: float, min_price: float, max_price: float) -> float:
    return max(min_price, min(max_price, price))


@dataclass
class AutomationEvent:
    endpoint_id: str
    events: Sequence[TriggerType]
    context: Dict[str, Any] = field(default_factory=dict)

    @property
    def event_names(self) -> List[str]:
        return [TriggerType(e).value for e in self.events]


@dataclass
class PriceChange:
    old_price: float
    new_price: float
    unclamped_price: float
    reason: str

    @property
    def clamped(self) -> bool:
        return self.unclamped_price != self.new_price


class AutomationEngine:
    """Runs enabled automation rules for an endpoint against a set of events."""

    def __init__(self, storage: Storage):
        self.storage = storage

    def run(self, event: AutomationEvent) -> List[PriceChange]:
        """
        Execute every enabled rule of the endpoint whose triggers match.

        Returns:
            The price changes applied during this pass
        """
        logger.info(f"Automation triggered for endpoint {event.endpoint_id}: {', '.join(event.event_names)}")
        rules = self.storage.list_enabled_rules(event.endpoint_id)
        if not rules:
            logger.info("No enabled automation rules for this endpoint")
            return []

        changes: List[PriceChange] = []
        for rule in rules:
            try:
                changes.extend(self._execute_rule(rule, event))
            except Exception as e:
                logger.error(f"Error executing rule {rule.id}: {e}")
        return changes

    def _rule_matches(self, rule: AutomationRule, event: AutomationEvent) -> bool:
        triggers = [node for node in rule.nodes if node.kind == NODE_TRIGGER]
        if not triggers:
            logger.warning(f"Rule {rule.id} has no trigger nodes")
            return False
        names = set(event.event_names)
        for trigger in triggers:
            trigger_type = (trigger.config or {}).get("triggerType")
            if trigger_type in names:
                logger.info(f"Trigger matched: {trigger_type}")
                return True
        return False

    def _execute_rule(self, rule: AutomationRule, event: AutomationEvent) -> List[PriceChange]:
        if not self._rule_matches(rule, event):
            logger.info(f"No matching triggers for rule {rule.name}")
            return []

        logger.info(f"Executing rule: {rule.name} ({rule.id})")
        changes: List[PriceChange] = []
        for node in rule.nodes:
            if node.kind not in (NODE_ACTION, NODE_AI):
                continue
            try:
                change = self._execute_node(node, event)
            except Exception as e:
                logger.error(f"Error executing node {node.id} ({node.label}): {e}")
                continue
            if change is not None:
                changes.append(change)
        return changes

    def _execute_node(self, node: AutomationNode, event: AutomationEvent) -> Optional[PriceChange]:
        if node.kind == NODE_AI:
            # AI nodes are placeholders; nothing to execute yet
            logger.info(f"AI node: {node.label}")
            return None

        try:
            action = parse_action(node.config)
        except UnknownAction as e:
            logger.warning(f"{e} (node {node.id}), skipping")
            return None
        except PydanticValidationError as e:
            logger.warning(f"Malformed action config on node {node.id}, skipping: {e}")
            return None

        if isinstance(action, PriceAdjustment):
            return self._apply_price_adjustment(action, event.endpoint_id)
        if isinstance(action, Notification):
            logger.info(f"Notification for endpoint {event.endpoint_id}: {action.message}")
            return None
        raise TypeError(f"Unhandled action: {type(action).__name__}")

    def _apply_price_adjustment(self, action: PriceAdjustment, endpoint_id: str) -> Optional[PriceChange]:
        computed: Dict[str, float] = {}

        def compute(endpoint: WrappedEndpoint) -> float:
            min_price, max_price = endpoint.price_bounds(settings.DEFAULT_MIN_PRICE, settings.DEFAULT_MAX_PRICE)
            unclamped = action.apply(endpoint.price_per_request)
            computed["unclamped"] = unclamped
            return clamp_price(unclamped, min_price, max_price)

        result = self.storage.update_endpoint_price(endpoint_id, compute)
        if result is None:
            logger.error(f"Endpoint {endpoint_id} not found for price update")
            return None

        old_price, new_price = result
        reason = f"Flow automation: {action.mode.value}"
        change = PriceChange(
            old_price=old_price,
            new_price=new_price,
            unclamped_price=computed["unclamped"],
            reason=reason,
        )
        if change.clamped:
            logger.warning(f"Price clamped from {change.unclamped_price} to {new_price}")
            change.reason = f"{reason} (clamped from {change.unclamped_price} to {new_price})"

        self.storage.append_decision(endpoint_id, change.reason, old_price, new_price)
        audit.log_price_adjusted(
            endpoint_id=endpoint_id,
            old_price=old_price,
            new_price=new_price,
            reason=change.reason,
            clamped=change.clamped,
        )
        logger.info(f"Price updated: {old_price} -> {new_price}")
        return change
