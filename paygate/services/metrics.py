# paygate/services/metrics.py
"""
Fire-and-forget recording of wrapper call outcomes.

Work is scheduled as background tasks on the response, so it runs after the
response has been sent and can never change it. Every failure is logged and
swallowed.
"""
import logging
import time
from typing import Any, Dict, Optional, Sequence

from fastapi import BackgroundTasks

from paygate.core.errors import PersistenceError
from paygate.db.storage import Storage
from paygate.services.automation import AutomationEngine, AutomationEvent, TriggerType

logger = logging.getLogger(__name__)

# Request log writes are retried on transient storage failures
REQUEST_LOG_ATTEMPTS = 3
REQUEST_LOG_RETRY_DELAY_SECONDS = 0.2


class MetricsSink:
    """Persists request outcomes and runs automation passes."""

    def __init__(self, storage: Storage, engine: Optional[AutomationEngine] = None):
        self.storage = storage
        self.engine = engine or AutomationEngine(storage)

    def record_request(self, endpoint_id: str, success: bool, latency_ms: int) -> bool:
        """Write one RequestLogEntry. Returns False if every attempt failed."""
        for attempt in range(1, REQUEST_LOG_ATTEMPTS + 1):
            try:
                self.storage.log_request(endpoint_id, success, latency_ms)
                logger.info(f"Request logged: {'SUCCESS' if success else 'FAILED'} ({latency_ms}ms)")
                return True
            except PersistenceError as e:
                logger.warning(f"Failed to log API request (attempt {attempt}/{REQUEST_LOG_ATTEMPTS}): {e}")
                if attempt < REQUEST_LOG_ATTEMPTS:
                    time.sleep(REQUEST_LOG_RETRY_DELAY_SECONDS)
            except Exception as e:
                logger.error(f"Unexpected error logging API request: {e}")
                return False
        return False

    def run_automation(self, event: AutomationEvent) -> None:
        try:
            self.engine.run(event)
        except Exception as e:
            logger.error(f"Automation engine error for endpoint {event.endpoint_id}: {e}")

    def schedule(
        self,
        background_tasks: BackgroundTasks,
        endpoint_id: str,
        success: bool,
        latency_ms: int,
        events: Sequence[TriggerType] = (),
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Queue the request log write and, if events are given, an automation pass.

        Tasks run in order after the response has been sent.
        """
        background_tasks.add_task(self.record_request, endpoint_id, success, latency_ms)
        if events:
            event = AutomationEvent(endpoint_id=endpoint_id, events=list(events), context=context or {})
            background_tasks.add_task(self.run_automation, event)
