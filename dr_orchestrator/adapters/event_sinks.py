"""
Event sinks for operator-visible DR alerts
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

from ..contracts import EventSink
from ..logging_adapter import get_safe_logger
from ..metrics import events_emitted_total
from ..models import EventSeverity
from ..resilience import DEFAULT_RETRY_CONFIGS, call_with_retry

logger = get_safe_logger("dr_orchestrator.events")

_LOG_METHOD = {
    EventSeverity.INFO: "info",
    EventSeverity.WARNING: "warning",
    EventSeverity.ERROR: "error",
    EventSeverity.CRITICAL: "critical",
}


class LoggingEventSink:
    """Writes every event to the structured log"""

    async def emit(self, severity: EventSeverity, message: str,
                   context: Optional[Dict[str, Any]] = None) -> None:
        events_emitted_total.labels(severity=severity.value).inc()
        getattr(logger, _LOG_METHOD[severity])("dr_event", message=message, severity=severity.value,
                                               **(context or {}))


class WebhookEventSink:
    """POSTs events as JSON to an alerting webhook"""

    def __init__(self, url: str, source: str, timeout: float = 10.0,
                 min_severity: EventSeverity = EventSeverity.WARNING,
                 client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self.source = source
        self.min_severity = min_severity
        self._client = client or httpx.AsyncClient(timeout=timeout)

    def _wants(self, severity: EventSeverity) -> bool:
        order = list(EventSeverity)
        return order.index(severity) >= order.index(self.min_severity)

    async def emit(self, severity: EventSeverity, message: str,
                   context: Optional[Dict[str, Any]] = None) -> None:
        if not self._wants(severity):
            return
        payload = {
            "source": self.source,
            "severity": severity.value,
            "message": message,
            "context": context or {},
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        await call_with_retry(self._post, payload, config=DEFAULT_RETRY_CONFIGS["webhook"],
                              service_name="alert_webhook")

    async def _post(self, payload: Dict[str, Any]) -> None:
        try:
            response = await self._client.post(self.url, json=payload)
        except httpx.TransportError as e:
            raise ConnectionError(str(e)) from e
        if response.status_code >= 500:
            raise ConnectionError(f"webhook returned {response.status_code}")
        response.raise_for_status()

    async def aclose(self) -> None:
        await self._client.aclose()


class CompositeEventSink:
    """
    Fans an event out to every sink. A failing sink is logged and skipped so
    alert delivery never breaks the operation that raised the alert.
    """

    def __init__(self, sinks: List[EventSink]):
        self.sinks = list(sinks)

    async def emit(self, severity: EventSeverity, message: str,
                   context: Optional[Dict[str, Any]] = None) -> None:
        for sink in self.sinks:
            try:
                await sink.emit(severity, message, context)
            except Exception as e:
                logger.error("event_delivery_failed", sink=type(sink).__name__,
                             severity=severity.value, error=str(e))

    async def aclose(self) -> None:
        for sink in self.sinks:
            aclose = getattr(sink, "aclose", None)
            if aclose is not None:
                await aclose()
