"""
Notification Engine - Event Fan-out to Sinks

This module routes epic events to registered sinks:
1. Sinks are registered by name with the event types they subscribe to
2. Every event is offered to each subscribed sink, in registration order
3. Sink failures are logged and recorded, never raised to the caller
4. A bounded log of recent notifications is kept for audit

Delivery itself is the sink's responsibility. webhook_sink() builds an
HTTP sink on httpx.
"""

import inspect
import json
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, List, Optional, Set, Union

import httpx

logger = logging.getLogger("notification_engine")

NOTIFICATION_LOG_SIZE = 500
WEBHOOK_TIMEOUT = 10.0


class ProgressEvent(str, Enum):
    """Event types offered to sinks."""
    TASK_ASSIGNED = "task_assigned"
    TASK_COMPLETED = "task_completed"
    MILESTONE_REACHED = "milestone_reached"
    EPIC_COMPLETED = "epic_completed"
    HEALTH_CHANGED = "health_changed"
    VELOCITY_CHANGED = "velocity_changed"


Sink = Callable[[str, ProgressEvent, Dict[str, Any]], Union[Any, Awaitable[Any]]]


@dataclass
class Notification:
    """One event as offered to the sinks."""
    epic_id: str
    event_type: ProgressEvent
    payload: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.utcnow)
    offered_to: List[str] = field(default_factory=list)
    delivery_errors: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return {
            "epic_id": self.epic_id,
            "event_type": self.event_type.value,
            "payload": self.payload,
            "created_at": self.created_at.isoformat(),
            "offered_to": list(self.offered_to),
            "delivery_errors": dict(self.delivery_errors),
        }


@dataclass
class _SinkRegistration:
    handler: Sink
    events: Optional[Set[ProgressEvent]] = None

    def accepts(self, event_type: ProgressEvent) -> bool:
        return self.events is None or event_type in self.events


class NotificationEngine:
    """
    Fan-out of epic events to subscribed sinks.

    Sinks receive (epic_id, event_type, payload) and may be plain
    callables or coroutines.
    """

    def __init__(self, log_size: int = NOTIFICATION_LOG_SIZE):
        self._sinks: Dict[str, _SinkRegistration] = {}
        self._log: Deque[Notification] = deque(maxlen=log_size)

    def register_sink(
        self,
        name: str,
        handler: Sink,
        events: Optional[Iterable[ProgressEvent]] = None,
    ) -> None:
        """Register a sink. events=None subscribes to every event type."""
        subscribed = {ProgressEvent(e) for e in events} if events is not None else None
        self._sinks[name] = _SinkRegistration(handler=handler, events=subscribed)
        logger.info(f"Registered notification sink: {name}")

    def unregister_sink(self, name: str) -> bool:
        removed = self._sinks.pop(name, None) is not None
        if removed:
            logger.info(f"Unregistered notification sink: {name}")
        return removed

    def sink_names(self) -> List[str]:
        return list(self._sinks)

    def subscribers(self, event_type: ProgressEvent) -> List[str]:
        return [name for name, reg in self._sinks.items() if reg.accepts(event_type)]

    async def offer(
        self,
        epic_id: str,
        event_type: ProgressEvent,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Notification:
        """
        Offer an event to every subscribed sink.

        Returns the Notification with per-sink errors recorded.
        """
        notification = Notification(
            epic_id=epic_id,
            event_type=ProgressEvent(event_type),
            payload=dict(payload or {}),
        )

        for name, registration in list(self._sinks.items()):
            if not registration.accepts(notification.event_type):
                continue
            notification.offered_to.append(name)
            try:
                result = registration.handler(epic_id, notification.event_type, notification.payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Sink {name} failed for {notification.event_type.value} on epic {epic_id}: {e}")
                notification.delivery_errors[name] = str(e)

        self._log.append(notification)
        logger.debug(
            f"Offered {notification.event_type.value} for epic {epic_id} "
            f"to {len(notification.offered_to)} sink(s)"
        )
        return notification

    async def offer_batch(self, events: List[Dict[str, Any]]) -> Dict[str, int]:
        """
        Offer several events.

        Each entry has epic_id, event_type and optional payload.
        Returns counts of clean and partially failed offers.
        """
        clean = 0
        failed = 0
        for event in events:
            notification = await self.offer(event["epic_id"], event["event_type"], event.get("payload"))
            if notification.delivery_errors:
                failed += 1
            else:
                clean += 1
        return {"delivered": clean, "failed": failed}

    def get_recent_notifications(
        self,
        epic_id: Optional[str] = None,
        limit: int = 50,
    ) -> List[Dict]:
        """Recent notifications, oldest first."""
        notifications = [
            n.to_dict() for n in self._log
            if epic_id is None or n.epic_id == epic_id
        ]
        return notifications[-limit:]


# Webhook sink implementation
def webhook_sink(
    url: str,
    timeout: float = WEBHOOK_TIMEOUT,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Sink:
    """
    Build a sink that POSTs each event as JSON to `url`.

    Non-2xx responses raise, which the engine records as a delivery error.
    """
    async def send(epic_id: str, event_type: ProgressEvent, payload: Dict[str, Any]) -> None:
        body = json.dumps(
            {
                "epic_id": epic_id,
                "event_type": ProgressEvent(event_type).value,
                "payload": payload,
                "timestamp": datetime.utcnow().isoformat(),
            },
            default=str,
        )
        async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
            response = await client.post(
                url,
                content=body,
                headers={"Content-Type": "application/json"},
            )
            response.raise_for_status()

    return send
