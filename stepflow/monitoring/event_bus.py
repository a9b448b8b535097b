"""
EventBus: In-process publish/subscribe for pipeline lifecycle notifications.

The engine publishes:
- pipeline.step_completed (after every executed step, whatever its status)
- pipeline.completed
- pipeline.failed

Delivery is fire-and-forget. Handlers run on a single background worker in
publish order, so a slow subscriber never holds up the publisher. Set
``events.async_delivery: false`` to call handlers inline. A failing handler
is logged and never reaches the publisher.
"""

import logging
import threading
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

logger = logging.getLogger(__name__)

WILDCARD = "*"


class EventType(Enum):
    """Channels published by the engine."""
    STEP_COMPLETED = "pipeline.step_completed"
    PIPELINE_COMPLETED = "pipeline.completed"
    PIPELINE_FAILED = "pipeline.failed"


@dataclass
class PipelineEvent:
    """
    A single lifecycle notification.

    Attributes:
        channel: Event channel (EventType value)
        payload: Event data (pipeline id, step name, status, cost, ...)
        source: Component that published the event
        timestamp: When the event was created
    """
    channel: str
    payload: Dict[str, Any]
    source: str = "stepflow"
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())

    def __post_init__(self):
        if isinstance(self.channel, EventType):
            self.channel = self.channel.value


EventHandler = Callable[[PipelineEvent], Any]


@dataclass
class _Subscription:
    sub_id: str
    channel: str
    handler: EventHandler
    once: bool = False


class EventBus:
    """
    Channel-based event bus with wildcard subscribers and bounded history.
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        """
        Initialize EventBus.

        Args:
            config: Application configuration (reads the ``events`` section)
        """
        events_config = (config or {}).get('events') or {}
        self.async_delivery = events_config.get('async_delivery', True)
        self.max_history = events_config.get('max_history', 1000)

        self._subscriptions: Dict[str, _Subscription] = {}
        self._history: deque = deque(maxlen=self.max_history)
        self._counter = 0
        self._lock = threading.Lock()
        self._executor: Optional[ThreadPoolExecutor] = None

        if self.async_delivery:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="event-bus")

        logger.debug(f"EventBus initialized (async_delivery={self.async_delivery})")

    def subscribe(self, channel: Union[str, EventType], handler: EventHandler) -> Callable[[], None]:
        """
        Subscribe to a channel ("*" receives every event).

        Returns:
            Function that removes the subscription
        """
        return self._add(channel, handler, once=False)

    def once(self, channel: Union[str, EventType], handler: EventHandler) -> Callable[[], None]:
        """Subscribe for exactly one event."""
        return self._add(channel, handler, once=True)

    def unsubscribe(self, sub_id: str) -> bool:
        with self._lock:
            return self._subscriptions.pop(sub_id, None) is not None

    def emit(self, event: PipelineEvent) -> None:
        """
        Publish an event to every matching subscriber.

        Never raises on handler failure.
        """
        with self._lock:
            self._history.append(event)
            matching = [
                sub for sub in self._subscriptions.values()
                if sub.channel in (event.channel, WILDCARD)
            ]
            for sub in matching:
                if sub.once:
                    self._subscriptions.pop(sub.sub_id, None)

        for sub in matching:
            if self._executor is not None:
                self._executor.submit(self._deliver, sub, event)
            else:
                self._deliver(sub, event)

    def publish(self, channel: Union[str, EventType], payload: Dict[str, Any]) -> PipelineEvent:
        """Build and emit an event in one call."""
        event = PipelineEvent(channel=channel, payload=payload)
        self.emit(event)
        return event

    def get_history(self, channel: Optional[Union[str, EventType]] = None, limit: Optional[int] = None) -> List[PipelineEvent]:
        """
        Get recorded events, oldest first.

        Args:
            channel: Only events on this channel
            limit: Only the most recent ``limit`` events
        """
        channel = _channel_name(channel) if channel else None
        with self._lock:
            events = [e for e in self._history if channel is None or e.channel == channel]
        if limit is not None:
            events = events[-limit:]
        return events

    def clear_history(self) -> None:
        with self._lock:
            self._history.clear()

    def subscriber_count(self, channel: Optional[Union[str, EventType]] = None) -> int:
        channel = _channel_name(channel) if channel else None
        with self._lock:
            return sum(1 for s in self._subscriptions.values() if channel is None or s.channel == channel)

    def close(self) -> None:
        """Wait for pending asynchronous deliveries."""
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def _add(self, channel, handler: EventHandler, once: bool) -> Callable[[], None]:
        with self._lock:
            self._counter += 1
            sub_id = f"sub_{self._counter}"
            self._subscriptions[sub_id] = _Subscription(sub_id, _channel_name(channel), handler, once)
        return lambda: self.unsubscribe(sub_id)

    def _deliver(self, sub: _Subscription, event: PipelineEvent) -> None:
        try:
            sub.handler(event)
        except Exception as e:
            logger.error(f"Event handler {sub.sub_id} failed on {event.channel}: {e}")


def _channel_name(channel: Union[str, EventType]) -> str:
    return channel.value if isinstance(channel, EventType) else channel
