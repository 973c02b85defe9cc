"""
Typed event emitter owned by the turn controller

Presentations (chat screen, ambient voice screen, console) subscribe to the
controller's events instead of listening on a process-wide broadcast.
Handlers run synchronously on the controller's event loop; a failing handler
is logged and does not affect the others.
"""

import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class ConversationEventType(Enum):
    """Events published by the conversation controller"""
    STATE_CHANGED = auto()
    TRANSCRIPT_UPDATED = auto()
    WAKE_WORD_DETECTED = auto()
    UTTERANCE_DISPATCHED = auto()
    REPLY_RECEIVED = auto()
    CAPTURE_UNAVAILABLE = auto()
    CONNECTIVITY_CHANGED = auto()


@dataclass
class ConversationEvent:
    """Event in the conversation"""
    type: ConversationEventType
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def get(self, key: str, default=None):
        return self.payload.get(key, default)

    def __repr__(self):
        return f"ConversationEvent({self.type.name}, {self.payload})"


EventCallback = Callable[[ConversationEvent], None]


class Subscription:
    """Handle returned by subscribe(); call unsubscribe() to detach"""

    def __init__(self, emitter: "EventEmitter", event_type: Optional[ConversationEventType], callback: EventCallback):
        self._emitter = emitter
        self.event_type = event_type
        self.callback = callback
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self._emitter._remove(self)
            self.active = False


class EventEmitter:
    """Observer registry with explicit subscribe/unsubscribe lifecycle"""

    def __init__(self, history_size: int = 100):
        self._subscriptions: Dict[Optional[ConversationEventType], List[Subscription]] = defaultdict(list)
        self._history: List[ConversationEvent] = []
        self._history_size = history_size

    def subscribe(
        self,
        callback: EventCallback,
        event_type: Optional[ConversationEventType] = None
    ) -> Subscription:
        """Subscribe to one event type, or to every event when event_type is None"""
        subscription = Subscription(self, event_type, callback)
        self._subscriptions[event_type].append(subscription)
        logger.debug(f"Subscribed {getattr(callback, '__name__', callback)} to "
                     f"{event_type.name if event_type else 'ALL'}")
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        subscriptions = self._subscriptions.get(subscription.event_type, [])
        if subscription in subscriptions:
            subscriptions.remove(subscription)

    def emit(self, event_type: ConversationEventType, **payload) -> ConversationEvent:
        event = ConversationEvent(type=event_type, payload=payload)

        self._history.append(event)
        if len(self._history) > self._history_size:
            self._history = self._history[-self._history_size:]

        handlers = list(self._subscriptions.get(event_type, [])) + list(self._subscriptions.get(None, []))
        for subscription in handlers:
            try:
                subscription.callback(event)
            except Exception as e:
                logger.error(f"Event handler error for {event_type.name}: {e}", exc_info=True)

        return event

    def subscriber_count(self, event_type: Optional[ConversationEventType] = None) -> int:
        return len(self._subscriptions.get(event_type, []))

    def get_recent_events(self, count: int = 10) -> List[ConversationEvent]:
        return self._history[-count:]

    def clear_history(self) -> None:
        self._history.clear()


__all__ = [
    'ConversationEventType',
    'ConversationEvent',
    'Subscription',
    'EventEmitter',
]
