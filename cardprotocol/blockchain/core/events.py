"""
Event system for upgrade lifecycle notifications.

Off-chain pub/sub for coordinator and migration events (adoption, proposals,
commits, migration chunks). On-chain contract events live in the chain's log.
"""
from collections import deque
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Tuple
import logging

logger = logging.getLogger(__name__)

WILDCARD = "*"


class UpgradeEvent(str, Enum):
    PROXY_ADOPTED = "proxy_adopted"
    CHANGE_PROPOSED = "change_proposed"
    CHANGES_WITHDRAWN = "changes_withdrawn"
    PROTOCOL_UPGRADED = "protocol_upgraded"
    PROPOSER_ADDED = "proposer_added"
    PROPOSER_REMOVED = "proposer_removed"
    MIGRATION_CHUNK = "migration_chunk"
    MIGRATION_FINISHED = "migration_finished"


class EventBus:
    """
    Simple event bus for upgrade events.

    Events are delivered synchronously in the emitting thread. Listeners
    subscribed to ``"*"`` receive every event with ``event_type`` added to
    the payload. The most recent events are kept for status reporting.
    """

    def __init__(self, history_size: int = 256):
        self.listeners: Dict[str, List[Callable]] = {}
        self.history: Deque[Tuple[str, Dict[str, Any]]] = deque(maxlen=history_size)

    def subscribe(self, event_type: str, callback: Callable) -> None:
        """
        Subscribe to an event type.

        Args:
            event_type: Event name (an UpgradeEvent value) or "*" for everything
            callback: Function to call when event is emitted
        """
        key = self._key(event_type)
        self.listeners.setdefault(key, []).append(callback)
        logger.debug(f"Subscribed to event: {key}")

    def unsubscribe(self, event_type: str, callback: Callable) -> None:
        key = self._key(event_type)
        if key in self.listeners:
            try:
                self.listeners[key].remove(callback)
                logger.debug(f"Unsubscribed from event: {key}")
            except ValueError:
                logger.warning(f"Callback not found for event: {key}")

    def emit(self, event_type: str, **data: Any) -> int:
        """
        Emit an event to all subscribers.

        Returns:
            Number of listeners the event was delivered to
        """
        key = self._key(event_type)
        self.history.append((key, dict(data)))

        delivered = 0
        for callback in self.listeners.get(key, []):
            delivered += self._deliver(key, callback, data)
        for callback in self.listeners.get(WILDCARD, []):
            delivered += self._deliver(key, callback, dict(data, event_type=key))

        logger.debug(f"Emitted event: {key} to {delivered} listener(s)")
        return delivered

    def recent(self, event_type: str = None) -> List[Tuple[str, Dict[str, Any]]]:
        if event_type is None:
            return list(self.history)
        key = self._key(event_type)
        return [item for item in self.history if item[0] == key]

    def clear(self, event_type: str = None) -> None:
        """Clear listeners for one event type, or all listeners and history."""
        if event_type:
            self.listeners.pop(self._key(event_type), None)
        else:
            self.listeners.clear()
            self.history.clear()

    @staticmethod
    def _key(event_type) -> str:
        return event_type.value if isinstance(event_type, UpgradeEvent) else str(event_type)

    @staticmethod
    def _deliver(key: str, callback: Callable, data: Dict[str, Any]) -> int:
        # Listener failures must never break the operation that emitted the event
        try:
            callback(**data)
            return 1
        except Exception as e:
            logger.error(f"Error in event callback for {key}: {e}", exc_info=True)
            return 0


# Global event bus instance
event_bus = EventBus()
