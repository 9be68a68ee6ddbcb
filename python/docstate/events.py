"""
Scoped publish/subscribe for cross-component notification.

One EventEmitter is created by whoever composes DocumentState and the
schedulers (see EditorSession) and handed to each component. There is no
process-wide instance.
"""

from typing import Any, Callable, Dict, List

import structlog

logger = structlog.get_logger(__name__)

Listener = Callable[[Dict[str, Any]], None]

FIX_APPLIED = "fix_applied"
ANALYSIS_COMPLETE = "analysis_complete"
DOCUMENT_RESTORED = "document_restored"
DOCUMENT_LOADED = "document_loaded"
DOCUMENT_CHANGED = "document_changed"
SAVE_STATUS_CHANGED = "save_status_changed"


class EventEmitter:
    MAX_LISTENERS_WARNING = 10

    def __init__(self):
        self._listeners: Dict[str, List[Listener]] = {}

    def on(self, event: str, callback: Listener) -> Callable[[], None]:
        """Registers a listener and returns a function that unregisters it."""
        listeners = self._listeners.setdefault(event, [])
        if callback not in listeners:
            listeners.append(callback)

        if len(listeners) > self.MAX_LISTENERS_WARNING:
            logger.warning(
                f"{len(listeners)} listeners registered for '{event}'; a subscriber is probably not unsubscribing"
            )

        return lambda: self.off(event, callback)

    def off(self, event: str, callback: Listener) -> None:
        listeners = self._listeners.get(event)
        if not listeners:
            return
        if callback in listeners:
            listeners.remove(callback)
        if not listeners:
            del self._listeners[event]

    def emit(self, event: str, data: Dict[str, Any] | None = None) -> None:
        payload = data or {}
        # Copy so a listener may unsubscribe itself while being called.
        for callback in list(self._listeners.get(event, ())):
            try:
                callback(payload)
            except Exception as e:
                logger.error(f"Listener for '{event}' failed: {e}", exc_info=True)

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, ()))

    def clear(self) -> None:
        self._listeners.clear()
