"""
Process-wide observable for deal sync progress.

The sync job publishes into it; the status endpoint and any other interested
component read snapshots or subscribe for changes.
"""

from copy import deepcopy
from datetime import datetime
from typing import Any, Callable, Dict, List

import structlog

logger = structlog.get_logger()

Subscriber = Callable[[Dict[str, Any]], None]


class SyncStateStore:
    """Single shared store with explicit subscribe/unsubscribe semantics."""

    def __init__(self):
        self._state: Dict[str, Any] = {
            "is_running": False,
            "phase": "idle",
            "deals_fetched": 0,
            "deals_upserted": 0,
            "last_error": None,
            "updated_at": None,
        }
        self._subscribers: List[Subscriber] = []

    def snapshot(self) -> Dict[str, Any]:
        return deepcopy(self._state)

    def publish(self, **changes: Any) -> None:
        self._state.update(changes)
        self._state["updated_at"] = datetime.utcnow().isoformat()
        state = self.snapshot()
        for subscriber in list(self._subscribers):
            try:
                subscriber(state)
            except Exception as e:
                logger.warning("Sync state subscriber failed", error=str(e))

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register callback; returns a function that unsubscribes it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def reset(self) -> None:
        self._state.update(
            is_running=False,
            phase="idle",
            deals_fetched=0,
            deals_upserted=0,
            last_error=None,
            updated_at=None,
        )


sync_state = SyncStateStore()
