"""
Notification sink: named events published after a successful commit.

Dispatch behavior:
1. Look up subscribers by event name
2. Run each handler (on a worker thread when asynchronous)
3. Catch and log handler exceptions per handler
4. Continue with the next subscriber

publish() never raises and never waits for handlers. Delivery is at-most-once
and best effort; nothing is persisted or replayed.
"""

from __future__ import annotations

import logging
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from .time_utils import utcnow, to_utc_z

logger = logging.getLogger("retailpos.events")

NEW_SALE = "new-sale"
HIGH_VALUE_SALE = "high-value-sale"
LOW_STOCK_ALERT = "low-stock-alert"
MEMBER_POINTS_CHANGED = "member-points-changed"
MEMBER_JOINED = "member-joined"

KNOWN_EVENTS = {NEW_SALE, HIGH_VALUE_SALE, LOW_STOCK_ALERT, MEMBER_POINTS_CHANGED, MEMBER_JOINED}


@dataclass(frozen=True)
class Event:
    name: str
    payload: dict
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    occurred_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            "event_id": self.event_id,
            "name": self.name,
            "occurred_at": to_utc_z(self.occurred_at),
            "payload": self.payload,
        }


Handler = Callable[[Event], Any]


class EventBus:
    """
    In-process publish/subscribe bus.

    One instance per application (see ``create_app``); tests build their own.
    """

    def __init__(self, *, asynchronous: bool = True, max_workers: int = 2):
        self.asynchronous = asynchronous
        self._max_workers = max_workers
        self._subscribers: dict[str, list[Handler]] = {}
        self._lock = threading.Lock()
        self._executor: ThreadPoolExecutor | None = None
        self._pending: set[Future] = set()

    def subscribe(self, name: str, handler: Handler) -> Callable[[], None]:
        """Attach a handler; returns a callable that detaches it again."""
        with self._lock:
            handlers = self._subscribers.setdefault(name, [])
            if handler not in handlers:
                handlers.append(handler)
        return lambda: self.unsubscribe(name, handler)

    def unsubscribe(self, name: str, handler: Handler) -> None:
        with self._lock:
            handlers = self._subscribers.get(name, [])
            if handler in handlers:
                handlers.remove(handler)

    def subscribers(self, name: str) -> list[Handler]:
        with self._lock:
            return list(self._subscribers.get(name, []))

    def publish(self, name: str, payload: dict | None = None) -> Event | None:
        """Fire-and-forget. Returns the event, or None if it could not be queued."""
        try:
            event = Event(name=name, payload=dict(payload or {}))
            handlers = self.subscribers(name)
            if not handlers:
                logger.debug("No subscribers for %s (event_id: %s)", name, event.event_id)
                return event

            if not self.asynchronous:
                self._dispatch(event, handlers)
                return event

            future = self._get_executor().submit(self._dispatch, event, handlers)
            with self._lock:
                self._pending.add(future)
            future.add_done_callback(self._forget)
            return event
        except Exception:
            logger.error("Failed to publish %s", name, exc_info=True)
            return None

    def _dispatch(self, event: Event, handlers: list[Handler]) -> dict:
        result = {"notified": 0, "failed": 0}
        for handler in handlers:
            handler_name = getattr(handler, "__qualname__", repr(handler))
            try:
                handler(event)
                result["notified"] += 1
            except Exception as exc:
                result["failed"] += 1
                logger.error(
                    "Subscriber failed: %s for %s (event_id: %s): %s",
                    handler_name, event.name, event.event_id, exc,
                    exc_info=True,
                )
        logger.debug(
            "Dispatch complete: %s (event_id: %s) %d notified, %d failed",
            event.name, event.event_id, result["notified"], result["failed"],
        )
        return result

    def _get_executor(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self._max_workers,
                    thread_name_prefix="retailpos-events",
                )
            return self._executor

    def _forget(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def drain(self, timeout: float | None = None) -> bool:
        """Wait for queued deliveries. True when nothing is left pending."""
        with self._lock:
            pending = list(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self, wait_for_pending: bool = True) -> None:
        with self._lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait_for_pending)
