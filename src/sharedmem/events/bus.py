"""Publish/subscribe event bus with per-subscriber buffering.

Two kinds of consumers are supported:

- Observers (SSE/WebSocket clients) call ``subscribe()`` and pull events
  from their own bounded buffer. When a buffer is full the oldest event
  is dropped, so a slow observer never blocks the producer or anyone
  else.
- Internal listeners (registry, accounting, scheduler reactions) are
  registered with ``add_listener()`` and invoked on a dedicated
  dispatcher thread, in publish order, outside of any producer lock.
"""

import itertools
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, Iterable, List, Optional, Set, Tuple

from sharedmem.common.logging import get_logger
from sharedmem.events.types import DomainEvent, EventKind

log = get_logger(__name__)

Listener = Callable[[DomainEvent], None]


class Subscription:
    """A live feed for one observer."""

    def __init__(
        self,
        bus: "EventBus",
        subscription_id: int,
        max_buffer: int,
        kinds: Optional[Set[EventKind]] = None,
    ):
        self.id = subscription_id
        self.kinds = kinds
        self.dropped = 0
        self._bus = bus
        self._buffer: Deque[DomainEvent] = deque(maxlen=max(1, max_buffer))
        self._cond = threading.Condition()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def offer(self, event: DomainEvent) -> None:
        """Enqueue without blocking; drop the oldest event when full."""
        if self.kinds is not None and event.kind not in self.kinds:
            return
        with self._cond:
            if self._closed:
                return
            if len(self._buffer) == self._buffer.maxlen:
                self.dropped += 1
            self._buffer.append(event)
            self._cond.notify()

    def get(self, timeout: Optional[float] = None) -> Optional[DomainEvent]:
        """Wait for the next event. Returns None on timeout or close."""
        with self._cond:
            if not self._buffer and not self._closed:
                self._cond.wait(timeout=timeout)
            if self._buffer:
                return self._buffer.popleft()
            return None

    def drain(self) -> List[DomainEvent]:
        with self._cond:
            events = list(self._buffer)
            self._buffer.clear()
            return events

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()
        self._bus.unsubscribe(self)


class EventBus:
    """Fan-out event channel shared by every component."""

    def __init__(self, subscriber_buffer: int = 256):
        self.subscriber_buffer = subscriber_buffer
        self._lock = threading.Lock()
        self._seq = itertools.count(1)
        self._ids = itertools.count(1)
        self._subscriptions: Dict[int, Subscription] = {}
        self._listeners: List[Tuple[Listener, Optional[Set[EventKind]]]] = []

        self._dispatch_queue: Deque[DomainEvent] = deque()
        self._dispatch_cond = threading.Condition()
        self._dispatch_busy = False
        self._running = False
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        """Start the dispatcher thread for internal listeners."""
        with self._dispatch_cond:
            if self._running:
                return
            self._running = True
        self._thread = threading.Thread(
            target=self._dispatch_loop,
            daemon=True,
            name="event-dispatcher",
        )
        self._thread.start()

    def stop(self) -> None:
        with self._dispatch_cond:
            self._running = False
            self._dispatch_cond.notify_all()
        if self._thread:
            self._thread.join(timeout=2.0)
        with self._lock:
            subscriptions = list(self._subscriptions.values())
        for subscription in subscriptions:
            subscription.close()

    def publish(self, event: DomainEvent) -> DomainEvent:
        """Deliver an event to every observer and queue it for listeners.

        Never blocks on consumers.
        """
        with self._lock:
            event.seq = next(self._seq)
            subscriptions = list(self._subscriptions.values())
            has_listeners = bool(self._listeners)

        for subscription in subscriptions:
            subscription.offer(event)

        if has_listeners:
            with self._dispatch_cond:
                self._dispatch_queue.append(event)
                self._dispatch_cond.notify()

        log.debug(f"event #{event.seq} {event.kind.value}")
        return event

    def subscribe(self, kinds: Optional[Iterable[EventKind]] = None) -> Subscription:
        """Open a live feed. No backlog is replayed."""
        subscription = Subscription(
            bus=self,
            subscription_id=next(self._ids),
            max_buffer=self.subscriber_buffer,
            kinds=set(kinds) if kinds is not None else None,
        )
        with self._lock:
            self._subscriptions[subscription.id] = subscription
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            self._subscriptions.pop(subscription.id, None)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def add_listener(
        self,
        callback: Listener,
        kinds: Optional[Iterable[EventKind]] = None,
    ) -> None:
        """Register an internal reaction, optionally filtered by event kind."""
        with self._lock:
            self._listeners.append((callback, set(kinds) if kinds is not None else None))

    def wait_idle(self, timeout: float = 2.0) -> bool:
        """Block until every queued event has been dispatched to listeners."""
        deadline = time.time() + timeout
        with self._dispatch_cond:
            while self._dispatch_queue or self._dispatch_busy:
                remaining = deadline - time.time()
                if remaining <= 0:
                    return False
                self._dispatch_cond.wait(timeout=remaining)
        return True

    def _dispatch_loop(self) -> None:
        while True:
            with self._dispatch_cond:
                while self._running and not self._dispatch_queue:
                    self._dispatch_cond.wait(timeout=0.5)
                if not self._running:
                    return
                event = self._dispatch_queue.popleft()
                self._dispatch_busy = True

            try:
                self._dispatch(event)
            finally:
                with self._dispatch_cond:
                    self._dispatch_busy = False
                    self._dispatch_cond.notify_all()

    def _dispatch(self, event: DomainEvent) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for callback, kinds in listeners:
            if kinds is not None and event.kind not in kinds:
                continue
            try:
                callback(event)
            except Exception as e:
                log.exception(f"Event listener failed on {event.kind.value}: {e}")
