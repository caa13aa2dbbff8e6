"""Best-effort fan-out of game events to topic subscribers.

A topic is an opaque string (one per session: ``session:<id>``). Pull
subscribers get a bounded queue they drain at their own pace (the SSE stream);
push transports register a relay that is called for every published event
(the Socket.IO room relay). Publishing never blocks and never raises: a full
or closed subscriber is pruned, a failing relay is logged.
"""

import json
import logging
import queue
import threading
from typing import Callable, Dict, List, Optional, Set

from quizmaster.models import isoformat, utcnow


def session_topic(session_id) -> str:
    return f"session:{session_id}"


class Event:
    __slots__ = ('type', 'payload', 'server_time')

    def __init__(self, type_: str, payload, server_time: Optional[str] = None):
        self.type = type_
        self.payload = payload
        self.server_time = server_time or isoformat(utcnow())

    def to_dict(self):
        return {'type': self.type, 'payload': self.payload, 'server_time': self.server_time}

    def to_sse(self) -> str:
        return f"data: {json.dumps(self.to_dict())}\n\n"


_CLOSED = object()


class Subscription:
    def __init__(self, broker: 'TopicBroker', topic: str, maxsize: int):
        self.broker = broker
        self.topic = topic
        self.closed = False
        self._queue: queue.Queue = queue.Queue(maxsize=maxsize)

    def offer(self, event: Event) -> bool:
        if self.closed:
            return False
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            return False
        return True

    def get(self, timeout: Optional[float] = None) -> Optional[Event]:
        """Next event, or None when the timeout passes or the subscription closes."""
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        return None if item is _CLOSED else item

    def events(self, keepalive: Optional[float] = None):
        """Yield events until closed. Emits ``ping`` events after ``keepalive`` idle seconds."""
        while not self.closed:
            try:
                item = self._queue.get(timeout=keepalive)
            except queue.Empty:
                yield Event('ping', {})
                continue
            if item is _CLOSED:
                return
            yield item

    __iter__ = events

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.broker.unsubscribe(self)
        try:
            self._queue.put_nowait(_CLOSED)
        except queue.Full:
            pass


class TopicBroker:
    def __init__(self, queue_size: int = 100, logger: Optional[logging.Logger] = None):
        self.queue_size = queue_size
        self.logger = logger or logging.getLogger(__name__)
        self._lock = threading.Lock()
        self._topics: Dict[str, Set[Subscription]] = {}
        self._relays: List[Callable[[str, Event], None]] = []

    def subscribe(self, topic: str) -> Subscription:
        sub = Subscription(self, topic, self.queue_size)
        with self._lock:
            self._topics.setdefault(topic, set()).add(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            subs = self._topics.get(sub.topic)
            if not subs:
                return
            subs.discard(sub)
            if not subs:
                self._topics.pop(sub.topic, None)

    def add_relay(self, relay: Callable[[str, Event], None]) -> Callable[[], None]:
        with self._lock:
            self._relays.append(relay)

        def remove():
            with self._lock:
                if relay in self._relays:
                    self._relays.remove(relay)
        return remove

    def subscriber_count(self, topic: str) -> int:
        with self._lock:
            return len(self._topics.get(topic, ()))

    def publish(self, topic: str, event_type: str, payload) -> Event:
        event = Event(event_type, payload)
        with self._lock:
            subs = list(self._topics.get(topic, ()))
            relays = list(self._relays)
        dead = [sub for sub in subs if not sub.offer(event)]
        for sub in dead:
            self.logger.info(f"[fanout-prune] topic={topic} dropped a full or closed subscriber")
            sub.closed = True
            self.unsubscribe(sub)
        for relay in relays:
            try:
                relay(topic, event)
            except Exception:
                self.logger.exception(f"[fanout-relay] topic={topic} type={event_type} relay failed")
        return event


class SocketIORelay:
    """Push every event to the Socket.IO room named after its topic."""

    def __init__(self, socketio, namespace: str = '/ws'):
        self.socketio = socketio
        self.namespace = namespace

    def __call__(self, topic: str, event: Event) -> None:
        self.socketio.emit(event.type, event.to_dict(), to=topic, namespace=self.namespace)
