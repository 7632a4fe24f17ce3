"""
Push Channel

Best-effort fan-out of "new completed consequence" events to connected
client sessions of the same owner.

Push is advisory only. Events may be dropped (full buffer, no subscriber,
process restart) and carry no ordering guarantee; the catch-up read on
(re)connect is the source of truth. Subscribers only ever learn a record
id and must still win the display claim before showing anything.

Subscriptions are explicit resources with a start/stop lifecycle owned by
one client session. The channel itself is owned by the application
(app.state.push_channel), not by module state.
"""
import logging
import queue
import threading
from typing import Dict, List, Optional, Set

logger = logging.getLogger(__name__)

DEFAULT_BUFFER_SIZE = 100


class Subscription:
    """One session's view of an owner's push events."""

    def __init__(self, channel: "PushChannel", owner_id: str, buffer_size: int = DEFAULT_BUFFER_SIZE):
        self.channel = channel
        self.owner_id = owner_id
        self._events: "queue.Queue[str]" = queue.Queue(maxsize=buffer_size)
        self.active = False

    def start(self) -> "Subscription":
        if not self.active:
            self.channel._attach(self)
            self.active = True
        return self

    def stop(self) -> None:
        if self.active:
            self.channel._detach(self)
            self.active = False

    def offer(self, record_id: str) -> bool:
        """Called by the channel. Drops the event if the buffer is full."""
        try:
            self._events.put_nowait(record_id)
            return True
        except queue.Full:
            logger.debug(f"Push buffer full for owner {self.owner_id}, dropping {record_id}")
            return False

    def get(self, timeout: Optional[float] = None) -> Optional[str]:
        """Block up to `timeout` seconds for the next event."""
        try:
            return self._events.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> List[str]:
        """Take every buffered event without blocking."""
        events = []
        while True:
            try:
                events.append(self._events.get_nowait())
            except queue.Empty:
                return events

    def __enter__(self) -> "Subscription":
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()


class PushChannel:
    """In-process publish/subscribe keyed by owner."""

    def __init__(self, buffer_size: int = DEFAULT_BUFFER_SIZE):
        self.buffer_size = buffer_size
        self._subscribers: Dict[str, Set[Subscription]] = {}
        self._lock = threading.Lock()

    def subscribe(self, owner_id: str) -> Subscription:
        """Create a subscription. It receives nothing until start()."""
        return Subscription(self, owner_id, self.buffer_size)

    def publish(self, owner_id: str, record_id: str) -> int:
        """Offer an event to every live subscription of the owner. Returns deliveries."""
        with self._lock:
            targets = list(self._subscribers.get(owner_id, ()))
        delivered = sum(1 for sub in targets if sub.offer(record_id))
        logger.debug(f"Pushed {record_id} to {delivered}/{len(targets)} session(s) of {owner_id}")
        return delivered

    def subscriber_count(self, owner_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(owner_id, ()))

    def _attach(self, sub: Subscription) -> None:
        with self._lock:
            self._subscribers.setdefault(sub.owner_id, set()).add(sub)

    def _detach(self, sub: Subscription) -> None:
        with self._lock:
            subs = self._subscribers.get(sub.owner_id)
            if subs is not None:
                subs.discard(sub)
                if not subs:
                    del self._subscribers[sub.owner_id]
