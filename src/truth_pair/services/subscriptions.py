"""Publish/subscribe hub that fans session events out to real-time clients."""

import asyncio
import logging
from collections.abc import AsyncIterator, Iterable
from dataclasses import dataclass, field
from itertools import count

from truth_pair.domain.events import EventKind

logger = logging.getLogger(__name__)

_subscription_ids = count(1)


@dataclass(frozen=True)
class Frame:
    """A message pushed to subscribers."""

    event: EventKind
    data: dict[str, object]

    def to_dict(self) -> dict[str, object]:
        return {"event": self.event.value, "data": self.data}


@dataclass(eq=False)
class Subscription:
    """Handle for one subscriber attached to one session id."""

    session_id: str
    id: int = field(default_factory=lambda: next(_subscription_ids))
    _queue: asyncio.Queue[Frame | None] = field(default_factory=asyncio.Queue)
    closed: bool = False

    def push(self, frame: Frame) -> None:
        if not self.closed:
            self._queue.put_nowait(frame)

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._queue.put_nowait(None)

    def pending(self) -> list[Frame]:
        """Drain frames that are already queued without waiting."""
        frames: list[Frame] = []
        while not self._queue.empty():
            frame = self._queue.get_nowait()
            if frame is not None:
                frames.append(frame)
        return frames

    async def frames(self) -> AsyncIterator[Frame]:
        """Yield frames in publish order until the stream is closed."""
        while True:
            frame = await self._queue.get()
            if frame is None:
                return
            yield frame


@dataclass
class SubscriptionHub:
    """Maps session ids to their attached subscriptions."""

    _subscriptions: dict[str, dict[int, Subscription]] = field(default_factory=dict)

    def subscribe(
        self, session_id: str, snapshot: Iterable[Frame] = ()
    ) -> Subscription:
        """Attach a subscriber, queueing the snapshot ahead of live frames."""
        subscription = Subscription(session_id=session_id)
        for frame in snapshot:
            subscription.push(frame)
        self._subscriptions.setdefault(session_id, {})[subscription.id] = subscription
        logger.debug("Subscriber %s attached to %s", subscription.id, session_id)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        """Detach a subscriber; the session itself is unaffected."""
        subscribers = self._subscriptions.get(subscription.session_id)
        if subscribers is not None:
            subscribers.pop(subscription.id, None)
            if not subscribers:
                del self._subscriptions[subscription.session_id]
        subscription.close()

    def publish(self, session_id: str, frame: Frame) -> int:
        """Deliver a frame to every subscriber of a session."""
        subscribers = self._subscriptions.get(session_id, {})
        for subscription in list(subscribers.values()):
            subscription.push(frame)
        return len(subscribers)

    def close_session(self, session_id: str) -> None:
        """End every subscription stream attached to a finished session."""
        for subscription in self._subscriptions.pop(session_id, {}).values():
            subscription.close()

    def subscriber_count(self, session_id: str) -> int:
        return len(self._subscriptions.get(session_id, {}))
