"""
Progress Broadcasting

Per-session event channel. Listeners receive every CrawlUpdate in publish
order; the channel closes after the first terminal (complete/error) event.
"""

import asyncio
from typing import Any, Callable, Dict, List, Optional

from threat_scraper.core.base import CrawlUpdate, UpdateType
from threat_scraper.core.logging import get_logger


Listener = Callable[[CrawlUpdate], Any]

_CLOSED = object()


class Subscription:
    """Async iterator over the updates published after subscribing"""

    def __init__(self, broadcaster: 'ProgressBroadcaster'):
        self._broadcaster = broadcaster
        self._queue: asyncio.Queue = asyncio.Queue()
        self._done = False

    def _put(self, update: Any) -> None:
        self._queue.put_nowait(update)

    def __aiter__(self) -> 'Subscription':
        return self

    async def __anext__(self) -> CrawlUpdate:
        if self._done:
            raise StopAsyncIteration
        update = await self._queue.get()
        if update is _CLOSED:
            self._done = True
            raise StopAsyncIteration
        return update

    def close(self) -> None:
        """Stop receiving updates"""
        self._broadcaster._remove_subscription(self)
        if not self._done:
            self._put(_CLOSED)


class ProgressBroadcaster:
    """
    Fan-out of CrawlUpdates to listeners and subscriptions.

    Listener exceptions are logged and never reach the publisher. There is no
    replay: observers see only what is published after they attach.
    """

    def __init__(self, session_id: str = ""):
        self.session_id = session_id
        self.logger = get_logger()
        self._listeners: List[Listener] = []
        self._subscriptions: List[Subscription] = []
        self._closed = False
        self._terminal: Optional[CrawlUpdate] = None
        self.published = 0

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def terminal_update(self) -> Optional[CrawlUpdate]:
        return self._terminal

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Register a callback; returns a function that removes it"""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def subscribe(self) -> Subscription:
        subscription = Subscription(self)
        if self._closed:
            subscription._put(_CLOSED)
        else:
            self._subscriptions.append(subscription)
        return subscription

    def _remove_subscription(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def publish(self, update_type: UpdateType, payload: Optional[Dict[str, Any]] = None) -> bool:
        """
        Deliver one update to every observer

        Returns:
            False when the channel is already closed and the update was dropped
        """
        if self._closed:
            self.logger.debug(f"Dropped {update_type.value} update on closed channel {self.session_id}")
            return False

        update = CrawlUpdate(type=update_type, payload=dict(payload or {}))
        self.published += 1

        for listener in list(self._listeners):
            try:
                listener(update)
            except Exception as e:
                self.logger.error(f"Progress listener failed on {update_type.value} update: {e}", exc_info=True)

        for subscription in list(self._subscriptions):
            subscription._put(update)

        if update_type.is_terminal:
            self._terminal = update
            self.close()
        return True

    def close(self) -> None:
        """Close the channel and end every subscription"""
        if self._closed:
            return
        self._closed = True
        for subscription in self._subscriptions:
            subscription._put(_CLOSED)
        self._subscriptions.clear()
        self._listeners.clear()
