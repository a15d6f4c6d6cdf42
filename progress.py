import asyncio
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


PROGRESS_EVENT = "scraper:progress"
COMPLETE_EVENT = "scraper:complete"
ERROR_EVENT = "scraper:error"

TERMINAL_EVENTS = (COMPLETE_EVENT, ERROR_EVENT)


@dataclass(frozen=True)
class ProgressMessage:
    event: str
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.event in TERMINAL_EVENTS


class Subscription:
    """Bounded mailbox bound to the event loop that consumes it.

    Messages that arrive while the mailbox is full are dropped and counted
    in `dropped`; the publisher never waits on a subscriber.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop, maxsize: int) -> None:
        self._loop = loop
        self._queue: "asyncio.Queue[ProgressMessage]" = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def _offer(self, message: ProgressMessage) -> None:
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            self.dropped += 1

    def deliver(self, message: ProgressMessage) -> None:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._offer(message)
            return
        try:
            self._loop.call_soon_threadsafe(self._offer, message)
        except RuntimeError:
            # consumer loop already closed
            self.dropped += 1

    async def get(self) -> ProgressMessage:
        return await self._queue.get()

    def get_nowait(self) -> ProgressMessage:
        return self._queue.get_nowait()

    def pending(self) -> int:
        return self._queue.qsize()


class ProgressChannel:
    """Fan-out of run progress to any number of subscribers.

    Subscribers may attach or detach from other threads while a run is
    publishing. There is no backlog: a new subscriber only sees messages
    published after it joined.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: List[Subscription] = []

    def subscribe(
        self,
        maxsize: int = 256,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> Subscription:
        if loop is None:
            loop = asyncio.get_running_loop()
        sub = Subscription(loop, maxsize)
        with self._lock:
            self._subscribers.append(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            if sub in self._subscribers:
                self._subscribers.remove(sub)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def publish(self, event: str, data: Optional[Dict[str, Any]] = None) -> None:
        message = ProgressMessage(event=event, data=dict(data or {}))
        with self._lock:
            targets = list(self._subscribers)
        for sub in targets:
            sub.deliver(message)
