"""Live fan-out of job, log and key updates to connected subscribers."""

import asyncio
import json
import logging
from typing import Any, Dict, Optional, Set
from pydantic import BaseModel

logger = logging.getLogger(__name__)


class SubscriberClosed(ConnectionError):
    """Raised when writing to a subscription that has been closed."""


class Subscription:
    """An in-process subscriber connection buffering frames for one consumer.

    Frames are ``{"event": name, "data": json_text}`` dicts, the shape
    ``sse_starlette.EventSourceResponse`` streams out. A consumer that falls
    more than ``maxsize`` frames behind is dropped by the notifier.
    """

    def __init__(self, maxsize: int = 256):
        self._queue: "asyncio.Queue[Optional[Dict[str, str]]]" = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    def write(self, event: str, data: str) -> None:
        if self.closed:
            raise SubscriberClosed("subscription closed")
        self._queue.put_nowait({"event": event, "data": data})

    def _frame(self, frame: Optional[Dict[str, str]]) -> Dict[str, str]:
        if frame is None:
            raise SubscriberClosed("subscription closed")
        return frame

    async def get(self, timeout: Optional[float] = None) -> Dict[str, str]:
        """Wait for the next frame.

        Raises ``asyncio.TimeoutError`` on timeout and ``SubscriberClosed``
        once the subscription is closed and its buffer drained.
        """
        if timeout is None:
            return self._frame(await self._queue.get())
        return self._frame(await asyncio.wait_for(self._queue.get(), timeout=timeout))

    def get_nowait(self) -> Dict[str, str]:
        return self._frame(self._queue.get_nowait())

    def pending(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        """Close the subscription and wake a consumer blocked in ``get``."""
        if self.closed:
            return
        self.closed = True
        if not self._queue.full():
            # a full buffer means nobody is waiting on it
            self._queue.put_nowait(None)


class Notifier:
    """Best-effort, at-most-once broadcaster.

    Nothing is stored: a subscriber only sees events sent while it is
    connected. Any connection whose write fails is removed.
    """

    def __init__(self, buffer_size: int = 256):
        self.buffer_size = buffer_size
        self._clients: Set[Any] = set()

    def add_client(self, client: Any) -> None:
        """Register a connection (anything with ``write(event, data)``)."""
        self._clients.add(client)
        client.write("connected", json.dumps({"message": "connected"}))
        logger.debug("Subscriber connected (%d total)", len(self._clients))

    def remove_client(self, client: Any) -> None:
        self._clients.discard(client)
        logger.debug("Subscriber disconnected (%d total)", len(self._clients))

    def subscribe(self) -> Subscription:
        subscription = Subscription(maxsize=self.buffer_size)
        self.add_client(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscription.close()
        self.remove_client(subscription)

    def broadcast(self, event: str, payload: Any) -> None:
        """Send an event to every connected subscriber."""
        if not self._clients:
            return
        if isinstance(payload, BaseModel):
            payload = payload.model_dump(mode="json")
        data = json.dumps(payload, ensure_ascii=False, default=str)

        for client in list(self._clients):
            try:
                client.write(event, data)
            except Exception as e:
                logger.warning("Dropping subscriber after failed write: %r", e)
                self._clients.discard(client)
                close = getattr(client, "close", None)
                if close is not None:
                    close()

    @property
    def client_count(self) -> int:
        return len(self._clients)
