"""In-process publish/subscribe hub for conversion progress.

One ``StatusChannel`` is created at startup and handed to whatever issues
jobs (the orchestrator) and whatever serves the ``/status`` stream. Every
subscriber gets its own bounded queue; publishing never waits on a
subscriber, so a stalled client can only lose its own events.
"""

import asyncio
import itertools
import logging
import threading

DEFAULT_QUEUE_SIZE = 100


def status_event(message, *, progress=None, duration=None, **extra):
    event = {"message": message}
    if progress is not None:
        event["progress"] = progress
    if duration is not None:
        event["duration"] = duration
    event.update({key: value for key, value in extra.items() if value is not None})
    return event


class Subscription:
    def __init__(self, channel, subscription_id, maxsize):
        self.channel = channel
        self.id = subscription_id
        self.queue = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    @property
    def active(self):
        return self.channel.is_subscribed(self)

    async def get(self, timeout=None):
        if timeout is None:
            return await self.queue.get()
        return await asyncio.wait_for(self.queue.get(), timeout=timeout)

    def get_nowait(self):
        return self.queue.get_nowait()

    def _offer(self, event):
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logging.debug("Status subscriber %s queue full; dropping event: %s", self.id, event)

    def close(self):
        self.channel.unsubscribe(self)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


class StatusChannel:
    def __init__(self, queue_size=DEFAULT_QUEUE_SIZE):
        self.queue_size = queue_size
        self._subscribers = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self._loop = None

    @property
    def subscriber_count(self):
        with self._lock:
            return len(self._subscribers)

    def bind_loop(self, loop):
        self._loop = loop

    def subscribe(self):
        if self._loop is None:
            try:
                self._loop = asyncio.get_running_loop()
            except RuntimeError:
                pass
        with self._lock:
            subscription = Subscription(self, next(self._ids), self.queue_size)
            self._subscribers[subscription.id] = subscription
        logging.info("Status stream subscribed (id=%s, active=%s)", subscription.id, self.subscriber_count)
        return subscription

    def unsubscribe(self, subscription):
        with self._lock:
            removed = self._subscribers.pop(subscription.id, None)
        if removed is not None:
            logging.info(
                "Status stream unsubscribed (id=%s, active=%s)", subscription.id, self.subscriber_count
            )
        return removed is not None

    def is_subscribed(self, subscription):
        with self._lock:
            return self._subscribers.get(subscription.id) is subscription

    def publish(self, event):
        # Dict preserves insertion order, i.e. registration order.
        with self._lock:
            targets = list(self._subscribers.values())
        for subscription in targets:
            subscription._offer(event)
        return len(targets)

    def publish_threadsafe(self, event):
        loop = self._loop
        if loop is None or loop.is_closed():
            logging.debug("Status event dropped; no event loop bound: %s", event)
            return
        loop.call_soon_threadsafe(self.publish, event)
