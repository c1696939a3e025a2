"""Per-job publish/subscribe fan-out.

Channels are named ``job:{job_id}``. The broker keeps a reference-counted
registry of handlers per channel: the first subscriber opens the channel on
the transport and the last unsubscribe closes it again. Delivery is
at-most-once with no replay.
"""

from __future__ import annotations

import itertools
import json
import threading
from collections.abc import Callable
from typing import Any, Protocol

import structlog
from redis import Redis
from redis.client import PubSub, PubSubWorkerThread

from app.backend.src.schemas.events import JobEvent

LOGGER = structlog.get_logger(__name__)

EventHandler = Callable[[dict[str, Any]], None]
MessageCallback = Callable[[str, str], None]


def channel_name(job_id: str) -> str:
    return f"job:{job_id}"


class EventTransport(Protocol):
    def publish(self, channel: str, payload: str) -> None:
        ...

    def open(self, channel: str, callback: MessageCallback) -> None:
        ...

    def close(self, channel: str) -> None:
        ...

    def shutdown(self) -> None:
        ...


class InMemoryEventTransport:
    """Synchronous in-process transport; publishers and subscribers share a process."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._channels: dict[str, MessageCallback] = {}

    def publish(self, channel: str, payload: str) -> None:
        with self._lock:
            callback = self._channels.get(channel)
        if callback is not None:
            callback(channel, payload)

    def open(self, channel: str, callback: MessageCallback) -> None:
        with self._lock:
            self._channels[channel] = callback

    def close(self, channel: str) -> None:
        with self._lock:
            self._channels.pop(channel, None)

    def is_open(self, channel: str) -> bool:
        with self._lock:
            return channel in self._channels

    def shutdown(self) -> None:
        with self._lock:
            self._channels.clear()


class RedisEventTransport:
    """Redis pub/sub; workers publish, API processes listen on a background thread."""

    def __init__(self, publisher: Redis, subscriber: Redis | None = None, *, poll_interval: float = 0.1) -> None:
        self.publisher = publisher
        self.subscriber = subscriber or publisher
        self.poll_interval = poll_interval
        self._lock = threading.Lock()
        self._pubsub: PubSub | None = None
        self._thread: PubSubWorkerThread | None = None

    def publish(self, channel: str, payload: str) -> None:
        self.publisher.publish(channel, payload)

    def open(self, channel: str, callback: MessageCallback) -> None:
        def _on_message(message: dict[str, Any]) -> None:
            raw_channel = message.get("channel")
            raw_data = message.get("data")
            if isinstance(raw_channel, bytes):
                raw_channel = raw_channel.decode("utf-8")
            if isinstance(raw_data, bytes):
                raw_data = raw_data.decode("utf-8")
            callback(raw_channel, raw_data)

        with self._lock:
            if self._pubsub is None:
                self._pubsub = self.subscriber.pubsub(ignore_subscribe_messages=True)
            self._pubsub.subscribe(**{channel: _on_message})
            if self._thread is None:
                self._thread = self._pubsub.run_in_thread(
                    sleep_time=self.poll_interval, daemon=True
                )

    def close(self, channel: str) -> None:
        with self._lock:
            if self._pubsub is not None:
                self._pubsub.unsubscribe(channel)

    def shutdown(self) -> None:
        with self._lock:
            if self._thread is not None:
                self._thread.stop()
                self._thread = None
            if self._pubsub is not None:
                self._pubsub.close()
                self._pubsub = None


class EventBroker:
    """Owns the subscriber registry for one process."""

    def __init__(self, transport: EventTransport) -> None:
        self.transport = transport
        self._lock = threading.Lock()
        self._handlers: dict[str, dict[str, EventHandler]] = {}
        self._subscriptions: dict[str, str] = {}
        self._ids = itertools.count(1)

    def publish(self, job_id: str, event: JobEvent) -> None:
        self.transport.publish(channel_name(job_id), event.to_json())

    def subscribe(self, job_id: str, handler: EventHandler) -> str:
        channel = channel_name(job_id)
        with self._lock:
            subscription_id = f"sub_{next(self._ids)}"
            handlers = self._handlers.get(channel)
            if handlers is None:
                handlers = {}
                self._handlers[channel] = handlers
                self.transport.open(channel, self._deliver)
                LOGGER.debug("event_channel_opened", channel=channel)
            handlers[subscription_id] = handler
            self._subscriptions[subscription_id] = channel
        return subscription_id

    def unsubscribe(self, subscription_id: str) -> None:
        with self._lock:
            channel = self._subscriptions.pop(subscription_id, None)
            if channel is None:
                return
            handlers = self._handlers.get(channel, {})
            handlers.pop(subscription_id, None)
            if not handlers:
                self._handlers.pop(channel, None)
                self.transport.close(channel)
                LOGGER.debug("event_channel_closed", channel=channel)

    def subscriber_count(self, job_id: str) -> int:
        with self._lock:
            return len(self._handlers.get(channel_name(job_id), {}))

    def _deliver(self, channel: str, payload: str) -> None:
        try:
            message = json.loads(payload)
        except (TypeError, ValueError):
            LOGGER.warning("job_event_invalid_payload", channel=channel)
            return

        with self._lock:
            handlers = list(self._handlers.get(channel, {}).values())

        for handler in handlers:
            try:
                handler(message)
            except Exception as exc:  # one broken connection must not starve the others
                LOGGER.warning("job_event_handler_failed", channel=channel, error=str(exc))

    def close(self) -> None:
        with self._lock:
            self._handlers.clear()
            self._subscriptions.clear()
        self.transport.shutdown()


__all__ = [
    "EventBroker",
    "EventHandler",
    "EventTransport",
    "InMemoryEventTransport",
    "RedisEventTransport",
    "channel_name",
]
