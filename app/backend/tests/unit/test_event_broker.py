"""Tests for per-job event fan-out."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any
from unittest.mock import Mock

sys.path.append(str(Path(__file__).resolve().parents[4]))

from app.backend.src.schemas.events import JobEvent
from app.backend.src.services.event_broker import (
    EventBroker,
    InMemoryEventTransport,
    RedisEventTransport,
    channel_name,
)


def test_channel_name() -> None:
    assert channel_name("job_1") == "job:job_1"


def test_channel_is_reference_counted(broker: EventBroker, transport: InMemoryEventTransport) -> None:
    first = broker.subscribe("job_1", lambda message: None)
    second = broker.subscribe("job_1", lambda message: None)
    assert transport.is_open("job:job_1")
    assert broker.subscriber_count("job_1") == 2

    broker.unsubscribe(first)
    assert transport.is_open("job:job_1")

    broker.unsubscribe(second)
    assert not transport.is_open("job:job_1")
    assert broker.subscriber_count("job_1") == 0


def test_events_fan_out_to_every_handler(broker: EventBroker) -> None:
    left: list[dict[str, Any]] = []
    right: list[dict[str, Any]] = []
    broker.subscribe("job_1", left.append)
    broker.subscribe("job_1", right.append)
    broker.subscribe("job_2", lambda message: None)

    broker.publish("job_1", JobEvent.status("job_1", "processing"))

    expected = {"type": "status", "jobId": "job_1", "data": {"status": "processing"}}
    assert left == [expected]
    assert right == [expected]


def test_no_replay_after_channel_recreated(broker: EventBroker, transport: InMemoryEventTransport) -> None:
    subscription = broker.subscribe("job_1", lambda message: None)
    broker.unsubscribe(subscription)

    broker.publish("job_1", JobEvent.status("job_1", "processing"))

    late: list[dict[str, Any]] = []
    broker.subscribe("job_1", late.append)
    assert transport.is_open("job:job_1")
    assert late == []

    broker.publish("job_1", JobEvent.status("job_1", "extracting"))
    assert [message["data"]["status"] for message in late] == ["extracting"]


def test_failing_handler_does_not_starve_others(broker: EventBroker) -> None:
    received: list[dict[str, Any]] = []

    def broken(message: dict[str, Any]) -> None:
        raise RuntimeError("socket closed")

    broker.subscribe("job_1", broken)
    broker.subscribe("job_1", received.append)

    broker.publish("job_1", JobEvent.status("job_1", "processing"))

    assert len(received) == 1


def test_unsubscribe_unknown_id_is_noop(broker: EventBroker) -> None:
    broker.unsubscribe("sub_missing")


def test_redis_transport_subscribes_and_starts_listener() -> None:
    client = Mock()
    pubsub = client.pubsub.return_value
    transport = RedisEventTransport(client)
    broker = EventBroker(transport)

    subscription = broker.subscribe("job_1", lambda message: None)

    client.pubsub.assert_called_once_with(ignore_subscribe_messages=True)
    assert "job:job_1" in pubsub.subscribe.call_args.kwargs
    pubsub.run_in_thread.assert_called_once()

    broker.publish("job_1", JobEvent.status("job_1", "processing"))
    channel, payload = client.publish.call_args.args
    assert channel == "job:job_1"
    assert '"jobId":"job_1"' in payload

    broker.unsubscribe(subscription)
    pubsub.unsubscribe.assert_called_once_with("job:job_1")

    broker.close()
    pubsub.run_in_thread.return_value.stop.assert_called_once()
