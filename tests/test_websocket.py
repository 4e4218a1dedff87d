import asyncio
import json

import pytest

from block_feed_race.sources.base import BackoffPolicy
from block_feed_race.sources.websocket import BlockSubscriptionSource, parse_notification

BLOCK_NOTIFICATION = {
    "jsonrpc": "2.0",
    "method": "blockNotification",
    "params": {
        "subscription": 7,
        "result": {
            "context": {"slot": 321},
            "value": {"slot": 321, "block": {"blockTime": 1_700_000_000, "blockHeight": 300}, "err": None},
        },
    },
}

SLOT_NOTIFICATION = {
    "jsonrpc": "2.0",
    "method": "slotNotification",
    "params": {"subscription": 3, "result": {"parent": 321, "root": 290, "slot": 322}},
}


def test_parse_block_notification_carries_block_time() -> None:
    event = parse_notification(json.dumps(BLOCK_NOTIFICATION), received_ms=1_700_000_000_380, source_id="ws")

    assert event is not None
    assert event.ordering_key == 321
    assert event.observed_time == 1_700_000_000_380
    assert event.claimed_production_time == 1_700_000_000_000
    assert event.propagation_latency_ms == 380


def test_parse_slot_notification_has_no_claim() -> None:
    event = parse_notification(json.dumps(SLOT_NOTIFICATION), received_ms=5, source_id="ws")

    assert event is not None
    assert event.ordering_key == 322
    assert event.claimed_production_time is None


@pytest.mark.parametrize(
    "message",
    [
        json.dumps({"jsonrpc": "2.0", "result": 7, "id": 1}),
        json.dumps({"jsonrpc": "2.0", "method": "accountNotification", "params": {}}),
        json.dumps({"jsonrpc": "2.0", "method": "slotNotification", "params": {"result": {"slot": "x"}}}),
        json.dumps({"jsonrpc": "2.0", "method": "blockNotification", "params": None}),
        json.dumps({"jsonrpc": "2.0", "method": "blockNotification", "params": {"result": {"value": None}}}),
        json.dumps({"jsonrpc": "2.0", "method": "slotNotification", "params": {"result": {"slot": -1}}}),
        json.dumps({"jsonrpc": "2.0", "method": ["blockNotification"], "params": {}}),
        json.dumps([1, 2, 3]),
        "not json",
    ],
)
def test_non_notifications_are_ignored(message: str) -> None:
    assert parse_notification(message, received_ms=0, source_id="ws") is None


class FakeSocket:
    def __init__(self, messages: list[str]) -> None:
        self.sent: list[dict] = []
        self._messages = list(messages)

    async def __aenter__(self) -> "FakeSocket":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        return None

    async def send(self, message: str) -> None:
        self.sent.append(json.loads(message))

    async def recv(self) -> str:
        if self._messages:
            return self._messages.pop(0)
        await asyncio.sleep(3_600)
        raise AssertionError("unreachable")


@pytest.mark.asyncio
async def test_subscription_source_subscribes_and_yields_events() -> None:
    socket = FakeSocket([json.dumps({"jsonrpc": "2.0", "result": 7, "id": 1}), json.dumps(BLOCK_NOTIFICATION)])
    connected: list[str] = []

    def connect(url: str, **kwargs: object) -> FakeSocket:
        connected.append(url)
        return socket

    source = BlockSubscriptionSource(
        "wss://rpc.example.test",
        source_id="ws",
        backoff=BackoffPolicy(initial_delay=0.0, max_delay=0.0),
        clock=lambda: 1_700_000_000_200,
        connect=connect,
    )
    arrivals = source.arrivals()
    try:
        event = await asyncio.wait_for(anext(arrivals), timeout=2)
    finally:
        await arrivals.aclose()

    assert connected == ["wss://rpc.example.test"]
    assert socket.sent[0]["method"] == "blockSubscribe"
    assert event.ordering_key == 321
    assert event.propagation_latency_ms == 200


@pytest.mark.asyncio
async def test_subscription_source_reconnects_after_error() -> None:
    attempts = 0

    def connect(url: str, **kwargs: object) -> FakeSocket:
        nonlocal attempts
        attempts += 1
        if attempts == 1:
            raise OSError("connection refused")
        return FakeSocket([json.dumps(SLOT_NOTIFICATION)])

    source = BlockSubscriptionSource(
        "wss://rpc.example.test",
        subscription="slot",
        backoff=BackoffPolicy(initial_delay=0.0, max_delay=0.0),
        connect=connect,
    )
    arrivals = source.arrivals()
    try:
        event = await asyncio.wait_for(anext(arrivals), timeout=2)
    finally:
        await arrivals.aclose()

    assert attempts == 2
    assert event.ordering_key == 322


def test_unknown_subscription_is_rejected() -> None:
    with pytest.raises(ValueError):
        BlockSubscriptionSource("wss://rpc.example.test", subscription="logs")


def test_non_dict_block_leaves_claim_empty() -> None:
    message = json.dumps(
        {
            "jsonrpc": "2.0",
            "method": "blockNotification",
            "params": {"result": {"value": {"slot": 400, "block": "pruned", "blockTime": True}}},
        }
    )

    event = parse_notification(message, received_ms=10, source_id="ws")

    assert event is not None
    assert event.ordering_key == 400
    assert event.claimed_production_time is None
