from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Callable
from typing import Any, Final

import websockets
from websockets.exceptions import WebSocketException

from block_feed_race.core.events import ArrivalEvent
from block_feed_race.core.time_utils import now_ms
from block_feed_race.sources.base import BackoffPolicy

logger = logging.getLogger(__name__)

_SUBSCRIBE_REQUESTS: Final[dict[str, dict[str, Any]]] = {
    "block": {
        "jsonrpc": "2.0",
        "id": 1,
        "method": "blockSubscribe",
        "params": [
            "all",
            {
                "commitment": "processed",
                "encoding": "json",
                "transactionDetails": "none",
                "showRewards": False,
                "maxSupportedTransactionVersion": 0,
            },
        ],
    },
    "slot": {"jsonrpc": "2.0", "id": 1, "method": "slotSubscribe"},
}

_NOTIFICATION_METHODS: Final[set[str]] = {"blockNotification", "slotNotification"}


def parse_notification(message: str | bytes, received_ms: int, source_id: str) -> ArrivalEvent | None:
    """Normalize one subscription message; anything that is not a notification yields None."""
    try:
        payload = json.loads(message)
    except ValueError:
        return None
    if not isinstance(payload, dict):
        return None
    method = payload.get("method")
    if not isinstance(method, str) or method not in _NOTIFICATION_METHODS:
        return None

    params = payload.get("params")
    result = params.get("result") if isinstance(params, dict) else None
    if not isinstance(result, dict):
        return None
    # blockNotification wraps the block in result.value; slotNotification is flat.
    value = result.get("value", result)
    if not isinstance(value, dict):
        return None
    slot = value.get("slot")
    if not _is_int(slot) or slot < 0:
        return None

    block = value.get("block")
    block_time = block.get("blockTime") if isinstance(block, dict) else value.get("blockTime")
    claimed = block_time * 1000 if _is_int(block_time) else None
    return ArrivalEvent(
        ordering_key=slot,
        observed_time=received_ms,
        source_id=source_id,
        claimed_production_time=claimed,
    )


def _is_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


class BlockSubscriptionSource:
    """Push-based feed over a JSON-RPC websocket subscription.

    The socket is re-opened with exponential backoff after any transport error.
    Waiting for the next message is bounded by ``idle_timeout_seconds`` so a
    silent connection is noticed and re-established.
    """

    def __init__(
        self,
        url: str,
        source_id: str = "websocket",
        subscription: str = "block",
        idle_timeout_seconds: float = 30.0,
        backoff: BackoffPolicy | None = None,
        clock: Callable[[], int] = now_ms,
        connect: Callable[..., Any] = websockets.connect,
    ) -> None:
        if subscription not in _SUBSCRIBE_REQUESTS:
            supported = ", ".join(sorted(_SUBSCRIBE_REQUESTS))
            raise ValueError(f"Unsupported subscription '{subscription}'. Supported: {supported}")
        self.source_id = source_id
        self._url = url
        self._subscription = subscription
        self._idle_timeout = idle_timeout_seconds
        self._backoff = backoff or BackoffPolicy()
        self._clock = clock
        self._connect = connect

    async def arrivals(self) -> AsyncIterator[ArrivalEvent]:
        attempt = 0
        while True:
            try:
                async with self._connect(self._url, max_size=None) as socket:
                    await socket.send(json.dumps(_SUBSCRIBE_REQUESTS[self._subscription]))
                    logger.info(
                        "subscribed",
                        extra={"source_id": self.source_id, "subscription": self._subscription},
                    )
                    attempt = 0
                    while True:
                        try:
                            message = await asyncio.wait_for(socket.recv(), timeout=self._idle_timeout)
                        except TimeoutError:
                            logger.warning(
                                "no notification within idle timeout, reconnecting",
                                extra={"source_id": self.source_id, "timeout_s": self._idle_timeout},
                            )
                            break
                        event = parse_notification(message, self._clock(), self.source_id)
                        if event is not None:
                            yield event
            except (WebSocketException, OSError) as exc:
                logger.warning(
                    "websocket error",
                    extra={"source_id": self.source_id, "error": str(exc), "attempt": attempt},
                )
            await asyncio.sleep(self._backoff.delay(attempt))
            attempt += 1
