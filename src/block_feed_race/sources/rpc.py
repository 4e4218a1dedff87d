from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from typing import Any

import httpx

from block_feed_race.core.events import ArrivalEvent
from block_feed_race.core.time_utils import now_ms
from block_feed_race.sources.base import BackoffPolicy

logger = logging.getLogger(__name__)

_RETRYABLE_STATUS = {429, 500, 502, 503, 504}


class RPCError(RuntimeError):
    """JSON-RPC level error returned inside a 200 response."""


class SolanaRPCClient:
    def __init__(
        self,
        url: str,
        timeout_seconds: float = 10.0,
        retries: int = 2,
        backoff: BackoffPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url = url
        self._retries = max(retries, 0)
        self._backoff = backoff or BackoffPolicy(initial_delay=0.2, max_delay=2.0)
        self._client = httpx.AsyncClient(timeout=timeout_seconds, transport=transport)
        self._request_id = 0

    @property
    def url(self) -> str:
        return self._url

    async def close(self) -> None:
        await self._client.aclose()

    async def get_slot(self, commitment: str = "processed") -> int:
        result = await self._call("getSlot", [{"commitment": commitment}])
        if not isinstance(result, int) or isinstance(result, bool) or result < 0:
            raise RPCError(f"getSlot returned {result!r}")
        return result

    async def get_block_time(self, slot: int) -> int | None:
        """Block production time in epoch seconds, or None while it is unknown."""
        try:
            result = await self._call("getBlockTime", [slot])
        except RPCError:
            # Very recent slots routinely answer with "block not available".
            return None
        if result is None:
            return None
        if not isinstance(result, int) or isinstance(result, bool):
            raise RPCError(f"getBlockTime returned {result!r}")
        return result

    async def _call(self, method: str, params: list[Any]) -> Any:
        self._request_id += 1
        payload = {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params}
        response = await self._post(payload)
        body = response.json()
        if not isinstance(body, dict):
            raise RPCError(f"{method} returned a non-object body: {body!r}")
        if body.get("error") is not None:
            raise RPCError(f"{method} error: {body['error']}")
        return body.get("result")

    async def _post(self, payload: dict[str, Any]) -> httpx.Response:
        attempt = 0
        while True:
            try:
                response = await self._client.post(self._url, json=payload)
            except httpx.TransportError as exc:
                if attempt >= self._retries:
                    raise
                delay = self._backoff.delay(attempt)
                logger.warning(
                    "rpc transport error, retrying",
                    extra={"method": payload["method"], "error": str(exc), "delay_s": delay},
                )
            else:
                if response.status_code not in _RETRYABLE_STATUS or attempt >= self._retries:
                    response.raise_for_status()
                    return response
                retry_after = _retry_after(response)
                delay = self._backoff.delay(attempt) if retry_after is None else retry_after
                logger.warning(
                    "rpc request throttled, retrying",
                    extra={"method": payload["method"], "status": response.status_code, "delay_s": delay},
                )
            attempt += 1
            await asyncio.sleep(delay)


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


class RPCPollingSource:
    """Poll-based feed: asks for the latest slot every ``poll_interval_ms``.

    The event is stamped when the getSlot answer arrives, which is the moment
    this process learns of the block; the block time is fetched afterwards and
    only supplies the production claim. Intermediate slots skipped between two
    polls are not reported.
    """

    def __init__(
        self,
        client: SolanaRPCClient,
        source_id: str = "rpc",
        poll_interval_ms: int = 500,
        commitment: str = "processed",
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.source_id = source_id
        self._client = client
        self._poll_interval = poll_interval_ms / 1000
        self._commitment = commitment
        self._clock = clock
        self._last_slot: int | None = None

    async def arrivals(self) -> AsyncIterator[ArrivalEvent]:
        while True:
            event = await self.poll_once()
            if event is not None:
                yield event
            await asyncio.sleep(self._poll_interval)

    async def poll_once(self) -> ArrivalEvent | None:
        try:
            slot = await self._client.get_slot(self._commitment)
            observed = self._clock()
        except (httpx.HTTPError, RPCError, ValueError) as exc:
            logger.warning("slot poll failed", extra={"source_id": self.source_id, "error": str(exc)})
            return None

        if self._last_slot is None:
            # The first answer only sets the baseline; that block was produced before we started.
            self._last_slot = slot
            return None
        if slot <= self._last_slot:
            return None
        self._last_slot = slot

        try:
            block_time = await self._client.get_block_time(slot)
        except (httpx.HTTPError, RPCError, ValueError) as exc:
            logger.warning(
                "block time lookup failed",
                extra={"source_id": self.source_id, "slot": slot, "error": str(exc)},
            )
            block_time = None
        return ArrivalEvent(
            ordering_key=slot,
            observed_time=observed,
            source_id=self.source_id,
            claimed_production_time=block_time * 1000 if block_time is not None else None,
        )
