"""Cancellable ledger event stream.

A transport task polls the node for new logs and feeds a queue; the
consumer iterates the subscription independently, so a slow handler
never stalls log fetching.
"""

from __future__ import annotations

import asyncio
from typing import AsyncIterator, Callable

import bittensor as bt
from web3.exceptions import Web3Exception

from sdmarket.base.errors import LedgerConnectionError

from .client import LedgerClient
from .models import LedgerEvent

_CLOSED = object()


class _ScanMark:
    __slots__ = ("block",)

    def __init__(self, block: int):
        self.block = block


class EventSubscription:
    """Lazy, unbounded sequence of decoded ledger events.

    ``from_block`` is inclusive. ``on_scanned`` is called from the consumer
    side with the last scanned block once every event up to it has been
    consumed, which is what a persistent cursor should record.
    """

    def __init__(
        self,
        client: LedgerClient,
        from_block: int,
        poll_interval: float = 5.0,
        batch_size: int = 1000,
        confirmations: int = 1,
        max_queue: int = 10_000,
    ):
        self.client = client
        self.next_block = from_block
        self.poll_interval = poll_interval
        self.batch_size = batch_size
        self.confirmations = confirmations
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue)
        self._task: asyncio.Task | None = None
        self._closed = False
        self.on_scanned: Callable[[int], None] | None = None

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._transport(), name="ledger-event-transport")

    async def close(self) -> None:
        """Stop delivery. Queued events are dropped; events already handed
        to the consumer are unaffected and will be redelivered from the
        cursor on restart if they never completed.
        """
        if self._closed:
            return
        self._closed = True
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        # Unblock a consumer waiting on an empty queue.
        try:
            self._queue.put_nowait(_CLOSED)
        except asyncio.QueueFull:
            pass
        bt.logging.info({"event_subscription": {"status": "closed", "next_block": self.next_block}})

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self) -> AsyncIterator[LedgerEvent]:
        self.start()
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[LedgerEvent]:
        while True:
            if self._closed:
                return
            item = await self._queue.get()
            if item is _CLOSED:
                return
            if isinstance(item, _ScanMark):
                if self.on_scanned is not None:
                    self.on_scanned(item.block)
                continue
            yield item

    async def _transport(self) -> None:
        failures = 0
        while not self._closed:
            try:
                # Scan only blocks that already have ``confirmations`` confirmations.
                head = await self.client.block_number() - max(0, self.confirmations - 1)
                failures = 0
                if head >= self.next_block:
                    to_block = min(head, self.next_block + self.batch_size - 1)
                    events = await self.client.get_events(self.next_block, to_block)
                    for event in events:
                        await self._queue.put(event)
                    bt.logging.debug({
                        "event_subscription": {
                            "from": self.next_block,
                            "to": to_block,
                            "events": len(events),
                        }
                    })
                    await self._queue.put(_ScanMark(to_block))
                    self.next_block = to_block + 1
                    if to_block < head:
                        continue
            except asyncio.CancelledError:
                raise
            except (LedgerConnectionError, OSError, Web3Exception) as e:
                failures += 1
                wait = min(30.0, self.poll_interval * failures)
                bt.logging.warning({
                    "event_subscription_error": {"error": str(e), "consecutive": failures, "wait": wait}
                })
                await asyncio.sleep(wait)
                continue
            await asyncio.sleep(self.poll_interval)


__all__ = ["EventSubscription"]
