"""Event ingestor.

Per event: Idle -> Received -> Processing -> Applied | Failed.

Processing means running the shared synchronizer for the ids the event
references. Handlers run only after a successful sync and receive the
post-sync mirror state, never the raw payload. Transient failures are
retried with bounded exponential backoff; an event that exhausts the
budget is recorded in ``sync_failure`` and logged as an error. A handler
that raises leaves the event applied but is recorded the same way, so
``retry_failures()`` replays it. Handlers must therefore be idempotent.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable

import bittensor as bt
from sqlalchemy.exc import OperationalError

from sdmarket.base.errors import DurableSyncError, LedgerConnectionError
from sdmarket.ledger.models import LedgerEvent
from sdmarket.ledger.subscription import EventSubscription
from sdmarket.mirror.store import MirrorStore
from sdmarket.shared.enums import EventName

from .cursor import IngestCursor
from .synchronizer import StateSynchronizer, SyncResult

# Anything else, NotFoundError included, fails the event on the first attempt.
TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    LedgerConnectionError,
    OperationalError,
    OSError,
)

EventHandler = Callable[[LedgerEvent, SyncResult], Awaitable[None]]


class EventState(str, Enum):
    IDLE = "idle"
    RECEIVED = "received"
    PROCESSING = "processing"
    APPLIED = "applied"
    FAILED = "failed"


@dataclass
class IngestOutcome:
    event: LedgerEvent
    state: EventState = EventState.IDLE
    attempts: int = 0
    result: SyncResult | None = None
    error: DurableSyncError | None = None
    handler_errors: list[str] = field(default_factory=list)


class EventIngestor:
    def __init__(
        self,
        synchronizer: StateSynchronizer,
        store: MirrorStore,
        cursor: IngestCursor | None = None,
        max_attempts: int = 5,
        backoff_initial: float = 1.0,
        backoff_max: float = 30.0,
    ):
        self.synchronizer = synchronizer
        self.store = store
        self.cursor = cursor
        self.max_attempts = max(1, max_attempts)
        self.backoff_initial = backoff_initial
        self.backoff_max = backoff_max
        self._handlers: dict[EventName, list[EventHandler]] = {}
        self._running = False
        self.processed = 0
        self.failed = 0

    def on(self, event_name: EventName | str, handler: EventHandler) -> None:
        """Register a handler for post-sync notification."""
        name = EventName(event_name)
        handlers = self._handlers.setdefault(name, [])
        if handler in handlers:
            raise ValueError(f"Handler already registered for {name.value}: {handler!r}")
        handlers.append(handler)
        bt.logging.info({"ingest_handler_registered": {"event": name.value, "handler": repr(handler)}})

    def backoff(self, attempt: int) -> float:
        return min(self.backoff_max, self.backoff_initial * (2 ** (attempt - 1)))

    async def process(self, event: LedgerEvent) -> IngestOutcome:
        outcome = IngestOutcome(event=event, state=EventState.RECEIVED)
        bt.logging.debug({
            "ingest_event": {
                "event": event.name.value,
                "tx_hash": event.tx_hash,
                "log_index": event.log_index,
                "state": outcome.state.value,
            }
        })

        outcome.state = EventState.PROCESSING
        last_error: BaseException | None = None
        while outcome.attempts < self.max_attempts:
            outcome.attempts += 1
            try:
                outcome.result = await self.synchronizer.sync_event(event)
                break
            except TRANSIENT_ERRORS as e:
                last_error = e
                if outcome.attempts >= self.max_attempts:
                    break
                wait = self.backoff(outcome.attempts)
                bt.logging.warning({
                    "ingest_retry": {
                        "event": event.name.value,
                        "tx_hash": event.tx_hash,
                        "attempt": outcome.attempts,
                        "wait": wait,
                        "error": str(e),
                    }
                })
                await asyncio.sleep(wait)
            except Exception as e:
                last_error = e
                break

        if outcome.result is None:
            outcome.state = EventState.FAILED
            outcome.error = DurableSyncError(event.name.value, outcome.attempts, last_error)
            self.failed += 1
            await self._record_failure(event, str(outcome.error.cause), outcome.attempts)
            return outcome

        outcome.state = EventState.APPLIED
        self.processed += 1
        outcome.handler_errors = await self._dispatch(event, outcome.result)
        if outcome.handler_errors:
            await self._record_failure(event, "; ".join(outcome.handler_errors), 1)
        return outcome

    async def _record_failure(self, event: LedgerEvent, error: str, attempts: int) -> None:
        bt.logging.error({
            "durable_sync_failure": {
                "event": event.name.value,
                "tx_hash": event.tx_hash,
                "log_index": event.log_index,
                "block": event.block_number,
                "attempts": attempts,
                "error": error,
            }
        })
        await self.store.record_sync_failure(
            event_name=event.name.value,
            tx_hash=event.tx_hash,
            log_index=event.log_index,
            block_number=event.block_number,
            args=event.model_dump(mode="json")["args"],
            error=error,
            attempts=attempts,
            request_id=event.request_id,
            submission_id=event.submission_id,
        )

    async def _dispatch(self, event: LedgerEvent, result: SyncResult) -> list[str]:
        """Run every handler; one failing does not stop the others."""
        errors: list[str] = []
        for handler in self._handlers.get(event.name, []):
            try:
                await handler(event, result)
            except Exception as e:
                errors.append(f"{handler!r}: {e}")
                bt.logging.warning({
                    "ingest_handler_error": {
                        "event": event.name.value,
                        "tx_hash": event.tx_hash,
                        "handler": repr(handler),
                        "error": str(e),
                    }
                })
        return errors

    async def run(self, subscription: EventSubscription) -> None:
        """Consume the subscription until it closes or ``stop()`` is called.

        Events are processed one at a time in delivery order; the cursor
        advances only past blocks whose events have all been processed.
        """
        self._running = True
        if self.cursor is not None:
            subscription.on_scanned = self.cursor.advance
        bt.logging.info({"event_ingestor": {"status": "starting", "from_block": subscription.next_block}})
        try:
            async for event in subscription:
                await self.process(event)
                if not self._running:
                    break
        finally:
            self._running = False
            await subscription.close()
            bt.logging.info({
                "event_ingestor": {
                    "status": "stopped",
                    "processed": self.processed,
                    "failed": self.failed,
                }
            })

    def stop(self) -> None:
        self._running = False

    async def retry_failures(self) -> int:
        """Re-run recorded failures; returns how many were resolved."""
        resolved = 0
        for failure in await self.store.list_sync_failures():
            event = LedgerEvent(
                name=EventName(failure.event_name),
                args=failure.args,
                tx_hash=failure.tx_hash,
                block_number=failure.block_number,
                log_index=failure.log_index,
            )
            outcome = await self.process(event)
            if outcome.state is EventState.APPLIED and not outcome.handler_errors:
                await self.store.resolve_sync_failure(failure.failure_id)
                resolved += 1
        if resolved:
            bt.logging.info({"sync_failures_resolved": resolved})
        return resolved


__all__ = [
    "TRANSIENT_ERRORS",
    "EventHandler",
    "EventIngestor",
    "EventState",
    "IngestOutcome",
]
