"""Market service runtime.

Composition root: builds every collaborator from settings, owns their
init/teardown, runs the event ingestor and a periodic maintenance loop
(transaction reconciliation, durable-failure retry).
"""

from __future__ import annotations

import asyncio

import bittensor as bt

from sdmarket.base.config import MarketSettings
from sdmarket.ledger.client import LedgerClient
from sdmarket.ledger.subscription import EventSubscription
from sdmarket.mirror.database import MirrorDatabase
from sdmarket.mirror.store import MirrorStore
from sdmarket.quality.auto_verify import AutoVerificationHandler
from sdmarket.quality.engine import QualityEngine
from sdmarket.shared.enums import EventName
from sdmarket.storage.ipfs import IpfsStore
from sdmarket.storage.s3 import S3ObjectStore
from sdmarket.sync.cursor import IngestCursor
from sdmarket.sync.ingestor import EventIngestor
from sdmarket.sync.orchestrator import TransactionOrchestrator
from sdmarket.sync.synchronizer import StateSynchronizer


class MarketRuntime:
    """Main service loop."""

    def __init__(
        self,
        settings: MarketSettings,
        ledger: LedgerClient | None = None,
        database: MirrorDatabase | None = None,
        content_store: IpfsStore | None = None,
        object_store: S3ObjectStore | None = None,
    ):
        self.settings = settings
        self.ledger = ledger or LedgerClient(settings.ledger)
        self.database = database or MirrorDatabase(settings.mirror.db_url, echo=settings.mirror.echo)
        self.content_store = content_store or IpfsStore(settings.ipfs)
        self.object_store = object_store
        if self.object_store is None and settings.s3.bucket:
            self.object_store = S3ObjectStore(settings.s3)

        self.store: MirrorStore | None = None
        self.synchronizer: StateSynchronizer | None = None
        self.orchestrator: TransactionOrchestrator | None = None
        self.engine: QualityEngine | None = None
        self.ingestor: EventIngestor | None = None
        self.cursor: IngestCursor | None = None

        self._subscription: EventSubscription | None = None
        self._stop_event = asyncio.Event()
        self._running = False
        self._initialized = False

    async def initialize(self) -> None:
        await self.database.initialize()
        await self.ledger.initialize()
        await self.content_store.initialize()

        ingest = self.settings.ingest
        self.store = MirrorStore(self.database)
        self.synchronizer = StateSynchronizer(self.ledger, self.store)
        self.orchestrator = TransactionOrchestrator(
            self.ledger,
            self.synchronizer,
            self.store,
            confirmations=self.settings.ledger.confirmations,
            timeout=self.settings.ledger.confirmation_timeout,
        )
        self.engine = QualityEngine(
            self.store,
            content_store=self.content_store,
            threshold=self.settings.quality.threshold,
            verifier_address=self.settings.quality.verifier_address,
        )
        self.cursor = IngestCursor(ingest.state_dir, start_block=ingest.start_block)
        self.ingestor = EventIngestor(
            self.synchronizer,
            self.store,
            cursor=self.cursor,
            max_attempts=ingest.max_attempts,
            backoff_initial=ingest.backoff_initial,
            backoff_max=ingest.backoff_max,
        )

        if self.settings.quality.auto_verify:
            if self.ledger.has_signer:
                self.ingestor.on(
                    EventName.SUBMISSION_SUBMITTED,
                    AutoVerificationHandler(self.engine, self.orchestrator, self.store),
                )
            else:
                bt.logging.warning({"auto_verify": "disabled, no signer configured"})

        self._initialized = True
        bt.logging.info({
            "market_runtime": {
                "status": "initialized",
                "signer": self.ledger.signer_address,
                "ipfs": self.content_store.available,
                "s3": self.object_store is not None,
                "auto_verify": self.settings.quality.auto_verify,
                "resume_block": self.cursor.resume_block,
            }
        })

    async def run(self) -> None:
        """Ingest events and run maintenance until stopped."""
        if not self._initialized:
            await self.initialize()

        self._running = True
        self._stop_event.clear()
        ingest = self.settings.ingest
        self._subscription = EventSubscription(
            self.ledger,
            from_block=self.cursor.resume_block,
            poll_interval=ingest.poll_interval,
            batch_size=ingest.batch_size,
            confirmations=self.settings.ledger.confirmations,
        )
        ingest_task = asyncio.create_task(self.ingestor.run(self._subscription), name="event-ingestor")

        bt.logging.info({
            "market_runtime": {
                "status": "starting",
                "reconcile_interval": ingest.reconcile_interval,
                "from_block": self._subscription.next_block,
            }
        })

        consecutive_errors = 0
        max_errors = 10

        while self._running:
            if ingest_task.done():
                bt.logging.error({"market_runtime": "ingestor exited, stopping"})
                break
            try:
                await self._cycle()
                consecutive_errors = 0
            except asyncio.CancelledError:
                break
            except Exception as e:
                consecutive_errors += 1
                bt.logging.error({"market_cycle_error": str(e), "consecutive": consecutive_errors})
                if consecutive_errors >= max_errors:
                    bt.logging.error({"market_runtime": "too_many_errors, stopping"})
                    break
                await self._sleep(min(30, 5 * consecutive_errors))
                continue

            await self._sleep(ingest.reconcile_interval)

        self._running = False
        self.ingestor.stop()
        await self._subscription.close()
        try:
            await ingest_task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            bt.logging.error({"market_runtime": {"ingestor_error": str(e)}})
        bt.logging.info({"market_runtime": "stopped"})

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _cycle(self) -> None:
        """One maintenance pass."""
        reconciled = await self.orchestrator.reconcile_pending()
        resolved = await self.ingestor.retry_failures()
        if reconciled or resolved:
            bt.logging.info({"market_cycle": {"reconciled": len(reconciled), "failures_resolved": resolved}})

    def stop(self) -> None:
        """Signal the runtime to stop."""
        self._running = False
        self._stop_event.set()

    async def close(self) -> None:
        await self.content_store.close()
        await self.ledger.close()
        await self.database.close()
        self._initialized = False


__all__ = ["MarketRuntime"]
