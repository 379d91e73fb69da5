"""
Delivery Worker Loop

Polls the delivery queue on a fixed interval, claims due records and pushes
them through the HTTP client. One worker per process; several processes may
share the table because every record is claimed with a compare-and-swap.
"""
import asyncio
from datetime import datetime

from wa_gateway.config import settings
from wa_gateway.logging_config import get_logger
from wa_gateway.models.base import utcnow
from wa_gateway.models.delivery import DeliveryRecord, DeliveryStatus
from wa_gateway.routes.metrics import DeliveryMetrics, delivery_metrics
from wa_gateway.sentry_config import capture_exception
from wa_gateway.services.delivery_store import DeliveryStore
from wa_gateway.services.http_delivery import DeliveryOutcome, WebhookHttpClient
from wa_gateway.services.retry_policy import RetryPolicy


logger = get_logger(component="delivery_worker")


class DeliveryWorker:
    """Background task that drains the webhook delivery queue."""

    def __init__(
        self,
        store: DeliveryStore,
        http_client: WebhookHttpClient,
        policy: RetryPolicy | None = None,
        metrics: DeliveryMetrics | None = None,
        interval_seconds: float | None = None,
        batch_size: int | None = None,
        concurrency: int | None = None,
        stuck_after_minutes: int | None = None,
    ):
        self.store = store
        self.http_client = http_client
        self.policy = policy or RetryPolicy()
        self.metrics = metrics or delivery_metrics
        self.interval_seconds = interval_seconds or settings.WEBHOOK_WORKER_INTERVAL_SECONDS
        self.batch_size = batch_size or settings.WEBHOOK_WORKER_BATCH_SIZE
        self.concurrency = max(1, concurrency or settings.WEBHOOK_WORKER_CONCURRENCY)
        self.stuck_after_minutes = stuck_after_minutes or settings.WEBHOOK_STUCK_AFTER_MINUTES

        self._task: asyncio.Task | None = None
        # Created in start() so they bind to the running loop
        self._stop_event: asyncio.Event | None = None
        self._wake_event: asyncio.Event | None = None
        self.last_tick_at: datetime | None = None
        self.processed = 0
        self.delivered = 0
        self.failed = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def recover(self) -> int:
        """Reset records abandoned in PROCESSING by a previous process."""
        return await self.store.reset_stuck(self.stuck_after_minutes)

    def start(self):
        """Start the polling task. Call recover() first."""
        if self.running:
            logger.info("delivery_worker_already_running")
            return

        self._stop_event = asyncio.Event()
        self._wake_event = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name="webhook-delivery-worker")
        logger.info(
            "delivery_worker_started",
            interval_seconds=self.interval_seconds,
            batch_size=self.batch_size,
            concurrency=self.concurrency,
        )

    def notify(self):
        """Wake the loop early, e.g. right after an enqueue."""
        if self._wake_event is not None:
            self._wake_event.set()

    async def stop(self, timeout: float | None = None):
        """
        Stop scheduling ticks.

        An in-flight tick gets until timeout to finish its HTTP calls; after
        that the task is cancelled and reset_stuck recovers the records on the
        next start.
        """
        if self._task is None:
            return

        logger.info("delivery_worker_stopping")
        self._stop_event.set()
        self._wake_event.set()

        if timeout is None:
            timeout = settings.WEBHOOK_TIMEOUT_SECONDS + 5
        done, _ = await asyncio.wait({self._task}, timeout=timeout)
        if not done:
            logger.warning("delivery_worker_stop_timeout", timeout_seconds=timeout)
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

        self._task = None
        logger.info("delivery_worker_stopped")

    async def _run(self):
        while not self._stop_event.is_set():
            try:
                await self.tick()
            except Exception as e:
                logger.error("delivery_worker_tick_failed", error=str(e), exc_info=True)
                capture_exception(e)

            if self._stop_event.is_set():
                break
            await self._sleep()

    async def _sleep(self):
        self._wake_event.clear()
        try:
            await asyncio.wait_for(self._wake_event.wait(), timeout=self.interval_seconds)
        except asyncio.TimeoutError:
            pass

    async def tick(self) -> int:
        """
        Process one batch of due records.

        Returns:
            Number of records this worker claimed and attempted
        """
        self.last_tick_at = utcnow()
        records = await self.store.due_records(self.batch_size)
        if not records:
            return 0

        semaphore = asyncio.Semaphore(self.concurrency)

        async def _bounded(record: DeliveryRecord):
            async with semaphore:
                return await self._process_safely(record)

        results = await asyncio.gather(*(_bounded(record) for record in records))
        attempted = sum(1 for status in results if status is not None)
        logger.debug("delivery_worker_tick", due=len(records), attempted=attempted)
        return attempted

    async def _process_safely(self, record: DeliveryRecord) -> DeliveryStatus | None:
        try:
            return await self.process_record(record)
        except Exception as e:
            logger.error(
                "delivery_record_processing_failed",
                record_id=record.id,
                error=str(e),
                exc_info=True,
            )
            capture_exception(e)
            return None

    async def process_record(self, record: DeliveryRecord) -> DeliveryStatus | None:
        """
        Claim, attempt and settle one record.

        Returns:
            Resulting status, or None if the claim was lost
        """
        claimed = await self.store.claim(record)
        if claimed is None:
            return None

        log = logger.bind(
            record_id=claimed.id,
            account_id=claimed.account_id,
            webhook_id=claimed.webhook_id,
            attempt=claimed.attempt_count,
            max_retries=claimed.max_retries,
        )

        try:
            outcome = await self.http_client.deliver(
                claimed.webhook_url,
                claimed.webhook_secret,
                claimed.payload,
                headers={"X-Webhook-Delivery-ID": claimed.id},
            )
        except Exception as e:
            outcome = DeliveryOutcome(success=False, error=str(e) or e.__class__.__name__)

        self.processed += 1
        self.metrics.delivery_attempted(claimed.account_id, outcome.success, outcome.duration_ms)

        if outcome.success:
            await self.store.complete(claimed.id, outcome.status_code)
            self.delivered += 1
            log.info("webhook_delivery_succeeded", status_code=outcome.status_code, duration_ms=outcome.duration_ms)
            return DeliveryStatus.SUCCESS

        decision = self.policy.decide(claimed.attempt_count, claimed.max_retries, outcome)
        await self.store.fail(
            claimed,
            outcome.error_message,
            decision.next_attempt_at,
            is_dead_letter=decision.dead_letter,
            response_status=outcome.status_code,
        )
        self.failed += 1

        if decision.dead_letter:
            self.metrics.delivery_dead_lettered(claimed.account_id)
            log.error("webhook_delivery_dead_lettered", status_code=outcome.status_code, error=outcome.error_message)
            return DeliveryStatus.DEAD_LETTER

        log.warning(
            "webhook_delivery_failed",
            status_code=outcome.status_code,
            error=outcome.error_message,
            retry_in_seconds=decision.delay_seconds,
        )
        return DeliveryStatus.FAILED

    def status(self) -> dict:
        """Get worker status."""
        return {
            "status": "running" if self.running else "stopped",
            "last_tick_at": self.last_tick_at.isoformat() if self.last_tick_at else None,
            "processed": self.processed,
            "delivered": self.delivered,
            "failed": self.failed,
        }
