"""
Webhook Delivery Service

The single entry point the message-handling code calls. Each event is fanned
out to one durable delivery record per active webhook; when the queue table
is missing the service degrades to one direct, non-durable attempt per webhook.

Nothing in here ever raises into message ingestion.
"""
from datetime import datetime, timezone

from wa_gateway.logging_config import get_logger
from wa_gateway.routes.metrics import DeliveryMetrics, delivery_metrics
from wa_gateway.sentry_config import capture_exception, capture_message
from wa_gateway.services.delivery_store import DeliveryQueueUnavailableError, DeliveryStore
from wa_gateway.services.delivery_worker import DeliveryWorker
from wa_gateway.services.fallback_dispatcher import FallbackDispatcher
from wa_gateway.services.http_delivery import WebhookHttpClient
from wa_gateway.services.webhook_service import WebhookTarget


logger = get_logger(component="webhook_delivery_service")


def build_envelope(account_id: str, event_payload: dict) -> dict:
    """
    Wrap an event in the outbound wire format.

    Built once per event so every webhook receives the same body.
    """
    return {
        "event": event_payload.get("event", "message"),
        "account_id": account_id,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "data": event_payload,
    }


class WebhookDeliveryService:
    """Queue facade: durable enqueue with a best-effort fallback."""

    def __init__(
        self,
        store: DeliveryStore | None = None,
        http_client: WebhookHttpClient | None = None,
        worker: DeliveryWorker | None = None,
        fallback: FallbackDispatcher | None = None,
        metrics: DeliveryMetrics | None = None,
    ):
        self.store = store or DeliveryStore()
        self.http_client = http_client or WebhookHttpClient()
        self.metrics = metrics or delivery_metrics
        self.worker = worker or DeliveryWorker(self.store, self.http_client, metrics=self.metrics)
        self.fallback = fallback or FallbackDispatcher(self.http_client, metrics=self.metrics)
        # Per-process: once the table is known missing, stop hitting it
        self._queue_unavailable = False

    @property
    def queue_available(self) -> bool:
        return not self._queue_unavailable

    def _mark_unavailable(self):
        if not self._queue_unavailable:
            logger.warning(
                "webhook_queue_unavailable",
                detail="webhook_delivery_queue table missing, using direct delivery",
            )
            capture_message("webhook_delivery_queue table missing, falling back to direct delivery", level="warning")
        self._queue_unavailable = True

    async def queue_deliveries(self, account_id: str, active_webhooks: list, event_payload: dict) -> None:
        """
        Fan an event out to every active webhook of an account.

        Args:
            account_id: WhatsApp account the event belongs to
            active_webhooks: Webhook rows, WebhookTarget objects or dicts
            event_payload: Event body (message, message_ack, test, ...)
        """
        try:
            await self._queue_deliveries(account_id, active_webhooks, event_payload)
        except Exception as e:
            logger.error("webhook_queue_deliveries_failed", account_id=account_id, error=str(e), exc_info=True)
            capture_exception(e)

    async def _queue_deliveries(self, account_id: str, active_webhooks: list, event_payload: dict):
        webhooks = []
        for webhook in active_webhooks or []:
            try:
                webhooks.append(WebhookTarget.model_validate(webhook))
            except Exception as e:
                logger.error("webhook_config_invalid", account_id=account_id, error=str(e))
        if not webhooks:
            return

        envelope = build_envelope(account_id, event_payload)
        direct = []
        enqueued = 0

        for webhook in webhooks:
            if self._queue_unavailable:
                direct.append(webhook)
                continue
            try:
                await self.store.enqueue(account_id, webhook, envelope, max_retries=webhook.max_retries)
                enqueued += 1
                self.metrics.delivery_enqueued(account_id)
            except DeliveryQueueUnavailableError:
                self._mark_unavailable()
                direct.append(webhook)
            except Exception as e:
                logger.error(
                    "webhook_enqueue_failed",
                    account_id=account_id,
                    webhook_id=webhook.id,
                    error=str(e),
                )

        if enqueued:
            self.worker.notify()
            logger.debug("webhook_deliveries_queued", account_id=account_id, count=enqueued)

        if direct:
            await self.fallback.dispatch(account_id, direct, envelope)

    async def start(self):
        """Recover crashed deliveries and start the worker loop."""
        try:
            recovered = await self.worker.recover()
            logger.info("webhook_delivery_recovery_complete", recovered=recovered)
        except DeliveryQueueUnavailableError:
            self._mark_unavailable()
            return
        except Exception as e:
            # Database down at boot: the loop keeps retrying on its own
            logger.error("webhook_delivery_recovery_failed", error=str(e), exc_info=True)
            capture_exception(e)

        self.worker.start()

    async def stop(self):
        await self.worker.stop()

    async def stats(self) -> dict:
        """Queue counts by status, for the administration endpoints."""
        if self._queue_unavailable:
            return {"available": False, "stats": {}, "worker": self.worker.status()}
        try:
            stats = await self.store.queue_stats()
        except DeliveryQueueUnavailableError:
            self._mark_unavailable()
            return {"available": False, "stats": {}, "worker": self.worker.status()}

        self.metrics.update_queue_depth(stats)
        return {"available": True, "stats": stats, "worker": self.worker.status()}


# Singleton instance
webhook_delivery_service = WebhookDeliveryService()
