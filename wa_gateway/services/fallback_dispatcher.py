"""
Fallback dispatcher used while the delivery queue table is missing.

At most once, best effort: one immediate POST per webhook, no persistence and
no retry. Failures are logged and dropped.
"""
from wa_gateway.logging_config import get_logger
from wa_gateway.routes.metrics import DeliveryMetrics, delivery_metrics
from wa_gateway.services.http_delivery import DeliveryOutcome, WebhookHttpClient


logger = get_logger(component="fallback_dispatcher")


class FallbackDispatcher:
    """Direct, non-durable webhook sender."""

    def __init__(self, http_client: WebhookHttpClient, metrics: DeliveryMetrics | None = None):
        self.http_client = http_client
        self.metrics = metrics or delivery_metrics

    async def dispatch(self, account_id: str, webhooks: list, payload: dict) -> list[DeliveryOutcome]:
        """
        Attempt each webhook once, sequentially.

        One webhook failing never stops the others.
        """
        outcomes = []
        for webhook in webhooks:
            try:
                outcome = await self.http_client.deliver(webhook.url, webhook.secret, payload)
            except Exception as e:
                outcome = DeliveryOutcome(success=False, error=str(e) or e.__class__.__name__)

            self.metrics.fallback_attempted(account_id, outcome.success)
            if outcome.success:
                logger.info(
                    "fallback_delivery_succeeded",
                    account_id=account_id,
                    webhook_id=webhook.id,
                    status_code=outcome.status_code,
                )
            else:
                logger.warning(
                    "fallback_delivery_dropped",
                    account_id=account_id,
                    webhook_id=webhook.id,
                    url=webhook.url,
                    error=outcome.error_message,
                )
            outcomes.append(outcome)
        return outcomes
