"""
Webhook delivery API routes.

Queue inspection for operators, plus per-account test and purge endpoints.
"""
from fastapi import APIRouter, Depends, HTTPException, Query, status

from wa_gateway.dependencies.auth import TokenPayload, require_account_access, require_admin
from wa_gateway.logging_config import get_logger
from wa_gateway.models.delivery import DeliveryStatus
from wa_gateway.services.delivery_store import DeliveryQueueUnavailableError
from wa_gateway.services.message_events import build_test_event
from wa_gateway.services.webhook_delivery_service import (
    WebhookDeliveryService,
    build_envelope,
    webhook_delivery_service,
)
from wa_gateway.services.webhook_service import WebhookService, webhook_service


router = APIRouter(tags=["webhooks"])

logger = get_logger(component="webhook_routes")


def get_delivery_service() -> WebhookDeliveryService:
    return webhook_delivery_service


def get_webhook_service() -> WebhookService:
    return webhook_service


@router.get("/api/webhook-queue/stats", response_model=dict)
async def queue_stats(
    _: TokenPayload = Depends(require_admin),
    service: WebhookDeliveryService = Depends(get_delivery_service)
):
    """Delivery record counts by status, and worker state."""
    return await service.stats()


@router.get("/api/webhook-queue/deliveries", response_model=dict)
async def list_deliveries(
    status_filter: DeliveryStatus | None = Query(None, alias="status"),
    account_id: str | None = None,
    limit: int = Query(50, ge=1, le=500),
    _: TokenPayload = Depends(require_admin),
    service: WebhookDeliveryService = Depends(get_delivery_service)
):
    """
    List delivery records, newest first.

    Mostly used to inspect dead letters.
    """
    if not service.queue_available:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Webhook delivery queue is not available"
        )

    try:
        records = await service.store.list_records(status=status_filter, account_id=account_id, limit=limit)
    except DeliveryQueueUnavailableError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Webhook delivery queue is not available"
        )

    return {
        "deliveries": [record.to_dict() for record in records],
        "count": len(records)
    }


@router.post("/api/accounts/{account_id}/webhooks/{webhook_id}/test", response_model=dict)
async def test_webhook(
    account_id: str,
    webhook_id: str,
    _: TokenPayload = Depends(require_account_access),
    service: WebhookDeliveryService = Depends(get_delivery_service),
    webhooks: WebhookService = Depends(get_webhook_service)
):
    """
    Send a test event to one webhook, immediately and without queueing.
    """
    webhook = await webhooks.get_webhook(account_id, webhook_id)
    if webhook is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Webhook not found"
        )

    envelope = build_envelope(account_id, build_test_event(account_id, webhook_id))
    outcome = await service.http_client.deliver(webhook.url, webhook.secret, envelope)

    logger.info(
        "webhook_test_sent",
        account_id=account_id,
        webhook_id=webhook_id,
        success=outcome.success,
        status_code=outcome.status_code,
    )

    return {
        "success": outcome.success,
        "status_code": outcome.status_code,
        "error": None if outcome.success else outcome.error_message
    }


@router.delete("/api/accounts/{account_id}/deliveries", response_model=dict)
async def purge_account_deliveries(
    account_id: str,
    _: TokenPayload = Depends(require_account_access),
    service: WebhookDeliveryService = Depends(get_delivery_service),
    webhooks: WebhookService = Depends(get_webhook_service)
):
    """
    Drop pending and failed deliveries of an account.

    Used when an account is deleted so its queued events are not sent.
    """
    await webhooks.invalidate(account_id)

    if not service.queue_available:
        return {"purged": 0}

    try:
        purged = await service.store.purge_account(account_id)
    except DeliveryQueueUnavailableError:
        return {"purged": 0}

    logger.info("webhook_deliveries_purged", account_id=account_id, purged=purged)
    return {"purged": purged}
