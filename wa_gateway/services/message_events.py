"""
Message events forwarded to account webhooks.

The WhatsApp session handlers build one of these payloads and hand it to
queue_webhook_deliveries; the delivery service wraps it in the wire envelope.
"""
from datetime import datetime, timezone

from wa_gateway.logging_config import get_logger
from wa_gateway.sentry_config import capture_exception


logger = get_logger(component="message_events")

ACK_NAMES = {1: "pending", 2: "sent", 3: "delivered", 4: "read"}

# Only delivered and read receipts are forwarded
MIN_FORWARDED_ACK = 3


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _is_active(webhook) -> bool:
    if isinstance(webhook, dict):
        return webhook.get("is_active", True)
    return getattr(webhook, "is_active", True)


def build_message_event(
    account_id: str,
    message_id: str,
    sender: str,
    chat_id: str,
    text: str | None = None,
    message_type: str = "text",
    timestamp: int | None = None,
) -> dict:
    """Payload for an incoming message."""
    return {
        "event": "message",
        "account_id": account_id,
        "direction": "incoming",
        "message_id": message_id,
        "sender": sender,
        "recipient": chat_id,
        "chat_id": chat_id,
        "message": text or "",
        "type": message_type,
        "is_group": chat_id.endswith("@g.us"),
        "timestamp": timestamp,
        "status": "success",
        "created_at": _now_iso(),
    }


def should_forward_ack(ack: int) -> bool:
    return ack >= MIN_FORWARDED_ACK


def build_ack_event(account_id: str, message_id: str, recipient: str, ack: int) -> dict | None:
    """
    Payload for a message status update.

    Returns:
        The event, or None for acks below delivered
    """
    if not should_forward_ack(ack):
        return None
    return {
        "event": "message_ack",
        "account_id": account_id,
        "message_id": message_id,
        "recipient": recipient,
        "ack": ack,
        "ack_name": ACK_NAMES.get(ack, "unknown"),
        "timestamp": int(datetime.now(timezone.utc).timestamp() * 1000),
        "created_at": _now_iso(),
    }


def build_test_event(account_id: str, webhook_id: str) -> dict:
    """Payload sent by the webhook test endpoint."""
    return {
        "event": "test",
        "account_id": account_id,
        "webhook_id": webhook_id,
        "message": "This is a test webhook from WhatsApp Gateway",
        "created_at": _now_iso(),
    }


async def queue_webhook_deliveries(account_id: str, event: dict, service=None, webhooks=None) -> None:
    """
    Fan an event out to the active webhooks of an account.

    Never raises: a webhook lookup failure is logged and the event dropped.
    """
    if service is None:
        from wa_gateway.services.webhook_delivery_service import webhook_delivery_service
        service = webhook_delivery_service

    try:
        if webhooks is None:
            from wa_gateway.services.webhook_service import webhook_service
            webhooks = await webhook_service.get_active_webhooks(account_id)

        active = [webhook for webhook in webhooks or [] if _is_active(webhook)]
        if not active:
            return

        await service.queue_deliveries(account_id, active, event)
    except Exception as e:
        logger.error(
            "webhook_fan_out_failed",
            account_id=account_id,
            event_type=event.get("event"),
            error=str(e),
        )
        capture_exception(e)
