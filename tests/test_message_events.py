"""
Tests for message event payloads and the ingestion-side fan-out helper.
"""
from unittest.mock import AsyncMock, Mock

import pytest

from wa_gateway.services.message_events import (
    build_ack_event,
    build_message_event,
    build_test_event,
    queue_webhook_deliveries,
    should_forward_ack,
)


class TestBuilders:

    def test_message_event(self):
        event = build_message_event(
            "acc-1",
            message_id="ABC",
            sender="919800000001@s.whatsapp.net",
            chat_id="919800000001@s.whatsapp.net",
            text="hello",
            timestamp=1760000000,
        )

        assert event["event"] == "message"
        assert event["direction"] == "incoming"
        assert event["message"] == "hello"
        assert event["type"] == "text"
        assert event["is_group"] is False

    def test_group_message(self):
        event = build_message_event("acc-1", "ABC", "9198@s.whatsapp.net", "12345@g.us", message_type="image")

        assert event["is_group"] is True
        assert event["message"] == ""
        assert event["type"] == "image"

    @pytest.mark.parametrize("ack,forwarded", [(1, False), (2, False), (3, True), (4, True)])
    def test_only_delivered_and_read_are_forwarded(self, ack, forwarded):
        assert should_forward_ack(ack) is forwarded
        assert (build_ack_event("acc-1", "ABC", "9198@s.whatsapp.net", ack) is not None) is forwarded

    def test_ack_event(self):
        event = build_ack_event("acc-1", "ABC", "9198@s.whatsapp.net", 4)

        assert event["event"] == "message_ack"
        assert event["ack_name"] == "read"

    def test_test_event(self):
        event = build_test_event("acc-1", "wh-1")
        assert event["event"] == "test"
        assert event["webhook_id"] == "wh-1"


class TestQueueWebhookDeliveries:

    @pytest.mark.asyncio
    async def test_forwards_active_webhooks_only(self):
        service = Mock()
        service.queue_deliveries = AsyncMock()
        webhooks = [
            {"id": "wh-1", "url": "https://one.example.com", "is_active": True},
            {"id": "wh-2", "url": "https://two.example.com", "is_active": False},
        ]
        event = build_test_event("acc-1", "wh-1")

        await queue_webhook_deliveries("acc-1", event, service=service, webhooks=webhooks)

        service.queue_deliveries.assert_awaited_once_with("acc-1", [webhooks[0]], event)

    @pytest.mark.asyncio
    async def test_no_active_webhooks(self):
        service = Mock()
        service.queue_deliveries = AsyncMock()

        await queue_webhook_deliveries("acc-1", {"event": "message"}, service=service, webhooks=[])

        service.queue_deliveries.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_never_raises(self):
        service = Mock()
        service.queue_deliveries = AsyncMock(side_effect=RuntimeError("boom"))

        await queue_webhook_deliveries(
            "acc-1",
            {"event": "message"},
            service=service,
            webhooks=[{"id": "wh-1", "url": "https://one.example.com"}],
        )

        service.queue_deliveries.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_looks_up_webhooks(self, monkeypatch):
        from wa_gateway.services import webhook_service as webhook_service_module

        lookup = AsyncMock(return_value=[{"id": "wh-1", "url": "https://one.example.com"}])
        monkeypatch.setattr(webhook_service_module.webhook_service, "get_active_webhooks", lookup)
        service = Mock()
        service.queue_deliveries = AsyncMock()

        await queue_webhook_deliveries("acc-1", {"event": "message"}, service=service)

        lookup.assert_awaited_once_with("acc-1")
        service.queue_deliveries.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_lookup_failure_is_reported_not_raised(self, monkeypatch):
        from wa_gateway.services import message_events
        from wa_gateway.services import webhook_service as webhook_service_module

        lookup = AsyncMock(side_effect=ConnectionError("db down"))
        monkeypatch.setattr(webhook_service_module.webhook_service, "get_active_webhooks", lookup)
        captured = Mock()
        monkeypatch.setattr(message_events, "capture_exception", captured)
        service = Mock()
        service.queue_deliveries = AsyncMock()

        await queue_webhook_deliveries("acc-1", {"event": "message_ack"}, service=service)

        service.queue_deliveries.assert_not_awaited()
        captured.assert_called_once()
        assert isinstance(captured.call_args.args[0], ConnectionError)
