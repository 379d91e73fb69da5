"""
Tests for the outbound webhook HTTP client.
"""
import json

import httpx
import pytest

from wa_gateway.services.http_delivery import (
    DeliveryOutcome,
    WebhookHttpClient,
    generate_webhook_signature,
    is_sendable_header_value,
)


ENVELOPE = {"event": "message", "account_id": "acc-1", "timestamp": "2026-10-01T12:00:00+00:00", "data": {}}


class TestDeliver:
    """Tests for WebhookHttpClient.deliver."""

    @pytest.mark.asyncio
    async def test_posts_json_with_secret_and_signature(self, http_client_factory):
        client, recorder = http_client_factory()

        outcome = await client.deliver("https://hooks.example.com/in", "s3cret", ENVELOPE)

        assert outcome.success is True
        assert outcome.status_code == 200
        request = recorder.requests[0]
        assert request.method == "POST"
        assert request.headers["content-type"] == "application/json"
        assert request.headers["x-webhook-secret"] == "s3cret"
        body = request.content.decode()
        assert json.loads(body) == ENVELOPE
        assert request.headers["x-webhook-signature"] == f"sha256={generate_webhook_signature(body, 's3cret')}"

    @pytest.mark.asyncio
    async def test_no_secret_headers_without_secret(self, http_client_factory):
        client, recorder = http_client_factory()

        await client.deliver("https://hooks.example.com/in", None, ENVELOPE)

        assert "x-webhook-secret" not in recorder.requests[0].headers
        assert "x-webhook-signature" not in recorder.requests[0].headers

    @pytest.mark.asyncio
    async def test_signing_can_be_disabled(self, http_client_factory):
        client, recorder = http_client_factory(sign_payloads=False)

        await client.deliver("https://hooks.example.com/in", "s3cret", ENVELOPE)

        assert recorder.requests[0].headers["x-webhook-secret"] == "s3cret"
        assert "x-webhook-signature" not in recorder.requests[0].headers

    @pytest.mark.asyncio
    async def test_extra_headers_are_sent(self, http_client_factory):
        client, recorder = http_client_factory()

        await client.deliver("https://hooks.example.com/in", None, ENVELOPE, headers={"X-Webhook-Delivery-ID": "rec-1"})

        assert recorder.requests[0].headers["x-webhook-delivery-id"] == "rec-1"

    @pytest.mark.asyncio
    async def test_non_2xx_is_a_failure(self, http_client_factory):
        client, _ = http_client_factory(lambda request: httpx.Response(500, text="boom"))

        outcome = await client.deliver("https://hooks.example.com/in", None, ENVELOPE)

        assert outcome.success is False
        assert outcome.status_code == 500
        assert outcome.error_message == "HTTP 500: boom"

    @pytest.mark.asyncio
    async def test_redirects_are_not_followed(self, http_client_factory):
        client, recorder = http_client_factory(
            lambda request: httpx.Response(302, headers={"Location": "https://elsewhere.example.com"})
        )

        outcome = await client.deliver("https://hooks.example.com/in", None, ENVELOPE)

        assert outcome.success is False
        assert outcome.status_code == 302
        assert len(recorder.requests) == 1

    @pytest.mark.asyncio
    async def test_network_errors_become_outcomes(self, http_client_factory):
        def refuse(request):
            raise httpx.ConnectError("Connection refused", request=request)

        client, _ = http_client_factory(refuse)

        outcome = await client.deliver("https://hooks.example.com/in", None, ENVELOPE)

        assert outcome.success is False
        assert outcome.status_code is None
        assert outcome.error_message == "Connection refused"

    @pytest.mark.asyncio
    async def test_timeouts_become_outcomes(self, http_client_factory):
        def slow(request):
            raise httpx.ReadTimeout("", request=request)

        client, _ = http_client_factory(slow)

        outcome = await client.deliver("https://hooks.example.com/in", None, ENVELOPE)

        assert outcome.success is False
        assert outcome.error == "ReadTimeout"

    @pytest.mark.asyncio
    async def test_unsendable_secret_becomes_outcome(self, http_client_factory):
        client, recorder = http_client_factory()

        outcome = await client.deliver("https://hooks.example.com/in", "s\u00e9cret", ENVELOPE)

        assert outcome.success is False
        assert outcome.status_code is None
        assert outcome.error_message
        assert recorder.requests == []


class TestDeliveryOutcome:
    """Tests for last_error formatting."""

    def test_success_has_no_error_message(self):
        assert DeliveryOutcome(success=True, status_code=204).error_message is None

    def test_status_without_body(self):
        assert DeliveryOutcome(success=False, status_code=404).error_message == "HTTP 404"

    def test_unknown_error(self):
        assert DeliveryOutcome(success=False).error_message == "Unknown delivery error"


def test_default_timeout_from_settings():
    assert WebhookHttpClient().timeout == 10.0


@pytest.mark.parametrize("value,sendable", [
    ("s3cret", True),
    ("sécret", False),
    ("line\r\nX-Injected: 1", False),
])
def test_is_sendable_header_value(value, sendable):
    assert is_sendable_header_value(value) is sendable
