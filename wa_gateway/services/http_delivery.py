"""
HTTP Delivery Client

Performs exactly one outbound webhook POST and classifies the result.
Retries are the worker's job, never this module's.
"""
import json
import hmac
import hashlib
import time
from dataclasses import dataclass

import httpx

from wa_gateway.config import settings


SECRET_HEADER = "X-Webhook-Secret"
SIGNATURE_HEADER = "X-Webhook-Signature"


def is_sendable_header_value(value: str) -> bool:
    """Header values go on the wire as ASCII without line breaks."""
    return value.isascii() and "\r" not in value and "\n" not in value


def generate_webhook_signature(payload: str, secret: str) -> str:
    """Generate HMAC-SHA256 signature for webhook payload."""
    return hmac.new(
        secret.encode(),
        payload.encode(),
        hashlib.sha256
    ).hexdigest()


@dataclass
class DeliveryOutcome:
    """Result of a single delivery attempt."""
    success: bool
    status_code: int | None = None
    error: str | None = None
    duration_ms: float = 0.0

    @property
    def error_message(self) -> str | None:
        """Diagnostic stored in last_error; None on success."""
        if self.success:
            return None
        if self.status_code is not None:
            if self.error:
                return f"HTTP {self.status_code}: {self.error}"
            return f"HTTP {self.status_code}"
        return self.error or "Unknown delivery error"


class WebhookHttpClient:
    """Stateless webhook sender."""

    def __init__(
        self,
        timeout: float | None = None,
        sign_payloads: bool | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.timeout = settings.WEBHOOK_TIMEOUT_SECONDS if timeout is None else timeout
        self.sign_payloads = settings.WEBHOOK_SIGN_PAYLOADS if sign_payloads is None else sign_payloads
        # Injected in tests (httpx.MockTransport)
        self.transport = transport

    def build_headers(self, body: str, secret: str | None, extra: dict | None = None) -> dict:
        headers = {"Content-Type": "application/json"}
        if extra:
            headers.update(extra)
        if secret:
            # Existing consumers authenticate with the raw secret
            headers[SECRET_HEADER] = secret
            if self.sign_payloads:
                headers[SIGNATURE_HEADER] = f"sha256={generate_webhook_signature(body, secret)}"
        return headers

    async def deliver(
        self,
        url: str,
        secret: str | None,
        payload: dict,
        headers: dict | None = None,
    ) -> DeliveryOutcome:
        """
        POST payload to url once.

        Any HTTP response counts as received; only 2xx is a success.
        Network-level errors and unsendable headers are returned as failed
        outcomes, not raised.
        """
        body = json.dumps(payload)
        request_headers = self.build_headers(body, secret, headers)
        start = time.monotonic()

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout,
                follow_redirects=False,
                transport=self.transport,
            ) as client:
                response = await client.post(url, content=body, headers=request_headers)
        except (httpx.HTTPError, httpx.InvalidURL, UnicodeEncodeError) as e:
            return DeliveryOutcome(
                success=False,
                error=str(e) or e.__class__.__name__,
                duration_ms=round((time.monotonic() - start) * 1000, 2),
            )

        duration_ms = round((time.monotonic() - start) * 1000, 2)
        if 200 <= response.status_code < 300:
            return DeliveryOutcome(success=True, status_code=response.status_code, duration_ms=duration_ms)

        return DeliveryOutcome(
            success=False,
            status_code=response.status_code,
            error=response.text[:200] or None,
            duration_ms=duration_ms,
        )
