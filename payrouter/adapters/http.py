import hashlib
import hmac
import json
import logging
from typing import Optional

import httpx

from payrouter.domain.models import TriggerResult, WebhookRecord, utcnow

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"


def sign_payload(secret: str, body: bytes) -> str:
    """HMAC-SHA256 of the request body, hex encoded."""
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


class HttpxWebhookNotifier:
    """Delivers webhook retry notifications over HTTP with connection pooling."""

    def __init__(self, timeout: float = 5.0, client: Optional[httpx.AsyncClient] = None):
        self.client = client or httpx.AsyncClient(
            timeout=timeout,
            limits=httpx.Limits(max_connections=20, max_keepalive_connections=10)
        )

    def build_payload(self, webhook: WebhookRecord) -> dict:
        return {
            "webhookId": webhook.id,
            "webhookType": webhook.webhook_type.value,
            "eventType": webhook.event_type,
            "providerWebhookId": webhook.provider_webhook_id,
            "attempt": webhook.retry_count + 1,
            "sentAt": utcnow().isoformat(),
        }

    async def deliver(self, webhook: WebhookRecord) -> TriggerResult:
        """Send one notification. Transport problems become a failed result, never an exception."""
        body = json.dumps(self.build_payload(webhook)).encode()
        headers = {"Content-Type": "application/json"}
        if webhook.secret:
            headers[SIGNATURE_HEADER] = sign_payload(webhook.secret, body)

        try:
            logger.debug(f"Delivering webhook {webhook.id} to {webhook.url}")
            response = await self.client.post(webhook.url, content=body, headers=headers)
        except httpx.TimeoutException as e:
            logger.warning(f"Webhook {webhook.id} delivery timed out: {e}")
            return TriggerResult(success=False, failure_reason="timeout")
        except httpx.RequestError as e:
            logger.warning(f"Webhook {webhook.id} delivery request error: {e}")
            return TriggerResult(success=False, failure_reason=f"request error: {e}")

        if response.is_success:
            logger.debug(f"Webhook {webhook.id} delivered with status {response.status_code}")
            return TriggerResult(success=True)

        logger.warning(f"Webhook {webhook.id} delivery rejected with HTTP {response.status_code}")
        return TriggerResult(success=False, failure_reason=f"HTTP {response.status_code}")

    async def close(self):
        """Close the HTTP client."""
        await self.client.aclose()
