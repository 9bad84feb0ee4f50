from datetime import datetime, timedelta
import logging
from typing import Callable, Optional

from payrouter.domain.models import (
    DeliveryState,
    TriggerResult,
    WebhookCreate,
    WebhookFilters,
    WebhookRecord,
    WebhookStats,
    WebhookUpdate,
    as_utc,
    utcnow,
)
from payrouter.domain.protocols import WebhookStore

logger = logging.getLogger(__name__)

DEFAULT_RETRY_COOLDOWN = timedelta(minutes=5)


# Custom exceptions
class WebhookNotFoundError(Exception):
    """Raised when a webhook record does not exist."""
    pass


class DeliveryTracker:
    """
    Tracks webhook delivery attempts and decides which webhooks are due a retry.

    The tracker only records state. Re-sending is left to whoever polls
    ``due_for_retry``.
    """

    def __init__(
        self,
        store: WebhookStore,
        retry_cooldown: timedelta = DEFAULT_RETRY_COOLDOWN,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.retry_cooldown = retry_cooldown
        self.clock = clock

    async def create_webhook(self, data: WebhookCreate) -> WebhookRecord:
        webhook = WebhookRecord(**data.model_dump(), created_at=self.clock())
        saved = await self.store.save_webhook(webhook)
        logger.info(f"Created {saved.webhook_type.value} webhook {saved.id} for provider {saved.config_id}")
        return saved

    async def get_webhook(self, webhook_id: str) -> WebhookRecord:
        webhook = await self.store.get_webhook(webhook_id)
        if webhook is None:
            raise WebhookNotFoundError(f"Webhook {webhook_id} not found")
        return webhook

    async def find_by_provider_webhook_id(self, provider_webhook_id: str) -> Optional[WebhookRecord]:
        return await self.store.find_by_provider_webhook_id(provider_webhook_id)

    async def list_webhooks(
        self, filters: Optional[WebhookFilters] = None, limit: int = 20, offset: int = 0
    ) -> list[WebhookRecord]:
        return await self.store.list_webhooks(filters or WebhookFilters(), limit, offset)

    async def update_webhook(self, webhook_id: str, update: WebhookUpdate) -> WebhookRecord:
        """Apply an admin update. Delivery counters are left to the store's atomic update."""
        changes = update.changes()
        saved = await self.store.update_webhook(webhook_id, changes, self.clock())
        if saved is None:
            raise WebhookNotFoundError(f"Webhook {webhook_id} not found")
        logger.info(f"Updated webhook {webhook_id}: {sorted(changes)}")
        return saved

    async def delete_webhook(self, webhook_id: str) -> None:
        deleted = await self.store.delete_webhook(webhook_id)
        if not deleted:
            raise WebhookNotFoundError(f"Webhook {webhook_id} not found")
        logger.info(f"Deleted webhook {webhook_id}")

    async def record_trigger(
        self, webhook_id: str, success: bool, failure_reason: Optional[str] = None
    ) -> WebhookRecord:
        """Record one delivery attempt. A success forgives all earlier failures."""
        result = TriggerResult(success=success, failure_reason=None if success else failure_reason)
        webhook = await self.store.record_trigger(webhook_id, result, self.clock())
        if webhook is None:
            raise WebhookNotFoundError(f"Webhook {webhook_id} not found")

        if success:
            logger.debug(f"Webhook {webhook_id} delivered successfully")
        elif webhook.state is DeliveryState.EXHAUSTED:
            logger.warning(
                f"Webhook {webhook_id} exhausted {webhook.retry_count}/{webhook.max_retries} retries: {failure_reason}"
            )
        else:
            logger.info(
                f"Webhook {webhook_id} delivery failed ({webhook.retry_count}/{webhook.max_retries}): {failure_reason}"
            )
        return webhook

    async def reset_retries(self, webhook_id: str) -> WebhookRecord:
        webhook = await self.store.reset_retries(webhook_id)
        if webhook is None:
            raise WebhookNotFoundError(f"Webhook {webhook_id} not found")
        logger.info(f"Reset retries for webhook {webhook_id}")
        return webhook

    async def due_for_retry(self, now: Optional[datetime] = None) -> list[WebhookRecord]:
        """Active webhooks in the retrying state whose last attempt is past the cool-down."""
        cutoff = as_utc(now or self.clock()) - self.retry_cooldown
        webhooks = await self.store.list_webhooks(WebhookFilters(is_active=True), None, 0)
        due = [
            webhook for webhook in webhooks
            if webhook.needs_retry() and webhook.last_triggered is not None and webhook.last_triggered < cutoff
        ]
        return sorted(due, key=lambda webhook: webhook.last_failure)

    async def webhook_stats(self, config_id: Optional[str] = None) -> WebhookStats:
        webhooks = await self.store.list_webhooks(WebhookFilters(config_id=config_id), None, 0)
        return WebhookStats(
            total_webhooks=len(webhooks),
            active_webhooks=sum(1 for w in webhooks if w.is_active),
            successful_webhooks=sum(1 for w in webhooks if w.last_success is not None),
            failed_webhooks=sum(1 for w in webhooks if w.last_failure is not None),
            max_retries_reached=sum(1 for w in webhooks if w.retry_count >= w.max_retries),
        )
