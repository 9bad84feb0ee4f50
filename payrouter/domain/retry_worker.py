import logging

from payrouter.domain.analytics import AnalyticsAggregator
from payrouter.domain.delivery import DeliveryTracker
from payrouter.domain.protocols import StorageError, WebhookNotifier

logger = logging.getLogger(__name__)


class WebhookRetryWorker:
    """Polls the tracker for webhooks due a retry and re-delivers them."""

    name = "webhook-retry"

    def __init__(self, tracker: DeliveryTracker, notifier: WebhookNotifier) -> None:
        self.tracker = tracker
        self.notifier = notifier

    async def run_once(self) -> int:
        """Retry every due webhook once. Returns the number of attempts made."""
        due = await self.tracker.due_for_retry()
        if due:
            logger.debug(f"Retrying {len(due)} webhooks")
        for webhook in due:
            result = await self.notifier.deliver(webhook)
            try:
                await self.tracker.record_trigger(webhook.id, result.success, result.failure_reason)
            except StorageError as e:
                # Still due on the next sweep
                logger.error(f"Failed to record retry for webhook {webhook.id}: {e}")
        return len(due)


class AnalyticsRetentionJob:
    """Prunes analytics events past the retention window."""

    name = "analytics-retention"

    def __init__(self, analytics: AnalyticsAggregator, days_to_keep: int = 90) -> None:
        self.analytics = analytics
        self.days_to_keep = days_to_keep

    async def run_once(self) -> int:
        return await self.analytics.cleanup_old_data(self.days_to_keep)
