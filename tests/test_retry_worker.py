from datetime import timedelta
from decimal import Decimal

import pytest

from payrouter.domain.models import AnalyticsEventCreate, DeliveryState, EventStatus, WebhookCreate, WebhookType
from payrouter.domain.protocols import StorageConflictError
from payrouter.domain.retry_worker import AnalyticsRetentionJob, WebhookRetryWorker
from tests.conftest import BASE_TIME, MockWebhookNotifier


async def failed_webhook(delivery_tracker, **overrides):
    data = {
        "config_id": "provider-1",
        "webhook_type": WebhookType.PAYOUT,
        "event_type": "payout.paid",
        "url": "https://merchant.example.com/hooks",
    }
    data.update(overrides)
    webhook = await delivery_tracker.create_webhook(WebhookCreate(**data))
    return await delivery_tracker.record_trigger(webhook.id, False, "timeout")


class TestWebhookRetryWorker:
    @pytest.mark.asyncio
    async def test_successful_retry_marks_webhook_healthy(self, delivery_tracker, clock):
        # Arrange
        webhook = await failed_webhook(delivery_tracker)
        clock.advance(minutes=6)
        notifier = MockWebhookNotifier(succeed=True)
        worker = WebhookRetryWorker(delivery_tracker, notifier)

        # Act
        attempts = await worker.run_once()

        # Assert
        assert attempts == 1
        assert notifier.delivered == [webhook.id]
        refreshed = await delivery_tracker.get_webhook(webhook.id)
        assert refreshed.state is DeliveryState.HEALTHY
        assert refreshed.retry_count == 0

    @pytest.mark.asyncio
    async def test_failed_retry_increments_count(self, delivery_tracker, clock):
        webhook = await failed_webhook(delivery_tracker)
        clock.advance(minutes=6)
        worker = WebhookRetryWorker(delivery_tracker, MockWebhookNotifier(succeed=False, failure_reason="HTTP 502"))

        await worker.run_once()

        refreshed = await delivery_tracker.get_webhook(webhook.id)
        assert refreshed.retry_count == 2
        assert refreshed.failure_reason == "HTTP 502"

    @pytest.mark.asyncio
    async def test_cooling_down_webhooks_are_left_alone(self, delivery_tracker, clock):
        await failed_webhook(delivery_tracker)
        clock.advance(minutes=1)
        notifier = MockWebhookNotifier()

        attempts = await WebhookRetryWorker(delivery_tracker, notifier).run_once()

        assert attempts == 0
        assert notifier.delivered == []

    @pytest.mark.asyncio
    async def test_storage_failure_does_not_stop_the_sweep(self, delivery_tracker, webhook_store, clock):
        # Arrange
        first = await failed_webhook(delivery_tracker, event_type="a")
        broken = await failed_webhook(delivery_tracker, event_type="b")
        last = await failed_webhook(delivery_tracker, event_type="c")
        clock.advance(minutes=6)
        stored_record = webhook_store.record_trigger

        async def flaky_record(webhook_id, result, at):
            if webhook_id == broken.id:
                raise StorageConflictError(f"webhook {webhook_id} changed concurrently")
            return await stored_record(webhook_id, result, at)

        webhook_store.record_trigger = flaky_record
        notifier = MockWebhookNotifier(succeed=True)

        # Act
        attempts = await WebhookRetryWorker(delivery_tracker, notifier).run_once()

        # Assert
        assert attempts == 3
        assert sorted(notifier.delivered) == sorted([first.id, broken.id, last.id])
        assert (await delivery_tracker.get_webhook(first.id)).state is DeliveryState.HEALTHY
        assert (await delivery_tracker.get_webhook(last.id)).state is DeliveryState.HEALTHY
        assert (await delivery_tracker.get_webhook(broken.id)).retry_count == 1


class TestAnalyticsRetentionJob:
    @pytest.mark.asyncio
    async def test_prunes_expired_events(self, analytics):
        for days_ago in (200, 120, 5):
            await analytics.record_event(AnalyticsEventCreate(
                transaction_id=f"t{days_ago}",
                provider_name="p1",
                amount=Decimal("1"),
                status=EventStatus.SUCCESS,
                created_at=BASE_TIME - timedelta(days=days_ago),
            ))

        deleted = await AnalyticsRetentionJob(analytics, days_to_keep=90).run_once()

        assert deleted == 2
