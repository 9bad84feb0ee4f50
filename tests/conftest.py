from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from payrouter.adapters.cache import InMemoryProviderConfigCache
from payrouter.adapters.storage import (
    InMemoryAnalyticsStore,
    InMemoryProviderStore,
    InMemoryRoutingRuleStore,
    InMemoryWebhookStore,
)
from payrouter.api import create_app
from payrouter.domain.analytics import AnalyticsAggregator
from payrouter.domain.delivery import DeliveryTracker
from payrouter.domain.models import (
    HealthStatus,
    ProviderConfig,
    RoutingCondition,
    RoutingRule,
    TriggerResult,
    WebhookRecord,
    WebhookType,
)
from payrouter.domain.registry import ProviderRegistry
from payrouter.domain.routing import RoutingEngine

BASE_TIME = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock for time-dependent services."""

    def __init__(self, now: datetime = BASE_TIME):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class MockWebhookNotifier:
    def __init__(self, succeed: bool = True, failure_reason: str = "HTTP 500"):
        self.succeed = succeed
        self.failure_reason = failure_reason
        self.delivered = []
        self.closed = False

    async def deliver(self, webhook: WebhookRecord) -> TriggerResult:
        self.delivered.append(webhook.id)
        if self.succeed:
            return TriggerResult(success=True)
        return TriggerResult(success=False, failure_reason=self.failure_reason)

    async def close(self):
        self.closed = True


def make_provider(name: str = "stripe", **overrides) -> ProviderConfig:
    """Factory function to create a provider with sensible defaults"""
    data = {
        "provider_name": name,
        "priority": 50,
        "supported_currencies": {"USD", "EUR"},
        "supported_countries": {"US", "DE"},
        "health_status": HealthStatus.HEALTHY,
        "created_at": BASE_TIME,
    }
    data.update(overrides)
    return ProviderConfig(**data)


def make_rule(target: ProviderConfig, conditions=None, **overrides) -> RoutingRule:
    data = {
        "name": f"route-to-{target.provider_name}",
        "conditions": conditions or [],
        "target_provider_id": target.id,
        "created_at": BASE_TIME,
    }
    data.update(overrides)
    return RoutingRule(**data)


def condition(field: str, operator: str, value) -> RoutingCondition:
    return RoutingCondition(field=field, operator=operator, value=value)


def make_webhook(**overrides) -> WebhookRecord:
    data = {
        "config_id": "provider-1",
        "webhook_type": WebhookType.PAYMENT_INTENT,
        "event_type": "payment_intent.succeeded",
        "url": "https://merchant.example.com/hooks",
        "created_at": BASE_TIME,
    }
    data.update(overrides)
    return WebhookRecord(**data)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def provider_store():
    return InMemoryProviderStore()


@pytest.fixture
def provider_cache():
    return InMemoryProviderConfigCache()


@pytest.fixture
def registry(provider_store, provider_cache):
    return ProviderRegistry(store=provider_store, cache=provider_cache)


@pytest.fixture
def rule_store():
    return InMemoryRoutingRuleStore()


@pytest.fixture
def analytics_store():
    return InMemoryAnalyticsStore()


@pytest.fixture
def routing_engine(rule_store, registry, analytics_store):
    return RoutingEngine(rules=rule_store, registry=registry, analytics=analytics_store)


@pytest.fixture
def webhook_store():
    return InMemoryWebhookStore()


@pytest.fixture
def delivery_tracker(webhook_store, clock):
    return DeliveryTracker(store=webhook_store, clock=clock)


@pytest.fixture
def analytics(analytics_store, clock):
    return AnalyticsAggregator(store=analytics_store, clock=clock)


@pytest.fixture
def client(registry, routing_engine, delivery_tracker, analytics):
    """Create a test client backed by in-memory stores"""
    # Don't start background workers in tests to avoid interference
    app = create_app(
        registry=registry,
        routing_engine=routing_engine,
        delivery_tracker=delivery_tracker,
        analytics=analytics,
        workers=None,
    )
    return TestClient(app)
