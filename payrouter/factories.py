from datetime import timedelta

import redis.asyncio as redis

from payrouter.adapters.cache import CacheProxy, InMemoryProviderConfigCache, RedisProviderConfigCache
from payrouter.adapters.http import HttpxWebhookNotifier
from payrouter.adapters.redis_storage import (
    RedisAnalyticsStore,
    RedisProviderStore,
    RedisRoutingRuleStore,
    RedisWebhookStore,
)
from payrouter.config.settings import Settings
from payrouter.domain.analytics import AnalyticsAggregator
from payrouter.domain.background_worker import BackgroundWorker
from payrouter.domain.delivery import DeliveryTracker
from payrouter.domain.registry import ProviderRegistry
from payrouter.domain.retry_worker import AnalyticsRetentionJob, WebhookRetryWorker
from payrouter.domain.routing import RoutingEngine


def create_redis_client(settings: Settings) -> redis.Redis:
    """Create a Redis client backed by a shared connection pool."""
    return redis.Redis(
        connection_pool=redis.ConnectionPool(
            host=settings.redis_host,
            port=settings.redis_port,
            db=settings.redis_db,
            decode_responses=True,
            max_connections=settings.redis_max_connections
        )
    )


def create_provider_registry(settings: Settings, redis_client: redis.Redis) -> ProviderRegistry:
    """Create a ProviderRegistry reading through the two-level provider cache."""
    cache = CacheProxy(
        redis_cache=RedisProviderConfigCache(redis_client=redis_client),
        memory_cache=InMemoryProviderConfigCache(),
    )
    return ProviderRegistry(
        store=RedisProviderStore(redis_client),
        cache=cache,
        cache_ttl_seconds=settings.provider_cache_ttl_seconds,
    )


def create_analytics(redis_client: redis.Redis) -> AnalyticsAggregator:
    return AnalyticsAggregator(store=RedisAnalyticsStore(redis_client))


def create_routing_engine(redis_client: redis.Redis, registry: ProviderRegistry) -> RoutingEngine:
    return RoutingEngine(
        rules=RedisRoutingRuleStore(redis_client),
        registry=registry,
        analytics=RedisAnalyticsStore(redis_client),
    )


def create_delivery_tracker(settings: Settings, redis_client: redis.Redis) -> DeliveryTracker:
    return DeliveryTracker(
        store=RedisWebhookStore(redis_client),
        retry_cooldown=timedelta(seconds=settings.webhook_retry_cooldown_seconds),
    )


def create_webhook_notifier(settings: Settings) -> HttpxWebhookNotifier:
    return HttpxWebhookNotifier(timeout=settings.webhook_delivery_timeout_seconds)


def create_background_workers(
    settings: Settings,
    tracker: DeliveryTracker,
    notifier: HttpxWebhookNotifier,
    analytics: AnalyticsAggregator,
) -> list[BackgroundWorker]:
    """Create the webhook retry sweep and the analytics retention job."""
    retry_worker = WebhookRetryWorker(tracker=tracker, notifier=notifier)
    retention_job = AnalyticsRetentionJob(analytics=analytics, days_to_keep=settings.analytics_retention_days)
    return [
        BackgroundWorker(retry_worker, poll_interval=settings.webhook_retry_sweep_interval_seconds),
        BackgroundWorker(retention_job, poll_interval=settings.analytics_cleanup_interval_seconds),
    ]
