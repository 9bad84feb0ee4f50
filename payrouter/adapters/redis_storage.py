from contextlib import contextmanager
from datetime import datetime
import json
import logging
from typing import Optional

from redis.exceptions import RedisError, WatchError

from payrouter.domain.models import (
    AnalyticsEvent,
    AnalyticsFilters,
    ProviderConfig,
    RoutingRule,
    RoutingRuleFilters,
    TriggerResult,
    WebhookFilters,
    WebhookRecord,
    as_utc,
)
from payrouter.domain.protocols import StorageConflictError, StorageConnectionError
from payrouter.domain.routing import evaluation_order

logger = logging.getLogger(__name__)

PROVIDERS_KEY = "providers"
RULES_KEY = "routing:rules"
WEBHOOK_IDS_KEY = "webhooks"
WEBHOOK_PROVIDER_IDS_KEY = "webhooks:provider_ids"
EVENTS_INDEX_KEY = "analytics:events"


def webhook_key(webhook_id: str) -> str:
    return f"webhook:{webhook_id}"


def event_key(event_id: str) -> str:
    return f"analytics:event:{event_id}"


@contextmanager
def storage_errors(action: str):
    """Translate redis failures into storage errors."""
    try:
        yield
    except WatchError as e:
        logger.warning(f"Concurrent update while trying to {action}")
        raise StorageConflictError(f"Concurrent update while trying to {action}") from e
    except RedisError as e:
        logger.error(f"Redis error while trying to {action}: {e}")
        raise StorageConnectionError(f"Failed to {action}: {e}") from e


def _webhook_to_hash(webhook: WebhookRecord) -> dict[str, str]:
    # One JSON value per hash field so counters stay usable with HINCRBY
    return {key: json.dumps(value) for key, value in webhook.model_dump(mode="json").items()}


def _webhook_from_hash(data: dict) -> Optional[WebhookRecord]:
    if not data:
        return None
    return WebhookRecord.model_validate({key: json.loads(value) for key, value in data.items()})


class RedisProviderStore:
    """Provider configurations as JSON documents in one Redis hash."""

    def __init__(self, redis_client):
        self.redis_client = redis_client

    async def list_providers(self) -> list[ProviderConfig]:
        with storage_errors("list providers"):
            raw = await self.redis_client.hvals(PROVIDERS_KEY)
        return [ProviderConfig.model_validate_json(item) for item in raw]

    async def get_provider(self, provider_id: str) -> Optional[ProviderConfig]:
        with storage_errors(f"load provider {provider_id}"):
            raw = await self.redis_client.hget(PROVIDERS_KEY, provider_id)
        return ProviderConfig.model_validate_json(raw) if raw else None

    async def save_provider(self, provider: ProviderConfig) -> ProviderConfig:
        with storage_errors(f"save provider {provider.id}"):
            await self.redis_client.hset(PROVIDERS_KEY, provider.id, provider.model_dump_json())
        return provider

    async def delete_provider(self, provider_id: str) -> bool:
        with storage_errors(f"delete provider {provider_id}"):
            return bool(await self.redis_client.hdel(PROVIDERS_KEY, provider_id))


class RedisRoutingRuleStore:
    """Routing rules as JSON documents in one Redis hash."""

    def __init__(self, redis_client):
        self.redis_client = redis_client

    async def _all_rules(self) -> list[RoutingRule]:
        with storage_errors("list routing rules"):
            raw = await self.redis_client.hvals(RULES_KEY)
        return [RoutingRule.model_validate_json(item) for item in raw]

    async def list_active_rules(self) -> list[RoutingRule]:
        return evaluation_order([r for r in await self._all_rules() if r.is_active])

    async def list_rules(self, filters: RoutingRuleFilters, limit: int, offset: int) -> list[RoutingRule]:
        rules = [
            r for r in await self._all_rules()
            if (filters.is_active is None or r.is_active == filters.is_active)
            and (filters.target_provider_id is None or r.target_provider_id == filters.target_provider_id)
        ]
        rules.sort(key=lambda r: r.created_at, reverse=True)
        rules.sort(key=lambda r: r.priority, reverse=True)
        return rules[offset:offset + limit]

    async def get_rule(self, rule_id: str) -> Optional[RoutingRule]:
        with storage_errors(f"load routing rule {rule_id}"):
            raw = await self.redis_client.hget(RULES_KEY, rule_id)
        return RoutingRule.model_validate_json(raw) if raw else None

    async def save_rule(self, rule: RoutingRule) -> RoutingRule:
        with storage_errors(f"save routing rule {rule.id}"):
            await self.redis_client.hset(RULES_KEY, rule.id, rule.model_dump_json())
        return rule

    async def delete_rule(self, rule_id: str) -> bool:
        with storage_errors(f"delete routing rule {rule_id}"):
            return bool(await self.redis_client.hdel(RULES_KEY, rule_id))


class RedisWebhookStore:
    """
    Webhooks as one Redis hash each, plus an id set and a provider id index.

    Delivery counters are changed inside WATCH/MULTI so concurrent attempts on the
    same webhook either apply in full or fail with StorageConflictError.
    """

    def __init__(self, redis_client):
        self.redis_client = redis_client

    async def get_webhook(self, webhook_id: str) -> Optional[WebhookRecord]:
        with storage_errors(f"load webhook {webhook_id}"):
            data = await self.redis_client.hgetall(webhook_key(webhook_id))
        return _webhook_from_hash(data)

    async def find_by_provider_webhook_id(self, provider_webhook_id: str) -> Optional[WebhookRecord]:
        with storage_errors(f"look up provider webhook {provider_webhook_id}"):
            webhook_id = await self.redis_client.hget(WEBHOOK_PROVIDER_IDS_KEY, provider_webhook_id)
        if webhook_id is None:
            return None
        return await self.get_webhook(webhook_id)

    async def list_webhooks(self, filters: WebhookFilters, limit: Optional[int], offset: int) -> list[WebhookRecord]:
        with storage_errors("list webhooks"):
            webhook_ids = await self.redis_client.smembers(WEBHOOK_IDS_KEY)
            pipeline = self.redis_client.pipeline()
            for webhook_id in webhook_ids:
                pipeline.hgetall(webhook_key(webhook_id))
            rows = await pipeline.execute()

        webhooks = [w for w in (_webhook_from_hash(row) for row in rows) if w is not None]
        webhooks = [
            w for w in webhooks
            if (filters.config_id is None or w.config_id == filters.config_id)
            and (filters.webhook_type is None or w.webhook_type == filters.webhook_type)
            and (filters.is_active is None or w.is_active == filters.is_active)
        ]
        webhooks.sort(key=lambda w: w.created_at, reverse=True)
        if limit is None:
            return webhooks[offset:]
        return webhooks[offset:offset + limit]

    async def save_webhook(self, webhook: WebhookRecord) -> WebhookRecord:
        key = webhook_key(webhook.id)
        with storage_errors(f"save webhook {webhook.id}"):
            previous = await self.redis_client.hget(key, "provider_webhook_id")
            pipeline = self.redis_client.pipeline(transaction=True)
            pipeline.delete(key)
            pipeline.hset(key, mapping=_webhook_to_hash(webhook))
            pipeline.sadd(WEBHOOK_IDS_KEY, webhook.id)
            if previous and json.loads(previous) not in (None, webhook.provider_webhook_id):
                pipeline.hdel(WEBHOOK_PROVIDER_IDS_KEY, json.loads(previous))
            if webhook.provider_webhook_id:
                pipeline.hset(WEBHOOK_PROVIDER_IDS_KEY, webhook.provider_webhook_id, webhook.id)
            await pipeline.execute()
        return webhook

    async def delete_webhook(self, webhook_id: str) -> bool:
        webhook = await self.get_webhook(webhook_id)
        if webhook is None:
            return False
        with storage_errors(f"delete webhook {webhook_id}"):
            pipeline = self.redis_client.pipeline(transaction=True)
            pipeline.delete(webhook_key(webhook_id))
            pipeline.srem(WEBHOOK_IDS_KEY, webhook_id)
            if webhook.provider_webhook_id:
                pipeline.hdel(WEBHOOK_PROVIDER_IDS_KEY, webhook.provider_webhook_id)
            await pipeline.execute()
        return True

    async def update_webhook(self, webhook_id: str, changes: dict, at: datetime) -> Optional[WebhookRecord]:
        key = webhook_key(webhook_id)
        with storage_errors(f"update webhook {webhook_id}"):
            async with self.redis_client.pipeline(transaction=True) as pipe:
                await pipe.watch(key)
                current = _webhook_from_hash(await pipe.hgetall(key))
                if current is None:
                    await pipe.unwatch()
                    return None
                merged = WebhookRecord.model_validate({**current.model_dump(), **changes, "updated_at": at})
                encoded = _webhook_to_hash(merged)
                # Only the changed fields, so delivery counters are never rewritten
                fields = {name: encoded[name] for name in [*changes, "updated_at"]}

                pipe.multi()
                pipe.hset(key, mapping=fields)
                if "provider_webhook_id" in changes and current.provider_webhook_id != merged.provider_webhook_id:
                    if current.provider_webhook_id:
                        pipe.hdel(WEBHOOK_PROVIDER_IDS_KEY, current.provider_webhook_id)
                    if merged.provider_webhook_id:
                        pipe.hset(WEBHOOK_PROVIDER_IDS_KEY, merged.provider_webhook_id, webhook_id)
                pipe.hgetall(key)
                results = await pipe.execute()
        return _webhook_from_hash(results[-1])

    async def record_trigger(
        self, webhook_id: str, result: TriggerResult, at: datetime
    ) -> Optional[WebhookRecord]:
        key = webhook_key(webhook_id)
        stamp = json.dumps(as_utc(at).isoformat())
        with storage_errors(f"record trigger for webhook {webhook_id}"):
            async with self.redis_client.pipeline(transaction=True) as pipe:
                await pipe.watch(key)
                if not await pipe.exists(key):
                    await pipe.unwatch()
                    return None
                pipe.multi()
                if result.success:
                    pipe.hset(key, mapping={"last_triggered": stamp, "last_success": stamp, "retry_count": "0"})
                else:
                    pipe.hset(key, mapping={
                        "last_triggered": stamp,
                        "last_failure": stamp,
                        "failure_reason": json.dumps(result.failure_reason),
                    })
                    pipe.hincrby(key, "retry_count", 1)
                pipe.hgetall(key)
                results = await pipe.execute()
        return _webhook_from_hash(results[-1])

    async def reset_retries(self, webhook_id: str) -> Optional[WebhookRecord]:
        key = webhook_key(webhook_id)
        with storage_errors(f"reset retries for webhook {webhook_id}"):
            async with self.redis_client.pipeline(transaction=True) as pipe:
                await pipe.watch(key)
                if not await pipe.exists(key):
                    await pipe.unwatch()
                    return None
                pipe.multi()
                pipe.hset(key, mapping={"retry_count": "0", "failure_reason": "null"})
                pipe.hgetall(key)
                results = await pipe.execute()
        return _webhook_from_hash(results[-1])


class RedisAnalyticsStore:
    """Analytics events as JSON strings, indexed by a sorted set scored on created_at."""

    def __init__(self, redis_client):
        self.redis_client = redis_client

    async def append(self, event: AnalyticsEvent) -> None:
        with storage_errors(f"store analytics event {event.id}"):
            pipeline = self.redis_client.pipeline(transaction=True)
            pipeline.set(event_key(event.id), event.model_dump_json())
            pipeline.zadd(EVENTS_INDEX_KEY, {event.id: as_utc(event.created_at).timestamp()})
            await pipeline.execute()

    async def query(self, filters: AnalyticsFilters) -> list[AnalyticsEvent]:
        low = as_utc(filters.start_date).timestamp() if filters.start_date else "-inf"
        high = as_utc(filters.end_date).timestamp() if filters.end_date else "+inf"
        with storage_errors("query analytics events"):
            event_ids = await self.redis_client.zrangebyscore(EVENTS_INDEX_KEY, low, high)
            if not event_ids:
                return []
            raw_events = await self.redis_client.mget([event_key(event_id) for event_id in event_ids])

        events = []
        for raw in raw_events:
            if raw is None:
                continue
            event = AnalyticsEvent.model_validate_json(raw)
            if filters.matches(event):
                events.append(event)
        return events

    async def delete_before(self, cutoff: datetime) -> int:
        bound = f"({as_utc(cutoff).timestamp()}"
        with storage_errors("delete old analytics events"):
            event_ids = await self.redis_client.zrangebyscore(EVENTS_INDEX_KEY, "-inf", bound)
            if not event_ids:
                return 0
            pipeline = self.redis_client.pipeline(transaction=True)
            pipeline.delete(*[event_key(event_id) for event_id in event_ids])
            pipeline.zrem(EVENTS_INDEX_KEY, *event_ids)
            await pipeline.execute()
        return len(event_ids)
