import asyncio
from datetime import datetime
import logging
from typing import Optional

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
from payrouter.domain.routing import evaluation_order

logger = logging.getLogger(__name__)


class InMemoryProviderStore:
    """In-memory implementation of ProviderStore for development/testing."""

    def __init__(self, providers: Optional[list[ProviderConfig]] = None):
        self.providers: dict[str, ProviderConfig] = {p.id: p for p in providers or []}
        self.list_calls = 0

    async def list_providers(self) -> list[ProviderConfig]:
        self.list_calls += 1
        return list(self.providers.values())

    async def get_provider(self, provider_id: str) -> Optional[ProviderConfig]:
        return self.providers.get(provider_id)

    async def save_provider(self, provider: ProviderConfig) -> ProviderConfig:
        self.providers[provider.id] = provider
        return provider

    async def delete_provider(self, provider_id: str) -> bool:
        return self.providers.pop(provider_id, None) is not None


class InMemoryRoutingRuleStore:
    """In-memory implementation of RoutingRuleStore for development/testing."""

    def __init__(self, rules: Optional[list[RoutingRule]] = None):
        self.rules: dict[str, RoutingRule] = {r.id: r for r in rules or []}

    async def list_active_rules(self) -> list[RoutingRule]:
        return evaluation_order([r for r in self.rules.values() if r.is_active])

    async def list_rules(self, filters: RoutingRuleFilters, limit: int, offset: int) -> list[RoutingRule]:
        rules = [
            r for r in self.rules.values()
            if (filters.is_active is None or r.is_active == filters.is_active)
            and (filters.target_provider_id is None or r.target_provider_id == filters.target_provider_id)
        ]
        rules.sort(key=lambda r: r.created_at, reverse=True)
        rules.sort(key=lambda r: r.priority, reverse=True)
        return rules[offset:offset + limit]

    async def get_rule(self, rule_id: str) -> Optional[RoutingRule]:
        return self.rules.get(rule_id)

    async def save_rule(self, rule: RoutingRule) -> RoutingRule:
        self.rules[rule.id] = rule
        return rule

    async def delete_rule(self, rule_id: str) -> bool:
        return self.rules.pop(rule_id, None) is not None


class InMemoryWebhookStore:
    """In-memory implementation of WebhookStore. A lock serializes counter updates."""

    def __init__(self, webhooks: Optional[list[WebhookRecord]] = None):
        self.webhooks: dict[str, WebhookRecord] = {w.id: w for w in webhooks or []}
        self._lock = asyncio.Lock()

    async def get_webhook(self, webhook_id: str) -> Optional[WebhookRecord]:
        return self.webhooks.get(webhook_id)

    async def find_by_provider_webhook_id(self, provider_webhook_id: str) -> Optional[WebhookRecord]:
        return next(
            (w for w in self.webhooks.values() if w.provider_webhook_id == provider_webhook_id),
            None,
        )

    async def list_webhooks(self, filters: WebhookFilters, limit: Optional[int], offset: int) -> list[WebhookRecord]:
        webhooks = [
            w for w in self.webhooks.values()
            if (filters.config_id is None or w.config_id == filters.config_id)
            and (filters.webhook_type is None or w.webhook_type == filters.webhook_type)
            and (filters.is_active is None or w.is_active == filters.is_active)
        ]
        webhooks.sort(key=lambda w: w.created_at, reverse=True)
        if limit is None:
            return webhooks[offset:]
        return webhooks[offset:offset + limit]

    async def save_webhook(self, webhook: WebhookRecord) -> WebhookRecord:
        async with self._lock:
            self.webhooks[webhook.id] = webhook
        return webhook

    async def delete_webhook(self, webhook_id: str) -> bool:
        async with self._lock:
            return self.webhooks.pop(webhook_id, None) is not None

    async def update_webhook(self, webhook_id: str, changes: dict, at: datetime) -> Optional[WebhookRecord]:
        async with self._lock:
            webhook = self.webhooks.get(webhook_id)
            if webhook is None:
                return None
            merged = {**webhook.model_dump(), **changes, "updated_at": at}
            webhook = WebhookRecord.model_validate(merged)
            self.webhooks[webhook_id] = webhook
            return webhook

    async def record_trigger(
        self, webhook_id: str, result: TriggerResult, at: datetime
    ) -> Optional[WebhookRecord]:
        async with self._lock:
            webhook = self.webhooks.get(webhook_id)
            if webhook is None:
                return None
            if result.success:
                update = {"last_triggered": at, "last_success": at, "retry_count": 0}
            else:
                update = {
                    "last_triggered": at,
                    "last_failure": at,
                    "retry_count": webhook.retry_count + 1,
                    "failure_reason": result.failure_reason,
                }
            webhook = webhook.model_copy(update=update)
            self.webhooks[webhook_id] = webhook
            return webhook

    async def reset_retries(self, webhook_id: str) -> Optional[WebhookRecord]:
        async with self._lock:
            webhook = self.webhooks.get(webhook_id)
            if webhook is None:
                return None
            webhook = webhook.model_copy(update={"retry_count": 0, "failure_reason": None})
            self.webhooks[webhook_id] = webhook
            return webhook


class InMemoryAnalyticsStore:
    """In-memory implementation of AnalyticsStore for development/testing."""

    def __init__(self):
        self.events: list[AnalyticsEvent] = []

    async def append(self, event: AnalyticsEvent) -> None:
        self.events.append(event)

    async def query(self, filters: AnalyticsFilters) -> list[AnalyticsEvent]:
        matching = [e for e in self.events if filters.matches(e)]
        return sorted(matching, key=lambda e: e.created_at)

    async def delete_before(self, cutoff: datetime) -> int:
        cutoff = as_utc(cutoff)
        kept = [e for e in self.events if e.created_at >= cutoff]
        deleted = len(self.events) - len(kept)
        self.events = kept
        return deleted
