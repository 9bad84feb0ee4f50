from datetime import datetime
from typing import Optional, Protocol

from payrouter.domain.models import (
    AnalyticsEvent,
    AnalyticsFilters,
    ProviderConfig,
    RoutingRule,
    RoutingRuleFilters,
    TriggerResult,
    WebhookFilters,
    WebhookRecord,
)


# Custom exceptions
class StorageError(Exception):
    """Raised when storage operations fail."""
    pass


class StorageConnectionError(StorageError):
    """Raised when the store cannot be reached."""
    pass


class StorageConflictError(StorageError):
    """Raised when a conditional update lost a race with a concurrent writer."""
    pass


class ProviderStore(Protocol):
    async def list_providers(self) -> list[ProviderConfig]:
        """Return every configured provider."""
        ...

    async def get_provider(self, provider_id: str) -> Optional[ProviderConfig]:
        ...

    async def save_provider(self, provider: ProviderConfig) -> ProviderConfig:
        """Insert or replace a provider configuration."""
        ...

    async def delete_provider(self, provider_id: str) -> bool:
        ...


class RoutingRuleStore(Protocol):
    async def list_active_rules(self) -> list[RoutingRule]:
        """Active rules ordered by priority desc, then created_at asc."""
        ...

    async def list_rules(self, filters: RoutingRuleFilters, limit: int, offset: int) -> list[RoutingRule]:
        ...

    async def get_rule(self, rule_id: str) -> Optional[RoutingRule]:
        ...

    async def save_rule(self, rule: RoutingRule) -> RoutingRule:
        ...

    async def delete_rule(self, rule_id: str) -> bool:
        ...


class WebhookStore(Protocol):
    async def get_webhook(self, webhook_id: str) -> Optional[WebhookRecord]:
        ...

    async def find_by_provider_webhook_id(self, provider_webhook_id: str) -> Optional[WebhookRecord]:
        ...

    async def list_webhooks(self, filters: WebhookFilters, limit: Optional[int], offset: int) -> list[WebhookRecord]:
        ...

    async def save_webhook(self, webhook: WebhookRecord) -> WebhookRecord:
        ...

    async def delete_webhook(self, webhook_id: str) -> bool:
        ...

    async def update_webhook(self, webhook_id: str, changes: dict, at: datetime) -> Optional[WebhookRecord]:
        """Atomically write only the changed fields. Returns None when the webhook is missing."""
        ...

    async def record_trigger(
        self, webhook_id: str, result: TriggerResult, at: datetime
    ) -> Optional[WebhookRecord]:
        """Atomically apply a delivery attempt. Returns None when the webhook is missing."""
        ...

    async def reset_retries(self, webhook_id: str) -> Optional[WebhookRecord]:
        """Atomically clear retry_count and failure_reason."""
        ...


class AnalyticsStore(Protocol):
    async def append(self, event: AnalyticsEvent) -> None:
        ...

    async def query(self, filters: AnalyticsFilters) -> list[AnalyticsEvent]:
        """Events matching the filters ordered by created_at ascending."""
        ...

    async def delete_before(self, cutoff: datetime) -> int:
        """Delete events created strictly before the cutoff and return the count."""
        ...


class ProviderConfigCache(Protocol):
    async def get(self) -> Optional[list[ProviderConfig]]:
        """Get the cached provider snapshot, if still fresh."""
        ...

    async def set(self, providers: list[ProviderConfig], ttl_seconds: int) -> None:
        """Cache a provider snapshot with TTL."""
        ...

    async def invalidate(self) -> None:
        """Drop the cached snapshot."""
        ...


class WebhookNotifier(Protocol):
    async def deliver(self, webhook: WebhookRecord) -> TriggerResult:
        """Attempt one delivery and report the outcome."""
        ...
