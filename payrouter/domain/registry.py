import logging
from typing import Optional

from payrouter.domain.models import HealthStatus, ProviderConfig, TransactionContext, utcnow
from payrouter.domain.protocols import ProviderConfigCache, ProviderStore

logger = logging.getLogger(__name__)


# Custom exceptions
class ProviderNotFoundError(Exception):
    """Raised when a provider configuration does not exist."""
    pass


class DuplicateProviderError(Exception):
    """Raised when a provider name is already taken by another configuration."""
    pass


def is_eligible(
    provider: Optional[ProviderConfig],
    context: TransactionContext,
    test_mode: Optional[bool] = None,
) -> bool:
    """A provider can take the transaction: active, routable health, currency and country."""
    if provider is None or not provider.is_active:
        return False
    if test_mode is not None and provider.is_test_mode != test_mode:
        return False
    return provider.is_routable and provider.supports(context.currency, context.country)


def by_priority(providers: list[ProviderConfig]) -> list[ProviderConfig]:
    """Highest priority first, ties broken by earliest creation."""
    return sorted(providers, key=lambda p: (-p.priority, p.created_at))


class ProviderRegistry:
    """Read side of provider configuration with a write-through cache."""

    def __init__(self, store: ProviderStore, cache: ProviderConfigCache, cache_ttl_seconds: int = 30):
        self.store = store
        self.cache = cache
        self.cache_ttl_seconds = cache_ttl_seconds
        # Bumped on every write; a refill read before a write must not be cached
        self._generation = 0

    async def snapshot(self) -> dict[str, ProviderConfig]:
        """All providers keyed by id, from cache when fresh."""
        providers = await self.cache.get()
        if providers is None:
            generation = self._generation
            providers = await self.store.list_providers()
            if generation == self._generation:
                await self.cache.set(providers, self.cache_ttl_seconds)
                logger.debug(f"Provider cache refreshed with {len(providers)} providers")
            else:
                logger.debug("Provider snapshot changed while loading, not caching")
        return {provider.id: provider for provider in providers}

    async def list_providers(self) -> list[ProviderConfig]:
        return by_priority(list((await self.snapshot()).values()))

    async def get_provider(self, provider_id: str) -> ProviderConfig:
        provider = await self.store.get_provider(provider_id)
        if provider is None:
            raise ProviderNotFoundError(f"Provider {provider_id} not found")
        return provider

    async def eligible_providers(
        self, context: TransactionContext, test_mode: Optional[bool] = None
    ) -> list[ProviderConfig]:
        providers = (await self.snapshot()).values()
        return by_priority([p for p in providers if is_eligible(p, context, test_mode)])

    async def save_provider(self, provider: ProviderConfig) -> ProviderConfig:
        """Create or replace a provider configuration and invalidate the cache."""
        existing = await self.store.list_providers()
        for other in existing:
            if other.id != provider.id and other.provider_name.lower() == provider.provider_name.lower():
                raise DuplicateProviderError(f"Provider name {provider.provider_name!r} is already configured")

        previous = next((p for p in existing if p.id == provider.id), None)
        if previous is not None:
            provider = provider.model_copy(update={"created_at": previous.created_at, "updated_at": utcnow()})

        saved = await self.store.save_provider(provider)
        await self._invalidate()
        logger.info(f"Saved provider {saved.provider_name} ({saved.id})")
        return saved

    async def set_health_status(self, provider_id: str, status: HealthStatus) -> ProviderConfig:
        provider = await self.get_provider(provider_id)
        updated = provider.model_copy(update={"health_status": status, "updated_at": utcnow()})
        saved = await self.store.save_provider(updated)
        await self._invalidate()
        logger.info(f"Provider {saved.provider_name} health set to {status.value}")
        return saved

    async def delete_provider(self, provider_id: str) -> None:
        deleted = await self.store.delete_provider(provider_id)
        if not deleted:
            raise ProviderNotFoundError(f"Provider {provider_id} not found")
        await self._invalidate()
        logger.info(f"Deleted provider {provider_id}")

    async def _invalidate(self) -> None:
        self._generation += 1
        await self.cache.invalidate()
