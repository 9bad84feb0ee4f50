from decimal import Decimal
import logging
from typing import Optional, Union

from payrouter.domain.conditions import evaluate_conditions
from payrouter.domain.models import (
    AnalyticsFilters,
    EventStatus,
    NoProviderAvailable,
    ProviderConfig,
    ProviderSelection,
    RoutingRule,
    RoutingRuleCreate,
    RoutingRuleFilters,
    RoutingRuleStats,
    RoutingRuleUpdate,
    SelectionReason,
    TransactionContext,
    utcnow,
)
from payrouter.domain.protocols import AnalyticsStore, RoutingRuleStore
from payrouter.domain.registry import ProviderRegistry, by_priority, is_eligible

logger = logging.getLogger(__name__)


# Custom exceptions
class RoutingRuleNotFoundError(Exception):
    """Raised when a routing rule does not exist."""
    pass


def evaluation_order(rules: list[RoutingRule]) -> list[RoutingRule]:
    """Priority descending, then creation time ascending."""
    return sorted(rules, key=lambda rule: (-rule.priority, rule.created_at))


class RoutingEngine:
    def __init__(
        self,
        rules: RoutingRuleStore,
        registry: ProviderRegistry,
        analytics: Optional[AnalyticsStore] = None,
    ):
        """Initialize the RoutingEngine with its rule store and provider registry."""
        self.rules = rules
        self.registry = registry
        self.analytics = analytics

    async def select_provider(
        self, context: TransactionContext, test_mode: Optional[bool] = None
    ) -> Union[ProviderSelection, NoProviderAvailable]:
        """
        Pick the provider for a transaction.

        The first matching rule whose target can take the transaction wins. A rule
        whose target is unhealthy may hand over to its fallback provider. When no
        rule produces a provider, the highest priority eligible provider is used.
        """
        # One snapshot of each per decision
        rules = evaluation_order([r for r in await self.rules.list_active_rules() if r.is_active])
        providers = await self.registry.snapshot()

        for rule in rules:
            if not evaluate_conditions(rule.conditions, context):
                continue

            target = providers.get(rule.target_provider_id)
            if target is None:
                logger.warning(
                    f"Routing rule {rule.name} ({rule.id}) targets missing provider {rule.target_provider_id}"
                )
                continue

            if is_eligible(target, context, test_mode):
                logger.info(f"Routing rule {rule.name} selected provider {target.provider_name}")
                return ProviderSelection(
                    provider=target, reason=SelectionReason.RULE, rule_id=rule.id, rule_name=rule.name
                )

            fallback = self._rule_fallback(rule, target, providers, context, test_mode)
            if fallback is not None:
                logger.info(
                    f"Routing rule {rule.name} target {target.provider_name} is {target.health_status.value}, "
                    f"using fallback provider {fallback.provider_name}"
                )
                return ProviderSelection(
                    provider=fallback, reason=SelectionReason.RULE_FALLBACK, rule_id=rule.id, rule_name=rule.name
                )

            logger.debug(f"Routing rule {rule.name} matched but provider {target.provider_name} is not eligible")

        candidates = by_priority([p for p in providers.values() if is_eligible(p, context, test_mode)])
        if candidates:
            selected = candidates[0]
            logger.info(f"No routing rule applied, selected provider {selected.provider_name} by priority")
            return ProviderSelection(provider=selected, reason=SelectionReason.PRIORITY_FALLBACK)

        logger.warning(
            f"No eligible payment provider for currency={context.currency} country={context.country}"
        )
        return NoProviderAvailable(
            reason=f"No eligible provider for currency {context.currency} and country {context.country}"
        )

    @staticmethod
    def _rule_fallback(
        rule: RoutingRule,
        target: ProviderConfig,
        providers: dict[str, ProviderConfig],
        context: TransactionContext,
        test_mode: Optional[bool],
    ) -> Optional[ProviderConfig]:
        if target.is_routable or not rule.fallback_provider_id:
            return None
        fallback = providers.get(rule.fallback_provider_id)
        if is_eligible(fallback, context, test_mode):
            return fallback
        return None

    async def find_matching_rules(self, context: TransactionContext) -> list[RoutingRule]:
        """All active rules matching the context, in evaluation order."""
        rules = evaluation_order(await self.rules.list_active_rules())
        return [rule for rule in rules if evaluate_conditions(rule.conditions, context)]

    async def create_rule(self, data: RoutingRuleCreate) -> RoutingRule:
        rule = RoutingRule(**data.model_dump())
        saved = await self.rules.save_rule(rule)
        logger.info(f"Created routing rule {saved.name} ({saved.id}) with priority {saved.priority}")
        return saved

    async def get_rule(self, rule_id: str) -> RoutingRule:
        rule = await self.rules.get_rule(rule_id)
        if rule is None:
            raise RoutingRuleNotFoundError(f"Payment routing rule {rule_id} not found")
        return rule

    async def list_rules(
        self, filters: Optional[RoutingRuleFilters] = None, limit: int = 20, offset: int = 0
    ) -> list[RoutingRule]:
        filters = filters or RoutingRuleFilters()
        if filters.provider_name:
            providers = await self.registry.list_providers()
            match = next((p for p in providers if p.provider_name == filters.provider_name), None)
            if match is None or filters.target_provider_id not in (None, match.id):
                return []
            filters = filters.model_copy(update={"target_provider_id": match.id, "provider_name": None})
        return await self.rules.list_rules(filters, limit, offset)

    async def update_rule(
        self, rule_id: str, update: RoutingRuleUpdate, updated_by: Optional[str] = None
    ) -> RoutingRule:
        changes = update.changes()
        rule = await self.get_rule(rule_id)
        merged = {**rule.model_dump(), **changes, "updated_at": utcnow(), "updated_by": updated_by}
        saved = await self.rules.save_rule(RoutingRule.model_validate(merged))
        logger.info(f"Updated routing rule {saved.name} ({saved.id}): {sorted(changes)}")
        return saved

    async def toggle_rule(self, rule_id: str, is_active: bool, updated_by: Optional[str] = None) -> RoutingRule:
        return await self.update_rule(rule_id, RoutingRuleUpdate(is_active=is_active), updated_by)

    async def set_rule_priority(self, rule_id: str, priority: int, updated_by: Optional[str] = None) -> RoutingRule:
        return await self.update_rule(rule_id, RoutingRuleUpdate(priority=int(priority)), updated_by)

    async def delete_rule(self, rule_id: str) -> None:
        deleted = await self.rules.delete_rule(rule_id)
        if not deleted:
            raise RoutingRuleNotFoundError(f"Payment routing rule {rule_id} not found")
        logger.info(f"Deleted routing rule {rule_id}")

    async def get_routing_stats(self, filters: Optional[AnalyticsFilters] = None) -> list[RoutingRuleStats]:
        """Transaction outcomes per active rule, attributed through the rule's target provider."""
        if self.analytics is None:
            return []
        filters = filters or AnalyticsFilters()
        rules = await self.rules.list_active_rules()
        providers = await self.registry.snapshot()
        events = await self.analytics.query(filters)

        stats = []
        for rule in rules:
            provider_events = [e for e in events if e.config_id == rule.target_provider_id]
            total = len(provider_events)
            successful = sum(1 for e in provider_events if e.status == EventStatus.SUCCESS)
            response_times = [e.response_time_ms for e in provider_events if e.response_time_ms is not None]
            provider = providers.get(rule.target_provider_id)
            stats.append(RoutingRuleStats(
                rule_id=rule.id,
                rule_name=rule.name,
                provider_name=provider.provider_name if provider else None,
                transaction_count=total,
                total_amount=sum((e.amount for e in provider_events), Decimal("0")),
                avg_response_time=sum(response_times) / len(response_times) if response_times else None,
                successful_transactions=successful,
                success_rate=round(successful / total * 100, 2) if total else 0.0,
            ))

        return sorted(stats, key=lambda s: s.transaction_count, reverse=True)
