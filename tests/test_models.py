from datetime import timedelta
from decimal import Decimal

import pytest
from pydantic import ValidationError

from payrouter.domain.models import (
    AnalyticsEvent,
    AnalyticsFilters,
    ConditionOperator,
    DeliveryState,
    EventStatus,
    InvalidUpdateError,
    ProviderConfig,
    RoutingCondition,
    RoutingRule,
    RoutingRuleCreate,
    RoutingRuleUpdate,
    UnrecognizedCondition,
    WebhookUpdate,
    parse_condition,
)
from tests.conftest import BASE_TIME, make_webhook


class TestProviderConfig:
    def test_codes_are_upper_cased(self):
        provider = ProviderConfig(providerName="adyen", supportedCurrencies=["usd", "eur"], supportedCountries="de")

        assert provider.supported_currencies == {"USD", "EUR"}
        assert provider.supported_countries == {"DE"}
        assert provider.supports("eur", "de")

    def test_priority_bounds(self):
        with pytest.raises(ValidationError):
            ProviderConfig(provider_name="adyen", priority=101)

    def test_defaults(self):
        provider = ProviderConfig(provider_name="adyen")

        assert provider.is_test_mode is True
        assert provider.supported_currencies == {"USD"}
        assert provider.is_routable


class TestConditionModels:
    def test_operator_aliases_are_normalized(self):
        assert RoutingCondition(field="amount", operator=">=", value=10).operator is ConditionOperator.GTE
        assert RoutingCondition(field="amount", operator="==", value=10).operator is ConditionOperator.EQ

    def test_unknown_field_rejected_at_write_time(self):
        with pytest.raises(ValidationError):
            RoutingRuleCreate(
                name="bad",
                target_provider_id="p1",
                conditions=[{"field": "merchant_category", "operator": "eq", "value": "5411"}],
            )

    def test_unknown_operator_rejected_at_write_time(self):
        with pytest.raises(ValidationError):
            RoutingCondition(field="amount", operator="between", value=[1, 2])

    def test_legacy_condition_loads_as_unrecognized(self):
        """Stored rules with bad condition data still load."""
        rule = RoutingRule.model_validate({
            "name": "legacy",
            "targetProviderId": "p1",
            "conditions": [
                {"field": "amount", "operator": "gt", "value": 10},
                {"field": "merchant_category", "operator": "eq", "value": "5411"},
                "garbage",
            ],
        })

        assert isinstance(rule.conditions[0], RoutingCondition)
        assert isinstance(rule.conditions[1], UnrecognizedCondition)
        assert isinstance(rule.conditions[2], UnrecognizedCondition)

    def test_parse_condition_keeps_tagged_unrecognized(self):
        parsed = parse_condition({"kind": "unrecognized", "field": "x", "operator": "y"})
        assert isinstance(parsed, UnrecognizedCondition)

    def test_load_balancing_weight_must_be_positive(self):
        with pytest.raises(ValidationError):
            RoutingRuleCreate(name="r", target_provider_id="p1", load_balancing_weight=0)


class TestUpdates:
    def test_empty_rule_update_is_invalid(self):
        with pytest.raises(InvalidUpdateError):
            RoutingRuleUpdate().changes()

    def test_rule_update_cannot_clear_required_field(self):
        with pytest.raises(InvalidUpdateError):
            RoutingRuleUpdate(target_provider_id=None).changes()

    def test_rule_update_keeps_only_set_fields(self):
        changes = RoutingRuleUpdate(priority=10, fallback_provider_id=None).changes()
        assert changes == {"priority": 10, "fallback_provider_id": None}

    def test_empty_webhook_update_is_invalid(self):
        with pytest.raises(InvalidUpdateError):
            WebhookUpdate().changes()


class TestWebhookState:
    def test_never_triggered_is_fresh(self):
        assert make_webhook().state is DeliveryState.FRESH

    def test_failure_after_success_is_retrying(self):
        webhook = make_webhook(
            last_triggered=BASE_TIME,
            last_success=BASE_TIME - timedelta(hours=1),
            last_failure=BASE_TIME,
            retry_count=1,
        )
        assert webhook.state is DeliveryState.RETRYING
        assert webhook.needs_retry()

    def test_exhausted_when_retries_used_up(self):
        webhook = make_webhook(last_triggered=BASE_TIME, last_failure=BASE_TIME, retry_count=3, max_retries=3)
        assert webhook.state is DeliveryState.EXHAUSTED
        assert not webhook.needs_retry()

    def test_view_hides_secret(self):
        view = make_webhook(secret="s3cret").to_view()
        dumped = view.model_dump(by_alias=True)

        assert view.has_secret is True
        assert "secret" not in dumped
        assert dumped["state"] == DeliveryState.FRESH


class TestAnalyticsFilters:
    def test_date_range_is_inclusive(self):
        event = AnalyticsEvent(
            transaction_id="t1",
            provider_name="p1",
            amount=Decimal("10"),
            status=EventStatus.SUCCESS,
            created_at=BASE_TIME,
        )

        assert AnalyticsFilters(start_date=BASE_TIME, end_date=BASE_TIME).matches(event)
        assert not AnalyticsFilters(start_date=BASE_TIME + timedelta(seconds=1)).matches(event)
