from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


class CamelModel(BaseModel):
    """Base model: snake_case attributes, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# Custom exceptions
class InvalidUpdateError(ValueError):
    """Raised when an update request carries no valid fields."""
    pass


# Providers

class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


ROUTABLE_HEALTH = {HealthStatus.HEALTHY, HealthStatus.UNKNOWN}


def _upper_codes(codes) -> set[str]:
    if isinstance(codes, str):
        codes = [codes]
    return {str(code).strip().upper() for code in codes if str(code).strip()}


class ProviderConfig(CamelModel):
    id: str = Field(default_factory=new_id)
    provider_name: Annotated[str, Field(min_length=1)]
    provider_type: Optional[str] = None
    is_active: bool = True
    is_test_mode: bool = True
    priority: Annotated[int, Field(ge=0, le=100)] = 0
    supported_currencies: set[str] = Field(default_factory=lambda: {"USD"})
    supported_countries: set[str] = Field(default_factory=lambda: {"US"})
    health_status: HealthStatus = HealthStatus.UNKNOWN
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    @field_validator("supported_currencies", "supported_countries", mode="before")
    @classmethod
    def normalize_codes(cls, value):
        return _upper_codes(value)

    def supports(self, currency: str, country: str) -> bool:
        return currency.upper() in self.supported_currencies and country.upper() in self.supported_countries

    @property
    def is_routable(self) -> bool:
        return self.health_status in ROUTABLE_HEALTH


# Routing rules

class ConditionField(str, Enum):
    AMOUNT = "amount"
    CURRENCY = "currency"
    COUNTRY = "country"
    USER_ID = "user_id"
    PAYMENT_METHOD = "payment_method"
    RISK_SCORE = "risk_score"


class ConditionOperator(str, Enum):
    EQ = "eq"
    NE = "ne"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    IN = "in"
    NOT_IN = "not_in"
    CONTAINS = "contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    REGEX = "regex"


OPERATOR_ALIASES = {
    "=": ConditionOperator.EQ,
    "==": ConditionOperator.EQ,
    "!=": ConditionOperator.NE,
    ">": ConditionOperator.GT,
    ">=": ConditionOperator.GTE,
    "<": ConditionOperator.LT,
    "<=": ConditionOperator.LTE,
}


class RoutingCondition(BaseModel):
    """A single comparison over one of the known transaction fields."""

    kind: Literal["condition"] = "condition"
    field: ConditionField
    operator: ConditionOperator
    value: Any = None

    @field_validator("operator", mode="before")
    @classmethod
    def resolve_alias(cls, value):
        if isinstance(value, str):
            return OPERATOR_ALIASES.get(value.strip(), value.strip().lower())
        return value


class UnrecognizedCondition(BaseModel):
    """Persisted condition data with an unknown field or operator. Never matches."""

    kind: Literal["unrecognized"] = "unrecognized"
    field: Any = None
    operator: Any = None
    value: Any = None


Condition = Annotated[Union[RoutingCondition, UnrecognizedCondition], Field(discriminator="kind")]


def parse_condition(item: Any) -> Union[RoutingCondition, UnrecognizedCondition]:
    """Parse stored condition data, keeping anything invalid as unrecognized."""
    if isinstance(item, (RoutingCondition, UnrecognizedCondition)):
        return item
    if not isinstance(item, dict):
        return UnrecognizedCondition(value=item)
    if item.get("kind") == "unrecognized":
        return UnrecognizedCondition.model_validate(item)
    data = {key: value for key, value in item.items() if key != "kind"}
    try:
        return RoutingCondition.model_validate(data)
    except ValueError:
        return UnrecognizedCondition(
            field=item.get("field"), operator=item.get("operator"), value=item.get("value")
        )


class RoutingRule(CamelModel):
    id: str = Field(default_factory=new_id)
    name: Annotated[str, Field(min_length=1)]
    description: Optional[str] = None
    conditions: list[Condition] = Field(default_factory=list)
    priority: int = 0
    is_active: bool = True
    target_provider_id: str
    fallback_provider_id: Optional[str] = None
    load_balancing_weight: Annotated[float, Field(gt=0)] = 1.0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
    created_by: Optional[str] = None
    updated_by: Optional[str] = None

    @field_validator("conditions", mode="before")
    @classmethod
    def tag_conditions(cls, value):
        if not isinstance(value, list):
            return value
        return [parse_condition(item) for item in value]


class RoutingRuleCreate(CamelModel):
    name: Annotated[str, Field(min_length=1)]
    description: Optional[str] = None
    conditions: list[RoutingCondition] = Field(default_factory=list)
    priority: int = 0
    is_active: bool = True
    target_provider_id: str
    fallback_provider_id: Optional[str] = None
    load_balancing_weight: Annotated[float, Field(gt=0)] = 1.0
    created_by: Optional[str] = None


class RoutingRuleUpdate(CamelModel):
    name: Optional[Annotated[str, Field(min_length=1)]] = None
    description: Optional[str] = None
    conditions: Optional[list[RoutingCondition]] = None
    priority: Optional[int] = None
    is_active: Optional[bool] = None
    target_provider_id: Optional[str] = None
    fallback_provider_id: Optional[str] = None
    load_balancing_weight: Optional[Annotated[float, Field(gt=0)]] = None

    def changes(self) -> dict:
        changes = self.model_dump(exclude_unset=True)
        for key in ("name", "conditions", "priority", "is_active", "target_provider_id", "load_balancing_weight"):
            if key in changes and changes[key] is None:
                raise InvalidUpdateError(f"Field {key} cannot be cleared")
        if not changes:
            raise InvalidUpdateError("No valid fields to update")
        if "conditions" in changes:
            changes["conditions"] = list(self.conditions)
        return changes


class RoutingRuleFilters(CamelModel):
    is_active: Optional[bool] = None
    target_provider_id: Optional[str] = None
    provider_name: Optional[str] = None


class TransactionContext(CamelModel):
    amount: Decimal
    currency: str = "USD"
    country: str = "US"
    user_id: Optional[str] = None
    payment_method: Optional[str] = None
    risk_score: float = 0.0


class SelectionReason(str, Enum):
    RULE = "rule"
    RULE_FALLBACK = "rule_fallback"
    PRIORITY_FALLBACK = "priority_fallback"


class ProviderSelection(CamelModel):
    outcome: Literal["selected"] = "selected"
    provider: ProviderConfig
    reason: SelectionReason
    rule_id: Optional[str] = None
    rule_name: Optional[str] = None


class NoProviderAvailable(CamelModel):
    outcome: Literal["no_provider"] = "no_provider"
    reason: str


RoutingOutcome = Annotated[Union[ProviderSelection, NoProviderAvailable], Field(discriminator="outcome")]


class RoutingRuleStats(CamelModel):
    rule_id: str
    rule_name: str
    provider_name: Optional[str] = None
    transaction_count: int
    total_amount: Decimal
    avg_response_time: Optional[float] = None
    successful_transactions: int
    success_rate: float


# Webhooks

class WebhookType(str, Enum):
    PAYMENT_INTENT = "payment_intent"
    PAYMENT_METHOD = "payment_method"
    INVOICE = "invoice"
    CUSTOMER = "customer"
    DISPUTE = "dispute"
    PAYOUT = "payout"


class DeliveryState(str, Enum):
    FRESH = "fresh"
    HEALTHY = "healthy"
    RETRYING = "retrying"
    EXHAUSTED = "exhausted"


class WebhookRecord(CamelModel):
    id: str = Field(default_factory=new_id)
    config_id: str
    webhook_type: WebhookType
    event_type: Annotated[str, Field(min_length=1)]
    provider_webhook_id: Optional[str] = None
    url: Annotated[str, Field(min_length=1)]
    secret: Optional[str] = None
    is_active: bool = True
    retry_count: Annotated[int, Field(ge=0)] = 0
    max_retries: Annotated[int, Field(ge=0)] = 3
    last_triggered: Optional[datetime] = None
    last_success: Optional[datetime] = None
    last_failure: Optional[datetime] = None
    failure_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    @property
    def failure_is_latest(self) -> bool:
        if self.last_failure is None:
            return False
        return self.last_success is None or self.last_failure > self.last_success

    @property
    def state(self) -> DeliveryState:
        if self.last_triggered is None:
            return DeliveryState.FRESH
        if self.last_success is not None and not self.failure_is_latest:
            return DeliveryState.HEALTHY
        if not self.failure_is_latest:
            return DeliveryState.FRESH
        if self.retry_count < self.max_retries:
            return DeliveryState.RETRYING
        return DeliveryState.EXHAUSTED

    def needs_retry(self) -> bool:
        return self.state is DeliveryState.RETRYING

    def to_view(self) -> "WebhookView":
        data = self.model_dump(exclude={"secret"})
        return WebhookView(**data, has_secret=bool(self.secret), state=self.state)


class WebhookView(CamelModel):
    """Webhook projection safe for untrusted consumers."""

    id: str
    config_id: str
    webhook_type: WebhookType
    event_type: str
    provider_webhook_id: Optional[str] = None
    url: str
    has_secret: bool
    is_active: bool
    retry_count: int
    max_retries: int
    last_triggered: Optional[datetime] = None
    last_success: Optional[datetime] = None
    last_failure: Optional[datetime] = None
    failure_reason: Optional[str] = None
    state: DeliveryState
    created_at: datetime
    updated_at: Optional[datetime] = None


class WebhookCreate(CamelModel):
    config_id: str
    webhook_type: WebhookType
    event_type: Annotated[str, Field(min_length=1)]
    provider_webhook_id: Optional[str] = None
    url: Annotated[str, Field(min_length=1)]
    secret: Optional[str] = None
    is_active: bool = True
    max_retries: Annotated[int, Field(ge=0)] = 3


class WebhookUpdate(CamelModel):
    webhook_type: Optional[WebhookType] = None
    event_type: Optional[Annotated[str, Field(min_length=1)]] = None
    provider_webhook_id: Optional[str] = None
    url: Optional[Annotated[str, Field(min_length=1)]] = None
    secret: Optional[str] = None
    is_active: Optional[bool] = None
    max_retries: Optional[Annotated[int, Field(ge=0)]] = None

    def changes(self) -> dict:
        changes = self.model_dump(exclude_unset=True)
        for key in ("webhook_type", "event_type", "url", "is_active", "max_retries"):
            if key in changes and changes[key] is None:
                raise InvalidUpdateError(f"Field {key} cannot be cleared")
        if not changes:
            raise InvalidUpdateError("No valid fields to update")
        return changes


class WebhookFilters(CamelModel):
    config_id: Optional[str] = None
    webhook_type: Optional[WebhookType] = None
    is_active: Optional[bool] = None


class TriggerResult(CamelModel):
    success: bool
    failure_reason: Optional[str] = None


class WebhookStats(CamelModel):
    total_webhooks: int = 0
    active_webhooks: int = 0
    successful_webhooks: int = 0
    failed_webhooks: int = 0
    max_retries_reached: int = 0


# Analytics

class EventStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    PENDING = "pending"


class AnalyticsEventCreate(CamelModel):
    config_id: Optional[str] = None
    transaction_id: Annotated[str, Field(min_length=1)]
    provider_name: Annotated[str, Field(min_length=1)]
    amount: Decimal
    currency: str = "USD"
    status: EventStatus
    response_time_ms: Optional[Annotated[float, Field(ge=0)]] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None


class AnalyticsEvent(CamelModel):
    id: str = Field(default_factory=new_id)
    config_id: Optional[str] = None
    transaction_id: str
    provider_name: str
    amount: Decimal
    currency: str = "USD"
    status: EventStatus
    response_time_ms: Optional[float] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class AnalyticsFilters(CamelModel):
    provider_name: Optional[str] = None
    config_id: Optional[str] = None
    status: Optional[EventStatus] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    def matches(self, event: AnalyticsEvent) -> bool:
        if self.provider_name is not None and event.provider_name != self.provider_name:
            return False
        if self.config_id is not None and event.config_id != self.config_id:
            return False
        if self.status is not None and event.status != self.status:
            return False
        if self.start_date is not None and event.created_at < as_utc(self.start_date):
            return False
        if self.end_date is not None and event.created_at > as_utc(self.end_date):
            return False
        return True


class Period(str, Enum):
    HOUR = "hour"
    DAY = "day"
    WEEK = "week"
    MONTH = "month"


class SuccessRateStats(CamelModel):
    provider_name: str
    total_transactions: int
    successful_transactions: int
    success_rate: float
    avg_response_time: Optional[float] = None


class VolumeBucket(CamelModel):
    period: datetime
    transaction_count: int
    total_amount: Decimal
    avg_amount: Decimal
    successful_count: int
    failed_count: int


class ErrorBreakdown(CamelModel):
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    provider_name: str
    error_count: int
    error_percentage: float


class PerformanceMetrics(CamelModel):
    provider_name: str
    total_transactions: int
    avg_response_time: float
    min_response_time: float
    max_response_time: float
    median_response_time: float
    p95_response_time: float
    p99_response_time: float


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
