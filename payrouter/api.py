from contextlib import asynccontextmanager
from datetime import datetime
from typing import Annotated, Optional
import logging

from fastapi import Depends, FastAPI, Query, Request, HTTPException
from fastapi.responses import HTMLResponse, JSONResponse, Response
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from pyinstrument import Profiler

from payrouter.domain.analytics import AnalyticsAggregator
from payrouter.domain.background_worker import BackgroundWorker
from payrouter.domain.delivery import DeliveryTracker, WebhookNotFoundError
from payrouter.domain.models import (
    AnalyticsEvent,
    AnalyticsEventCreate,
    AnalyticsFilters,
    ErrorBreakdown,
    EventStatus,
    HealthStatus,
    InvalidUpdateError,
    PerformanceMetrics,
    Period,
    ProviderConfig,
    RoutingOutcome,
    RoutingRule,
    RoutingRuleCreate,
    RoutingRuleFilters,
    RoutingRuleStats,
    RoutingRuleUpdate,
    SuccessRateStats,
    TransactionContext,
    TriggerResult,
    VolumeBucket,
    WebhookCreate,
    WebhookFilters,
    WebhookStats,
    WebhookType,
    WebhookUpdate,
    WebhookView,
)
from payrouter.domain.protocols import StorageConflictError, StorageError
from payrouter.domain.registry import DuplicateProviderError, ProviderNotFoundError, ProviderRegistry
from payrouter.domain.routing import RoutingEngine, RoutingRuleNotFoundError

logger = logging.getLogger(__name__)


def create_app(
    registry: ProviderRegistry,
    routing_engine: RoutingEngine,
    delivery_tracker: DeliveryTracker,
    analytics: AnalyticsAggregator,
    workers: Optional[list[BackgroundWorker]] = None,
    notifier=None,
) -> FastAPI:

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        for worker in workers or []:
            worker.start()

        yield

        for worker in workers or []:
            await worker.stop()
        if notifier is not None:
            await notifier.close()

    app = FastAPI(title="Payment Provider Routing Engine", lifespan=lifespan)

    # Global exception handlers
    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unexpected error in {request.method} {request.url.path}: {str(exc)}")
        return JSONResponse(
            status_code=500,
            content={"error": "Internal server error", "detail": "An unexpected error occurred"}
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        logger.warning(f"Validation error in {request.method} {request.url.path}: {exc.errors()}")
        return JSONResponse(
            status_code=400,
            content=jsonable_encoder({"error": "Validation error", "detail": exc.errors()})
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        logger.warning(f"HTTP error in {request.method} {request.url.path}: {exc.detail}")
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail}
        )

    @app.exception_handler(InvalidUpdateError)
    async def invalid_update_handler(request: Request, exc: InvalidUpdateError):
        logger.warning(f"Invalid update in {request.method} {request.url.path}: {exc}")
        return JSONResponse(status_code=400, content={"error": "Invalid update", "detail": str(exc)})

    @app.exception_handler(RoutingRuleNotFoundError)
    @app.exception_handler(WebhookNotFoundError)
    @app.exception_handler(ProviderNotFoundError)
    async def not_found_handler(request: Request, exc: Exception):
        return JSONResponse(status_code=404, content={"error": str(exc)})

    @app.exception_handler(DuplicateProviderError)
    async def duplicate_provider_handler(request: Request, exc: DuplicateProviderError):
        return JSONResponse(status_code=409, content={"error": str(exc)})

    @app.exception_handler(StorageConflictError)
    async def storage_conflict_handler(request: Request, exc: StorageConflictError):
        logger.warning(f"Storage conflict in {request.method} {request.url.path}: {exc}")
        return JSONResponse(status_code=409, content={"error": "Concurrent update, retry the request"})

    @app.exception_handler(StorageError)
    async def storage_error_handler(request: Request, exc: StorageError):
        logger.error(f"Storage failure in {request.method} {request.url.path}: {exc}")
        return JSONResponse(status_code=503, content={"error": "Storage temporarily unavailable"})

    @app.middleware("http")
    async def profile_request(request: Request, call_next):
        profiling = request.query_params.get("profile", False)
        if profiling:
            profiler = Profiler(interval=0.0001)
            profiler.start()
            await call_next(request)
            profiler.stop()
            return HTMLResponse(profiler.output_html())
        else:
            return await call_next(request)

    # Routing

    @app.post("/route", response_model=RoutingOutcome)
    async def route(
        context: TransactionContext,
        test_mode: Annotated[Optional[bool], Query(alias="testMode")] = None,
    ):
        return await routing_engine.select_provider(context, test_mode=test_mode)

    # Providers

    @app.get("/providers", response_model=list[ProviderConfig])
    async def list_providers():
        return await registry.list_providers()

    @app.put("/providers/{provider_id}", response_model=ProviderConfig)
    async def save_provider(provider_id: str, provider: ProviderConfig):
        return await registry.save_provider(provider.model_copy(update={"id": provider_id}))

    @app.post("/providers/{provider_id}/health/{status}", response_model=ProviderConfig)
    async def set_provider_health(provider_id: str, status: HealthStatus):
        return await registry.set_health_status(provider_id, status)

    @app.delete("/providers/{provider_id}", status_code=204)
    async def delete_provider(provider_id: str):
        await registry.delete_provider(provider_id)
        return Response(status_code=204)

    # Routing rules

    @app.get("/rules", response_model=list[RoutingRule])
    async def list_rules(
        is_active: Annotated[Optional[bool], Query(alias="isActive")] = None,
        target_provider_id: Annotated[Optional[str], Query(alias="targetProviderId")] = None,
        provider_name: Annotated[Optional[str], Query(alias="providerName")] = None,
        limit: Annotated[int, Query(ge=1, le=500)] = 20,
        offset: Annotated[int, Query(ge=0)] = 0,
    ):
        filters = RoutingRuleFilters(
            is_active=is_active, target_provider_id=target_provider_id, provider_name=provider_name
        )
        return await routing_engine.list_rules(filters, limit, offset)

    @app.post("/rules", response_model=RoutingRule, status_code=201)
    async def create_rule(rule: RoutingRuleCreate):
        return await routing_engine.create_rule(rule)

    @app.get("/rules/stats", response_model=list[RoutingRuleStats])
    async def routing_stats(
        start_date: Annotated[Optional[datetime], Query(alias="startDate")] = None,
        end_date: Annotated[Optional[datetime], Query(alias="endDate")] = None,
    ):
        return await routing_engine.get_routing_stats(AnalyticsFilters(start_date=start_date, end_date=end_date))

    @app.post("/rules/match", response_model=list[RoutingRule])
    async def match_rules(context: TransactionContext):
        return await routing_engine.find_matching_rules(context)

    @app.get("/rules/{rule_id}", response_model=RoutingRule)
    async def get_rule(rule_id: str):
        return await routing_engine.get_rule(rule_id)

    @app.patch("/rules/{rule_id}", response_model=RoutingRule)
    async def update_rule(
        rule_id: str,
        update: RoutingRuleUpdate,
        updated_by: Annotated[Optional[str], Query(alias="updatedBy")] = None,
    ):
        return await routing_engine.update_rule(rule_id, update, updated_by)

    @app.delete("/rules/{rule_id}", status_code=204)
    async def delete_rule(rule_id: str):
        await routing_engine.delete_rule(rule_id)
        return Response(status_code=204)

    # Webhooks

    @app.get("/webhooks", response_model=list[WebhookView])
    async def list_webhooks(
        config_id: Annotated[Optional[str], Query(alias="configId")] = None,
        webhook_type: Annotated[Optional[WebhookType], Query(alias="webhookType")] = None,
        is_active: Annotated[Optional[bool], Query(alias="isActive")] = None,
        limit: Annotated[int, Query(ge=1, le=500)] = 20,
        offset: Annotated[int, Query(ge=0)] = 0,
    ):
        filters = WebhookFilters(config_id=config_id, webhook_type=webhook_type, is_active=is_active)
        webhooks = await delivery_tracker.list_webhooks(filters, limit, offset)
        return [webhook.to_view() for webhook in webhooks]

    @app.post("/webhooks", response_model=WebhookView, status_code=201)
    async def create_webhook(webhook: WebhookCreate):
        return (await delivery_tracker.create_webhook(webhook)).to_view()

    @app.get("/webhooks/due", response_model=list[WebhookView])
    async def webhooks_due_for_retry():
        return [webhook.to_view() for webhook in await delivery_tracker.due_for_retry()]

    @app.get("/webhooks/stats", response_model=WebhookStats)
    async def webhook_stats(config_id: Annotated[Optional[str], Query(alias="configId")] = None):
        return await delivery_tracker.webhook_stats(config_id)

    @app.get("/webhooks/{webhook_id}", response_model=WebhookView)
    async def get_webhook(webhook_id: str):
        return (await delivery_tracker.get_webhook(webhook_id)).to_view()

    @app.patch("/webhooks/{webhook_id}", response_model=WebhookView)
    async def update_webhook(webhook_id: str, update: WebhookUpdate):
        return (await delivery_tracker.update_webhook(webhook_id, update)).to_view()

    @app.delete("/webhooks/{webhook_id}", status_code=204)
    async def delete_webhook(webhook_id: str):
        await delivery_tracker.delete_webhook(webhook_id)
        return Response(status_code=204)

    @app.post("/webhooks/{webhook_id}/trigger", response_model=WebhookView)
    async def record_trigger(webhook_id: str, result: TriggerResult):
        webhook = await delivery_tracker.record_trigger(webhook_id, result.success, result.failure_reason)
        return webhook.to_view()

    @app.post("/webhooks/{webhook_id}/reset", response_model=WebhookView)
    async def reset_retries(webhook_id: str):
        return (await delivery_tracker.reset_retries(webhook_id)).to_view()

    # Analytics

    def analytics_filters(
        provider_name: Annotated[Optional[str], Query(alias="providerName")] = None,
        config_id: Annotated[Optional[str], Query(alias="configId")] = None,
        status: Annotated[Optional[EventStatus], Query()] = None,
        start_date: Annotated[Optional[datetime], Query(alias="startDate")] = None,
        end_date: Annotated[Optional[datetime], Query(alias="endDate")] = None,
    ) -> AnalyticsFilters:
        return AnalyticsFilters(
            provider_name=provider_name,
            config_id=config_id,
            status=status,
            start_date=start_date,
            end_date=end_date,
        )

    AnalyticsQuery = Annotated[AnalyticsFilters, Depends(analytics_filters)]

    @app.post("/analytics/events", response_model=AnalyticsEvent, status_code=201)
    async def record_event(event: AnalyticsEventCreate):
        return await analytics.record_event(event)

    @app.get("/analytics/events", response_model=list[AnalyticsEvent])
    async def list_events(
        filters: AnalyticsQuery,
        limit: Annotated[int, Query(ge=1, le=1000)] = 100,
        offset: Annotated[int, Query(ge=0)] = 0,
    ):
        return await analytics.get_events(filters, limit, offset)

    @app.delete("/analytics/events")
    async def cleanup_events(days_to_keep: Annotated[int, Query(alias="daysToKeep", ge=0)] = 90):
        deleted = await analytics.cleanup_old_data(days_to_keep)
        return {"deleted": deleted, "daysToKeep": days_to_keep}

    @app.get("/analytics/success-rate", response_model=list[SuccessRateStats])
    async def success_rate(filters: AnalyticsQuery):
        return await analytics.get_success_rate_stats(filters)

    @app.get("/analytics/volume", response_model=list[VolumeBucket])
    async def volume_over_time(filters: AnalyticsQuery, period: str = Period.DAY.value):
        return await analytics.get_volume_over_time(period, filters)

    @app.get("/analytics/errors", response_model=list[ErrorBreakdown])
    async def error_analysis(filters: AnalyticsQuery):
        return await analytics.get_error_analysis(filters)

    @app.get("/analytics/performance", response_model=list[PerformanceMetrics])
    async def performance_metrics(filters: AnalyticsQuery):
        return await analytics.get_performance_metrics(filters)

    return app
