from collections import defaultdict
from datetime import datetime, timedelta
from decimal import Decimal
import logging
from typing import Callable, Optional, Union

import numpy as np

from payrouter.domain.models import (
    AnalyticsEvent,
    AnalyticsEventCreate,
    AnalyticsFilters,
    ErrorBreakdown,
    EventStatus,
    PerformanceMetrics,
    Period,
    SuccessRateStats,
    VolumeBucket,
    as_utc,
    utcnow,
)
from payrouter.domain.protocols import AnalyticsStore

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_DAYS = 90


def parse_period(period: Union[Period, str, None]) -> Period:
    try:
        return Period(period)
    except ValueError:
        return Period.DAY


def truncate(moment: datetime, period: Period) -> datetime:
    """Start of the period containing ``moment``. Weeks start on Monday."""
    moment = as_utc(moment)
    if period is Period.HOUR:
        return moment.replace(minute=0, second=0, microsecond=0)
    day_start = moment.replace(hour=0, minute=0, second=0, microsecond=0)
    if period is Period.WEEK:
        return day_start - timedelta(days=day_start.weekday())
    if period is Period.MONTH:
        return day_start.replace(day=1)
    return day_start


class AnalyticsAggregator:
    """Append-only log of provider transaction attempts and the views derived from it."""

    def __init__(self, store: AnalyticsStore, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.clock = clock

    async def record_event(self, data: AnalyticsEventCreate) -> AnalyticsEvent:
        fields = data.model_dump(exclude={"created_at"})
        created_at = as_utc(data.created_at) if data.created_at else self.clock()
        event = AnalyticsEvent(**fields, created_at=created_at)
        await self.store.append(event)
        logger.debug(
            f"Recorded {event.status.value} event for transaction {event.transaction_id} via {event.provider_name}"
        )
        return event

    async def get_events(
        self, filters: Optional[AnalyticsFilters] = None, limit: int = 100, offset: int = 0
    ) -> list[AnalyticsEvent]:
        events = await self.store.query(filters or AnalyticsFilters())
        events.reverse()
        return events[offset:offset + limit]

    async def get_success_rate_stats(self, filters: Optional[AnalyticsFilters] = None) -> list[SuccessRateStats]:
        events = await self.store.query(filters or AnalyticsFilters())
        by_provider: dict[str, list[AnalyticsEvent]] = defaultdict(list)
        for event in events:
            by_provider[event.provider_name].append(event)

        stats = []
        for provider_name, provider_events in by_provider.items():
            total = len(provider_events)
            successful = sum(1 for e in provider_events if e.status == EventStatus.SUCCESS)
            response_times = [e.response_time_ms for e in provider_events if e.response_time_ms is not None]
            stats.append(SuccessRateStats(
                provider_name=provider_name,
                total_transactions=total,
                successful_transactions=successful,
                success_rate=round(successful / total * 100, 2),
                avg_response_time=sum(response_times) / len(response_times) if response_times else None,
            ))
        return sorted(stats, key=lambda s: s.success_rate, reverse=True)

    async def get_volume_over_time(
        self, period: Union[Period, str] = Period.DAY, filters: Optional[AnalyticsFilters] = None
    ) -> list[VolumeBucket]:
        bucket_period = parse_period(period)
        events = await self.store.query(filters or AnalyticsFilters())

        buckets: dict[datetime, list[AnalyticsEvent]] = defaultdict(list)
        for event in events:
            buckets[truncate(event.created_at, bucket_period)].append(event)

        volume = []
        for start, bucket_events in buckets.items():
            total_amount = sum((e.amount for e in bucket_events), Decimal("0"))
            volume.append(VolumeBucket(
                period=start,
                transaction_count=len(bucket_events),
                total_amount=total_amount,
                avg_amount=total_amount / len(bucket_events),
                successful_count=sum(1 for e in bucket_events if e.status == EventStatus.SUCCESS),
                failed_count=sum(1 for e in bucket_events if e.status == EventStatus.FAILED),
            ))
        return sorted(volume, key=lambda b: b.period, reverse=True)

    async def get_error_analysis(self, filters: Optional[AnalyticsFilters] = None) -> list[ErrorBreakdown]:
        filters = (filters or AnalyticsFilters()).model_copy(update={"status": EventStatus.FAILED})
        failed = await self.store.query(filters)
        if not failed:
            return []

        groups: dict[tuple, int] = defaultdict(int)
        for event in failed:
            groups[(event.error_code, event.error_message, event.provider_name)] += 1

        breakdown = [
            ErrorBreakdown(
                error_code=error_code,
                error_message=error_message,
                provider_name=provider_name,
                error_count=count,
                error_percentage=round(count / len(failed) * 100, 2),
            )
            for (error_code, error_message, provider_name), count in groups.items()
        ]
        return sorted(breakdown, key=lambda b: b.error_count, reverse=True)

    async def get_performance_metrics(self, filters: Optional[AnalyticsFilters] = None) -> list[PerformanceMetrics]:
        events = await self.store.query(filters or AnalyticsFilters())
        samples: dict[str, list[float]] = defaultdict(list)
        for event in events:
            if event.response_time_ms is not None:
                samples[event.provider_name].append(event.response_time_ms)

        metrics = []
        for provider_name, values in samples.items():
            sample = np.asarray(values, dtype=float)
            p50, p95, p99 = np.percentile(sample, [50, 95, 99])
            metrics.append(PerformanceMetrics(
                provider_name=provider_name,
                total_transactions=len(sample),
                avg_response_time=float(sample.mean()),
                min_response_time=float(sample.min()),
                max_response_time=float(sample.max()),
                median_response_time=float(p50),
                p95_response_time=float(p95),
                p99_response_time=float(p99),
            ))
        return sorted(metrics, key=lambda m: m.avg_response_time)

    async def cleanup_old_data(self, days_to_keep: int = DEFAULT_RETENTION_DAYS) -> int:
        """Delete events older than the retention window. Returns how many were removed."""
        if days_to_keep < 0:
            raise ValueError("days_to_keep must not be negative")
        cutoff = self.clock() - timedelta(days=days_to_keep)
        deleted = await self.store.delete_before(cutoff)
        logger.info(f"Cleaned up {deleted} old payment analytics records older than {days_to_keep} days")
        return deleted
