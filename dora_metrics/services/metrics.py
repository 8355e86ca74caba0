import asyncio
import calendar
import logging
from collections.abc import Callable
from datetime import date, datetime, timedelta, timezone
from typing import Any

from dora_metrics.core.enums import Aggregation, HealthStatus
from dora_metrics.core.schemas import (
    AvailableFilters,
    ChangeFailureRateFigures,
    ChangeFailureRatePoint,
    ChangeFailureRateResponse,
    ChangeFailureRateSummary,
    DeploymentFrequencyFigures,
    DeploymentFrequencyPoint,
    DeploymentFrequencyResponse,
    DeploymentFrequencySummary,
    DoraMetricsFigures,
    DoraSummaryResponse,
    LeadTimePoint,
    LeadTimeResponse,
    LeadTimeSummary,
    MeanTimeToRestorePoint,
    MeanTimeToRestoreResponse,
    MeanTimeToRestoreSummary,
    MedianDurationFigures,
    MetricQueryParams,
    OrganizationDataSummary,
    OrganizationHealthResponse,
)
from dora_metrics.services import queries
from dora_metrics.services.databricks import DatabaseError, WarehouseConnectionManager
from dora_metrics.services.queries import Statement
from dora_metrics.utilities.stats import hours_to_days, median

logger = logging.getLogger(__name__)


def _to_int(value: Any) -> int:
    return int(value) if value is not None else 0


def _to_float(value: Any) -> float:
    return float(value) if value is not None else 0.0


def _ratio_percent(part: float, whole: float) -> float:
    return round(part / whole * 100, 2) if whole else 0.0


def _context(row: dict[str, Any]) -> dict[str, Any]:
    return {
        "projects": row.get("projects"),
        "applications": row.get("applications"),
        "environments": row.get("environments"),
    }


def bucket_start(day: date, aggregation: Aggregation) -> date:
    """First day of the bucket a date falls in; weeks start on Monday."""
    if aggregation == Aggregation.WEEKLY:
        return day - timedelta(days=day.weekday())
    if aggregation == Aggregation.MONTHLY:
        return day.replace(day=1)
    return day


def bucket_end(start: date, aggregation: Aggregation) -> date:
    if aggregation == Aggregation.WEEKLY:
        return start + timedelta(days=6)
    if aggregation == Aggregation.MONTHLY:
        return start.replace(day=calendar.monthrange(start.year, start.month)[1])
    return start


def bucket_days(start: date, aggregation: Aggregation, range_start: date, range_end: date) -> int:
    """Days of a bucket that lie inside the requested range, never less than one."""
    first = max(start, range_start)
    last = min(bucket_end(start, aggregation), range_end)
    return max(1, (last - first).days + 1)


def aggregate_deployment_frequency(
    points: list[DeploymentFrequencyPoint], aggregation: Aggregation, range_start: date, range_end: date
) -> list[DeploymentFrequencyPoint]:
    """
    Roll daily points up into weekly or monthly buckets.

    Counts are summed, the context lists are merged and the daily average is taken over
    the bucket days that fall inside the requested range.
    """
    if aggregation == Aggregation.DAILY:
        return points

    buckets: dict[date, list[DeploymentFrequencyPoint]] = {}
    for point in points:
        buckets.setdefault(bucket_start(point.date, aggregation), []).append(point)

    aggregated = []
    for start in sorted(buckets):
        members = buckets[start]
        count = sum(point.deployment_count for point in members)
        aggregated.append(
            DeploymentFrequencyPoint(
                date=start,
                organization_name=members[0].organization_name,
                deployment_count=count,
                daily_average=round(count / bucket_days(start, aggregation, range_start, range_end), 2),
                projects=[name for point in members for name in point.projects],
                applications=[name for point in members for name in point.applications],
                environments=[name for point in members for name in point.environments],
            )
        )
    return aggregated


class MetricsService:
    """
    Computes the four DORA metrics of an organization from the gold tables of the warehouse.
    """

    def __init__(self, warehouse: WarehouseConnectionManager):
        self.warehouse = warehouse

    async def _fetch(self, statement: Statement, organization_name: str) -> list[dict[str, Any]]:
        return await self.warehouse.execute_query(statement.sql, organization_name, statement.params)

    async def _fetch_points(
        self, statement: Statement, params: MetricQueryParams, to_point: Callable[[dict[str, Any]], Any]
    ) -> list:
        rows = await self._fetch(statement, params.organization_name)
        points = [to_point(row) for row in rows]
        return sorted(points, key=lambda point: point.date)

    async def get_deployment_frequency(self, params: MetricQueryParams) -> DeploymentFrequencyResponse:
        """
        Deployments per date (or per week/month) with the total and the average per day of the range.

        :param params: validated request parameters
        :return: DeploymentFrequencyResponse
        """

        def to_point(row: dict[str, Any]) -> DeploymentFrequencyPoint:
            count = _to_int(row.get("deployment_count"))
            return DeploymentFrequencyPoint(
                date=row["deployment_date"],
                organization_name=row.get("organization_name") or params.organization_name,
                deployment_count=count,
                daily_average=float(count),
                **_context(row),
            )

        points = await self._fetch_points(queries.deployment_frequency_query(params), params, to_point)
        total = sum(point.deployment_count for point in points)
        points = aggregate_deployment_frequency(
            points, params.aggregation, params.start_date.date(), params.end_date.date()
        )
        date_range = params.date_range
        summary = DeploymentFrequencySummary(
            organization_name=params.organization_name,
            date_range=date_range,
            filters_applied=params.filters_applied(),
            total_deployments=total,
            average_per_day=round(total / date_range.days, 2),
            aggregation=params.aggregation,
        )
        logger.info(
            "Deployment frequency for %s: %d points, %d deployments",
            params.organization_name,
            len(points),
            total,
        )
        return DeploymentFrequencyResponse(data=points, summary=summary)

    async def get_change_failure_rate(self, params: MetricQueryParams) -> ChangeFailureRateResponse:
        """
        Failure rate per date and overall, the overall rate being weighted by the number of deployments.
        """

        def to_point(row: dict[str, Any]) -> ChangeFailureRatePoint:
            total = _to_int(row.get("total_deployments"))
            failed = _to_int(row.get("failed_deployments"))
            return ChangeFailureRatePoint(
                date=row["deployment_date"],
                organization_name=row.get("organization_name") or params.organization_name,
                total_deployments=total,
                failed_deployments=failed,
                failure_rate_percent=_ratio_percent(failed, total),
                **_context(row),
            )

        points = await self._fetch_points(queries.change_failure_rate_query(params), params, to_point)
        total = sum(point.total_deployments for point in points)
        failed = sum(point.failed_deployments for point in points)
        summary = ChangeFailureRateSummary(
            organization_name=params.organization_name,
            date_range=params.date_range,
            filters_applied=params.filters_applied(),
            overall_failure_rate=_ratio_percent(failed, total),
            total_deployments=total,
            total_failed_deployments=failed,
        )
        logger.info("Change failure rate for %s: %d/%d failed", params.organization_name, failed, total)
        return ChangeFailureRateResponse(data=points, summary=summary)

    async def get_lead_time_for_changes(self, params: MetricQueryParams) -> LeadTimeResponse:
        def to_point(row: dict[str, Any]) -> LeadTimePoint:
            hours = round(_to_float(row.get("median_lead_time_hours")), 2)
            samples = row.get("lead_time_samples")
            return LeadTimePoint(
                date=row["deployment_date"],
                organization_name=row.get("organization_name") or params.organization_name,
                median_lead_time_hours=hours,
                lead_time_days=hours_to_days(hours),
                change_count=_to_int(row.get("change_count")),
                lead_time_samples=samples,
                **_context(row),
            )

        points = await self._fetch_points(queries.lead_time_query(params), params, to_point)
        overall = round(
            self._overall_median(points, "lead_time_samples", "median_lead_time_hours"),
            2,
        )
        summary = LeadTimeSummary(
            organization_name=params.organization_name,
            date_range=params.date_range,
            filters_applied=params.filters_applied(),
            overall_median_hours=overall,
            overall_median_days=hours_to_days(overall),
            total_changes=sum(point.change_count for point in points),
        )
        return LeadTimeResponse(data=points, summary=summary)

    async def get_mean_time_to_restore(self, params: MetricQueryParams) -> MeanTimeToRestoreResponse:
        def to_point(row: dict[str, Any]) -> MeanTimeToRestorePoint:
            hours = round(_to_float(row.get("median_hours_to_restore")), 2)
            return MeanTimeToRestorePoint(
                date=row["deployment_date"],
                organization_name=row.get("organization_name") or params.organization_name,
                median_hours_to_restore=hours,
                restore_time_days=hours_to_days(hours),
                incident_count=_to_int(row.get("incident_count")),
                restore_time_samples=row.get("restore_time_samples"),
                **_context(row),
            )

        points = await self._fetch_points(queries.mean_time_to_restore_query(params), params, to_point)
        overall = round(
            self._overall_median(points, "restore_time_samples", "median_hours_to_restore"),
            2,
        )
        summary = MeanTimeToRestoreSummary(
            organization_name=params.organization_name,
            date_range=params.date_range,
            filters_applied=params.filters_applied(),
            overall_median_hours=overall,
            overall_median_days=hours_to_days(overall),
            total_incidents=sum(point.incident_count for point in points),
        )
        return MeanTimeToRestoreResponse(data=points, summary=summary)

    @staticmethod
    def _overall_median(points: list, samples_field: str, median_field: str) -> float:
        """
        Median over every underlying value of the range.
        Rows without raw values contribute their per-date median instead.
        """
        values: list[float] = []
        for point in points:
            samples = getattr(point, samples_field)
            values.extend(samples if samples else [getattr(point, median_field)])
        return median(values)

    async def get_summary(self, params: MetricQueryParams) -> DoraSummaryResponse:
        """
        All four metrics for the same filters, fetched concurrently. Any failure fails the summary.
        """
        deployment_frequency, change_failure_rate, lead_time, time_to_restore = await asyncio.gather(
            self.get_deployment_frequency(params),
            self.get_change_failure_rate(params),
            self.get_lead_time_for_changes(params),
            self.get_mean_time_to_restore(params),
        )
        return DoraSummaryResponse(
            organization_name=params.organization_name,
            date_range=params.date_range,
            metrics=DoraMetricsFigures(
                deployment_frequency=DeploymentFrequencyFigures(
                    average_per_day=deployment_frequency.summary.average_per_day,
                    total_deployments=deployment_frequency.summary.total_deployments,
                ),
                change_failure_rate=ChangeFailureRateFigures(
                    failure_rate_percent=change_failure_rate.summary.overall_failure_rate,
                    total_deployments=change_failure_rate.summary.total_deployments,
                    failed_deployments=change_failure_rate.summary.total_failed_deployments,
                ),
                lead_time_for_changes=MedianDurationFigures(
                    median_hours=lead_time.summary.overall_median_hours,
                    median_days=lead_time.summary.overall_median_days,
                ),
                mean_time_to_restore=MedianDurationFigures(
                    median_hours=time_to_restore.summary.overall_median_hours,
                    median_days=time_to_restore.summary.overall_median_days,
                ),
            ),
            filters_applied=params.filters_applied(),
        )

    async def validate_organization_access(self, organization_name: str) -> bool:
        """
        Whether the warehouse holds any data for the organization.
        Warehouse failures propagate; they are not a denial.
        """
        rows = await self._fetch(queries.organization_exists_query(organization_name), organization_name)
        has_data = len(rows) > 0
        if not has_data:
            logger.warning("No data found for organization %s", organization_name)
        return has_data

    async def _distinct(self, column: str, organization_name: str, selected_projects: list[str] | None) -> list[str]:
        rows = await self._fetch(
            queries.distinct_values_query(column, organization_name, selected_projects), organization_name
        )
        return sorted({row[column] for row in rows if row.get(column) is not None})

    async def get_available_filters(
        self, organization_name: str, selected_projects: list[str] | None = None
    ) -> AvailableFilters:
        """
        Distinct values of every filter dimension.

        Projects are never narrowed; applications and environments are limited to the
        selected projects when there are any.
        """
        projects, applications, environments = await asyncio.gather(
            self._distinct("project_name", organization_name, None),
            self._distinct("application_name", organization_name, selected_projects),
            self._distinct("environment_type", organization_name, selected_projects),
        )
        logger.info(
            "Available filters for %s: %d projects, %d applications, %d environments",
            organization_name,
            len(projects),
            len(applications),
            len(environments),
        )
        return AvailableFilters(projects=projects, applications=applications, environments=environments)

    async def get_organization_health(self, organization_name: str) -> OrganizationHealthResponse:
        """
        Data availability of an organization.
        A warehouse failure is reported as an unhealthy status rather than raised.
        """
        now = datetime.now(timezone.utc)
        try:
            has_data = await self.validate_organization_access(organization_name)
            if not has_data:
                return OrganizationHealthResponse(
                    organization_name=organization_name, status=HealthStatus.NO_DATA, has_data=False, timestamp=now
                )
            rows = await self._fetch(queries.organization_data_summary_query(organization_name), organization_name)
        except DatabaseError as exc:
            logger.error("Health check failed for organization %s: %s", organization_name, exc)
            return OrganizationHealthResponse(
                organization_name=organization_name,
                status=HealthStatus.UNHEALTHY,
                has_data=False,
                error=str(exc),
                timestamp=now,
            )

        counts = rows[0] if rows else {}
        return OrganizationHealthResponse(
            organization_name=organization_name,
            status=HealthStatus.HEALTHY,
            has_data=True,
            data_summary=OrganizationDataSummary(
                projects_count=_to_int(counts.get("projects_count")),
                applications_count=_to_int(counts.get("applications_count")),
                environments_count=_to_int(counts.get("environments_count")),
            ),
            timestamp=now,
        )
