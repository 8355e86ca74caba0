from datetime import date, datetime, timezone
from unittest.mock import AsyncMock

import pytest

from dora_metrics.core.enums import Aggregation, HealthStatus
from dora_metrics.core.schemas import DateRange, MetricQueryParams
from dora_metrics.services.databricks import DatabaseError
from dora_metrics.services.metrics import MetricsService, bucket_days


def cfr_row(day, total, failed):
    return {
        "deployment_date": day,
        "organization_name": "acme",
        "total_deployments": total,
        "failed_deployments": failed,
    }


@pytest.fixture
def params():
    return MetricQueryParams(
        organization_name="acme",
        start_date=datetime(2024, 1, 1, tzinfo=timezone.utc),
        end_date=datetime(2024, 1, 31, tzinfo=timezone.utc),
    )


@pytest.fixture
def warehouse(mocker):
    mock = mocker.Mock()
    mock.execute_query = AsyncMock(return_value=[])
    return mock


@pytest.fixture
def service(warehouse):
    return MetricsService(warehouse)


@pytest.mark.asyncio
async def test_failure_rate_is_weighted(service, warehouse, params):
    warehouse.execute_query.return_value = [
        cfr_row(date(2024, 1, 2), total=10, failed=1),
        cfr_row(date(2024, 1, 3), total=100, failed=50),
    ]

    response = await service.get_change_failure_rate(params)

    assert response.metric == "change_failure_rate"
    assert response.summary.overall_failure_rate == round(51 / 110 * 100, 2)
    assert response.summary.total_deployments == 110
    assert response.summary.total_failed_deployments == 51
    assert [point.failure_rate_percent for point in response.data] == [10.0, 50.0]


@pytest.mark.asyncio
async def test_counts_match_lists(service, warehouse, params):
    warehouse.execute_query.return_value = [
        {
            "deployment_date": date(2024, 1, 2),
            "organization_name": "acme",
            "deployment_count": 4,
            "projects": ["web", "api"],
            "applications": ("api-app",),
            "environments": None,
            "project_count": 7,
            "application_count": 0,
        },
        {"deployment_date": date(2024, 1, 3), "organization_name": "acme", "deployment_count": 1},
    ]

    response = await service.get_deployment_frequency(params)

    for point in response.data:
        assert point.project_count == len(point.projects)
        assert point.application_count == len(point.applications)
        assert point.environment_count == len(point.environments)
    assert response.data[0].projects == ["api", "web"]
    assert response.data[1].projects == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "method",
    [
        "get_deployment_frequency",
        "get_change_failure_rate",
        "get_lead_time_for_changes",
        "get_mean_time_to_restore",
    ],
)
async def test_empty_result_is_success(service, params, method):
    response = await getattr(service, method)(params)

    assert response.data == []
    summary = response.summary.model_dump()
    numbers = [value for key, value in summary.items() if isinstance(value, (int, float)) and key != "aggregation"]
    assert numbers and all(value == 0 for value in numbers)
    assert summary["organization_name"] == "acme"


@pytest.mark.asyncio
async def test_deployment_frequency(service, warehouse, params):
    warehouse.execute_query.return_value = [
        {"deployment_date": date(2024, 1, 20), "organization_name": "acme", "deployment_count": 20},
        {"deployment_date": date(2024, 1, 5), "organization_name": "acme", "deployment_count": 10},
    ]

    response = await service.get_deployment_frequency(params)

    assert [point.date for point in response.data] == [date(2024, 1, 5), date(2024, 1, 20)]
    assert response.summary.total_deployments == 30
    assert response.summary.average_per_day == round(30 / 31, 2)
    assert response.summary.date_range.start == params.start_date


@pytest.mark.asyncio
async def test_one_deployment_every_day_averages_one(service, warehouse, params):
    warehouse.execute_query.return_value = [
        {"deployment_date": date(2024, 1, day), "organization_name": "acme", "deployment_count": 1}
        for day in range(1, 32)
    ]

    response = await service.get_deployment_frequency(params)

    assert response.summary.total_deployments == 31
    assert response.summary.average_per_day == 1.0


@pytest.mark.parametrize(
    "start, end, days",
    [
        (datetime(2024, 1, 1), datetime(2024, 1, 31), 31),
        # a 30 day window ending mid-day touches 31 dates
        (datetime(2024, 1, 1, 15), datetime(2024, 1, 31, 15), 31),
        (datetime(2024, 1, 1, 9), datetime(2024, 1, 1, 18), 1),
    ],
)
def test_date_range_days_counts_both_ends(start, end, days):
    date_range = DateRange(start=start.replace(tzinfo=timezone.utc), end=end.replace(tzinfo=timezone.utc))

    assert date_range.days == days


@pytest.mark.asyncio
async def test_deployment_frequency_weekly(service, warehouse):
    params = MetricQueryParams(
        organization_name="acme",
        start_date=datetime(2024, 1, 1, tzinfo=timezone.utc),
        end_date=datetime(2024, 1, 10, tzinfo=timezone.utc),
        aggregation=Aggregation.WEEKLY,
    )
    warehouse.execute_query.return_value = [
        {"deployment_date": date(2024, 1, 1), "organization_name": "acme", "deployment_count": 2, "projects": ["web"]},
        {"deployment_date": date(2024, 1, 3), "organization_name": "acme", "deployment_count": 3, "projects": ["api"]},
        {"deployment_date": date(2024, 1, 8), "organization_name": "acme", "deployment_count": 4, "projects": ["web"]},
    ]

    response = await service.get_deployment_frequency(params)

    assert [point.date for point in response.data] == [date(2024, 1, 1), date(2024, 1, 8)]
    assert [point.deployment_count for point in response.data] == [5, 4]
    assert response.data[0].daily_average == round(5 / 7, 2)
    # only 3 days of the second week are inside the range
    assert response.data[1].daily_average == round(4 / 3, 2)
    assert response.data[0].projects == ["api", "web"]
    assert response.data[0].project_count == 2
    assert response.summary.total_deployments == 9


@pytest.mark.asyncio
async def test_deployment_frequency_monthly(service, warehouse):
    params = MetricQueryParams(
        organization_name="acme",
        start_date=datetime(2024, 1, 15, tzinfo=timezone.utc),
        end_date=datetime(2024, 2, 29, tzinfo=timezone.utc),
        aggregation=Aggregation.MONTHLY,
    )
    warehouse.execute_query.return_value = [
        {"deployment_date": date(2024, 1, 20), "organization_name": "acme", "deployment_count": 17},
        {"deployment_date": date(2024, 2, 2), "organization_name": "acme", "deployment_count": 29},
    ]

    response = await service.get_deployment_frequency(params)

    assert [point.date for point in response.data] == [date(2024, 1, 1), date(2024, 2, 1)]
    assert response.data[0].daily_average == 1.0
    assert response.data[1].daily_average == 1.0


def test_bucket_days():
    assert bucket_days(date(2024, 1, 1), Aggregation.WEEKLY, date(2024, 1, 1), date(2024, 12, 31)) == 7
    assert bucket_days(date(2024, 2, 1), Aggregation.MONTHLY, date(2024, 1, 1), date(2024, 12, 31)) == 29
    assert bucket_days(date(2024, 1, 1), Aggregation.MONTHLY, date(2024, 1, 10), date(2024, 1, 12)) == 3


@pytest.mark.asyncio
async def test_lead_time_overall_median_uses_raw_values(service, warehouse, params):
    warehouse.execute_query.return_value = [
        {
            "deployment_date": date(2024, 1, 2),
            "organization_name": "acme",
            "median_lead_time_hours": 2.0,
            "lead_time_samples": [1.0, 2.0, 3.0],
            "change_count": 3,
        },
        {
            "deployment_date": date(2024, 1, 3),
            "organization_name": "acme",
            "median_lead_time_hours": 10.0,
            "lead_time_samples": [10.0],
            "change_count": 1,
        },
    ]

    response = await service.get_lead_time_for_changes(params)

    # median of [1, 2, 3, 10], not the median of the per-date medians (6)
    assert response.summary.overall_median_hours == 2.5
    assert response.summary.overall_median_days == round(2.5 / 24, 2)
    assert response.summary.total_changes == 4
    assert response.data[1].lead_time_days == round(10 / 24, 2)
    assert "lead_time_samples" not in response.model_dump()["data"][0]


@pytest.mark.asyncio
async def test_mean_time_to_restore(service, warehouse, params):
    warehouse.execute_query.return_value = [
        {
            "deployment_date": date(2024, 1, 2),
            "organization_name": "acme",
            "median_hours_to_restore": 48.0,
            "restore_time_samples": [24.0, 72.0],
            "incident_count": 2,
        },
    ]

    response = await service.get_mean_time_to_restore(params)

    assert response.metric == "mean_time_to_restore"
    assert response.summary.overall_median_hours == 48.0
    assert response.summary.overall_median_days == 2.0
    assert response.summary.total_incidents == 2
    assert response.data[0].restore_time_days == 2.0


@pytest.mark.asyncio
async def test_validate_organization_access(service, warehouse):
    warehouse.execute_query.return_value = [{"found": 1}]
    assert await service.validate_organization_access("acme") is True

    warehouse.execute_query.return_value = []
    assert await service.validate_organization_access("ghost-org") is False


@pytest.mark.asyncio
async def test_available_filters_cascade(service, warehouse):
    async def execute_query(sql, organization_name=None, params=None):
        if "DISTINCT project_name" in sql:
            return [{"project_name": "web"}, {"project_name": "api"}]
        if "DISTINCT application_name" in sql:
            return [{"application_name": "web-app"}]
        return [{"environment_type": "Production"}]

    warehouse.execute_query.side_effect = execute_query

    filters = await service.get_available_filters("acme", ["web"])

    assert filters.projects == ["api", "web"]
    assert filters.applications == ["web-app"]
    assert filters.environments == ["Production"]
    scoped = {
        call.args[0].split("DISTINCT ")[1].split()[0]: call.args[2] for call in warehouse.execute_query.call_args_list
    }
    assert "project_name_0" not in scoped["project_name"]
    assert scoped["application_name"]["project_name_0"] == "web"
    assert scoped["environment_type"]["project_name_0"] == "web"


@pytest.mark.asyncio
async def test_summary(service, warehouse, params):
    async def execute_query(sql, organization_name=None, params=None):
        if "SUM(deployment_count)" in sql:
            return [{"deployment_date": date(2024, 1, 2), "organization_name": "acme", "deployment_count": 62}]
        if "SUM(failed_deployments)" in sql:
            return [cfr_row(date(2024, 1, 2), total=4, failed=1)]
        return []

    warehouse.execute_query.side_effect = execute_query

    summary = await service.get_summary(params)

    assert summary.organization_name == "acme"
    assert summary.metrics.deployment_frequency.total_deployments == 62
    assert summary.metrics.deployment_frequency.average_per_day == 2.0
    assert summary.metrics.change_failure_rate.failure_rate_percent == 25.0
    assert summary.metrics.lead_time_for_changes.median_hours == 0
    assert summary.metrics.mean_time_to_restore.median_days == 0


@pytest.mark.asyncio
async def test_summary_fails_when_any_metric_fails(service, warehouse, params):
    async def execute_query(sql, organization_name=None, params=None):
        if "lead_time_for_changes" in sql:
            raise DatabaseError("warehouse gone")
        return []

    warehouse.execute_query.side_effect = execute_query

    with pytest.raises(DatabaseError):
        await service.get_summary(params)


@pytest.mark.asyncio
async def test_organization_health(service, warehouse):
    warehouse.execute_query.side_effect = [
        [{"found": 1}],
        [{"projects_count": 3, "applications_count": 5, "environments_count": 2}],
    ]

    health = await service.get_organization_health("acme")

    assert health.status == HealthStatus.HEALTHY
    assert health.has_data is True
    assert health.data_summary.projects_count == 3
    assert health.data_summary.environments_count == 2


@pytest.mark.asyncio
async def test_organization_health_without_data(service, warehouse):
    health = await service.get_organization_health("ghost-org")

    assert health.status == HealthStatus.NO_DATA
    assert health.has_data is False
    assert health.data_summary is None


@pytest.mark.asyncio
async def test_organization_health_on_warehouse_failure(service, warehouse):
    warehouse.execute_query.side_effect = DatabaseError("connection refused")

    health = await service.get_organization_health("acme")

    assert health.status == HealthStatus.UNHEALTHY
    assert "connection refused" in health.error
