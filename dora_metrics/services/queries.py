"""
SQL statements for the DORA gold tables.

Every value reaches the warehouse as a named `:param` marker bound by the driver. Collections are
expanded here into one marker per value, since the driver binds scalars only.
"""

from typing import Any, NamedTuple

from dora_metrics.core.schemas import MetricQueryParams

DEPLOYMENT_FREQUENCY_TABLE = "deployment_frequency"
CHANGE_FAILURE_RATE_TABLE = "change_failure_rate"
LEAD_TIME_TABLE = "lead_time_for_changes"
MEAN_TIME_TO_RESTORE_TABLE = "mean_time_to_restore"

_CONTEXT_COLUMNS = """
    collect_set(project_name) AS projects,
    collect_set(application_name) AS applications,
    collect_set(environment_type) AS environments,
    size(collect_set(project_name)) AS project_count,
    size(collect_set(application_name)) AS application_count,
    size(collect_set(environment_type)) AS environment_count"""


class Statement(NamedTuple):
    sql: str
    params: dict[str, Any]


class WhereClause:
    """Accumulates AND-ed predicates together with their bound parameters."""

    def __init__(self):
        self.conditions: list[str] = []
        self.params: dict[str, Any] = {}

    def equals(self, column: str, name: str, value: Any) -> "WhereClause":
        self.conditions.append(f"{column} = :{name}")
        self.params[name] = value
        return self

    def compare(self, column: str, operator: str, name: str, value: Any) -> "WhereClause":
        self.conditions.append(f"{column} {operator} :{name}")
        self.params[name] = value
        return self

    def within(self, column: str, name: str, values: list[Any]) -> "WhereClause":
        """`column IN (...)`, skipped when there are no values."""
        if not values:
            return self
        markers = []
        for index, value in enumerate(values):
            marker = f"{name}_{index}"
            markers.append(f":{marker}")
            self.params[marker] = value
        self.conditions.append(f"{column} IN ({', '.join(markers)})")
        return self

    def render(self) -> str:
        return " AND ".join(self.conditions) if self.conditions else "1 = 1"


def metric_filters(params: MetricQueryParams) -> WhereClause:
    """Organization, date window and the selected dimensions of a metric request."""
    where = WhereClause().equals("organization_name", "organization_name", params.organization_name)
    where.compare("deployment_date", ">=", "start_date", params.start_date.date().isoformat())
    where.compare("deployment_date", "<=", "end_date", params.end_date.date().isoformat())
    where.within("project_name", "project_name", params.project_names)
    where.within("application_name", "application_name", params.application_names)
    where.within("environment_type", "environment_type", [env.value for env in params.environment_types])
    return where


def deployment_frequency_query(params: MetricQueryParams) -> Statement:
    where = metric_filters(params)
    sql = f"""
        SELECT
            deployment_date,
            organization_name,
            SUM(deployment_count) AS deployment_count,{_CONTEXT_COLUMNS}
        FROM {DEPLOYMENT_FREQUENCY_TABLE}
        WHERE {where.render()}
        GROUP BY deployment_date, organization_name
        ORDER BY deployment_date ASC
    """
    return Statement(sql, where.params)


def change_failure_rate_query(params: MetricQueryParams) -> Statement:
    where = metric_filters(params)
    sql = f"""
        SELECT
            deployment_date,
            organization_name,
            SUM(total_deployments) AS total_deployments,
            SUM(failed_deployments) AS failed_deployments,{_CONTEXT_COLUMNS}
        FROM {CHANGE_FAILURE_RATE_TABLE}
        WHERE {where.render()}
        GROUP BY deployment_date, organization_name
        ORDER BY deployment_date ASC
    """
    return Statement(sql, where.params)


def lead_time_query(params: MetricQueryParams) -> Statement:
    where = metric_filters(params)
    where.conditions.append("median_lead_time_hours > 0")
    sql = f"""
        SELECT
            deployment_date,
            organization_name,
            percentile(median_lead_time_hours, 0.5) AS median_lead_time_hours,
            collect_list(median_lead_time_hours) AS lead_time_samples,
            COUNT(*) AS change_count,{_CONTEXT_COLUMNS}
        FROM {LEAD_TIME_TABLE}
        WHERE {where.render()}
        GROUP BY deployment_date, organization_name
        ORDER BY deployment_date ASC
    """
    return Statement(sql, where.params)


def mean_time_to_restore_query(params: MetricQueryParams) -> Statement:
    where = metric_filters(params)
    where.conditions.append("median_hours_to_restore > 0")
    sql = f"""
        SELECT
            deployment_date,
            organization_name,
            percentile(median_hours_to_restore, 0.5) AS median_hours_to_restore,
            collect_list(median_hours_to_restore) AS restore_time_samples,
            COUNT(*) AS incident_count,{_CONTEXT_COLUMNS}
        FROM {MEAN_TIME_TO_RESTORE_TABLE}
        WHERE {where.render()}
        GROUP BY deployment_date, organization_name
        ORDER BY deployment_date ASC
    """
    return Statement(sql, where.params)


def distinct_values_query(
    column: str, organization_name: str, selected_projects: list[str] | None = None
) -> Statement:
    """
    Distinct non-null values of one dimension for an organization.
    With selected projects the values are limited to rows of those projects.
    """
    where = WhereClause().equals("organization_name", "organization_name", organization_name)
    where.conditions.append(f"{column} IS NOT NULL")
    where.within("project_name", "project_name", selected_projects or [])
    sql = f"""
        SELECT DISTINCT {column}
        FROM {DEPLOYMENT_FREQUENCY_TABLE}
        WHERE {where.render()}
        ORDER BY {column}
    """
    return Statement(sql, where.params)


def organization_exists_query(organization_name: str) -> Statement:
    where = WhereClause().equals("organization_name", "organization_name", organization_name)
    sql = f"SELECT 1 AS found FROM {DEPLOYMENT_FREQUENCY_TABLE} WHERE {where.render()} LIMIT 1"
    return Statement(sql, where.params)


def organization_data_summary_query(organization_name: str) -> Statement:
    where = WhereClause().equals("organization_name", "organization_name", organization_name)
    sql = f"""
        SELECT
            COUNT(DISTINCT project_name) AS projects_count,
            COUNT(DISTINCT application_name) AS applications_count,
            COUNT(DISTINCT environment_type) AS environments_count
        FROM {DEPLOYMENT_FREQUENCY_TABLE}
        WHERE {where.render()}
    """
    return Statement(sql, where.params)
