import logging
from collections.abc import Iterable, Mapping
from datetime import datetime, timedelta, timezone
from typing import Annotated, Any

from fastapi import Depends, Query, Request

from dora_metrics.core.enums import Aggregation, EnvironmentType, TimeRange
from dora_metrics.core.schemas import MetricQueryParams
from dora_metrics.exceptions import ValidationError

logger = logging.getLogger(__name__)

MAX_RANGE_DAYS = 730
DEFAULT_TIME_RANGE = TimeRange.THIRTY_DAYS
MULTI_VALUE_FIELDS = ("projectName", "applicationName", "environmentType")


def normalize_multi_value(value: Any) -> list[str]:
    """
    Normalize a filter that may arrive as a scalar or as a repeated key into a de-duplicated list.
    Order of first appearance is kept; blanks are dropped.
    """
    if value is None:
        return []
    values: Iterable[Any] = [value] if isinstance(value, str) else value
    normalized: list[str] = []
    for item in values:
        if item is None:
            continue
        item = str(item).strip()
        if item and item not in normalized:
            normalized.append(item)
    return normalized


def merge_path_params(query: Mapping[str, Any], path: Mapping[str, Any]) -> dict[str, Any]:
    """
    Fill the fields missing from the query string with the path parameters.
    An explicit query value is never overwritten.
    """
    merged = dict(query)
    for key, value in path.items():
        if merged.get(key) in (None, "", []):
            merged[key] = value
    return merged


def parse_instant(value: str | datetime, field: str) -> datetime:
    """Parse an ISO-8601 instant; values without an offset are read as UTC."""
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith(("Z", "z")):
            text = f"{text[:-1]}+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            raise ValidationError(f"{field} must be a valid ISO 8601 date", field=field) from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def resolve_date_range(
    start_date: str | datetime | None,
    end_date: str | datetime | None,
    time_range: str | TimeRange | None,
    now: datetime | None = None,
) -> tuple[datetime, datetime, TimeRange | None]:
    """
    Resolve the effective [start, end] window of a request.

    Explicit dates win over the shorthand and must be given together. Without them the shorthand,
    or 30 days when it is absent too, is expanded backwards from now.
    :return: start, end and the shorthand that produced them, if any
    """
    if start_date is not None or end_date is not None:
        if start_date is None:
            raise ValidationError("startDate is required when endDate is provided", field="startDate")
        if end_date is None:
            raise ValidationError("endDate is required when startDate is provided", field="endDate")
        start = parse_instant(start_date, "startDate")
        end = parse_instant(end_date, "endDate")
        if end <= start:
            raise ValidationError("endDate must be after startDate", field="endDate")
        if end - start > timedelta(days=MAX_RANGE_DAYS):
            raise ValidationError(f"Date range cannot exceed {MAX_RANGE_DAYS} days", field="endDate")
        return start, end, None

    if time_range is None or time_range == "":
        shorthand = DEFAULT_TIME_RANGE
    else:
        try:
            shorthand = TimeRange(time_range)
        except ValueError as exc:
            allowed = ", ".join(item.value for item in TimeRange)
            raise ValidationError(f"timeRange must be one of: {allowed}", field="timeRange") from exc
    end = now or datetime.now(timezone.utc)
    return end - timedelta(days=shorthand.days), end, shorthand


def validate_environment_types(values: list[str]) -> list[EnvironmentType]:
    environments = []
    for value in values:
        try:
            environments.append(EnvironmentType(value))
        except ValueError as exc:
            allowed = ", ".join(item.value for item in EnvironmentType)
            raise ValidationError(
                f"Invalid environmentType '{value}', must be one of: {allowed}", field="environmentType"
            ) from exc
    return environments


def validate_aggregation(value: str | None) -> Aggregation:
    if value is None or value == "":
        return Aggregation.DAILY
    try:
        return Aggregation(value)
    except ValueError as exc:
        allowed = ", ".join(item.value for item in Aggregation)
        raise ValidationError(f"aggregation must be one of: {allowed}", field="aggregation") from exc


def build_query_params(raw: Mapping[str, Any], now: datetime | None = None) -> MetricQueryParams:
    """
    Validate the merged query/path mapping of a metric request.
    :raises ValidationError: for the first offending field
    """
    organization_name = raw.get("organizationName")
    if not organization_name:
        raise ValidationError("organizationName is required", field="organizationName")

    start, end, time_range = resolve_date_range(raw.get("startDate"), raw.get("endDate"), raw.get("timeRange"), now)
    return MetricQueryParams(
        organization_name=organization_name,
        start_date=start,
        end_date=end,
        time_range=time_range,
        project_names=normalize_multi_value(raw.get("projectName")),
        application_names=normalize_multi_value(raw.get("applicationName")),
        environment_types=validate_environment_types(normalize_multi_value(raw.get("environmentType"))),
        aggregation=validate_aggregation(raw.get("aggregation")),
    )


def _collect_query(request: Request, **declared: Any) -> dict[str, Any]:
    query = {key: value for key, value in declared.items() if value not in (None, [])}
    # bracketed keys (projectName[]=a&projectName[]=b) are the array form some clients send
    for field in MULTI_VALUE_FIELDS:
        bracketed = request.query_params.getlist(f"{field}[]")
        if bracketed:
            query[field] = [*query.get(field, []), *bracketed]
    return query


async def metric_query_params(
    request: Request,
    start_date: Annotated[str | None, Query(alias="startDate", description="ISO 8601 start instant")] = None,
    end_date: Annotated[str | None, Query(alias="endDate", description="ISO 8601 end instant")] = None,
    time_range: Annotated[str | None, Query(alias="timeRange", description="7d, 30d, 90d or 1y")] = None,
    project_name: Annotated[list[str], Query(alias="projectName")] = [],  # noqa: B006
    application_name: Annotated[list[str], Query(alias="applicationName")] = [],  # noqa: B006
    environment_type: Annotated[list[str], Query(alias="environmentType")] = [],  # noqa: B006
    aggregation: Annotated[str | None, Query(description="daily, weekly or monthly")] = None,
    organization_override: Annotated[str | None, Query(alias="organizationName")] = None,
) -> MetricQueryParams:
    """Dependency that turns the query string and path of a metric request into MetricQueryParams."""
    query = _collect_query(
        request,
        startDate=start_date,
        endDate=end_date,
        timeRange=time_range,
        projectName=project_name,
        applicationName=application_name,
        environmentType=environment_type,
        aggregation=aggregation,
        organizationName=organization_override,
    )
    path_organization = request.path_params.get("organization_name")
    merged = merge_path_params(query, {"organizationName": path_organization})
    if path_organization and merged["organizationName"] != path_organization:
        raise ValidationError("organizationName does not match the organization in the path", field="organizationName")

    params = build_query_params(merged)
    logger.debug("Resolved query params for %s: %s", params.organization_name, params.filters_applied())
    return params


MetricQueryParamsDep = Annotated[MetricQueryParams, Depends(metric_query_params)]
