from __future__ import annotations

import datetime
from typing import Any, Literal

from pydantic import BaseModel as _BaseModel, ConfigDict, Field, field_validator, model_validator

from dora_metrics.core.enums import Aggregation, EnvironmentType, HealthStatus, TimeRange


class BaseModel(_BaseModel):
    """
    Custom base class for pydantic models
    """

    model_config = ConfigDict(populate_by_name=True)


def _as_list(value: Any) -> list:
    """Arrays come back from the warehouse as lists, tuples or numpy arrays; None means empty."""
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return [item for item in value if item is not None]


class DateRange(BaseModel):
    start: datetime.datetime
    end: datetime.datetime

    @property
    def days(self) -> int:
        """Number of calendar dates in the range, both ends included, as queried from the gold tables."""
        return max(1, (self.end.date() - self.start.date()).days + 1)


class MetricQueryParams(BaseModel):
    """Normalized input of every metric query, built once per request."""

    organization_name: str
    start_date: datetime.datetime
    end_date: datetime.datetime
    time_range: TimeRange | None = None
    project_names: list[str] = Field(default_factory=list)
    application_names: list[str] = Field(default_factory=list)
    environment_types: list[EnvironmentType] = Field(default_factory=list)
    aggregation: Aggregation = Aggregation.DAILY

    @property
    def date_range(self) -> DateRange:
        return DateRange(start=self.start_date, end=self.end_date)

    def filters_applied(self) -> dict[str, list[str]]:
        """Filters echoed back to clients, keyed by query parameter name; empty dimensions are omitted."""
        filters = {
            "projectName": list(self.project_names),
            "applicationName": list(self.application_names),
            "environmentType": [env.value for env in self.environment_types],
        }
        return {key: values for key, values in filters.items() if values}


class AggregationContext(BaseModel):
    """What was rolled up into a summarized row."""

    project_count: int = 0
    application_count: int = 0
    environment_count: int = 0
    projects: list[str] = Field(default_factory=list)
    applications: list[str] = Field(default_factory=list)
    environments: list[str] = Field(default_factory=list)

    @field_validator("projects", "applications", "environments", mode="before")
    @classmethod
    def coerce_list(cls, v):
        return sorted(set(_as_list(v)))

    @model_validator(mode="after")
    def sync_counts(self):
        # counts always describe the lists that are returned
        self.project_count = len(self.projects)
        self.application_count = len(self.applications)
        self.environment_count = len(self.environments)
        return self


class DeploymentFrequencyPoint(AggregationContext):
    date: datetime.date
    organization_name: str
    deployment_count: int = 0
    daily_average: float = 0.0


class ChangeFailureRatePoint(AggregationContext):
    date: datetime.date
    organization_name: str
    total_deployments: int = 0
    failed_deployments: int = 0
    failure_rate_percent: float = 0.0


class LeadTimePoint(AggregationContext):
    date: datetime.date
    organization_name: str
    median_lead_time_hours: float = 0.0
    lead_time_days: float = 0.0
    change_count: int = 0
    # raw per-change values behind the median, used for the overall median only
    lead_time_samples: list[float] = Field(default_factory=list, exclude=True)

    @field_validator("lead_time_samples", mode="before")
    @classmethod
    def coerce_samples(cls, v):
        return _as_list(v)


class MeanTimeToRestorePoint(AggregationContext):
    date: datetime.date
    organization_name: str
    median_hours_to_restore: float = 0.0
    restore_time_days: float = 0.0
    incident_count: int = 0
    restore_time_samples: list[float] = Field(default_factory=list, exclude=True)

    @field_validator("restore_time_samples", mode="before")
    @classmethod
    def coerce_samples(cls, v):
        return _as_list(v)


class MetricSummary(BaseModel):
    organization_name: str
    date_range: DateRange
    filters_applied: dict[str, list[str]] = Field(default_factory=dict)


class DeploymentFrequencySummary(MetricSummary):
    total_deployments: int = 0
    average_per_day: float = 0.0
    aggregation: Aggregation = Aggregation.DAILY


class ChangeFailureRateSummary(MetricSummary):
    overall_failure_rate: float = Field(0.0, description="Failed over total deployments, in percent")
    total_deployments: int = 0
    total_failed_deployments: int = 0


class LeadTimeSummary(MetricSummary):
    overall_median_hours: float = 0.0
    overall_median_days: float = 0.0
    total_changes: int = 0


class MeanTimeToRestoreSummary(MetricSummary):
    overall_median_hours: float = 0.0
    overall_median_days: float = 0.0
    total_incidents: int = 0


class DeploymentFrequencyResponse(BaseModel):
    metric: Literal["deployment_frequency"] = "deployment_frequency"
    data: list[DeploymentFrequencyPoint] = Field(default_factory=list)
    summary: DeploymentFrequencySummary


class ChangeFailureRateResponse(BaseModel):
    metric: Literal["change_failure_rate"] = "change_failure_rate"
    data: list[ChangeFailureRatePoint] = Field(default_factory=list)
    summary: ChangeFailureRateSummary


class LeadTimeResponse(BaseModel):
    metric: Literal["lead_time_for_changes"] = "lead_time_for_changes"
    data: list[LeadTimePoint] = Field(default_factory=list)
    summary: LeadTimeSummary


class MeanTimeToRestoreResponse(BaseModel):
    metric: Literal["mean_time_to_restore"] = "mean_time_to_restore"
    data: list[MeanTimeToRestorePoint] = Field(default_factory=list)
    summary: MeanTimeToRestoreSummary


class DeploymentFrequencyFigures(BaseModel):
    average_per_day: float
    total_deployments: int


class ChangeFailureRateFigures(BaseModel):
    failure_rate_percent: float
    total_deployments: int
    failed_deployments: int


class MedianDurationFigures(BaseModel):
    median_hours: float
    median_days: float


class DoraMetricsFigures(BaseModel):
    deployment_frequency: DeploymentFrequencyFigures
    change_failure_rate: ChangeFailureRateFigures
    lead_time_for_changes: MedianDurationFigures
    mean_time_to_restore: MedianDurationFigures


class DoraSummaryResponse(BaseModel):
    organization_name: str
    date_range: DateRange
    metrics: DoraMetricsFigures
    filters_applied: dict[str, list[str]] = Field(default_factory=dict)


class AvailableFilters(BaseModel):
    projects: list[str] = Field(default_factory=list)
    applications: list[str] = Field(default_factory=list)
    environments: list[str] = Field(default_factory=list)


class FiltersResponse(BaseModel):
    organization_name: str
    available_filters: AvailableFilters
    timestamp: datetime.datetime | None = None


class OrganizationDataSummary(BaseModel):
    projects_count: int
    applications_count: int
    environments_count: int


class OrganizationHealthResponse(BaseModel):
    organization_name: str
    status: HealthStatus
    has_data: bool
    data_summary: OrganizationDataSummary | None = None
    error: str | None = None
    timestamp: datetime.datetime


class ServiceHealthResponse(BaseModel):
    status: HealthStatus
    version: str
    timestamp: datetime.datetime
    warehouse: dict[str, Any] = Field(default_factory=dict)


class ErrorResponse(BaseModel):
    error: bool = True
    message: str
    code: str
    timestamp: datetime.datetime
    details: Any | None = None
