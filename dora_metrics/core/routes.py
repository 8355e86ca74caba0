import logging
from datetime import datetime, timezone
from typing import Annotated

from fastapi import APIRouter, Depends, Query, Response, status

from dora_metrics.core.dependencies import MetricsServiceDep, VerifiedOrganizationDep, resolve_organization
from dora_metrics.core.enums import HealthStatus
from dora_metrics.core.schemas import (
    ChangeFailureRateResponse,
    DeploymentFrequencyResponse,
    DoraSummaryResponse,
    ErrorResponse,
    FiltersResponse,
    LeadTimeResponse,
    MeanTimeToRestoreResponse,
    OrganizationHealthResponse,
)
from dora_metrics.core.validation import MetricQueryParamsDep, normalize_multi_value

logger = logging.getLogger(__name__)

# the organization is resolved before any other dependency of these routes
router = APIRouter(prefix="/{organization_name}", dependencies=[Depends(resolve_organization)])

ERROR_RESPONSES: dict = {
    status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse, "description": "Invalid query parameters"},
    status.HTTP_401_UNAUTHORIZED: {"model": ErrorResponse, "description": "Missing or malformed organization"},
    status.HTTP_403_FORBIDDEN: {"model": ErrorResponse, "description": "Organization access denied"},
    status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse, "description": "Warehouse unavailable"},
    status.HTTP_504_GATEWAY_TIMEOUT: {"model": ErrorResponse, "description": "Warehouse query timed out"},
}


@router.get(
    "/deployment-frequency",
    response_model=DeploymentFrequencyResponse,
    tags=["metrics"],
    responses=ERROR_RESPONSES,
)
async def get_deployment_frequency(
    organization_name: str,
    params: MetricQueryParamsDep,
    service: MetricsServiceDep,
    _: VerifiedOrganizationDep,
):
    """
    Retrieve deployment frequency of an organization, per day or bucketed per week/month.
    """
    return await service.get_deployment_frequency(params)


@router.get(
    "/change-failure-rate",
    response_model=ChangeFailureRateResponse,
    tags=["metrics"],
    responses=ERROR_RESPONSES,
)
async def get_change_failure_rate(
    organization_name: str,
    params: MetricQueryParamsDep,
    service: MetricsServiceDep,
    _: VerifiedOrganizationDep,
):
    """
    Retrieve change failure rate of an organization.
    """
    return await service.get_change_failure_rate(params)


@router.get(
    "/lead-time-for-changes",
    response_model=LeadTimeResponse,
    tags=["metrics"],
    responses=ERROR_RESPONSES,
)
async def get_lead_time_for_changes(
    organization_name: str,
    params: MetricQueryParamsDep,
    service: MetricsServiceDep,
    _: VerifiedOrganizationDep,
):
    return await service.get_lead_time_for_changes(params)


@router.get(
    "/mean-time-to-restore",
    response_model=MeanTimeToRestoreResponse,
    tags=["metrics"],
    responses=ERROR_RESPONSES,
)
async def get_mean_time_to_restore(
    organization_name: str,
    params: MetricQueryParamsDep,
    service: MetricsServiceDep,
    _: VerifiedOrganizationDep,
):
    return await service.get_mean_time_to_restore(params)


@router.get("/summary", response_model=DoraSummaryResponse, tags=["metrics"], responses=ERROR_RESPONSES)
async def get_summary(
    organization_name: str,
    params: MetricQueryParamsDep,
    service: MetricsServiceDep,
    _: VerifiedOrganizationDep,
):
    """
    Retrieve the headline figures of all four DORA metrics for the same filters.
    """
    return await service.get_summary(params)


@router.get("/filters", response_model=FiltersResponse, tags=["filters"], responses=ERROR_RESPONSES)
async def get_available_filters(
    organization_name: str,
    service: MetricsServiceDep,
    verified_organization: VerifiedOrganizationDep,
    project_name: Annotated[list[str], Query(alias="projectName")] = [],  # noqa: B006
):
    """
    Retrieve the values available for each filter.
    Selecting projects narrows the applications and environments to those seen with them.
    """
    selected_projects = normalize_multi_value(project_name)
    filters = await service.get_available_filters(verified_organization, selected_projects or None)
    return FiltersResponse(
        organization_name=verified_organization,
        available_filters=filters,
        timestamp=datetime.now(timezone.utc),
    )


@router.get(
    "/health",
    response_model=OrganizationHealthResponse,
    tags=["health"],
    responses={
        status.HTTP_404_NOT_FOUND: {"model": OrganizationHealthResponse, "description": "No data for organization"},
        status.HTTP_503_SERVICE_UNAVAILABLE: {
            "model": OrganizationHealthResponse,
            "description": "Warehouse unavailable",
        },
    },
)
async def get_organization_health(organization_name: str, response: Response, service: MetricsServiceDep):
    """
    Check whether data is available for the organization.
    """
    health = await service.get_organization_health(organization_name)
    if health.status == HealthStatus.NO_DATA:
        response.status_code = status.HTTP_404_NOT_FOUND
    elif health.status == HealthStatus.UNHEALTHY:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return health
