import logging
import re
from typing import Annotated

from fastapi import Depends, Header, Request

from dora_metrics.exceptions import (
    InvalidOrganizationFormatError,
    MissingOrganizationError,
    OrganizationAccessError,
    ValidationError,
)
from dora_metrics.services.databricks import WarehouseConnectionManager
from dora_metrics.services.metrics import MetricsService
from dora_metrics.utilities.context import set_organization_name

logger = logging.getLogger(__name__)

ORGANIZATION_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_-]{3,50}$")


async def get_connection_manager(request: Request) -> WarehouseConnectionManager:
    return request.app.state.warehouse


ConnectionManagerDep = Annotated[WarehouseConnectionManager, Depends(get_connection_manager)]


async def get_metrics_service(warehouse: ConnectionManagerDep) -> MetricsService:
    return MetricsService(warehouse)


MetricsServiceDep = Annotated[MetricsService, Depends(get_metrics_service)]


async def resolve_organization(
    request: Request,
    x_organization_name: Annotated[str | None, Header(alias="X-Organization-Name")] = None,
) -> str:
    """
    Identify the organization of the request.

    The header wins over the `organizationName` query parameter, which wins over the path.
    A header naming another organization than the path is denied, and a query parameter
    naming another organization than the path is rejected.
    """
    header_name = x_organization_name.strip() if x_organization_name else None
    path_name = request.path_params.get("organization_name")
    query_name = request.query_params.get("organizationName")
    if query_name and path_name and query_name != path_name:
        raise ValidationError("organizationName does not match the organization in the path", field="organizationName")
    organization_name = header_name or query_name or path_name

    if not organization_name:
        logger.warning("Request to %s without an organization", request.url.path)
        raise MissingOrganizationError()
    if not ORGANIZATION_NAME_PATTERN.fullmatch(organization_name):
        logger.warning("Invalid organization name format on %s", request.url.path)
        raise InvalidOrganizationFormatError(organization_name)
    if header_name and path_name and header_name != path_name:
        logger.warning("Organization %s attempted to access %s", header_name, path_name)
        raise OrganizationAccessError(path_name)

    request.state.organization_name = organization_name
    set_organization_name(organization_name)
    return organization_name


OrganizationDep = Annotated[str, Depends(resolve_organization)]


async def require_organization_data(
    request: Request, organization_name: OrganizationDep, service: MetricsServiceDep
) -> str:
    """
    Deny organizations the warehouse holds no data for.
    The lookup is done once per request.
    """
    checked: dict[str, bool] = getattr(request.state, "organization_access", None) or {}
    if organization_name not in checked:
        checked[organization_name] = await service.validate_organization_access(organization_name)
        request.state.organization_access = checked
    if not checked[organization_name]:
        raise OrganizationAccessError(organization_name)
    return organization_name


VerifiedOrganizationDep = Annotated[str, Depends(require_organization_data)]
