import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Response, status

from dora_metrics.config import get_settings
from dora_metrics.core.dependencies import ConnectionManagerDep
from dora_metrics.core.enums import HealthStatus
from dora_metrics.core.schemas import ServiceHealthResponse

router = APIRouter(prefix="/health")
logger = logging.getLogger(__name__)


@router.get(
    "",
    response_model=ServiceHealthResponse,
    tags=["health"],
    responses={503: {"description": "The warehouse is unavailable", "model": ServiceHealthResponse}},
)
async def check_health(response: Response, warehouse: ConnectionManagerDep):
    """Check the process and its connection to the Databricks warehouse."""
    logger.info("Health Check")
    warehouse_health = await warehouse.health_check()
    health = ServiceHealthResponse(
        status=HealthStatus(warehouse_health["status"]),
        version=get_settings().VERSION,
        timestamp=datetime.now(timezone.utc),
        warehouse=warehouse_health["details"],
    )
    if health.status != HealthStatus.HEALTHY:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return health
