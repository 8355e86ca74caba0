import logging
from contextlib import asynccontextmanager

from dora_metrics.config import get_settings
from dora_metrics.services.databricks import WarehouseConfig, WarehouseConnectionManager

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app):
    """FastAPI lifespan context manager owning the warehouse connection manager."""
    settings = get_settings()

    logger.info(
        "Initializing warehouse connection manager for %s.%s",
        settings.DATABRICKS_CATALOG,
        settings.DATABRICKS_SCHEMA,
    )
    # the connection itself is opened on first use
    app.state.warehouse = WarehouseConnectionManager(
        WarehouseConfig.from_settings(settings), query_timeout=settings.QUERY_TIMEOUT_SECONDS
    )

    try:
        yield
    finally:
        logger.info("Closing warehouse connection")
        await app.state.warehouse.close()
