import asyncio
import logging
from datetime import datetime, timezone
from typing import Any

from databricks import sql as databricks_sql
from databricks.sql.exc import InterfaceError, OperationalError
from pydantic import BaseModel

logger = logging.getLogger(__name__)


class DatabaseError(Exception):
    """Any failure of the warehouse layer: connecting, executing or fetching."""

    def __init__(self, message: str):
        super().__init__(f"Database operation failed: {message}")


class WarehouseConnectionError(DatabaseError):
    pass


class QueryTimeoutError(DatabaseError):
    pass


class WarehouseConfig(BaseModel):
    """Databricks SQL warehouse configuration for the connection manager."""

    server_hostname: str
    http_path: str
    access_token: str
    catalog: str
    db_schema: str

    @classmethod
    def from_settings(cls, settings) -> "WarehouseConfig":
        return cls(
            server_hostname=settings.DATABRICKS_SERVER_HOSTNAME,
            http_path=settings.DATABRICKS_HTTP_PATH,
            access_token=settings.DATABRICKS_TOKEN,
            catalog=settings.DATABRICKS_CATALOG,
            db_schema=settings.DATABRICKS_SCHEMA,
        )


class WarehouseConnectionManager:
    """
    Owns the single connection of this process to the Databricks SQL warehouse.

    The connection is created lazily on first use. Concurrent callers that arrive while a
    connection attempt is in flight await that same attempt, so they all observe the same
    connection or the same failure. A failed attempt leaves nothing cached and the next
    call starts over.
    """

    def __init__(self, config: WarehouseConfig, query_timeout: float | None = 30.0):
        """
        Initialize the connection manager with the given configuration.

        Args:
            config: WarehouseConfig with connection details
            query_timeout: seconds a single statement may take before QueryTimeoutError
        """
        self.config = config
        self.query_timeout = query_timeout
        self._connection: Any = None
        self._pending: asyncio.Task | None = None

    @property
    def is_connected(self) -> bool:
        return self._connection is not None

    def _connect_sync(self) -> Any:
        return databricks_sql.connect(
            server_hostname=self.config.server_hostname,
            http_path=self.config.http_path,
            access_token=self.config.access_token,
            catalog=self.config.catalog,
            schema=self.config.db_schema,
        )

    async def _connect(self) -> Any:
        logger.info(
            "Connecting to Databricks host=%s path=%s catalog=%s schema=%s",
            self.config.server_hostname,
            self.config.http_path,
            self.config.catalog,
            self.config.db_schema,
        )
        try:
            connection = await asyncio.to_thread(self._connect_sync)
        except Exception as exc:
            self._connection = None
            logger.error("Failed to connect to Databricks: %s", exc)
            raise WarehouseConnectionError(f"Databricks connection failed: {exc}") from exc
        self._connection = connection
        logger.info("Successfully connected to Databricks")
        return connection

    async def get_connection(self) -> Any:
        """
        Get the live connection, joining an in-flight attempt or starting a new one.
        """
        if self._connection is not None:
            return self._connection

        if self._pending is None:
            self._pending = asyncio.ensure_future(self._connect())
        pending = self._pending
        try:
            # shield so a cancelled caller does not cancel the attempt the others wait on
            return await asyncio.shield(pending)
        finally:
            if pending.done() and self._pending is pending:
                self._pending = None

    async def _discard(self, connection: Any) -> None:
        """Forget a broken connection unless another caller already replaced it."""
        if self._connection is not connection:
            return
        self._connection = None
        try:
            await asyncio.to_thread(connection.close)
        except Exception as exc:  # noqa
            logger.warning("Ignoring error while closing a broken Databricks connection: %s", exc)

    @staticmethod
    def _check_params(params: dict[str, Any] | None) -> dict[str, Any]:
        params = params or {}
        for name, value in params.items():
            if isinstance(value, (list, tuple, set)):
                raise ValueError(f"Parameter '{name}' is a collection; expand it into one marker per value")
        return params

    def _run_statement(self, connection: Any, sql: str, params: dict[str, Any]) -> list[dict[str, Any]]:
        with connection.cursor() as cursor:
            cursor.execute(sql, params or None)
            rows = cursor.fetchall()
            columns = [column[0] for column in cursor.description or []]
        return [dict(zip(columns, row)) for row in rows]

    async def execute_query(
        self, sql: str, organization_name: str | None = None, params: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        """
        Execute a statement with named `:param` markers bound by the driver and fetch every row.

        The statement handle is closed on success, failure and timeout alike.

        :param sql: statement using `:name` markers
        :param organization_name: organization the statement runs for, used for logging
        :param params: values for the markers, scalars only
        :return: rows as dictionaries keyed by column name
        """
        bound = self._check_params(params)
        connection = await self.get_connection()
        logger.debug("Executing query for %s: %s", organization_name, " ".join(sql.split())[:200])
        try:
            rows = await asyncio.wait_for(
                asyncio.to_thread(self._run_statement, connection, sql, bound), timeout=self.query_timeout
            )
        except asyncio.TimeoutError as exc:
            logger.error("Query timed out after %ss for %s", self.query_timeout, organization_name)
            raise QueryTimeoutError(f"query timed out after {self.query_timeout}s") from exc
        except (OperationalError, InterfaceError) as exc:
            # the session is gone or closed, the next call connects again
            logger.error("Connection lost while querying for %s: %s", organization_name, exc)
            await self._discard(connection)
            raise DatabaseError(str(exc)) from exc
        except Exception as exc:
            logger.error("Query execution failed for %s: %s", organization_name, exc)
            raise DatabaseError(str(exc)) from exc

        logger.info("Query executed successfully for %s, rows=%d", organization_name, len(rows))
        return rows

    async def health_check(self) -> dict[str, Any]:
        """
        Probe the warehouse and the configured catalog/schema.
        Never raises; failures are reported in the result.
        """
        try:
            tables = await self.execute_query(f"SHOW TABLES IN {self.config.catalog}.{self.config.db_schema}")
            if not tables:
                logger.warning(
                    "No tables found in %s.%s, verify the schema configuration",
                    self.config.catalog,
                    self.config.db_schema,
                )
            return {
                "status": "healthy",
                "details": {
                    "connected": True,
                    "catalog": self.config.catalog,
                    "schema": self.config.db_schema,
                    "table_count": len(tables),
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                },
            }
        except Exception as exc:  # noqa
            logger.exception("Warehouse health check failed")
            return {
                "status": "unhealthy",
                "details": {
                    "connected": False,
                    "error": str(exc),
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                },
            }

    async def close(self) -> None:
        """Close the connection if it exists. Safe to call more than once."""
        connection, self._connection = self._connection, None
        if connection is None:
            return
        try:
            await asyncio.to_thread(connection.close)
            logger.info("Databricks connection closed successfully")
        except Exception:
            logger.exception("Error closing Databricks connection")
