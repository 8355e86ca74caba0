from __future__ import annotations

import asyncio
import multiprocessing

import httpx
import typer
import uvicorn

from dora_metrics.config import get_settings, load_settings

cli = typer.Typer()


@cli.command("run-local-server")
def run_server(
    port: int = 8000,
    host: str = "localhost",
    log_level: str = "debug",
    reload: bool = True,
):
    """Run the API development server(uvicorn)."""
    uvicorn.run(
        "dora_metrics.main:app",
        host=host,
        port=port,
        log_level=log_level,
        reload=reload,
    )


@cli.command("run-prod-server")
def run_prod_server(
    port: int = 8000,
    log_level: str = "info",
    workers: int | None = None,
):
    """Run the API production server(uvicorn)."""
    if workers is None:
        workers = multiprocessing.cpu_count() * 2 + 1 if multiprocessing.cpu_count() > 0 else 3
    typer.secho(f"Starting uvicorn server at port {port} with {workers} workers", fg=typer.colors.GREEN)
    uvicorn.run(
        "dora_metrics.main:app",
        host="0.0.0.0",  # noqa
        port=port,
        log_level=log_level,
        workers=workers,
        timeout_keep_alive=60,
    )


@cli.command("check-config")
def check_config():
    """Validate the environment and print the effective settings, secrets masked."""
    settings = load_settings()
    values = settings.model_dump()
    values["DATABRICKS_TOKEN"] = "****"
    typer.secho("Configuration is valid", fg=typer.colors.GREEN)
    typer.secho("\n".join(f"{key}={value}" for key, value in values.items()))


@cli.command("warehouse-health")
def warehouse_health():
    """Connect to the Databricks warehouse and list the gold tables."""
    from dora_metrics.services.databricks import WarehouseConfig, WarehouseConnectionManager

    settings = load_settings()
    manager = WarehouseConnectionManager(
        WarehouseConfig.from_settings(settings), query_timeout=settings.QUERY_TIMEOUT_SECONDS
    )

    async def probe():
        try:
            return await manager.health_check()
        finally:
            await manager.close()

    result = asyncio.run(probe())
    details = "\n".join(f"{key}={value}" for key, value in result["details"].items())
    if result["status"] != "healthy":
        typer.secho(f"Warehouse is unhealthy\n{details}", fg=typer.colors.RED, bold=True)
        raise typer.Exit(code=1)
    typer.secho(f"Warehouse is healthy\n{details}", fg=typer.colors.GREEN)


@cli.command()
def info():
    """Show API health."""
    settings = get_settings()

    with httpx.Client(base_url=str(settings.SERVER_HOST)) as client:
        try:
            resp = client.get("/health", follow_redirects=True)
        except httpx.ConnectError:
            app_health = typer.style("API is not responding", fg=typer.colors.RED, bold=True)
        else:
            app_health = "\n".join([f"{key.upper()}={value}" for key, value in resp.json().items()])

    title = typer.style("===> APP INFO <==============\n", fg=typer.colors.BLUE)
    typer.secho(title + app_health)


if __name__ == "__main__":
    cli()
