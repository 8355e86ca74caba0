import logging
import sys
from functools import lru_cache

from pydantic import BaseModel

from dora_metrics.utilities.context import get_organization_name

DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"
LOGGER_FORMAT = (
    "%(name)s | %(levelname)s | %(asctime)s | org=%(organization)s | %(filename)s | %(funcName)s:%(lineno)d | "
    "%(message)s"
)


class LoggerConfig(BaseModel):
    handlers: list
    format: str
    date_format: str | None = None
    level: str | int = logging.INFO


class OrganizationContextFilter(logging.Filter):
    """Stamps every record with the organization of the request being served."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "organization"):
            record.organization = get_organization_name() or "-"
        return True


@lru_cache
def get_logger_config(env: str = "dev", logging_level: str | int = logging.INFO):
    """Installs RichHandler (Rich library) if not in production
    environment, or use the production log configuration.
    """

    if not env == "prod":
        from rich.logging import RichHandler

        rich_handler = RichHandler(rich_tracebacks=True, tracebacks_show_locals=True, show_time=False)
        rich_handler.addFilter(OrganizationContextFilter())
        return LoggerConfig(
            handlers=[rich_handler],
            format=LOGGER_FORMAT,
            date_format=DATE_FORMAT,
            level=logging_level,
        )

    handler_format = logging.Formatter(LOGGER_FORMAT, datefmt=DATE_FORMAT)

    # Stdout
    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setFormatter(handler_format)
    stdout_handler.addFilter(OrganizationContextFilter())

    return LoggerConfig(handlers=[stdout_handler], format=LOGGER_FORMAT, date_format=DATE_FORMAT, level=logging_level)


def setup_rich_logger(settings):
    """Cycles through uvicorn root loggers to
    remove handler, then runs `get_logger_config()`
    to populate the `LoggerConfig` class with Rich
    logger parameters.
    """

    # Remove all handlers from root logger
    # and propagate to root logger.
    for name in logging.root.manager.loggerDict.keys():
        logging.getLogger(name).handlers = []
        logging.getLogger(name).propagate = True

    level = getattr(settings.LOGGING_LEVEL, "value", settings.LOGGING_LEVEL)
    env = getattr(settings.ENV, "value", settings.ENV)
    logger_config = get_logger_config(env=env, logging_level=level)

    logging.basicConfig(
        level=logger_config.level,
        format=logger_config.format,
        datefmt=logger_config.date_format,
        handlers=logger_config.handlers,
        force=True,
    )
