"""Logging configuration shared by the chat API and the tool server."""

import logging
import os
import sys
from typing import Literal

from pydantic import BaseModel, Field

# Chatty libraries that only matter when they fail
DEFAULT_QUIET_LOGGERS = ["anthropic", "httpx", "mcp", "uvicorn.access"]


class LogConfig(BaseModel):
    """Logging configuration.

    ``stream`` must be ``stderr`` for the stdio tool server, whose stdout is
    the protocol channel.
    """

    level: str = Field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    date_format: str = "%Y-%m-%d %H:%M:%S"
    stream: Literal["stdout", "stderr"] = "stdout"
    quiet_loggers: list[str] = Field(default_factory=lambda: list(DEFAULT_QUIET_LOGGERS))


def setup_logging(config: LogConfig | None = None) -> None:
    """Set up logging for one process.

    Args:
        config: Logging configuration (defaults to LOG_LEVEL on stdout)
    """
    config = config or LogConfig()

    logging.basicConfig(
        level=getattr(logging, config.level.upper()),
        format=config.format,
        datefmt=config.date_format,
        stream=sys.stderr if config.stream == "stderr" else sys.stdout,
        force=True,  # Override any existing configuration
    )

    for name in config.quiet_loggers:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str, level: str | None = None) -> logging.Logger:
    """Get a logger for a module.

    Args:
        name: Module name (typically __name__)
        level: Explicit level, otherwise LOG_LEVEL
    """
    logger = logging.getLogger(name)
    logger.setLevel((level or os.getenv("LOG_LEVEL", "INFO")).upper())
    return logger
