"""Logging setup shared by the service, the agent loop and the audit trail."""

import logging
import os
import sys

from pydantic import BaseModel, Field

AUDIT_LOGGER = "agentloop.audit"


class LogConfig(BaseModel):
    """Log levels and line format.

    ``audit_level`` applies to the audit trail only, so tool calls can be recorded
    while the rest of the service stays at WARNING.
    """

    level: str = "INFO"
    audit_level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    date_format: str = "%Y-%m-%d %H:%M:%S"
    quiet_loggers: list[str] = Field(default_factory=lambda: ["anthropic", "httpx", "httpcore", "uvicorn.access"])

    @classmethod
    def from_env(cls) -> "LogConfig":
        level = os.getenv("LOG_LEVEL", "INFO")
        return cls(level=level, audit_level=os.getenv("AI_AGENT_AUDIT_LOG_LEVEL", level))


def setup_logging(config: LogConfig | None = None) -> None:
    """Configure the root handler once at startup."""
    config = config or LogConfig.from_env()

    logging.basicConfig(
        level=config.level.upper(),
        format=config.format,
        datefmt=config.date_format,
        stream=sys.stdout,
        force=True,
    )

    logging.getLogger("agentloop").setLevel(config.level.upper())
    logging.getLogger(AUDIT_LOGGER).setLevel(config.audit_level.upper())
    for name in config.quiet_loggers:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str, level: str | None = None) -> logging.Logger:
    """Return the module logger.

    Args:
        name: Logger name, usually ``__name__``
        level: Level to pin on this logger; when omitted the level is inherited,
            falling back to LOG_LEVEL for loggers outside the ``agentloop`` tree

    Returns:
        The logger
    """
    logger = logging.getLogger(name)

    if level:
        logger.setLevel(level.upper())
    elif not name.startswith("agentloop"):
        logger.setLevel(os.getenv("LOG_LEVEL", "INFO").upper())

    return logger
