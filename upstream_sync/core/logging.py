"""Logging configuration utilities for the serverlist refresher."""
import logging
import os

# prefix shared by every component logger, e.g. "upstream-sync.poller"
SERVICE_NAME = "upstream-sync"


def setup_logging() -> None:
    """Configure root logging based on the LOG_LEVEL environment variable."""
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
    )


def get_logger(component: str) -> logging.Logger:
    """Return the logger for one component of the service."""
    return logging.getLogger(f"{SERVICE_NAME}.{component}")
